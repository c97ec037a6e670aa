"""
Actor registration and password checks.
"""
from typing import Optional
import logging

import bcrypt
from sqlalchemy.orm import Session

from app.errors import InvalidArgumentError, UnauthorizedError
from app.models import ROLE_ADMIN, ROLE_OWNER, User, utcnow

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    """Hash a password using bcrypt with salt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, stored_hash: Optional[str]) -> bool:
    if not password or not stored_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), stored_hash.encode())
    except ValueError:
        # Not a bcrypt hash
        return False


def _normalize_email(email: Optional[str]) -> str:
    normalized = (email or "").strip().lower()
    if not normalized:
        raise InvalidArgumentError("Email must not be blank.")
    return normalized


def register_actor(
    db: Session,
    email: str,
    password: str,
    name: str,
    role: str = ROLE_OWNER,
) -> User:
    """
    Create an actor with a bcrypt password hash.

    Raises:
        InvalidArgumentError: blank fields, over-long password, unknown role, or email already registered
    """
    email = _normalize_email(email)
    if not password:
        raise InvalidArgumentError("Password must not be blank.")
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise InvalidArgumentError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    if not name or not name.strip():
        raise InvalidArgumentError("Name must not be blank.")
    if role not in (ROLE_OWNER, ROLE_ADMIN):
        raise InvalidArgumentError(f"Unknown role: {role}")

    if db.query(User.id).filter(User.email == email).first() is not None:
        raise InvalidArgumentError(f"Email already registered: {email}")

    user = User(
        email=email,
        password_hash=hash_password(password),
        name=name.strip(),
        role=role,
        created_at=utcnow(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered {role} actor {user.id}")
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    """Check credentials and record the login time."""
    user = db.query(User).filter(User.email == (email or "").strip().lower()).first()
    if user is None or not verify_password(password, user.password_hash):
        raise UnauthorizedError("Invalid email or password.")

    user.last_login_at = utcnow()
    db.commit()
    db.refresh(user)
    return user
