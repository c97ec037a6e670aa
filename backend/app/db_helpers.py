"""
Request identity helpers.

Callers (the web frontend's server side) sign each API request with a shared
secret; the verified user id is loaded and resolved to a ``Scope`` that route
handlers pass explicitly to the services.
"""
import hashlib
import hmac
import time
from typing import Mapping, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import get_db
from app.models import User
from app.services.authorization import Scope, resolve_scope

USER_HEADER = "x-ledger-user-id"
TIMESTAMP_HEADER = "x-ledger-timestamp"
SIGNATURE_HEADER = "x-ledger-signature"
FALLBACK_MAX_AGE_SECONDS = 60


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _signing_secret() -> str:
    secret = get_settings().internal_auth_secret.strip()
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Request signing secret is not configured.",
        )
    return secret


def _max_age_seconds() -> int:
    max_age = get_settings().internal_auth_max_age_seconds
    return max_age if max_age > 0 else FALLBACK_MAX_AGE_SECONDS


def sign_request(secret: str, method: str, path_with_query: str, user_id: str, timestamp: str) -> str:
    """HMAC-SHA256 over method, path (with query), user id and timestamp, one per line."""
    message = "\n".join((method.upper(), path_with_query, user_id, timestamp))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signed_headers(method: str, path_with_query: str, headers: Mapping[str, str]) -> str:
    """Return the signed user id, or raise 401."""
    user_id, timestamp, signature = (
        headers.get(name, "").strip() for name in (USER_HEADER, TIMESTAMP_HEADER, SIGNATURE_HEADER)
    )
    if not (user_id and timestamp and signature):
        raise _unauthorized("Missing identity headers.")

    if not timestamp.isdigit():
        raise _unauthorized("Malformed identity timestamp.")
    if abs(int(time.time()) - int(timestamp)) > _max_age_seconds():
        raise _unauthorized("Identity signature has expired.")

    expected = sign_request(_signing_secret(), method, path_with_query, user_id, timestamp)
    if not hmac.compare_digest(expected, signature):
        raise _unauthorized("Identity signature does not match.")
    return user_id


def get_current_actor(request: Request, db: Session = Depends(get_db)) -> User:
    """Verify the signed headers and load the calling actor."""
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"

    user_id = verify_signed_headers(request.method, target, request.headers)
    actor: Optional[User] = db.query(User).filter(User.id == user_id).first()
    if actor is None:
        raise _unauthorized("Unknown actor.")
    return actor


def get_current_scope(actor: User = Depends(get_current_actor)) -> Scope:
    return resolve_scope(actor)
