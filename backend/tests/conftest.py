"""
Shared fixtures: an in-memory SQLite ledger and three actors.

The engine is built when ``app.database`` is imported, so the environment is
set before any ``app`` import.
"""
import os
import sys

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INTERNAL_AUTH_SECRET"] = "test-internal-secret"
os.environ["FEED_MODE"] = "fake"
os.environ["SYNC_LOCK_BACKEND"] = "local"
os.environ["ENFORCE_SUFFICIENT_BALANCE"] = "false"
os.environ["AUTO_CREATE_TABLES"] = "false"
for _key in ("DATA_ENCRYPTION_KEY_CURRENT", "DATA_ENCRYPTION_KEY_PREVIOUS"):
    os.environ.pop(_key, None)

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.config import Settings  # noqa: E402
from app.database import Base, SessionLocal, engine, get_db  # noqa: E402
from app.models import ROLE_ADMIN, ROLE_OWNER, User  # noqa: E402
from app.services.authorization import Scope  # noqa: E402


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _make_user(db, user_id: str, role: str) -> User:
    user = User(id=user_id, email=f"{user_id}@example.com", password_hash="not-a-hash", name=user_id, role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def owner_a(db) -> User:
    return _make_user(db, "owner-a", ROLE_OWNER)


@pytest.fixture()
def owner_b(db) -> User:
    return _make_user(db, "owner-b", ROLE_OWNER)


@pytest.fixture()
def admin(db) -> User:
    return _make_user(db, "admin-1", ROLE_ADMIN)


@pytest.fixture()
def scope_a(owner_a) -> Scope:
    return Scope.self_of(owner_a.id)


@pytest.fixture()
def scope_b(owner_b) -> Scope:
    return Scope.self_of(owner_b.id)


@pytest.fixture()
def admin_scope(admin) -> Scope:
    return Scope.global_for(admin.id)


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def client(db):
    from app.main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
