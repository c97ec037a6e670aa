"""
SQLAlchemy engine, session factory and declarative base.
"""
from urllib.parse import urlparse

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import get_settings, is_production_environment

TLS_URL_MARKERS = ("ssl=true", "sslmode=require", "sslmode=verify-ca", "sslmode=verify-full")
# Docker compose service names count as local; they sit on a private network.
LOCAL_DATABASE_HOSTS = {"localhost", "127.0.0.1", "postgres", "db"}


def _requires_tls(database_url: str) -> bool:
    lowered = database_url.lower()
    return any(marker in lowered for marker in TLS_URL_MARKERS)


def _is_remote(database_url: str) -> bool:
    return (urlparse(database_url).hostname or "").lower() not in LOCAL_DATABASE_HOSTS


def normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def build_engine(database_url: str):
    """
    Create an engine for the given URL.
    In-memory SQLite shares one connection so every session sees the same data.
    """
    db_url = normalize_database_url(database_url)

    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, **kwargs)

    if is_production_environment() and _is_remote(db_url) and not _requires_tls(db_url):
        raise ValueError(
            "DATABASE_URL for a remote production database must require TLS "
            f"(one of: {', '.join(TLS_URL_MARKERS)})."
        )

    return create_engine(db_url, pool_pre_ping=True, pool_size=10, max_overflow=20)


engine = build_engine(get_settings().database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: one session per request, always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
