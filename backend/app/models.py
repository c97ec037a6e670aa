"""
SQLAlchemy models for the household ledger.
Transactions, linked accounts and budget sessions are owned by exactly one user;
categories are shared reference data.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Numeric,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from app.database import Base


# Role values
ROLE_OWNER = "OWNER"
ROLE_ADMIN = "ADMIN"

# Transaction kinds
KIND_INCOME = "INCOME"
KIND_EXPENSE = "EXPENSE"
TRANSACTION_KINDS = (KIND_INCOME, KIND_EXPENSE)

# Sync sources / connection kinds
SOURCE_MANUAL = "MANUAL"
SOURCE_BANK_FEED = "BANK_FEED"
SOURCE_CARD_FEED = "CARD_FEED"
CONNECTION_KINDS = (SOURCE_BANK_FEED, SOURCE_CARD_FEED, SOURCE_MANUAL)

ACCOUNT_KINDS = ("CHECKING", "SAVINGS", "CARD")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class User(Base):
    """
    Ledger actor. The password column holds an opaque bcrypt hash.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=ROLE_OWNER)  # OWNER, ADMIN
    created_at = Column(DateTime, default=utcnow)
    last_login_at = Column(DateTime, nullable=True)

    # Relationships
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
    linked_accounts = relationship("LinkedAccount", back_populates="user", cascade="all, delete-orphan")
    budget_sessions = relationship("BudgetSession", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class Category(Base):
    """
    Global category reference data (not owner-scoped).
    """
    __tablename__ = "categories"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)  # INCOME, EXPENSE
    description = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_categories_kind", "kind"),
    )


class LinkedAccount(Base):
    """
    External financial account linked through a bank or card feed.
    Tokens are stored as encrypted envelopes when an encryption key is configured.
    """
    __tablename__ = "linked_accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    institution_code = Column(String(50), nullable=False)
    institution_name = Column(String(255), nullable=False)
    account_number = Column(String(64), nullable=False)  # masked
    account_kind = Column(String(20), nullable=False)  # CHECKING, SAVINGS, CARD
    connection_kind = Column(String(20), nullable=False)  # BANK_FEED, CARD_FEED, MANUAL
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="linked_accounts")

    __table_args__ = (
        Index("idx_linked_accounts_user", "user_id"),
    )


class BudgetSession(Base):
    """
    Named grouping of transactions. Statistics are derived on read, never stored.
    """
    __tablename__ = "budget_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String(20), nullable=True)
    icon = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_accessed_at = Column(DateTime, default=utcnow)

    # Relationships
    user = relationship("User", back_populates="budget_sessions")

    __table_args__ = (
        Index("idx_budget_sessions_user", "user_id"),
    )


class Transaction(Base):
    """
    Income or expense entry. (user_id, external_id) is the dedup key for synced rows.
    """
    __tablename__ = "transactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(20), nullable=False)  # INCOME, EXPENSE
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(Text, nullable=False)
    category_id = Column(Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("budget_sessions.id", ondelete="SET NULL"), nullable=True)
    linked_account_id = Column(Uuid(as_uuid=True), ForeignKey("linked_accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    transaction_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    external_id = Column(String(255), nullable=True)
    sync_source = Column(String(20), nullable=True)  # MANUAL, BANK_FEED, CARD_FEED

    # Relationships
    user = relationship("User", back_populates="transactions")

    __table_args__ = (
        Index("idx_transactions_user", "user_id"),
        Index("idx_transactions_user_kind", "user_id", "kind"),
        Index("idx_transactions_session", "session_id"),
        Index("idx_transactions_transaction_at", "transaction_at"),
        UniqueConstraint("user_id", "external_id", name="transactions_user_external_id"),
    )
