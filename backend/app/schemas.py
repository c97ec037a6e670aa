from pydantic import BaseModel, ConfigDict
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID


# Transaction Schemas
# Invariants (amount > 0, known kind, non-blank description) are enforced by
# the ledger store so that every caller gets the same InvalidArgument error.
class TransactionBase(BaseModel):
    kind: str  # INCOME, EXPENSE
    amount: Decimal
    description: str
    category_id: Optional[UUID] = None
    session_id: Optional[UUID] = None
    transaction_at: Optional[datetime] = None


class TransactionCreate(TransactionBase):
    pass


class TransactionUpdate(TransactionBase):
    """Full replacement of the mutable transaction fields."""
    pass


class TransactionResponse(BaseModel):
    id: UUID
    user_id: str
    kind: str
    amount: Decimal
    description: str
    category_id: Optional[UUID] = None
    session_id: Optional[UUID] = None
    linked_account_id: Optional[UUID] = None
    transaction_at: datetime
    created_at: datetime
    external_id: Optional[str] = None
    sync_source: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SummaryResponse(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    balance: Decimal
    count: int

    model_config = ConfigDict(from_attributes=True)


class TotalResponse(BaseModel):
    kind: str
    total: Decimal


# Budget Session Schemas
class BudgetSessionBase(BaseModel):
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class BudgetSessionCreate(BudgetSessionBase):
    pass


class BudgetSessionUpdate(BudgetSessionBase):
    pass


class BudgetSessionResponse(BudgetSessionBase):
    id: UUID
    user_id: str
    created_at: datetime
    last_accessed_at: Optional[datetime] = None
    transaction_count: int = 0
    total_income: Decimal = Decimal("0")
    total_expense: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")


# Linked Account Schemas
class LinkedAccountBase(BaseModel):
    name: str
    institution_code: str
    institution_name: str
    account_number: str
    account_kind: str  # CHECKING, SAVINGS, CARD
    connection_kind: str  # BANK_FEED, CARD_FEED, MANUAL


class LinkedAccountCreate(LinkedAccountBase):
    is_active: Optional[bool] = None


class LinkedAccountUpdate(LinkedAccountBase):
    is_active: bool


class LinkedAccountResponse(LinkedAccountBase):
    id: UUID
    user_id: str
    is_active: bool
    is_authorized: bool
    token_expires_at: Optional[datetime] = None
    created_at: datetime
    last_synced_at: Optional[datetime] = None


# Category Schemas
class CategoryBase(BaseModel):
    name: str
    kind: str  # INCOME, EXPENSE
    description: Optional[str] = None


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(CategoryBase):
    pass


class CategoryResponse(CategoryBase):
    id: UUID

    model_config = ConfigDict(from_attributes=True)


# Sync Schemas
class AuthorizeResponse(BaseModel):
    authorization_url: str
    state: str


class SyncResponse(BaseModel):
    account_id: UUID
    fetched: int
    created: int
    skipped: int
    rejected: int = 0
    last_synced_at: datetime
    message: str


class CallbackResponse(BaseModel):
    success: bool
    account_id: UUID
    transactions_created: int
    message: str
