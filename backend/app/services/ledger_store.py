"""
Scoped persistence for transactions, linked accounts, budget sessions and categories.

Every owner-scoped operation takes a resolved ``Scope``. Reads and writes of a
single record re-check ownership against the fetched row: Self scopes may only
touch their own rows, Global scopes may touch any row.
"""
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.errors import InvalidArgumentError, InvalidStateError, NotFoundError
from app.integrations.base import ExternalTransactionData
from app.models import (
    ACCOUNT_KINDS,
    CONNECTION_KINDS,
    KIND_EXPENSE,
    KIND_INCOME,
    SOURCE_MANUAL,
    TRANSACTION_KINDS,
    BudgetSession,
    Category,
    LinkedAccount,
    Transaction,
    as_naive_utc,
    utcnow,
)
from app.schemas import (
    BudgetSessionCreate,
    BudgetSessionUpdate,
    CategoryCreate,
    CategoryUpdate,
    LinkedAccountCreate,
    LinkedAccountUpdate,
    TransactionCreate,
    TransactionUpdate,
)
from app.services.authorization import Scope
from app.services.balance_calculator import ZERO, can_afford

logger = logging.getLogger(__name__)

DEFAULT_SESSION_COLOR = "#0070f3"
DEFAULT_SESSION_ICON = "💰"

# Mirrors Transaction.amount Numeric(15, 2) and Transaction.external_id String(255)
AMOUNT_SCALE = 2
AMOUNT_INTEGER_DIGITS = 13
EXTERNAL_ID_MAX_LENGTH = 255


def validate_transaction_fields(kind: Optional[str], amount, description: Optional[str]) -> Decimal:
    """
    Check the transaction invariants and return the amount as a Decimal.

    Raises:
        InvalidArgumentError: unknown kind, non-positive or over-precise amount, blank description
    """
    if kind not in TRANSACTION_KINDS:
        raise InvalidArgumentError(f"Transaction kind must be one of {', '.join(TRANSACTION_KINDS)}.")

    if amount is None:
        raise InvalidArgumentError("Transaction amount is required.")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidArgumentError(f"Invalid transaction amount: {amount!r}") from exc
    if not value.is_finite() or value <= 0:
        raise InvalidArgumentError("Transaction amount must be greater than zero.")

    # Trailing zeros do not count as decimal places ("10.500" is fine).
    _, digits, exponent = value.as_tuple()
    trailing_zeros = len(digits) - len("".join(map(str, digits)).rstrip("0"))
    if exponent + trailing_zeros < -AMOUNT_SCALE:
        raise InvalidArgumentError(f"Transaction amount supports at most {AMOUNT_SCALE} decimal places.")
    if value.adjusted() >= AMOUNT_INTEGER_DIGITS:
        raise InvalidArgumentError(f"Transaction amount supports at most {AMOUNT_INTEGER_DIGITS} integer digits.")

    if description is None or not description.strip():
        raise InvalidArgumentError("Transaction description must not be blank.")

    return value


def mask_account_number(account_number: str) -> str:
    """Keep the last four characters visible."""
    cleaned = account_number.strip()
    if len(cleaned) <= 4:
        return cleaned
    return "*" * (len(cleaned) - 4) + cleaned[-4:]


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise InvalidArgumentError(f"{field} must not be blank.")
    return value.strip()


def _normalize_choice(value: Optional[str], choices, field: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in choices:
        raise InvalidArgumentError(f"{field} must be one of {', '.join(choices)}.")
    return normalized


class LedgerStore:
    """Scoped CRUD over the ledger tables."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    @contextmanager
    def atomic(self):
        """Commit everything staged inside the block, or roll all of it back."""
        try:
            yield self.db
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def list_transactions(
        self,
        scope: Scope,
        kind: Optional[str] = None,
        session_id: Optional[UUID] = None,
    ) -> List[Transaction]:
        """
        List transactions visible to the scope.

        Filtering by kind or session orders by transaction time, newest first.
        The unfiltered listing keeps creation order.
        """
        query = self.db.query(Transaction)
        if not scope.is_global:
            query = query.filter(Transaction.user_id == scope.actor_id)

        if kind is not None:
            kind = _normalize_choice(kind, TRANSACTION_KINDS, "Transaction kind")
            query = query.filter(Transaction.kind == kind)
        if session_id is not None:
            query = query.filter(Transaction.session_id == session_id)

        if kind is not None or session_id is not None:
            query = query.order_by(Transaction.transaction_at.desc(), Transaction.created_at.desc())
        else:
            query = query.order_by(Transaction.created_at.asc())
        return query.all()

    def get_transaction(self, scope: Scope, transaction_id: UUID) -> Transaction:
        transaction = self.db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if not transaction:
            raise NotFoundError.for_record("Transaction", transaction_id)
        scope.ensure_can_access(transaction.user_id)
        return transaction

    def create_transaction(self, scope: Scope, draft: TransactionCreate) -> Transaction:
        """
        Validate and persist a manual transaction owned by the caller.

        Administrators also create under their own id.
        """
        amount = validate_transaction_fields(draft.kind, draft.amount, draft.description)
        owner_id = scope.actor_id

        if draft.category_id is not None:
            self.get_category(draft.category_id)
        if draft.session_id is not None:
            self._get_owned_session(owner_id, draft.session_id)

        if self.settings.enforce_sufficient_balance and draft.kind == KIND_EXPENSE:
            current_balance = self.balance(Scope.self_of(owner_id))
            if not can_afford(current_balance, amount, draft.kind):
                raise InvalidStateError(
                    f"Insufficient balance: current {current_balance}, required {amount}."
                )

        transaction = Transaction(
            user_id=owner_id,
            kind=draft.kind,
            amount=amount,
            description=draft.description.strip(),
            category_id=draft.category_id,
            session_id=draft.session_id,
            transaction_at=as_naive_utc(draft.transaction_at) or utcnow(),
            created_at=utcnow(),
            sync_source=SOURCE_MANUAL,
        )
        with self.atomic():
            self.db.add(transaction)
        self.db.refresh(transaction)
        logger.info(f"Created {transaction.kind} transaction {transaction.id} for user {owner_id}")
        return transaction

    def update_transaction(self, scope: Scope, transaction_id: UUID, changes: TransactionUpdate) -> Transaction:
        """
        Replace kind, amount, description, time, category and session.

        The creation invariants are checked again. An omitted transaction time keeps
        the stored one; omitted category or session references are cleared.
        """
        transaction = self.get_transaction(scope, transaction_id)
        amount = validate_transaction_fields(changes.kind, changes.amount, changes.description)

        if changes.category_id is not None:
            self.get_category(changes.category_id)
        if changes.session_id is not None:
            self._get_owned_session(transaction.user_id, changes.session_id)

        with self.atomic():
            transaction.kind = changes.kind
            transaction.amount = amount
            transaction.description = changes.description.strip()
            if changes.transaction_at is not None:
                transaction.transaction_at = as_naive_utc(changes.transaction_at)
            transaction.category_id = changes.category_id
            transaction.session_id = changes.session_id
        self.db.refresh(transaction)
        return transaction

    def delete_transaction(self, scope: Scope, transaction_id: UUID) -> None:
        transaction = self.get_transaction(scope, transaction_id)
        with self.atomic():
            self.db.delete(transaction)
        logger.info(f"Deleted transaction {transaction_id}")

    def aggregate_totals(self, scope: Scope, kind: str) -> Decimal:
        """Sum of amounts of one kind over the scope's transactions."""
        kind = _normalize_choice(kind, TRANSACTION_KINDS, "Transaction kind")

        query = self.db.query(func.sum(Transaction.amount)).filter(Transaction.kind == kind)
        if not scope.is_global:
            query = query.filter(Transaction.user_id == scope.actor_id)
        total = query.scalar()

        # Handle NULL result from sum() when no transactions exist
        if total is None:
            return ZERO
        return Decimal(str(total))

    def total_income(self, scope: Scope) -> Decimal:
        return self.aggregate_totals(scope, KIND_INCOME)

    def total_expense(self, scope: Scope) -> Decimal:
        return self.aggregate_totals(scope, KIND_EXPENSE)

    def balance(self, scope: Scope) -> Decimal:
        return self.total_income(scope) - self.total_expense(scope)

    # Sync staging helpers. These add to the session without committing; the
    # sync service commits them together with the account watermark.

    def external_id_exists(self, user_id: str, external_id: str) -> bool:
        return self.db.query(Transaction.id).filter(
            Transaction.user_id == user_id,
            Transaction.external_id == external_id,
        ).first() is not None

    def stage_external_transaction(
        self,
        account: LinkedAccount,
        item: ExternalTransactionData,
        source: str,
    ) -> Transaction:
        amount = validate_transaction_fields(item.kind, item.amount, item.description)
        if item.external_id and len(item.external_id) > EXTERNAL_ID_MAX_LENGTH:
            raise InvalidArgumentError(f"External id longer than {EXTERNAL_ID_MAX_LENGTH} characters.")
        transaction = Transaction(
            user_id=account.user_id,
            kind=item.kind,
            amount=amount,
            description=item.description.strip(),
            linked_account_id=account.id,
            transaction_at=as_naive_utc(item.occurred_at) or utcnow(),
            created_at=utcnow(),
            external_id=item.external_id or None,
            sync_source=source,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    @staticmethod
    def stage_last_synced(account: LinkedAccount, synced_at: datetime) -> datetime:
        """Advance the watermark; it never moves backwards."""
        if account.last_synced_at is None or synced_at > account.last_synced_at:
            account.last_synced_at = synced_at
        return account.last_synced_at

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def list_linked_accounts(self, scope: Scope, active_only: bool = False) -> List[LinkedAccount]:
        query = self.db.query(LinkedAccount)
        if not scope.is_global:
            query = query.filter(LinkedAccount.user_id == scope.actor_id)
        if active_only:
            query = query.filter(LinkedAccount.is_active.is_(True))
        return query.order_by(LinkedAccount.created_at.desc()).all()

    def get_linked_account(self, scope: Scope, account_id: UUID) -> LinkedAccount:
        account = self.db.query(LinkedAccount).filter(LinkedAccount.id == account_id).first()
        if not account:
            raise NotFoundError.for_record("Linked account", account_id)
        scope.ensure_can_access(account.user_id)
        return account

    def create_linked_account(self, scope: Scope, data: LinkedAccountCreate) -> LinkedAccount:
        account = LinkedAccount(
            user_id=scope.actor_id,
            name=_require_text(data.name, "Account name"),
            institution_code=_require_text(data.institution_code, "Institution code"),
            institution_name=_require_text(data.institution_name, "Institution name"),
            account_number=mask_account_number(_require_text(data.account_number, "Account number")),
            account_kind=_normalize_choice(data.account_kind, ACCOUNT_KINDS, "Account kind"),
            connection_kind=_normalize_choice(data.connection_kind, CONNECTION_KINDS, "Connection kind"),
            is_active=True if data.is_active is None else data.is_active,
            created_at=utcnow(),
        )
        with self.atomic():
            self.db.add(account)
        self.db.refresh(account)
        logger.info(f"Created {account.connection_kind} linked account {account.id} for user {scope.actor_id}")
        return account

    def update_linked_account(self, scope: Scope, account_id: UUID, data: LinkedAccountUpdate) -> LinkedAccount:
        account = self.get_linked_account(scope, account_id)
        name = _require_text(data.name, "Account name")
        institution_code = _require_text(data.institution_code, "Institution code")
        institution_name = _require_text(data.institution_name, "Institution name")
        account_number = _require_text(data.account_number, "Account number")
        account_kind = _normalize_choice(data.account_kind, ACCOUNT_KINDS, "Account kind")
        connection_kind = _normalize_choice(data.connection_kind, CONNECTION_KINDS, "Connection kind")
        provider_changed = (
            connection_kind != account.connection_kind or institution_code != account.institution_code
        )

        with self.atomic():
            if provider_changed:
                # Tokens are only valid for the provider that issued them.
                account.access_token = None
                account.refresh_token = None
                account.token_expires_at = None
                logger.info(f"Provider of linked account {account.id} changed; stored credentials cleared")
            account.name = name
            account.institution_code = institution_code
            account.institution_name = institution_name
            account.account_number = mask_account_number(account_number)
            account.account_kind = account_kind
            account.connection_kind = connection_kind
            account.is_active = data.is_active
        self.db.refresh(account)
        return account

    def delete_linked_account(self, scope: Scope, account_id: UUID) -> None:
        """Delete the account; transactions synced from it stay in the ledger."""
        account = self.get_linked_account(scope, account_id)
        with self.atomic():
            self.db.query(Transaction).filter(
                Transaction.linked_account_id == account.id
            ).update({Transaction.linked_account_id: None}, synchronize_session=False)
            self.db.delete(account)
        logger.info(f"Deleted linked account {account_id}")

    def mark_synced(self, scope: Scope, account_id: UUID) -> LinkedAccount:
        account = self.get_linked_account(scope, account_id)
        with self.atomic():
            self.stage_last_synced(account, utcnow())
        self.db.refresh(account)
        return account

    # ------------------------------------------------------------------
    # Budget sessions
    # ------------------------------------------------------------------

    def list_sessions(self, scope: Scope) -> List[BudgetSession]:
        query = self.db.query(BudgetSession)
        if not scope.is_global:
            query = query.filter(BudgetSession.user_id == scope.actor_id)
        return query.order_by(BudgetSession.last_accessed_at.desc()).all()

    def get_session(self, scope: Scope, session_id: UUID, touch: bool = False) -> BudgetSession:
        """Fetch a session; ``touch`` bumps its last-accessed time."""
        session = self.db.query(BudgetSession).filter(BudgetSession.id == session_id).first()
        if not session:
            raise NotFoundError.for_record("Session", session_id)
        scope.ensure_can_access(session.user_id)

        if touch:
            with self.atomic():
                session.last_accessed_at = utcnow()
            self.db.refresh(session)
        return session

    def _get_owned_session(self, owner_id: str, session_id: UUID) -> BudgetSession:
        session = self.db.query(BudgetSession).filter(
            BudgetSession.id == session_id,
            BudgetSession.user_id == owner_id,
        ).first()
        if not session:
            raise NotFoundError.for_record("Session", session_id)
        return session

    def create_session(self, scope: Scope, data: BudgetSessionCreate) -> BudgetSession:
        now = utcnow()
        session = BudgetSession(
            user_id=scope.actor_id,
            name=_require_text(data.name, "Session name"),
            description=data.description,
            color=data.color or DEFAULT_SESSION_COLOR,
            icon=data.icon or DEFAULT_SESSION_ICON,
            created_at=now,
            last_accessed_at=now,
        )
        with self.atomic():
            self.db.add(session)
        self.db.refresh(session)
        return session

    def update_session(self, scope: Scope, session_id: UUID, data: BudgetSessionUpdate) -> BudgetSession:
        session = self.get_session(scope, session_id)
        name = _require_text(data.name, "Session name")
        with self.atomic():
            session.name = name
            session.description = data.description
            session.color = data.color
            session.icon = data.icon
        self.db.refresh(session)
        return session

    def delete_session(self, scope: Scope, session_id: UUID) -> None:
        """Delete the session; its transactions are kept without a session."""
        session = self.get_session(scope, session_id)
        with self.atomic():
            self.db.query(Transaction).filter(
                Transaction.session_id == session.id
            ).update({Transaction.session_id: None}, synchronize_session=False)
            self.db.delete(session)

    # ------------------------------------------------------------------
    # Categories (global reference data)
    # ------------------------------------------------------------------

    def list_categories(self, kind: Optional[str] = None) -> List[Category]:
        query = self.db.query(Category)
        if kind is not None:
            query = query.filter(Category.kind == _normalize_choice(kind, TRANSACTION_KINDS, "Category kind"))
        return query.order_by(Category.kind, Category.name).all()

    def get_category(self, category_id: UUID) -> Category:
        category = self.db.query(Category).filter(Category.id == category_id).first()
        if not category:
            raise NotFoundError.for_record("Category", category_id)
        return category

    def create_category(self, data: CategoryCreate) -> Category:
        category = Category(
            name=_require_text(data.name, "Category name"),
            kind=_normalize_choice(data.kind, TRANSACTION_KINDS, "Category kind"),
            description=data.description,
        )
        with self.atomic():
            self.db.add(category)
        self.db.refresh(category)
        return category

    def update_category(self, category_id: UUID, data: CategoryUpdate) -> Category:
        category = self.get_category(category_id)
        name = _require_text(data.name, "Category name")
        kind = _normalize_choice(data.kind, TRANSACTION_KINDS, "Category kind")
        with self.atomic():
            category.name = name
            category.kind = kind
            category.description = data.description
        self.db.refresh(category)
        return category

    def delete_category(self, category_id: UUID) -> None:
        category = self.get_category(category_id)
        with self.atomic():
            self.db.query(Transaction).filter(
                Transaction.category_id == category.id
            ).update({Transaction.category_id: None}, synchronize_session=False)
            self.db.delete(category)
