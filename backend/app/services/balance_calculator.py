"""
Pure income/expense/balance arithmetic. No database access.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from app.errors import InvalidArgumentError
from app.models import KIND_EXPENSE, KIND_INCOME

ZERO = Decimal("0")


@dataclass(frozen=True)
class TransactionSummary:
    total_income: Decimal = ZERO
    total_expense: Decimal = ZERO
    balance: Decimal = ZERO
    count: int = 0

    @classmethod
    def empty(cls) -> "TransactionSummary":
        return cls()


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def summarize(transactions: Optional[Iterable]) -> TransactionSummary:
    """
    Aggregate items exposing ``kind`` and ``amount``.

    Items of any other kind are counted but contribute to neither total.
    """
    if transactions is None:
        return TransactionSummary.empty()

    total_income = ZERO
    total_expense = ZERO
    count = 0
    for transaction in transactions:
        count += 1
        if transaction.kind == KIND_INCOME:
            total_income += _as_decimal(transaction.amount)
        elif transaction.kind == KIND_EXPENSE:
            total_expense += _as_decimal(transaction.amount)

    if count == 0:
        return TransactionSummary.empty()

    return TransactionSummary(
        total_income=total_income,
        total_expense=total_expense,
        balance=total_income - total_expense,
        count=count,
    )


def can_afford(current_balance: Optional[Decimal], amount: Optional[Decimal], kind: Optional[str]) -> bool:
    """Income is always allowed; an expense needs ``current_balance >= amount``."""
    if current_balance is None or amount is None or kind is None:
        return False
    if kind == KIND_INCOME:
        return True
    return _as_decimal(current_balance) >= _as_decimal(amount)


def apply_delta(current_balance: Optional[Decimal], amount: Optional[Decimal], kind: Optional[str]) -> Decimal:
    if current_balance is None or amount is None or kind is None:
        raise InvalidArgumentError("current_balance, amount and kind are required.")
    if kind == KIND_INCOME:
        return _as_decimal(current_balance) + _as_decimal(amount)
    return _as_decimal(current_balance) - _as_decimal(amount)
