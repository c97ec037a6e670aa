from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.database import get_db
from app.db_helpers import get_current_scope
from app.schemas import (
    SummaryResponse,
    TotalResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionUpdate,
)
from app.services.authorization import Scope
from app.services.balance_calculator import summarize
from app.services.ledger_store import LedgerStore

router = APIRouter()


@router.get("/", response_model=List[TransactionResponse])
def list_transactions(
    kind: Optional[str] = None,
    session_id: Optional[UUID] = None,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """List transactions, optionally filtered by kind or session."""
    return LedgerStore(db).list_transactions(scope, kind=kind, session_id=session_id)


@router.get("/summary", response_model=SummaryResponse)
def get_summary(
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """Income, expense, balance and count over every visible transaction."""
    return summarize(LedgerStore(db).list_transactions(scope))


@router.get("/totals/{kind}", response_model=TotalResponse)
def get_total(
    kind: str,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """Sum for one kind; ``kind`` is case-insensitive, as in the list filter."""
    total = LedgerStore(db).aggregate_totals(scope, kind)
    return TotalResponse(kind=kind.strip().upper(), total=total)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return LedgerStore(db).get_transaction(scope, transaction_id)


@router.post("/", response_model=TransactionResponse, status_code=201)
def create_transaction(
    transaction: TransactionCreate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return LedgerStore(db).create_transaction(scope, transaction)


@router.put("/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: UUID,
    transaction: TransactionUpdate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """Replace the mutable fields of a transaction."""
    return LedgerStore(db).update_transaction(scope, transaction_id, transaction)


@router.delete("/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    LedgerStore(db).delete_transaction(scope, transaction_id)
    return None
