from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database import get_db
from app.db_helpers import get_current_scope
from app.schemas import BudgetSessionCreate, BudgetSessionResponse, BudgetSessionUpdate
from app.services.authorization import Scope
from app.services.balance_calculator import TransactionSummary
from app.services.ledger_store import LedgerStore
from app.services.session_aggregator import SessionAggregator, SessionSummary

router = APIRouter()


@router.get("/", response_model=List[BudgetSessionResponse])
def list_sessions(
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """List sessions with their statistics, most recently used first."""
    return [summary.as_dict() for summary in SessionAggregator(db).list_sessions(scope)]


@router.get("/{session_id}", response_model=BudgetSessionResponse)
def get_session(
    session_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return SessionAggregator(db).describe_session(scope, session_id).as_dict()


@router.post("/", response_model=BudgetSessionResponse, status_code=201)
def create_session(
    data: BudgetSessionCreate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    session = LedgerStore(db).create_session(scope, data)
    return SessionSummary(session=session, stats=TransactionSummary.empty()).as_dict()


@router.put("/{session_id}", response_model=BudgetSessionResponse)
def update_session(
    session_id: UUID,
    data: BudgetSessionUpdate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    aggregator = SessionAggregator(db)
    aggregator.store.update_session(scope, session_id, data)
    return aggregator.describe_session(scope, session_id).as_dict()


@router.delete("/{session_id}", status_code=204)
def delete_session(
    session_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    LedgerStore(db).delete_session(scope, session_id)
    return None
