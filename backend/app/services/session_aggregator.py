"""
Budget session summaries: session metadata plus statistics derived from the
session's transactions at read time.
"""
from dataclasses import dataclass
from typing import List
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.models import BudgetSession
from app.services.authorization import Scope
from app.services.balance_calculator import TransactionSummary, summarize
from app.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSummary:
    session: BudgetSession
    stats: TransactionSummary

    def as_dict(self) -> dict:
        return {
            "id": self.session.id,
            "user_id": self.session.user_id,
            "name": self.session.name,
            "description": self.session.description,
            "color": self.session.color,
            "icon": self.session.icon,
            "created_at": self.session.created_at,
            "last_accessed_at": self.session.last_accessed_at,
            "transaction_count": self.stats.count,
            "total_income": self.stats.total_income,
            "total_expense": self.stats.total_expense,
            "balance": self.stats.balance,
        }


class SessionAggregator:
    def __init__(self, db: Session, store: LedgerStore = None):
        self.db = db
        self.store = store or LedgerStore(db)

    def describe_session(self, scope: Scope, session_id: UUID) -> SessionSummary:
        """Session by id with statistics; bumps its last-accessed time."""
        session = self.store.get_session(scope, session_id, touch=True)
        return SessionSummary(session=session, stats=self._stats(scope, session))

    def list_sessions(self, scope: Scope) -> List[SessionSummary]:
        return [
            SessionSummary(session=session, stats=self._stats(scope, session))
            for session in self.store.list_sessions(scope)
        ]

    def _stats(self, scope: Scope, session: BudgetSession) -> TransactionSummary:
        # Statistics never hide the session itself.
        try:
            return summarize(self.store.list_transactions(scope, session_id=session.id))
        except Exception:
            logger.exception(f"Failed to compute statistics for session {session.id}; returning zeros")
            return TransactionSummary.empty()
