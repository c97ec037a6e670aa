"""
Provider redirect target. The browser arrives here straight from the bank or
card issuer, so there are no signed headers; the one-time ``state`` issued by
``/linked-accounts/{id}/authorize`` identifies the account and actor.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas import CallbackResponse
from app.services.sync_service import SyncService

router = APIRouter()


@router.get("/{source}/callback", response_model=CallbackResponse)
def provider_callback(
    source: str,
    code: str,
    state: str,
    db: Session = Depends(get_db),
):
    result = SyncService(db).handle_provider_callback(source, state, code)
    return CallbackResponse(
        success=True,
        account_id=result.account_id,
        transactions_created=result.created,
        message=f"Account authorized; {result.created} transaction(s) imported.",
    )
