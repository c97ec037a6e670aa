from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database import get_db
from app.db_helpers import get_current_scope
from app.models import LinkedAccount
from app.schemas import (
    AuthorizeResponse,
    CallbackResponse,
    LinkedAccountCreate,
    LinkedAccountResponse,
    LinkedAccountUpdate,
    SyncResponse,
)
from app.services.authorization import Scope
from app.services.ledger_store import LedgerStore
from app.services.sync_service import SyncResult, SyncService

router = APIRouter()


def _account_response(account: LinkedAccount) -> LinkedAccountResponse:
    # Tokens never leave the service; only whether the account holds one.
    return LinkedAccountResponse(
        id=account.id,
        user_id=account.user_id,
        name=account.name,
        institution_code=account.institution_code,
        institution_name=account.institution_name,
        account_number=account.account_number,
        account_kind=account.account_kind,
        connection_kind=account.connection_kind,
        is_active=account.is_active,
        is_authorized=bool(account.access_token),
        token_expires_at=account.token_expires_at,
        created_at=account.created_at,
        last_synced_at=account.last_synced_at,
    )


def sync_response(result: SyncResult) -> SyncResponse:
    return SyncResponse(
        account_id=result.account_id,
        fetched=result.fetched,
        created=result.created,
        skipped=result.skipped,
        rejected=result.rejected,
        last_synced_at=result.last_synced_at,
        message=(
            f"Fetched {result.fetched} transaction(s): created {result.created}, "
            f"skipped {result.skipped} already synced."
        ),
    )


@router.get("/", response_model=List[LinkedAccountResponse])
def list_linked_accounts(
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return [_account_response(a) for a in LedgerStore(db).list_linked_accounts(scope)]


@router.get("/active", response_model=List[LinkedAccountResponse])
def list_active_linked_accounts(
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return [_account_response(a) for a in LedgerStore(db).list_linked_accounts(scope, active_only=True)]


@router.get("/{account_id}", response_model=LinkedAccountResponse)
def get_linked_account(
    account_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return _account_response(LedgerStore(db).get_linked_account(scope, account_id))


@router.post("/", response_model=LinkedAccountResponse, status_code=201)
def create_linked_account(
    data: LinkedAccountCreate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return _account_response(LedgerStore(db).create_linked_account(scope, data))


@router.put("/{account_id}", response_model=LinkedAccountResponse)
def update_linked_account(
    account_id: UUID,
    data: LinkedAccountUpdate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return _account_response(LedgerStore(db).update_linked_account(scope, account_id, data))


@router.delete("/{account_id}", status_code=204)
def delete_linked_account(
    account_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    LedgerStore(db).delete_linked_account(scope, account_id)
    return None


@router.get("/{account_id}/authorize", response_model=AuthorizeResponse)
def authorize_linked_account(
    account_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """Provider URL the owner visits to grant access to the feed."""
    request = SyncService(db).authorize(scope, account_id)
    return AuthorizeResponse(authorization_url=request.authorization_url, state=request.state)


@router.post("/{account_id}/callback", response_model=CallbackResponse)
def linked_account_callback(
    account_id: UUID,
    code: str,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """Exchange an authorization code for the account, then sync it."""
    result = SyncService(db).handle_callback(scope, account_id, code)
    return CallbackResponse(
        success=True,
        account_id=result.account_id,
        transactions_created=result.created,
        message=f"Account authorized; {result.created} transaction(s) imported.",
    )


@router.post("/{account_id}/sync", response_model=SyncResponse)
def sync_linked_account(
    account_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return sync_response(SyncService(db).sync(scope, account_id))
