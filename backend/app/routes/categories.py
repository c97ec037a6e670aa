from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.database import get_db
from app.db_helpers import get_current_scope
from app.schemas import CategoryCreate, CategoryResponse, CategoryUpdate
from app.services.authorization import Scope
from app.services.ledger_store import LedgerStore

router = APIRouter()


@router.get("/", response_model=List[CategoryResponse])
def list_categories(
    kind: Optional[str] = None,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """List all categories, optionally only INCOME or EXPENSE ones."""
    return LedgerStore(db).list_categories(kind)


@router.get("/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return LedgerStore(db).get_category(category_id)


@router.post("/", response_model=CategoryResponse, status_code=201)
def create_category(
    category: CategoryCreate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return LedgerStore(db).create_category(category)


@router.put("/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: UUID,
    updates: CategoryUpdate,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    return LedgerStore(db).update_category(category_id, updates)


@router.delete("/{category_id}", status_code=204)
def delete_category(
    category_id: UUID,
    scope: Scope = Depends(get_current_scope),
    db: Session = Depends(get_db),
):
    """Delete a category; transactions using it keep no category."""
    LedgerStore(db).delete_category(category_id)
    return None
