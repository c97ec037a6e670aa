from fastapi import APIRouter
from app.routes import categories, linked_accounts, oauth, sessions, transactions

api_router = APIRouter()

api_router.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
api_router.include_router(linked_accounts.router, prefix="/linked-accounts", tags=["linked-accounts"])
api_router.include_router(oauth.router, prefix="/oauth", tags=["oauth"])
api_router.include_router(categories.router, prefix="/categories", tags=["categories"])
