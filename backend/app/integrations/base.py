"""
Base connector interface for external transaction feeds.
"""
from abc import ABC, abstractmethod
from typing import List, Optional
from decimal import Decimal
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel


class OAuthCredentials(BaseModel):
    """Tokens issued by a feed provider."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class ExternalTransactionData(BaseModel):
    """Canonical transaction fetched from a feed."""
    external_id: Optional[str] = None
    kind: str  # INCOME, EXPENSE
    amount: Decimal
    description: str
    occurred_at: Optional[datetime] = None
    metadata: dict = {}


class FeedAccount(BaseModel):
    """
    What a connector needs to know about a linked account.
    Tokens are already decrypted.
    """
    account_id: UUID
    institution_code: str
    account_number: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class FeedConnector(ABC):
    """Abstract base class for bank-feed and card-feed connectors."""

    # MANUAL / BANK_FEED / CARD_FEED tag written on synced transactions
    source: str

    @abstractmethod
    def build_authorization_url(self, source_code: str, state: Optional[str] = None) -> str:
        """URL the account owner visits to grant access."""
        pass

    @abstractmethod
    def exchange_code(self, account: FeedAccount, authorization_code: str) -> OAuthCredentials:
        """Exchange an OAuth authorization code for tokens."""
        pass

    @abstractmethod
    def refresh_credentials(self, account: FeedAccount) -> OAuthCredentials:
        """Obtain fresh tokens using the account's refresh token."""
        pass

    @abstractmethod
    def fetch_transactions(self, account: FeedAccount) -> List[ExternalTransactionData]:
        """Fetch the current batch of transactions for the account."""
        pass

    def close(self) -> None:
        """Release network resources, if any."""
        pass
