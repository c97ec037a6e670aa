"""
Deterministic in-process feed used when FEED_MODE=fake and in tests.

The same account always yields the same batch with the same external ids, so
repeated syncs exercise deduplication exactly like a real unchanged upstream.
"""
import urllib.parse
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Sequence
import logging

from app.integrations.base import ExternalTransactionData, FeedAccount, FeedConnector, OAuthCredentials
from app.models import KIND_EXPENSE, KIND_INCOME, SOURCE_BANK_FEED, SOURCE_CARD_FEED, utcnow

logger = logging.getLogger(__name__)

TOKEN_LIFETIME = timedelta(hours=2)

# (suffix, kind, amount, description)
BANK_SAMPLES = (
    ("1", KIND_EXPENSE, Decimal("5000"), "Coffee"),
    ("2", KIND_EXPENSE, Decimal("15000"), "Lunch"),
    ("3", KIND_INCOME, Decimal("2000000"), "Monthly salary"),
)

CARD_SAMPLES = (
    ("1", KIND_EXPENSE, Decimal("30000"), "Grocery mart"),
    ("2", KIND_EXPENSE, Decimal("25000"), "Fuel"),
    ("3", KIND_EXPENSE, Decimal("12000"), "Movie tickets"),
)


class FakeFeedConnector(FeedConnector):
    """
    Stand-in for a bank or card feed.

    ``transactions`` replaces the built-in sample batch; tests use it to feed
    specific upstream results. Set ``fail_with`` to make the next fetch raise.
    """

    def __init__(
        self,
        source: str = SOURCE_BANK_FEED,
        transactions: Optional[Sequence[ExternalTransactionData]] = None,
    ):
        self.source = source
        self.transactions = list(transactions) if transactions is not None else None
        self.fail_with: Optional[Exception] = None
        self.fetch_calls = 0
        self.refresh_calls = 0

    def build_authorization_url(self, source_code: str, state: Optional[str] = None) -> str:
        params = {"source_code": source_code}
        if state:
            params["state"] = state
        return f"https://fake-feed.local/{self.source.lower()}/authorize?{urllib.parse.urlencode(params)}"

    def exchange_code(self, account: FeedAccount, authorization_code: str) -> OAuthCredentials:
        logger.info(f"Fake {self.source} code exchange for account {account.account_id}")
        return self._issue(account, "access")

    def refresh_credentials(self, account: FeedAccount) -> OAuthCredentials:
        self.refresh_calls += 1
        return self._issue(account, f"refreshed{self.refresh_calls}")

    def fetch_transactions(self, account: FeedAccount) -> List[ExternalTransactionData]:
        self.fetch_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.transactions is not None:
            return [item.model_copy() for item in self.transactions]
        return self.sample_transactions(account)

    def sample_transactions(self, account: FeedAccount) -> List[ExternalTransactionData]:
        samples = CARD_SAMPLES if self.source == SOURCE_CARD_FEED else BANK_SAMPLES
        prefix = "CARD" if self.source == SOURCE_CARD_FEED else "EXT"
        return [
            ExternalTransactionData(
                external_id=f"{prefix}_{account.account_id.hex}_{suffix}",
                kind=kind,
                amount=amount,
                description=description,
            )
            for suffix, kind, amount, description in samples
        ]

    def _issue(self, account: FeedAccount, label: str) -> OAuthCredentials:
        return OAuthCredentials(
            access_token=f"fake_{label}_token_{account.account_id.hex}",
            refresh_token=f"fake_refresh_token_{account.account_id.hex}",
            expires_at=utcnow() + TOKEN_LIFETIME,
        )
