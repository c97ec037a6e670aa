"""
Card issuer feed connector.

Each issuer hosts its own API, derived from ``CARD_FEED_BASE_URL_TEMPLATE`` and
the issuer code stored on the linked account:
    GET  {base}/oauth/authorize
    POST {base}/oauth/token
    GET  {base}/api/v1/transactions

Approvals are expenses; cancellations are refunds booked as income under a
separate external id so they never collide with the original approval.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.integrations.base import ExternalTransactionData, FeedAccount
from app.integrations.oauth_feed import OAuthFeedConnector
from app.models import KIND_EXPENSE, KIND_INCOME, SOURCE_CARD_FEED

STATUS_APPROVED = "APPROVED"
STATUS_CANCELLED = "CANCELLED"


class CardFeedConnector(OAuthFeedConnector):
    """Card feed connector; one instance serves every issuer."""

    source = SOURCE_CARD_FEED
    provider_name = "card issuer"

    def __init__(
        self,
        base_url_template: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: Optional[httpx.Client] = None,
    ):
        super().__init__(client_id, client_secret, redirect_uri, http_client=http_client)
        self.base_url_template = base_url_template

    def base_url(self, card_company: str) -> str:
        return self.base_url_template.format(company=card_company.strip().lower()).rstrip("/")

    def authorize_endpoint(self, source_code: str) -> str:
        return f"{self.base_url(source_code)}/oauth/authorize"

    def authorization_params(self, source_code: str) -> Dict[str, str]:
        return {"scope": "transactions:read"}

    def token_endpoint(self, account: FeedAccount) -> str:
        return f"{self.base_url(account.institution_code)}/oauth/token"

    def request_transactions(self, account: FeedAccount) -> List[Dict[str, Any]]:
        params = {"card_number": account.account_number}
        if account.last_synced_at is not None:
            params["since"] = account.last_synced_at.isoformat()
        body = self._get_json(
            f"{self.base_url(account.institution_code)}/api/v1/transactions",
            account.access_token,
            params=params,
        )
        return body.get("transactions", [])

    def normalize_transaction(self, raw: dict) -> ExternalTransactionData:
        status = raw.get("status", STATUS_APPROVED)
        approval_no = str(raw["approval_no"])
        if status == STATUS_APPROVED:
            kind = KIND_EXPENSE
            external_id = approval_no
        elif status == STATUS_CANCELLED:
            kind = KIND_INCOME
            external_id = f"{approval_no}:CANCEL"
        else:
            raise ValueError(f"unknown card transaction status {status!r}")

        merchant = (raw.get("merchant_name") or "").strip()
        return ExternalTransactionData(
            external_id=f"CARD_{external_id}",
            kind=kind,
            amount=abs(Decimal(str(raw["amount"]))),
            description=merchant or "Card transaction",
            occurred_at=datetime.fromisoformat(raw["approved_at"]),
            metadata={"status": status, "installments": raw.get("installments")},
        )
