"""
Shared HTTP plumbing for OAuth2 transaction feeds.

Subclasses provide the provider URLs and the mapping from raw provider rows to
``ExternalTransactionData``.
"""
import urllib.parse
from abc import abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional
import logging

import httpx

from app.errors import ExternalSyncError
from app.integrations.base import ExternalTransactionData, FeedAccount, FeedConnector, OAuthCredentials
from app.models import utcnow

logger = logging.getLogger(__name__)


class OAuthFeedConnector(FeedConnector):
    """OAuth2 authorization-code connector over httpx."""

    provider_name = "feed"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            client_id: OAuth client id issued by the provider
            client_secret: OAuth client secret
            redirect_uri: Callback URL registered with the provider
            http_client: Preconfigured client (tests pass one with a mock transport)
            timeout: Request timeout in seconds
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.client = http_client or httpx.Client(
            timeout=timeout,
            headers={"User-Agent": "Household-Ledger/1.0"},
        )

    # Provider specifics

    @abstractmethod
    def authorize_endpoint(self, source_code: str) -> str:
        pass

    @abstractmethod
    def token_endpoint(self, account: FeedAccount) -> str:
        pass

    def authorization_params(self, source_code: str) -> Dict[str, str]:
        return {}

    @abstractmethod
    def request_transactions(self, account: FeedAccount) -> List[Dict[str, Any]]:
        """Return the provider's raw transaction rows."""
        pass

    @abstractmethod
    def normalize_transaction(self, raw: dict) -> ExternalTransactionData:
        """Convert a provider-specific row to the canonical format."""
        pass

    # FeedConnector

    def build_authorization_url(self, source_code: str, state: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
        }
        params.update(self.authorization_params(source_code))
        if state:
            params["state"] = state
        logger.info(f"Generated {self.provider_name} authorization URL for {source_code}")
        return f"{self.authorize_endpoint(source_code)}?{urllib.parse.urlencode(params)}"

    def exchange_code(self, account: FeedAccount, authorization_code: str) -> OAuthCredentials:
        return self._token_request(account, {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "redirect_uri": self.redirect_uri,
        })

    def refresh_credentials(self, account: FeedAccount) -> OAuthCredentials:
        if not account.refresh_token:
            raise ExternalSyncError(f"No refresh token stored for account {account.account_id}")
        credentials = self._token_request(account, {
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
        })
        # Some providers omit the refresh token when it is not rotated.
        if credentials.refresh_token is None:
            credentials.refresh_token = account.refresh_token
        return credentials

    def fetch_transactions(self, account: FeedAccount) -> List[ExternalTransactionData]:
        if not account.access_token:
            raise ExternalSyncError(f"Account {account.account_id} has no access token")

        transactions = []
        for raw in self.request_transactions(account):
            try:
                transactions.append(self.normalize_transaction(raw))
            except (KeyError, ValueError, TypeError, ArithmeticError) as e:
                raise ExternalSyncError(f"Malformed {self.provider_name} transaction: {e}") from e
        return transactions

    def close(self) -> None:
        self.client.close()

    # HTTP helpers

    def _token_request(self, account: FeedAccount, data: Dict[str, str]) -> OAuthCredentials:
        payload = dict(data)
        payload["client_id"] = self.client_id
        payload["client_secret"] = self.client_secret
        body = self._send("POST", self.token_endpoint(account), data=payload)

        access_token = body.get("access_token")
        if not access_token:
            raise ExternalSyncError(f"{self.provider_name} token response did not include an access token")

        expires_at = None
        expires_in = body.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = utcnow() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError) as e:
                raise ExternalSyncError(f"Invalid expires_in from {self.provider_name}: {expires_in!r}") from e

        return OAuthCredentials(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
        )

    def _get_json(self, url: str, access_token: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._send(
            "GET",
            url,
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def _send(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, url, **kwargs)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.provider_name} returned {e.response.status_code} for {method} {url}")
            raise ExternalSyncError(
                f"{self.provider_name} request failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling {self.provider_name}: {e}")
            raise ExternalSyncError(f"Failed to call {self.provider_name}: {e}") from e
        except ValueError as e:
            raise ExternalSyncError(f"{self.provider_name} returned invalid JSON") from e

        if not isinstance(result, dict):
            raise ExternalSyncError(f"{self.provider_name} returned an unexpected payload")
        return result
