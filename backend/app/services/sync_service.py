"""
Service for synchronizing linked accounts with their bank or card feeds.

Drives the OAuth credential lifecycle (authorize, callback, refresh) and imports
fetched transactions exactly once per (owner, external id).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.errors import (
    ExternalSyncError,
    InvalidArgumentError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    SyncConflictError,
)
from app.integrations.base import FeedAccount, FeedConnector, OAuthCredentials
from app.integrations.factory import build_connector
from app.models import LinkedAccount, User, as_naive_utc, utcnow
from app.security.token_encryption import TokenCipher
from app.services.authorization import Scope, resolve_scope
from app.services.ledger_store import LedgerStore
from app.services.oauth_state import OAuthStateEntry, get_oauth_state_store, new_state
from app.services.sync_locks import get_sync_locks

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[str, Settings], FeedConnector]


@dataclass(frozen=True)
class SyncResult:
    account_id: UUID
    fetched: int
    created: int
    skipped: int
    last_synced_at: datetime
    rejected: int = 0


@dataclass(frozen=True)
class AuthorizationRequest:
    authorization_url: str
    state: str


class SyncService:
    """Sync orchestrator for linked accounts."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        connector_factory: Optional[ConnectorFactory] = None,
        locks=None,
        state_store=None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = LedgerStore(db, self.settings)
        self.connector_factory = connector_factory or build_connector
        self.locks = locks or get_sync_locks(self.settings)
        self.state_store = state_store or get_oauth_state_store(self.settings)
        self.cipher = TokenCipher.from_settings(self.settings)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, scope: Scope, account_id: UUID, state: Optional[str] = None) -> str:
        account = self.store.get_linked_account(scope, account_id)
        connector = self._connector_for(account)
        try:
            return connector.build_authorization_url(account.institution_code, state=state)
        finally:
            connector.close()

    def authorize(self, scope: Scope, account_id: UUID) -> AuthorizationRequest:
        """Issue a one-time state for the account and return the provider URL."""
        state = new_state()
        url = self.build_authorization_url(scope, account_id, state=state)
        self.state_store.save(state, OAuthStateEntry(account_id=str(account_id), user_id=scope.actor_id))
        return AuthorizationRequest(authorization_url=url, state=state)

    def handle_callback(self, scope: Scope, account_id: UUID, authorization_code: str) -> SyncResult:
        """
        Store the credentials obtained for ``authorization_code``, activate the
        account, then run a full sync.

        The credentials are committed before the sync starts; a failing sync
        leaves the account authorized.
        """
        if not authorization_code or not authorization_code.strip():
            raise InvalidArgumentError("Authorization code is required.")

        account = self.store.get_linked_account(scope, account_id)
        connector = self._connector_for(account)
        try:
            logger.info(f"Received OAuth callback for account {account.id}")
            # Previously stored tokens are replaced, never read, so an unreadable
            # token can be recovered by authorizing again.
            feed_account = self._feed_account(account, with_tokens=False)
            credentials = self._call_connector(
                account, "code exchange",
                lambda: connector.exchange_code(feed_account, authorization_code.strip()),
            )
            with self.store.atomic():
                self._store_credentials(account, credentials)
                account.is_active = True
        finally:
            connector.close()

        return self.sync(scope, account.id)

    def handle_provider_callback(self, source: str, state: str, authorization_code: str) -> SyncResult:
        """Resolve a provider redirect through its state, then run ``handle_callback``."""
        entry = self.state_store.pop(state) if state else None
        if entry is None:
            raise InvalidArgumentError("Unknown or expired OAuth state.")

        actor = self.db.query(User).filter(User.id == entry.user_id).first()
        if actor is None:
            raise NotFoundError.for_record("User", entry.user_id)
        scope = resolve_scope(actor)

        account = self.store.get_linked_account(scope, UUID(entry.account_id))
        if account.connection_kind != source.strip().upper():
            raise InvalidArgumentError(
                f"OAuth callback for {source} does not match account connection {account.connection_kind}."
            )
        return self.handle_callback(scope, account.id, authorization_code)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self, scope: Scope, account_id: UUID) -> SyncResult:
        """
        Fetch the account's feed and import transactions not seen before.

        New transactions, refreshed credentials and the last-synced timestamp
        commit together or not at all.

        Raises:
            NotFoundError, UnauthorizedError: account lookup
            InvalidStateError: account inactive, not authorized, or not a feed account
            ExternalSyncError: connector failure
            SyncConflictError: another sync holds the account
        """
        account = self.store.get_linked_account(scope, account_id)
        if not account.is_active:
            raise InvalidStateError(f"Linked account {account.id} is inactive.")
        if not account.access_token:
            raise InvalidStateError(f"Linked account {account.id} has not been authorized.")

        with self.locks.hold(account.id):
            connector = self._connector_for(account)
            try:
                return self._run_sync(account, connector)
            finally:
                connector.close()

    def _run_sync(self, account: LinkedAccount, connector: FeedConnector) -> SyncResult:
        logger.info(f"Starting {connector.source} sync for account {account.id}")
        feed_account = self._feed_account(account)

        try:
            with self.store.atomic():
                self._refresh_if_expiring(account, connector, feed_account)
                items = self._call_connector(account, "fetch", lambda: connector.fetch_transactions(feed_account))

                created = skipped = rejected = 0
                seen = set()
                for item in items:
                    external_id = (item.external_id or "").strip() or None
                    if external_id is not None:
                        if external_id in seen or self.store.external_id_exists(account.user_id, external_id):
                            skipped += 1
                            continue
                        item.external_id = external_id

                    try:
                        self.store.stage_external_transaction(account, item, connector.source)
                    except InvalidArgumentError as e:
                        logger.warning(f"Skipping invalid {connector.source} transaction {external_id}: {e.message}")
                        rejected += 1
                        continue

                    if external_id is not None:
                        seen.add(external_id)
                    created += 1

                last_synced_at = self.store.stage_last_synced(account, utcnow())
        except IntegrityError as e:
            raise SyncConflictError(
                f"Concurrent sync stored the same transactions for account {account.id}; retry the sync."
            ) from e

        logger.info(
            f"Finished sync for account {account.id}: fetched={len(items)} "
            f"created={created} skipped={skipped} rejected={rejected}"
        )
        return SyncResult(
            account_id=account.id,
            fetched=len(items),
            created=created,
            skipped=skipped,
            rejected=rejected,
            last_synced_at=last_synced_at,
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _refresh_if_expiring(self, account: LinkedAccount, connector: FeedConnector, feed_account: FeedAccount) -> None:
        if account.token_expires_at is None:
            return
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        if account.token_expires_at - margin > utcnow():
            return
        if not feed_account.refresh_token:
            raise InvalidStateError(
                f"Access token for account {account.id} has expired and no refresh token is stored."
            )

        logger.info(f"Refreshing access token for account {account.id}")
        credentials = self._call_connector(account, "token refresh", lambda: connector.refresh_credentials(feed_account))
        self._store_credentials(account, credentials)
        feed_account.access_token = credentials.access_token
        feed_account.refresh_token = credentials.refresh_token

    def _store_credentials(self, account: LinkedAccount, credentials: OAuthCredentials) -> None:
        account.access_token = self.cipher.encrypt(credentials.access_token)
        account.refresh_token = self.cipher.encrypt(credentials.refresh_token)
        account.token_expires_at = as_naive_utc(credentials.expires_at)

    def _feed_account(self, account: LinkedAccount, with_tokens: bool = True) -> FeedAccount:
        access_token = refresh_token = None
        if with_tokens:
            try:
                access_token = self.cipher.decrypt(account.access_token)
                refresh_token = self.cipher.decrypt(account.refresh_token)
            except ValueError as e:
                logger.error(f"Stored tokens for account {account.id} cannot be decrypted: {e}")
                raise InvalidStateError(
                    f"Stored credentials for linked account {account.id} cannot be read; re-authorize the account."
                ) from e

        return FeedAccount(
            account_id=account.id,
            institution_code=account.institution_code,
            account_number=account.account_number,
            access_token=access_token,
            refresh_token=refresh_token,
            last_synced_at=account.last_synced_at,
        )

    def _connector_for(self, account: LinkedAccount) -> FeedConnector:
        return self.connector_factory(account.connection_kind, self.settings)

    @staticmethod
    def _call_connector(account: LinkedAccount, action: str, call):
        try:
            return call()
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"Connector {action} failed for account {account.id}: {e}")
            raise ExternalSyncError(f"Connector {action} failed: {e}") from e
