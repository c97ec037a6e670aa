"""
Tests for the sync orchestrator against the deterministic fake feed.
"""
import base64
from datetime import timedelta
from decimal import Decimal

import pytest

from app.config import Settings
from app.errors import (
    ErrorKind,
    ExternalSyncError,
    InvalidArgumentError,
    InvalidStateError,
    SyncConflictError,
    UnauthorizedError,
)
from app.integrations.base import ExternalTransactionData
from app.integrations.fake_feed import FakeFeedConnector
from app.models import KIND_EXPENSE, KIND_INCOME, SOURCE_BANK_FEED, SOURCE_CARD_FEED, Transaction, utcnow
from app.schemas import LinkedAccountCreate, TransactionCreate
from app.services.ledger_store import LedgerStore
from app.services.oauth_state import InMemoryOAuthStateStore
from app.services.sync_locks import LocalSyncLocks
from app.services.sync_service import SyncService


def _item(external_id, kind=KIND_EXPENSE, amount="1000", description="card purchase"):
    return ExternalTransactionData(external_id=external_id, kind=kind, amount=Decimal(amount), description=description)


def _service(db, connector=None, settings=None, locks=None, state_store=None):
    kwargs = {}
    if connector is not None:
        kwargs["connector_factory"] = lambda connection_kind, settings: connector
    return SyncService(
        db,
        settings=settings,
        locks=locks or LocalSyncLocks(),
        state_store=state_store or InMemoryOAuthStateStore(),
        **kwargs,
    )


def _linked_account(db, scope, connection_kind=SOURCE_BANK_FEED, is_active=False, name="Checking"):
    return LedgerStore(db).create_linked_account(scope, LinkedAccountCreate(
        name=name,
        institution_code="004",
        institution_name="Test Bank",
        account_number="110-123-456789",
        account_kind="CARD" if connection_kind == SOURCE_CARD_FEED else "CHECKING",
        connection_kind=connection_kind,
        is_active=is_active,
    ))


def _owner_count(db, user_id) -> int:
    return db.query(Transaction).filter(Transaction.user_id == user_id).count()


# --- callback ------------------------------------------------------------------

def test_callback_authorizes_activates_and_syncs(db, scope_a):
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector(SOURCE_BANK_FEED))

    result = service.handle_callback(scope_a, account.id, "auth-code")

    assert result.created == 3
    assert result.fetched == 3
    db.refresh(account)
    assert account.is_active is True
    assert account.access_token
    assert account.token_expires_at > utcnow()
    assert account.last_synced_at == result.last_synced_at

    transactions = LedgerStore(db).list_transactions(scope_a)
    assert {t.sync_source for t in transactions} == {SOURCE_BANK_FEED}
    assert {t.linked_account_id for t in transactions} == {account.id}
    assert sum(t.amount for t in transactions if t.kind == KIND_INCOME) == Decimal("2000000")


def test_callback_requires_code(db, scope_a):
    account = _linked_account(db, scope_a)
    with pytest.raises(InvalidArgumentError):
        _service(db, FakeFeedConnector()).handle_callback(scope_a, account.id, "  ")


def test_failed_sync_after_callback_keeps_credentials(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector()
    connector.fail_with = RuntimeError("feed unavailable")

    with pytest.raises(ExternalSyncError):
        _service(db, connector).handle_callback(scope_a, account.id, "auth-code")

    db.refresh(account)
    assert account.is_active is True
    assert account.access_token
    assert account.last_synced_at is None
    assert _owner_count(db, scope_a.actor_id) == 0


def test_card_feed_samples(db, scope_a):
    account = _linked_account(db, scope_a, connection_kind=SOURCE_CARD_FEED)
    result = _service(db, FakeFeedConnector(SOURCE_CARD_FEED)).handle_callback(scope_a, account.id, "code")

    assert result.created == 3
    assert LedgerStore(db).total_expense(scope_a) == Decimal("67000")


# --- idempotence ---------------------------------------------------------------

def test_repeated_sync_creates_nothing_new(db, scope_a):
    LedgerStore(db).create_transaction(
        scope_a, TransactionCreate(kind=KIND_EXPENSE, amount=Decimal("10"), description="pre-existing"))
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item("E1"), _item("E2"), _item("E3", KIND_INCOME)])
    service = _service(db, connector)

    first = service.handle_callback(scope_a, account.id, "code")
    assert first.created == 3
    assert _owner_count(db, scope_a.actor_id) == 4

    second = service.sync(scope_a, account.id)
    assert second.created == 0
    assert second.skipped == 3
    assert _owner_count(db, scope_a.actor_id) == 4
    assert second.last_synced_at >= first.last_synced_at


def test_previously_synced_rows_are_not_altered(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item("E1", amount="1000", description="original")])
    service = _service(db, connector)
    service.handle_callback(scope_a, account.id, "code")

    connector.transactions = [_item("E1", amount="9999", description="changed upstream")]
    service.sync(scope_a, account.id)

    stored = db.query(Transaction).filter(Transaction.external_id == "E1").one()
    assert stored.amount == Decimal("1000")
    assert stored.description == "original"


def test_items_without_external_id_are_always_persisted(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item(None), _item("")])
    service = _service(db, connector)

    assert service.handle_callback(scope_a, account.id, "code").created == 2
    assert service.sync(scope_a, account.id).created == 2
    assert _owner_count(db, scope_a.actor_id) == 4


def test_duplicate_ids_within_one_batch_are_stored_once(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item("E1"), _item("E1")])

    result = _service(db, connector).handle_callback(scope_a, account.id, "code")
    assert result.created == 1
    assert result.skipped == 1


def test_dedup_is_per_owner_not_per_account(db, scope_a, scope_b):
    batch = [_item("E1"), _item("E2")]
    first_account = _linked_account(db, scope_a, name="first")
    second_account = _linked_account(db, scope_a, name="second")
    other_owner_account = _linked_account(db, scope_b, name="other")
    service = _service(db, FakeFeedConnector(transactions=batch))

    assert service.handle_callback(scope_a, first_account.id, "code").created == 2
    assert service.handle_callback(scope_a, second_account.id, "code").created == 0
    assert service.handle_callback(scope_b, other_owner_account.id, "code").created == 2


def test_invalid_upstream_items_are_rejected(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[
        _item("E1"),
        _item("E2", amount="0"),
        _item("E3", description="  "),
    ])

    result = _service(db, connector).handle_callback(scope_a, account.id, "code")
    assert result.created == 1
    assert result.rejected == 2
    assert _owner_count(db, scope_a.actor_id) == 1


def test_items_too_large_for_storage_are_rejected_not_fatal(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[
        _item("E1", amount="1234567890123456789012345678.123"),
        _item("E2", amount="10000000000000"),
        _item("X" * 256),
        _item("E4", amount="10"),
    ])

    result = _service(db, connector).handle_callback(scope_a, account.id, "code")

    assert result.fetched == 4
    assert result.created == 1
    assert result.rejected == 3
    stored = db.query(Transaction).filter(Transaction.user_id == scope_a.actor_id).one()
    assert stored.external_id == "E4"
    db.refresh(account)
    assert account.last_synced_at == result.last_synced_at


# --- preconditions -------------------------------------------------------------

def test_inactive_account_cannot_sync(db, scope_a):
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector())
    service.handle_callback(scope_a, account.id, "code")
    account.is_active = False
    db.commit()

    with pytest.raises(InvalidStateError) as excinfo:
        service.sync(scope_a, account.id)
    assert excinfo.value.kind == ErrorKind.INVALID_STATE


def test_unauthorized_account_cannot_sync(db, scope_a):
    account = _linked_account(db, scope_a, is_active=True)
    with pytest.raises(InvalidStateError):
        _service(db, FakeFeedConnector()).sync(scope_a, account.id)


def test_manual_account_cannot_be_authorized(db, scope_a):
    account = _linked_account(db, scope_a, connection_kind="MANUAL")
    with pytest.raises(InvalidStateError):
        _service(db).authorize(scope_a, account.id)


def test_sync_checks_ownership(db, scope_a, scope_b, admin_scope):
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector(transactions=[_item("E1")]))
    service.handle_callback(scope_a, account.id, "code")

    with pytest.raises(UnauthorizedError):
        service.sync(scope_b, account.id)

    result = service.sync(admin_scope, account.id)
    assert result.skipped == 1
    # Synced rows belong to the account owner, not the administrator.
    assert _owner_count(db, admin_scope.actor_id) == 0


# --- failures and atomicity ----------------------------------------------------

def test_connector_failure_surfaces_and_changes_nothing(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item("E1")])
    service = _service(db, connector)
    first = service.handle_callback(scope_a, account.id, "code")

    connector.transactions = [_item("E2")]
    connector.fail_with = ExternalSyncError("upstream returned 503")
    with pytest.raises(ExternalSyncError) as excinfo:
        service.sync(scope_a, account.id)

    assert "503" in excinfo.value.message
    db.refresh(account)
    assert account.last_synced_at == first.last_synced_at
    assert _owner_count(db, scope_a.actor_id) == 1


def test_unexpected_connector_errors_become_sync_failures(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector()
    service = _service(db, connector)
    service.handle_callback(scope_a, account.id, "code")

    connector.fail_with = ConnectionError("reset by peer")
    with pytest.raises(ExternalSyncError) as excinfo:
        service.sync(scope_a, account.id)
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_new_rows_and_watermark_commit_together(db, scope_a, monkeypatch):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item("E1")])
    service = _service(db, connector)
    service.handle_callback(scope_a, account.id, "code")
    previous_sync = account.last_synced_at

    def _fail(*args, **kwargs):
        raise RuntimeError("database went away")

    connector.transactions = [_item("E1"), _item("E2"), _item("E3")]
    monkeypatch.setattr(service.store, "stage_last_synced", _fail)
    with pytest.raises(RuntimeError):
        service.sync(scope_a, account.id)

    assert _owner_count(db, scope_a.actor_id) == 1
    db.refresh(account)
    assert account.last_synced_at == previous_sync


def test_unique_constraint_collision_is_a_retryable_conflict(db, scope_a, monkeypatch):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector(transactions=[_item("E1")])
    service = _service(db, connector)
    service.handle_callback(scope_a, account.id, "code")

    # Simulate a concurrent writer that stored E1 after our existence check.
    monkeypatch.setattr(service.store, "external_id_exists", lambda user_id, external_id: False)
    with pytest.raises(SyncConflictError) as excinfo:
        service.sync(scope_a, account.id)

    assert excinfo.value.retryable is True
    assert excinfo.value.kind == ErrorKind.CONFLICT
    assert _owner_count(db, scope_a.actor_id) == 1


def test_concurrent_sync_of_same_account_is_rejected(db, scope_a):
    locks = LocalSyncLocks()
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector(), locks=locks)
    service.handle_callback(scope_a, account.id, "code")

    with locks.hold(account.id):
        with pytest.raises(SyncConflictError):
            service.sync(scope_a, account.id)

    assert service.sync(scope_a, account.id).skipped == 3


# --- credentials -----------------------------------------------------------------

def test_expired_token_is_refreshed_before_fetch(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector()
    service = _service(db, connector)
    service.handle_callback(scope_a, account.id, "code")

    account.token_expires_at = utcnow() - timedelta(minutes=5)
    db.commit()
    service.sync(scope_a, account.id)

    assert connector.refresh_calls == 1
    db.refresh(account)
    assert account.access_token.startswith("fake_refreshed1_token_")
    assert account.token_expires_at > utcnow()


def test_token_inside_refresh_margin_is_refreshed(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector()
    service = _service(db, connector, settings=Settings(token_refresh_margin_seconds=600))
    service.handle_callback(scope_a, account.id, "code")

    account.token_expires_at = utcnow() + timedelta(minutes=5)
    db.commit()
    service.sync(scope_a, account.id)
    assert connector.refresh_calls == 1


def test_valid_token_is_not_refreshed(db, scope_a):
    account = _linked_account(db, scope_a)
    connector = FakeFeedConnector()
    service = _service(db, connector)
    service.handle_callback(scope_a, account.id, "code")
    service.sync(scope_a, account.id)
    assert connector.refresh_calls == 0


def test_expired_token_without_refresh_token_is_invalid_state(db, scope_a):
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector())
    service.handle_callback(scope_a, account.id, "code")

    account.refresh_token = None
    account.token_expires_at = utcnow() - timedelta(seconds=1)
    db.commit()
    with pytest.raises(InvalidStateError):
        service.sync(scope_a, account.id)


def test_tokens_are_encrypted_at_rest_when_key_configured(db, scope_a):
    key = base64.urlsafe_b64encode(b"k" * 32).decode("utf-8").rstrip("=")
    settings = Settings(data_encryption_key_current=key, data_encryption_key_id="k-test")
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector(), settings=settings)

    service.handle_callback(scope_a, account.id, "code")

    db.refresh(account)
    assert account.access_token.startswith("enc:v1:k-test:")
    assert service.cipher.decrypt(account.access_token) == f"fake_access_token_{account.id.hex}"
    assert service.sync(scope_a, account.id).skipped == 3


def _key_settings(raw: bytes) -> Settings:
    return Settings(data_encryption_key_current=base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("="))


def test_unreadable_tokens_are_invalid_state_until_reauthorized(db, scope_a):
    account = _linked_account(db, scope_a)
    _service(db, FakeFeedConnector(), settings=_key_settings(b"a" * 32)).handle_callback(scope_a, account.id, "code")

    # Key rotated without keeping the old one as previous.
    rotated = _service(db, FakeFeedConnector(), settings=_key_settings(b"b" * 32))
    with pytest.raises(InvalidStateError) as excinfo:
        rotated.sync(scope_a, account.id)
    assert excinfo.value.kind == ErrorKind.INVALID_STATE
    assert "re-authorize" in excinfo.value.message

    result = rotated.handle_callback(scope_a, account.id, "new-code")
    assert result.skipped == 3
    db.refresh(account)
    assert rotated.cipher.decrypt(account.access_token).startswith("fake_")


def test_corrupt_token_envelope_is_invalid_state(db, scope_a):
    account = _linked_account(db, scope_a, is_active=True)
    account.access_token = "enc:v1:k1:not-base64!!"
    db.commit()

    with pytest.raises(InvalidStateError):
        _service(db, FakeFeedConnector(), settings=_key_settings(b"a" * 32)).sync(scope_a, account.id)


# --- OAuth state -----------------------------------------------------------------

def test_provider_callback_resolves_state(db, scope_a):
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector(transactions=[_item("E1")]))

    request = service.authorize(scope_a, account.id)
    assert f"state={request.state}" in request.authorization_url

    result = service.handle_provider_callback("bank_feed", request.state, "code")
    assert result.account_id == account.id
    assert result.created == 1

    with pytest.raises(InvalidArgumentError):
        service.handle_provider_callback("bank_feed", request.state, "code")


def test_provider_callback_rejects_unknown_state(db, scope_a):
    with pytest.raises(InvalidArgumentError):
        _service(db, FakeFeedConnector()).handle_provider_callback("bank_feed", "bogus", "code")


def test_provider_callback_checks_source(db, scope_a):
    account = _linked_account(db, scope_a)
    service = _service(db, FakeFeedConnector())
    request = service.authorize(scope_a, account.id)

    with pytest.raises(InvalidArgumentError):
        service.handle_provider_callback("card_feed", request.state, "code")
