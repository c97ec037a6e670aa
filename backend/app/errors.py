"""
Ledger error kinds.

Every failure raised by the services carries a structured ``kind`` so callers
(HTTP layer, sync callers, tests) branch on the kind instead of message text.
"""
from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_STATE = "invalid_state"
    EXTERNAL_SYNC_FAILURE = "external_sync_failure"
    CONFLICT = "conflict"


class LedgerError(Exception):
    """Base class for ledger failures."""

    kind: ErrorKind = ErrorKind.INVALID_STATE
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LedgerError):
    kind = ErrorKind.NOT_FOUND

    @classmethod
    def for_record(cls, record_type: str, record_id) -> "NotFoundError":
        return cls(f"{record_type} not found: {record_id}")


class UnauthorizedError(LedgerError):
    kind = ErrorKind.UNAUTHORIZED


class InvalidArgumentError(LedgerError):
    kind = ErrorKind.INVALID_ARGUMENT


class InvalidStateError(LedgerError):
    kind = ErrorKind.INVALID_STATE


class ExternalSyncError(LedgerError):
    """Connector fetch, token exchange or refresh failed."""

    kind = ErrorKind.EXTERNAL_SYNC_FAILURE


class SyncConflictError(LedgerError):
    """Another sync holds the account, or a concurrent writer claimed an external id."""

    kind = ErrorKind.CONFLICT
    retryable = True


HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.EXTERNAL_SYNC_FAILURE: 502,
    ErrorKind.CONFLICT: 409,
}
