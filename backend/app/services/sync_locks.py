"""
Per-account sync locks.

At most one sync may run for a linked account at a time. The local registry
serves a single process; the Redis registry serves several API workers.
A busy account fails fast with a retryable SyncConflictError instead of waiting.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Optional
import logging

import redis

from app.config import Settings, get_settings
from app.errors import SyncConflictError

logger = logging.getLogger(__name__)


class LocalSyncLocks:
    """In-process lock per account id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_id):
        lock = self._lock_for(str(account_id))
        if not lock.acquire(blocking=False):
            raise SyncConflictError(f"A sync is already running for account {account_id}.")
        try:
            yield
        finally:
            lock.release()


class RedisSyncLocks:
    """Redis lock per account id, expiring after ``timeout`` seconds."""

    def __init__(self, redis_url: str, timeout: int = 120):
        self.redis_url = redis_url
        self.timeout = timeout
        self._redis: Optional[redis.Redis] = None

    @property
    def redis(self) -> redis.Redis:
        """Lazy-load Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    @contextmanager
    def hold(self, account_id):
        lock = self.redis.lock(f"ledger:sync_lock:{account_id}", timeout=self.timeout)
        try:
            acquired = lock.acquire(blocking=False)
        except redis.RedisError as e:
            logger.error(f"Could not reach Redis for sync lock on account {account_id}: {e}")
            raise SyncConflictError(f"Could not acquire sync lock for account {account_id}.") from e
        if not acquired:
            raise SyncConflictError(f"A sync is already running for account {account_id}.")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning(f"Sync lock for account {account_id} expired before release")


_local_locks = LocalSyncLocks()


def get_sync_locks(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    if settings.sync_lock_backend == "redis":
        return RedisSyncLocks(settings.redis_url, timeout=settings.sync_lock_timeout_seconds)
    return _local_locks
