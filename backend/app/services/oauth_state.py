"""
OAuth ``state`` storage.

``authorize`` issues a random state bound to one linked account and actor; the
provider callback presents it back and it is consumed exactly once.
"""
import json
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import logging

import redis

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthStateEntry:
    account_id: str
    user_id: str


def new_state() -> str:
    return secrets.token_urlsafe(24)


class InMemoryOAuthStateStore:
    """Process-local state store with expiry."""

    def __init__(self, ttl_seconds: int = 600):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, OAuthStateEntry]] = {}

    def save(self, state: str, entry: OAuthStateEntry) -> None:
        with self._lock:
            self._purge()
            self._entries[state] = (time.monotonic() + self.ttl_seconds, entry)

    def pop(self, state: str) -> Optional[OAuthStateEntry]:
        with self._lock:
            self._purge()
            item = self._entries.pop(state, None)
        return item[1] if item else None

    def _purge(self) -> None:
        now = time.monotonic()
        for key in [key for key, (expires, _) in self._entries.items() if expires <= now]:
            del self._entries[key]


class RedisOAuthStateStore:
    """Redis-backed state store; entries expire after the TTL."""

    def __init__(self, redis_url: str, ttl_seconds: int = 600):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self._redis: Optional[redis.Redis] = None

    @property
    def redis(self) -> redis.Redis:
        """Lazy-load Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _key(self, state: str) -> str:
        return f"ledger:oauth_state:{state}"

    def save(self, state: str, entry: OAuthStateEntry) -> None:
        payload = json.dumps({"account_id": entry.account_id, "user_id": entry.user_id})
        self.redis.set(self._key(state), payload, ex=self.ttl_seconds)

    def pop(self, state: str) -> Optional[OAuthStateEntry]:
        pipe = self.redis.pipeline()
        pipe.get(self._key(state))
        pipe.delete(self._key(state))
        raw, _ = pipe.execute()
        if raw is None:
            return None
        data = json.loads(raw)
        return OAuthStateEntry(account_id=data["account_id"], user_id=data["user_id"])


_memory_store: Optional[InMemoryOAuthStateStore] = None


def get_oauth_state_store(settings: Optional[Settings] = None):
    """Redis when the sync lock backend is Redis (multi-worker), memory otherwise."""
    global _memory_store
    settings = settings or get_settings()
    if settings.sync_lock_backend == "redis":
        return RedisOAuthStateStore(settings.redis_url, ttl_seconds=settings.oauth_state_ttl_seconds)
    if _memory_store is None:
        _memory_store = InMemoryOAuthStateStore(ttl_seconds=settings.oauth_state_ttl_seconds)
    return _memory_store
