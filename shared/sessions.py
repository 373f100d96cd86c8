"""In-process store for short-lived observer session tokens."""

from __future__ import annotations

import secrets
import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class ExpiringStore(Generic[V]):
    """Key/value map whose entries vanish ``ttl_seconds`` after being set.

    Expired entries are dropped lazily on access and by :meth:`purge`.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, V]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        expires_at = self._clock() + (ttl_seconds if ttl_seconds is not None else self.ttl_seconds)
        with self._lock:
            self._entries[key] = (expires_at, value)

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def pop(self, key: str) -> Optional[V]:
        value = self.get(key)
        with self._lock:
            self._entries.pop(key, None)
        return value

    def purge(self) -> int:
        """Drop expired entries; returns how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        self.purge()
        return len(self._entries)


def issue_session(store: ExpiringStore[str], principal: str) -> str:
    """Create a session token for ``principal`` and return it."""

    token = secrets.token_urlsafe(32)
    store.set(token, principal)
    return token
