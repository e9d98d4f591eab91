"""
Session Store

Ephemeral per-phone conversation state: folio/project drafts under
capture, a pending `attach` waiting for its file, and pending project-close
confirmations. Nothing here is durable; the engines never read it.

The in-memory backend fits a single instance. A shared cache backend only
needs to implement the same get/put/delete contract.
"""
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from folioflow.core.settings import get_settings

# Seconds between sweeps of expired entries
PURGE_INTERVAL_SECONDS = 60.0


class SessionStore(Protocol):
    def get(self, key: str, slot: str) -> Optional[Dict[str, Any]]: ...

    def put(self, key: str, slot: str, value: Dict[str, Any]) -> None: ...

    def delete(self, key: str, slot: Optional[str] = None) -> None: ...


class InMemorySessionStore:
    """Thread-safe dict store with a fixed time-to-live per entry.

    Writes sweep out expired entries at most once per purge interval, so
    abandoned drafts do not pile up for phones that never write again.
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock=time.monotonic,
        purge_interval: float = PURGE_INTERVAL_SECONDS,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().session_ttl_seconds
        self.purge_interval = purge_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], Tuple[float, Dict[str, Any]]] = {}
        self._last_purge = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str, slot: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get((key, slot))
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[(key, slot)]
                return None
            return dict(value)

    def put(self, key: str, slot: str, value: Dict[str, Any]) -> None:
        now = self._clock()
        with self._lock:
            if now - self._last_purge >= self.purge_interval:
                self._purge_locked(now)
            self._entries[(key, slot)] = (now + self.ttl_seconds, dict(value))

    def delete(self, key: str, slot: Optional[str] = None) -> None:
        with self._lock:
            if slot is not None:
                self._entries.pop((key, slot), None)
                return
            for entry_key in [k for k in self._entries if k[0] == key]:
                del self._entries[entry_key]

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        self._last_purge = now
        return len(expired)


_STORE: Optional[InMemorySessionStore] = None


def get_session_store() -> InMemorySessionStore:
    global _STORE
    if _STORE is None:
        _STORE = InMemorySessionStore()
    return _STORE
