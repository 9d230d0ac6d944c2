# =============================================================================
# Authorization Decision Cache
# =============================================================================
# Bounded TTL map keyed by credential fingerprint. Concurrent lookups of the
# same key share one in-flight validation (single-flight); the lock is held
# only while the map and the in-flight table are read or written.
# =============================================================================

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from typing import Callable, Dict, Optional, Tuple

from eventgate.auth.decision import AuthDecision

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_ENTRIES = 10000


def fingerprint(credential: str) -> str:
    """Cache key for a raw credential; the credential itself is never stored."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class DecisionCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, max_entries: int = DEFAULT_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[AuthDecision, float]]" = OrderedDict()
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[AuthDecision]:
        with self._lock:
            return self._get_locked(key)

    def _get_locked(self, key: str) -> Optional[AuthDecision]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        decision, expires = entry
        if expires <= self._clock():
            del self._entries[key]
            return None
        return decision

    def _store_locked(self, key: str, decision: AuthDecision) -> None:
        self._entries[key] = (decision, self._clock() + self.ttl_seconds)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def get_or_load(self, key: str, loader: Callable[[], AuthDecision]) -> AuthDecision:
        """
        Return the cached decision for key, or run loader exactly once for all
        concurrent callers and cache its result.

        Exceptions from loader propagate to every waiting caller and nothing is
        cached.
        """
        with self._lock:
            cached = self._get_locked(key)
            if cached is not None:
                return cached
            future = self._in_flight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[key] = future

        if not leader:
            return future.result()

        try:
            decision = loader()
        except BaseException as e:
            with self._lock:
                self._in_flight.pop(key, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._store_locked(key, decision)
            self._in_flight.pop(key, None)
        future.set_result(decision)
        return decision
