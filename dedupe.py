from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional

from cachetools import TTLCache

from utils import canonical_json, sha256_hex

log = logging.getLogger("dedupe")


def request_fingerprint(action: str, actor: str, data: Any) -> str:
    """
    Content fingerprint of one call: action key, acting identity (a token or
    user id, hashed) and the canonical JSON of the payload.
    """

    action_u = str(action or "").upper().strip()
    return "|".join([action_u, sha256_hex(str(actor or "")), sha256_hex(canonical_json(data if data is not None else {}))])


class _InFlight:
    __slots__ = ("future", "waiters")

    def __init__(self):
        self.future: Future = Future()
        self.waiters = 0


class RequestCoalescer:
    """
    Collapses identical concurrent calls into one execution.

    The first caller for a key (the leader) runs the function; callers that
    arrive while it is running wait for the same outcome, value or exception.
    The entry is dropped as soon as the leader finishes, so a later call runs
    again. Entries also expire after `ttl_seconds` in case a leader never
    returns. A follower that gives up (timeout) does not affect the leader.
    """

    def __init__(self, ttl_seconds: int = 30, maxsize: int = 10_000):
        self._inflight: TTLCache = TTLCache(maxsize=max(1, int(maxsize)), ttl=max(1, int(ttl_seconds)))
        self._lock = threading.Lock()

    def run(self, key: str, fn: Callable[[], Any], *, timeout: Optional[float] = None) -> Any:
        with self._lock:
            entry = self._inflight.get(key)
            leader = entry is None
            if leader:
                entry = _InFlight()
                self._inflight[key] = entry
            else:
                entry.waiters += 1

        if not leader:
            log.debug("coalesced key=%s", key[:32])
            try:
                return entry.future.result(timeout=timeout)
            finally:
                with self._lock:
                    entry.waiters -= 1

        try:
            result = fn()
        except BaseException as e:
            entry.future.set_exception(e)
            raise
        else:
            entry.future.set_result(result)
            return result
        finally:
            with self._lock:
                if self._inflight.get(key) is entry:
                    self._inflight.pop(key, None)

    def waiters(self, key: str) -> int:
        with self._lock:
            entry = self._inflight.get(key)
            return entry.waiters if entry is not None else 0

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def clear(self) -> None:
        with self._lock:
            self._inflight.clear()
