# query_cache.py
"""
Process-wide cache for backend reads.

Every read is identified by a key tuple ``(resource, *params)``. Writes go
through ``mutate`` and declare which key prefixes they can stale; once a
mutation returns, every matching entry is stale and any fetch that was in
flight is detached so its result cannot be stored. Realtime events use the
same ``invalidate`` path, so there is one way for data to become stale.

Usage:
    cache = QueryCache()
    rows = cache.fetch(("messages", cid), lambda: backend.select(...))
    cache.mutate(lambda: backend.insert(...), invalidates=[("messages", cid)])
"""
import logging
import threading
import time
from concurrent.futures import Future
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from errors import CrtsError, DataError

logger = logging.getLogger(__name__)

Key = Tuple[Any, ...]


def as_key(key) -> Key:
    if isinstance(key, tuple):
        return key
    if isinstance(key, list):
        return tuple(key)
    return (key,)


def key_matches(prefix: Key, key: Key) -> bool:
    return key[: len(prefix)] == prefix


def _overlaps(a: Key, b: Key) -> bool:
    return key_matches(a, b) or key_matches(b, a)


@dataclass
class _Entry:
    data: Any
    fetched_at: float
    stale: bool = False


class QueryCache:
    def __init__(self, max_age: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Key, _Entry] = {}
        self._inflight: Dict[Key, Future] = {}
        self._resource_locks: Dict[Any, threading.RLock] = {}
        self._observers: List[Tuple[Key, Callable[[], None]]] = []

    # ---------------- reads ----------------
    def fetch(self, key, loader: Callable[[], Any]):
        """
        Return fresh cached data for `key`, or load it. Concurrent callers
        for the same key share one loader call.
        """
        key = as_key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._is_fresh(entry):
                return entry.data
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
        if not owner:
            return future.result()

        error = None
        data = None
        try:
            data = loader()
        except CrtsError as exc:
            error = exc
        except Exception as exc:
            error = DataError(f"Failed to load {key[0]}.", cause=exc)
            error.__cause__ = exc

        with self._lock:
            current = self._inflight.get(key) is future
            if current:
                del self._inflight[key]
                if error is None:
                    self._entries[key] = _Entry(data, self._clock())
            elif error is None:
                logger.debug("Not caching %r: invalidated while loading", key)

        if error is not None:
            logger.warning("Fetch %r failed: %s", key, error)
            future.set_exception(error)
            raise error
        future.set_result(data)
        return data

    def peek(self, key):
        """Last loaded value for `key`, stale or not (None when never loaded)."""
        with self._lock:
            entry = self._entries.get(as_key(key))
            return entry.data if entry is not None else None

    def is_stale(self, key) -> bool:
        with self._lock:
            entry = self._entries.get(as_key(key))
            return entry is None or not self._is_fresh(entry)

    def _is_fresh(self, entry: _Entry) -> bool:
        if entry.stale:
            return False
        if self.max_age is not None and self._clock() - entry.fetched_at >= self.max_age:
            return False
        return True

    # ---------------- writes ----------------
    def mutate(self, operation: Callable[[], Any], invalidates: Iterable = (), description: str = "save changes"):
        """
        Run a write and stale every declared key prefix once it succeeds.
        Writes that share a resource run one at a time in call order. A
        failed write invalidates nothing.
        """
        keys = [as_key(k) for k in invalidates]
        resources = sorted({str(k[0]) for k in keys if k})
        with ExitStack() as stack:
            for resource in resources:
                stack.enter_context(self._resource_lock(resource))
            try:
                result = operation()
            except CrtsError as exc:
                logger.warning("Could not %s: %s", description, exc)
                raise
            except Exception as exc:
                logger.exception("Could not %s", description)
                raise DataError(f"Failed to {description}.", cause=exc) from exc
            observers = self._mark_stale(keys)
        self._notify(observers)
        return result

    def invalidate(self, *prefixes) -> None:
        observers = self._mark_stale([as_key(p) for p in prefixes])
        self._notify(observers)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._inflight.clear()

    def _resource_lock(self, resource) -> threading.RLock:
        with self._lock:
            lock = self._resource_locks.get(resource)
            if lock is None:
                lock = self._resource_locks[resource] = threading.RLock()
            return lock

    def _mark_stale(self, prefixes: List[Key]):
        if not prefixes:
            return []
        with self._lock:
            for key, entry in self._entries.items():
                if any(key_matches(p, key) for p in prefixes):
                    entry.stale = True
            for key in [k for k in self._inflight if any(key_matches(p, k) for p in prefixes)]:
                # the waiters still get this result; it just is not stored
                del self._inflight[key]
            observers = [cb for prefix, cb in self._observers if any(_overlaps(prefix, p) for p in prefixes)]
        logger.debug("Invalidated %s", prefixes)
        return observers

    # ---------------- observers ----------------
    def subscribe(self, prefix, callback: Callable[[], None]) -> Callable[[], None]:
        """Call `callback()` whenever something under `prefix` is invalidated."""
        item = (as_key(prefix), callback)
        with self._lock:
            self._observers.append(item)

        def unsubscribe():
            with self._lock:
                if item in self._observers:
                    self._observers.remove(item)

        return unsubscribe

    def _notify(self, observers):
        for callback in observers:
            try:
                callback()
            except Exception:
                logger.exception("Cache observer failed")
