"""In-process TTL cache shared by the request handlers.

Entries expire lazily on read; ``purge_expired`` is the sweep run by the
scheduler so entries nobody reads again do not pile up.  All cache keys are
built here, and every key of a domain starts with that domain's prefix, which
is also the pattern writers invalidate with.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

TRANSACTIONS_DOMAIN = "transactions:"
BALANCE_DOMAIN = "balance:"


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Waiting writers block new readers so a steady stream of ``get`` calls
    cannot starve ``set``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._items: dict[str, CacheEntry] = {}
        self._lock = ReadWriteLock()

    def get(self, key: str) -> tuple[Any, bool]:
        with self._lock.read_locked():
            entry = self._items.get(key)
            if entry is None or self._clock() >= entry.expires_at:
                return None, False
            return entry.value, True

    def set(self, key: str, value: Any, ttl: float) -> None:
        expires_at = self._clock() + ttl
        with self._lock.write_locked():
            self._items[key] = CacheEntry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> None:
        with self._lock.write_locked():
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock.write_locked():
            self._items = {}

    def clear_pattern(self, pattern: str) -> int:
        with self._lock.write_locked():
            doomed = [key for key in self._items if pattern in key]
            for key in doomed:
                del self._items[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock.write_locked():
            doomed = [
                key for key, entry in self._items.items() if now >= entry.expires_at
            ]
            for key in doomed:
                del self._items[key]
        return len(doomed)

    def size(self) -> int:
        with self._lock.read_locked():
            return len(self._items)

    def __len__(self) -> int:
        return self.size()


def _part(value: object) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def transactions_key(
    viewer_id: int,
    *,
    operation_type: object = None,
    category_id: Optional[int] = None,
    subcategory_id: Optional[int] = None,
    start: object = None,
    end: object = None,
    scope: object = None,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
) -> str:
    parts = [
        f"v={viewer_id}",
        f"type={_part(operation_type)}",
        f"cat={_part(category_id)}",
        f"sub={_part(subcategory_id)}",
        f"start={_part(start)}",
        f"end={_part(end)}",
        f"scope={_part(scope)}",
        f"cursor={_part(cursor)}",
        f"limit={_part(limit)}",
    ]
    return TRANSACTIONS_DOMAIN + "|".join(parts)


def balance_key(viewer_id: int, *, scope: object = None, period: object = None) -> str:
    return BALANCE_DOMAIN + f"v={viewer_id}|scope={_part(scope)}|period={_part(period)}"


def invalidate_ledger(cache: Optional[TTLCache]) -> int:
    """Drop every cached transaction page and balance after a ledger write."""
    if cache is None:
        return 0
    return cache.clear_pattern(TRANSACTIONS_DOMAIN) + cache.clear_pattern(
        BALANCE_DOMAIN
    )
