import threading
from datetime import datetime

from cache import (
    BALANCE_DOMAIN,
    TRANSACTIONS_DOMAIN,
    TTLCache,
    balance_key,
    invalidate_ledger,
    transactions_key,
)
from models import OperationType
from visibility import Scope


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_entry_expires_exactly_at_ttl() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 300)

    clock.advance(299.999)
    assert cache.get("k") == ("v", True)

    clock.advance(0.001)
    assert cache.get("k") == (None, False)


def test_set_overwrites_value_and_expiry() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.set("k", 1, 10)
    clock.advance(8)
    cache.set("k", 2, 10)
    clock.advance(8)

    assert cache.get("k") == (2, True)
    assert len(cache) == 1


def test_missing_key_is_a_miss() -> None:
    cache = TTLCache()
    assert cache.get("nope") == (None, False)


def test_cached_none_is_still_a_hit() -> None:
    cache = TTLCache()
    cache.set("k", None, 60)
    assert cache.get("k") == (None, True)


def test_delete_and_clear() -> None:
    cache = TTLCache()
    cache.set("a", 1, 60)
    cache.set("b", 2, 60)

    cache.delete("a")
    cache.delete("a")
    assert cache.get("a") == (None, False)
    assert cache.get("b") == (2, True)

    cache.clear()
    assert cache.size() == 0


def test_clear_pattern_removes_only_matching_keys() -> None:
    cache = TTLCache()
    cache.set("transactions:v=1|cat=3", "p1", 60)
    cache.set("transactions:v=2|cat=3", "p2", 60)
    cache.set("balance:v=1", "b1", 60)

    removed = cache.clear_pattern("cat=3")

    assert removed == 2
    assert cache.get("balance:v=1") == ("b1", True)
    assert cache.size() == 1


def test_purge_expired_drops_only_stale_entries() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.set("short", 1, 5)
    cache.set("long", 2, 500)

    # lazy expiry: the stale entry still occupies a slot until a sweep
    clock.advance(10)
    assert cache.size() == 2

    assert cache.purge_expired() == 1
    assert cache.size() == 1
    assert cache.get("long") == (2, True)


def test_invalidate_ledger_clears_both_domains() -> None:
    cache = TTLCache()
    cache.set(transactions_key(1, limit=20), "page", 60)
    cache.set(balance_key(1, scope=Scope.all, period="none"), "bal", 60)
    cache.set("unrelated", "keep", 60)

    assert invalidate_ledger(cache) == 2
    assert cache.get("unrelated") == ("keep", True)
    assert invalidate_ledger(None) == 0


def test_keys_separate_every_filter_dimension() -> None:
    base = dict(
        operation_type=OperationType.expense,
        category_id=3,
        subcategory_id=None,
        start=datetime(2025, 1, 1),
        end=None,
        scope=Scope.all,
        cursor=None,
        limit=20,
    )
    variants = [
        {},
        {"operation_type": OperationType.income},
        {"category_id": 4},
        {"subcategory_id": 9},
        {"start": datetime(2025, 1, 2)},
        {"end": datetime(2025, 2, 1)},
        {"scope": Scope.family},
        {"cursor": "2025-01-01T00:00:00Z"},
        {"limit": 50},
    ]
    keys = {transactions_key(1, **{**base, **change}) for change in variants}
    keys.add(transactions_key(2, **base))

    assert len(keys) == len(variants) + 1
    assert all(k.startswith(TRANSACTIONS_DOMAIN) for k in keys)
    assert balance_key(1, scope=Scope.all, period="week").startswith(BALANCE_DOMAIN)
    assert balance_key(1, scope=Scope.all, period="week") != balance_key(
        1, scope=Scope.all, period="month"
    )


def test_concurrent_readers_and_writers() -> None:
    cache = TTLCache()
    errors: list[BaseException] = []
    start = threading.Barrier(8)

    def writer(worker: int) -> None:
        try:
            start.wait()
            for i in range(500):
                cache.set(f"w{worker}:{i % 10}", i, 60)
                if i % 50 == 0:
                    cache.clear_pattern(f"w{worker}:")
        except BaseException as exc:  # pragma: no cover
            errors.append(exc)

    def reader(worker: int) -> None:
        try:
            start.wait()
            for i in range(500):
                value, found = cache.get(f"w{worker % 4}:{i % 10}")
                if found:
                    assert isinstance(value, int)
                cache.size()
        except BaseException as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    threads += [threading.Thread(target=reader, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert not errors
    assert not any(thread.is_alive() for thread in threads)
    # each writer's last clear was at i=450, then keys 1..9 and 0 were rewritten
    for worker in range(4):
        assert cache.get(f"w{worker}:9") == (499, True)
