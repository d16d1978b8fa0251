from cache import TTLCache
from scheduler import SchedulerManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_sweep_purges_only_expired_entries() -> None:
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.set("transactions:v=1", "page", 60)
    cache.set("balance:v=1", "bal", 600)
    manager = SchedulerManager(cache, sweep_interval_secs=30)

    assert manager._run_sweep() == 0
    clock.now = 61
    assert manager._run_sweep() == 1
    assert cache.size() == 1
    assert cache.get("balance:v=1") == ("bal", True)


def test_start_registers_single_sweep_job() -> None:
    manager = SchedulerManager(TTLCache(), sweep_interval_secs=30)
    manager.start()
    try:
        jobs = manager.scheduler.get_jobs()
        assert [job.id for job in jobs] == ["cache_sweep"]
        assert jobs[0].trigger.interval.total_seconds() == 30
    finally:
        manager.stop()
    assert not manager.scheduler.running
