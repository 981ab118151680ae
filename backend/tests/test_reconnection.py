import asyncio

from mcp_relay.mcp.reconnection import ReconnectionScheduler
from tests.mocks.fake_clock import FakeClock


async def _noop(device_id: str, server_name: str) -> None:
    return None


def test_backoff_doubles_and_caps() -> None:
    scheduler = ReconnectionScheduler(_noop, scheduler=FakeClock())

    assert [scheduler.delay_ms(n) for n in range(6)] == [30000, 60000, 120000, 240000, 480000, 480000]
    assert scheduler.delay_ms(10_000) == 480000


def test_schedule_retry_keeps_one_pending_timer_per_key() -> None:
    clock = FakeClock()
    scheduler = ReconnectionScheduler(_noop, scheduler=clock)

    delays = [scheduler.schedule_retry("dev-1", "alpha") for _ in range(6)]

    assert delays == [30000, 60000, 120000, 240000, 480000, 480000]
    assert len(clock.pending) == 1
    entry = scheduler.get("dev-1", "alpha")
    assert entry.attempt_count == 6
    assert entry.next_retry_at == clock.now() + 480
    assert scheduler.has_pending_timer("dev-1", "alpha")


def test_custom_delays_from_settings() -> None:
    scheduler = ReconnectionScheduler(_noop, scheduler=FakeClock(), base_delay_ms=100, max_delay_ms=250)

    assert [scheduler.delay_ms(n) for n in range(4)] == [100, 200, 250, 250]


def test_fired_timer_runs_retry_callback() -> None:
    clock = FakeClock()
    calls: list[tuple[str, str]] = []

    async def retry(device_id: str, server_name: str) -> None:
        calls.append((device_id, server_name))

    async def scenario():
        scheduler = ReconnectionScheduler(retry, scheduler=clock)
        scheduler.schedule_retry("dev-1", "alpha")
        assert clock.advance(29) == 0
        assert clock.advance(1) == 1
        await scheduler.join()
        return scheduler

    scheduler = asyncio.run(scenario())

    assert calls == [("dev-1", "alpha")]
    # The entry is kept until the retry reports success via clear().
    entry = scheduler.get("dev-1", "alpha")
    assert entry.attempt_count == 1
    assert entry.next_retry_at is None
    assert not scheduler.has_pending_timer("dev-1", "alpha")


def test_crashing_retry_is_logged_not_raised() -> None:
    clock = FakeClock()

    async def retry(device_id: str, server_name: str) -> None:
        raise RuntimeError("boom")

    async def scenario():
        scheduler = ReconnectionScheduler(retry, scheduler=clock)
        scheduler.schedule_retry("dev-1", "alpha")
        clock.advance(30)
        await scheduler.join()

    asyncio.run(scenario())


def test_cancel_and_clear_remove_entries() -> None:
    clock = FakeClock()
    scheduler = ReconnectionScheduler(_noop, scheduler=clock)
    scheduler.schedule_retry("dev-1", "alpha")
    scheduler.schedule_retry("dev-1", "beta")
    scheduler.schedule_retry("dev-2", "alpha")

    assert scheduler.cancel("dev-1", "alpha") is None
    assert scheduler.cancel("dev-1", "missing") is None
    scheduler.clear("dev-2", "alpha")

    assert scheduler.keys() == [("dev-1", "beta")]
    assert len(clock.pending) == 1


def test_cancel_device_only_touches_that_device() -> None:
    clock = FakeClock()
    scheduler = ReconnectionScheduler(_noop, scheduler=clock)
    scheduler.schedule_retry("dev-1", "alpha")
    scheduler.schedule_retry("dev-1", "beta")
    scheduler.schedule_retry("dev-2", "alpha")

    scheduler.cancel_device("dev-1")

    assert scheduler.keys() == [("dev-2", "alpha")]
    assert len(clock.pending) == 1

    scheduler.cancel_all()

    assert scheduler.keys() == []
    assert clock.pending == []


def test_cancel_stops_running_retry() -> None:
    clock = FakeClock()
    started = []

    async def slow_retry(device_id: str, server_name: str) -> None:
        started.append(server_name)
        await asyncio.sleep(3600)

    async def scenario():
        scheduler = ReconnectionScheduler(slow_retry, scheduler=clock)
        scheduler.schedule_retry("dev-1", "alpha")
        clock.advance(30)
        await asyncio.sleep(0)
        task = scheduler.cancel("dev-1", "alpha")
        assert task is not None
        await scheduler.join()
        return task

    task = asyncio.run(scenario())

    assert started == ["alpha"]
    assert task.cancelled()
