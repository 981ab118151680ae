"""Exponential-backoff retry bookkeeping per (device_id, server_name)."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from mcp_relay.config.defaults import RECONNECT_BASE_DELAY_MS, RECONNECT_MAX_DELAY_MS
from mcp_relay.mcp.scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

ServerKey = tuple[str, str]
RetryCallback = Callable[[str, str], Awaitable[None]]


@dataclass
class ReconnectionEntry:
    device_id: str
    server_name: str
    attempt_count: int = 0
    next_retry_at: float | None = None
    last_delay_ms: int | None = None
    timer: TimerHandle | None = field(default=None, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)


class ReconnectionScheduler:
    """Keeps at most one pending retry timer per key.

    ``schedule_retry`` always cancels and replaces the key's previous timer. When a timer
    fires, ``retry`` runs as a task; the retry itself reports failure by calling
    ``schedule_retry`` again and success by calling ``clear``.
    """

    def __init__(
        self,
        retry: RetryCallback,
        *,
        scheduler: Scheduler | None = None,
        base_delay_ms: int = RECONNECT_BASE_DELAY_MS,
        max_delay_ms: int = RECONNECT_MAX_DELAY_MS,
    ) -> None:
        self._retry = retry
        self._scheduler = scheduler or AsyncioScheduler()
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._entries: dict[ServerKey, ReconnectionEntry] = {}
        self._tasks: set[asyncio.Task] = set()

    def delay_ms(self, attempt: int) -> int:
        # Exponent capped so the intermediate value stays small.
        return min(self.base_delay_ms * 2 ** min(attempt, 32), self.max_delay_ms)

    def get(self, device_id: str, server_name: str) -> ReconnectionEntry | None:
        return self._entries.get((device_id, server_name))

    def keys(self) -> list[ServerKey]:
        return list(self._entries)

    def has_pending_timer(self, device_id: str, server_name: str) -> bool:
        entry = self._entries.get((device_id, server_name))
        return entry is not None and entry.timer is not None

    def schedule_retry(self, device_id: str, server_name: str) -> int:
        """Arm the key's retry timer with the backoff for its current attempt count."""
        key = (device_id, server_name)
        entry = self._entries.get(key)
        if entry is None:
            entry = ReconnectionEntry(device_id=device_id, server_name=server_name)
            self._entries[key] = entry
        if entry.timer is not None:
            entry.timer.cancel()
        delay = self.delay_ms(entry.attempt_count)
        entry.last_delay_ms = delay
        entry.next_retry_at = self._scheduler.now() + delay / 1000.0
        entry.timer = self._scheduler.call_later(delay / 1000.0, functools.partial(self._fire, key, entry))
        entry.attempt_count += 1
        logger.info(
            "Scheduled MCP reconnection: device=%s server=%s attempt=%d delay_ms=%d",
            device_id, server_name, entry.attempt_count, delay,
        )
        return delay

    def clear(self, device_id: str, server_name: str) -> None:
        """Forget the key after a successful connect. A retry task that is running is left alone."""
        entry = self._entries.pop((device_id, server_name), None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def cancel(self, device_id: str, server_name: str) -> asyncio.Task | None:
        """Drop the key's timer and cancel its running retry, if any. Returns that task."""
        entry = self._entries.pop((device_id, server_name), None)
        if entry is None:
            return None
        return self._cancel_entry(entry)

    def cancel_device(self, device_id: str) -> list[asyncio.Task]:
        tasks = []
        for key in [k for k in self._entries if k[0] == device_id]:
            task = self._cancel_entry(self._entries.pop(key))
            if task is not None:
                tasks.append(task)
        return tasks

    def cancel_all(self) -> list[asyncio.Task]:
        tasks = [t for t in (self._cancel_entry(e) for e in self._entries.values()) if t is not None]
        self._entries.clear()
        return tasks

    async def join(self) -> None:
        """Wait until no retry task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _cancel_entry(self, entry: ReconnectionEntry) -> asyncio.Task | None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        task, entry.task = entry.task, None
        if task is None or task.done():
            return None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is current:
            return None
        task.cancel()
        return task

    def _fire(self, key: ServerKey, entry: ReconnectionEntry) -> None:
        if self._entries.get(key) is not entry:
            return
        entry.timer = None
        entry.next_retry_at = None
        task = asyncio.get_running_loop().create_task(self._run_retry(entry))
        entry.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_retry(self, entry: ReconnectionEntry) -> None:
        logger.info(
            "Attempting MCP reconnection: device=%s server=%s attempt=%d",
            entry.device_id, entry.server_name, entry.attempt_count,
        )
        try:
            await self._retry(entry.device_id, entry.server_name)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "MCP reconnection attempt crashed: device=%s server=%s",
                entry.device_id, entry.server_name,
            )
        finally:
            if entry.task is asyncio.current_task():
                entry.task = None
