"""
FleetWarden: Periodic Tick

One named, interval-driven job. Each tick is its own small state machine:

  IDLE ──fire──▶ RUNNING ──job done──▶ IDLE
    └──────────stop──────────────────▶ STOPPED (terminal)

The timer fires on its own schedule regardless of how long the job takes.
A firing that lands while the previous run is still going is skipped and
counted, so the same tick never runs twice at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import time
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()

TickJob = Callable[[], Awaitable[object]]


class TickState(enum.StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class PeriodicTick:
    def __init__(
        self,
        name: str,
        interval_s: float,
        job: TickJob,
        initial_delay_s: float = 0.0,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"tick {name!r} needs a positive interval, got {interval_s}")
        self.name = name
        self.interval_s = interval_s
        self._job = job
        self._initial_delay_s = initial_delay_s
        self._state = TickState.IDLE
        self._timer: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[bool] | None = None
        self._logger = logger.bind(system="orchestrator", component="tick", tick=name)

        self._runs: int = 0
        self._skipped: int = 0
        self._failures: int = 0
        self._last_duration_ms: float = 0.0

    @property
    def state(self) -> TickState:
        return self._state

    @property
    def skipped(self) -> int:
        return self._skipped

    @property
    def runs(self) -> int:
        return self._runs

    # ─── Control ─────────────────────────────────────────────────────

    def start(self) -> asyncio.Task[None]:
        if self._state == TickState.STOPPED:
            raise RuntimeError(f"tick {self.name} has been stopped")
        if self._timer is not None and not self._timer.done():
            raise RuntimeError(f"tick {self.name} is already started")
        self._timer = asyncio.create_task(self._timer_loop(), name=f"tick_{self.name}")
        return self._timer

    async def stop(self) -> None:
        """Stop firing. A run in progress is cancelled."""
        self._state = TickState.STOPPED
        for task in (self._timer, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._timer = None
        self._inflight = None

    async def fire(self) -> bool:
        """
        Run the job once, now. Returns False when the firing was skipped
        because a run is already in progress or the tick is stopped.
        """
        if self._state == TickState.STOPPED:
            return False
        if self._state == TickState.RUNNING:
            self._skipped += 1
            self._logger.debug("tick_overlap_skipped", skipped=self._skipped)
            return False

        self._state = TickState.RUNNING
        t0 = time.monotonic()
        try:
            await self._job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failures += 1
            self._logger.error("tick_failed", error=str(exc), error_type=type(exc).__name__)
        finally:
            self._runs += 1
            self._last_duration_ms = (time.monotonic() - t0) * 1000.0
            if self._state == TickState.RUNNING:
                self._state = TickState.IDLE
        return True

    # ─── Timer ───────────────────────────────────────────────────────

    async def _timer_loop(self) -> None:
        if self._initial_delay_s > 0:
            await asyncio.sleep(self._initial_delay_s)
        while self._state != TickState.STOPPED:
            if self._state == TickState.RUNNING:
                self._skipped += 1
                self._logger.debug("tick_overlap_skipped", skipped=self._skipped)
            else:
                self._inflight = asyncio.create_task(self.fire(), name=f"tick_{self.name}_run")
            await asyncio.sleep(self.interval_s)

    @property
    def stats(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "interval_s": self.interval_s,
            "runs": self._runs,
            "skipped": self._skipped,
            "failures": self._failures,
            "last_duration_ms": round(self._last_duration_ms, 1),
        }
