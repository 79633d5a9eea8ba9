from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..failures import Interrupted, UnexpectedError
from ..lifecycle import LifecycleRun
from .collector import AggregateResult, ResultCollector
from .config import DEFAULT_GRACEFUL_STOP_SECONDS, RampProfile

LOGGER = logging.getLogger("vmload.ramp")

LifecycleFactory = Callable[[], Awaitable[LifecycleRun]]

CRASH_BACKOFF_SECONDS = 0.1
MAX_CRASH_BACKOFF_SECONDS = 5.0


@dataclass
class _Slot:
    index: int
    retire: asyncio.Event
    task: Optional[asyncio.Task] = None
    consecutive_crashes: int = 0


class RampScheduler:
    """Closed-loop virtual users whose population follows a ramp profile.

    When the last stage ends or :meth:`stop` is called, running lifecycles get
    ``graceful_stop_seconds`` to finish. Whatever is still running after that
    is cancelled and counted as ``interrupted``. A second :meth:`stop` skips
    the grace period.
    """

    def __init__(
        self,
        profile: RampProfile,
        lifecycle_factory: LifecycleFactory,
        collector: Optional[ResultCollector] = None,
        tick_seconds: float = 1.0,
        graceful_stop_seconds: float = DEFAULT_GRACEFUL_STOP_SECONDS,
        crash_backoff_seconds: float = CRASH_BACKOFF_SECONDS,
    ) -> None:
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        if graceful_stop_seconds < 0:
            raise ValueError("graceful_stop_seconds must be >= 0")
        self._profile = profile
        self._lifecycle_factory = lifecycle_factory
        self._collector = collector or ResultCollector()
        self._tick_seconds = tick_seconds
        self._graceful_stop_seconds = graceful_stop_seconds
        self._crash_backoff_seconds = crash_backoff_seconds

        self._slots: list[_Slot] = []
        self._slot_counter = itertools.count(start=1)
        self._crash_counter = itertools.count(start=1)
        self._stop_event = asyncio.Event()
        self._force_event = asyncio.Event()
        self.peak_active = 0

    @property
    def collector(self) -> ResultCollector:
        return self._collector

    @property
    def active(self) -> int:
        return sum(
            1
            for slot in self._slots
            if not slot.retire.is_set() and slot.task is not None and not slot.task.done()
        )

    async def execute(self) -> AggregateResult:
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        total = self._profile.total_duration_seconds
        last_target: Optional[int] = None

        LOGGER.info(
            "Starting ramp: %d stage(s) over %.1fs, peak %d virtual users",
            len(self._profile.stages),
            total,
            self._profile.peak_population,
        )

        try:
            while not self._stop_event.is_set():
                elapsed = loop.time() - started_at
                if elapsed >= total:
                    break

                target = self._profile.target_at(elapsed)
                self._scale_to(target)
                self.peak_active = max(self.peak_active, self.active)
                self._collector.record_population(elapsed, target, self.active)
                if target != last_target:
                    LOGGER.debug("target population %d at %.1fs", target, elapsed)
                    last_target = target

                remaining = total - elapsed
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=min(self._tick_seconds, remaining),
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._retire(self._slots)
            await self._drain()

        result = self._collector.snapshot()
        LOGGER.info(
            "Ramp finished: started=%d passed=%d failed=%d",
            result.started,
            result.passed,
            result.failed,
        )
        return result

    def stop(self) -> None:
        if self._stop_event.is_set():
            LOGGER.warning("Stop requested again; cancelling in-flight lifecycles")
            self._force_event.set()
            self._cancel(self._slots)
            return
        self._stop_event.set()
        self._retire(self._slots)

    def _scale_to(self, target: int) -> None:
        self._slots = [slot for slot in self._slots if slot.task is None or not slot.task.done()]
        live = [slot for slot in self._slots if not slot.retire.is_set()]

        if len(live) < target:
            for _ in range(target - len(live)):
                self._spawn()
        elif len(live) > target:
            # newest slots go first; each finishes its current iteration
            self._retire(live[target:])

    def _spawn(self) -> None:
        slot = _Slot(index=next(self._slot_counter), retire=asyncio.Event())
        slot.task = asyncio.create_task(self._run_slot(slot), name=f"vmload-slot-{slot.index}")
        self._slots.append(slot)

    async def _run_slot(self, slot: _Slot) -> None:
        while not slot.retire.is_set() and not self._stop_event.is_set():
            self._collector.register_start()
            try:
                run = await self._lifecycle_factory()
            except asyncio.CancelledError:
                grace = None if self._force_event.is_set() else self._graceful_stop_seconds
                self._collector.record_failure(
                    f"slot-{slot.index}-cancelled", Interrupted(grace)
                )
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("lifecycle iteration in slot %d crashed", slot.index)
                self._collector.record_failure(
                    f"slot-{slot.index}-crash-{next(self._crash_counter)}",
                    UnexpectedError(repr(exc)),
                )
                slot.consecutive_crashes += 1
                await self._backoff(slot)
                continue
            slot.consecutive_crashes = 0
            self._collector.record(run)

    async def _backoff(self, slot: _Slot) -> None:
        delay = min(
            self._crash_backoff_seconds * 2 ** (slot.consecutive_crashes - 1),
            MAX_CRASH_BACKOFF_SECONDS,
        )
        try:
            await asyncio.wait_for(slot.retire.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _retire(slots: list[_Slot]) -> None:
        for slot in slots:
            slot.retire.set()

    @staticmethod
    def _cancel(slots: list[_Slot]) -> None:
        for slot in slots:
            if slot.task is not None and not slot.task.done():
                slot.task.cancel()

    async def _drain(self) -> None:
        tasks = {slot.task for slot in self._slots if slot.task is not None}
        if tasks:
            pending = {task for task in tasks if not task.done()}
            if pending and not self._force_event.is_set():
                _, pending = await asyncio.wait(pending, timeout=self._graceful_stop_seconds)
            if pending:
                LOGGER.warning(
                    "%d lifecycle(s) still running after %gs graceful stop; cancelling",
                    len(pending),
                    self._graceful_stop_seconds,
                )
                for task in pending:
                    task.cancel()
            # cancelled lifecycles still run their cleanup before the tasks end
            await asyncio.gather(*tasks, return_exceptions=True)
        self._slots.clear()
