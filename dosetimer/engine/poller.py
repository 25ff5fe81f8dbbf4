"""One-second display refresh while a countdown is running."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .timer_machine import TimerSnapshot, TimerStateMachine

logger = logging.getLogger(__name__)


class TimerDrivenPoller:
    """Turns a periodic tick into ``refresh()`` calls on the state machine.

    The tick only asks the machine to recompute from its anchor; it never
    counts down by itself, so missed or late ticks cannot make it drift.
    Must be driven from the event loop that owns the machine.
    """

    def __init__(
        self,
        machine: TimerStateMachine,
        on_tick: Optional[Callable[[TimerSnapshot], None]] = None,
        interval: float = 1.0,
    ) -> None:
        self.machine = machine
        self.on_tick = on_tick
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def follow(self) -> None:
        """Start ticking if the machine runs, tear down if it does not."""
        if self.machine.is_running:
            if not self.is_polling:
                self._task = asyncio.get_running_loop().create_task(
                    self._run(), name="timer-poller"
                )
                logger.debug("Timer poller started (interval=%ss)", self.interval)
        else:
            self.stop()

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Timer poller stopped")

    def on_foreground(self) -> TimerSnapshot:
        """Resync before any further tick is scheduled."""
        snapshot = self.machine.resync_on_foreground()
        self.follow()
        return snapshot

    async def _run(self) -> None:
        current = asyncio.current_task()
        while True:
            await asyncio.sleep(self.interval)
            if self._task is not current:
                # stop() raced with this tick; the last tick is a no-op.
                return
            snapshot = self.machine.refresh()
            if self.on_tick is not None:
                self.on_tick(snapshot)
            if not snapshot.is_running:
                self._task = None
                logger.debug("Timer poller finished: record %s %s", snapshot.record_id, snapshot.phase)
                return
