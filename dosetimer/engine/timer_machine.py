"""Single-active countdown anchored to wall-clock time."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable, Optional

from ..tools.timer_display import format_hms, progress, status, time_display

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerState:
    """Persisted timer fields.

    Only the wall-clock anchor is stored; remaining time is always derived
    from ``started_at`` so a restored state is correct after any suspension.
    """

    active_record_id: Optional[str] = None
    total_seconds: int = 0
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    is_running: bool = False
    is_completed: bool = False

    @property
    def phase(self) -> str:
        if self.is_completed:
            return "completed"
        if self.is_running:
            return "running"
        if self.active_record_id is not None:
            return "stopped"
        return "idle"


@dataclass(frozen=True)
class TimerSnapshot:
    record_id: Optional[str]
    phase: str
    total_seconds: int
    remaining_seconds: int
    is_running: bool
    is_completed: bool
    has_active_timer: bool
    progress: float
    percentage_remaining: int
    percentage_elapsed: int
    status: Optional[str]
    display: str
    time: dict

    def as_dict(self) -> dict:
        return asdict(self)


class TimerStateMachine:
    """Owns the one countdown that may be active at a time.

    Every transition builds a new :class:`TimerState` and swaps it in with a
    single assignment, so a reader never sees a new anchor paired with an old
    duration. ``on_change`` receives each committed state (used to persist it).
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        initial: Optional[TimerState] = None,
        on_change: Optional[Callable[[TimerState], None]] = None,
    ) -> None:
        self._clock = clock
        self._state = initial or TimerState()
        self._on_change = on_change

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def active_record_id(self) -> Optional[str]:
        return self._state.active_record_id

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def is_completed(self) -> bool:
        return self._state.is_completed

    # -- transitions ----------------------------------------------------------

    def start(self, record_id: str, total_seconds: int) -> None:
        """Start counting down ``total_seconds`` for ``record_id``.

        Replaces whatever was active. Starting the exact configuration that is
        already running keeps the existing anchor.
        """
        total_seconds = int(total_seconds)
        if total_seconds < 1:
            raise ValueError(f"total_seconds must be at least 1, got {total_seconds}")

        current = self._state
        if (
            current.is_running
            and current.active_record_id == record_id
            and current.total_seconds == total_seconds
        ):
            return

        if current.active_record_id is not None and current.active_record_id != record_id:
            logger.info("Timer for record %s superseded by %s", current.active_record_id, record_id)
        self._commit(
            TimerState(
                active_record_id=record_id,
                total_seconds=total_seconds,
                started_at=self._clock(),
                is_running=True,
            )
        )
        logger.info("Timer started for record %s (%ss)", record_id, total_seconds)

    def restart(self) -> None:
        """Count the active record down again from its full duration."""
        current = self._state
        if current.active_record_id is None:
            return
        self._commit(
            TimerState(
                active_record_id=current.active_record_id,
                total_seconds=current.total_seconds,
                started_at=self._clock(),
                is_running=True,
            )
        )
        logger.info("Timer restarted for record %s", current.active_record_id)

    def stop(self) -> None:
        current = self._state
        if not current.is_running:
            return
        self._commit(replace(current, is_running=False, stopped_at=self._clock()))
        logger.info("Timer stopped for record %s", current.active_record_id)

    def complete(self) -> None:
        current = self._state
        if current.active_record_id is None:
            logger.debug("complete() ignored: no active timer")
            return
        if current.is_completed:
            return
        self._commit(replace(current, is_running=False, is_completed=True, stopped_at=None))
        logger.info("Timer completed for record %s", current.active_record_id)

    def reset(self) -> None:
        if self._state == TimerState():
            return
        self._commit(TimerState())
        logger.info("Timer reset")

    # -- read path --------------------------------------------------------------

    def remaining_seconds(self) -> int:
        return self._remaining(self._state)

    def refresh(self) -> TimerSnapshot:
        """Recompute remaining time, completing a running timer that hit zero."""
        state = self._state
        if state.is_running and self._remaining(state) == 0:
            self._commit(replace(state, is_running=False, is_completed=True))
            logger.info("Timer elapsed for record %s", state.active_record_id)
            state = self._state
        return self._snapshot(state)

    def resync_on_foreground(self) -> TimerSnapshot:
        state = self._state
        if state.phase == "idle":
            return self._snapshot(state)
        snapshot = self.refresh()
        logger.info(
            "Foreground resync: record %s %s, %ss remaining",
            snapshot.record_id,
            snapshot.phase,
            snapshot.remaining_seconds,
        )
        return snapshot

    def snapshot(self) -> TimerSnapshot:
        return self._snapshot(self._state)

    # -- helpers ----------------------------------------------------------------

    def _remaining(self, state: TimerState) -> int:
        if state.is_completed or state.started_at is None or state.total_seconds <= 0:
            return 0
        end = state.stopped_at if state.stopped_at is not None else self._clock()
        # A clock that moved backwards counts as "just started".
        elapsed = max(0, int(end - state.started_at))
        return min(state.total_seconds, max(0, state.total_seconds - elapsed))

    def _snapshot(self, state: TimerState) -> TimerSnapshot:
        remaining = self._remaining(state)
        has_active_timer = state.active_record_id is not None
        fraction_left = progress(remaining, state.total_seconds)
        percentage_remaining = round(fraction_left * 100)
        return TimerSnapshot(
            record_id=state.active_record_id,
            phase=state.phase,
            total_seconds=state.total_seconds,
            remaining_seconds=remaining,
            is_running=state.is_running,
            is_completed=state.is_completed,
            has_active_timer=has_active_timer,
            progress=fraction_left,
            percentage_remaining=percentage_remaining,
            percentage_elapsed=100 - percentage_remaining if has_active_timer else 0,
            status=status(state.is_completed, fraction_left, has_active_timer, state.is_running),
            display=format_hms(remaining) if has_active_timer else "--:--",
            time=time_display(remaining, has_active_timer),
        )

    def _commit(self, state: TimerState) -> None:
        self._state = state
        if self._on_change is not None:
            self._on_change(state)
