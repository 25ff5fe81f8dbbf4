"""Keeps the countdown consistent with the latest dosing record."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional, Protocol, Set

from ..schemas import DosingRecord, ExerciseEntry
from ..tools.dose_math import insulin_on_board
from ..tools.risk import DEFAULT_NIGHT_HYPO_THRESHOLD, night_hypo_risk
from .record_source import AlertSinkError, RecordSourceError
from .timer_machine import TimerSnapshot, TimerStateMachine

logger = logging.getLogger(__name__)

RECENT_EXERCISE_HOURS = 6
NIGHT_HYPO_ALERT = "night_hypo"
SYNC_PENDING_MESSAGE = "Injection saved on this device but not synced yet. Retrying in the background."


class RecordSource(Protocol):
    def fetch_latest_record(self, user_id: str) -> Optional[DosingRecord]: ...


class RecordMutation(Protocol):
    def mark_injected(self, record_id: str, injected_at: datetime) -> None: ...


class AlertSink(Protocol):
    def raise_alert(self, kind: str, severity: str, message: str, dedupe_key: Optional[str] = None) -> bool: ...


@dataclass(frozen=True)
class SyncNotice:
    record_id: str
    message: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DosingEngine:
    """Applies fetched records, injection confirmations and bedtime checks.

    The timer is only ever changed through its public transitions. A failed
    fetch leaves the timer exactly as it was; a failed injection write keeps
    the local Completed state and is retried by :meth:`flush_pending`.
    """

    def __init__(
        self,
        timer: TimerStateMachine,
        record_source: RecordSource,
        record_mutation: Optional[RecordMutation] = None,
        alert_sink: Optional[AlertSink] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.timer = timer
        self.record_source = record_source
        self.record_mutation = record_mutation or record_source
        self.alert_sink = alert_sink
        self._now = now or _utcnow
        self.latest_record: Optional[DosingRecord] = None
        self.last_sync_error: Optional[str] = None
        self._pending_injections: Dict[str, datetime] = {}
        self._alerted: Set[str] = set()

    @property
    def pending_injections(self) -> Set[str]:
        return set(self._pending_injections)

    # -- record fetch -------------------------------------------------------------

    def fetch_latest_record(self, user_id: str) -> Optional[DosingRecord]:
        return self.record_source.fetch_latest_record(user_id)

    def sync_latest_record(self, user_id: str) -> Optional[DosingRecord]:
        try:
            record = self.fetch_latest_record(user_id)
        except RecordSourceError as exc:
            self.record_sync_failure(user_id, exc)
            return self.latest_record
        return self.apply_fetch_result(record)

    def record_sync_failure(self, user_id: str, exc: Exception) -> None:
        self.last_sync_error = str(exc)
        logger.warning("Record fetch failed for user %s, timer left unchanged: %s", user_id, exc)

    def apply_fetch_result(self, record: Optional[DosingRecord]) -> Optional[DosingRecord]:
        self.last_sync_error = None
        if record is None:
            self.latest_record = None
            if self.timer.active_record_id is not None:
                logger.info("Record %s no longer exists, resetting timer", self.timer.active_record_id)
                self.timer.reset()
            return None

        record = self._reconcile_pending(record)
        self.latest_record = record
        self.apply_record(record)
        return record

    def apply_record(self, record: DosingRecord) -> None:
        active_id = self.timer.active_record_id

        if record.insulin_injected:
            if active_id != record.id:
                self.timer.start(record.id, record.timer_seconds)
            self.timer.complete()
            return

        if active_id != record.id:
            logger.info("New record %s detected, starting timer", record.id)
            self.timer.start(record.id, record.timer_seconds)
        elif self.timer.state.total_seconds != record.timer_seconds:
            logger.info("Timer duration changed for record %s, restarting", record.id)
            self.timer.start(record.id, record.timer_seconds)
        elif self.timer.is_completed:
            logger.info("Timer completed but record %s is still not injected, restarting", record.id)
            self.timer.start(record.id, record.timer_seconds)

    def _reconcile_pending(self, record: DosingRecord) -> DosingRecord:
        injected_at = self._pending_injections.get(record.id)
        if injected_at is None:
            return record
        if record.insulin_injected:
            self._pending_injections.pop(record.id, None)
            return record
        # The backend has not seen the injection yet; the local copy wins.
        return record.model_copy(update={"insulin_injected": True, "injected_at": injected_at})

    # -- injection -------------------------------------------------------------------

    def confirm_injection(self) -> Optional[str]:
        """Mark the latest record injected locally and complete its timer."""
        record = self.latest_record
        if record is None:
            logger.info("No record to mark injected")
            return None
        if record.insulin_injected:
            return None

        injected_at = self._now()
        self.latest_record = record.model_copy(update={"insulin_injected": True, "injected_at": injected_at})
        self._pending_injections[record.id] = injected_at
        self.apply_record(self.latest_record)
        return record.id

    def push_injection(self, record_id: str) -> Optional[SyncNotice]:
        injected_at = self._pending_injections.get(record_id)
        if injected_at is None:
            return None
        try:
            self.record_mutation.mark_injected(record_id, injected_at)
        except RecordSourceError as exc:
            return self._injection_not_synced(record_id, exc)
        self._injection_synced(record_id, injected_at)
        return None

    async def push_injection_async(self, record_id: str) -> Optional[SyncNotice]:
        """Like :meth:`push_injection`, with only the remote write off the event loop.

        The pending bookkeeping stays on the loop thread, where fetches are
        reconciled against it.
        """
        injected_at = self._pending_injections.get(record_id)
        if injected_at is None:
            return None
        try:
            await asyncio.to_thread(self.record_mutation.mark_injected, record_id, injected_at)
        except RecordSourceError as exc:
            return self._injection_not_synced(record_id, exc)
        self._injection_synced(record_id, injected_at)
        return None

    def _injection_synced(self, record_id: str, injected_at: datetime) -> None:
        # A fetch may already have confirmed and dropped this entry.
        if self._pending_injections.get(record_id) == injected_at:
            del self._pending_injections[record_id]
        logger.info("Injection for record %s synced", record_id)

    def _injection_not_synced(self, record_id: str, exc: Exception) -> SyncNotice:
        logger.warning("Injection for record %s not synced: %s", record_id, exc)
        return SyncNotice(record_id=record_id, message=SYNC_PENDING_MESSAGE)

    def mark_injected(self) -> Optional[SyncNotice]:
        record_id = self.confirm_injection()
        if record_id is None:
            return None
        return self.push_injection(record_id)

    def flush_pending(self) -> int:
        """Retry unsynced injection writes; returns how many are still pending."""
        for record_id in list(self._pending_injections):
            self.push_injection(record_id)
        return len(self._pending_injections)

    async def flush_pending_async(self) -> int:
        for record_id in list(self._pending_injections):
            await self.push_injection_async(record_id)
        return len(self._pending_injections)

    # -- timer controls ------------------------------------------------------------------

    def restart_timer(self) -> TimerSnapshot:
        self.timer.restart()
        return self.timer.snapshot()

    def stop_timer(self) -> TimerSnapshot:
        self.timer.stop()
        return self.timer.snapshot()

    def reset_timer(self) -> TimerSnapshot:
        self.timer.reset()
        return self.timer.snapshot()

    # -- bedtime risk ----------------------------------------------------------------------

    def assess_bedtime(
        self,
        reading_id: str,
        bedtime_glucose: float,
        insulin_entries: Iterable,
        exercise_entries: Iterable[ExerciseEntry] = (),
        threshold: float = DEFAULT_NIGHT_HYPO_THRESHOLD,
    ) -> dict:
        """Assess a bedtime reading and raise at most one alert for it."""
        now = self._now()
        iob = insulin_on_board(insulin_entries, now)
        cutoff = now - timedelta(hours=RECENT_EXERCISE_HOURS)
        recent_exercise = any(cutoff <= entry.timestamp <= now for entry in exercise_entries)

        result = night_hypo_risk(bedtime_glucose, iob["total_iob"], recent_exercise, threshold)
        alert_raised = False
        if result["should_alert"]:
            alert_raised = self._raise_once(
                f"{NIGHT_HYPO_ALERT}:{reading_id}", NIGHT_HYPO_ALERT, "high", result["recommendation"]
            )

        return {
            **result,
            "total_iob": iob["total_iob"],
            "recent_exercise": recent_exercise,
            "alert_raised": alert_raised,
        }

    def _raise_once(self, dedupe_key: str, kind: str, severity: str, message: str) -> bool:
        if dedupe_key in self._alerted:
            return False
        if self.alert_sink is None:
            logger.warning("Alert %s qualified but no alert sink is configured: %s", dedupe_key, message)
            return False
        try:
            raised = self.alert_sink.raise_alert(kind, severity, message, dedupe_key=dedupe_key)
        except AlertSinkError as exc:
            # Left unmarked so the next assessment of this reading tries again.
            logger.error("Alert %s could not be raised: %s", dedupe_key, exc)
            return False
        # A falsy result means the sink already holds this key.
        self._alerted.add(dedupe_key)
        return bool(raised)

    # -- display ---------------------------------------------------------------------------

    def display(self) -> dict:
        record = self.latest_record
        dose = None
        if record is not None:
            dose = {
                "carb_insulin": record.carb_insulin,
                "correction_insulin": record.correction_insulin,
                "total_insulin": record.total_insulin,
            }
        return {
            "record": record,
            "dose": dose,
            "timer": self.timer.snapshot(),
            "sync_error": self.last_sync_error,
        }
