import asyncio
import threading
import unittest
from datetime import datetime, timedelta, timezone

from dosetimer.engine.dosing_engine import DosingEngine
from dosetimer.engine.record_source import AlertSinkError, RecordSourceError
from dosetimer.engine.timer_machine import TimerStateMachine
from dosetimer.schemas import DosingRecord, ExerciseEntry, InsulinEntry

NOW = datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc)


def make_record(record_id="r1", minutes=1, injected=False, **overrides):
    data = {
        "id": record_id,
        "user_id": "u1",
        "current_glucose": 150,
        "target_glucose": 100,
        "carbohydrates": 60,
        "insulin_ratio": 10,
        "correction_factor": 50,
        "timer_duration_minutes": minutes,
        "insulin_injected": injected,
        "injected_at": NOW if injected else None,
        "created_at": NOW - timedelta(minutes=5),
    }
    data.update(overrides)
    return DosingRecord(**data)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRecordSource:
    def __init__(self, record=None):
        self.record = record
        self.fail = False
        self.fail_writes = False
        self.injected = []

    def fetch_latest_record(self, user_id):
        if self.fail:
            raise RecordSourceError("backend unreachable")
        return self.record

    def mark_injected(self, record_id, injected_at):
        if self.fail_writes:
            raise RecordSourceError("write failed")
        self.injected.append((record_id, injected_at))


class FakeAlertSink:
    def __init__(self):
        self.alerts = []

    def raise_alert(self, kind, severity, message, dedupe_key=None):
        self.alerts.append((kind, severity, message, dedupe_key))
        return True


class FlakyAlertSink(FakeAlertSink):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def raise_alert(self, kind, severity, message, dedupe_key=None):
        if self.failures:
            self.failures -= 1
            raise AlertSinkError("database is locked")
        return super().raise_alert(kind, severity, message, dedupe_key)


class SlowWriteSource(FakeRecordSource):
    def __init__(self, record=None):
        super().__init__(record)
        self.started = threading.Event()
        self.release = threading.Event()

    def mark_injected(self, record_id, injected_at):
        self.started.set()
        self.release.wait(5)
        super().mark_injected(record_id, injected_at)


class DosingEngineSyncTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.timer = TimerStateMachine(clock=self.clock)
        self.source = FakeRecordSource(make_record())
        self.engine = DosingEngine(self.timer, self.source, now=lambda: NOW)

    def test_new_record_starts_timer(self):
        record = self.engine.sync_latest_record("u1")
        self.assertEqual(record.id, "r1")
        self.assertEqual(self.timer.active_record_id, "r1")
        self.assertEqual(self.timer.remaining_seconds(), 60)

    def test_same_running_record_is_left_alone(self):
        self.engine.sync_latest_record("u1")
        self.clock.advance(10)
        self.engine.sync_latest_record("u1")
        self.assertEqual(self.timer.remaining_seconds(), 50)

    def test_duration_change_restarts_timer(self):
        self.engine.sync_latest_record("u1")
        self.clock.advance(30)
        self.source.record = make_record(minutes=2)
        self.engine.sync_latest_record("u1")
        self.assertEqual(self.timer.remaining_seconds(), 120)
        self.assertTrue(self.timer.is_running)

    def test_completed_record_restarts_until_injected(self):
        self.engine.sync_latest_record("u1")
        self.clock.advance(61)
        self.assertEqual(self.timer.refresh().phase, "completed")

        self.engine.sync_latest_record("u1")
        self.assertTrue(self.timer.is_running)
        self.assertEqual(self.timer.remaining_seconds(), 60)

    def test_stopped_record_is_not_restarted(self):
        self.engine.sync_latest_record("u1")
        self.clock.advance(10)
        self.timer.stop()
        self.engine.sync_latest_record("u1")
        self.assertEqual(self.timer.snapshot().phase, "stopped")
        self.assertEqual(self.timer.remaining_seconds(), 50)

    def test_newer_record_supersedes(self):
        self.engine.sync_latest_record("u1")
        self.source.record = make_record("r2", minutes=5)
        self.engine.sync_latest_record("u1")
        self.assertEqual(self.timer.active_record_id, "r2")
        self.assertEqual(self.timer.remaining_seconds(), 300)

    def test_injected_record_completes_timer(self):
        self.engine.sync_latest_record("u1")
        self.source.record = make_record(injected=True)
        self.engine.sync_latest_record("u1")
        self.assertTrue(self.timer.is_completed)
        self.assertEqual(self.timer.remaining_seconds(), 0)

    def test_injected_record_adopted_when_idle(self):
        self.source.record = make_record("r9", injected=True)
        self.engine.sync_latest_record("u1")
        self.assertEqual(self.timer.active_record_id, "r9")
        self.assertTrue(self.timer.is_completed)

    def test_failed_fetch_leaves_timer_untouched(self):
        self.engine.sync_latest_record("u1")
        before = self.timer.state
        self.source.fail = True

        record = self.engine.sync_latest_record("u1")
        self.assertIs(self.timer.state, before)
        self.assertEqual(record.id, "r1")
        self.assertIn("unreachable", self.engine.last_sync_error)

    def test_deleted_record_resets_timer(self):
        self.engine.sync_latest_record("u1")
        self.source.record = None
        self.assertIsNone(self.engine.sync_latest_record("u1"))
        self.assertIsNone(self.timer.active_record_id)
        self.assertEqual(self.timer.snapshot().phase, "idle")

    def test_display_includes_dose_breakdown(self):
        self.engine.sync_latest_record("u1")
        display = self.engine.display()
        self.assertEqual(display["dose"], {"carb_insulin": 6.0, "correction_insulin": 1.0, "total_insulin": 7.0})
        self.assertEqual(display["timer"].record_id, "r1")

    def test_timer_controls(self):
        self.engine.sync_latest_record("u1")
        self.clock.advance(20)
        self.assertEqual(self.engine.stop_timer().phase, "stopped")
        self.assertEqual(self.engine.restart_timer().remaining_seconds, 60)
        self.assertEqual(self.engine.reset_timer().phase, "idle")


class DosingEngineInjectionTests(unittest.TestCase):
    def setUp(self):
        self.timer = TimerStateMachine(clock=FakeClock())
        self.source = FakeRecordSource(make_record())
        self.engine = DosingEngine(self.timer, self.source, now=lambda: NOW)
        self.engine.sync_latest_record("u1")

    def test_mark_injected(self):
        notice = self.engine.mark_injected()
        self.assertIsNone(notice)
        self.assertTrue(self.timer.is_completed)
        self.assertEqual(self.source.injected, [("r1", NOW)])
        self.assertTrue(self.engine.latest_record.insulin_injected)
        self.assertEqual(self.engine.pending_injections, set())

    def test_failed_write_keeps_completed_and_retries(self):
        self.source.fail_writes = True
        notice = self.engine.mark_injected()

        self.assertEqual(notice.record_id, "r1")
        self.assertTrue(self.timer.is_completed)
        self.assertEqual(self.engine.pending_injections, {"r1"})

        # The backend still reports the record as not injected.
        self.engine.sync_latest_record("u1")
        self.assertTrue(self.timer.is_completed)
        self.assertTrue(self.engine.latest_record.insulin_injected)

        self.source.fail_writes = False
        self.assertEqual(self.engine.flush_pending(), 0)
        self.assertEqual(self.source.injected, [("r1", NOW)])

    def test_mark_injected_twice_writes_once(self):
        self.engine.mark_injected()
        self.assertIsNone(self.engine.mark_injected())
        self.assertEqual(len(self.source.injected), 1)

    def test_nothing_to_inject(self):
        engine = DosingEngine(TimerStateMachine(clock=FakeClock()), FakeRecordSource(), now=lambda: NOW)
        self.assertIsNone(engine.mark_injected())


class AsyncInjectionTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.timer = TimerStateMachine(clock=FakeClock())
        self.source = SlowWriteSource(make_record())
        self.engine = DosingEngine(self.timer, self.source, now=lambda: NOW)
        self.engine.sync_latest_record("u1")

    async def test_push_injection_async(self):
        self.source.release.set()
        record_id = self.engine.confirm_injection()

        self.assertIsNone(await self.engine.push_injection_async(record_id))
        self.assertEqual(self.source.injected, [("r1", NOW)])
        self.assertEqual(self.engine.pending_injections, set())

    async def test_fetch_confirms_injection_while_write_in_flight(self):
        record_id = self.engine.confirm_injection()
        push = asyncio.create_task(self.engine.push_injection_async(record_id))
        await asyncio.to_thread(self.source.started.wait, 5)

        # The backend already reports the injection before the write returns.
        self.source.record = make_record(injected=True)
        self.engine.sync_latest_record("u1")
        self.assertEqual(self.engine.pending_injections, set())

        self.source.release.set()
        self.assertIsNone(await push)
        self.assertEqual(self.engine.pending_injections, set())
        self.assertTrue(self.timer.is_completed)

    async def test_flush_pending_async(self):
        self.source.fail_writes = True
        self.source.release.set()
        self.engine.mark_injected()
        self.assertEqual(self.engine.pending_injections, {"r1"})

        self.assertEqual(await self.engine.flush_pending_async(), 1)
        self.source.fail_writes = False
        self.assertEqual(await self.engine.flush_pending_async(), 0)
        self.assertEqual(self.source.injected, [("r1", NOW)])


class BedtimeAssessmentTests(unittest.TestCase):
    def setUp(self):
        self.sink = FakeAlertSink()
        self.engine = DosingEngine(
            TimerStateMachine(clock=FakeClock()),
            FakeRecordSource(),
            alert_sink=self.sink,
            now=lambda: NOW,
        )

    def test_low_reading_alerts_once(self):
        first = self.engine.assess_bedtime("bg-1", 65, [])
        second = self.engine.assess_bedtime("bg-1", 65, [])

        self.assertEqual(first["risk"], "high")
        self.assertTrue(first["alert_raised"])
        self.assertFalse(second["alert_raised"])
        self.assertEqual(len(self.sink.alerts), 1)
        self.assertEqual(self.sink.alerts[0][0], "night_hypo")
        self.assertEqual(self.sink.alerts[0][3], "night_hypo:bg-1")

    def test_new_reading_alerts_again(self):
        self.engine.assess_bedtime("bg-1", 65, [])
        self.engine.assess_bedtime("bg-2", 62, [])
        self.assertEqual(len(self.sink.alerts), 2)

    def test_failed_alert_is_retried(self):
        sink = FlakyAlertSink()
        engine = DosingEngine(TimerStateMachine(clock=FakeClock()), FakeRecordSource(), alert_sink=sink, now=lambda: NOW)

        first = engine.assess_bedtime("bg-1", 60, [])
        self.assertEqual(first["risk"], "high")
        self.assertFalse(first["alert_raised"])
        self.assertEqual(sink.alerts, [])

        second = engine.assess_bedtime("bg-1", 60, [])
        self.assertTrue(second["alert_raised"])
        self.assertEqual(len(sink.alerts), 1)
        self.assertFalse(engine.assess_bedtime("bg-1", 60, [])["alert_raised"])

    def test_missing_sink_does_not_consume_the_reading(self):
        engine = DosingEngine(TimerStateMachine(clock=FakeClock()), FakeRecordSource(), now=lambda: NOW)
        self.assertFalse(engine.assess_bedtime("bg-1", 60, [])["alert_raised"])

        engine.alert_sink = self.sink
        self.assertTrue(engine.assess_bedtime("bg-1", 60, [])["alert_raised"])
        self.assertEqual(len(self.sink.alerts), 1)

    def test_iob_and_exercise_are_gathered(self):
        insulin = [
            InsulinEntry(id="i1", units=6, insulin_type="rapid", timestamp=NOW - timedelta(hours=1)),
            InsulinEntry(id="i2", units=4, insulin_type="rapid", timestamp=NOW - timedelta(hours=5)),
        ]
        exercise = [
            ExerciseEntry(id="e1", duration_minutes=45, intensity="moderate", timestamp=NOW - timedelta(hours=2)),
        ]
        result = self.engine.assess_bedtime("bg-3", 85, insulin, exercise)

        self.assertEqual(result["total_iob"], 4.5)
        self.assertTrue(result["recent_exercise"])
        self.assertEqual(result["risk"], "high")
        self.assertTrue(result["alert_raised"])

    def test_old_exercise_is_not_recent(self):
        exercise = [
            ExerciseEntry(id="e1", duration_minutes=45, timestamp=NOW - timedelta(hours=7)),
        ]
        result = self.engine.assess_bedtime("bg-4", 120, [], exercise)
        self.assertFalse(result["recent_exercise"])
        self.assertEqual(result["risk"], "low")
        self.assertFalse(result["alert_raised"])
        self.assertEqual(self.sink.alerts, [])


if __name__ == "__main__":
    unittest.main()
