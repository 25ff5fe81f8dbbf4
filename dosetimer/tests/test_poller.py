import asyncio
import unittest

from dosetimer.engine.poller import TimerDrivenPoller
from dosetimer.engine.timer_machine import TimerStateMachine


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TimerDrivenPollerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.machine = TimerStateMachine(clock=self.clock)
        self.ticks = []
        self.poller = TimerDrivenPoller(self.machine, on_tick=self.ticks.append, interval=0.01)

    async def asyncTearDown(self):
        self.poller.stop()

    async def test_idle_machine_is_not_polled(self):
        self.poller.follow()
        self.assertFalse(self.poller.is_polling)

    async def test_ticks_recompute_without_counting_down(self):
        self.machine.start("r1", 600)
        self.poller.follow()
        await asyncio.sleep(0.08)

        self.assertTrue(self.poller.is_polling)
        self.assertGreater(len(self.ticks), 1)
        self.assertTrue(all(tick.remaining_seconds == 600 for tick in self.ticks))

    async def test_tears_down_when_timer_completes(self):
        self.machine.start("r1", 60)
        self.poller.follow()
        self.clock.advance(61)
        await asyncio.sleep(0.05)

        self.assertFalse(self.poller.is_polling)
        self.assertTrue(self.machine.is_completed)
        self.assertTrue(self.ticks[-1].is_completed)

    async def test_tears_down_after_external_stop(self):
        self.machine.start("r1", 600)
        self.poller.follow()
        self.machine.stop()
        await asyncio.sleep(0.05)
        self.assertFalse(self.poller.is_polling)

    async def test_stop_is_idempotent(self):
        self.machine.start("r1", 600)
        self.poller.follow()
        self.poller.stop()
        self.poller.stop()
        tick_count = len(self.ticks)
        await asyncio.sleep(0.05)

        self.assertFalse(self.poller.is_polling)
        self.assertEqual(len(self.ticks), tick_count)
        self.assertTrue(self.machine.is_running)

    async def test_follow_twice_keeps_one_task(self):
        self.machine.start("r1", 600)
        self.poller.follow()
        task = self.poller._task
        self.poller.follow()
        self.assertIs(self.poller._task, task)

    async def test_foreground_resync_after_suspension(self):
        self.machine.start("r1", 120)
        self.clock.advance(200)

        snapshot = self.poller.on_foreground()
        self.assertEqual(snapshot.phase, "completed")
        self.assertEqual(snapshot.remaining_seconds, 0)
        self.assertFalse(self.poller.is_polling)

    async def test_foreground_resumes_ticking(self):
        self.machine.start("r1", 120)
        self.clock.advance(20)

        snapshot = self.poller.on_foreground()
        self.assertEqual(snapshot.remaining_seconds, 100)
        self.assertTrue(self.poller.is_polling)


if __name__ == "__main__":
    unittest.main()
