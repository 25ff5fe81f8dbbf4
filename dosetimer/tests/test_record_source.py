import unittest
from datetime import datetime, timezone

import requests

from dosetimer.engine.dosing_engine import DosingEngine
from dosetimer.engine.record_source import RecordSourceError, RestRecordSource
from dosetimer.engine.timer_machine import TimerStateMachine

ROW = {
    "id": "rec-1",
    "user_id": "u1",
    "current_glucose": 150,
    "carbohydrates": 60,
    "target_glucose": 100,
    "insulin_ratio": 10,
    "correction_factor": 50,
    "carb_insulin": 6,
    "correction_insulin": 1,
    "total_insulin": 7,
    "timer_duration_minutes": 15,
    "insulin_injected": False,
    "injected_at": None,
    "meal_type": "lunch",
    "notes": None,
    "created_at": "2026-03-01T12:00:00+00:00",
    "updated_at": "2026-03-01T12:00:00+00:00",
}


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)

    def patch(self, url, **kwargs):
        return self._request("PATCH", url, **kwargs)


class RestRecordSourceTests(unittest.TestCase):
    def _source(self, session):
        return RestRecordSource(base_url="https://backend.test/", api_key="key", timeout=3, session=session)

    def test_fetch_latest_record(self):
        session = FakeSession(FakeResponse([ROW]))
        record = self._source(session).fetch_latest_record("u1")

        self.assertEqual(record.id, "rec-1")
        self.assertEqual(record.timer_seconds, 900)
        self.assertEqual(record.total_insulin, 7.0)
        method, url, kwargs = session.calls[0]
        self.assertEqual(url, "https://backend.test/rest/v1/insulin_prediction_records")
        self.assertEqual(kwargs["params"]["user_id"], "eq.u1")
        self.assertEqual(kwargs["params"]["order"], "created_at.desc")
        self.assertEqual(kwargs["headers"]["apikey"], "key")
        self.assertEqual(kwargs["timeout"], 3)

    def test_stored_doses_are_rederived_from_inputs(self):
        row = dict(ROW, total_insulin=42)
        record = self._source(FakeSession(FakeResponse([row]))).fetch_latest_record("u1")
        self.assertEqual(record.total_insulin, 7.0)

    def test_no_rows(self):
        self.assertIsNone(self._source(FakeSession(FakeResponse([]))).fetch_latest_record("u1"))

    def test_http_error(self):
        source = self._source(FakeSession(FakeResponse(status_code=503)))
        with self.assertRaises(RecordSourceError):
            source.fetch_latest_record("u1")

    def test_connection_error(self):
        source = self._source(FakeSession(error=requests.ConnectionError("down")))
        with self.assertRaises(RecordSourceError):
            source.fetch_latest_record("u1")

    def test_invalid_payload(self):
        row = dict(ROW, insulin_ratio=0)
        with self.assertRaises(RecordSourceError):
            self._source(FakeSession(FakeResponse([row]))).fetch_latest_record("u1")

    def test_mark_injected(self):
        session = FakeSession(FakeResponse(status_code=204))
        stamp = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
        self._source(session).mark_injected("rec-1", stamp)

        method, _, kwargs = session.calls[0]
        self.assertEqual(method, "PATCH")
        self.assertEqual(kwargs["params"], {"id": "eq.rec-1"})
        self.assertEqual(kwargs["json"], {"insulin_injected": True, "injected_at": stamp.isoformat()})

    def test_mark_injected_failure(self):
        source = self._source(FakeSession(FakeResponse(status_code=500)))
        with self.assertRaises(RecordSourceError):
            source.mark_injected("rec-1", datetime.now(timezone.utc))

    def test_missing_url_is_a_sync_failure(self):
        source = RestRecordSource(base_url="", session=FakeSession(FakeResponse([])))
        source.base_url = ""
        with self.assertRaises(RecordSourceError):
            source.fetch_latest_record("u1")
        with self.assertRaises(RecordSourceError):
            source.mark_injected("rec-1", datetime.now(timezone.utc))

        timer = TimerStateMachine(clock=lambda: 1_700_000_000.0)
        timer.start("rec-1", 600)
        before = timer.state
        engine = DosingEngine(timer, source)
        self.assertIsNone(engine.sync_latest_record("u1"))
        self.assertIs(timer.state, before)
        self.assertIn("DOSETIMER_REST_URL", engine.last_sync_error)


if __name__ == "__main__":
    unittest.main()
