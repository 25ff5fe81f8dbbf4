"""Record source, record mutation and alert sink collaborators."""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Optional

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter, Retry

from .. import db
from ..schemas import DosingRecord

logger = logging.getLogger(__name__)

RECORDS_TABLE = "insulin_prediction_records"


class RecordSourceError(RuntimeError):
    """The backing store could not be read or written."""


class AlertSinkError(RuntimeError):
    """An alert qualified but could not be stored."""


class SqliteRecordSource:
    """Records kept in the local SQLite database."""

    def fetch_latest_record(self, user_id: str) -> Optional[DosingRecord]:
        try:
            return db.fetch_latest_record(user_id)
        except (sqlite3.Error, ValidationError) as exc:
            raise RecordSourceError(f"Failed to read latest record: {exc}") from exc

    def mark_injected(self, record_id: str, injected_at: datetime) -> None:
        try:
            updated = db.mark_record_injected(record_id, injected_at)
        except sqlite3.Error as exc:
            raise RecordSourceError(f"Failed to mark record {record_id} injected: {exc}") from exc
        if not updated:
            raise RecordSourceError(f"Record {record_id} not found.")


class RestRecordSource:
    """PostgREST-style backend holding ``insulin_prediction_records``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("DOSETIMER_REST_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("DOSETIMER_REST_KEY")
        self.timeout = timeout or float(os.getenv("DOSETIMER_REST_TIMEOUT", "8"))
        self.session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        retry = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "PATCH"}),
        )
        adapter = HTTPAdapter(max_retries=retry)
        session = requests.Session()
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _url(self) -> str:
        if not self.base_url:
            raise RecordSourceError("DOSETIMER_REST_URL is not set.")
        return f"{self.base_url}/rest/v1/{RECORDS_TABLE}"

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def fetch_latest_record(self, user_id: str) -> Optional[DosingRecord]:
        try:
            response = self.session.get(
                self._url(),
                params={
                    "select": "*",
                    "user_id": f"eq.{user_id}",
                    "order": "created_at.desc",
                    "limit": 1,
                },
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            rows = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise RecordSourceError(f"Record fetch failed: {exc}") from exc

        if not rows:
            return None
        try:
            return DosingRecord(**rows[0])
        except ValidationError as exc:
            raise RecordSourceError("Invalid record payload from backend.") from exc

    def mark_injected(self, record_id: str, injected_at: datetime) -> None:
        if injected_at.tzinfo is None:
            injected_at = injected_at.replace(tzinfo=timezone.utc)
        try:
            response = self.session.patch(
                self._url(),
                params={"id": f"eq.{record_id}"},
                json={"insulin_injected": True, "injected_at": injected_at.isoformat()},
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RecordSourceError(f"Failed to mark record {record_id} injected: {exc}") from exc


class DbAlertSink:
    """Stores raised alerts so the presentation layer can list them."""

    def raise_alert(self, kind: str, severity: str, message: str, dedupe_key: Optional[str] = None) -> bool:
        try:
            inserted = db.insert_alert(kind, severity, message, dedupe_key)
        except sqlite3.Error as exc:
            raise AlertSinkError(f"Failed to store {kind} alert: {exc}") from exc
        if inserted:
            logger.warning("Alert raised [%s/%s]: %s", kind, severity, message)
        else:
            logger.info("Alert %s already raised", dedupe_key)
        return inserted

    def has_alerted(self, dedupe_key: str) -> bool:
        return db.alert_exists(dedupe_key)


def build_record_source():
    source = os.getenv("DOSETIMER_RECORD_SOURCE", "sqlite").lower()
    if source == "rest":
        return RestRecordSource()
    if source != "sqlite":
        raise RuntimeError(f"Unknown DOSETIMER_RECORD_SOURCE: {source}")
    return SqliteRecordSource()
