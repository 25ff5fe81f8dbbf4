"""SQLite storage for dosing records, history, user settings and the timer anchor."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .engine.timer_machine import TimerState
from .schemas import (
    AlertItem,
    CycleEntry,
    CycleEntryCreate,
    DosingRecord,
    DosingRecordCreate,
    DosingRecordUpdate,
    ExerciseEntry,
    ExerciseEntryCreate,
    InsulinEntry,
    InsulinEntryCreate,
    UserSettings,
    UserSettingsUpdate,
)
from .tools.dose_math import INSULIN_DURATION_HOURS, bolus_dose

logger = logging.getLogger(__name__)


def _db_path() -> str:
    configured = os.getenv("DOSETIMER_DB_PATH")
    if configured:
        return configured
    return os.path.join(os.path.dirname(__file__), "data", "dosetimer.db")


def _connect() -> sqlite3.Connection:
    path = _db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Stored as UTC so string comparison orders correctly.
    return value.astimezone(timezone.utc).isoformat()


def init_db() -> None:
    conn = _connect()
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS dosing_records (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            current_glucose REAL NOT NULL,
            target_glucose REAL NOT NULL,
            carbohydrates REAL NOT NULL,
            insulin_ratio REAL NOT NULL,
            correction_factor REAL NOT NULL,
            carb_insulin REAL NOT NULL,
            correction_insulin REAL NOT NULL,
            total_insulin REAL NOT NULL,
            timer_duration_minutes INTEGER NOT NULL,
            insulin_injected INTEGER NOT NULL DEFAULT 0,
            injected_at TEXT,
            meal_type TEXT NOT NULL DEFAULT 'other',
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_dosing_records_user ON dosing_records(user_id, created_at);
        CREATE TABLE IF NOT EXISTS insulin_entries (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            units REAL NOT NULL,
            insulin_type TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            duration_hours REAL NOT NULL,
            notes TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_insulin_entries_user ON insulin_entries(user_id, timestamp);
        CREATE TABLE IF NOT EXISTS exercise_entries (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            exercise_type TEXT NOT NULL,
            duration_minutes REAL NOT NULL,
            intensity TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            notes TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_exercise_entries_user ON exercise_entries(user_id, timestamp);
        CREATE TABLE IF NOT EXISTS timer_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            active_record_id TEXT,
            total_seconds INTEGER NOT NULL,
            started_at REAL,
            stopped_at REAL,
            is_running INTEGER NOT NULL,
            is_completed INTEGER NOT NULL
        );
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id TEXT PRIMARY KEY,
            target_glucose REAL NOT NULL,
            insulin_sensitivity_factor REAL NOT NULL,
            carb_ratio REAL NOT NULL,
            night_hypo_threshold REAL NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS menstrual_cycles (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT,
            flow TEXT NOT NULL,
            symptoms TEXT NOT NULL DEFAULT '[]'
        );
        CREATE INDEX IF NOT EXISTS idx_menstrual_cycles_user ON menstrual_cycles(user_id, start_date);
        CREATE TABLE IF NOT EXISTS alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            severity TEXT NOT NULL,
            message TEXT NOT NULL,
            dedupe_key TEXT UNIQUE,
            created_at TEXT NOT NULL,
            acknowledged INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    conn.commit()
    conn.close()


# -- dosing records -------------------------------------------------------------


def _record_from_row(row: sqlite3.Row) -> DosingRecord:
    data = dict(row)
    data["insulin_injected"] = bool(data["insulin_injected"])
    return DosingRecord(**data)


def insert_record(request: DosingRecordCreate) -> DosingRecord:
    created_at = _now()
    dose = bolus_dose(
        request.current_glucose,
        request.target_glucose,
        request.carbohydrates,
        request.insulin_ratio,
        request.correction_factor,
    )
    record_id = uuid.uuid4().hex

    conn = _connect()
    conn.execute(
        """
        INSERT INTO dosing_records (
            id, user_id, current_glucose, target_glucose, carbohydrates, insulin_ratio, correction_factor,
            carb_insulin, correction_insulin, total_insulin, timer_duration_minutes, insulin_injected,
            meal_type, notes, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
        """,
        (
            record_id,
            request.user_id,
            request.current_glucose,
            request.target_glucose,
            request.carbohydrates,
            request.insulin_ratio,
            request.correction_factor,
            dose["carb_insulin"],
            dose["correction_insulin"],
            dose["total_insulin"],
            request.timer_duration_minutes,
            request.meal_type,
            request.notes,
            created_at,
            created_at,
        ),
    )
    conn.commit()
    conn.close()

    logger.info("Stored dosing record %s for user %s (%.1f U)", record_id, request.user_id, dose["total_insulin"])
    return fetch_record(record_id)


def update_record_inputs(record_id: str, request: DosingRecordUpdate) -> Optional[DosingRecord]:
    """Edit the raw inputs of a record; the dose breakdown is recomputed from them."""
    dose = bolus_dose(
        request.current_glucose,
        request.target_glucose,
        request.carbohydrates,
        request.insulin_ratio,
        request.correction_factor,
    )
    conn = _connect()
    cursor = conn.execute(
        """
        UPDATE dosing_records SET
            current_glucose = ?, target_glucose = ?, carbohydrates = ?, insulin_ratio = ?,
            correction_factor = ?, carb_insulin = ?, correction_insulin = ?, total_insulin = ?,
            timer_duration_minutes = ?, meal_type = ?, notes = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            request.current_glucose,
            request.target_glucose,
            request.carbohydrates,
            request.insulin_ratio,
            request.correction_factor,
            dose["carb_insulin"],
            dose["correction_insulin"],
            dose["total_insulin"],
            request.timer_duration_minutes,
            request.meal_type,
            request.notes,
            _now(),
            record_id,
        ),
    )
    updated = cursor.rowcount
    conn.commit()
    conn.close()

    if not updated:
        return None
    return fetch_record(record_id)


def fetch_record(record_id: str) -> Optional[DosingRecord]:
    conn = _connect()
    row = conn.execute("SELECT * FROM dosing_records WHERE id = ?", (record_id,)).fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def fetch_latest_record(user_id: str) -> Optional[DosingRecord]:
    conn = _connect()
    row = conn.execute(
        """
        SELECT * FROM dosing_records WHERE user_id = ?
        ORDER BY created_at DESC, rowid DESC LIMIT 1
        """,
        (user_id,),
    ).fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def fetch_records(user_id: str, limit: int, offset: int) -> List[DosingRecord]:
    conn = _connect()
    rows = conn.execute(
        """
        SELECT * FROM dosing_records WHERE user_id = ?
        ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?
        """,
        (user_id, limit, offset),
    ).fetchall()
    conn.close()
    return [_record_from_row(row) for row in rows]


def mark_record_injected(record_id: str, injected_at: Optional[datetime] = None) -> bool:
    stamp = _iso(injected_at) or _now()
    conn = _connect()
    cursor = conn.execute(
        "UPDATE dosing_records SET insulin_injected = 1, injected_at = ?, updated_at = ? WHERE id = ?",
        (stamp, _now(), record_id),
    )
    updated = cursor.rowcount
    conn.commit()
    conn.close()
    return bool(updated)


# -- insulin and exercise history ---------------------------------------------------


def insert_insulin_entry(request: InsulinEntryCreate) -> InsulinEntry:
    entry = InsulinEntry(
        id=uuid.uuid4().hex,
        user_id=request.user_id,
        units=request.units,
        insulin_type=request.insulin_type,
        timestamp=request.timestamp or datetime.now(timezone.utc),
        duration_hours=request.duration_hours or INSULIN_DURATION_HOURS[request.insulin_type],
        notes=request.notes,
    )
    conn = _connect()
    conn.execute(
        """
        INSERT INTO insulin_entries (id, user_id, units, insulin_type, timestamp, duration_hours, notes)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.id,
            entry.user_id,
            entry.units,
            entry.insulin_type,
            _iso(entry.timestamp),
            entry.duration_hours,
            entry.notes,
        ),
    )
    conn.commit()
    conn.close()
    return entry


def fetch_insulin_entries(user_id: str, since: Optional[datetime] = None) -> List[InsulinEntry]:
    conn = _connect()
    rows = conn.execute(
        """
        SELECT * FROM insulin_entries WHERE user_id = ? AND timestamp >= ?
        ORDER BY timestamp DESC
        """,
        (user_id, _iso(since) or ""),
    ).fetchall()
    conn.close()
    return [InsulinEntry(**dict(row)) for row in rows]


def insert_exercise_entry(request: ExerciseEntryCreate) -> ExerciseEntry:
    entry = ExerciseEntry(
        id=uuid.uuid4().hex,
        user_id=request.user_id,
        exercise_type=request.exercise_type,
        duration_minutes=request.duration_minutes,
        intensity=request.intensity,
        timestamp=request.timestamp or datetime.now(timezone.utc),
        notes=request.notes,
    )
    conn = _connect()
    conn.execute(
        """
        INSERT INTO exercise_entries (id, user_id, exercise_type, duration_minutes, intensity, timestamp, notes)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.id,
            entry.user_id,
            entry.exercise_type,
            entry.duration_minutes,
            entry.intensity,
            _iso(entry.timestamp),
            entry.notes,
        ),
    )
    conn.commit()
    conn.close()
    return entry


def fetch_exercise_entries(user_id: str, since: Optional[datetime] = None) -> List[ExerciseEntry]:
    conn = _connect()
    rows = conn.execute(
        """
        SELECT * FROM exercise_entries WHERE user_id = ? AND timestamp >= ?
        ORDER BY timestamp DESC
        """,
        (user_id, _iso(since) or ""),
    ).fetchall()
    conn.close()
    return [ExerciseEntry(**dict(row)) for row in rows]


# -- settings and cycle log ------------------------------------------------------------


def fetch_settings(user_id: str) -> UserSettings:
    conn = _connect()
    row = conn.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
    conn.close()
    if row is None:
        return UserSettings(user_id=user_id)
    return UserSettings(**dict(row))


def save_settings(user_id: str, update: UserSettingsUpdate) -> UserSettings:
    """Merge the provided fields over the stored (or default) settings."""
    current = fetch_settings(user_id)
    settings = UserSettings(
        **{
            **current.model_dump(),
            **update.model_dump(exclude_none=True),
            "user_id": user_id,
            "updated_at": datetime.now(timezone.utc),
        }
    )

    conn = _connect()
    conn.execute(
        """
        INSERT INTO user_settings (
            user_id, target_glucose, insulin_sensitivity_factor, carb_ratio, night_hypo_threshold, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            target_glucose = excluded.target_glucose,
            insulin_sensitivity_factor = excluded.insulin_sensitivity_factor,
            carb_ratio = excluded.carb_ratio,
            night_hypo_threshold = excluded.night_hypo_threshold,
            updated_at = excluded.updated_at
        """,
        (
            user_id,
            settings.target_glucose,
            settings.insulin_sensitivity_factor,
            settings.carb_ratio,
            settings.night_hypo_threshold,
            _iso(settings.updated_at),
        ),
    )
    conn.commit()
    conn.close()
    return settings


def _cycle_from_row(row: sqlite3.Row) -> CycleEntry:
    data = dict(row)
    data["symptoms"] = json.loads(data.get("symptoms") or "[]")
    return CycleEntry(**data)


def insert_cycle(request: CycleEntryCreate) -> CycleEntry:
    entry = CycleEntry(id=uuid.uuid4().hex, **request.model_dump())
    conn = _connect()
    conn.execute(
        """
        INSERT INTO menstrual_cycles (id, user_id, start_date, end_date, flow, symptoms)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            entry.id,
            entry.user_id,
            _iso(entry.start_date),
            _iso(entry.end_date),
            entry.flow,
            json.dumps(entry.symptoms),
        ),
    )
    conn.commit()
    conn.close()
    return entry


def fetch_cycles(user_id: str) -> List[CycleEntry]:
    conn = _connect()
    rows = conn.execute(
        "SELECT * FROM menstrual_cycles WHERE user_id = ? ORDER BY start_date DESC",
        (user_id,),
    ).fetchall()
    conn.close()
    return [_cycle_from_row(row) for row in rows]


def fetch_latest_cycle(user_id: str) -> Optional[CycleEntry]:
    conn = _connect()
    row = conn.execute(
        "SELECT * FROM menstrual_cycles WHERE user_id = ? ORDER BY start_date DESC LIMIT 1",
        (user_id,),
    ).fetchone()
    conn.close()
    if row is None:
        return None
    return _cycle_from_row(row)


# -- timer anchor -------------------------------------------------------------------


def load_timer_state() -> TimerState:
    conn = _connect()
    row = conn.execute("SELECT * FROM timer_state WHERE id = 1").fetchone()
    conn.close()
    if row is None:
        return TimerState()
    return TimerState(
        active_record_id=row["active_record_id"],
        total_seconds=row["total_seconds"],
        started_at=row["started_at"],
        stopped_at=row["stopped_at"],
        is_running=bool(row["is_running"]),
        is_completed=bool(row["is_completed"]),
    )


def save_timer_state(state: TimerState) -> None:
    conn = _connect()
    conn.execute(
        """
        INSERT INTO timer_state (id, active_record_id, total_seconds, started_at, stopped_at, is_running, is_completed)
        VALUES (1, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            active_record_id = excluded.active_record_id,
            total_seconds = excluded.total_seconds,
            started_at = excluded.started_at,
            stopped_at = excluded.stopped_at,
            is_running = excluded.is_running,
            is_completed = excluded.is_completed
        """,
        (
            state.active_record_id,
            state.total_seconds,
            state.started_at,
            state.stopped_at,
            int(state.is_running),
            int(state.is_completed),
        ),
    )
    conn.commit()
    conn.close()


# -- alerts ----------------------------------------------------------------------------


def insert_alert(kind: str, severity: str, message: str, dedupe_key: Optional[str] = None) -> bool:
    """Store an alert; returns False when ``dedupe_key`` was already alerted."""
    conn = _connect()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO alerts (kind, severity, message, dedupe_key, created_at, acknowledged)
        VALUES (?, ?, ?, ?, ?, 0)
        """,
        (kind, severity, message, dedupe_key, _now()),
    )
    inserted = cursor.rowcount
    conn.commit()
    conn.close()
    return bool(inserted)


def alert_exists(dedupe_key: str) -> bool:
    conn = _connect()
    row = conn.execute("SELECT 1 FROM alerts WHERE dedupe_key = ?", (dedupe_key,)).fetchone()
    conn.close()
    return row is not None


def fetch_alerts(include_acknowledged: bool = False) -> List[AlertItem]:
    query = "SELECT * FROM alerts"
    if not include_acknowledged:
        query += " WHERE acknowledged = 0"
    query += " ORDER BY id DESC"

    conn = _connect()
    rows = conn.execute(query).fetchall()
    conn.close()
    return [
        AlertItem(
            id=row["id"],
            kind=row["kind"],
            severity=row["severity"],
            message=row["message"],
            dedupe_key=row["dedupe_key"],
            created_at=row["created_at"],
            acknowledged=bool(row["acknowledged"]),
        )
        for row in rows
    ]


def acknowledge_alert(alert_id: int) -> bool:
    conn = _connect()
    cursor = conn.execute("UPDATE alerts SET acknowledged = 1 WHERE id = ?", (alert_id,))
    updated = cursor.rowcount
    conn.commit()
    conn.close()
    return bool(updated)
