"""Dose timer FastAPI backend."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from . import db
from .engine.dosing_engine import RECENT_EXERCISE_HOURS, DosingEngine, SyncNotice
from .engine.poller import TimerDrivenPoller
from .engine.record_source import DbAlertSink, RecordSourceError, build_record_source
from .engine.timer_machine import TimerSnapshot, TimerStateMachine
from .schemas import (
    AlertListResponse,
    BedtimeAssessmentResponse,
    BedtimeReadingRequest,
    BolusDoseRequest,
    BolusDoseResponse,
    BolusRecommendationRequest,
    BolusRecommendationResponse,
    CycleEntry,
    CycleEntryCreate,
    CycleImpactResponse,
    CycleListResponse,
    DosingDisplayResponse,
    DosingRecordCreate,
    DosingRecordUpdate,
    ExerciseEntry,
    ExerciseEntryCreate,
    ExerciseImpactRequest,
    ExerciseImpactResponse,
    InsulinEntry,
    InsulinEntryCreate,
    IOBRequest,
    IOBResponse,
    NightRiskRequest,
    NightRiskResponse,
    RecordListResponse,
    SyncNoticeResponse,
    TimerSnapshotResponse,
    TimerSyncRequest,
    UserSettings,
    UserSettingsUpdate,
)
from .tools.dose_math import (
    MAX_INSULIN_DURATION_HOURS,
    InvalidDoseInput,
    bolus_dose,
    bolus_recommendation,
    insulin_on_board,
    require_valid_dose_inputs,
)
from .tools.risk import cycle_day, exercise_impact, menstrual_cycle_impact, night_hypo_risk

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("dosetimer")

app = FastAPI(title="Dose Timer API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

timer_machine: Optional[TimerStateMachine] = None
engine: Optional[DosingEngine] = None
poller: Optional[TimerDrivenPoller] = None
_retry_task: Optional[asyncio.Task] = None

IOB_LOOKBACK = timedelta(hours=MAX_INSULIN_DURATION_HOURS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _retry_pending_injections(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if not engine.pending_injections:
            continue
        try:
            remaining = await engine.flush_pending_async()
        except Exception:
            logger.exception("Injection retry pass failed")
            continue
        if remaining:
            logger.info("%s injection write(s) still pending", remaining)


@app.on_event("startup")
async def startup() -> None:
    global timer_machine, engine, poller, _retry_task
    db.init_db()

    timer_machine = TimerStateMachine(initial=db.load_timer_state(), on_change=db.save_timer_state)
    record_source = build_record_source()
    engine = DosingEngine(timer_machine, record_source, alert_sink=DbAlertSink())
    poller = TimerDrivenPoller(timer_machine)

    # Time may have passed while the process was down.
    poller.on_foreground()

    interval = float(os.getenv("DOSETIMER_RETRY_INTERVAL_SECONDS", "30"))
    _retry_task = asyncio.get_running_loop().create_task(
        _retry_pending_injections(interval), name="injection-retry"
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    if poller is not None:
        poller.stop()
    if _retry_task is not None:
        _retry_task.cancel()


def _timer_response(snapshot: TimerSnapshot) -> TimerSnapshotResponse:
    return TimerSnapshotResponse(**snapshot.as_dict())


def _display_response(notice: Optional[SyncNotice] = None) -> DosingDisplayResponse:
    display = engine.display()
    return DosingDisplayResponse(
        record=display["record"],
        dose=BolusDoseResponse(**display["dose"]) if display["dose"] else None,
        timer=_timer_response(display["timer"]),
        notice=SyncNoticeResponse(record_id=notice.record_id, message=notice.message) if notice else None,
        sync_error=display["sync_error"],
    )


async def _sync_user(user_id: str) -> None:
    # The fetch runs off the event loop so ticks keep flowing while it blocks.
    try:
        record = await asyncio.to_thread(engine.fetch_latest_record, user_id)
    except RecordSourceError as exc:
        engine.record_sync_failure(user_id, exc)
    else:
        engine.apply_fetch_result(record)
    poller.follow()


@app.get("/health")
def health_check() -> dict:
    return {"status": "ok"}


@app.post("/v1/bolus/dose", response_model=BolusDoseResponse)
def bolus_dose_endpoint(request: BolusDoseRequest) -> BolusDoseResponse:
    try:
        require_valid_dose_inputs(
            request.current_glucose,
            request.target_glucose,
            request.carbohydrates,
            request.insulin_ratio,
            request.correction_factor,
        )
    except InvalidDoseInput as exc:
        raise HTTPException(status_code=422, detail=exc.errors) from exc

    result = bolus_dose(
        request.current_glucose,
        request.target_glucose,
        request.carbohydrates,
        request.insulin_ratio,
        request.correction_factor,
    )
    return BolusDoseResponse(**result)


@app.post("/v1/bolus/recommendation", response_model=BolusRecommendationResponse)
def bolus_recommendation_endpoint(request: BolusRecommendationRequest) -> BolusRecommendationResponse:
    settings = db.fetch_settings(request.user_id) if request.user_id else UserSettings()
    active_insulin = request.active_insulin
    if active_insulin is None and request.user_id:
        now = _utcnow()
        entries = db.fetch_insulin_entries(request.user_id, since=now - IOB_LOOKBACK)
        active_insulin = insulin_on_board(entries, now)["total_iob"]

    result = bolus_recommendation(
        current_glucose=request.current_glucose,
        target_glucose=request.target_glucose or settings.target_glucose,
        carbs=request.carbs,
        insulin_sensitivity_factor=request.insulin_sensitivity_factor or settings.insulin_sensitivity_factor,
        carb_ratio=request.carb_ratio or settings.carb_ratio,
        active_insulin=active_insulin or 0,
    )
    return BolusRecommendationResponse(**result)


@app.post("/v1/iob", response_model=IOBResponse)
def iob_endpoint(request: IOBRequest) -> IOBResponse:
    return IOBResponse(**insulin_on_board(request.entries, request.now or _utcnow()))


@app.post("/v1/risk/night", response_model=NightRiskResponse)
def night_risk_endpoint(request: NightRiskRequest) -> NightRiskResponse:
    result = night_hypo_risk(
        request.bedtime_glucose,
        request.active_iob,
        request.recent_exercise,
        request.threshold,
    )
    return NightRiskResponse(**result)


@app.post("/v1/risk/exercise", response_model=ExerciseImpactResponse)
def exercise_impact_endpoint(request: ExerciseImpactRequest) -> ExerciseImpactResponse:
    return ExerciseImpactResponse(**exercise_impact(request.intensity, request.duration_minutes))


@app.get("/v1/risk/cycle", response_model=CycleImpactResponse)
def cycle_impact_endpoint(
    days_into_cycle: Optional[int] = None,
    user_id: Optional[str] = None,
) -> CycleImpactResponse:
    if days_into_cycle is None:
        if not user_id:
            raise HTTPException(status_code=422, detail="days_into_cycle or user_id is required.")
        latest = db.fetch_latest_cycle(user_id)
        if latest is None:
            raise HTTPException(status_code=404, detail="No cycle logged for this user.")
        days_into_cycle = cycle_day(latest.start_date, _utcnow())
    if days_into_cycle < 0:
        raise HTTPException(status_code=422, detail="days_into_cycle cannot be negative.")
    return CycleImpactResponse(days_into_cycle=days_into_cycle, **menstrual_cycle_impact(days_into_cycle))


@app.post("/v1/cycles", response_model=CycleEntry)
def add_cycle(request: CycleEntryCreate) -> CycleEntry:
    return db.insert_cycle(request)


@app.get("/v1/cycles", response_model=CycleListResponse)
def list_cycles(user_id: str) -> CycleListResponse:
    return CycleListResponse(cycles=db.fetch_cycles(user_id))


@app.get("/v1/settings/{user_id}", response_model=UserSettings)
def get_settings(user_id: str) -> UserSettings:
    return db.fetch_settings(user_id)


@app.put("/v1/settings/{user_id}", response_model=UserSettings)
def update_settings(user_id: str, request: UserSettingsUpdate) -> UserSettings:
    return db.save_settings(user_id, request)


@app.post("/v1/records", response_model=DosingDisplayResponse)
async def create_record(request: DosingRecordCreate) -> DosingDisplayResponse:
    db.insert_record(request)
    await _sync_user(request.user_id)
    return _display_response()


@app.put("/v1/records/{record_id}", response_model=DosingDisplayResponse)
async def update_record(record_id: str, request: DosingRecordUpdate) -> DosingDisplayResponse:
    record = db.update_record_inputs(record_id, request)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found.")
    await _sync_user(record.user_id)
    return _display_response()


@app.get("/v1/records", response_model=RecordListResponse)
def list_records(user_id: str, limit: int = 20, offset: int = 0) -> RecordListResponse:
    return RecordListResponse(records=db.fetch_records(user_id, limit=limit, offset=offset))


@app.post("/v1/insulin", response_model=InsulinEntry)
def add_insulin(request: InsulinEntryCreate) -> InsulinEntry:
    return db.insert_insulin_entry(request)


@app.post("/v1/exercise", response_model=ExerciseEntry)
def add_exercise(request: ExerciseEntryCreate) -> ExerciseEntry:
    return db.insert_exercise_entry(request)


@app.post("/v1/bedtime", response_model=BedtimeAssessmentResponse)
def bedtime_assessment(request: BedtimeReadingRequest) -> BedtimeAssessmentResponse:
    now = _utcnow()
    threshold = request.threshold or db.fetch_settings(request.user_id).night_hypo_threshold
    result = engine.assess_bedtime(
        reading_id=request.reading_id,
        bedtime_glucose=request.bedtime_glucose,
        insulin_entries=db.fetch_insulin_entries(request.user_id, since=now - IOB_LOOKBACK),
        exercise_entries=db.fetch_exercise_entries(
            request.user_id, since=now - timedelta(hours=RECENT_EXERCISE_HOURS)
        ),
        threshold=threshold,
    )
    return BedtimeAssessmentResponse(**result)


@app.get("/v1/alerts", response_model=AlertListResponse)
def list_alerts(include_acknowledged: bool = False) -> AlertListResponse:
    return AlertListResponse(alerts=db.fetch_alerts(include_acknowledged=include_acknowledged))


@app.post("/v1/alerts/{alert_id}/ack")
def acknowledge_alert(alert_id: int) -> dict:
    if not db.acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found.")
    return {"status": "ok"}


@app.get("/v1/timer", response_model=TimerSnapshotResponse)
async def timer_state() -> TimerSnapshotResponse:
    snapshot = timer_machine.refresh()
    poller.follow()
    return _timer_response(snapshot)


@app.post("/v1/timer/sync", response_model=DosingDisplayResponse)
async def timer_sync(request: TimerSyncRequest) -> DosingDisplayResponse:
    await _sync_user(request.user_id)
    return _display_response()


@app.post("/v1/timer/inject", response_model=DosingDisplayResponse)
async def timer_inject() -> DosingDisplayResponse:
    if engine.latest_record is None:
        raise HTTPException(status_code=404, detail="No dosing record loaded. Sync first.")

    record_id = engine.confirm_injection()
    poller.follow()
    notice = None
    if record_id is not None:
        notice = await engine.push_injection_async(record_id)
    return _display_response(notice)


@app.post("/v1/timer/stop", response_model=TimerSnapshotResponse)
async def timer_stop() -> TimerSnapshotResponse:
    snapshot = engine.stop_timer()
    poller.follow()
    return _timer_response(snapshot)


@app.post("/v1/timer/restart", response_model=TimerSnapshotResponse)
async def timer_restart() -> TimerSnapshotResponse:
    snapshot = engine.restart_timer()
    poller.follow()
    return _timer_response(snapshot)


@app.post("/v1/timer/reset", response_model=TimerSnapshotResponse)
async def timer_reset() -> TimerSnapshotResponse:
    snapshot = engine.reset_timer()
    poller.follow()
    return _timer_response(snapshot)


@app.post("/v1/lifecycle/foreground", response_model=TimerSnapshotResponse)
async def lifecycle_foreground() -> TimerSnapshotResponse:
    return _timer_response(poller.on_foreground())
