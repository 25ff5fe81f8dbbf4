"""Pydantic models for the dose timer API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .tools.dose_math import INSULIN_DURATION_HOURS, MAX_INSULIN_DURATION_HOURS, MAX_INSULIN_UNITS, bolus_dose
from .tools.risk import DEFAULT_NIGHT_HYPO_THRESHOLD

MealType = Literal["breakfast", "lunch", "dinner", "snack", "other"]
InsulinType = Literal["rapid", "short", "intermediate", "long"]
Intensity = Literal["low", "moderate", "high"]
RiskLevel = Literal["low", "medium", "high"]
Flow = Literal["light", "medium", "heavy"]


class DosingInputs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_glucose: float = Field(..., gt=0, allow_inf_nan=False)
    target_glucose: float = Field(default=100, gt=0, allow_inf_nan=False)
    carbohydrates: float = Field(default=0, ge=0, allow_inf_nan=False)
    insulin_ratio: float = Field(default=15, gt=0, allow_inf_nan=False)
    correction_factor: float = Field(default=50, gt=0, allow_inf_nan=False)


class DosingRecordCreate(DosingInputs):
    user_id: str = Field(..., min_length=1)
    timer_duration_minutes: int = Field(default=60, ge=1)
    meal_type: MealType = "other"
    notes: Optional[str] = None


class DosingRecordUpdate(DosingInputs):
    timer_duration_minutes: int = Field(default=60, ge=1)
    meal_type: MealType = "other"
    notes: Optional[str] = None


class DosingRecord(DosingInputs):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    carb_insulin: float = Field(default=0, ge=0, le=MAX_INSULIN_UNITS)
    correction_insulin: float = Field(default=0, ge=0, le=MAX_INSULIN_UNITS)
    total_insulin: float = Field(default=0, ge=0, le=MAX_INSULIN_UNITS)
    timer_duration_minutes: int = Field(default=60, ge=1)
    insulin_injected: bool = False
    injected_at: Optional[datetime] = None
    meal_type: MealType = "other"
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_doses(cls, data: Any) -> Any:
        # Stored dose fields are always re-derived from the raw inputs.
        if isinstance(data, dict):
            data = dict(data)
            if data.get("timer_duration_minutes") is None:
                data["timer_duration_minutes"] = 60
            try:
                data.update(
                    bolus_dose(
                        data["current_glucose"],
                        data.get("target_glucose", 100),
                        data.get("carbohydrates", 0),
                        data.get("insulin_ratio", 15),
                        data.get("correction_factor", 50),
                    )
                )
            except (KeyError, TypeError, ValueError):
                # Field validation reports the missing or malformed input.
                pass
        return data

    @model_validator(mode="after")
    def _check_injection(self) -> "DosingRecord":
        if self.insulin_injected and self.injected_at is None:
            raise ValueError("injected_at is required when insulin_injected is true.")
        if not self.insulin_injected and self.injected_at is not None:
            raise ValueError("injected_at must be empty until insulin is injected.")
        return self

    @property
    def timer_seconds(self) -> int:
        return self.timer_duration_minutes * 60


class BolusDoseRequest(DosingInputs):
    pass


class BolusDoseResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    carb_insulin: float
    correction_insulin: float
    total_insulin: float


class BolusRecommendationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_glucose: float = Field(..., gt=0, allow_inf_nan=False)
    target_glucose: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    carbs: float = Field(default=0, ge=0, allow_inf_nan=False)
    insulin_sensitivity_factor: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    carb_ratio: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    active_insulin: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    user_id: Optional[str] = None


class BolusRecommendationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    correction_dose: float
    carb_dose: float
    total_dose: float
    iob_adjustment: float
    final_recommendation: float
    warning: Optional[str] = None
    medical_disclaimer: str


class InsulinEntryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)
    units: float = Field(..., gt=0, allow_inf_nan=False)
    insulin_type: InsulinType = "rapid"
    timestamp: Optional[datetime] = None
    duration_hours: Optional[float] = Field(default=None, gt=0, le=MAX_INSULIN_DURATION_HOURS)
    notes: Optional[str] = None


class InsulinEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    units: float = Field(..., gt=0)
    insulin_type: InsulinType = "rapid"
    timestamp: datetime
    duration_hours: float = Field(default=0, ge=0, le=MAX_INSULIN_DURATION_HOURS)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _default_duration(self) -> "InsulinEntry":
        if not self.duration_hours:
            self.duration_hours = INSULIN_DURATION_HOURS[self.insulin_type]
        return self


class IOBRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entries: List[InsulinEntry] = Field(default_factory=list)
    now: Optional[datetime] = None


class IOBEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    insulin_entry: InsulinEntry
    remaining_units: float
    hours_remaining: float


class IOBResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_iob: float
    entries: List[IOBEntry]


class NightRiskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bedtime_glucose: float = Field(..., gt=0, allow_inf_nan=False)
    active_iob: float = Field(default=0, ge=0, allow_inf_nan=False)
    recent_exercise: bool = False
    threshold: float = Field(default=70, gt=0)


class NightRiskResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    risk: RiskLevel
    recommendation: str
    should_alert: bool


class ExerciseImpactRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    intensity: Intensity
    duration_minutes: float = Field(..., ge=0, allow_inf_nan=False)


class ExerciseImpactResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    insulin_reduction_pct: int
    carbs_needed_grams: int
    monitoring_hours: int


class CycleImpactResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    days_into_cycle: Optional[int] = None
    phase: Literal["menstrual", "follicular", "ovulation", "luteal"]
    insulin_adjustment_pct: int
    note: str


class CycleEntryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)
    start_date: datetime
    end_date: Optional[datetime] = None
    flow: Flow = "medium"
    symptoms: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_dates(self) -> "CycleEntryCreate":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date.")
        return self


class CycleEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    start_date: datetime
    end_date: Optional[datetime] = None
    flow: Flow = "medium"
    symptoms: List[str] = Field(default_factory=list)


class CycleListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cycles: List[CycleEntry]


class UserSettings(BaseModel):
    """Per-user dosing defaults used when a request leaves them out."""

    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    target_glucose: float = Field(default=100, gt=0)
    insulin_sensitivity_factor: float = Field(default=50, gt=0)
    carb_ratio: float = Field(default=10, gt=0)
    night_hypo_threshold: float = Field(default=DEFAULT_NIGHT_HYPO_THRESHOLD, gt=0)
    updated_at: Optional[datetime] = None


class UserSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_glucose: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    insulin_sensitivity_factor: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    carb_ratio: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    night_hypo_threshold: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)


class ExerciseEntryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)
    exercise_type: str = "general"
    duration_minutes: float = Field(..., gt=0)
    intensity: Intensity = "moderate"
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


class ExerciseEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    exercise_type: str = "general"
    duration_minutes: float
    intensity: Intensity = "moderate"
    timestamp: datetime
    notes: Optional[str] = None


class BedtimeReadingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)
    reading_id: str = Field(..., min_length=1)
    bedtime_glucose: float = Field(..., gt=0, allow_inf_nan=False)
    threshold: Optional[float] = Field(default=None, gt=0)


class BedtimeAssessmentResponse(NightRiskResponse):
    total_iob: float
    recent_exercise: bool
    alert_raised: bool


class AlertItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int
    kind: str
    severity: str
    message: str
    dedupe_key: Optional[str] = None
    created_at: str
    acknowledged: bool


class AlertListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    alerts: List[AlertItem]


class RecordListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    records: List[DosingRecord]


class TimeDisplay(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hours: Optional[str] = None
    minutes: str
    seconds: str


class TimerSnapshotResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: Optional[str] = None
    phase: Literal["idle", "running", "stopped", "completed"]
    total_seconds: int
    remaining_seconds: int
    is_running: bool
    is_completed: bool
    has_active_timer: bool
    progress: float
    percentage_remaining: int
    percentage_elapsed: int
    status: Optional[str] = None
    display: str
    time: TimeDisplay


class TimerSyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1)


class SyncNoticeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_id: str
    message: str


class DosingDisplayResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record: Optional[DosingRecord] = None
    dose: Optional[BolusDoseResponse] = None
    timer: TimerSnapshotResponse
    notice: Optional[SyncNoticeResponse] = None
    sync_error: Optional[str] = None
