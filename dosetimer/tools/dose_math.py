"""Bolus and insulin-on-board math (mg/dL)."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Iterable, Mapping

MAX_INSULIN_UNITS = 9999.9
HYPO_THRESHOLD_MGDL = 70
BORDERLINE_MGDL = 100
HIGH_DOSE_UNITS = 15
HIGH_IOB_UNITS = 5
LOW_CARB_GRAMS = 20

INSULIN_DURATION_HOURS = {
    "rapid": 4,
    "short": 6,
    "intermediate": 12,
    "long": 24,
}
MAX_INSULIN_DURATION_HOURS = max(INSULIN_DURATION_HOURS.values())

WARNING_HYPO = "Low blood sugar! Do not take insulin. Consume 15g fast carbs."
WARNING_HIGH_DOSE = "High dose detected. Please consult your doctor."
WARNING_HIGH_IOB = "High insulin on board. Risk of hypoglycemia."
WARNING_LOW_CARB = "Low carb meal with borderline BG. Monitor closely."

MEDICAL_DISCLAIMER = (
    "This is a calculator output. Confirm bolus decisions with your diabetes care team."
)


class InvalidDoseInput(ValueError):
    """Raised by callers that refuse to compute a dose from bad inputs."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def _finite(value: float) -> float:
    value = float(value)
    return value if math.isfinite(value) else 0.0


def _clamp_units(value: float) -> float:
    return min(max(value, 0.0), MAX_INSULIN_UNITS)


def round_tenth(value: float) -> float:
    """Round to one decimal, halves away from zero."""
    value = _finite(value)
    scaled = math.floor(abs(value) * 10 + 0.5)
    return math.copysign(scaled / 10, value) if scaled else 0.0


def round_half_unit(value: float) -> float:
    """Round to the nearest half unit, the smallest step of an insulin pen."""
    value = _finite(value)
    scaled = math.floor(abs(value) * 2 + 0.5)
    return math.copysign(scaled / 2, value) if scaled else 0.0


def dose_input_errors(
    current_glucose: float,
    target_glucose: float,
    carbs: float,
    insulin_ratio: float,
    correction_factor: float,
) -> list[str]:
    errors: list[str] = []
    values = {
        "current_glucose": current_glucose,
        "target_glucose": target_glucose,
        "carbohydrates": carbs,
        "insulin_ratio": insulin_ratio,
        "correction_factor": correction_factor,
    }
    for name, value in values.items():
        if value is None or not math.isfinite(float(value)):
            errors.append(f"{name} must be a finite number.")
    if errors:
        return errors

    if current_glucose <= 0:
        errors.append("current_glucose must be greater than 0 mg/dL.")
    if target_glucose <= 0:
        errors.append("target_glucose must be greater than 0 mg/dL.")
    if carbs < 0:
        errors.append("carbohydrates cannot be negative.")
    if insulin_ratio <= 0:
        errors.append("insulin_ratio must be greater than 0 g/unit.")
    if correction_factor <= 0:
        errors.append("correction_factor must be greater than 0 mg/dL per unit.")
    return errors


def require_valid_dose_inputs(
    current_glucose: float,
    target_glucose: float,
    carbs: float,
    insulin_ratio: float,
    correction_factor: float,
) -> None:
    errors = dose_input_errors(current_glucose, target_glucose, carbs, insulin_ratio, correction_factor)
    if errors:
        raise InvalidDoseInput(errors)


def _raw_carb_insulin(carbs: float, insulin_ratio: float) -> float:
    carbs = max(_finite(carbs), 0.0)
    insulin_ratio = _finite(insulin_ratio)
    if insulin_ratio <= 0:
        return 0.0
    return carbs / insulin_ratio


def _raw_correction_insulin(current_glucose: float, target_glucose: float, correction_factor: float) -> float:
    correction_factor = _finite(correction_factor)
    if correction_factor <= 0:
        return 0.0
    difference = _finite(current_glucose) - _finite(target_glucose)
    return max(0.0, difference / correction_factor)


def carb_insulin(carbs: float, insulin_ratio: float) -> float:
    return _clamp_units(round_tenth(_raw_carb_insulin(carbs, insulin_ratio)))


def correction_insulin(current_glucose: float, target_glucose: float, correction_factor: float) -> float:
    # Being under target never subtracts insulin.
    return _clamp_units(round_tenth(_raw_correction_insulin(current_glucose, target_glucose, correction_factor)))


def bolus_dose(
    current_glucose: float,
    target_glucose: float,
    carbs: float,
    insulin_ratio: float,
    correction_factor: float,
) -> dict:
    """Dose breakdown stored on a dosing record.

    The total is summed from the already rounded parts so that
    ``total_insulin == round_tenth(carb_insulin + correction_insulin)`` holds
    for every stored record.
    """
    carb = carb_insulin(carbs, insulin_ratio)
    correction = correction_insulin(current_glucose, target_glucose, correction_factor)
    return {
        "carb_insulin": carb,
        "correction_insulin": correction,
        "total_insulin": _clamp_units(round_tenth(carb + correction)),
    }


def _entry_value(entry, key: str):
    if isinstance(entry, Mapping):
        return entry.get(key)
    return getattr(entry, key, None)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def entry_duration_hours(entry) -> float:
    duration = _entry_value(entry, "duration_hours")
    if duration is None:
        duration = INSULIN_DURATION_HOURS.get(_entry_value(entry, "insulin_type") or "rapid", 4)
    return _finite(duration)


def insulin_on_board(entries: Iterable, now: datetime) -> dict:
    """Linear-decay insulin on board.

    Every entry still inside its action window contributes
    ``units * (duration - elapsed) / duration``. Entries are reported largest
    contributor first; equal contributors keep their input order.
    """
    active = []
    total = 0.0
    for entry in entries:
        units = _finite(_entry_value(entry, "units") or 0)
        duration = entry_duration_hours(entry)
        if units <= 0 or duration <= 0:
            continue

        elapsed_hours = (_as_utc(now) - _as_utc(_entry_value(entry, "timestamp"))).total_seconds() / 3600
        elapsed_hours = max(elapsed_hours, 0.0)
        if elapsed_hours >= duration:
            continue

        hours_remaining = duration - elapsed_hours
        remaining_units = units * hours_remaining / duration
        if remaining_units <= 0:
            continue

        total += remaining_units
        active.append(
            {
                "insulin_entry": entry,
                "remaining_units": round_tenth(remaining_units),
                "hours_remaining": round_tenth(hours_remaining),
                "_sort_key": remaining_units,
            }
        )

    # sorted() is stable, so ties keep insertion order.
    active = sorted(active, key=lambda item: item["_sort_key"], reverse=True)
    for item in active:
        del item["_sort_key"]

    return {"total_iob": round_tenth(total), "entries": active}


def bolus_recommendation(
    current_glucose: float,
    target_glucose: float,
    carbs: float,
    insulin_sensitivity_factor: float,
    carb_ratio: float,
    active_insulin: float = 0,
) -> dict:
    correction = _raw_correction_insulin(current_glucose, target_glucose, insulin_sensitivity_factor)
    carb = _raw_carb_insulin(carbs, carb_ratio)
    total = correction + carb
    active_insulin = max(_finite(active_insulin), 0.0)

    final = round_half_unit(min(max(0.0, total - active_insulin), MAX_INSULIN_UNITS))

    # First matching condition wins; only one warning is ever surfaced.
    warning = None
    current_glucose = _finite(current_glucose)
    if current_glucose < HYPO_THRESHOLD_MGDL:
        warning = WARNING_HYPO
    elif final > HIGH_DOSE_UNITS:
        warning = WARNING_HIGH_DOSE
    elif active_insulin > HIGH_IOB_UNITS:
        warning = WARNING_HIGH_IOB
    elif current_glucose < BORDERLINE_MGDL and _finite(carbs) < LOW_CARB_GRAMS:
        warning = WARNING_LOW_CARB

    return {
        "correction_dose": _clamp_units(round_tenth(correction)),
        "carb_dose": _clamp_units(round_tenth(carb)),
        "total_dose": _clamp_units(round_tenth(total)),
        "iob_adjustment": round_tenth(active_insulin),
        "final_recommendation": final,
        "warning": warning,
        "medical_disclaimer": MEDICAL_DISCLAIMER,
    }
