"""Bedtime hypoglycemia, exercise and cycle adjustments."""

from __future__ import annotations

import math
from datetime import datetime

DEFAULT_NIGHT_HYPO_THRESHOLD = 70
BORDERLINE_UPPER_MGDL = 100
HIGH_RISK_IOB_UNITS = 2
MEDIUM_RISK_IOB_UNITS = 1
MAX_INSULIN_REDUCTION_PCT = 50

# intensity -> (reduction > 30 min, reduction <= 30 min, minutes per block, grams per block, monitoring hours)
EXERCISE_BANDS = {
    "low": (10, 5, 30, 10, 2),
    "moderate": (20, 10, 30, 15, 4),
    "high": (30, 15, 20, 15, 6),
}

# (last day of phase, phase, insulin adjustment %, note)
CYCLE_PHASES = (
    (5, "menstrual", -10, "Insulin sensitivity may be higher. Monitor for low blood sugar."),
    (13, "follicular", 0, "Stable insulin needs. Normal monitoring recommended."),
    (16, "ovulation", 5, "Slight increase in insulin resistance. Monitor blood sugar closely."),
)
LUTEAL_PHASE = ("luteal", 15, "Insulin resistance increases. May need 10-20% more insulin.")


def night_hypo_risk(
    bedtime_glucose: float,
    active_iob: float,
    recent_exercise: bool,
    threshold: float = DEFAULT_NIGHT_HYPO_THRESHOLD,
) -> dict:
    """Classify overnight hypoglycemia risk from a bedtime reading.

    Glucose below ``threshold`` is high risk on its own. A borderline reading
    (``threshold`` up to 100 mg/dL) becomes high risk with more than 2 units on
    board or recent exercise. Only high risk asks for an alert.
    """
    if not math.isfinite(bedtime_glucose):
        bedtime_glucose = 0.0
    if not math.isfinite(active_iob):
        active_iob = 0.0

    is_low = bedtime_glucose < threshold
    is_borderline = threshold <= bedtime_glucose < BORDERLINE_UPPER_MGDL
    has_high_iob = active_iob > HIGH_RISK_IOB_UNITS

    if is_low or (is_borderline and (has_high_iob or recent_exercise)):
        if is_low:
            recommendation = (
                "CRITICAL: Blood sugar is low! Consume 15-20g fast carbs immediately. "
                "Recheck in 15 minutes."
            )
        elif has_high_iob and recent_exercise:
            recommendation = (
                "High risk: Low BG + active insulin + recent exercise. "
                "Have a snack (15g carbs) and set alarm."
            )
        elif has_high_iob:
            recommendation = "Warning: Active insulin detected. Consider a small snack before bed."
        else:
            recommendation = "Warning: Exercise can lower BG overnight. Have a snack and set alarm."
        return {"risk": "high", "recommendation": recommendation, "should_alert": True}

    if is_borderline or active_iob > MEDIUM_RISK_IOB_UNITS:
        return {
            "risk": "medium",
            "recommendation": (
                "Borderline BG. Consider a small snack if concerned. Set alarm for midnight check."
            ),
            "should_alert": False,
        }

    return {
        "risk": "low",
        "recommendation": "Blood sugar is in safe range for bedtime.",
        "should_alert": False,
    }


def exercise_impact(intensity: str, duration_minutes: float) -> dict:
    # Unknown intensities fall back to the mildest band.
    long_pct, short_pct, block_minutes, grams_per_block, monitoring_hours = EXERCISE_BANDS.get(
        intensity, EXERCISE_BANDS["low"]
    )
    duration = duration_minutes if math.isfinite(duration_minutes) else 0
    duration = max(duration, 0)

    reduction = long_pct if duration > 30 else short_pct
    return {
        "insulin_reduction_pct": min(reduction, MAX_INSULIN_REDUCTION_PCT),
        "carbs_needed_grams": int(duration // block_minutes) * grams_per_block,
        "monitoring_hours": monitoring_hours,
    }


def menstrual_cycle_impact(days_into_cycle: float) -> dict:
    for last_day, phase, adjustment, note in CYCLE_PHASES:
        if days_into_cycle <= last_day:
            return {"phase": phase, "insulin_adjustment_pct": adjustment, "note": note}
    phase, adjustment, note = LUTEAL_PHASE
    return {"phase": phase, "insulin_adjustment_pct": adjustment, "note": note}


def cycle_day(cycle_start: datetime, now: datetime) -> int:
    """Whole days elapsed since the start of the current cycle."""
    return max(0, (now - cycle_start).days)
