"""Formatting helpers for the countdown shown to the user."""

from __future__ import annotations

from typing import Optional

WARNING_PROGRESS = 0.2
CRITICAL_PROGRESS = 0.1


def format_hms(seconds: float) -> str:
    clamped = max(0, int(seconds))
    hours, rest = divmod(clamped, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def time_display(seconds: float, has_active_timer: bool = True) -> dict:
    if not has_active_timer:
        return {"hours": None, "minutes": "--", "seconds": "--"}

    clamped = max(0, int(seconds))
    hours, rest = divmod(clamped, 3600)
    minutes, secs = divmod(rest, 60)
    return {
        "hours": str(hours) if hours > 0 else None,
        "minutes": f"{minutes:02d}" if hours > 0 else str(minutes),
        "seconds": f"{secs:02d}",
    }


def progress(remaining_seconds: float, total_seconds: float) -> float:
    """Fraction of the countdown still left, in [0, 1]."""
    if total_seconds <= 0:
        return 0.0
    return max(0.0, min(1.0, remaining_seconds / total_seconds))


def status(
    is_completed: bool,
    fraction_left: float,
    has_active_timer: bool = True,
    is_running: bool = True,
) -> Optional[str]:
    if not has_active_timer:
        return None
    if is_completed:
        return "completed"
    if not is_running:
        return "stopped"
    if 0 < fraction_left <= CRITICAL_PROGRESS:
        return "critical"
    if 0 < fraction_left <= WARNING_PROGRESS:
        return "warning"
    return "active"
