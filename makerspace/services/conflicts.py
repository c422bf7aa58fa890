from __future__ import annotations

from datetime import datetime


CONFLICTING_RESERVATION_STATUSES = ("pending", "approved", "confirmed")
ACTIVE_APPOINTMENT_STATUSES = ("scheduled",)


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    """Half-open overlap; windows that only touch at an endpoint do not conflict."""
    return a_start < b_end and a_end > b_start


def validate_time_range(start_time: datetime, end_time: datetime) -> str | None:
    if start_time is None or end_time is None:
        return "Invalid start or end time"
    if end_time <= start_time:
        return "End time must be after start time"
    return None
