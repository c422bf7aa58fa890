from __future__ import annotations

from datetime import datetime

from makerspace.services.errors import InvalidTransitionError
from makerspace.services.timeutil import utc_now


RESERVATION_TRANSITIONS = {
    "pending": {"approved", "rejected", "cancelled"},
    "approved": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "rejected": set(),
    "cancelled": set(),
    "completed": set(),
}
RESERVATION_TERMINAL_STATES = {"rejected", "cancelled", "completed"}

APPOINTMENT_TRANSITIONS = {
    "scheduled": {"cancelled", "completed"},
    "cancelled": set(),
    "completed": set(),
}


def can_transition(transitions: dict[str, set[str]], current: str, target: str) -> bool:
    return current in transitions and target in transitions[current]


def _transition(record, transitions: dict[str, set[str]], target: str, now: datetime | None) -> None:
    current = (record.Status or "").strip().lower()
    if current not in transitions or target not in transitions[current]:
        raise InvalidTransitionError(f"Invalid state transition: {current} -> {target}")
    record.Status = target
    record.UpdatedAt = now or utc_now()


def transition_reservation(reservation, target: str, now: datetime | None = None) -> None:
    _transition(reservation, RESERVATION_TRANSITIONS, target, now)


def transition_appointment(appointment, target: str, now: datetime | None = None) -> None:
    _transition(appointment, APPOINTMENT_TRANSITIONS, target, now)


def apply_reservation_runtime_state(reservation, now: datetime | None = None) -> str:
    """Confirmed reservations whose end has passed read as completed."""
    current = now or utc_now()
    if reservation.Status == "confirmed" and reservation.EndTime and reservation.EndTime <= current:
        reservation.Status = "completed"
        reservation.UpdatedAt = current
    return reservation.Status


def apply_appointment_runtime_state(appointment, now: datetime | None = None) -> str:
    current = now or utc_now()
    if appointment.Status == "scheduled" and appointment.EndTime and appointment.EndTime <= current:
        appointment.Status = "completed"
        appointment.UpdatedAt = current
    return appointment.Status
