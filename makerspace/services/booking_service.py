from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from makerspace.models.shop_models import Reservation, ReservationStatus
from makerspace.services.conflicts import CONFLICTING_RESERVATION_STATUSES, validate_time_range
from makerspace.services.eligibility_service import (
    check_eligibility,
    load_active_machine,
    load_active_user,
)
from makerspace.services.errors import (
    AuthorizationError,
    ConflictError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
)
from makerspace.services.events import record_event
from makerspace.services.lifecycle import (
    RESERVATION_TERMINAL_STATES,
    apply_reservation_runtime_state,
    transition_reservation,
)
from makerspace.services.locks import resource_guard, resource_key
from makerspace.services.member_service import require_right
from makerspace.services.repositories import MachineRepository, ReservationRepository
from makerspace.services.timeutil import isoformat_utc, to_utc_naive, utc_now


LOGGER = logging.getLogger("makerspace.booking")

DECISION_STATUS = {
    "approve": ReservationStatus.APPROVED.value,
    "reject": ReservationStatus.REJECTED.value,
    "confirm": ReservationStatus.CONFIRMED.value,
}


def serialize_reservation(reservation: Reservation) -> dict:
    return {
        "reservationID": reservation.ReservationID,
        "userID": reservation.UserID,
        "machineID": reservation.MachineID,
        "startTime": isoformat_utc(reservation.StartTime),
        "endTime": isoformat_utc(reservation.EndTime),
        "status": reservation.Status,
        "reviewedBy": reservation.ReviewedBy,
        "reviewedAt": isoformat_utc(reservation.ReviewedAt),
        "reviewNotes": reservation.ReviewNotes,
        "decisionReason": reservation.DecisionReason,
        "externalBookingID": reservation.ExternalBookingID,
        "externalBookingUID": reservation.ExternalBookingUID,
    }


def _event_payload(reservation: Reservation) -> dict:
    return {
        "bookingId": reservation.ReservationID,
        "machineId": reservation.MachineID,
        "userId": reservation.UserID,
        "status": reservation.Status,
        "startTime": reservation.StartTime,
        "endTime": reservation.EndTime,
    }


def create_reservation(
    db: Session,
    user_id: int,
    machine_id: int,
    start_time: datetime,
    end_time: datetime,
    now: datetime | None = None,
) -> Reservation:
    """Request a machine for a window; the request starts out pending.

    Eligibility is checked before any conflict lookup. The conflict read and
    the insert run under a guard keyed on the machine, so two overlapping
    requests cannot both succeed.
    """
    current = now or utc_now()
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time)
    range_error = validate_time_range(start, end)
    if range_error:
        raise InvalidRequestError(range_error)
    if start <= current:
        raise InvalidRequestError("Reservations must start in the future")

    user = load_active_user(db, user_id)
    machine = load_active_machine(db, machine_id)

    eligibility = check_eligibility(db, user.UserID, machine.MachineID)
    if not eligibility.eligible:
        LOGGER.info("User %s not eligible for machine %s", user.UserID, machine.MachineID)
        raise AuthorizationError("Not eligible to reserve this machine or tool", reasons=eligibility.reasons)

    reservations = ReservationRepository(db)
    with resource_guard(db, resource_key("machine", machine.MachineID)):
        conflicts = reservations.conflicting(machine.MachineID, start, end)
        if conflicts:
            LOGGER.warning("Reservation for machine %s overlaps %s", machine.MachineID, len(conflicts))
            raise ConflictError(
                "Selected time overlaps an existing booking",
                role="machine",
                conflict_ids=[r.ReservationID for r in conflicts],
            )

        reservation = Reservation(
            UserID=user.UserID,
            MachineID=machine.MachineID,
            StartTime=start,
            EndTime=end,
            Status=ReservationStatus.PENDING.value,
            CreatedAt=current,
            UpdatedAt=current,
        )
        db.add(reservation)
        db.flush()
        record_event(
            db,
            "reservation_created",
            "Reservation",
            reservation.ReservationID,
            {**_event_payload(reservation), "machineName": machine.Name},
            recipient_ids=[user.UserID],
            actor_id=user.UserID,
        )
        db.commit()

    LOGGER.info("Reservation %s requested by user %s", reservation.ReservationID, user.UserID)
    return reservation


def get_reservation(db: Session, reservation_id: int, now: datetime | None = None) -> Reservation:
    reservation = ReservationRepository(db).get(reservation_id)
    if not reservation:
        raise NotFoundError("Reservation not found")
    apply_reservation_runtime_state(reservation, now)
    return reservation


def decide_reservation(
    db: Session,
    reservation_id: int,
    reviewer_id: int,
    decision: str,
    notes: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    current = now or utc_now()
    reviewer = require_right(db, reviewer_id, "reviewReservations", "Only managers/admins can review reservations")
    target = DECISION_STATUS.get((decision or "").strip().lower())
    if not target:
        raise InvalidRequestError(f"Unknown decision: {decision}")

    reservation = get_reservation(db, reservation_id, current)
    if reservation.Status in RESERVATION_TERMINAL_STATES:
        raise InvalidTransitionError(f"Reservation is already {reservation.Status}")

    cleaned_reason = (reason or "").strip() or None
    if target == ReservationStatus.REJECTED.value and not cleaned_reason:
        raise InvalidRequestError("Reject reason is required.")

    with resource_guard(db, resource_key("machine", reservation.MachineID)):
        if target == ReservationStatus.APPROVED.value:
            conflicts = ReservationRepository(db).conflicting(
                reservation.MachineID,
                reservation.StartTime,
                reservation.EndTime,
                exclude_reservation_id=reservation.ReservationID,
            )
            if conflicts:
                LOGGER.warning("Cannot approve reservation %s: window taken", reservation.ReservationID)
                raise ConflictError(
                    "Cannot approve request because the time is already booked",
                    role="machine",
                    conflict_ids=[r.ReservationID for r in conflicts],
                )

        transition_reservation(reservation, target, current)
        reservation.ReviewedBy = reviewer.UserID
        reservation.ReviewedAt = current
        reservation.ReviewNotes = notes
        reservation.DecisionReason = cleaned_reason
        record_event(
            db,
            f"reservation_{target}",
            "Reservation",
            reservation.ReservationID,
            _event_payload(reservation),
            recipient_ids=[reservation.UserID],
            actor_id=reviewer.UserID,
        )
        db.commit()

    LOGGER.info("Reservation %s %s by %s", reservation.ReservationID, target, reviewer.UserID)
    return reservation


def cancel_reservation(
    db: Session,
    reservation_id: int,
    user_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    current = now or utc_now()
    reservation = get_reservation(db, reservation_id, current)
    if reservation.UserID != user_id:
        raise AuthorizationError("Only the member who made the reservation can cancel it")
    if reservation.Status in RESERVATION_TERMINAL_STATES:
        raise InvalidTransitionError("Reservation is already closed")
    if reservation.StartTime < current:
        raise InvalidRequestError("Cannot cancel past reservations")

    transition_reservation(reservation, ReservationStatus.CANCELLED.value, current)
    reservation.DecisionReason = (reason or "").strip() or None
    record_event(
        db,
        "reservation_cancelled",
        "Reservation",
        reservation.ReservationID,
        _event_payload(reservation),
        recipient_ids=[reservation.UserID],
        actor_id=user_id,
    )
    db.commit()
    LOGGER.info("Reservation %s cancelled by member %s", reservation.ReservationID, user_id)
    return reservation


def list_machine_bookings(
    db: Session,
    machine_id: int,
    start_time: datetime,
    end_time: datetime,
    now: datetime | None = None,
) -> list[Reservation]:
    """Active reservations on a machine overlapping the range, oldest first."""
    current = now or utc_now()
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time)
    range_error = validate_time_range(start, end)
    if range_error:
        raise InvalidRequestError(range_error)
    if not MachineRepository(db).get(machine_id):
        raise NotFoundError("Machine or tool not found")

    bookings = []
    changed = False
    for reservation in ReservationRepository(db).conflicting(machine_id, start, end):
        before = reservation.Status
        if apply_reservation_runtime_state(reservation, current) != before:
            changed = True
        if reservation.Status in CONFLICTING_RESERVATION_STATUSES:
            bookings.append(reservation)
    if changed:
        db.commit()
    return bookings


def list_user_reservations(db: Session, user_id: int, now: datetime | None = None) -> list[Reservation]:
    current = now or utc_now()
    reservations = ReservationRepository(db).for_user(user_id)
    changed = False
    for reservation in reservations:
        before = reservation.Status
        if apply_reservation_runtime_state(reservation, current) != before:
            changed = True
    if changed:
        db.commit()
    return reservations
