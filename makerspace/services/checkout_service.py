from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from makerspace.models.shop_models import (
    AppointmentStatus,
    CheckoutAppointment,
    ManagerCheckout,
    RecordStatus,
)
from makerspace.services.availability_service import expand_rule
from makerspace.services.conflicts import validate_time_range
from makerspace.services.eligibility_service import (
    check_eligibility,
    load_active_machine,
    load_active_user,
)
from makerspace.services.errors import (
    AuthorizationError,
    ConflictError,
    InactiveError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
)
from makerspace.services.events import record_event
from makerspace.services.locks import resource_guard, resource_key
from makerspace.services.member_service import is_admin, require_right, rights_for
from makerspace.services.repositories import (
    AppointmentRepository,
    AvailabilityBlockRepository,
    AvailabilityRuleRepository,
    MachineRepository,
    ManagerCheckoutRepository,
    UserRepository,
)
from makerspace.services.lifecycle import apply_appointment_runtime_state, transition_appointment
from makerspace.services.timeutil import isoformat_utc, to_utc_naive, utc_now


LOGGER = logging.getLogger("makerspace.checkout")

SLOT_UNAVAILABLE = "This checkout slot is no longer available"


def serialize_checkout(checkout: ManagerCheckout) -> dict:
    return {
        "checkoutID": checkout.CheckoutID,
        "userID": checkout.UserID,
        "machineID": checkout.MachineID,
        "approvedBy": checkout.ApprovedBy,
        "approvedAt": isoformat_utc(checkout.ApprovedAt),
        "notes": checkout.Notes,
    }


def serialize_appointment(appointment: CheckoutAppointment) -> dict:
    return {
        "appointmentID": appointment.AppointmentID,
        "userID": appointment.UserID,
        "machineID": appointment.MachineID,
        "managerID": appointment.ManagerID,
        "blockID": appointment.BlockID,
        "ruleID": appointment.RuleID,
        "startTime": isoformat_utc(appointment.StartTime),
        "endTime": isoformat_utc(appointment.EndTime),
        "status": appointment.Status,
        "notes": appointment.Notes,
        "cancellationReason": appointment.CancellationReason,
        "result": appointment.Result,
        "resultedBy": appointment.ResultedBy,
        "resultedAt": isoformat_utc(appointment.ResultedAt),
    }


def _grant_checkout(
    db: Session,
    user_id: int,
    machine_id: int,
    approver_id: int,
    notes: str | None,
    now: datetime,
) -> ManagerCheckout:
    checkout = ManagerCheckout(
        UserID=user_id,
        MachineID=machine_id,
        ApprovedBy=approver_id,
        ApprovedAt=now,
        Notes=notes,
    )
    db.add(checkout)
    db.flush()
    record_event(
        db,
        "checkout_approved",
        "ManagerCheckout",
        checkout.CheckoutID,
        {"userId": user_id, "machineId": machine_id, "approvedBy": approver_id},
        recipient_ids=[user_id],
        actor_id=approver_id,
    )
    return checkout


def approve_checkout(
    db: Session,
    actor_id: int,
    user_id: int,
    machine_id: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> ManagerCheckout:
    actor = require_right(db, actor_id, "manageCheckouts", "Only managers/admins can approve checkouts")
    if actor.UserID == user_id:
        raise AuthorizationError("You cannot approve your own checkout")
    if not UserRepository(db).get(user_id):
        raise NotFoundError("User not found")
    if not MachineRepository(db).get(machine_id):
        raise NotFoundError("Machine or tool not found")

    existing = ManagerCheckoutRepository(db).get(user_id, machine_id)
    if existing:
        raise ConflictError(
            "User is already checked out for this machine or tool",
            role="user",
            conflict_ids=[existing.CheckoutID],
        )

    checkout = _grant_checkout(db, user_id, machine_id, actor.UserID, notes, now or utc_now())
    db.commit()
    LOGGER.info("Checkout approved for user %s machine %s by %s", user_id, machine_id, actor.UserID)
    return checkout


def revoke_checkout(db: Session, actor_id: int, user_id: int, machine_id: int) -> None:
    actor = require_right(db, actor_id, "manageCheckouts", "Only managers/admins can revoke checkouts")
    checkout = ManagerCheckoutRepository(db).get(user_id, machine_id)
    if not checkout:
        raise NotFoundError("Checkout not found")
    checkout_id = checkout.CheckoutID
    db.delete(checkout)
    record_event(
        db,
        "checkout_revoked",
        "ManagerCheckout",
        checkout_id,
        {"userId": user_id, "machineId": machine_id, "revokedBy": actor.UserID},
        recipient_ids=[user_id],
        actor_id=actor.UserID,
    )
    db.commit()
    LOGGER.info("Checkout revoked for user %s machine %s by %s", user_id, machine_id, actor.UserID)


def _resolve_source(
    db: Session,
    manager_id: int,
    machine_id: int,
    start: datetime,
    end: datetime,
    block_id: int | None,
    rule_id: int | None,
) -> None:
    if (block_id is None) == (rule_id is None):
        raise InvalidRequestError("Exactly one availability block or rule must be referenced")

    if block_id is not None:
        block = AvailabilityBlockRepository(db).get(block_id)
        if not block:
            raise NotFoundError("Availability block not found")
        if block.Status != RecordStatus.ACTIVE.value:
            raise InactiveError(SLOT_UNAVAILABLE)
        if block.ManagerID != manager_id:
            raise InvalidRequestError("Availability block belongs to another manager")
        if block.MachineID is not None and block.MachineID != machine_id:
            raise InvalidRequestError("Availability block is for another machine or tool")
        if start < block.StartTime or end > block.EndTime:
            raise InvalidRequestError(SLOT_UNAVAILABLE)
        return

    rule = AvailabilityRuleRepository(db).get(rule_id)
    if not rule:
        raise NotFoundError("Availability rule not found")
    if rule.Status != RecordStatus.ACTIVE.value:
        raise InactiveError(SLOT_UNAVAILABLE)
    if rule.ManagerID != manager_id:
        raise InvalidRequestError("Availability rule belongs to another manager")
    fits = any(occ_start <= start and end <= occ_end for occ_start, occ_end in expand_rule(rule, start, end))
    if not fits:
        raise InvalidRequestError(SLOT_UNAVAILABLE)


def _conflict_role(appointment: CheckoutAppointment, user_id: int, machine_id: int, manager_id: int) -> str:
    if appointment.MachineID == machine_id:
        return "machine"
    if appointment.ManagerID == manager_id:
        return "manager"
    return "user"


def create_checkout_appointment(
    db: Session,
    user_id: int,
    machine_id: int,
    manager_id: int,
    start_time: datetime,
    end_time: datetime | None = None,
    block_id: int | None = None,
    rule_id: int | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> CheckoutAppointment:
    """Book an in-person checkout against a manager's block or rule occurrence.

    The user must have finished training for the machine and not already be
    checked out on it. The conflict read and insert run under a guard keyed
    on the manager, the machine and the user.
    """
    current = now or utc_now()
    user = load_active_user(db, user_id)
    machine = load_active_machine(db, machine_id)

    start = to_utc_naive(start_time).replace(second=0, microsecond=0)
    if end_time is None:
        end = start + timedelta(minutes=machine.CheckoutDurationMinutes or 60)
    else:
        end = to_utc_naive(end_time).replace(second=0, microsecond=0)
    range_error = validate_time_range(start, end)
    if range_error:
        raise InvalidRequestError(range_error)
    if start <= current:
        raise InvalidRequestError(SLOT_UNAVAILABLE)

    manager = load_active_user(db, manager_id)
    if not rights_for(manager).get("manageCheckouts"):
        raise InvalidRequestError("Selected manager cannot run checkouts")

    eligibility = check_eligibility(db, user.UserID, machine.MachineID)
    if eligibility.hasCheckout:
        raise InvalidRequestError("You are already checked out for this machine or tool")
    if not eligibility.training_complete:
        raise AuthorizationError("Training requirements are not complete", reasons=eligibility.reasons)

    _resolve_source(db, manager.UserID, machine.MachineID, start, end, block_id, rule_id)

    appointments = AppointmentRepository(db)
    keys = (
        resource_key("manager", manager.UserID),
        resource_key("machine", machine.MachineID),
        resource_key("user", user.UserID),
    )
    with resource_guard(db, *keys):
        if ManagerCheckoutRepository(db).exists(user.UserID, machine.MachineID):
            raise InvalidRequestError("You are already checked out for this machine or tool")

        upcoming = appointments.upcoming_for_user(user.UserID, current)
        if upcoming:
            LOGGER.warning("User %s already has upcoming appointment %s", user.UserID, upcoming[0].AppointmentID)
            raise ConflictError(
                "You already have an upcoming checkout appointment",
                role="user",
                conflict_ids=[a.AppointmentID for a in upcoming],
            )

        clashing = appointments.scheduled_in_range(
            start,
            end,
            manager_id=manager.UserID,
            machine_id=machine.MachineID,
            user_id=user.UserID,
        )
        if clashing:
            role = _conflict_role(clashing[0], user.UserID, machine.MachineID, manager.UserID)
            LOGGER.warning("Checkout slot %s-%s taken (%s)", start, end, role)
            raise ConflictError(
                "This checkout slot has already been booked",
                role=role,
                conflict_ids=[a.AppointmentID for a in clashing],
            )

        appointment = CheckoutAppointment(
            UserID=user.UserID,
            MachineID=machine.MachineID,
            ManagerID=manager.UserID,
            BlockID=block_id,
            RuleID=rule_id,
            StartTime=start,
            EndTime=end,
            Status=AppointmentStatus.SCHEDULED.value,
            Notes=notes,
            CreatedAt=current,
            UpdatedAt=current,
        )
        db.add(appointment)
        db.flush()
        record_event(
            db,
            "checkout_appointment_booked",
            "CheckoutAppointment",
            appointment.AppointmentID,
            {
                "appointmentId": appointment.AppointmentID,
                "userId": user.UserID,
                "managerId": manager.UserID,
                "machineId": machine.MachineID,
                "machineName": machine.Name,
                "startTime": start,
                "endTime": end,
            },
            recipient_ids=[manager.UserID, user.UserID],
            actor_id=user.UserID,
        )
        db.commit()

    LOGGER.info(
        "Checkout appointment %s booked for user %s with manager %s",
        appointment.AppointmentID,
        user.UserID,
        manager.UserID,
    )
    return appointment


def _load_appointment(db: Session, appointment_id: int, now: datetime) -> CheckoutAppointment:
    appointment = AppointmentRepository(db).get(appointment_id)
    if not appointment:
        raise NotFoundError("Checkout appointment not found")
    apply_appointment_runtime_state(appointment, now)
    return appointment


def cancel_checkout_appointment(
    db: Session,
    appointment_id: int,
    actor_id: int,
    reason: str | None,
    now: datetime | None = None,
) -> CheckoutAppointment:
    current = now or utc_now()
    cleaned = (reason or "").strip()
    if not cleaned:
        raise InvalidRequestError("A cancellation reason is required")

    appointment = _load_appointment(db, appointment_id, current)
    actor = load_active_user(db, actor_id)
    if actor.UserID not in (appointment.UserID, appointment.ManagerID) and not is_admin(actor):
        raise AuthorizationError("You cannot cancel this checkout appointment")

    if appointment.Status != AppointmentStatus.SCHEDULED.value:
        raise InvalidTransitionError("Only scheduled appointments can be cancelled")
    if appointment.StartTime <= current:
        raise InvalidRequestError("Only future appointments can be cancelled")

    transition_appointment(appointment, AppointmentStatus.CANCELLED.value, current)
    appointment.CancellationReason = cleaned
    record_event(
        db,
        "checkout_appointment_cancelled",
        "CheckoutAppointment",
        appointment.AppointmentID,
        {
            "appointmentId": appointment.AppointmentID,
            "machineId": appointment.MachineID,
            "startTime": appointment.StartTime,
            "endTime": appointment.EndTime,
            "reason": cleaned,
            "cancelledBy": actor.UserID,
        },
        recipient_ids=[appointment.UserID, appointment.ManagerID],
        actor_id=actor.UserID,
    )
    db.commit()
    LOGGER.info("Checkout appointment %s cancelled by %s", appointment.AppointmentID, actor.UserID)
    return appointment


def complete_checkout_appointment(
    db: Session,
    appointment_id: int,
    actor_id: int,
    passed: bool,
    notes: str | None = None,
    now: datetime | None = None,
) -> CheckoutAppointment:
    """Record the outcome of a checkout; a pass grants the machine checkout."""
    current = now or utc_now()
    appointment = _load_appointment(db, appointment_id, current)
    actor = require_right(db, actor_id, "manageCheckouts", "Only managers/admins can complete checkouts")
    if actor.UserID != appointment.ManagerID and not is_admin(actor):
        raise AuthorizationError("Only the assigned manager or an admin can complete this appointment")
    if actor.UserID == appointment.UserID:
        raise AuthorizationError("You cannot approve your own checkout")

    if appointment.Status == AppointmentStatus.CANCELLED.value or appointment.Result:
        raise InvalidTransitionError(f"Appointment is already {appointment.Status}")
    if appointment.StartTime > current:
        raise InvalidRequestError("Appointment has not started yet")

    if appointment.Status == AppointmentStatus.SCHEDULED.value:
        transition_appointment(appointment, AppointmentStatus.COMPLETED.value, current)
    appointment.Result = "pass" if passed else "fail"
    appointment.ResultedBy = actor.UserID
    appointment.ResultedAt = current
    appointment.UpdatedAt = current
    if notes:
        appointment.Notes = (appointment.Notes + "\n" if appointment.Notes else "") + notes

    if passed and not ManagerCheckoutRepository(db).exists(appointment.UserID, appointment.MachineID):
        _grant_checkout(db, appointment.UserID, appointment.MachineID, actor.UserID, notes, current)

    record_event(
        db,
        "checkout_appointment_completed",
        "CheckoutAppointment",
        appointment.AppointmentID,
        {
            "appointmentId": appointment.AppointmentID,
            "machineId": appointment.MachineID,
            "result": appointment.Result,
        },
        recipient_ids=[appointment.UserID],
        actor_id=actor.UserID,
    )
    db.commit()
    LOGGER.info("Checkout appointment %s completed: %s", appointment.AppointmentID, appointment.Result)
    return appointment
