from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from makerspace.models.shop_models import (
    CheckoutAvailabilityBlock,
    CheckoutAvailabilityRule,
    RecordStatus,
)
from makerspace.services.conflicts import overlaps, validate_time_range
from makerspace.services.errors import AuthorizationError, ConflictError, InvalidRequestError, NotFoundError
from makerspace.services.events import record_event
from makerspace.services.makerspace_settings import get_makerspace_timezone, is_valid_iana_timezone
from makerspace.services.member_service import is_admin, require_right
from makerspace.services.repositories import (
    AppointmentRepository,
    AvailabilityBlockRepository,
    AvailabilityRuleRepository,
    MachineRepository,
    ManagerCheckoutRepository,
)
from makerspace.services.timeutil import to_utc_aware, to_utc_naive, utc_now


LOGGER = logging.getLogger("makerspace.availability")

MINUTES_PER_DAY = 24 * 60

WINDOW_OPEN = "open"
WINDOW_BOOKED = "booked"
WINDOW_INACTIVE = "inactive"


@dataclass
class AvailabilityWindow:
    source: str
    sourceId: int
    managerId: int
    startTime: datetime
    endTime: datetime
    status: str = WINDOW_OPEN
    machineId: int | None = None
    notes: str | None = None
    appointmentIds: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CheckoutSlot:
    source: str
    sourceId: int
    managerId: int
    startTime: datetime
    endTime: datetime
    notes: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def day_of_week(value: date) -> int:
    """Sunday is 0, Saturday is 6."""
    return (value.weekday() + 1) % 7


def validate_minute_range(start_minute: int, end_minute: int) -> str | None:
    if start_minute < 0 or start_minute >= MINUTES_PER_DAY:
        return "Start time must be within the day"
    if end_minute <= 0 or end_minute > MINUTES_PER_DAY:
        return "End time must be within the day"
    if end_minute <= start_minute:
        return "End time must be after start time"
    return None


def _local_day_start(day: date, zone: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=zone)


def _wall_clock_to_utc(day: date, minute_of_day: int, zone: ZoneInfo) -> datetime:
    # Aware arithmetic in Python is wall-clock arithmetic, so minute 1440 lands on
    # the next local midnight with that day's offset.
    local = _local_day_start(day, zone) + timedelta(minutes=minute_of_day)
    return to_utc_naive(local)


def expand_rule(
    rule,
    range_start: datetime,
    range_end: datetime,
) -> list[tuple[datetime, datetime]]:
    """Concrete UTC occurrences of a weekly rule that intersect the range.

    Start and end are each resolved from local wall-clock time in the rule's
    zone, so an occurrence spanning a DST change is shorter or longer than
    its nominal length. Occurrences are not clipped to the range.
    """
    zone = ZoneInfo(rule.Timezone)
    start = to_utc_naive(range_start)
    end = to_utc_naive(range_end)
    first_day = to_utc_aware(start).astimezone(zone).date() - timedelta(days=1)
    last_day = to_utc_aware(end).astimezone(zone).date() + timedelta(days=1)

    occurrences = []
    cursor = first_day
    while cursor <= last_day:
        if day_of_week(cursor) == rule.DayOfWeek:
            window_start = _wall_clock_to_utc(cursor, rule.StartMinuteOfDay, zone)
            window_end = _wall_clock_to_utc(cursor, rule.EndMinuteOfDay, zone)
            if window_end > window_start and overlaps(window_start, window_end, start, end):
                occurrences.append((window_start, window_end))
        cursor += timedelta(days=1)
    return occurrences


def compute_availability(
    manager_id: int,
    range_start: datetime,
    range_end: datetime,
    block_repo,
    rule_repo,
    appointment_repo,
) -> list[AvailabilityWindow]:
    """Resolve a manager's blocks and weekly rules into windows over a range.

    Each source window is reported on its own, without merging overlapping
    sources. A window is booked when any scheduled appointment overlaps it.
    Deactivated sources only appear where a scheduled appointment still
    references them, with status ``inactive``.
    """
    start = to_utc_naive(range_start)
    end = to_utc_naive(range_end)
    appointments = appointment_repo.scheduled_in_range(start, end, manager_id=manager_id)
    referenced_blocks = {a.BlockID for a in appointments if a.BlockID}
    referenced_rules = {a.RuleID for a in appointments if a.RuleID}

    candidates: list[AvailabilityWindow] = []
    for block in block_repo.in_range(start, end, manager_id=manager_id, include_inactive=True):
        active = block.Status == RecordStatus.ACTIVE.value
        if not active and block.BlockID not in referenced_blocks:
            continue
        candidates.append(
            AvailabilityWindow(
                source="block",
                sourceId=block.BlockID,
                managerId=block.ManagerID,
                machineId=block.MachineID,
                startTime=block.StartTime,
                endTime=block.EndTime,
                status=WINDOW_OPEN if active else WINDOW_INACTIVE,
                notes=block.Notes,
            )
        )

    for rule in rule_repo.for_manager(manager_id, include_inactive=True):
        active = rule.Status == RecordStatus.ACTIVE.value
        if not active and rule.RuleID not in referenced_rules:
            continue
        for window_start, window_end in expand_rule(rule, start, end):
            candidates.append(
                AvailabilityWindow(
                    source="rule",
                    sourceId=rule.RuleID,
                    managerId=rule.ManagerID,
                    startTime=window_start,
                    endTime=window_end,
                    status=WINDOW_OPEN if active else WINDOW_INACTIVE,
                    notes=rule.Notes,
                )
            )

    windows = []
    for window in candidates:
        booked = [
            a.AppointmentID
            for a in appointments
            if overlaps(window.startTime, window.endTime, a.StartTime, a.EndTime)
        ]
        window.appointmentIds = booked
        if window.status == WINDOW_INACTIVE:
            if not booked:
                continue
        elif booked:
            window.status = WINDOW_BOOKED
        windows.append(window)

    windows.sort(key=lambda w: (w.startTime, w.source, w.sourceId))
    LOGGER.debug("Resolved %s windows for manager %s", len(windows), manager_id)
    return windows


def resolve_availability(
    db: Session,
    manager_id: int,
    range_start: datetime,
    range_end: datetime,
) -> list[AvailabilityWindow]:
    start = to_utc_naive(range_start)
    end = to_utc_naive(range_end)
    range_error = validate_time_range(start, end)
    if range_error:
        raise InvalidRequestError(range_error)
    return compute_availability(
        manager_id,
        start,
        end,
        AvailabilityBlockRepository(db),
        AvailabilityRuleRepository(db),
        AppointmentRepository(db),
    )


def _split_into_slots(window_start: datetime, window_end: datetime, duration: timedelta):
    cursor = window_start
    while cursor + duration <= window_end:
        yield cursor, cursor + duration
        cursor += duration


def list_bookable_checkout_slots(
    db: Session,
    machine_id: int,
    range_start: datetime,
    range_end: datetime,
    user_id: int | None = None,
    now: datetime | None = None,
) -> list[CheckoutSlot]:
    """Open checkout slots for a machine, cut to its checkout duration.

    Slots that already ended, or that overlap a scheduled appointment sharing
    the manager, the machine or the user, are left out. A user who is already
    checked out on the machine, or has any upcoming appointment, gets none.
    """
    current = now or utc_now()
    start = to_utc_naive(range_start)
    end = to_utc_naive(range_end)
    range_error = validate_time_range(start, end)
    if range_error:
        raise InvalidRequestError(range_error)

    machine = MachineRepository(db).get(machine_id)
    if not machine:
        raise NotFoundError("Machine or tool not found")
    if machine.Status != RecordStatus.ACTIVE.value:
        return []

    appointments_repo = AppointmentRepository(db)
    if user_id is not None:
        if appointments_repo.upcoming_for_user(user_id, current):
            return []
        if ManagerCheckoutRepository(db).exists(user_id, machine_id):
            return []

    windows: list[tuple[str, int, int, datetime, datetime, str | None]] = []
    for block in AvailabilityBlockRepository(db).in_range(start, end, machine_id=machine_id):
        windows.append(("block", block.BlockID, block.ManagerID, block.StartTime, block.EndTime, block.Notes))
    for rule in AvailabilityRuleRepository(db).for_manager():
        for window_start, window_end in expand_rule(rule, start, end):
            windows.append(("rule", rule.RuleID, rule.ManagerID, window_start, window_end, rule.Notes))
    if not windows:
        return []

    # Windows are not clipped to the range, so look for clashes across their full span.
    appointments = appointments_repo.scheduled_in_range(
        min(w[3] for w in windows),
        max(w[4] for w in windows),
    )
    duration = timedelta(minutes=machine.CheckoutDurationMinutes or 60)

    slots = []
    for source, source_id, manager_id, window_start, window_end, notes in windows:
        for slot_start, slot_end in _split_into_slots(window_start, window_end, duration):
            if not overlaps(slot_start, slot_end, start, end):
                continue
            if slot_start <= current:
                continue
            taken = any(
                overlaps(slot_start, slot_end, a.StartTime, a.EndTime)
                and (
                    a.ManagerID == manager_id
                    or a.MachineID == machine_id
                    or (user_id is not None and a.UserID == user_id)
                )
                for a in appointments
            )
            if not taken:
                slots.append(CheckoutSlot(source, source_id, manager_id, slot_start, slot_end, notes))

    slots.sort(key=lambda s: (s.startTime, s.managerId, s.source, s.sourceId))
    return slots


def _require_availability_owner(db: Session, actor_id: int, manager_id: int) -> None:
    actor = require_right(
        db,
        actor_id,
        "manageAvailability",
        "Only managers/admins can manage checkout availability",
    )
    if actor.UserID != manager_id and not is_admin(actor):
        raise AuthorizationError("Only the owning manager or an admin can change this availability")


def create_availability_rule(
    db: Session,
    manager_id: int,
    day: int,
    start_minute: int,
    end_minute: int,
    timezone_name: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> CheckoutAvailabilityRule:
    if day < 0 or day > 6:
        raise InvalidRequestError("Invalid day of week")
    range_error = validate_minute_range(start_minute, end_minute)
    if range_error:
        raise InvalidRequestError(range_error)

    manager = require_right(
        db, manager_id, "manageAvailability", "Only managers/admins can create checkout availability"
    )
    if actor_id is not None and actor_id != manager_id:
        _require_availability_owner(db, actor_id, manager_id)

    zone = (timezone_name or "").strip() or get_makerspace_timezone(db)
    if not is_valid_iana_timezone(zone):
        raise InvalidRequestError("Invalid timezone")

    clashing = AvailabilityRuleRepository(db).overlapping(manager.UserID, day, start_minute, end_minute)
    if clashing:
        LOGGER.warning("Rule overlap for manager %s on day %s", manager.UserID, day)
        raise ConflictError(
            "This recurring availability overlaps another rule you already set",
            role="manager",
            conflict_ids=[r.RuleID for r in clashing],
        )

    current = utc_now()
    rule = CheckoutAvailabilityRule(
        ManagerID=manager.UserID,
        DayOfWeek=day,
        StartMinuteOfDay=start_minute,
        EndMinuteOfDay=end_minute,
        Timezone=zone,
        Status=RecordStatus.ACTIVE.value,
        Notes=notes,
        CreatedAt=current,
        UpdatedAt=current,
    )
    db.add(rule)
    db.flush()
    record_event(
        db,
        "availability_rule_created",
        "CheckoutAvailabilityRule",
        rule.RuleID,
        {"ruleId": rule.RuleID, "managerId": manager.UserID, "dayOfWeek": day},
        actor_id=actor_id or manager.UserID,
    )
    db.commit()
    LOGGER.info("Created availability rule %s for manager %s", rule.RuleID, manager.UserID)
    return rule


def deactivate_availability_rule(db: Session, rule_id: int, actor_id: int) -> CheckoutAvailabilityRule:
    rule = AvailabilityRuleRepository(db).get(rule_id)
    if not rule:
        raise NotFoundError("Availability rule not found")
    _require_availability_owner(db, actor_id, rule.ManagerID)
    if rule.Status != RecordStatus.INACTIVE.value:
        rule.Status = RecordStatus.INACTIVE.value
        rule.UpdatedAt = utc_now()
        record_event(
            db,
            "availability_rule_deactivated",
            "CheckoutAvailabilityRule",
            rule.RuleID,
            {"ruleId": rule.RuleID, "managerId": rule.ManagerID},
            actor_id=actor_id,
        )
    db.commit()
    return rule


def create_availability_block(
    db: Session,
    manager_id: int,
    start_time: datetime,
    end_time: datetime,
    machine_id: int | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> CheckoutAvailabilityBlock:
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time)
    range_error = validate_time_range(start, end)
    if range_error:
        raise InvalidRequestError(range_error)

    manager = require_right(
        db, manager_id, "manageAvailability", "Only managers/admins can create checkout availability"
    )
    if actor_id is not None and actor_id != manager_id:
        _require_availability_owner(db, actor_id, manager_id)
    if machine_id is not None and not MachineRepository(db).get(machine_id):
        raise NotFoundError("Machine or tool not found")

    clashing = AvailabilityBlockRepository(db).in_range(start, end, manager_id=manager.UserID)
    if clashing:
        LOGGER.warning("Block overlap for manager %s", manager.UserID)
        raise ConflictError(
            "This availability block overlaps another block you already set",
            role="manager",
            conflict_ids=[b.BlockID for b in clashing],
        )

    current = utc_now()
    block = CheckoutAvailabilityBlock(
        ManagerID=manager.UserID,
        MachineID=machine_id,
        StartTime=start,
        EndTime=end,
        Status=RecordStatus.ACTIVE.value,
        Notes=notes,
        CreatedAt=current,
        UpdatedAt=current,
    )
    db.add(block)
    db.flush()
    record_event(
        db,
        "availability_block_created",
        "CheckoutAvailabilityBlock",
        block.BlockID,
        {"blockId": block.BlockID, "managerId": manager.UserID, "startTime": start, "endTime": end},
        actor_id=actor_id or manager.UserID,
    )
    db.commit()
    LOGGER.info("Created availability block %s for manager %s", block.BlockID, manager.UserID)
    return block


def deactivate_availability_block(db: Session, block_id: int, actor_id: int) -> CheckoutAvailabilityBlock:
    block = AvailabilityBlockRepository(db).get(block_id)
    if not block:
        raise NotFoundError("Availability block not found")
    _require_availability_owner(db, actor_id, block.ManagerID)
    if block.Status != RecordStatus.INACTIVE.value:
        block.Status = RecordStatus.INACTIVE.value
        block.UpdatedAt = utc_now()
        record_event(
            db,
            "availability_block_deactivated",
            "CheckoutAvailabilityBlock",
            block.BlockID,
            {"blockId": block.BlockID, "managerId": block.ManagerID},
            actor_id=actor_id,
        )
    db.commit()
    return block
