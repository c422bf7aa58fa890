from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from makerspace.models.shop_models import (
    CheckoutAppointment,
    CheckoutAvailabilityBlock,
    CheckoutAvailabilityRule,
    Machine,
    MachineRequirement,
    ManagerCheckout,
    RecordStatus,
    Reservation,
    TrainingModule,
    TrainingProgress,
    User,
)
from makerspace.services.conflicts import ACTIVE_APPOINTMENT_STATUSES, CONFLICTING_RESERVATION_STATUSES
from makerspace.services.watch_ranges import stored_ranges, watched_range_seconds


class _Repository:
    def __init__(self, session: Session):
        self.session = session


class UserRepository(_Repository):
    def get(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)


class MachineRepository(_Repository):
    def get(self, machine_id: int) -> Machine | None:
        return self.session.get(Machine, machine_id)


class TrainingModuleRepository(_Repository):
    def get(self, module_id: int) -> TrainingModule | None:
        return self.session.get(TrainingModule, module_id)

    def active(self) -> list[TrainingModule]:
        return self.session.execute(
            select(TrainingModule)
            .where(TrainingModule.Status == RecordStatus.ACTIVE.value)
            .order_by(TrainingModule.ModuleID)
        ).scalars().all()


class MachineRequirementsRepository(_Repository):
    def by_machine(self, machine_id: int) -> list[MachineRequirement]:
        return self.session.execute(
            select(MachineRequirement)
            .options(selectinload(MachineRequirement.Module))
            .where(MachineRequirement.MachineID == machine_id)
            .order_by(MachineRequirement.RequirementID)
        ).scalars().all()


class TrainingProgressRepository(_Repository):
    def get(self, user_id: int, module_id: int) -> TrainingProgress | None:
        return self.session.execute(
            select(TrainingProgress)
            .where(TrainingProgress.UserID == user_id)
            .where(TrainingProgress.ModuleID == module_id)
        ).scalars().first()

    def for_user(self, user_id: int) -> list[TrainingProgress]:
        return self.session.execute(
            select(TrainingProgress).where(TrainingProgress.UserID == user_id)
        ).scalars().all()

    def coverage_seconds(self, user_id: int, module: TrainingModule) -> float:
        progress = self.get(user_id, module.ModuleID)
        if progress is None:
            return 0.0
        ranges = stored_ranges(progress.WatchedRanges, progress.WatchedSeconds, module.DurationSeconds or 0)
        return watched_range_seconds(ranges)


class ManagerCheckoutRepository(_Repository):
    def get(self, user_id: int, machine_id: int) -> ManagerCheckout | None:
        return self.session.execute(
            select(ManagerCheckout)
            .where(ManagerCheckout.UserID == user_id)
            .where(ManagerCheckout.MachineID == machine_id)
        ).scalars().first()

    def exists(self, user_id: int, machine_id: int) -> bool:
        return self.get(user_id, machine_id) is not None

    def for_user(self, user_id: int) -> list[ManagerCheckout]:
        return self.session.execute(
            select(ManagerCheckout)
            .where(ManagerCheckout.UserID == user_id)
            .order_by(ManagerCheckout.ApprovedAt)
        ).scalars().all()


class ReservationRepository(_Repository):
    def get(self, reservation_id: int) -> Reservation | None:
        return self.session.get(Reservation, reservation_id)

    def conflicting(
        self,
        machine_id: int,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: int | None = None,
    ) -> list[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.MachineID == machine_id)
            .where(Reservation.StartTime < end_time)
            .where(Reservation.EndTime > start_time)
            .where(Reservation.Status.in_(CONFLICTING_RESERVATION_STATUSES))
            .order_by(Reservation.StartTime)
        )
        if exclude_reservation_id:
            stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
        return self.session.execute(stmt).scalars().all()

    def for_user(self, user_id: int) -> list[Reservation]:
        return self.session.execute(
            select(Reservation)
            .where(Reservation.UserID == user_id)
            .order_by(Reservation.StartTime.desc())
        ).scalars().all()


class AvailabilityBlockRepository(_Repository):
    def get(self, block_id: int) -> CheckoutAvailabilityBlock | None:
        return self.session.get(CheckoutAvailabilityBlock, block_id)

    def for_manager(self, manager_id: int, include_inactive: bool = False) -> list[CheckoutAvailabilityBlock]:
        stmt = select(CheckoutAvailabilityBlock).where(CheckoutAvailabilityBlock.ManagerID == manager_id)
        if not include_inactive:
            stmt = stmt.where(CheckoutAvailabilityBlock.Status == RecordStatus.ACTIVE.value)
        return self.session.execute(stmt.order_by(CheckoutAvailabilityBlock.StartTime)).scalars().all()

    def in_range(
        self,
        start_time: datetime,
        end_time: datetime,
        manager_id: int | None = None,
        machine_id: int | None = None,
        include_inactive: bool = False,
    ) -> list[CheckoutAvailabilityBlock]:
        stmt = (
            select(CheckoutAvailabilityBlock)
            .where(CheckoutAvailabilityBlock.StartTime < end_time)
            .where(CheckoutAvailabilityBlock.EndTime > start_time)
        )
        if manager_id is not None:
            stmt = stmt.where(CheckoutAvailabilityBlock.ManagerID == manager_id)
        if machine_id is not None:
            # Blocks without a machine are open to every machine.
            stmt = stmt.where(
                or_(
                    CheckoutAvailabilityBlock.MachineID == machine_id,
                    CheckoutAvailabilityBlock.MachineID.is_(None),
                )
            )
        if not include_inactive:
            stmt = stmt.where(CheckoutAvailabilityBlock.Status == RecordStatus.ACTIVE.value)
        return self.session.execute(stmt.order_by(CheckoutAvailabilityBlock.StartTime)).scalars().all()


class AvailabilityRuleRepository(_Repository):
    def get(self, rule_id: int) -> CheckoutAvailabilityRule | None:
        return self.session.get(CheckoutAvailabilityRule, rule_id)

    def for_manager(self, manager_id: int | None = None, include_inactive: bool = False) -> list[CheckoutAvailabilityRule]:
        stmt = select(CheckoutAvailabilityRule)
        if manager_id is not None:
            stmt = stmt.where(CheckoutAvailabilityRule.ManagerID == manager_id)
        if not include_inactive:
            stmt = stmt.where(CheckoutAvailabilityRule.Status == RecordStatus.ACTIVE.value)
        return self.session.execute(
            stmt.order_by(CheckoutAvailabilityRule.DayOfWeek, CheckoutAvailabilityRule.StartMinuteOfDay)
        ).scalars().all()

    def overlapping(
        self,
        manager_id: int,
        day_of_week: int,
        start_minute: int,
        end_minute: int,
    ) -> list[CheckoutAvailabilityRule]:
        return self.session.execute(
            select(CheckoutAvailabilityRule)
            .where(CheckoutAvailabilityRule.ManagerID == manager_id)
            .where(CheckoutAvailabilityRule.Status == RecordStatus.ACTIVE.value)
            .where(CheckoutAvailabilityRule.DayOfWeek == day_of_week)
            .where(CheckoutAvailabilityRule.StartMinuteOfDay < end_minute)
            .where(CheckoutAvailabilityRule.EndMinuteOfDay > start_minute)
        ).scalars().all()


class AppointmentRepository(_Repository):
    def get(self, appointment_id: int) -> CheckoutAppointment | None:
        return self.session.get(CheckoutAppointment, appointment_id)

    def scheduled_in_range(
        self,
        start_time: datetime,
        end_time: datetime,
        manager_id: int | None = None,
        machine_id: int | None = None,
        user_id: int | None = None,
    ) -> list[CheckoutAppointment]:
        """Scheduled appointments overlapping the range.

        The manager, machine and user filters are OR-ed together: an
        appointment matches when it shares any of the given dimensions.
        """
        stmt = (
            select(CheckoutAppointment)
            .where(CheckoutAppointment.Status.in_(ACTIVE_APPOINTMENT_STATUSES))
            .where(CheckoutAppointment.StartTime < end_time)
            .where(CheckoutAppointment.EndTime > start_time)
        )
        dimensions = []
        if manager_id is not None:
            dimensions.append(CheckoutAppointment.ManagerID == manager_id)
        if machine_id is not None:
            dimensions.append(CheckoutAppointment.MachineID == machine_id)
        if user_id is not None:
            dimensions.append(CheckoutAppointment.UserID == user_id)
        if dimensions:
            stmt = stmt.where(or_(*dimensions))
        return self.session.execute(stmt.order_by(CheckoutAppointment.StartTime)).scalars().all()

    def upcoming_for_user(self, user_id: int, now: datetime) -> list[CheckoutAppointment]:
        return self.session.execute(
            select(CheckoutAppointment)
            .where(CheckoutAppointment.UserID == user_id)
            .where(CheckoutAppointment.Status.in_(ACTIVE_APPOINTMENT_STATUSES))
            .where(CheckoutAppointment.EndTime > now)
            .order_by(CheckoutAppointment.StartTime)
        ).scalars().all()
