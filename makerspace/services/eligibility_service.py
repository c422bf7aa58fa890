from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy.orm import Session

from makerspace.models.shop_models import RecordStatus, UserRole, UserStatus
from makerspace.services.errors import InactiveError, NotFoundError
from makerspace.services.progress_service import watched_percent
from makerspace.services.repositories import (
    MachineRepository,
    MachineRequirementsRepository,
    ManagerCheckoutRepository,
    TrainingProgressRepository,
    UserRepository,
)


LOGGER = logging.getLogger("makerspace.eligibility")


@dataclass
class RequirementStatus:
    moduleId: int
    moduleTitle: str
    requiredPercent: int
    watchedPercent: int
    completed: bool


@dataclass
class EligibilityResult:
    eligible: bool
    reasons: list[str] = field(default_factory=list)
    requirements: list[RequirementStatus] = field(default_factory=list)
    hasCheckout: bool = False

    @property
    def training_complete(self) -> bool:
        return all(req.completed for req in self.requirements)

    def to_dict(self) -> dict:
        return asdict(self)


def evaluate_eligibility(user, machine, requirements_repo, progress_repo, checkout_repo) -> EligibilityResult:
    """Combine training coverage and checkout approval for one user and machine.

    Both entities are assumed to exist and be active. Admins are eligible
    everywhere and no checkout lookup happens for them.
    """
    if user.Role == UserRole.ADMIN.value:
        return EligibilityResult(eligible=True, reasons=[], requirements=[], hasCheckout=True)

    reasons: list[str] = []
    requirements: list[RequirementStatus] = []

    has_checkout = bool(checkout_repo.exists(user.UserID, machine.MachineID))
    if not has_checkout:
        reasons.append("Manager checkout not approved")

    for requirement in requirements_repo.by_machine(machine.MachineID):
        module = requirement.Module
        coverage = progress_repo.coverage_seconds(user.UserID, module)
        percent = watched_percent(coverage, module.DurationSeconds or 0)
        required = requirement.RequiredWatchPercent
        completed = percent >= required
        requirements.append(
            RequirementStatus(
                moduleId=module.ModuleID,
                moduleTitle=module.Title,
                requiredPercent=required,
                watchedPercent=percent,
                completed=completed,
            )
        )
        if not completed:
            reasons.append(f'Training "{module.Title}" not completed ({percent}% of {required}% required)')

    eligible = has_checkout and all(req.completed for req in requirements)
    LOGGER.debug(
        "Eligibility for user %s machine %s: eligible=%s reasons=%s",
        user.UserID,
        machine.MachineID,
        eligible,
        len(reasons),
    )
    return EligibilityResult(
        eligible=eligible,
        reasons=reasons,
        requirements=requirements,
        hasCheckout=has_checkout,
    )


def load_active_user(db: Session, user_id: int):
    user = UserRepository(db).get(user_id)
    if not user:
        raise NotFoundError("User not found")
    if user.Status != UserStatus.ACTIVE.value:
        raise InactiveError("User account is not active")
    return user


def load_active_machine(db: Session, machine_id: int):
    machine = MachineRepository(db).get(machine_id)
    if not machine:
        raise NotFoundError("Machine or tool not found")
    if machine.Status != RecordStatus.ACTIVE.value:
        raise InactiveError("Machine or tool is inactive")
    return machine


def check_eligibility(db: Session, user_id: int, machine_id: int) -> EligibilityResult:
    user = load_active_user(db, user_id)
    machine = load_active_machine(db, machine_id)
    return evaluate_eligibility(
        user,
        machine,
        MachineRequirementsRepository(db),
        TrainingProgressRepository(db),
        ManagerCheckoutRepository(db),
    )
