from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from makerspace.models.shop_models import Machine, MachineRequirement, RecordStatus, TrainingModule
from makerspace.schemas.machines import MachineRequirementDto
from makerspace.services.errors import InvalidRequestError, NotFoundError
from makerspace.services.events import record_event
from makerspace.services.member_service import require_right
from makerspace.services.repositories import (
    MachineRepository,
    MachineRequirementsRepository,
    TrainingModuleRepository,
)
from makerspace.services.timeutil import utc_now


LOGGER = logging.getLogger("makerspace.machines")


def serialize_machine(machine: Machine, requirements: list[MachineRequirement] | None = None) -> dict:
    return {
        "machineID": machine.MachineID,
        "name": machine.Name,
        "description": machine.Description,
        "status": machine.Status,
        "checkoutDurationMinutes": machine.CheckoutDurationMinutes,
        "requirements": [
            {
                "moduleID": req.ModuleID,
                "moduleTitle": req.Module.Title if req.Module else None,
                "requiredWatchPercent": req.RequiredWatchPercent,
            }
            for req in (requirements or [])
        ],
    }


def list_machines(db: Session, include_inactive: bool = False) -> list[Machine]:
    stmt = select(Machine).order_by(Machine.Name)
    if not include_inactive:
        stmt = stmt.where(Machine.Status == RecordStatus.ACTIVE.value)
    return db.execute(stmt).scalars().all()


def set_machine_requirements(
    db: Session,
    actor_id: int,
    machine_id: int,
    requirements: list[MachineRequirementDto],
) -> list[MachineRequirement]:
    """Replace the machine's training gate with the given module set."""
    actor = require_right(db, actor_id, "manageMachines", "Only admins can change machine requirements")
    machine = MachineRepository(db).get(machine_id)
    if not machine:
        raise NotFoundError("Machine or tool not found")

    modules = TrainingModuleRepository(db)
    seen: set[int] = set()
    for item in requirements:
        if item.requiredWatchPercent <= 0 or item.requiredWatchPercent > 100:
            raise InvalidRequestError("Required watch percent must be between 1 and 100")
        if item.moduleID in seen:
            raise InvalidRequestError(f"Module {item.moduleID} is listed more than once")
        if not modules.get(item.moduleID):
            raise NotFoundError(f"Module {item.moduleID} not found")
        seen.add(item.moduleID)

    db.execute(delete(MachineRequirement).where(MachineRequirement.MachineID == machine.MachineID))
    current = utc_now()
    for item in requirements:
        db.add(
            MachineRequirement(
                MachineID=machine.MachineID,
                ModuleID=item.moduleID,
                RequiredWatchPercent=item.requiredWatchPercent,
                CreatedAt=current,
            )
        )
    machine.UpdatedAt = current
    db.flush()
    record_event(
        db,
        "machine_requirements_updated",
        "Machine",
        machine.MachineID,
        {
            "machineId": machine.MachineID,
            "requirements": [
                {"moduleId": item.moduleID, "requiredWatchPercent": item.requiredWatchPercent}
                for item in requirements
            ],
        },
        actor_id=actor.UserID,
    )
    db.commit()
    db.expire(machine, ["Requirements"])
    LOGGER.info("Machine %s requirements replaced (%s modules)", machine.MachineID, len(requirements))
    return MachineRequirementsRepository(db).by_machine(machine.MachineID)


def set_machine_status(db: Session, actor_id: int, machine_id: int, status: str) -> Machine:
    actor = require_right(db, actor_id, "manageMachines", "Only admins can change machine status")
    target = (status or "").strip().lower()
    if target not in {RecordStatus.ACTIVE.value, RecordStatus.INACTIVE.value}:
        raise InvalidRequestError(f"Invalid machine status: {status}")
    machine = MachineRepository(db).get(machine_id)
    if not machine:
        raise NotFoundError("Machine or tool not found")
    if machine.Status != target:
        machine.Status = target
        machine.UpdatedAt = utc_now()
        record_event(
            db,
            f"machine_{target}",
            "Machine",
            machine.MachineID,
            {"machineId": machine.MachineID, "status": target},
            actor_id=actor.UserID,
        )
    db.commit()
    return machine


def set_module_duration(db: Session, actor_id: int, module_id: int, duration_seconds: int) -> TrainingModule:
    """Correct a training video's length; progress reports never change it."""
    actor = require_right(db, actor_id, "manageMachines", "Only admins can change training modules")
    if duration_seconds is None or duration_seconds <= 0:
        raise InvalidRequestError("Duration must be a positive number of seconds")
    module = TrainingModuleRepository(db).get(module_id)
    if not module:
        raise NotFoundError("Module not found")
    if module.DurationSeconds != duration_seconds:
        previous = module.DurationSeconds
        module.DurationSeconds = duration_seconds
        module.UpdatedAt = utc_now()
        record_event(
            db,
            "training_module_duration_updated",
            "TrainingModule",
            module.ModuleID,
            {"moduleId": module.ModuleID, "previous": previous, "durationSeconds": duration_seconds},
            actor_id=actor.UserID,
        )
        LOGGER.info("Module %s duration %s -> %s", module.ModuleID, previous, duration_seconds)
    db.commit()
    return module
