import os
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from makerspace.db.base import Base
from makerspace.models import shop_models as models


NOW = datetime(2025, 3, 5, 12, 0, 0)


def make_engine(db_url: str = "sqlite+pysqlite:///:memory:"):
    if ":memory:" in db_url:
        engine = create_engine(
            db_url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(db_url, future=True, connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(bind=engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def file_db_url(directory: str) -> str:
    return "sqlite+pysqlite:///" + os.path.join(directory, "makerspace.db")


def add_user(db, email, role="member", status="active", name=None):
    user = models.User(Email=email, Name=name or email.split("@")[0], Role=role, Status=status)
    db.add(user)
    db.commit()
    return user


def add_machine(db, name="Laser Cutter", status="active", checkout_minutes=60):
    machine = models.Machine(Name=name, Status=status, CheckoutDurationMinutes=checkout_minutes)
    db.add(machine)
    db.commit()
    return machine


def add_module(db, title="Laser Safety", duration=100, completion_percent=90, status="active"):
    module = models.TrainingModule(
        Title=title,
        DurationSeconds=duration,
        CompletionPercent=completion_percent,
        Status=status,
    )
    db.add(module)
    db.commit()
    return module


def add_requirement(db, machine, module, percent=90):
    requirement = models.MachineRequirement(
        MachineID=machine.MachineID,
        ModuleID=module.ModuleID,
        RequiredWatchPercent=percent,
    )
    db.add(requirement)
    db.commit()
    return requirement


def add_progress(db, user, module, start=0, end=None, watched_seconds=None, completed_at=None):
    ranges = [] if end is None else [{"start": start, "end": end}]
    progress = models.TrainingProgress(
        UserID=user.UserID,
        ModuleID=module.ModuleID,
        WatchedRanges=ranges,
        WatchedSeconds=watched_seconds if watched_seconds is not None else int((end or 0) - start),
        LastPosition=end or 0,
        CompletedAt=completed_at,
    )
    db.add(progress)
    db.commit()
    return progress


def add_checkout(db, user, machine, approver):
    checkout = models.ManagerCheckout(
        UserID=user.UserID,
        MachineID=machine.MachineID,
        ApprovedBy=approver.UserID,
        ApprovedAt=NOW,
    )
    db.add(checkout)
    db.commit()
    return checkout


def add_rule(db, manager, day, start_minute, end_minute, timezone="America/Los_Angeles", status="active"):
    rule = models.CheckoutAvailabilityRule(
        ManagerID=manager.UserID,
        DayOfWeek=day,
        StartMinuteOfDay=start_minute,
        EndMinuteOfDay=end_minute,
        Timezone=timezone,
        Status=status,
    )
    db.add(rule)
    db.commit()
    return rule


def add_block(db, manager, start, end, machine=None, status="active"):
    block = models.CheckoutAvailabilityBlock(
        ManagerID=manager.UserID,
        MachineID=machine.MachineID if machine else None,
        StartTime=start,
        EndTime=end,
        Status=status,
    )
    db.add(block)
    db.commit()
    return block


def add_appointment(db, user, machine, manager, start, minutes=60, status="scheduled", block=None, rule=None):
    appointment = models.CheckoutAppointment(
        UserID=user.UserID,
        MachineID=machine.MachineID,
        ManagerID=manager.UserID,
        BlockID=block.BlockID if block else None,
        RuleID=rule.RuleID if rule else None,
        StartTime=start,
        EndTime=start + timedelta(minutes=minutes),
        Status=status,
    )
    db.add(appointment)
    db.commit()
    return appointment


def add_reservation(db, user, machine, start, end, status="pending"):
    reservation = models.Reservation(
        UserID=user.UserID,
        MachineID=machine.MachineID,
        StartTime=start,
        EndTime=end,
        Status=status,
    )
    db.add(reservation)
    db.commit()
    return reservation
