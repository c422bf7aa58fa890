import enum

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from makerspace.db.base import Base


class RecordStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class UserRole(str, enum.Enum):
    MEMBER = "member"
    MANAGER = "manager"
    ADMIN = "admin"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    Name = Column(String(255))
    Role = Column(String(20), nullable=False, default=UserRole.MEMBER.value)
    Status = Column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class Machine(Base):
    __tablename__ = "Machines"

    MachineID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Description = Column(String(1000))
    Status = Column(String(20), nullable=False, default=RecordStatus.ACTIVE.value)
    CheckoutDurationMinutes = Column(Integer, nullable=False, default=60)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Requirements = relationship("MachineRequirement", back_populates="Machine", cascade="all, delete-orphan")


class TrainingModule(Base):
    __tablename__ = "TrainingModules"

    ModuleID = Column(Integer, primary_key=True)
    Title = Column(String(255), nullable=False)
    Description = Column(String(1000))
    VideoID = Column(String(20))
    DurationSeconds = Column(Integer, nullable=False)
    CompletionPercent = Column(Integer, nullable=False, default=90)
    Status = Column(String(20), nullable=False, default=RecordStatus.ACTIVE.value)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class MachineRequirement(Base):
    __tablename__ = "MachineRequirements"
    __table_args__ = (UniqueConstraint("MachineID", "ModuleID", name="uq_machine_module"),)

    RequirementID = Column(Integer, primary_key=True)
    MachineID = Column(Integer, ForeignKey("Machines.MachineID"), nullable=False)
    ModuleID = Column(Integer, ForeignKey("TrainingModules.ModuleID"), nullable=False)
    RequiredWatchPercent = Column(Integer, nullable=False, default=90)
    CreatedAt = Column(DateTime, server_default=func.now())

    Machine = relationship("Machine", back_populates="Requirements")
    Module = relationship("TrainingModule")


class TrainingProgress(Base):
    __tablename__ = "TrainingProgress"
    __table_args__ = (UniqueConstraint("UserID", "ModuleID", name="uq_user_module"),)

    ProgressID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    ModuleID = Column(Integer, ForeignKey("TrainingModules.ModuleID"), nullable=False)
    WatchedSeconds = Column(Integer, nullable=False, default=0)
    WatchedRanges = Column(JSON)
    LastPosition = Column(Float, nullable=False, default=0)
    CompletedAt = Column(DateTime)
    UpdatedAt = Column(DateTime, server_default=func.now())


class ManagerCheckout(Base):
    __tablename__ = "ManagerCheckouts"
    __table_args__ = (UniqueConstraint("UserID", "MachineID", name="uq_checkout_user_machine"),)

    CheckoutID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    MachineID = Column(Integer, ForeignKey("Machines.MachineID"), nullable=False)
    ApprovedBy = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    ApprovedAt = Column(DateTime, nullable=False)
    Notes = Column(String(1000))

    Machine = relationship("Machine")


class Reservation(Base):
    __tablename__ = "Reservations"

    ReservationID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    MachineID = Column(Integer, ForeignKey("Machines.MachineID"), nullable=False, index=True)
    StartTime = Column(DateTime, nullable=False)
    EndTime = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default=ReservationStatus.PENDING.value)
    ReviewedBy = Column(Integer, ForeignKey("Users.UserID"))
    ReviewedAt = Column(DateTime)
    ReviewNotes = Column(String(1000))
    DecisionReason = Column(String(1000))
    # Passthrough fields from the former external calendar integration.
    ExternalBookingID = Column(String(100))
    ExternalBookingUID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Machine = relationship("Machine")


class CheckoutAvailabilityBlock(Base):
    __tablename__ = "CheckoutAvailabilityBlocks"

    BlockID = Column(Integer, primary_key=True)
    MachineID = Column(Integer, ForeignKey("Machines.MachineID"))
    ManagerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    StartTime = Column(DateTime, nullable=False)
    EndTime = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default=RecordStatus.ACTIVE.value)
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class CheckoutAvailabilityRule(Base):
    __tablename__ = "CheckoutAvailabilityRules"

    RuleID = Column(Integer, primary_key=True)
    ManagerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    DayOfWeek = Column(Integer, nullable=False)
    StartMinuteOfDay = Column(Integer, nullable=False)
    EndMinuteOfDay = Column(Integer, nullable=False)
    Timezone = Column(String(64), nullable=False)
    Status = Column(String(20), nullable=False, default=RecordStatus.ACTIVE.value)
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class CheckoutAppointment(Base):
    __tablename__ = "CheckoutAppointments"

    AppointmentID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    MachineID = Column(Integer, ForeignKey("Machines.MachineID"), nullable=False, index=True)
    ManagerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    BlockID = Column(Integer, ForeignKey("CheckoutAvailabilityBlocks.BlockID"))
    RuleID = Column(Integer, ForeignKey("CheckoutAvailabilityRules.RuleID"))
    StartTime = Column(DateTime, nullable=False)
    EndTime = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    Notes = Column(String(1000))
    CancellationReason = Column(String(1000))
    Result = Column(String(10))
    ResultedBy = Column(Integer, ForeignKey("Users.UserID"))
    ResultedAt = Column(DateTime)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Machine = relationship("Machine")


class AppSetting(Base):
    __tablename__ = "AppSettings"

    Key = Column(String(100), primary_key=True)
    Value = Column(String(1000), nullable=False)
    UpdatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
