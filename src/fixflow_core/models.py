"""SQLAlchemy database models."""
from datetime import datetime, timezone
from uuid import uuid4
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    Date,
    ForeignKey,
    Enum,
    CheckConstraint,
    Boolean,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all columns store UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class UserRole(str, enum.Enum):
    """Role of an actor in the maintenance workflow."""

    REQUESTER = "requester"
    TECHNICIAN = "technician"
    ADMIN = "admin"


class RequestStatus(str, enum.Enum):
    """Lifecycle status of a maintenance request.

    pending -> assigned -> accepted -> in_progress <-> on_hold -> completed

    Side branches:
    - rejected: technician declined the assignment; assignable again
    - cancelled: requester withdrew the request (soft-deleted, terminal)
    """

    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RequestAction(str, enum.Enum):
    """Named actions that drive a request through its lifecycle."""

    CREATE = "create"
    ASSIGN = "assign"
    ACCEPT = "accept"
    REJECT = "reject"
    START = "start"
    HOLD = "hold"
    RESUME = "resume"
    COMPLETE = "complete"
    CANCEL = "cancel"
    UPDATE = "update"


class Priority(str, enum.Enum):
    """Request urgency."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class User(Base):
    """Any person interacting with the system (requester, technician or admin)."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    role = Column(
        Enum(UserRole, values_callable=_enum_values, name="userrole"),
        nullable=False,
        default=UserRole.REQUESTER,
        index=True,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    technician_profile = relationship("Technician", back_populates="user", uselist=False)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role.value if self.role else None})>"


class Technician(Base):
    """Technician profile attached to a user account."""

    __tablename__ = "technicians"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    specialty = Column(String(100), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="technician_profile")

    def __repr__(self) -> str:
        return f"<Technician {self.id} user={self.user_id}>"


class Category(Base):
    """Repair category (plumbing, electrical, ...)."""

    __tablename__ = "categories"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False)
    name_th = Column(String(100), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    @property
    def label(self) -> str:
        return self.name_th or self.name


class Location(Base):
    """Physical place where the repair is needed."""

    __tablename__ = "locations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    building = Column(String(100), nullable=False)
    floor = Column(String(20), nullable=True)
    room = Column(String(50), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    @property
    def label(self) -> str:
        """Human-readable location, omitting missing parts."""
        parts = [self.building]
        if self.floor:
            parts.append(f"Floor {self.floor}")
        if self.room:
            parts.append(f"Room {self.room}")
        return " ".join(parts)


class Request(Base):
    """
    Maintenance request under lifecycle control.

    ``status`` is the single source of truth for workflow position. The
    timestamp columns and ``technician_id`` are only written by the
    transitions that own them (see ``state_machine.TRANSITIONS``).
    """

    __tablename__ = "requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    request_number = Column(String(20), nullable=False, unique=True, index=True)  # REQ-YYYYMMDD-NNNN

    status = Column(
        Enum(RequestStatus, values_callable=_enum_values, name="requeststatus"),
        nullable=False,
        default=RequestStatus.PENDING,
        index=True,
    )

    # Actors
    requester_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    technician_id = Column(Uuid, ForeignKey("technicians.id", ondelete="SET NULL"), nullable=True, index=True)

    # Description
    category_id = Column(Uuid, ForeignKey("categories.id"), nullable=False)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(
        Enum(Priority, values_callable=_enum_values, name="priority"),
        nullable=False,
        default=Priority.NORMAL,
    )
    preferred_date = Column(Date, nullable=True)
    preferred_time = Column(String(50), nullable=True)

    # Lifecycle timestamps
    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)  # soft delete, set only by cancel

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    requester = relationship("User", foreign_keys=[requester_id])
    technician = relationship("Technician")
    category = relationship("Category")
    location = relationship("Location")

    def __repr__(self) -> str:
        return f"<Request {self.request_number}: {self.status.value if self.status else None}>"


class RequestLog(Base):
    """
    Append-only audit entry, one per committed transition.

    Rows are never updated or deleted; replaying them in
    (created_at, id) order reconstructs a request's full history.
    """

    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Uuid, ForeignKey("requests.id", ondelete="RESTRICT"), nullable=False, index=True)
    action = Column(
        Enum(RequestAction, values_callable=_enum_values, name="requestaction"),
        nullable=False,
    )
    old_status = Column(
        Enum(RequestStatus, values_callable=_enum_values, name="requeststatus"),
        nullable=True,
    )
    new_status = Column(
        Enum(RequestStatus, values_callable=_enum_values, name="requeststatus"),
        nullable=False,
    )
    note = Column(Text, nullable=True)
    actor_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    actor = relationship("User")

    def __repr__(self) -> str:
        return f"<RequestLog {self.request_id}: {self.action.value} at {self.created_at}>"


class RequestSequence(Base):
    """
    Per-day counter for request numbers.

    One row per ``REQ-YYYYMMDD-`` prefix. Incrementing ``last_value`` with a
    single UPDATE serializes concurrent allocations on the row lock.
    """

    __tablename__ = "request_sequences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prefix = Column(String(20), nullable=False)
    last_value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("prefix", name="uq_request_sequences_prefix"),
        CheckConstraint("last_value >= 0", name="chk_last_value_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<RequestSequence {self.prefix} last={self.last_value}>"


class Notification(Base):
    """In-app notification addressed to a single user."""

    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    request_id = Column(Uuid, ForeignKey("requests.id", ondelete="CASCADE"), nullable=True)
    type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String(500), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<Notification {self.type} -> {self.user_id}>"
