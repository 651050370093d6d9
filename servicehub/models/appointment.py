"""
Appointment domain model.

An appointment binds a client to exactly one accountable staff member, optionally
references a record in one of the service catalogs, and carries its own reminder
schedule as embedded sub-records.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ServiceType(str, Enum):
    """Service domain an appointment may reference."""
    REAL_ESTATE = "REAL_ESTATE"
    INSURANCE = "INSURANCE"
    VISA = "VISA"
    TAX = "TAX"
    OTHER = "OTHER"


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    AGENT = "AGENT"
    SUPPORT = "SUPPORT"


STAFF_ROLES = frozenset({Role.AGENT, Role.SUPPORT})

# Statuses an appointment can still be cancelled from and reminded about
ACTIVE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.RESCHEDULED)

# No status change is accepted out of these
TERMINAL_STATUSES = (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)

# Reminders fire 1 day and 1 hour before the appointment starts
REMINDER_OFFSETS = (timedelta(hours=24), timedelta(hours=1))


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so stored and computed times compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reminder(BaseModel):
    """A one-time notification at a fixed offset before the start time."""

    fire_time: datetime
    sent: bool = False

    @field_validator("fire_time")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    def is_due(self, now: datetime) -> bool:
        return not self.sent and self.fire_time <= now


def build_reminder_schedule(start_time: datetime) -> List[Reminder]:
    """Two unsent reminders, 24h and 1h before start_time."""
    start_time = as_utc(start_time)
    return [Reminder(fire_time=start_time - offset) for offset in REMINDER_OFFSETS]


def next_reminder_at(reminders: List[Reminder]) -> Optional[datetime]:
    """Earliest fire time among unsent reminders, None when all are sent."""
    pending = [r.fire_time for r in reminders if not r.sent]
    return min(pending) if pending else None


def lead_time_label(start_time: datetime, fire_time: datetime) -> str:
    """
    Human-readable lead time of a reminder.

    Bucketed on the distance between the reminder and the appointment start:
    at least a day reads "1 day", at least an hour reads "1 hour", anything
    shorter reads "soon".
    """
    lead = as_utc(start_time) - as_utc(fire_time)
    if lead >= timedelta(hours=24):
        return "1 day"
    if lead >= timedelta(hours=1):
        return "1 hour"
    return "soon"


class Appointment(BaseModel):
    """Appointment record as owned by the AppointmentStore."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    service_type: ServiceType
    service_id: Optional[str] = None
    client: str
    staff: str
    location: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    reminders: List[Reminder] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description_text(cls, v):
        return v or ""

    def due_reminders(self, now: datetime) -> List[Reminder]:
        now = as_utc(now)
        return [r for r in self.reminders if r.is_due(now)]

    def to_record(self) -> Dict[str, Any]:
        """Serialize for the document store, including derived scan columns."""
        record = self.model_dump(mode="json")
        upcoming = next_reminder_at(self.reminders)
        record["next_reminder_at"] = upcoming.isoformat() if upcoming else None
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Appointment":
        return cls.model_validate(record)


class UserSummary(BaseModel):
    """Public identity of a user as materialized into appointment responses."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[Role] = None


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a lifecycle operation."""
    identity: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_staff_role(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass
class AppointmentFilter:
    """Listing filter; None means unconstrained."""
    status: Optional[AppointmentStatus] = None
    service_type: Optional[ServiceType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    client: Optional[str] = None
    staff: Optional[str] = None
    # Matches appointments where this user is either client or staff
    participant: Optional[str] = None


@dataclass
class Pagination:
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.limit


@dataclass
class AppointmentPage:
    appointments: List[Appointment]
    total: int
    pagination: Pagination

    @property
    def total_pages(self) -> int:
        if self.pagination.limit <= 0:
            return 0
        return -(-self.total // self.pagination.limit)
