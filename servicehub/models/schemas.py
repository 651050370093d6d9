"""
Pydantic request/response models for the appointments API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .appointment import (
    Appointment,
    AppointmentStatus,
    Reminder,
    ServiceType,
    UserSummary,
    as_utc,
    utcnow,
)


class RequestAppointmentBody(BaseModel):
    title: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    service_type: ServiceType
    service_id: Optional[str] = None
    location: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v):
        v = as_utc(v)
        if v <= utcnow():
            raise ValueError("Start time must be in the future")
        return v

    @field_validator("end_time")
    @classmethod
    def validate_end_time(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class UpdateAppointmentBody(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    location: Optional[str] = None
    status: Optional[AppointmentStatus] = None
    reminders: Optional[List[Reminder]] = None
    staff: Optional[str] = None

    @model_validator(mode="after")
    def validate_window(self):
        if self.start_time and self.end_time and as_utc(self.end_time) <= as_utc(self.start_time):
            raise ValueError("End time must be after start time")
        return self

    def changes(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ReassignRequest(BaseModel):
    staff_id: str = Field(..., min_length=1)


class StatusChangeRequest(BaseModel):
    # Kept as a plain string so unknown values surface as InvalidStatus
    status: str = Field(..., min_length=1)
    notes: Optional[str] = None


class AppointmentResponse(BaseModel):
    """Appointment with client and staff identities materialized."""

    id: str
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    service_type: ServiceType
    service_id: Optional[str] = None
    client: Union[UserSummary, str]
    staff: Union[UserSummary, str]
    location: Optional[str] = None
    status: AppointmentStatus
    reminders: List[Reminder]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def build(cls, appointment: Appointment, users: Dict[str, UserSummary]) -> "AppointmentResponse":
        data = appointment.model_dump(exclude={"version"})
        data["client"] = users.get(appointment.client, appointment.client)
        data["staff"] = users.get(appointment.staff, appointment.staff)
        return cls(**data)


class AppointmentListResponse(BaseModel):
    success: bool = True
    count: int
    total: int
    total_pages: int
    current_page: int
    appointments: List[AppointmentResponse]


class AppointmentStatistics(BaseModel):
    total: int
    scheduled: int
    completed: int
    cancelled: int
    rescheduled: int
