from .appointment import (
    Actor,
    ACTIVE_STATUSES,
    STAFF_ROLES,
    Appointment,
    AppointmentFilter,
    AppointmentPage,
    AppointmentStatus,
    Pagination,
    Reminder,
    Role,
    ServiceType,
    UserSummary,
    build_reminder_schedule,
    lead_time_label,
)

__all__ = [
    "Actor",
    "ACTIVE_STATUSES",
    "STAFF_ROLES",
    "Appointment",
    "AppointmentFilter",
    "AppointmentPage",
    "AppointmentStatus",
    "Pagination",
    "Reminder",
    "Role",
    "ServiceType",
    "UserSummary",
    "build_reminder_schedule",
    "lead_time_label",
]
