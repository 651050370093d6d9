"""
Custom exceptions for the appointment backend.

Every error carries the HTTP status the API layer answers with.
"""


class AppointmentError(Exception):
    """Base class for appointment lifecycle errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(AppointmentError):
    """Raised when an appointment or referenced user does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str = None, message: str = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message or f"{entity} not found")


class ReferenceNotFoundError(NotFoundError):
    """Raised when an appointment references a missing service record."""

    def __init__(self, service_type: str, service_id: str, label: str = None):
        self.service_type = service_type
        self.service_id = service_id
        super().__init__(
            label or "Service record",
            service_id,
            message=f"{label or 'Service record'} not found",
        )


class NoAdminAvailableError(AppointmentError):
    """Raised when no staff member can be resolved and no admin exists."""

    status_code = 404

    def __init__(self):
        super().__init__("No admin user found to assign appointment")


class ForbiddenError(AppointmentError):
    """Raised when the actor lacks the role or ownership for an action."""

    status_code = 403


class InvalidTransitionError(AppointmentError):
    """Raised when a status change violates the appointment state machine."""

    def __init__(self, current_status: str, message: str = None):
        self.current_status = current_status
        super().__init__(message or f"Cannot change appointment in {current_status} status")


class InvalidStatusError(AppointmentError):
    """Raised for a status value outside the known set."""

    def __init__(self, status: str, valid: list):
        self.status = status
        super().__init__(f"Invalid status. Must be one of: {', '.join(valid)}")


class AppointmentValidationError(AppointmentError):
    """Raised when appointment input is malformed."""

    status_code = 422


class ConcurrentModificationError(AppointmentError):
    """Raised when a write loses an optimistic version check."""

    status_code = 409

    def __init__(self, appointment_id: str, expected_version: int):
        self.appointment_id = appointment_id
        self.expected_version = expected_version
        super().__init__(
            f"Appointment {appointment_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
