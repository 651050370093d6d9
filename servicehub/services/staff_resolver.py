"""
Staff resolution for new appointments.

Every appointment needs exactly one accountable staff member. Professionals
attached to the underlying service record take priority; otherwise the
appointment falls back to the configured fallback staff member, or to the
directory's administrator when no fallback is configured.
"""

import logging
from typing import Optional

from servicehub.exceptions import NoAdminAvailableError
from servicehub.models.appointment import ServiceType
from servicehub.services.service_directory import ServiceDirectory
from servicehub.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class StaffResolver:
    """Decides which staff member a new appointment is bound to."""

    def __init__(
        self,
        service_directory: ServiceDirectory,
        user_directory: UserDirectory,
        fallback_staff_id: Optional[str] = None
    ):
        self.service_directory = service_directory
        self.user_directory = user_directory
        self.fallback_staff_id = fallback_staff_id

    async def resolve(self, service_type: ServiceType, service_id: Optional[str] = None) -> str:
        """
        Resolve the staff id for an appointment.

        Args:
            service_type: Service domain of the appointment
            service_id: Optional record id within that domain

        Returns:
            Staff user id (never empty)

        Raises:
            ReferenceNotFoundError: If service_id points at a missing record
            NoAdminAvailableError: If nothing resolved and no admin exists
        """
        service_type = ServiceType(service_type)
        staff_id = None

        if service_id and service_type != ServiceType.OTHER:
            staff_id = await self.service_directory.resolve_staff(service_type, service_id)

        if staff_id:
            return staff_id

        if self.fallback_staff_id:
            logger.info(
                f"No staff on {service_type.value}:{service_id}, "
                f"using fallback staff {self.fallback_staff_id}"
            )
            return self.fallback_staff_id

        admin_id = await self.user_directory.find_administrator()
        if not admin_id:
            logger.warning(f"Staff resolution failed for {service_type.value}: no admin user")
            raise NoAdminAvailableError()

        logger.info(f"No staff on {service_type.value}:{service_id}, assigning admin {admin_id}")
        return admin_id
