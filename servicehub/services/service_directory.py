"""
Service catalog lookups used for staff resolution.

Each service domain (real estate, insurance, visa, tax) keeps its own table.
The directory only ever asks one question of them: who is currently
responsible for this record. Domains are registered as ServiceCatalog entries
keyed by service type, so adding a domain does not touch the resolver.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from servicehub.database import Table
from servicehub.exceptions import ReferenceNotFoundError
from servicehub.models.appointment import ServiceType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceCatalog:
    """
    Where a service domain lives and which columns name its staff.

    Attributes:
        service_type: Domain tag this catalog answers for
        table: Table holding the domain records
        label: Human-readable record name used in error messages
        staff_fields: Columns checked in priority order; first non-empty wins
    """
    service_type: ServiceType
    table: str
    label: str
    staff_fields: Tuple[str, ...]

    def staff_of(self, record: Dict) -> Optional[str]:
        for field in self.staff_fields:
            value = record.get(field)
            if value:
                return str(value)
        return None


DEFAULT_CATALOGS = (
    # Agent first, the property owner otherwise
    ServiceCatalog(ServiceType.REAL_ESTATE, Table.PROPERTIES, "Property", ("agent", "owner")),
    ServiceCatalog(ServiceType.INSURANCE, Table.INSURANCE_POLICIES, "Insurance policy", ("agent",)),
    ServiceCatalog(ServiceType.VISA, Table.VISA_APPLICATIONS, "Visa application", ("agent",)),
    ServiceCatalog(ServiceType.TAX, Table.TAX_CASES, "Tax case", ("tax_professional",)),
)


class ServiceDirectory:
    """Resolves the staff member responsible for a service record."""

    def __init__(self, supabase, catalogs=DEFAULT_CATALOGS):
        self.supabase = supabase
        self._catalogs: Dict[ServiceType, ServiceCatalog] = {}
        for catalog in catalogs:
            self.register(catalog)

    def register(self, catalog: ServiceCatalog) -> None:
        self._catalogs[catalog.service_type] = catalog

    def catalog_for(self, service_type: ServiceType) -> Optional[ServiceCatalog]:
        return self._catalogs.get(ServiceType(service_type))

    async def resolve_staff(self, service_type: ServiceType, service_id: str) -> Optional[str]:
        """
        Look up the staff currently assigned to a service record.

        Args:
            service_type: Domain of the record
            service_id: Record identifier within that domain

        Returns:
            Staff user id, or None when the record has nobody assigned or the
            domain has no catalog (e.g. OTHER)

        Raises:
            ReferenceNotFoundError: If the referenced record does not exist
        """
        catalog = self.catalog_for(service_type)
        if catalog is None:
            return None

        result = await self.supabase.table(catalog.table)\
            .select('*')\
            .eq('id', service_id)\
            .limit(1)\
            .execute()

        if not result.data:
            logger.info(f"{catalog.label} {service_id} not found for staff resolution")
            raise ReferenceNotFoundError(catalog.service_type.value, service_id, catalog.label)

        staff_id = catalog.staff_of(result.data[0])
        logger.debug(f"{catalog.label} {service_id} resolved to staff {staff_id}")
        return staff_id
