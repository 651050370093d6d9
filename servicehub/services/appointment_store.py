"""
Appointment persistence.

The store exclusively owns appointment records. Writes are guarded by a
per-record version number: callers that read-modify-write pass the version they
read, and a write against a newer record fails instead of silently overwriting
it. Reminder sent flags have their own field-scoped update so the background
scan never clobbers lifecycle changes.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from servicehub.database import Table
from servicehub.exceptions import ConcurrentModificationError, NotFoundError
from servicehub.models.appointment import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentFilter,
    AppointmentPage,
    AppointmentStatus,
    Pagination,
    Reminder,
    as_utc,
    next_reminder_at,
    utcnow,
)

logger = logging.getLogger(__name__)

# Version conflicts tolerated by mark_reminder_sent before giving up
REMINDER_UPDATE_ATTEMPTS = 5


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat()


class AppointmentStore:
    """CRUD over the appointments table."""

    def __init__(self, supabase):
        self.supabase = supabase

    def _table(self):
        return self.supabase.table(Table.APPOINTMENTS)

    async def create(self, appointment: Appointment) -> str:
        """Persist a new appointment and return its id."""
        result = await self._table().insert(appointment.to_record()).execute()
        if not result.data:
            raise RuntimeError(f"Insert of appointment {appointment.id} returned no data")

        logger.info(
            f"Appointment {appointment.id} created "
            f"(client={appointment.client}, staff={appointment.staff})"
        )
        return result.data[0]['id']

    async def get(self, appointment_id: str) -> Appointment:
        """
        Fetch an appointment.

        Raises:
            NotFoundError: If no appointment has this id
        """
        result = await self._table()\
            .select('*')\
            .eq('id', appointment_id)\
            .limit(1)\
            .execute()

        if not result.data:
            raise NotFoundError("Appointment", appointment_id)

        return Appointment.from_record(result.data[0])

    async def update(
        self,
        appointment_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Appointment:
        """
        Apply a partial update.

        Always stamps updated_at and bumps version. No field legality checks
        happen here.

        Args:
            appointment_id: Appointment to update
            fields: Column values to write (model values or plain JSON)
            expected_version: When given, the write only applies if the stored
                version still matches

        Returns:
            The updated appointment

        Raises:
            NotFoundError: If the appointment does not exist
            ConcurrentModificationError: If expected_version is stale
        """
        current = await self.get(appointment_id) if expected_version is None else None
        version = expected_version if expected_version is not None else current.version

        payload = self._serialize(fields)
        payload['updated_at'] = utcnow().isoformat()
        payload['version'] = version + 1

        result = await self._table()\
            .update(payload)\
            .eq('id', appointment_id)\
            .eq('version', version)\
            .execute()

        if not result.data:
            # Distinguish a missing record from a lost race
            await self.get(appointment_id)
            raise ConcurrentModificationError(appointment_id, version)

        return Appointment.from_record(result.data[0])

    @staticmethod
    def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = {}
        for key, value in fields.items():
            if isinstance(value, datetime):
                payload[key] = _iso(value)
            elif isinstance(value, AppointmentStatus):
                payload[key] = value.value
            elif key == 'reminders':
                reminders = [
                    r if isinstance(r, Reminder) else Reminder.model_validate(r)
                    for r in value
                ]
                payload[key] = [r.model_dump(mode='json') for r in reminders]
                upcoming = next_reminder_at(reminders)
                payload['next_reminder_at'] = upcoming.isoformat() if upcoming else None
            else:
                payload[key] = value
        return payload

    async def mark_reminder_sent(self, appointment_id: str, fire_time: datetime) -> Appointment:
        """
        Flip the sent flag of the reminder scheduled at fire_time.

        Only the reminders column is written, against the freshest copy of the
        record; concurrent lifecycle writes are re-read and retried rather
        than overwritten.
        """
        fire_time = as_utc(fire_time)

        for attempt in range(REMINDER_UPDATE_ATTEMPTS):
            appointment = await self.get(appointment_id)
            reminders = [r.model_copy() for r in appointment.reminders]

            matched = False
            for reminder in reminders:
                if reminder.fire_time == fire_time and not reminder.sent:
                    reminder.sent = True
                    matched = True
                    break

            if not matched:
                # Already sent, or the schedule was replaced since the scan
                logger.debug(
                    f"Reminder at {fire_time.isoformat()} for {appointment_id} "
                    f"no longer pending"
                )
                return appointment

            try:
                return await self.update(
                    appointment_id,
                    {'reminders': reminders},
                    expected_version=appointment.version
                )
            except ConcurrentModificationError:
                logger.info(
                    f"Version conflict marking reminder for {appointment_id}, "
                    f"retry {attempt + 1}/{REMINDER_UPDATE_ATTEMPTS}"
                )

        raise ConcurrentModificationError(appointment_id, appointment.version)

    async def list_by_filter(
        self,
        appointment_filter: AppointmentFilter,
        pagination: Optional[Pagination] = None
    ) -> AppointmentPage:
        """List appointments sorted by start time, one page at a time."""
        pagination = pagination or Pagination()
        query = self._table().select('*', count='exact')

        if appointment_filter.client:
            query = query.eq('client', appointment_filter.client)
        if appointment_filter.staff:
            query = query.eq('staff', appointment_filter.staff)
        if appointment_filter.participant:
            who = appointment_filter.participant
            query = query.or_(f"client.eq.{who},staff.eq.{who}")
        if appointment_filter.status:
            query = query.eq('status', AppointmentStatus(appointment_filter.status).value)
        if appointment_filter.service_type:
            query = query.eq('service_type', appointment_filter.service_type.value)
        if appointment_filter.start_date:
            query = query.gte('start_time', _iso(appointment_filter.start_date))
        if appointment_filter.end_date:
            query = query.lte('start_time', _iso(appointment_filter.end_date))

        query = query.order('start_time')
        if pagination.limit > 0:
            query = query.range(pagination.offset, pagination.offset + pagination.limit - 1)

        result = await query.execute()
        appointments = [Appointment.from_record(row) for row in (result.data or [])]
        total = result.count if result.count is not None else len(appointments)

        return AppointmentPage(appointments=appointments, total=total, pagination=pagination)

    async def find_due_reminders(self, now: datetime) -> List[Appointment]:
        """Active appointments with at least one unsent reminder due at or before now."""
        result = await self._table()\
            .select('*')\
            .in_('status', [s.value for s in ACTIVE_STATUSES])\
            .lte('next_reminder_at', _iso(now))\
            .order('next_reminder_at')\
            .execute()

        return [Appointment.from_record(row) for row in (result.data or [])]

    async def count_by_status(self) -> Dict[str, int]:
        counts = {}
        total = await self._table().select('id', count='exact').execute()
        counts['total'] = total.count or 0

        for status in AppointmentStatus:
            result = await self._table()\
                .select('id', count='exact')\
                .eq('status', status.value)\
                .execute()
            counts[status.value] = result.count or 0

        return counts
