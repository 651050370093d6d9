"""
Appointment lifecycle: state machine and permission gate.

All client-facing mutations go through AppointmentLifecycle. Each operation
checks, in order, that the appointment exists, that the actor may touch it,
and that the requested transition is legal; the first failing check decides
the error. Notifications are a side effect of a successful mutation and never
undo it.

State machine:
    SCHEDULED   -> COMPLETED | CANCELLED | RESCHEDULED
    RESCHEDULED -> COMPLETED | CANCELLED | RESCHEDULED
    COMPLETED   -> (terminal)
    CANCELLED   -> (terminal)
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from servicehub import config
from servicehub.exceptions import (
    AppointmentValidationError,
    ConcurrentModificationError,
    ForbiddenError,
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
)
from servicehub.models.appointment import (
    ACTIVE_STATUSES,
    Actor,
    Appointment,
    AppointmentFilter,
    AppointmentPage,
    AppointmentStatus,
    Pagination,
    ServiceType,
    TERMINAL_STATUSES,
    UserSummary,
    as_utc,
    build_reminder_schedule,
    utcnow,
)
from servicehub.services.appointment_store import AppointmentStore
from servicehub.services.notification_templates import NotificationKind
from servicehub.services.notifier import Notifier
from servicehub.services.staff_resolver import StaffResolver
from servicehub.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

# Fields any permitted editor may set through update_details
EDITABLE_FIELDS = frozenset({
    'title', 'description', 'start_time', 'end_time', 'location', 'status', 'reminders'
})

# Administrators may additionally reassign through the generic update
ADMIN_EDITABLE_FIELDS = EDITABLE_FIELDS | {'staff'}

CANCELLATION_NOTE = "\n\nCancellation reason: {}"
STATUS_NOTE = "\n\nStatus change notes: {}"


def parse_status(value: Any) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise InvalidStatusError(str(value), [s.value for s in AppointmentStatus])


class AppointmentLifecycle:
    """Operations clients invoke on appointments."""

    def __init__(
        self,
        store: AppointmentStore,
        staff_resolver: StaffResolver,
        user_directory: UserDirectory,
        notifier: Notifier,
        mutation_attempts: int = config.STATE_MUTATION_ATTEMPTS
    ):
        self.store = store
        self.staff_resolver = staff_resolver
        self.user_directory = user_directory
        self.notifier = notifier
        self.mutation_attempts = max(mutation_attempts, 1)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _notify(
        self,
        kind: NotificationKind,
        recipient: Optional[UserSummary],
        appointment: Appointment,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        try:
            sent = await self.notifier.send(kind, recipient, appointment, context or {})
        except Exception as e:
            logger.error(
                f"Notification {kind.value} for appointment {appointment.id} failed: {e}",
                exc_info=True
            )
            return False

        if not sent:
            logger.warning(f"Notification {kind.value} for appointment {appointment.id} not queued")
        return sent

    async def _notify_parties(
        self,
        appointments: List[Appointment],
        deliver: Callable[[Dict[str, UserSummary]], Awaitable[None]]
    ) -> None:
        """Look up client and staff, then hand them to deliver(). Never raises."""
        try:
            users = await self.identities(appointments)
        except Exception as e:
            logger.error(
                f"Recipient lookup for appointment {appointments[0].id} failed, "
                f"notifications skipped: {e}",
                exc_info=True
            )
            return

        await deliver(users)

    async def _mutate(
        self,
        appointment_id: str,
        plan: Callable[[Appointment], Dict[str, Any]]
    ) -> Tuple[Appointment, Appointment]:
        """
        Read, plan and write an appointment under its version guard.

        plan() runs against the freshest copy and raises to abort; on a
        version conflict the whole read-plan-write cycle is repeated.

        Returns:
            Tuple of (appointment before, appointment after)
        """
        for attempt in range(self.mutation_attempts):
            current = await self.store.get(appointment_id)
            fields = plan(current)
            try:
                updated = await self.store.update(
                    appointment_id, fields, expected_version=current.version
                )
                return current, updated
            except ConcurrentModificationError:
                if attempt + 1 >= self.mutation_attempts:
                    raise
                logger.info(
                    f"Appointment {appointment_id} changed underneath us, "
                    f"retry {attempt + 1}/{self.mutation_attempts}"
                )

        raise RuntimeError("unreachable")

    async def identities(self, appointments: Iterable[Appointment]) -> Dict[str, UserSummary]:
        """Client and staff identities for a batch of appointments."""
        ids = set()
        for appointment in appointments:
            ids.add(appointment.client)
            ids.add(appointment.staff)
        return await self.user_directory.get_many(ids)

    @staticmethod
    def _can_view(appointment: Appointment, actor: Actor) -> bool:
        return (
            actor.is_admin
            or appointment.client == actor.identity
            or appointment.staff == actor.identity
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, appointment_id: str, actor: Actor) -> Appointment:
        """Fetch one appointment visible to the client, its staff, or an admin."""
        appointment = await self.store.get(appointment_id)
        if not self._can_view(appointment, actor):
            raise ForbiddenError("You do not have permission to view this appointment")
        return appointment

    async def list_appointments(
        self,
        actor: Actor,
        appointment_filter: Optional[AppointmentFilter] = None,
        pagination: Optional[Pagination] = None
    ) -> AppointmentPage:
        """
        List appointments in the actor's default scope.

        Ordinary users see appointments they requested, staff roles see those
        assigned to them or requested by them, administrators see everything.
        """
        scope = {'client': None, 'staff': None, 'participant': None}
        if actor.is_staff_role:
            scope['participant'] = actor.identity
        elif not actor.is_admin:
            scope['client'] = actor.identity

        scoped = replace(appointment_filter or AppointmentFilter(), **scope)
        return await self.store.list_by_filter(scoped, pagination)

    async def list_for_user(
        self,
        actor: Actor,
        status: Optional[AppointmentStatus] = None,
        service_type: Optional[ServiceType] = None,
        include_past: bool = False
    ) -> List[Appointment]:
        """Appointments where the actor is client or staff; upcoming only by default."""
        appointment_filter = AppointmentFilter(
            status=status,
            service_type=service_type,
            participant=actor.identity,
            start_date=None if include_past else utcnow(),
        )
        page = await self.store.list_by_filter(appointment_filter, Pagination(limit=0))
        return page.appointments

    async def list_for_staff(
        self,
        actor: Actor,
        status: Optional[AppointmentStatus] = None,
        service_type: Optional[ServiceType] = None,
        include_past: bool = False
    ) -> List[Appointment]:
        """Appointments assigned to the actor; staff roles and administrators only."""
        if not (actor.is_staff_role or actor.is_admin):
            raise ForbiddenError("Only staff members can list assigned appointments")

        appointment_filter = AppointmentFilter(
            status=status,
            service_type=service_type,
            staff=actor.identity,
            start_date=None if include_past else utcnow(),
        )
        page = await self.store.list_by_filter(appointment_filter, Pagination(limit=0))
        return page.appointments

    async def statistics(self, actor: Actor) -> Dict[str, int]:
        if not actor.is_admin:
            raise ForbiddenError("Only admin can view appointment statistics")
        return await self.store.count_by_status()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def request(
        self,
        actor: Actor,
        title: str,
        start_time: datetime,
        end_time: datetime,
        service_type: ServiceType,
        service_id: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None
    ) -> Appointment:
        """
        Create an appointment for the calling client.

        The staff member is resolved from the referenced service record, and
        reminders are scheduled 24 hours and 1 hour before start_time.

        Raises:
            AppointmentValidationError: If end_time is not after start_time
            ReferenceNotFoundError: If service_id points at a missing record
            NoAdminAvailableError: If no staff member could be resolved
        """
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if end_time <= start_time:
            raise AppointmentValidationError("End time must be after start time")

        service_type = ServiceType(service_type)
        if service_type == ServiceType.OTHER:
            service_id = None

        staff_id = await self.staff_resolver.resolve(service_type, service_id)

        now = utcnow()
        appointment = Appointment(
            id=str(uuid.uuid4()),
            title=title,
            description=description or "",
            start_time=start_time,
            end_time=end_time,
            service_type=service_type,
            service_id=service_id,
            client=actor.identity,
            staff=staff_id,
            location=location,
            status=AppointmentStatus.SCHEDULED,
            reminders=build_reminder_schedule(start_time),
            created_at=now,
            updated_at=now,
        )
        await self.store.create(appointment)

        async def deliver(users: Dict[str, UserSummary]) -> None:
            client = users.get(appointment.client)
            await self._notify(NotificationKind.APPOINTMENT_CONFIRMATION, client, appointment)
            await self._notify(
                NotificationKind.STAFF_NEW_APPOINTMENT,
                users.get(appointment.staff),
                appointment,
                {'client': client}
            )

        await self._notify_parties([appointment], deliver)
        return appointment

    async def update_details(
        self,
        appointment_id: str,
        fields: Dict[str, Any],
        actor: Actor
    ) -> Appointment:
        """
        Generic update.

        Allowed for the assigned staff member and administrators at any time,
        and for the client while the appointment is still SCHEDULED. Fields
        outside the editable set are ignored. Moving start_time re-plans the
        reminder schedule unless reminders are supplied explicitly.
        """
        staff_target = fields.get('staff') if actor.is_admin else None
        if staff_target:
            # Checked up front so the existence lookup is not repeated per retry
            staff_exists = await self.user_directory.exists(staff_target)
        else:
            staff_exists = True

        def plan(current: Appointment) -> Dict[str, Any]:
            is_staff = current.staff == actor.identity
            is_client = current.client == actor.identity
            client_may_edit = is_client and current.status == AppointmentStatus.SCHEDULED

            if not (actor.is_admin or is_staff or client_may_edit):
                raise ForbiddenError("You do not have permission to update this appointment")

            allowed = ADMIN_EDITABLE_FIELDS if actor.is_admin else EDITABLE_FIELDS
            changes = {k: v for k, v in fields.items() if k in allowed}
            dropped = set(fields) - set(changes)
            if dropped:
                logger.debug(f"Ignoring non-editable fields on {current.id}: {sorted(dropped)}")

            if 'staff' in changes and not staff_exists:
                raise NotFoundError("Staff user", changes['staff'], "Staff user not found")

            if 'status' in changes:
                new_status = parse_status(changes['status'])
                if current.status in TERMINAL_STATUSES and new_status != current.status:
                    raise InvalidTransitionError(
                        current.status.value,
                        f"Cannot change status from {current.status.value}"
                    )
                changes['status'] = new_status

            try:
                merged = Appointment.model_validate({**current.model_dump(), **changes})
            except ValidationError as e:
                raise AppointmentValidationError(f"Invalid appointment update: {e.errors()[0]['msg']}")

            if merged.end_time <= merged.start_time:
                raise AppointmentValidationError("End time must be after start time")

            updates = {key: getattr(merged, key) for key in changes}
            if 'start_time' in changes and 'reminders' not in changes \
                    and merged.start_time != current.start_time:
                updates['reminders'] = build_reminder_schedule(merged.start_time)
            return updates

        previous, updated = await self._mutate(appointment_id, plan)

        if previous.status != updated.status:
            async def deliver(users: Dict[str, UserSummary]) -> None:
                await self._notify(
                    NotificationKind.STATUS_CHANGE,
                    users.get(updated.client),
                    updated,
                    {'previous_status': previous.status}
                )

            await self._notify_parties([updated], deliver)

        logger.info(f"Appointment {appointment_id} updated by {actor.identity}")
        return updated

    async def cancel(
        self,
        appointment_id: str,
        actor: Actor,
        reason: Optional[str] = None
    ) -> Appointment:
        """
        Cancel an active appointment.

        The client, the assigned staff member or an administrator may cancel.
        The reason, if any, is appended to the description. Whichever of client
        and staff did not cancel is notified.
        """
        def plan(current: Appointment) -> Dict[str, Any]:
            if not self._can_view(current, actor):
                raise ForbiddenError("You do not have permission to cancel this appointment")
            if current.status not in ACTIVE_STATUSES:
                raise InvalidTransitionError(
                    current.status.value,
                    f"Cannot cancel appointment in {current.status.value} status"
                )
            changes = {'status': AppointmentStatus.CANCELLED}
            if reason:
                changes['description'] = current.description + CANCELLATION_NOTE.format(reason)
            return changes

        previous, updated = await self._mutate(appointment_id, plan)
        logger.info(f"Appointment {appointment_id} cancelled by {actor.identity}")

        async def deliver(users: Dict[str, UserSummary]) -> None:
            client = users.get(updated.client)
            if actor.identity != updated.client:
                await self._notify(
                    NotificationKind.STATUS_CHANGE,
                    client,
                    updated,
                    {'previous_status': previous.status}
                )
            if actor.identity != updated.staff:
                await self._notify(
                    NotificationKind.STAFF_APPOINTMENT_CANCELLED,
                    users.get(updated.staff),
                    updated,
                    {'reason': reason, 'client': client}
                )

        await self._notify_parties([updated], deliver)
        return updated

    async def reassign(self, appointment_id: str, new_staff_id: str, actor: Actor) -> Appointment:
        """
        Hand an appointment to a different staff member (administrators only).

        Reassigning to the current staff member is accepted; it refreshes
        updated_at and re-notifies the staff member and client.
        """
        await self.store.get(appointment_id)
        if not actor.is_admin:
            raise ForbiddenError("Only admin can reassign appointments")
        if not await self.user_directory.exists(new_staff_id):
            raise NotFoundError("Staff user", new_staff_id, "Staff user not found")

        previous, updated = await self._mutate(appointment_id, lambda current: {'staff': new_staff_id})
        logger.info(
            f"Appointment {appointment_id} reassigned from {previous.staff} "
            f"to {new_staff_id} by {actor.identity}"
        )

        async def deliver(users: Dict[str, UserSummary]) -> None:
            new_staff = users.get(updated.staff)
            client = users.get(updated.client)

            await self._notify(
                NotificationKind.STAFF_NEW_APPOINTMENT, new_staff, updated, {'client': client}
            )
            if previous.staff != updated.staff:
                await self._notify(
                    NotificationKind.STAFF_APPOINTMENT_REASSIGNED,
                    users.get(previous.staff),
                    updated,
                    {'client': client, 'new_staff': new_staff}
                )
            await self._notify(
                NotificationKind.CLIENT_APPOINTMENT_REASSIGNED,
                client,
                updated,
                {'new_staff': new_staff}
            )

        await self._notify_parties([previous, updated], deliver)
        return updated

    async def change_status(
        self,
        appointment_id: str,
        status: Any,
        actor: Actor,
        notes: Optional[str] = None
    ) -> Appointment:
        """
        Move an appointment to a new status (assigned staff or administrators).

        COMPLETED and CANCELLED are terminal: any change requested from them,
        including to the same status again, is rejected.
        """
        new_status = parse_status(status)

        def plan(current: Appointment) -> Dict[str, Any]:
            if not (actor.is_admin or current.staff == actor.identity):
                raise ForbiddenError(
                    "You do not have permission to change this appointment status"
                )
            if current.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    current.status.value,
                    f"Cannot change status from {current.status.value}"
                )
            changes = {'status': new_status}
            if notes:
                changes['description'] = current.description + STATUS_NOTE.format(notes)
            return changes

        previous, updated = await self._mutate(appointment_id, plan)
        logger.info(
            f"Appointment {appointment_id} status {previous.status.value} -> "
            f"{updated.status.value} by {actor.identity}"
        )

        async def deliver(users: Dict[str, UserSummary]) -> None:
            await self._notify(
                NotificationKind.STATUS_CHANGE,
                users.get(updated.client),
                updated,
                {'previous_status': previous.status, 'notes': notes}
            )

        await self._notify_parties([updated], deliver)
        return updated
