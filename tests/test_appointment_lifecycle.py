"""
Tests for the appointment lifecycle: state machine, permissions, notifications
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from servicehub.database import Table
from servicehub.exceptions import (
    AppointmentValidationError,
    ConcurrentModificationError,
    ForbiddenError,
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    ReferenceNotFoundError,
)
from servicehub.models.appointment import (
    Actor,
    AppointmentFilter,
    AppointmentStatus,
    Pagination,
    Role,
    ServiceType,
    utcnow,
)
from servicehub.services.notification_templates import NotificationKind

from .fixtures import (
    ADMIN_ID,
    CLIENT_ID,
    OTHER_CLIENT_ID,
    STAFF_A,
    STAFF_B,
    VISA_AGENT_ID,
    seed_appointment,
    sent_notifications,
)


def _window(days=3):
    start = utcnow() + timedelta(days=days)
    return start, start + timedelta(hours=1)


class TestRequest:

    async def test_visa_request_binds_agent_and_schedules_reminders(
        self, lifecycle, notifier, client_actor
    ):
        start, end = _window()

        appointment = await lifecycle.request(
            client_actor, 'Visa consultation', start, end, ServiceType.VISA, 'visa-1'
        )

        assert appointment.staff == VISA_AGENT_ID
        assert appointment.client == CLIENT_ID
        assert appointment.status == AppointmentStatus.SCHEDULED
        assert [r.fire_time for r in appointment.reminders] == [
            start - timedelta(hours=24),
            start - timedelta(hours=1),
        ]
        assert not any(r.sent for r in appointment.reminders)
        assert sent_notifications(notifier) == [
            (NotificationKind.APPOINTMENT_CONFIRMATION, CLIENT_ID),
            (NotificationKind.STAFF_NEW_APPOINTMENT, VISA_AGENT_ID),
        ]

    async def test_request_is_persisted(self, lifecycle, store, client_actor):
        start, end = _window()

        appointment = await lifecycle.request(
            client_actor, 'Tax review', start, end, ServiceType.TAX, 'tax-1',
            description='Annual filing', location='Office 4'
        )

        stored = await store.get(appointment.id)
        assert stored.description == 'Annual filing'
        assert stored.location == 'Office 4'
        assert stored.version == 1

    async def test_other_request_goes_to_admin_without_service_id(self, lifecycle, client_actor):
        start, end = _window()

        appointment = await lifecycle.request(
            client_actor, 'General question', start, end, ServiceType.OTHER, 'ignored'
        )

        assert appointment.staff == ADMIN_ID
        assert appointment.service_id is None

    async def test_end_before_start_rejected(self, lifecycle, notifier, client_actor):
        start, _ = _window()

        with pytest.raises(AppointmentValidationError):
            await lifecycle.request(client_actor, 'Bad window', start, start, ServiceType.OTHER)

        notifier.send.assert_not_called()

    async def test_missing_service_record_rejected(self, lifecycle, db, client_actor):
        start, end = _window()

        with pytest.raises(ReferenceNotFoundError):
            await lifecycle.request(client_actor, 'Viewing', start, end, ServiceType.REAL_ESTATE, 'nope')

        assert db.rows(Table.APPOINTMENTS) == []

    async def test_notification_failure_does_not_undo_creation(
        self, lifecycle, notifier, store, client_actor
    ):
        notifier.send.side_effect = RuntimeError("outbox down")
        start, end = _window()

        appointment = await lifecycle.request(
            client_actor, 'Visa consultation', start, end, ServiceType.VISA, 'visa-1'
        )

        assert (await store.get(appointment.id)).status == AppointmentStatus.SCHEDULED


class TestCancel:

    async def test_client_cancel_notifies_staff_only(self, lifecycle, db, notifier, client_actor):
        appointment = seed_appointment(db)

        cancelled = await lifecycle.cancel(appointment.id, client_actor, 'Found another time')

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.description == 'Second floor unit\n\nCancellation reason: Found another time'
        assert sent_notifications(notifier) == [
            (NotificationKind.STAFF_APPOINTMENT_CANCELLED, STAFF_A),
        ]

    async def test_staff_cancel_notifies_client_only(self, lifecycle, db, notifier, staff_actor):
        appointment = seed_appointment(db)

        await lifecycle.cancel(appointment.id, staff_actor)

        assert sent_notifications(notifier) == [(NotificationKind.STATUS_CHANGE, CLIENT_ID)]

    async def test_admin_cancel_notifies_both(self, lifecycle, db, notifier, admin_actor):
        appointment = seed_appointment(db)

        cancelled = await lifecycle.cancel(appointment.id, admin_actor)

        assert cancelled.description == 'Second floor unit'
        assert sent_notifications(notifier) == [
            (NotificationKind.STATUS_CHANGE, CLIENT_ID),
            (NotificationKind.STAFF_APPOINTMENT_CANCELLED, STAFF_A),
        ]

    async def test_rescheduled_can_be_cancelled(self, lifecycle, db, client_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.RESCHEDULED)

        cancelled = await lifecycle.cancel(appointment.id, client_actor)

        assert cancelled.status == AppointmentStatus.CANCELLED

    async def test_cancel_twice_rejected_without_notification(
        self, lifecycle, db, notifier, client_actor
    ):
        appointment = seed_appointment(db, status=AppointmentStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.cancel(appointment.id, client_actor)

        notifier.send.assert_not_called()

    async def test_cancel_completed_rejected(self, lifecycle, db, client_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.cancel(appointment.id, client_actor)

    async def test_stranger_cannot_cancel(self, lifecycle, db, other_client_actor):
        appointment = seed_appointment(db)

        with pytest.raises(ForbiddenError):
            await lifecycle.cancel(appointment.id, other_client_actor)

    async def test_permission_checked_before_transition(self, lifecycle, db, other_client_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.CANCELLED)

        with pytest.raises(ForbiddenError):
            await lifecycle.cancel(appointment.id, other_client_actor)

    async def test_cancel_survives_recipient_lookup_failure(
        self, lifecycle, db, store, notifier, client_actor
    ):
        appointment = seed_appointment(db)
        lifecycle.user_directory.get_many = AsyncMock(side_effect=RuntimeError("users table down"))

        updated = await lifecycle.cancel(appointment.id, client_actor, "sick")

        assert updated.status == AppointmentStatus.CANCELLED
        assert (await store.get(appointment.id)).status == AppointmentStatus.CANCELLED
        notifier.send.assert_not_called()

        # A retry sees the committed cancellation
        with pytest.raises(InvalidTransitionError):
            await lifecycle.cancel(appointment.id, client_actor, "sick")

    async def test_cancel_missing_appointment(self, lifecycle, admin_actor):
        with pytest.raises(NotFoundError):
            await lifecycle.cancel('missing', admin_actor)


class TestChangeStatus:

    async def test_staff_completes_with_notes(self, lifecycle, db, notifier, staff_actor):
        appointment = seed_appointment(db)

        updated = await lifecycle.change_status(
            appointment.id, 'COMPLETED', staff_actor, notes='Keys handed over'
        )

        assert updated.status == AppointmentStatus.COMPLETED
        assert updated.description.endswith('\n\nStatus change notes: Keys handed over')
        assert sent_notifications(notifier) == [(NotificationKind.STATUS_CHANGE, CLIENT_ID)]
        context = notifier.send.call_args.args[3]
        assert context['previous_status'] == AppointmentStatus.SCHEDULED
        assert context['notes'] == 'Keys handed over'

    async def test_completed_is_terminal(self, lifecycle, db, store, notifier, admin_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.COMPLETED)

        for status in AppointmentStatus:
            with pytest.raises(InvalidTransitionError):
                await lifecycle.change_status(appointment.id, status, admin_actor)

        assert (await store.get(appointment.id)).status == AppointmentStatus.COMPLETED
        notifier.send.assert_not_called()

    async def test_committed_change_survives_recipient_lookup_failure(
        self, lifecycle, db, store, staff_actor
    ):
        appointment = seed_appointment(db)
        lifecycle.user_directory.get_many = AsyncMock(side_effect=RuntimeError("users table down"))

        updated = await lifecycle.change_status(appointment.id, 'COMPLETED', staff_actor)

        assert updated.status == AppointmentStatus.COMPLETED
        assert (await store.get(appointment.id)).status == AppointmentStatus.COMPLETED

    async def test_cancelled_is_terminal(self, lifecycle, db, notifier, client_actor, staff_actor):
        appointment = seed_appointment(db)
        await lifecycle.cancel(appointment.id, client_actor)
        notifier.send.reset_mock()

        for status in AppointmentStatus:
            with pytest.raises(InvalidTransitionError):
                await lifecycle.change_status(appointment.id, status, staff_actor)

        notifier.send.assert_not_called()

    async def test_unknown_status_rejected_first(self, lifecycle, client_actor):
        # Validated before the appointment is even looked up
        with pytest.raises(InvalidStatusError) as exc_info:
            await lifecycle.change_status('missing', 'ARCHIVED', client_actor)

        assert 'SCHEDULED' in exc_info.value.message

    async def test_client_cannot_change_status(self, lifecycle, db, client_actor):
        appointment = seed_appointment(db)

        with pytest.raises(ForbiddenError):
            await lifecycle.change_status(appointment.id, 'COMPLETED', client_actor)

    async def test_unassigned_staff_cannot_change_status(self, lifecycle, db, other_staff_actor):
        appointment = seed_appointment(db)

        with pytest.raises(ForbiddenError):
            await lifecycle.change_status(appointment.id, 'COMPLETED', other_staff_actor)


class TestReassign:

    async def test_reassign_notifies_each_party(self, lifecycle, db, notifier, admin_actor):
        appointment = seed_appointment(db, staff=STAFF_A)

        updated = await lifecycle.reassign(appointment.id, STAFF_B, admin_actor)

        assert updated.staff == STAFF_B
        assert updated.updated_at > appointment.updated_at
        assert sent_notifications(notifier) == [
            (NotificationKind.STAFF_NEW_APPOINTMENT, STAFF_B),
            (NotificationKind.STAFF_APPOINTMENT_REASSIGNED, STAFF_A),
            (NotificationKind.CLIENT_APPOINTMENT_REASSIGNED, CLIENT_ID),
        ]

    async def test_reassign_to_same_staff_skips_previous_notice(
        self, lifecycle, db, notifier, admin_actor
    ):
        appointment = seed_appointment(db, staff=STAFF_A)

        updated = await lifecycle.reassign(appointment.id, STAFF_A, admin_actor)

        assert updated.staff == STAFF_A
        assert updated.updated_at > appointment.updated_at
        kinds = [kind for kind, _ in sent_notifications(notifier)]
        assert NotificationKind.STAFF_APPOINTMENT_REASSIGNED not in kinds

    async def test_only_admin_reassigns(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db)

        with pytest.raises(ForbiddenError):
            await lifecycle.reassign(appointment.id, STAFF_B, staff_actor)

    async def test_unknown_staff_rejected(self, lifecycle, db, admin_actor):
        appointment = seed_appointment(db)

        with pytest.raises(NotFoundError):
            await lifecycle.reassign(appointment.id, 'ghost', admin_actor)

    async def test_missing_appointment_checked_before_role(self, lifecycle, client_actor):
        with pytest.raises(NotFoundError):
            await lifecycle.reassign('missing', STAFF_B, client_actor)


class TestUpdateDetails:

    async def test_client_edits_scheduled_appointment(self, lifecycle, db, notifier, client_actor):
        appointment = seed_appointment(db)

        updated = await lifecycle.update_details(
            appointment.id, {'title': 'Evening viewing', 'client': OTHER_CLIENT_ID}, client_actor
        )

        assert updated.title == 'Evening viewing'
        assert updated.client == CLIENT_ID  # not editable
        notifier.send.assert_not_called()

    async def test_client_cannot_edit_after_reschedule(self, lifecycle, db, client_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.RESCHEDULED)

        with pytest.raises(ForbiddenError):
            await lifecycle.update_details(appointment.id, {'title': 'Late change'}, client_actor)

    async def test_staff_edits_any_status(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.RESCHEDULED)

        updated = await lifecycle.update_details(appointment.id, {'location': 'Lobby'}, staff_actor)

        assert updated.location == 'Lobby'

    async def test_moving_start_replans_reminders(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db)
        new_start = appointment.start_time + timedelta(days=2)

        updated = await lifecycle.update_details(
            appointment.id,
            {'start_time': new_start, 'end_time': new_start + timedelta(hours=1)},
            staff_actor
        )

        assert [r.fire_time for r in updated.reminders] == [
            new_start - timedelta(hours=24),
            new_start - timedelta(hours=1),
        ]
        assert not any(r.sent for r in updated.reminders)

    async def test_end_before_merged_start_rejected(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db)

        with pytest.raises(AppointmentValidationError):
            await lifecycle.update_details(
                appointment.id, {'end_time': appointment.start_time - timedelta(minutes=5)}, staff_actor
            )

    async def test_status_change_notifies_client(self, lifecycle, db, notifier, staff_actor):
        appointment = seed_appointment(db)

        await lifecycle.update_details(appointment.id, {'status': 'RESCHEDULED'}, staff_actor)

        assert sent_notifications(notifier) == [(NotificationKind.STATUS_CHANGE, CLIENT_ID)]

    async def test_cancelled_cannot_be_revived(self, lifecycle, db, admin_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.update_details(appointment.id, {'status': 'SCHEDULED'}, admin_actor)

    async def test_completed_cannot_be_reopened(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db, status=AppointmentStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.update_details(appointment.id, {'status': 'RESCHEDULED'}, staff_actor)

        # Non-status edits are still allowed for the assigned staff member
        updated = await lifecycle.update_details(appointment.id, {'location': 'Lobby'}, staff_actor)
        assert updated.location == 'Lobby'

    async def test_admin_may_set_staff(self, lifecycle, db, admin_actor):
        appointment = seed_appointment(db)

        updated = await lifecycle.update_details(appointment.id, {'staff': STAFF_B}, admin_actor)

        assert updated.staff == STAFF_B

    async def test_admin_staff_must_exist(self, lifecycle, db, admin_actor):
        appointment = seed_appointment(db)

        with pytest.raises(NotFoundError):
            await lifecycle.update_details(appointment.id, {'staff': 'ghost'}, admin_actor)

    async def test_non_admin_cannot_set_staff(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db)

        updated = await lifecycle.update_details(appointment.id, {'staff': STAFF_B}, staff_actor)

        assert updated.staff == STAFF_A

    async def test_version_conflict_is_retried(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db)
        real_update = lifecycle.store.update
        attempts = []

        async def flaky_update(appointment_id, fields, expected_version=None):
            attempts.append(expected_version)
            if len(attempts) == 1:
                # Someone else writes between our read and write
                await real_update(appointment_id, {'description': 'Changed elsewhere'})
                raise ConcurrentModificationError(appointment_id, expected_version)
            return await real_update(appointment_id, fields, expected_version=expected_version)

        lifecycle.store.update = flaky_update

        updated = await lifecycle.update_details(appointment.id, {'title': 'Retried'}, staff_actor)

        assert attempts == [1, 2]
        assert updated.title == 'Retried'
        assert updated.description == 'Changed elsewhere'

    async def test_persistent_conflict_surfaces(self, lifecycle, db, staff_actor):
        appointment = seed_appointment(db)

        async def always_conflicts(appointment_id, fields, expected_version=None):
            raise ConcurrentModificationError(appointment_id, expected_version)

        lifecycle.store.update = always_conflicts

        with pytest.raises(ConcurrentModificationError):
            await lifecycle.update_details(appointment.id, {'title': 'Never'}, staff_actor)


class TestQueries:

    async def test_get_visible_to_participants_and_admin(
        self, lifecycle, db, client_actor, staff_actor, admin_actor, other_client_actor
    ):
        appointment = seed_appointment(db)

        for actor in (client_actor, staff_actor, admin_actor):
            assert (await lifecycle.get(appointment.id, actor)).id == appointment.id

        with pytest.raises(ForbiddenError):
            await lifecycle.get(appointment.id, other_client_actor)

    async def test_list_scopes_by_role(self, lifecycle, db, client_actor, staff_actor, admin_actor):
        own = seed_appointment(db, client=CLIENT_ID, staff=STAFF_B)
        assigned = seed_appointment(db, client=OTHER_CLIENT_ID, staff=STAFF_A)

        as_client = await lifecycle.list_appointments(client_actor)
        as_staff = await lifecycle.list_appointments(staff_actor)
        as_admin = await lifecycle.list_appointments(admin_actor, pagination=Pagination(limit=10))

        assert [a.id for a in as_client.appointments] == [own.id]
        assert [a.id for a in as_staff.appointments] == [assigned.id]
        assert as_admin.total == 2

    async def test_list_ignores_caller_supplied_scope(self, lifecycle, db, client_actor):
        seed_appointment(db, client=OTHER_CLIENT_ID, staff=STAFF_A)

        requested = AppointmentFilter(client=OTHER_CLIENT_ID)
        page = await lifecycle.list_appointments(client_actor, requested)

        assert page.appointments == []
        # The caller's filter object is left as it was
        assert requested.client == OTHER_CLIENT_ID
        assert requested.participant is None

    async def test_list_for_user_hides_past_by_default(self, lifecycle, db, client_actor):
        upcoming = seed_appointment(db)
        past = seed_appointment(db, start_time=utcnow() - timedelta(days=2))

        current = await lifecycle.list_for_user(client_actor)
        everything = await lifecycle.list_for_user(client_actor, include_past=True)

        assert [a.id for a in current] == [upcoming.id]
        assert [a.id for a in everything] == [past.id, upcoming.id]

    async def test_list_for_staff_requires_staff_role(self, lifecycle, db, client_actor, staff_actor):
        assigned = seed_appointment(db, staff=STAFF_A)

        assert [a.id for a in await lifecycle.list_for_staff(staff_actor)] == [assigned.id]
        with pytest.raises(ForbiddenError):
            await lifecycle.list_for_staff(client_actor)

    async def test_statistics_admin_only(self, lifecycle, db, admin_actor, staff_actor):
        seed_appointment(db)
        seed_appointment(db, status=AppointmentStatus.COMPLETED)

        counts = await lifecycle.statistics(admin_actor)

        assert counts['total'] == 2
        assert counts['COMPLETED'] == 1
        with pytest.raises(ForbiddenError):
            await lifecycle.statistics(staff_actor)

    async def test_plain_user_sees_only_own_requests(self, lifecycle, db):
        seed_appointment(db, client=OTHER_CLIENT_ID)

        page = await lifecycle.list_appointments(Actor(CLIENT_ID, Role.USER))

        assert page.total == 0
