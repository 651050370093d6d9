"""
Test fixtures for the appointment backend
"""

import uuid
from datetime import datetime, timedelta, timezone

from servicehub.database import MockDatabase, Table
from servicehub.models.appointment import (
    Appointment,
    AppointmentStatus,
    ServiceType,
    build_reminder_schedule,
    utcnow,
)

# Sample test data
CLIENT_ID = 'client-1'
OTHER_CLIENT_ID = 'client-2'
VISA_AGENT_ID = 'A37'
STAFF_A = 'staff-a'
STAFF_B = 'staff-b'
OWNER_ID = 'owner-1'
TAX_PRO_ID = 'tax-pro-1'
ADMIN_ID = 'admin-1'
LATER_ADMIN_ID = 'admin-2'

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def create_test_user(user_id, role='USER', created_days=0, **kwargs):
    """Create a users row"""
    return {
        'id': user_id,
        'username': kwargs.get('username', user_id),
        'email': kwargs.get('email', f'{user_id}@example.com'),
        'phone': kwargs.get('phone'),
        'role': role,
        'created_at': (EPOCH + timedelta(days=created_days)).isoformat(),
    }


def seed_directory(db: MockDatabase, with_admin: bool = True) -> MockDatabase:
    """Users plus one record per service catalog."""
    users = db.rows(Table.USERS)
    users.extend([
        create_test_user(CLIENT_ID),
        create_test_user(OTHER_CLIENT_ID),
        create_test_user(VISA_AGENT_ID, 'AGENT'),
        create_test_user(STAFF_A, 'AGENT'),
        create_test_user(STAFF_B, 'SUPPORT'),
        create_test_user(OWNER_ID),
        create_test_user(TAX_PRO_ID, 'AGENT'),
    ])
    if with_admin:
        # Inserted newest first so scan order differs from creation order
        users.append(create_test_user(LATER_ADMIN_ID, 'ADMIN', created_days=30))
        users.append(create_test_user(ADMIN_ID, 'ADMIN', created_days=1))

    db.rows(Table.PROPERTIES).extend([
        {'id': 'prop-1', 'agent': STAFF_A, 'owner': OWNER_ID},
        {'id': 'prop-owner-only', 'agent': None, 'owner': OWNER_ID},
        {'id': 'prop-unassigned', 'agent': None, 'owner': None},
    ])
    db.rows(Table.INSURANCE_POLICIES).append({'id': 'policy-1', 'agent': STAFF_B})
    db.rows(Table.VISA_APPLICATIONS).append({'id': 'visa-1', 'agent': VISA_AGENT_ID})
    db.rows(Table.TAX_CASES).append({'id': 'tax-1', 'tax_professional': TAX_PRO_ID})
    return db


def make_appointment(**kwargs) -> Appointment:
    """Build an appointment three days out assigned to STAFF_A"""
    start = kwargs.pop('start_time', utcnow() + timedelta(days=3))
    stamp = utcnow() - timedelta(hours=1)
    fields = {
        'id': str(uuid.uuid4()),
        'title': 'Property viewing',
        'description': 'Second floor unit',
        'start_time': start,
        'end_time': start + timedelta(hours=1),
        'service_type': ServiceType.REAL_ESTATE,
        'service_id': 'prop-1',
        'client': CLIENT_ID,
        'staff': STAFF_A,
        'location': '12 Main St',
        'status': AppointmentStatus.SCHEDULED,
        'reminders': build_reminder_schedule(start),
        'created_at': stamp,
        'updated_at': stamp,
    }
    fields.update(kwargs)
    return Appointment(**fields)


def seed_appointment(db: MockDatabase, **kwargs) -> Appointment:
    """Insert an appointment record directly, bypassing the lifecycle"""
    appointment = make_appointment(**kwargs)
    db.rows(Table.APPOINTMENTS).append(appointment.to_record())
    return appointment


def sent_notifications(notifier):
    """(kind, recipient id) pairs in call order from a mocked Notifier"""
    pairs = []
    for call in notifier.send.call_args_list:
        kind, recipient = call.args[0], call.args[1]
        pairs.append((kind, recipient.id if recipient else None))
    return pairs
