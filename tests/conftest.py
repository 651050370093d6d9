"""Shared pytest fixtures."""

from unittest.mock import AsyncMock

import pytest

from servicehub.database import MockDatabase
from servicehub.models.appointment import Actor, Role
from servicehub.services.appointment_lifecycle import AppointmentLifecycle
from servicehub.services.appointment_store import AppointmentStore
from servicehub.services.notifier import Notifier
from servicehub.services.service_directory import ServiceDirectory
from servicehub.services.staff_resolver import StaffResolver
from servicehub.services.user_directory import UserDirectory

from .fixtures import ADMIN_ID, CLIENT_ID, OTHER_CLIENT_ID, STAFF_A, STAFF_B, seed_directory


@pytest.fixture
def db():
    """In-memory database seeded with users and service records"""
    return seed_directory(MockDatabase())


@pytest.fixture
def store(db):
    return AppointmentStore(db)


@pytest.fixture
def user_directory(db):
    return UserDirectory(db)


@pytest.fixture
def notifier():
    """Notifier double that accepts every message"""
    notifier = AsyncMock(spec=Notifier)
    notifier.send.return_value = True
    return notifier


@pytest.fixture
def staff_resolver(db, user_directory):
    return StaffResolver(ServiceDirectory(db), user_directory)


@pytest.fixture
def lifecycle(store, staff_resolver, user_directory, notifier):
    return AppointmentLifecycle(store, staff_resolver, user_directory, notifier)


@pytest.fixture
def client_actor():
    return Actor(CLIENT_ID, Role.USER)


@pytest.fixture
def other_client_actor():
    return Actor(OTHER_CLIENT_ID, Role.USER)


@pytest.fixture
def staff_actor():
    return Actor(STAFF_A, Role.AGENT)


@pytest.fixture
def other_staff_actor():
    return Actor(STAFF_B, Role.SUPPORT)


@pytest.fixture
def admin_actor():
    return Actor(ADMIN_ID, Role.ADMIN)
