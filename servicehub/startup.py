"""
Application startup and shutdown.

Builds the service graph once per process, stores it on app.state and runs
the two background workers (reminder scan and notification outbox) for the
lifetime of the app.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from servicehub import config
from servicehub.database import close_all_clients, get_supabase_client
from servicehub.services.appointment_lifecycle import AppointmentLifecycle
from servicehub.services.appointment_store import AppointmentStore
from servicehub.services.email_service import get_email_service
from servicehub.services.locks import ReminderScanLock
from servicehub.services.notifier import Notifier
from servicehub.services.service_directory import ServiceDirectory
from servicehub.services.staff_resolver import StaffResolver
from servicehub.services.user_directory import UserDirectory
from servicehub.workers.outbox_processor import NotificationOutboxProcessor
from servicehub.workers.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, supabase) -> AppointmentLifecycle:
    """Wire store, directories, notifier and lifecycle onto app.state."""
    user_directory = UserDirectory(supabase)
    store = AppointmentStore(supabase)
    notifier = Notifier(supabase)
    staff_resolver = StaffResolver(
        ServiceDirectory(supabase),
        user_directory,
        fallback_staff_id=config.FALLBACK_STAFF_ID,
    )

    lifecycle = AppointmentLifecycle(store, staff_resolver, user_directory, notifier)

    app.state.supabase = supabase
    app.state.store = store
    app.state.user_directory = user_directory
    app.state.notifier = notifier
    app.state.lifecycle = lifecycle
    return lifecycle


async def init_workers(app: FastAPI):
    """Initialize background workers."""
    # Reminder scheduler
    try:
        redis_client = config.get_redis_client()
        scan_lock = ReminderScanLock(redis_client) if redis_client else None
        if scan_lock is None:
            logger.warning("REDIS_URL not set - reminder scan runs without cross-instance lock")

        reminder_scheduler = ReminderScheduler(
            app.state.store,
            app.state.user_directory,
            app.state.notifier,
            scan_lock=scan_lock,
        )
        reminder_scheduler.start()
        app.state.reminder_scheduler = reminder_scheduler
        logger.info("Reminder scheduler started")
    except Exception as e:
        logger.error(f"Failed to start reminder scheduler: {str(e)}")

    # Notification outbox processor
    try:
        outbox_processor = NotificationOutboxProcessor(app.state.supabase, get_email_service())
        app.state.outbox_task = asyncio.create_task(outbox_processor.start())
        app.state.outbox_processor = outbox_processor
        logger.info("Notification outbox processor started")
    except Exception as e:
        logger.error(f"Failed to start outbox processor: {str(e)}")


async def stop_workers(app: FastAPI):
    """Stop all background workers gracefully."""
    try:
        if hasattr(app.state, 'reminder_scheduler'):
            app.state.reminder_scheduler.stop()
            logger.info("Reminder scheduler stopped")
    except Exception as e:
        logger.error(f"Error stopping reminder scheduler: {str(e)}")

    try:
        if hasattr(app.state, 'outbox_processor'):
            await app.state.outbox_processor.stop()
            app.state.outbox_task.cancel()
            logger.info("Notification outbox processor stopped")
    except Exception as e:
        logger.error(f"Error stopping outbox processor: {str(e)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle manager."""
    # === STARTUP ===
    logger.info("Starting appointment backend...")

    supabase = await get_supabase_client()
    logger.info(f"Connected to Supabase: {os.getenv('SUPABASE_URL')}")

    build_services(app, supabase)
    await init_workers(app)

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down services...")

    await stop_workers(app)
    await close_all_clients()

    logger.info("Appointment backend shutdown complete")
