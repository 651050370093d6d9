"""
Appointment Reminder Scheduler

Background job that finds due, unsent appointment reminders and dispatches
them to clients. Each reminder is marked sent only after its notification was
handed off, so a crash mid-scan can cause a duplicate reminder but never a lost
one. Idempotency rests on the persisted sent flag, not on in-memory state.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from servicehub import config
from servicehub.models.appointment import Appointment, Reminder, lead_time_label, utcnow
from servicehub.services.appointment_store import AppointmentStore
from servicehub.services.locks import LockBusyError, ReminderScanLock
from servicehub.services.notification_templates import NotificationKind
from servicehub.services.notifier import Notifier
from servicehub.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """
    Periodic reminder dispatch.
    Runs once right after start and then at a fixed interval.
    """

    def __init__(
        self,
        store: AppointmentStore,
        user_directory: UserDirectory,
        notifier: Notifier,
        run_interval_minutes: int = config.REMINDER_SCAN_INTERVAL_MINUTES,
        scan_lock: Optional[ReminderScanLock] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the reminder scheduler.

        Args:
            store: Appointment store to scan and update
            user_directory: Used to address reminders to clients
            notifier: Outbound notification dispatch
            run_interval_minutes: How often to scan (default 60 minutes)
            scan_lock: Optional cross-instance lock; without it every
                process scans independently
            clock: Source of "now", replaceable in tests
        """
        self.store = store
        self.user_directory = user_directory
        self.notifier = notifier
        self.run_interval_minutes = run_interval_minutes
        self.scan_lock = scan_lock
        self.clock = clock
        self.scheduler = AsyncIOScheduler()
        self.is_running = False

        logger.info(f"Initialized ReminderScheduler with {run_interval_minutes} minute interval")

    async def send_due_reminders(self) -> Dict[str, Any]:
        """
        Dispatch every reminder that is due and not yet sent.

        Returns:
            Dictionary with scan statistics
        """
        if self.scan_lock is None:
            return await self._scan()

        try:
            async with self.scan_lock.acquire():
                return await self._scan()
        except LockBusyError:
            logger.info("Reminder scan already running on another instance, skipping")
            return {"skipped": True, "appointments": 0, "dispatched": 0, "failed": 0}

    async def _scan(self) -> Dict[str, Any]:
        now = self.clock()
        stats = {
            "appointments": 0,
            "dispatched": 0,
            "failed": 0,
            "start_time": now.isoformat()
        }

        try:
            appointments = await self.store.find_due_reminders(now)
        except Exception as e:
            logger.error(f"Error querying due reminders: {e}", exc_info=True)
            stats["error"] = str(e)
            return stats

        stats["appointments"] = len(appointments)
        logger.info(f"Found {len(appointments)} appointments needing reminders")

        for appointment in appointments:
            try:
                dispatched, failed = await self._remind(appointment, now)
                stats["dispatched"] += dispatched
                stats["failed"] += failed
            except Exception as e:
                logger.error(
                    f"Error processing reminders for appointment {appointment.id}: {e}",
                    exc_info=True
                )
                stats["failed"] += 1

        stats["duration_seconds"] = (self.clock() - now).total_seconds()
        logger.info(
            f"Reminder scan completed. Dispatched {stats['dispatched']} reminders, "
            f"{stats['failed']} failures"
        )
        return stats

    async def _remind(self, appointment: Appointment, now: datetime) -> tuple:
        """Dispatch the due reminders of one appointment. Returns (dispatched, failed)."""
        dispatched = failed = 0
        client = await self.user_directory.get(appointment.client)
        staff = await self.user_directory.get(appointment.staff)

        for reminder in appointment.due_reminders(now):
            if await self._dispatch(appointment, reminder, client, staff):
                dispatched += 1
            else:
                failed += 1

        return dispatched, failed

    async def _dispatch(self, appointment: Appointment, reminder: Reminder, client, staff) -> bool:
        timeframe = lead_time_label(appointment.start_time, reminder.fire_time)

        try:
            sent = await self.notifier.send(
                NotificationKind.APPOINTMENT_REMINDER,
                client,
                appointment,
                {"timeframe": timeframe, "staff": staff}
            )
        except Exception as e:
            logger.error(f"Error sending reminder for appointment {appointment.id}: {e}")
            return False

        if not sent:
            logger.warning(
                f"Reminder for appointment {appointment.id} ({timeframe} before) not sent, "
                f"will retry on next scan"
            )
            return False

        try:
            await self.store.mark_reminder_sent(appointment.id, reminder.fire_time)
        except Exception as e:
            # Notification already went out; next scan will send it again
            logger.error(
                f"Sent reminder for appointment {appointment.id} but failed to mark it: {e}",
                exc_info=True
            )
            return False

        logger.info(f"Sent reminder for appointment {appointment.id} ({timeframe} before)")
        return True

    def start(self):
        """
        Start the scheduled reminder job.
        """
        if not self.is_running:
            self.scheduler.add_job(
                self.send_due_reminders,
                trigger=IntervalTrigger(minutes=self.run_interval_minutes),
                id='appointment_reminder_job',
                name='Appointment Reminders',
                misfire_grace_time=60,
                coalesce=True,  # Combine missed runs
                max_instances=1  # Only one scan at a time
            )

            # Also run a scan on startup
            self.scheduler.add_job(
                self.send_due_reminders,
                trigger='date',
                run_date=datetime.now() + timedelta(seconds=1),
                id='appointment_reminder_startup',
                name='Appointment Reminders (Startup)'
            )

            self.scheduler.start()
            self.is_running = True
            logger.info(f"Reminder scheduler started (runs every {self.run_interval_minutes} minutes)")

    def stop(self):
        """
        Stop the scheduled reminder job.
        """
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Reminder scheduler stopped")

    async def run_once(self) -> Dict[str, Any]:
        """
        Run one scan (for testing or manual execution).

        Returns:
            Scan statistics
        """
        return await self.send_due_reminders()
