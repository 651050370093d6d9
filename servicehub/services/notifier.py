"""
Notifier - Write appointment notifications to the notification outbox

Notifications are rendered here and written to the notification_outbox table,
which the NotificationOutboxProcessor worker drains for delivery. Writing to
the outbox is the only thing callers wait on; delivery retries and dead
lettering happen in the worker.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from servicehub.database import Table
from servicehub.models.appointment import Appointment, UserSummary, utcnow
from servicehub.services.notification_templates import NotificationKind, render

logger = logging.getLogger(__name__)


class Notifier:
    """Fire-and-forget notification dispatch through the outbox."""

    def __init__(self, supabase):
        self.supabase = supabase

    async def send(
        self,
        kind: NotificationKind,
        recipient: Optional[UserSummary],
        appointment: Appointment,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Queue a notification for delivery.

        Never raises; failures are logged and reported through the return value.

        Args:
            kind: Notification kind
            recipient: Addressee
            appointment: Appointment the notification is about
            context: Template values for this kind

        Returns:
            True if the message was written to the outbox, False otherwise
        """
        if recipient is None:
            logger.warning(f"No recipient for {kind.value} on appointment {appointment.id}")
            return False

        try:
            subject, html_content, text_content = render(kind, appointment, recipient, context)

            result = await self.supabase.table(Table.NOTIFICATION_OUTBOX).insert({
                'id': str(uuid.uuid4()),
                'kind': kind.value,
                'appointment_id': appointment.id,
                'recipient_id': recipient.id,
                'recipient_email': recipient.email,
                'subject': subject,
                'html_content': html_content,
                'text_content': text_content,
                'delivery_status': 'pending',
                'retry_count': 0,
                'created_at': utcnow().isoformat(),
            }).execute()

            if not result.data:
                logger.error(f"Failed to queue {kind.value} for {recipient.id}: no data returned")
                return False

            logger.info(
                f"Queued {kind.value} for {recipient.id} "
                f"(appointment={appointment.id})"
            )
            return True

        except Exception as e:
            logger.error(
                f"Error queueing {kind.value} for appointment {appointment.id}: {e}",
                exc_info=True
            )
            return False

    async def get_outbox_stats(self) -> Dict[str, int]:
        """Counts of outbox rows by delivery status."""
        stats = {}
        for status in ['pending', 'delivered', 'failed', 'dead']:
            result = await self.supabase.table(Table.NOTIFICATION_OUTBOX).select(
                'id',
                count='exact'
            ).eq('delivery_status', status).execute()
            stats[status] = result.count or 0
        return stats
