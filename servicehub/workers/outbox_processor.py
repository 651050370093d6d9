"""
Notification Outbox Processor Worker

Drains the notification_outbox table and delivers messages by email. Rows move
pending -> delivered, or pending -> failed -> ... -> dead once the retry budget
is spent. Dead rows stay in the table for inspection and are never retried.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx

from servicehub import config
from servicehub.database import Table
from servicehub.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationOutboxProcessor:
    """
    Processes notification_outbox as the authoritative delivery queue
    """

    def __init__(
        self,
        supabase,
        email_service: EmailService,
        poll_interval: float = config.OUTBOX_POLL_INTERVAL,
        batch_size: int = config.OUTBOX_BATCH_SIZE,
        max_retries: int = config.OUTBOX_MAX_RETRIES
    ):
        self.supabase = supabase
        self.email_service = email_service
        self.running = False
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries

        logger.info(
            f"NotificationOutboxProcessor initialized: poll_interval={self.poll_interval}s, "
            f"batch_size={self.batch_size}, max_retries={self.max_retries}"
        )

    async def start(self):
        """Start processing loop"""
        self.running = True
        logger.info("NotificationOutboxProcessor started")

        while self.running:
            try:
                await self.process_batch()
                await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Outbox processor error: {e}", exc_info=True)
                await asyncio.sleep(1)  # Brief pause on error

    async def stop(self):
        """Stop processing loop"""
        self.running = False
        logger.info("NotificationOutboxProcessor stopped")

    async def process_batch(self) -> Dict[str, int]:
        """
        Deliver one batch of pending messages.

        Returns:
            Counts of delivered, failed and dead-lettered messages
        """
        stats = {"delivered": 0, "failed": 0, "dead": 0}
        messages = await self._fetch_pending_messages()

        if messages:
            logger.debug(f"Processing {len(messages)} outbox messages")

        for msg in messages:
            outcome = await self._process_message(msg)
            stats[outcome] += 1

        return stats

    async def _fetch_pending_messages(self) -> List[Dict[str, Any]]:
        """
        Fetch messages that need delivery

        Returns messages in pending or failed state with retry_count < max_retries
        """
        try:
            result = await self.supabase.table(Table.NOTIFICATION_OUTBOX).select('*').in_(
                'delivery_status', ['pending', 'failed']
            ).lt(
                'retry_count', self.max_retries
            ).order('created_at').limit(self.batch_size).execute()

            return result.data if result.data else []

        except (httpx.RemoteProtocolError, httpx.ConnectError) as e:
            # Connection dropped; the next poll goes through a fresh request
            logger.warning(f"Connection error fetching outbox messages: {e}")
            return []

        except Exception as e:
            logger.error(f"Failed to fetch pending messages: {e}", exc_info=True)
            return []

    async def _process_message(self, msg: Dict[str, Any]) -> str:
        """
        Deliver a single outbox message and record the outcome

        Args:
            msg: Row from notification_outbox

        Returns:
            "delivered", "failed" or "dead"
        """
        message_id = msg['id']
        retry_count = (msg.get('retry_count') or 0) + 1

        try:
            success = await self.email_service.deliver(msg)
            error_message = None if success else 'Send failed - SMTP error'
        except Exception as e:
            logger.error(f"Error processing outbox message {message_id}: {e}", exc_info=True)
            success = False
            error_message = str(e)[:500]  # Truncate long errors

        now = datetime.now(timezone.utc)

        if success:
            await self._update_status(message_id, 'delivered', delivered_at=now)
            logger.info(f"Outbox message {message_id} ({msg.get('kind')}) delivered")
            return 'delivered'

        status = 'dead' if retry_count >= self.max_retries else 'failed'
        await self._update_status(
            message_id,
            status,
            failed_at=now,
            error_message=error_message,
            retry_count=retry_count
        )

        if status == 'dead':
            logger.error(
                f"Outbox message {message_id} ({msg.get('kind')}) dead-lettered "
                f"after {retry_count} attempts"
            )
        else:
            logger.warning(
                f"Outbox message {message_id} failed, "
                f"retry {retry_count}/{self.max_retries}"
            )
        return status

    async def _update_status(
        self,
        message_id: str,
        status: str,
        **kwargs
    ):
        """
        Update message status in notification_outbox

        Args:
            message_id: Message UUID
            status: New status (pending|delivered|failed|dead)
            **kwargs: Additional fields to update (delivered_at, retry_count, etc.)
        """
        update_data = {'delivery_status': status}

        for key in ('delivered_at', 'failed_at'):
            if key in kwargs:
                update_data[key] = kwargs[key].isoformat()
        for key in ('error_message', 'retry_count'):
            if key in kwargs:
                update_data[key] = kwargs[key]

        try:
            await self.supabase.table(Table.NOTIFICATION_OUTBOX).update(update_data).eq(
                'id', message_id
            ).execute()
        except Exception as e:
            logger.error(f"Failed to update outbox status: {e}", exc_info=True)
