"""SMTP transport for notification outbox rows."""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Optional

from servicehub import config

logger = logging.getLogger(__name__)


class EmailService:
    """Sends rendered notifications over SMTP."""

    def __init__(
        self,
        host: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: str = config.SMTP_USERNAME,
        password: str = config.SMTP_PASSWORD,
        use_tls: bool = config.SMTP_USE_TLS
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = formataddr((config.SMTP_FROM_NAME, config.SMTP_FROM_EMAIL))

    def _compose(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = to_email
        msg['Message-ID'] = make_msgid(domain=config.SMTP_FROM_EMAIL.split('@')[-1])

        # Clients render the last alternative they understand
        if text_content:
            msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_content, 'html', 'utf-8'))
        return msg

    def _send_blocking(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send one message without blocking the event loop.

        Returns:
            True if the SMTP server accepted the message
        """
        msg = self._compose(to_email, subject, html_content, text_content)
        try:
            await asyncio.to_thread(self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {e}")
            return False

        logger.info(f"Email sent to {to_email}")
        return True

    async def deliver(self, message: Dict[str, Any]) -> bool:
        """
        Deliver one notification_outbox row.

        Rows without a recipient address cannot be delivered and count as
        failures so they end up dead-lettered instead of retried silently.
        """
        to_email = message.get('recipient_email')
        if not to_email:
            logger.warning(
                f"Outbox message {message.get('id')} ({message.get('kind')}) "
                f"has no recipient email"
            )
            return False

        return await self.send_email(
            to_email,
            message['subject'],
            message['html_content'],
            message.get('text_content')
        )


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
