from .outbox_processor import NotificationOutboxProcessor
from .reminder_scheduler import ReminderScheduler

__all__ = ["NotificationOutboxProcessor", "ReminderScheduler"]
