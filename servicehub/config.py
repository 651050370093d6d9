"""
Application Configuration
Centralized configuration for Supabase, Redis, scheduling and notifications
"""
import os
from typing import Optional

from redis import Redis

# Supabase
SUPABASE_SCHEMA = os.getenv("SUPABASE_SCHEMA", "public")

# Redis Configuration (optional, guards the reminder scan across instances)
REDIS_URL = os.getenv("REDIS_URL", "")

# JWT
JWT_SECRET = os.getenv("JWT_SECRET", "development-secret-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Staff resolution fallback. When set, appointments that cannot be resolved
# to a domain professional are bound to this user instead of "any" admin.
FALLBACK_STAFF_ID = os.getenv("FALLBACK_STAFF_ID") or None

# Reminder scheduling
REMINDER_SCAN_INTERVAL_MINUTES = int(os.getenv("REMINDER_SCAN_INTERVAL_MINUTES", "60"))
REMINDER_SCAN_LOCK_TTL_MS = int(os.getenv("REMINDER_SCAN_LOCK_TTL_MS", "300000"))

# Lifecycle writes are retried this many times on version conflicts
STATE_MUTATION_ATTEMPTS = int(os.getenv("STATE_MUTATION_ATTEMPTS", "3"))

# Notification outbox
OUTBOX_POLL_INTERVAL = float(os.getenv("OUTBOX_POLL_INTERVAL", "5"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "20"))
OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", "5"))

# SMTP
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", "no-reply@servicehub.local")
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "The Services Team")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

# Links in outbound messages
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def get_redis_client() -> Optional[Redis]:
    """
    Get configured Redis client, or None when REDIS_URL is not set

    Returns:
        Redis: Configured Redis client instance
    """
    if not REDIS_URL:
        return None

    return Redis.from_url(
        REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
