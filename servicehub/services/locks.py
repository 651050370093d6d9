"""Distributed locking for the reminder scan."""

import logging
import uuid
from contextlib import asynccontextmanager

from servicehub import config

logger = logging.getLogger(__name__)

LOCK_KEY = "appointments:reminder_scan_lock"

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""


class LockBusyError(RuntimeError):
    """Raised when another instance holds the lock."""


class ReminderScanLock:
    """Token-based lock so only one instance scans reminders at a time."""

    def __init__(self, redis_client, ttl_ms: int = config.REMINDER_SCAN_LOCK_TTL_MS):
        """
        Args:
            redis_client: Synchronous Redis client (redis-py)
            ttl_ms: Lock TTL in milliseconds, longer than a scan is expected to take
        """
        self.redis = redis_client
        self.ttl_ms = ttl_ms

    @asynccontextmanager
    async def acquire(self):
        """
        Hold the scan lock for the duration of the block.

        Raises:
            LockBusyError: If another holder owns the lock
        """
        token = str(uuid.uuid4())
        acquired = False

        try:
            # NX = only if not exists, PX = TTL in ms
            acquired = self.redis.set(LOCK_KEY, token, nx=True, px=self.ttl_ms)
            if not acquired:
                raise LockBusyError("Reminder scan lock held by another instance")

            logger.debug(f"Acquired reminder scan lock (token: {token[:8]})")
            yield

        finally:
            if acquired:
                try:
                    # Only delete if we still own the lock
                    self.redis.eval(COMPARE_AND_DELETE, 1, LOCK_KEY, token)
                    logger.debug("Released reminder scan lock")
                except Exception as e:
                    logger.warning(f"Failed to release reminder scan lock: {e}")
