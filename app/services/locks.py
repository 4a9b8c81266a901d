"""Distributed locking for calendar sync passes."""

import logging
import uuid
from contextlib import asynccontextmanager

from app import config
from app.exceptions import SyncInProgressError

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""


class ClinicianSyncLock:
    """Token-based advisory lock around one clinician's full sync pass."""

    def __init__(self, redis_client, ttl_ms: int = None):
        """
        Args:
            redis_client: Synchronous Redis client (redis-py)
            ttl_ms: Lock TTL; must exceed the longest expected sync pass
        """
        self.redis = redis_client
        self.ttl_ms = ttl_ms or config.SYNC_LOCK_TTL_MS

    @staticmethod
    def key_for(clinician_id: str) -> str:
        return f"calendar_sync_lock:{clinician_id}"

    @asynccontextmanager
    async def acquire(self, clinician_id: str):
        """
        Hold the clinician's sync lock for the duration of the block.

        Raises:
            SyncInProgressError: If another sync already holds the lock
        """
        lock_key = self.key_for(clinician_id)
        token = str(uuid.uuid4())

        # NX = only if not exists, PX = TTL in ms
        acquired = self.redis.set(lock_key, token, nx=True, px=self.ttl_ms)
        if not acquired:
            logger.info(f"Sync lock busy for clinician {clinician_id}")
            raise SyncInProgressError(clinician_id)

        logger.debug(f"Acquired sync lock: {lock_key} (token: {token[:8]})")
        try:
            yield
        finally:
            try:
                # Only delete if we still own the lock
                self.redis.eval(COMPARE_AND_DELETE, 1, lock_key, token)
                logger.debug(f"Released sync lock: {lock_key}")
            except Exception as e:
                logger.warning(f"Failed to release lock {lock_key}: {e}")
