"""Named resource locks (e.g. "prod-deploy").

At most one job holds a given lock. The table shares the scheduler's
coordination mutex so acquiring a lock and reserving agent capacity happen
as one step.
"""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class LockTable:
    def __init__(self, mutex: threading.RLock | None = None):
        self.mutex = mutex or threading.RLock()
        self._holders: dict[str, str] = {}

    def try_acquire(self, name: str, job_id: str) -> bool:
        with self.mutex:
            holder = self._holders.get(name)
            if holder is not None and holder != job_id:
                return False
            self._holders[name] = job_id
        logger.info("lock_acquired", extra={"event": "lock_acquired", "lock": name, "job_id": job_id})
        return True

    def release(self, name: str, job_id: str) -> bool:
        """Release a lock if job_id holds it; releasing someone else's lock is a no-op."""
        with self.mutex:
            if self._holders.get(name) != job_id:
                return False
            del self._holders[name]
        logger.info("lock_released", extra={"event": "lock_released", "lock": name, "job_id": job_id})
        return True

    def is_free(self, name: str) -> bool:
        with self.mutex:
            return name not in self._holders

    def holder(self, name: str) -> str | None:
        with self.mutex:
            return self._holders.get(name)

    def snapshot(self) -> dict[str, str]:
        with self.mutex:
            return dict(self._holders)
