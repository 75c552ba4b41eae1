# zaptrix_app/utils/lock_utils.py
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

import redis

from ..exceptions import TransientApiError

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    Mutual exclusion per key.

    With a Redis client the lock is shared by every worker process; without one
    it falls back to a per-process threading.Lock per key.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, prefix: str = 'lock:'):
        self.redis = redis_client
        self.prefix = prefix
        self._local_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _local_lock(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._local_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._local_locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: float = 60, blocking_timeout: float = 30):
        name = f"{self.prefix}{key}"
        if self.redis is not None:
            try:
                with self.redis.lock(name, timeout=timeout, blocking_timeout=blocking_timeout):
                    yield
            except redis.RedisError as e:
                logger.warning(f"Could not hold lock {name}: {e}")
                raise TransientApiError(f"Lock {name} unavailable") from e
            return

        lock = self._local_lock(name)
        if not lock.acquire(timeout=blocking_timeout):
            raise TransientApiError(f"Lock {name} unavailable")
        try:
            yield
        finally:
            lock.release()
