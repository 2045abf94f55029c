"""Database cache backend with atomic counters for shared rate limiting."""

from typing import Optional

from django.core.cache.backends.db import DatabaseCache
from django.db import router, transaction


class AtomicCounterDatabaseCache(DatabaseCache):
    """
    Database cache whose ``incr`` is a single transaction.

    django-ratelimit counts heartbeats and mistake appends per user; workers
    share this table so the counters agree across processes.
    """

    def incr(self, key: str, delta: int = 1, version: Optional[int] = None) -> int:
        """Add ``delta`` to the counter at ``key``, creating it when missing."""
        self.validate_key(self.make_key(key, version=version))

        with transaction.atomic(using=self._db_for_write()):
            current = super().get(key, version=version)
            try:
                value = int(current) + delta if current is not None else delta
            except (TypeError, ValueError):
                # Non-numeric payloads are replaced by a fresh counter
                value = delta
            super().set(key, value, version=version)
            return value

    def decr(self, key: str, delta: int = 1, version: Optional[int] = None) -> int:
        """Subtract ``delta`` from the counter at ``key``."""
        return self.incr(key, -delta, version=version)

    def _db_for_write(self) -> str:
        return router.db_for_write(self.cache_model_class)
