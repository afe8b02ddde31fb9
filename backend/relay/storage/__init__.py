"""Save storage abstraction layer.

Provides a pluggable backend interface for players, games and snapshots.

Configuration:
    STORE_BACKEND=sql (default) | redis | memory
    DATABASE_URL=sqlite:///./data/relay.db (used when backend=sql)
    REDIS_URL=redis://localhost:6379/0 (required when backend=redis)
"""

import logging

from relay.storage.backend import SaveStoreBackend, SaveTransaction
from relay.storage.memory import InMemoryBackend

logger = logging.getLogger(__name__)

__all__ = ["SaveStoreBackend", "SaveTransaction", "InMemoryBackend", "create_backend"]


def create_backend(settings) -> SaveStoreBackend:
    """Create a storage backend based on configuration.

    Reads settings.STORE_BACKEND:
    - "sql" (default): SQLAlchemy async on DATABASE_URL
    - "redis": Redis-backed storage (requires REDIS_URL)
    - "memory": In-memory dict storage, lost on restart

    Returns:
        Configured SaveStoreBackend instance (call initialize() before use)
    """
    backend_type = settings.STORE_BACKEND.lower().strip()

    if backend_type == "redis":
        redis_url = (settings.REDIS_URL or "").strip()
        if not redis_url:
            logger.warning("STORE_BACKEND=redis but REDIS_URL not set, falling back to memory")
            return InMemoryBackend()
        from relay.storage.redis_backend import RedisBackend
        logger.info("Save store backend: Redis (%s)", redis_url.split("@")[-1])
        return RedisBackend(redis_url, key_prefix=settings.REDIS_KEY_PREFIX)

    if backend_type == "sql":
        from relay.storage.sql_backend import SqlBackend
        logger.info("Save store backend: SQL")
        return SqlBackend(settings.DATABASE_URL_ASYNC, echo=settings.DEBUG and settings.LOG_LEVEL == "DEBUG")

    if backend_type != "memory":
        logger.warning("Unknown STORE_BACKEND=%s, using memory", backend_type)

    logger.info("Save store backend: memory")
    return InMemoryBackend()
