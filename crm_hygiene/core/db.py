"""Database helpers for API key lookups."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from psycopg2 import pool

from crm_hygiene.core.config import get_settings

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    user_id: str


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


_SELECT_API_KEY = """
SELECT id, user_id
FROM api_keys
WHERE key = %(key)s
LIMIT 1;
"""

_TOUCH_API_KEY = """
UPDATE api_keys
SET last_used = NOW()
WHERE id = %(id)s;
"""


def lookup_api_key(key: str) -> Optional[ApiKeyRecord]:
    """Resolve a raw API key to its owning user, or None when unknown."""
    if not key:
        return None

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_SELECT_API_KEY, {"key": key})
            row = cur.fetchone()

    if not row:
        return None
    return ApiKeyRecord(id=str(row[0]), user_id=str(row[1]))


def touch_api_key(key_id: str) -> None:
    """Stamp ``last_used`` on an API key after a successful request."""
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(_TOUCH_API_KEY, {"id": key_id})
        conn.commit()
        logger.debug("Touched api key %s", key_id)
