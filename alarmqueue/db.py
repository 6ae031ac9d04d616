"""PostgreSQL-backed key-value store."""
import threading
import psycopg2
from psycopg2.extras import RealDictCursor, execute_values
from psycopg2.pool import ThreadedConnectionPool
from typing import Dict, Iterable, Optional
from contextlib import contextmanager

from alarmqueue import settings
from alarmqueue.errors import StoreError
from alarmqueue.kv_store import KeyValueStore, UpdateFn
from alarmqueue.logging_conf import logger


class PostgresKeyValueStore(KeyValueStore):
    """
    Key-value store over a single `queue_kv` table.

    Every cursor() call checks out its own pooled connection, so threads
    sharing one store never share a transaction.
    """

    def __init__(self, dsn: Optional[str] = None, max_connections: Optional[int] = None):
        super().__init__()
        self.dsn = dsn or settings.DATABASE_URL
        self.max_connections = max_connections or settings.DB_POOL_MAX
        self._pool = None
        self._pool_lock = threading.Lock()

    @property
    def pool(self) -> ThreadedConnectionPool:
        """Get or create the connection pool."""
        with self._pool_lock:
            if self._pool is None or self._pool.closed:
                try:
                    self._pool = ThreadedConnectionPool(1, self.max_connections, self.dsn)
                except psycopg2.Error as e:
                    raise StoreError(f"Cannot connect to database: {e}") from e
            return self._pool

    def close(self):
        """Close all pooled connections."""
        if self._pool and not self._pool.closed:
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        pool = self.pool
        try:
            conn = pool.getconn()
        except psycopg2.Error as e:
            raise StoreError(f"No database connection available: {e}") from e
        cur = conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            pool.putconn(conn, close=bool(conn.closed))

    def ensure_schema(self) -> None:
        with self.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS queue_kv (
                    scope TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (scope, key)
                )
            """)
        logger.info("Ensured queue_kv table")

    def get_many(self, scope: str, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        with self.cursor() as cur:
            cur.execute("""
                SELECT key, value
                FROM queue_kv
                WHERE scope = %s AND key = ANY(%s)
            """, (scope, keys))
            return {row["key"]: row["value"] for row in cur.fetchall()}

    def set_many(self, scope: str, values: Dict[str, str]) -> None:
        if not values:
            return
        rows = [(scope, key, value) for key, value in values.items()]
        with self.cursor() as cur:
            execute_values(cur, """
                INSERT INTO queue_kv (scope, key, value)
                VALUES %s
                ON CONFLICT (scope, key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """, rows)

    def scan(self, scope: str, prefix: str) -> Dict[str, str]:
        like = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        with self.cursor() as cur:
            cur.execute("""
                SELECT key, value
                FROM queue_kv
                WHERE scope = %s AND key LIKE %s
            """, (scope, like))
            return {row["key"]: row["value"] for row in cur.fetchall()}

    def update(self, scope: str, key: str, fn: UpdateFn) -> Optional[str]:
        """
        Read-modify-write of one key.

        The in-process key lock serialises threads of this process; the
        transaction-scoped advisory lock serialises other processes.
        """
        with self._lock_for(scope, key), self.cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s), hashtext(%s))", (scope, key))
            cur.execute("""
                SELECT value FROM queue_kv
                WHERE scope = %s AND key = %s
            """, (scope, key))
            row = cur.fetchone()
            current = row["value"] if row else None
            new_value = fn(current)
            if new_value is None or new_value == current:
                return current
            cur.execute("""
                INSERT INTO queue_kv (scope, key, value)
                VALUES (%s, %s, %s)
                ON CONFLICT (scope, key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """, (scope, key, new_value))
            return new_value
