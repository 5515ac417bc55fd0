"""Database helpers: connection pool and the duplicate-candidate query."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.migration.config import DatabaseConfig

logger = logging.getLogger("migration.db")

# Columns mirror the CSV export the resolver also accepts
DUPLICATE_USERS_SQL = """
SELECT u."id", u."sId", u."username", u."email", u."name",
       u."firstName", u."lastName", u."imageUrl",
       u."createdAt", u."updatedAt", u."provider", u."providerId",
       u."isDustSuperUser", u."auth0Sub", u."workOSUserId"
FROM users u
WHERE u."email" IN (
    SELECT "email" FROM users GROUP BY "email" HAVING COUNT(*) > 1
)
ORDER BY u."email", u."createdAt", u."id"
"""


class Database:
    """Thin wrapper around a ThreadedConnectionPool."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a dict cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def fetch_duplicate_users(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Return every user row whose email is shared with another user."""
        sql = DUPLICATE_USERS_SQL
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT %s"
            params = (limit,)
        with self.transaction() as cur:
            cur.execute(sql, params)
            rows = [dict(r) for r in cur.fetchall()]
        logger.info("Fetched %d users sharing an email", len(rows))
        return rows
