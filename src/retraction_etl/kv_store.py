"""retraction_etl.kv_store

Small key-value store backed by the ingest_kv table
(migrations/0001_ingest_kv.sql).  Each put/delete commits on its own;
there is no transaction spanning two keys.
"""

from __future__ import annotations

import psycopg


class KeyValueStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def get(self, key: str) -> str | None:
        """Return the value for key, or None when absent or expired."""
        row = self._conn.execute(
            """
            SELECT value FROM ingest_kv
            WHERE key = %s
              AND (expires_at IS NULL OR expires_at > clock_timestamp())
            """,
            (key,),
        ).fetchone()
        return str(row[0]) if row else None

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._conn.execute(
            """
            INSERT INTO ingest_kv (key, value, expires_at, updated_at)
            VALUES (
              %s, %s,
              CASE WHEN %s::integer IS NULL THEN NULL
                   ELSE clock_timestamp() + make_interval(secs => %s::integer) END,
              clock_timestamp()
            )
            ON CONFLICT (key) DO UPDATE SET
              value = EXCLUDED.value,
              expires_at = EXCLUDED.expires_at,
              updated_at = EXCLUDED.updated_at
            """,
            (key, value, ttl_seconds, ttl_seconds),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM ingest_kv WHERE key = %s", (key,))
        self._conn.commit()
