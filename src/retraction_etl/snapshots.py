"""retraction_etl.snapshots

Blue-green snapshot tables for the retraction dataset.

Each ingest run loads into its own table named after the UTC second it was
created (entries_YYYYMMDDHHMMSS, with an _NN suffix only when two runs
collide in the same second).  Table and index names have to be spliced into
DDL, so every statement that uses an id calls validate_snapshot_id() first;
new_snapshot_id() is the only way ids are produced.

Lookup indexes are built after the bulk load, not before.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

import psycopg
from psycopg import sql

log = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "entries_"
SNAPSHOT_TS_FORMAT = "%Y%m%d%H%M%S"
SNAPSHOT_ID_RE = re.compile(r"^entries_(\d{14})(?:_(\d{2}))?$")
MAX_COLLISION_SUFFIX = 99


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InvalidIdentifier(ValueError):
    """Raised when a snapshot id does not match the generated-name pattern."""


class SnapshotExistsError(RuntimeError):
    """Raised when no free snapshot id can be allocated for this second."""


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------

def new_snapshot_id(now: datetime | None = None, suffix: int | None = None) -> str:
    """Derive a snapshot id from a UTC instant (second resolution)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    snapshot_id = f"{SNAPSHOT_PREFIX}{now.strftime(SNAPSHOT_TS_FORMAT)}"
    if suffix is not None:
        snapshot_id = f"{snapshot_id}_{suffix:02d}"
    return validate_snapshot_id(snapshot_id)


def is_snapshot_id(value: str | None) -> bool:
    return bool(value) and SNAPSHOT_ID_RE.fullmatch(value) is not None


def validate_snapshot_id(value: str) -> str:
    """Return value unchanged, or raise InvalidIdentifier."""
    if not isinstance(value, str) or SNAPSHOT_ID_RE.fullmatch(value) is None:
        raise InvalidIdentifier(f"invalid snapshot identifier: {value!r}")
    return value


def snapshot_timestamp(snapshot_id: str) -> datetime:
    """Decode the UTC creation instant embedded in a snapshot id."""
    m = SNAPSHOT_ID_RE.fullmatch(validate_snapshot_id(snapshot_id))
    ts = datetime.strptime(m.group(1), SNAPSHOT_TS_FORMAT)
    return ts.replace(tzinfo=timezone.utc)


def index_names(snapshot_id: str) -> tuple[str, str]:
    """Return (original_doi_index, retraction_doi_index) for a snapshot."""
    validate_snapshot_id(snapshot_id)
    return (f"idx_{snapshot_id}_doi_original", f"idx_{snapshot_id}_doi_retraction")


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class SnapshotManager:
    """DDL and bookkeeping for snapshot tables.  Each operation commits."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> psycopg.Connection:
        return self._conn

    def allocate_id(self, now: datetime | None = None) -> str:
        """Return an unused snapshot id for now, suffixing on collision."""
        now = now or datetime.now(timezone.utc)
        candidate = new_snapshot_id(now)
        if not self.exists(candidate):
            return candidate
        for suffix in range(1, MAX_COLLISION_SUFFIX + 1):
            candidate = new_snapshot_id(now, suffix)
            if not self.exists(candidate):
                log.warning("Snapshot id collision; using %s", candidate)
                return candidate
        raise SnapshotExistsError(
            f"no free snapshot id for {new_snapshot_id(now)} "
            f"after {MAX_COLLISION_SUFFIX} suffixes"
        )

    def exists(self, snapshot_id: str) -> bool:
        validate_snapshot_id(snapshot_id)
        row = self._conn.execute(
            "SELECT to_regclass(%s) IS NOT NULL",
            (f"public.{snapshot_id}",),
        ).fetchone()
        return bool(row[0])

    def create(self, snapshot_id: str) -> None:
        validate_snapshot_id(snapshot_id)
        self._conn.execute(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {} (
                  record_id BIGINT PRIMARY KEY,
                  doi_norm_original TEXT,
                  doi_norm_retraction TEXT,
                  raw TEXT NOT NULL,
                  updated_at BIGINT NOT NULL
                )
                """
            ).format(sql.Identifier(snapshot_id))
        )
        self._conn.commit()
        log.info("Created snapshot table %s", snapshot_id)

    def index_after_load(self, snapshot_id: str) -> bool:
        """Create both DOI lookup indexes.  Returns False on failure."""
        validate_snapshot_id(snapshot_id)
        idx_original, idx_retraction = index_names(snapshot_id)
        try:
            for idx_name, column in (
                (idx_original, "doi_norm_original"),
                (idx_retraction, "doi_norm_retraction"),
            ):
                self._conn.execute(
                    sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} ({})").format(
                        sql.Identifier(idx_name),
                        sql.Identifier(snapshot_id),
                        sql.Identifier(column),
                    )
                )
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            log.error("Index build failed for %s: %s", snapshot_id, exc)
            return False
        log.info("Indexed snapshot %s", snapshot_id)
        return True

    def drop(self, snapshot_id: str) -> None:
        validate_snapshot_id(snapshot_id)
        self._conn.execute(
            sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(snapshot_id))
        )
        self._conn.commit()
        log.info("Dropped snapshot table %s", snapshot_id)

    def row_count(self, snapshot_id: str) -> int:
        validate_snapshot_id(snapshot_id)
        row = self._conn.execute(
            sql.SQL("SELECT count(*) FROM {}").format(sql.Identifier(snapshot_id))
        ).fetchone()
        return int(row[0])

    def existing_indexes(self, snapshot_id: str) -> set[str]:
        validate_snapshot_id(snapshot_id)
        rows = self._conn.execute(
            """
            SELECT indexname FROM pg_indexes
            WHERE schemaname = 'public' AND tablename = %s
            """,
            (snapshot_id,),
        ).fetchall()
        return {str(r[0]) for r in rows}

    def list_snapshots(self) -> list[str]:
        """Return every snapshot-pattern table in the public schema, oldest first."""
        rows = self._conn.execute(
            """
            SELECT tablename FROM pg_tables
            WHERE schemaname = 'public' AND tablename LIKE %s
            ORDER BY tablename ASC
            """,
            ("entries\\_%",),
        ).fetchall()
        return [str(r[0]) for r in rows if is_snapshot_id(str(r[0]))]
