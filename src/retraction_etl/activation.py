"""retraction_etl.activation

Active-snapshot pointer, run metadata, and the retention sweep.

The pointer (active_table) and the metadata (ingest:metadata) are two
independent writes with no transaction across them: if two runs overlap,
whichever write lands last wins.  The metadata is a denormalized cache for
freshness reporting; the snapshot table itself is authoritative.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg

from retraction_etl.kv_store import KeyValueStore
from retraction_etl.snapshots import (
    InvalidIdentifier,
    SnapshotManager,
    is_snapshot_id,
    snapshot_timestamp,
)

log = logging.getLogger(__name__)

ACTIVE_TABLE_KEY = "active_table"
METADATA_KEY = "ingest:metadata"
DEFAULT_RETENTION = timedelta(days=7)


class CleanupError(RuntimeError):
    """Raised (and swallowed by the sweeper) when a retention drop fails."""


# ---------------------------------------------------------------------------
# Run metadata
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunMetadata:
    table_name: str
    row_count: int
    updated_at: str
    checksum: str | None = None

    def to_json(self) -> str:
        return json.dumps({
            "tableName": self.table_name,
            "rowCount": self.row_count,
            "updatedAt": self.updated_at,
            "checksum": self.checksum,
        })

    @classmethod
    def from_json(cls, raw: str) -> RunMetadata:
        data: dict[str, Any] = json.loads(raw)
        return cls(
            table_name=str(data["tableName"]),
            row_count=int(data["rowCount"]),
            updated_at=str(data["updatedAt"]),
            checksum=data.get("checksum"),
        )


# ---------------------------------------------------------------------------
# Pointer
# ---------------------------------------------------------------------------

def read_active_snapshot(kv: KeyValueStore) -> str | None:
    """Return the live snapshot id, or None when nothing has been activated."""
    value = kv.get(ACTIVE_TABLE_KEY)
    return value or None


def read_run_metadata(kv: KeyValueStore) -> RunMetadata | None:
    raw = kv.get(METADATA_KEY)
    if not raw:
        return None
    try:
        return RunMetadata.from_json(raw)
    except (ValueError, KeyError, TypeError) as exc:
        log.warning("Ignoring unreadable %s entry: %s", METADATA_KEY, exc)
        return None


def activate(
    kv: KeyValueStore,
    snapshot_id: str,
    row_count: int,
    checksum: str | None = None,
    now: datetime | None = None,
) -> RunMetadata:
    """Point readers at snapshot_id, then record RunMetadata.

    Only call after the snapshot has passed the health gate.
    """
    if not is_snapshot_id(snapshot_id):
        raise InvalidIdentifier(f"refusing to activate {snapshot_id!r}")
    now = now or datetime.now(timezone.utc)
    metadata = RunMetadata(
        table_name=snapshot_id,
        row_count=row_count,
        updated_at=now.isoformat(),
        checksum=checksum,
    )
    kv.put(ACTIVE_TABLE_KEY, snapshot_id)
    kv.put(METADATA_KEY, metadata.to_json())
    log.info("Activated snapshot %s (%d rows)", snapshot_id, row_count)
    return metadata


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def sweep_expired_snapshots(
    manager: SnapshotManager,
    kv: KeyValueStore,
    keep: Iterable[str] = (),
    retention: timedelta = DEFAULT_RETENTION,
    now: datetime | None = None,
) -> list[str]:
    """Drop snapshots older than retention.  Returns the ids dropped.

    The current pointer value and every id in keep are never dropped.
    A failed drop is logged and skipped.  A naive now is taken as UTC.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    cutoff = now - retention
    protected = set(keep)
    active = read_active_snapshot(kv)
    if active:
        protected.add(active)

    dropped: list[str] = []
    for snapshot_id in manager.list_snapshots():
        if snapshot_id in protected:
            continue
        if snapshot_timestamp(snapshot_id) >= cutoff:
            continue
        try:
            _drop_for_retention(manager, snapshot_id)
        except CleanupError as exc:
            log.warning("Retention cleanup failed: %s", exc)
            continue
        dropped.append(snapshot_id)
    if dropped:
        log.info("Retention sweep dropped %d snapshot(s): %s", len(dropped), ", ".join(dropped))
    return dropped


def _drop_for_retention(manager: SnapshotManager, snapshot_id: str) -> None:
    try:
        manager.drop(snapshot_id)
    except psycopg.Error as exc:
        manager.conn.rollback()
        raise CleanupError(f"could not drop {snapshot_id}: {exc}") from exc
