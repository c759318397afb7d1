"""retraction_etl.pipeline

Ingest orchestrator: refresh the retraction dataset as a new snapshot and
switch readers to it only once it has passed the health gate.

Processing order:
  1.  Fetch the upstream CSV (FetchError aborts before any DDL)
  2.  Read the current active pointer (previous snapshot)
  3.  Allocate + create the new snapshot table
  4.  Stream: bytes -> logical rows -> records -> batched upserts
      (any failure here drops the new snapshot and re-raises)
  5.  Build DOI indexes on the loaded snapshot
  6.  Health gate; on failure drop the snapshot, raise HealthGateFailure
  7.  Optional unchanged-feed short circuit (settings.skip_unchanged)
  8.  Activate: pointer, then RunMetadata
  9.  Retention sweep (best effort)

updated_at is fixed once per run so every record of a snapshot carries the
same ingestion timestamp.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import psycopg
import requests

from retraction_etl.activation import (
    activate,
    read_active_snapshot,
    read_run_metadata,
    sweep_expired_snapshots,
)
from retraction_etl.batch_writer import BatchWriter
from retraction_etl.config import IngestSettings
from retraction_etl.csv_stream import decode_stream, iter_csv_records
from retraction_etl.fetcher import fetch_csv
from retraction_etl.health_gate import HealthCheckResult, HealthGateFailure, evaluate
from retraction_etl.kv_store import KeyValueStore
from retraction_etl.records import load_records
from retraction_etl.shared import RejectWriter
from retraction_etl.snapshots import SnapshotManager

log = logging.getLogger(__name__)


@dataclass
class IngestSummary:
    fetched_bytes: int
    processed_rows: int
    skipped_rows: int
    new_snapshot_id: str
    previous_snapshot_id: str | None
    health_check_result: HealthCheckResult
    cleaned_up_snapshot_ids: list[str] = field(default_factory=list)
    checksum: str | None = None
    unchanged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched_bytes": self.fetched_bytes,
            "processed_rows": self.processed_rows,
            "skipped_rows": self.skipped_rows,
            "new_snapshot_id": self.new_snapshot_id,
            "previous_snapshot_id": self.previous_snapshot_id,
            "health_check_result": self.health_check_result.to_dict(),
            "cleaned_up_snapshot_ids": list(self.cleaned_up_snapshot_ids),
            "checksum": self.checksum,
            "unchanged": self.unchanged,
        }


def run_ingest(
    conn: psycopg.Connection,
    settings: IngestSettings,
    session: requests.Session | None = None,
    now: datetime | None = None,
    rejects: RejectWriter | None = None,
) -> IngestSummary:
    """Run one full ingest.  Returns a summary or raises the first fatal error."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    ingested_at = int(now.timestamp())
    manager = SnapshotManager(conn)
    kv = KeyValueStore(conn)

    fetched = fetch_csv(
        settings.source_url,
        session=session,
        max_attempts=settings.max_fetch_attempts,
        initial_delay=settings.initial_backoff_seconds,
        timeout=settings.fetch_timeout_seconds,
    )

    try:
        previous_id = read_active_snapshot(kv)
        snapshot_id = manager.allocate_id(now)
        log.info("Loading %s into %s (previous=%s)", settings.source_url, snapshot_id, previous_id)
        try:
            manager.create(snapshot_id)
            writer = BatchWriter(conn, snapshot_id, settings.batch_size)
            rows = decode_stream(fetched.iter_chunks())
            tally = load_records(
                iter_csv_records(rows),
                writer,
                ingested_at,
                reject_log_limit=settings.reject_log_limit,
                rejects=rejects,
            )
            writer.close()
        except Exception:
            conn.rollback()
            log.error("Load into %s failed; dropping it", snapshot_id)
            manager.drop(snapshot_id)
            raise
    finally:
        fetched.close()

    log.info(
        "Loaded %s: processed=%d skipped=%d bytes=%d",
        snapshot_id, tally.processed, tally.skipped, fetched.bytes_read,
    )

    if not manager.index_after_load(snapshot_id):
        log.warning("Snapshot %s is not index-ready; health gate will fail it", snapshot_id)

    result = evaluate(
        manager,
        snapshot_id,
        previous_id,
        min_row_ratio=settings.min_row_ratio,
        max_null_ratio=settings.max_null_doi_ratio,
    )
    if not result.passed:
        manager.drop(snapshot_id)
        raise HealthGateFailure(result)

    summary = IngestSummary(
        fetched_bytes=fetched.bytes_read,
        processed_rows=tally.processed,
        skipped_rows=tally.skipped,
        new_snapshot_id=snapshot_id,
        previous_snapshot_id=previous_id,
        health_check_result=result,
        checksum=fetched.checksum,
    )

    if settings.skip_unchanged and previous_id:
        metadata = read_run_metadata(kv)
        if (
            metadata is not None
            and metadata.table_name == previous_id
            and metadata.checksum == fetched.checksum
        ):
            log.info("Feed unchanged since %s; discarding %s", previous_id, snapshot_id)
            manager.drop(snapshot_id)
            summary.unchanged = True
            return summary

    activate(kv, snapshot_id, result.row_count, checksum=fetched.checksum, now=now)

    summary.cleaned_up_snapshot_ids = sweep_expired_snapshots(
        manager,
        kv,
        keep=(snapshot_id,),
        retention=settings.retention,
        now=now,
    )
    return summary
