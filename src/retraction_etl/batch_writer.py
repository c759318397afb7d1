"""retraction_etl.batch_writer

Buffered bulk upsert of Records into a snapshot table.

Every flush is a single multi-row INSERT ... ON CONFLICT statement with one
bind parameter per value, committed before the next batch is accepted.
PostgreSQL caps a statement at 65535 bind parameters, which bounds the
batch size.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg import sql

from retraction_etl.records import Record
from retraction_etl.snapshots import validate_snapshot_id

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 250
COLUMNS = ("record_id", "doi_norm_original", "doi_norm_retraction", "raw", "updated_at")
MAX_BIND_PARAMS = 65535
MAX_BATCH_SIZE = MAX_BIND_PARAMS // len(COLUMNS)


class BatchSizeError(ValueError):
    """Raised when a batch cannot fit in a single statement."""


class BatchWriter:
    """Accumulate Records and flush them as one upsert per batch.

    Usage:
        writer = BatchWriter(conn, snapshot_id)
        for record in records:
            writer.add(record)
        writer.close()
    """

    def __init__(
        self,
        conn: psycopg.Connection,
        snapshot_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if not isinstance(batch_size, int) or batch_size < 1:
            raise BatchSizeError(f"batch_size must be a positive integer, got {batch_size!r}")
        if batch_size > MAX_BATCH_SIZE:
            raise BatchSizeError(
                f"batch_size {batch_size} exceeds {MAX_BATCH_SIZE} "
                f"({MAX_BIND_PARAMS} bind parameters / {len(COLUMNS)} columns)"
            )
        self._conn = conn
        self._snapshot_id = validate_snapshot_id(snapshot_id)
        self._batch_size = batch_size
        self._pending: list[Record] = []
        self.rows_written = 0
        self.flushes = 0

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def pending(self) -> int:
        return len(self._pending)

    def add(self, record: Record) -> None:
        self._pending.append(record)
        if len(self._pending) >= self._batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._pending:
            return
        batch = _dedupe_last_wins(self._pending)
        if len(batch) > self._batch_size:
            raise BatchSizeError(f"batch of {len(batch)} exceeds limit {self._batch_size}")
        params: list = []
        for record in batch:
            params.extend(record.as_params())
        self._conn.execute(self._upsert_statement(len(batch)), params)
        self._conn.commit()
        self.rows_written += len(batch)
        self.flushes += 1
        self._pending = []
        log.debug("Flushed %d records into %s", len(batch), self._snapshot_id)

    def close(self) -> None:
        self.flush()

    def _upsert_statement(self, n_rows: int) -> sql.Composed:
        row_placeholder = sql.SQL("({})").format(
            sql.SQL(", ").join(sql.Placeholder() for _ in COLUMNS)
        )
        return sql.SQL(
            """
            INSERT INTO {table} ({columns})
            VALUES {values}
            ON CONFLICT (record_id) DO UPDATE SET
              doi_norm_original = EXCLUDED.doi_norm_original,
              doi_norm_retraction = EXCLUDED.doi_norm_retraction,
              raw = EXCLUDED.raw,
              updated_at = EXCLUDED.updated_at
            """
        ).format(
            table=sql.Identifier(validate_snapshot_id(self._snapshot_id)),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in COLUMNS),
            values=sql.SQL(", ").join(row_placeholder for _ in range(n_rows)),
        )


def _dedupe_last_wins(records: list[Record]) -> list[Record]:
    # ON CONFLICT cannot touch the same row twice in one statement.
    by_id: dict[int, Record] = {}
    for record in records:
        by_id.pop(record.record_id, None)
        by_id[record.record_id] = record
    return list(by_id.values())
