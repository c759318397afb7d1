"""End-to-end tests for run_ingest and the ingest CLI.

HTTP is faked with MagicMock sessions; PostgreSQL is real (db_conn fixture).
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests
from psycopg import sql

from retraction_etl.activation import (
    ACTIVE_TABLE_KEY,
    activate,
    read_active_snapshot,
    read_run_metadata,
)
from retraction_etl.config import IngestSettings
from retraction_etl.fetcher import FetchError
from retraction_etl.health_gate import HealthGateFailure
from retraction_etl.pipeline import run_ingest
from retraction_etl.shared import RejectWriter
from retraction_etl.snapshots import SnapshotExistsError, SnapshotManager

NOW = datetime(2025, 1, 10, 12, 0, 0, tzinfo=timezone.utc)
SETTINGS = IngestSettings(
    source_url="https://example.test/retraction_watch.csv",
    max_fetch_attempts=2,
    initial_backoff_seconds=0.0,
)
HEADER = "Record ID,Title,OriginalPaperDOI,RetractionDOI\n"
THREE_ROWS = (
    b"Record ID,OriginalPaperDOI,RetractionDOI\n"
    b"1,https://doi.org/10.1/A,\n"
    b",https://doi.org/10.1/B,\n"
    b"3,,https://doi.org/10.1/C\n"
)


def _csv(n_rows: int) -> bytes:
    lines = [HEADER]
    for n in range(1, n_rows + 1):
        lines.append(f'{n},"Paper {n}, ""part"" one",https://doi.org/10.5555/P{n},\n')
    return "".join(lines).encode("utf-8")


def _record(conn, snapshot_id, record_id):
    return conn.execute(
        sql.SQL(
            "SELECT doi_norm_original, doi_norm_retraction, raw, updated_at FROM {} "
            "WHERE record_id = %s"
        ).format(sql.Identifier(snapshot_id)),
        (record_id,),
    ).fetchone()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestRunIngest:
    def test_three_row_feed(self, db_conn, manager, kv, csv_session):
        conn, _ = db_conn
        summary = run_ingest(conn, SETTINGS, session=csv_session(THREE_ROWS), now=NOW)

        assert summary.processed_rows == 2
        assert summary.skipped_rows == 1
        assert summary.fetched_bytes == len(THREE_ROWS)
        assert summary.checksum == hashlib.sha256(THREE_ROWS).hexdigest()
        assert summary.new_snapshot_id == "entries_20250110120000"
        assert summary.previous_snapshot_id is None
        assert summary.health_check_result.passed is True

        sid = summary.new_snapshot_id
        assert manager.row_count(sid) == 2
        assert _record(conn, sid, 1)[0] == "10.1/a"
        assert _record(conn, sid, 3)[1] == "10.1/c"
        assert _record(conn, sid, 1)[3] == int(NOW.timestamp())
        assert json.loads(_record(conn, sid, 1)[2]) == {
            "Record ID": "1",
            "OriginalPaperDOI": "https://doi.org/10.1/A",
            "RetractionDOI": "",
        }

        assert read_active_snapshot(kv) == sid
        meta = read_run_metadata(kv)
        assert meta.table_name == sid
        assert meta.row_count == 2
        assert meta.checksum == summary.checksum

    def test_embedded_quotes_commas_and_newlines(self, db_conn, csv_session):
        conn, _ = db_conn
        body = (
            HEADER
            + '1,"Line one\nline two, with ""quotes""",10.1/x,\n'
            + '2,"plain",10.1/y,\n'
        ).encode("utf-8")
        summary = run_ingest(conn, SETTINGS, session=csv_session(body), now=NOW)
        assert summary.processed_rows == 2
        raw = json.loads(_record(conn, summary.new_snapshot_id, 1)[2])
        assert raw["Title"] == 'Line one\nline two, with "quotes"'

    def test_out_of_range_record_id_is_skipped(self, db_conn, kv, manager, csv_session):
        conn, _ = db_conn
        body = (
            b"Record ID,OriginalPaperDOI,RetractionDOI\n"
            b"9007199254740993,10.1/big,\n"
            b"1e30,10.1/huge,\n"
            b"2,10.1/two,\n"
        )
        summary = run_ingest(conn, SETTINGS, session=csv_session(body), now=NOW)
        assert summary.processed_rows == 2
        assert summary.skipped_rows == 1
        sid = summary.new_snapshot_id
        assert read_active_snapshot(kv) == sid
        assert _record(conn, sid, 9007199254740993)[0] == "10.1/big"
        assert manager.row_count(sid) == 2

    def test_second_run_switches_pointer(self, db_conn, kv, manager, csv_session):
        conn, _ = db_conn
        first = run_ingest(conn, SETTINGS, session=csv_session(_csv(10)), now=NOW)
        later = NOW + timedelta(days=1)
        second = run_ingest(conn, SETTINGS, session=csv_session(_csv(11)), now=later)
        assert second.previous_snapshot_id == first.new_snapshot_id
        assert second.health_check_result.previous_row_count == 10
        assert read_active_snapshot(kv) == second.new_snapshot_id
        # Previous snapshot is inside the retention window.
        assert manager.exists(first.new_snapshot_id)
        assert second.cleaned_up_snapshot_ids == []

    def test_retention_sweeps_old_snapshots(self, db_conn, manager, csv_session):
        conn, _ = db_conn
        first = run_ingest(conn, SETTINGS, session=csv_session(_csv(10)), now=NOW)
        later = NOW + timedelta(days=8)
        second = run_ingest(conn, SETTINGS, session=csv_session(_csv(10)), now=later)
        assert second.cleaned_up_snapshot_ids == [first.new_snapshot_id]
        assert manager.list_snapshots() == [second.new_snapshot_id]

    def test_rejects_written(self, db_conn, tmp_path, csv_session):
        conn, _ = db_conn
        rejects = RejectWriter(tmp_path / "rejects.csv")
        run_ingest(conn, SETTINGS, session=csv_session(THREE_ROWS), now=NOW, rejects=rejects)
        rejects.close()
        assert rejects.rows_written == 1

    def test_skip_unchanged_keeps_active_snapshot(self, db_conn, kv, manager, csv_session):
        conn, _ = db_conn
        settings = IngestSettings(
            source_url=SETTINGS.source_url, skip_unchanged=True, initial_backoff_seconds=0.0
        )
        first = run_ingest(conn, settings, session=csv_session(_csv(5)), now=NOW)
        again = run_ingest(
            conn, settings, session=csv_session(_csv(5)), now=NOW + timedelta(seconds=1)
        )
        assert again.unchanged is True
        assert read_active_snapshot(kv) == first.new_snapshot_id
        assert manager.list_snapshots() == [first.new_snapshot_id]


# ---------------------------------------------------------------------------
# Failure paths: the active pointer never moves
# ---------------------------------------------------------------------------

class TestRunIngestFailures:
    def _seed_active(self, manager, kv, seed_snapshot, n_rows):
        prev = "entries_20250109000000"
        seed_snapshot(prev, n_rows)
        activate(kv, prev, n_rows, now=NOW - timedelta(days=1))
        return prev

    def test_row_drop_rejected_and_snapshot_dropped(
        self, db_conn, manager, kv, seed_snapshot, csv_session
    ):
        conn, _ = db_conn
        prev = self._seed_active(manager, kv, seed_snapshot, 1000)
        with pytest.raises(HealthGateFailure) as excinfo:
            run_ingest(conn, SETTINGS, session=csv_session(_csv(700)), now=NOW)
        assert "row count dropped from 1000 to 700" in str(excinfo.value)
        assert read_active_snapshot(kv) == prev
        assert manager.list_snapshots() == [prev]
        assert read_run_metadata(kv).row_count == 1000

    def test_zero_row_feed_never_activated(
        self, db_conn, manager, kv, seed_snapshot, csv_session
    ):
        conn, _ = db_conn
        prev = self._seed_active(manager, kv, seed_snapshot, 3)
        with pytest.raises(HealthGateFailure) as excinfo:
            run_ingest(conn, SETTINGS, session=csv_session(HEADER.encode()), now=NOW)
        assert excinfo.value.result.checks["row_count_positive"] is False
        assert read_active_snapshot(kv) == prev
        assert manager.list_snapshots() == [prev]

    def test_zero_row_first_run_leaves_no_pointer(self, db_conn, kv, manager, csv_session):
        conn, _ = db_conn
        with pytest.raises(HealthGateFailure):
            run_ingest(conn, SETTINGS, session=csv_session(b""), now=NOW)
        assert read_active_snapshot(kv) is None
        assert manager.list_snapshots() == []

    def test_fetch_failure_creates_nothing(self, db_conn, kv, manager, csv_session):
        conn, _ = db_conn
        with pytest.raises(FetchError) as excinfo:
            run_ingest(conn, SETTINGS, session=csv_session(b"", status=404), now=NOW)
        assert excinfo.value.status_code == 404
        assert manager.list_snapshots() == []
        assert read_active_snapshot(kv) is None

    def test_id_exhaustion_closes_response(self, db_conn, manager, kv, csv_session):
        conn, _ = db_conn
        session = csv_session(_csv(3))
        with patch.object(
            SnapshotManager, "allocate_id", side_effect=SnapshotExistsError("no free id")
        ):
            with pytest.raises(SnapshotExistsError):
                run_ingest(conn, SETTINGS, session=session, now=NOW)
        session.get.return_value.close.assert_called_once()
        assert manager.list_snapshots() == []
        assert read_active_snapshot(kv) is None

    def test_naive_now_is_treated_as_utc(self, db_conn, csv_session):
        conn, _ = db_conn
        naive = NOW.replace(tzinfo=None)
        summary = run_ingest(conn, SETTINGS, session=csv_session(THREE_ROWS), now=naive)
        assert summary.new_snapshot_id == "entries_20250110120000"
        assert _record(conn, summary.new_snapshot_id, 1)[3] == int(NOW.timestamp())

    def test_interrupted_stream_drops_partial_snapshot(
        self, db_conn, manager, kv, seed_snapshot
    ):
        conn, _ = db_conn
        prev = self._seed_active(manager, kv, seed_snapshot, 3)
        resp = MagicMock()
        resp.status_code = 200
        resp.headers = {}

        def broken(chunk_size):
            yield _csv(2)
            raise requests.exceptions.ChunkedEncodingError("connection reset")

        resp.iter_content.side_effect = broken
        session = MagicMock()
        session.get.return_value = resp
        with pytest.raises(FetchError):
            run_ingest(conn, SETTINGS, session=session, now=NOW)
        assert manager.list_snapshots() == [prev]
        assert read_active_snapshot(kv) == prev


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestIngestCli:
    def test_ingest_then_status(self, db_conn, kv, csv_session):
        from click.testing import CliRunner
        from retraction_etl.ingest_cli import main

        _, dsn = db_conn
        runner = CliRunner()
        with runner.isolated_filesystem():
            with patch(
                "retraction_etl.fetcher.requests.Session",
                return_value=csv_session(THREE_ROWS),
            ):
                result = runner.invoke(main, [
                    "--db-dsn", dsn,
                    "--source-url", SETTINGS.source_url,
                    "--run-id", "test-run",
                ], env={"RETRACTION_SOURCE_URL": ""})
            assert result.exit_code == 0, result.output
            assert "[test-run] Active snapshot: entries_" in result.output
            assert "Overall: PASS" in result.output

            status = runner.invoke(main, ["--db-dsn", dsn, "--mode", "status"])
        assert status.exit_code == 0, status.output
        assert read_active_snapshot(kv) in status.output
        assert '"rowCount": 2' in status.output

    def test_health_failure_exits_nonzero(self, db_conn, kv, seed_snapshot, csv_session):
        from click.testing import CliRunner
        from retraction_etl.ingest_cli import main

        _, dsn = db_conn
        seed_snapshot("entries_20250109000000", 1000)
        kv.put(ACTIVE_TABLE_KEY, "entries_20250109000000")
        runner = CliRunner()
        with runner.isolated_filesystem():
            with patch(
                "retraction_etl.fetcher.requests.Session",
                return_value=csv_session(_csv(10)),
            ):
                result = runner.invoke(main, ["--db-dsn", dsn, "--run-id", "r1"])
        assert result.exit_code == 1
        assert "Overall: FAIL" in result.output
        assert read_active_snapshot(kv) == "entries_20250109000000"
