"""Integration test fixtures.

Applies the ingest_kv migration against an ephemeral PostgreSQL database
provided by pytest-postgresql before any integration test runs.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import psycopg
import pytest
from pytest_postgresql import factories

from retraction_etl.batch_writer import BatchWriter
from retraction_etl.kv_store import KeyValueStore
from retraction_etl.records import Record
from retraction_etl.snapshots import SnapshotManager

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_ingest_kv.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations once per test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (psycopg connection, dsn) with schema applied.

    Each test gets a fresh database via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def manager(db_conn):
    conn, _ = db_conn
    return SnapshotManager(conn)


@pytest.fixture
def kv(db_conn):
    conn, _ = db_conn
    return KeyValueStore(conn)


# ---------------------------------------------------------------------------
# Factory fixtures shared by integration modules
# ---------------------------------------------------------------------------

@pytest.fixture
def seed_snapshot(manager):
    """Return a callable that creates a snapshot holding n_rows synthetic records."""

    def _seed(snapshot_id: str, n_rows: int, with_dois: bool = True, indexed: bool = True) -> None:
        manager.create(snapshot_id)
        writer = BatchWriter(manager.conn, snapshot_id, batch_size=500)
        for n in range(1, n_rows + 1):
            doi = f"10.1000/{n}" if with_dois else None
            writer.add(Record(n, doi, None, f'{{"Record ID": "{n}"}}', 0))
        writer.close()
        if indexed:
            manager.index_after_load(snapshot_id)

    return _seed


@pytest.fixture
def csv_session():
    """Return a factory for fake requests.Session objects streaming a body."""

    def _session(body: bytes, status: int = 200) -> MagicMock:
        resp = MagicMock()
        resp.status_code = status
        resp.headers = {}
        resp.iter_content.side_effect = lambda chunk_size: iter(
            [body[i:i + 7] for i in range(0, len(body), 7)]
        )
        session = MagicMock()
        session.get.return_value = resp
        return session

    return _session
