"""retraction_etl.ingest_cli

CLI entrypoint for the Retraction Watch snapshot pipeline.

Modes (--mode):
  ingest  -- fetch, load, health-check and activate a new snapshot (default)
  status  -- print the active snapshot pointer and its run metadata
  sweep   -- drop snapshots older than the retention window

Usage (ingest):
    python -m retraction_etl.ingest_cli \\
        --mode ingest \\
        --db-dsn "$RETRACTION_DB_DSN" \\
        --config config/ingest.yml \\
        --rejects-path artifacts/rejects/retraction_rejects.csv

Usage (status):
    python -m retraction_etl.ingest_cli --mode status --db-dsn "$RETRACTION_DB_DSN"
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from retraction_etl.activation import (
    read_active_snapshot,
    read_run_metadata,
    sweep_expired_snapshots,
)
from retraction_etl.config import IngestSettings, SettingsValidationError, load_settings
from retraction_etl.fetcher import FetchError
from retraction_etl.health_gate import HealthGateFailure, build_health_report
from retraction_etl.kv_store import KeyValueStore
from retraction_etl.pipeline import run_ingest
from retraction_etl.shared import RejectWriter, write_run_report
from retraction_etl.snapshots import SnapshotManager


@click.command()
@click.option(
    "--mode",
    type=click.Choice(["ingest", "status", "sweep"]),
    default="ingest",
    show_default=True,
)
@click.option("--db-dsn", required=True, envvar="RETRACTION_DB_DSN", help="PostgreSQL DSN")
@click.option("--source-url", default=None, help="[ingest] Override the upstream CSV URL")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML settings file (see config/ingest.yml)",
)
@click.option(
    "--rejects-path",
    default=None,
    type=click.Path(),
    help="[ingest] Write rejected rows to this CSV",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="INFO",
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    source_url: str | None,
    config_path: str | None,
    rejects_path: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Retraction Watch snapshot ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except SettingsValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid settings: {exc}", err=True)
        sys.exit(1)
    settings = settings.with_source_url(source_url)

    click.echo(f"[{run_id}] Starting {mode} run")

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        kv = KeyValueStore(conn)
        if mode == "status":
            _print_status(kv, run_id)
            return
        if mode == "sweep":
            dropped = sweep_expired_snapshots(
                SnapshotManager(conn), kv, retention=settings.retention
            )
            click.echo(f"[{run_id}] Dropped {len(dropped)} snapshot(s): {dropped}")
            return
        _run_ingest_mode(conn, settings, run_id, started_at, rejects_path)
    finally:
        conn.close()


def _print_status(kv: KeyValueStore, run_id: str) -> None:
    active = read_active_snapshot(kv)
    metadata = read_run_metadata(kv)
    click.echo(f"[{run_id}] active_table: {active or '(none)'}")
    if metadata is None:
        click.echo(f"[{run_id}] metadata: (none)")
        return
    click.echo(json.dumps({
        "tableName": metadata.table_name,
        "rowCount": metadata.row_count,
        "updatedAt": metadata.updated_at,
        "checksum": metadata.checksum,
    }, indent=2))


def _run_ingest_mode(
    conn: psycopg.Connection,
    settings: IngestSettings,
    run_id: str,
    started_at: str,
    rejects_path: str | None,
) -> None:
    rejects = RejectWriter(Path(rejects_path)) if rejects_path else None
    click.echo(f"[{run_id}] source_url={settings.source_url}")
    try:
        summary = run_ingest(conn, settings, rejects=rejects)
    except HealthGateFailure as exc:
        click.echo(build_health_report(exc.result))
        _report_failure(run_id, started_at, settings.source_url, "health_gate_failed", exc,
                        {"health_check_result": exc.result.to_dict()})
    except FetchError as exc:
        _report_failure(run_id, started_at, settings.source_url, "fetch_failed", exc,
                        {"status_code": exc.status_code, "attempts": exc.attempts})
    except Exception as exc:
        _report_failure(run_id, started_at, settings.source_url, "error", exc, {})
        raise
    finally:
        if rejects is not None:
            rejects.close()

    click.echo(build_health_report(summary.health_check_result))
    report_path = write_run_report(
        run_id, started_at, "ingest", settings.source_url, "success", summary.to_dict()
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(summary.to_dict(), indent=2, default=str))
    if summary.unchanged:
        click.echo(f"[{run_id}] Feed unchanged; active snapshot kept.")
    else:
        click.echo(f"[{run_id}] Active snapshot: {summary.new_snapshot_id}")
    click.echo(f"[{run_id}] Done.")


def _report_failure(
    run_id: str,
    started_at: str,
    source_url: str,
    outcome: str,
    exc: Exception,
    payload: dict,
) -> None:
    report_path = write_run_report(
        run_id, started_at, "ingest", source_url, outcome,
        {"error": str(exc), **payload},
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(f"[{run_id}] FAIL ({outcome}): {exc}", err=True)
    if outcome != "error":
        sys.exit(1)


if __name__ == "__main__":
    main()
