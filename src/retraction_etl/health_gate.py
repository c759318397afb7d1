"""retraction_etl.health_gate

Acceptance checks a freshly loaded snapshot must pass before activation.

Checks (all run; failures are aggregated, never short-circuited):
    row_count_positive   -- the snapshot has at least one row.
    row_count_ratio      -- when the previous snapshot has rows, the new one
                            has at least min_row_ratio (80%) of them; guards
                            against a silently truncated upstream file.
    original_doi_sample  -- at least one row has doi_norm_original.
    doi_null_ratio       -- fewer than max_null_ratio (50%) of rows have
                            both DOI columns NULL.
    indexes_present      -- both DOI lookup indexes exist.

passed is true iff no check failed AND row_count > 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from psycopg import sql

from retraction_etl.snapshots import (
    SnapshotManager,
    index_names,
    is_snapshot_id,
    validate_snapshot_id,
)

log = logging.getLogger(__name__)

DEFAULT_MIN_ROW_RATIO = 0.8
DEFAULT_MAX_NULL_RATIO = 0.5


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class HealthCheckResult:
    snapshot_id: str
    previous_snapshot_id: str | None
    row_count: int
    previous_row_count: int | None
    both_doi_null_rows: int
    checks: dict[str, bool] = field(default_factory=dict)
    failures: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures and self.row_count > 0

    def to_dict(self) -> dict:
        return {
            "snapshot_id": self.snapshot_id,
            "previous_snapshot_id": self.previous_snapshot_id,
            "row_count": self.row_count,
            "previous_row_count": self.previous_row_count,
            "both_doi_null_rows": self.both_doi_null_rows,
            "checks": dict(self.checks),
            "failures": list(self.failures),
            "notes": list(self.notes),
            "passed": self.passed,
        }


class HealthGateFailure(RuntimeError):
    """Raised when a snapshot fails one or more health checks."""

    def __init__(self, result: HealthCheckResult) -> None:
        self.result = result
        super().__init__("; ".join(result.failures) or "health gate failed")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate(
    manager: SnapshotManager,
    new_id: str,
    previous_id: str | None,
    min_row_ratio: float = DEFAULT_MIN_ROW_RATIO,
    max_null_ratio: float = DEFAULT_MAX_NULL_RATIO,
) -> HealthCheckResult:
    """Run every check against new_id.  Read-only."""
    validate_snapshot_id(new_id)
    conn = manager.conn

    row_count = manager.row_count(new_id)
    stats = conn.execute(
        sql.SQL(
            """
            SELECT
              COUNT(*) FILTER (WHERE doi_norm_original IS NOT NULL) AS with_original,
              COUNT(*) FILTER (
                WHERE doi_norm_original IS NULL AND doi_norm_retraction IS NULL
              ) AS both_null
            FROM {}
            """
        ).format(sql.Identifier(new_id))
    ).fetchone()
    with_original = int(stats[0])
    both_null = int(stats[1])

    result = HealthCheckResult(
        snapshot_id=new_id,
        previous_snapshot_id=previous_id,
        row_count=row_count,
        previous_row_count=None,
        both_doi_null_rows=both_null,
    )

    # 1. Non-empty
    ok = row_count > 0
    result.checks["row_count_positive"] = ok
    if not ok:
        result.failures.append(f"snapshot {new_id} has no rows")

    # 2. Row-count drop versus the previous snapshot
    ok = True
    if previous_id and previous_id != new_id:
        if not is_snapshot_id(previous_id):
            result.notes.append(
                f"previous pointer {previous_id!r} is not a snapshot id; row-count comparison skipped"
            )
        elif not manager.exists(previous_id):
            result.notes.append(f"previous snapshot {previous_id} no longer exists")
        else:
            prev_count = manager.row_count(previous_id)
            result.previous_row_count = prev_count
            if prev_count > 0 and row_count < prev_count * min_row_ratio:
                ok = False
                result.failures.append(
                    f"row count dropped from {prev_count} to {row_count} "
                    f"({row_count / prev_count:.1%} < {min_row_ratio:.0%} of previous {previous_id})"
                )
    result.checks["row_count_ratio"] = ok

    # 3. Sample reachability
    ok = with_original > 0
    result.checks["original_doi_sample"] = ok
    if not ok:
        result.failures.append("no rows have a normalized OriginalPaperDOI")

    # 4. Data-quality floor
    ok = True
    if row_count > 0:
        null_ratio = both_null / row_count
        if null_ratio >= max_null_ratio:
            ok = False
            result.failures.append(
                f"{both_null} of {row_count} rows ({null_ratio:.1%}) have no DOI "
                f"(limit < {max_null_ratio:.0%})"
            )
    result.checks["doi_null_ratio"] = ok

    # 5. Indexes
    expected = set(index_names(new_id))
    missing = sorted(expected - manager.existing_indexes(new_id))
    ok = not missing
    result.checks["indexes_present"] = ok
    if not ok:
        result.failures.append(f"missing indexes: {', '.join(missing)}")

    if result.passed:
        log.info("Health gate PASS for %s (%d rows)", new_id, row_count)
    else:
        log.warning("Health gate FAIL for %s: %s", new_id, "; ".join(result.failures))
    return result


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_health_report(result: HealthCheckResult) -> str:
    lines = [
        "=" * 70,
        "Snapshot Health Gate",
        f"  snapshot:  {result.snapshot_id}",
        f"  previous:  {result.previous_snapshot_id or 'n/a'}",
        "=" * 70,
        f"  rows:               {result.row_count}",
        f"  previous rows:      "
        f"{result.previous_row_count if result.previous_row_count is not None else 'n/a'}",
        f"  rows with no DOI:   {result.both_doi_null_rows}",
    ]
    for name, ok in result.checks.items():
        lines.append(f"  [{'PASS' if ok else 'FAIL'}] {name}")
    for failure in result.failures:
        lines.append(f"    failure: {failure}")
    for note in result.notes:
        lines.append(f"    note: {note}")
    lines.append("=" * 70)
    lines.append(f"  Overall: {'PASS' if result.passed else 'FAIL'}")
    lines.append("=" * 70)
    return "\n".join(lines)
