"""retraction_etl.records

Row validation and normalization into snapshot Records.

A row is accepted only when its "Record ID" cell parses as a positive
integer.  Rejections are never fatal: they are tallied, logged for the first
few occurrences, and optionally written to a reject CSV.

The scan returns an explicit ScanTally instead of mutating shared counters,
so validate_row / to_record / load_records can be exercised with plain
in-memory inputs.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from retraction_etl.normalize import normalize_doi, parse_record_id
from retraction_etl.shared import RejectWriter

log = logging.getLogger(__name__)

RECORD_ID_COLUMN = "Record ID"
ORIGINAL_DOI_COLUMN = "OriginalPaperDOI"
RETRACTION_DOI_COLUMN = "RetractionDOI"

REJECT_INVALID_RECORD_ID = "missing/invalid Record ID"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Record:
    record_id: int
    doi_norm_original: str | None
    doi_norm_retraction: str | None
    raw: str
    updated_at: int

    def as_params(self) -> tuple[Any, ...]:
        return (
            self.record_id,
            self.doi_norm_original,
            self.doi_norm_retraction,
            self.raw,
            self.updated_at,
        )


@dataclass(frozen=True)
class ValidationResult:
    accept: bool
    reason: str | None = None


@dataclass(frozen=True)
class ScanTally:
    processed: int = 0
    skipped: int = 0
    last_row_number: int = 0

    def accepted(self, row_number: int) -> ScanTally:
        return ScanTally(self.processed + 1, self.skipped, row_number)

    def rejected(self, row_number: int) -> ScanTally:
        return ScanTally(self.processed, self.skipped + 1, row_number)


class RecordSink(Protocol):
    def add(self, record: Record) -> None: ...


# ---------------------------------------------------------------------------
# Validation + normalization
# ---------------------------------------------------------------------------

def validate_row(row: dict[str, str], row_number: int) -> ValidationResult:
    """Decide whether a CSV row becomes a Record."""
    if parse_record_id(row.get(RECORD_ID_COLUMN)) is None:
        return ValidationResult(False, REJECT_INVALID_RECORD_ID)
    return ValidationResult(True)


def _safe_normalize(normalizer: Callable[[str | None], str | None], value: str | None) -> str | None:
    try:
        return normalizer(value) or None
    except Exception as exc:  # noqa: BLE001
        log.debug("DOI normalizer raised on %r (%s); storing NULL", value, exc)
        return None


def to_record(
    row: dict[str, str],
    ingested_at: int,
    normalizer: Callable[[str | None], str | None] = normalize_doi,
) -> Record:
    """Normalize an accepted row.  Caller must have validated it."""
    record_id = parse_record_id(row.get(RECORD_ID_COLUMN))
    if record_id is None:
        raise ValueError(f"row has no valid {RECORD_ID_COLUMN!r}; validate_row first")
    return Record(
        record_id=record_id,
        doi_norm_original=_safe_normalize(normalizer, row.get(ORIGINAL_DOI_COLUMN)),
        doi_norm_retraction=_safe_normalize(normalizer, row.get(RETRACTION_DOI_COLUMN)),
        raw=json.dumps(row, ensure_ascii=False),
        updated_at=ingested_at,
    )


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------

def load_records(
    records: Iterable[tuple[int, dict[str, str]]],
    sink: RecordSink,
    ingested_at: int,
    normalizer: Callable[[str | None], str | None] = normalize_doi,
    reject_log_limit: int = 5,
    rejects: RejectWriter | None = None,
) -> ScanTally:
    """Validate each (row_number, row) in stream order and hand accepted
    Records to sink.  Returns the final tally."""
    tally = ScanTally()
    for row_number, row in records:
        result = validate_row(row, row_number)
        if not result.accept:
            tally = tally.rejected(row_number)
            if tally.skipped <= reject_log_limit:
                log.warning("Skipping row %d: %s", row_number, result.reason)
            elif tally.skipped == reject_log_limit + 1:
                log.warning("Further row rejections will not be logged individually.")
            if rejects is not None:
                rejects.write(row, result.reason or "rejected")
            continue
        sink.add(to_record(row, ingested_at, normalizer))
        tally = tally.accepted(row_number)
    return tally
