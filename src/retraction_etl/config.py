"""retraction_etl.config

YAML-backed settings for the ingest pipeline.

Responsibilities:
  - Load an optional YAML file (config/ingest.yml) and validate it
  - Apply the RETRACTION_SOURCE_URL environment override
  - Fall back to built-in defaults for every key

Usage:
    from pathlib import Path
    from retraction_etl.config import load_settings

    settings = load_settings(Path("config/ingest.yml"))
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from retraction_etl.batch_writer import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE

DEFAULT_SOURCE_URL = (
    "https://gitlab.com/crossref/retraction-watch-data/-/raw/main/retraction_watch.csv"
)
SOURCE_URL_ENV = "RETRACTION_SOURCE_URL"


class SettingsValidationError(ValueError):
    """Raised when a settings file or override fails validation."""


@dataclass(frozen=True)
class IngestSettings:
    source_url: str = DEFAULT_SOURCE_URL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_fetch_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    fetch_timeout_seconds: float = 60.0
    min_row_ratio: float = 0.8
    max_null_doi_ratio: float = 0.5
    retention_days: int = 7
    reject_log_limit: int = 5
    skip_unchanged: bool = False

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    def with_source_url(self, source_url: str | None) -> IngestSettings:
        if not source_url:
            return self
        return replace(self, source_url=source_url)


_INT_KEYS = {"batch_size", "max_fetch_attempts", "retention_days", "reject_log_limit"}
_FLOAT_KEYS = {"initial_backoff_seconds", "fetch_timeout_seconds", "min_row_ratio", "max_null_doi_ratio"}
_RATIO_KEYS = {"min_row_ratio", "max_null_doi_ratio"}
_KNOWN_KEYS = {f.name for f in fields(IngestSettings)}


def validate_settings_data(data: Any) -> dict[str, Any]:
    """Return a cleaned copy of data or raise SettingsValidationError."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    clean: dict[str, Any] = {}
    for key, val in data.items():
        if key == "source_url":
            if not isinstance(val, str) or not val.strip():
                raise SettingsValidationError("'source_url' must be a non-empty string.")
            clean[key] = val.strip()
        elif key == "skip_unchanged":
            if not isinstance(val, bool):
                raise SettingsValidationError("'skip_unchanged' must be true or false.")
            clean[key] = val
        elif key in _INT_KEYS:
            if isinstance(val, bool) or not isinstance(val, int):
                raise SettingsValidationError(f"'{key}' value {val!r} is not an integer.")
            if val < (0 if key == "reject_log_limit" else 1):
                raise SettingsValidationError(f"'{key}' value {val} is out of range.")
            clean[key] = val
        elif key in _FLOAT_KEYS:
            try:
                fval = float(val)
            except (TypeError, ValueError):
                raise SettingsValidationError(f"'{key}' value {val!r} is not numeric.")
            if key in _RATIO_KEYS and not (0.0 < fval <= 1.0):
                raise SettingsValidationError(f"'{key}' value {fval} must be in (0.0, 1.0].")
            if key not in _RATIO_KEYS and fval < 0:
                raise SettingsValidationError(f"'{key}' value {fval} must be >= 0.")
            clean[key] = fval

    if clean.get("batch_size", DEFAULT_BATCH_SIZE) > MAX_BATCH_SIZE:
        raise SettingsValidationError(
            f"'batch_size' must be <= {MAX_BATCH_SIZE} (statement parameter limit)."
        )
    return clean


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> IngestSettings:
    """Build IngestSettings from defaults, an optional YAML file, then env.

    Raises:
        SettingsValidationError: If the YAML content is invalid.
        FileNotFoundError: If path is given but does not exist.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}
    if path is not None:
        data = validate_settings_data(yaml.safe_load(path.read_text(encoding="utf-8")))
    settings = IngestSettings(**data)
    return settings.with_source_url(env.get(SOURCE_URL_ENV))
