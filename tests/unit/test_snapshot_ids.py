"""Unit tests for snapshot identifier helpers (no database)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from retraction_etl.snapshots import (
    InvalidIdentifier,
    index_names,
    is_snapshot_id,
    new_snapshot_id,
    snapshot_timestamp,
    validate_snapshot_id,
)


class TestNewSnapshotId:
    def test_fixed_width_utc_encoding(self):
        now = datetime(2025, 3, 4, 5, 6, 7, 890123, tzinfo=timezone.utc)
        assert new_snapshot_id(now) == "entries_20250304050607"

    def test_converts_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        now = datetime(2025, 1, 1, 1, 0, 0, tzinfo=plus_two)
        assert new_snapshot_id(now) == "entries_20241231230000"

    def test_collision_suffix(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert new_snapshot_id(now, suffix=3) == "entries_20250101000000_03"

    def test_default_is_now(self):
        assert is_snapshot_id(new_snapshot_id())


class TestValidateSnapshotId:
    def test_valid(self):
        assert validate_snapshot_id("entries_20250101000000") == "entries_20250101000000"

    @pytest.mark.parametrize(
        "value",
        [
            "entries",
            "entries_2025",
            "entries_20250101000000; DROP TABLE ingest_kv",
            "ENTRIES_20250101000000",
            "entries_20250101000000_1",
            "entries_20250101000000\n",
            "other_20250101000000",
            "",
            None,
        ],
    )
    def test_rejects(self, value):
        with pytest.raises(InvalidIdentifier):
            validate_snapshot_id(value)
        assert is_snapshot_id(value) is False


class TestSnapshotTimestamp:
    def test_round_trip(self):
        now = datetime(2025, 9, 25, 18, 40, 8, tzinfo=timezone.utc)
        assert snapshot_timestamp(new_snapshot_id(now)) == now

    def test_suffix_ignored(self):
        ts = snapshot_timestamp("entries_20250101000000_02")
        assert ts == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_invalid(self):
        with pytest.raises(InvalidIdentifier):
            snapshot_timestamp("entries")


class TestIndexNames:
    def test_names(self):
        assert index_names("entries_20250101000000") == (
            "idx_entries_20250101000000_doi_original",
            "idx_entries_20250101000000_doi_retraction",
        )

    def test_invalid(self):
        with pytest.raises(InvalidIdentifier):
            index_names("entries; --")
