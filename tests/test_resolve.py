"""Tests for fleet.resolve module."""

from datetime import UTC, datetime, timedelta

import pytest

from fleet.checkpoint import Checkpoint, CheckpointStorage
from fleet.errors import AMBIGUOUS_REFERENCE, CHECKPOINT_NOT_FOUND, FORMAT_ERROR
from fleet.resolve import resolve_reference

IDS = [
    "20260110-090000.000-aaaa-morning",
    "20260110-120000.000-bbbb",
    "20260110-120500.000-cccc-lunch",
]


@pytest.fixture
def populated(storage: CheckpointStorage) -> CheckpointStorage:
    base = datetime(2026, 1, 10, 9, tzinfo=UTC)
    for i, checkpoint_id in enumerate(IDS):
        storage.save(
            Checkpoint(id=checkpoint_id, session_name="demo", created_at=base + timedelta(hours=i))
        )
    return storage


class TestResolveReference:
    @pytest.mark.parametrize("ref", ["last", "LAST", "  Last  ", "~1"])
    def test_latest(self, populated, ref):
        assert resolve_reference(populated, "demo", ref).unwrap().id == IDS[2]

    def test_relative(self, populated):
        assert resolve_reference(populated, "demo", "~2").unwrap().id == IDS[1]
        assert resolve_reference(populated, "demo", "~3").unwrap().id == IDS[0]

    def test_relative_out_of_range(self, populated):
        error = resolve_reference(populated, "demo", "~4").unwrap_err()
        assert error.code == CHECKPOINT_NOT_FOUND
        assert error.context["available"] == 3

    @pytest.mark.parametrize("ref", ["~0", "~", "~x", "~-1", "~1.5"])
    def test_malformed_relative(self, populated, ref):
        assert resolve_reference(populated, "demo", ref).unwrap_err().code == FORMAT_ERROR

    def test_exact_id(self, populated):
        assert resolve_reference(populated, "demo", IDS[1]).unwrap().id == IDS[1]

    def test_unique_prefix(self, populated):
        assert resolve_reference(populated, "demo", "20260110-09").unwrap().id == IDS[0]

    def test_ambiguous_prefix(self, populated):
        error = resolve_reference(populated, "demo", "20260110-12").unwrap_err()

        assert error.code == AMBIGUOUS_REFERENCE
        assert error.context["matches"] == [IDS[1], IDS[2]]

    def test_no_match(self, populated):
        error = resolve_reference(populated, "demo", "1999").unwrap_err()
        assert error.code == CHECKPOINT_NOT_FOUND
        assert error.is_not_found

    def test_empty_reference(self, populated):
        assert resolve_reference(populated, "demo", "   ").unwrap_err().code == FORMAT_ERROR

    def test_last_with_no_checkpoints(self, storage):
        assert resolve_reference(storage, "demo", "last").unwrap_err().is_not_found

    def test_other_session_not_visible(self, populated):
        assert resolve_reference(populated, "other", "last").is_err()
