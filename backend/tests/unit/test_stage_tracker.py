"""
Unit Tests — Job Stage Tracker
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import StageTransitionError
from app.services import stage_tracker
from app.services.stage_tracker import HISTORY_CAP, JobStage

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def _at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.mark.unit
class TestAdvance:

    def test_records_stage_history_and_timestamp(self):
        metadata = stage_tracker.advance({"source": "web"}, JobStage.REGISTERED, now=T0)

        assert metadata == {
            "source": "web",
            "job_stage": "registered",
            "job_stage_history": [{"stage": "registered", "at": "2024-05-01T10:00:00.000Z"}],
            "job_stage_updated_at": "2024-05-01T10:00:00.000Z",
        }

    def test_does_not_mutate_input(self):
        original = {"job_stage": "registered"}
        stage_tracker.advance(original, "uploaded", now=T0)
        assert original == {"job_stage": "registered"}

    def test_extra_keys_are_merged(self):
        metadata = stage_tracker.advance({}, JobStage.UPLOADED, extra={"uploaded_at": "x"}, now=T0)
        assert metadata["uploaded_at"] == "x"

    def test_repeating_current_stage_refreshes_timestamp_only(self):
        metadata = stage_tracker.advance({}, JobStage.UPLOADED, now=_at(0))
        metadata = stage_tracker.advance(metadata, JobStage.UPLOADED, now=_at(5))

        assert len(metadata["job_stage_history"]) == 1
        assert metadata["job_stage_history"][0]["at"] == "2024-05-01T10:00:00.000Z"
        assert metadata["job_stage_updated_at"] == "2024-05-01T10:00:05.000Z"

    def test_forward_jump_allowed(self):
        metadata = stage_tracker.advance({}, JobStage.REGISTERED, now=_at(0))
        metadata = stage_tracker.advance(metadata, JobStage.PROCESSING, now=_at(1))
        assert [e["stage"] for e in metadata["job_stage_history"]] == ["registered", "processing"]

    def test_backward_move_is_recorded(self):
        metadata = stage_tracker.advance({}, JobStage.EXTRACTED, now=_at(0))
        metadata = stage_tracker.advance(metadata, JobStage.UPLOADED, now=_at(1))
        assert metadata["job_stage"] == "uploaded"

    def test_failed_is_terminal(self):
        metadata = stage_tracker.fail({}, "boom", now=T0)
        with pytest.raises(StageTransitionError):
            stage_tracker.advance(metadata, JobStage.INDEXED)

    def test_failed_can_be_repeated(self):
        metadata = stage_tracker.fail({}, "boom", now=_at(0))
        metadata = stage_tracker.advance(metadata, JobStage.FAILED, now=_at(1))
        assert metadata["job_stage"] == "failed"

    def test_unknown_stage_rejected(self):
        with pytest.raises(ValueError):
            stage_tracker.advance({}, "archived")

    def test_history_is_capped(self):
        metadata: dict = {}
        stages = [JobStage.REGISTERED, JobStage.UPLOADED]
        for i in range(HISTORY_CAP + 10):
            metadata = stage_tracker.advance(metadata, stages[i % 2], now=_at(i))

        history = metadata["job_stage_history"]
        assert len(history) == HISTORY_CAP
        assert history[-1]["at"] == stage_tracker.isoformat(_at(HISTORY_CAP + 9))

    def test_oversized_stored_history_is_trimmed_on_repeat(self):
        stages = ["processing", "extracted"]
        stored = {
            "job_stage": "extracted",
            "job_stage_history": [
                {"stage": stages[i % 2], "at": stage_tracker.isoformat(_at(i))}
                for i in range(HISTORY_CAP + 5)
            ],
        }

        metadata = stage_tracker.advance(stored, "extracted", now=_at(100))

        history = metadata["job_stage_history"]
        assert len(history) == HISTORY_CAP
        assert history[-1]["stage"] == "extracted"
        assert all(a["stage"] != b["stage"] for a, b in zip(history, history[1:]))

    def test_fail_records_error(self):
        metadata = stage_tracker.fail({"job_stage": "processing"}, "Textract timed out", now=T0)
        assert metadata["job_stage"] == "failed"
        assert metadata["error"] == "Textract timed out"
        assert metadata["failed_at"] == "2024-05-01T10:00:00.000Z"


@pytest.mark.unit
class TestParsing:

    def test_malformed_history_entries_dropped(self):
        history = stage_tracker.parse_stage_history({
            "job_stage_history": [
                {"stage": "registered", "at": "2024-05-01T10:00:00.000Z"},
                {"stage": "nope", "at": "2024-05-01T10:00:00.000Z"},
                {"stage": "uploaded"},
                "garbage",
            ],
        })
        assert [entry.stage for entry in history] == [JobStage.REGISTERED]

    def test_adjacent_duplicates_collapse(self):
        history = stage_tracker.parse_stage_history({
            "job_stage_history": [
                {"stage": "registered", "at": "2024-05-01T10:00:00.000Z"},
                {"stage": "uploaded",   "at": "2024-05-01T10:00:01.000Z"},
                {"stage": "uploaded",   "at": "2024-05-01T10:00:02.000Z"},
                {"stage": "processing", "at": "2024-05-01T10:00:03.000Z"},
            ],
        })
        assert [entry.stage for entry in history] == [
            JobStage.REGISTERED, JobStage.UPLOADED, JobStage.PROCESSING,
        ]
        assert history[1].at == "2024-05-01T10:00:01.000Z"

    def test_non_list_history(self):
        assert stage_tracker.parse_stage_history({"job_stage_history": "x"}) == []
        assert stage_tracker.parse_stage_history(None) == []

    def test_state(self):
        state = stage_tracker.parse_stage_state(stage_tracker.fail({}, "x", now=T0))
        assert state.is_failed
        assert state.updated_at == "2024-05-01T10:00:00.000Z"

    def test_isoformat_naive_is_utc(self):
        assert stage_tracker.isoformat(datetime(2024, 1, 2, 3, 4, 5, 678000)) == "2024-01-02T03:04:05.678Z"
