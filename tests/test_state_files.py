"""Tests for persisted run state: checkpoint, metrics, decision log, schemas."""

from datetime import datetime, timedelta

import pytest
import yaml

from epicrun.lib.checkpoint import (
    Checkpoint,
    checkpoint_path,
    clear_checkpoint,
    load_checkpoint,
    save_checkpoint,
)
from epicrun.lib.decisions import append_decisions, decision_log_path, init_decision_log, read_decision_log
from epicrun.lib.files import write_atomic
from epicrun.lib.metrics import EpicMetrics, load_metrics, metrics_path
from epicrun.lib.types import GateVerdict, PhaseType, Verdict
from epicrun.lib.validate import ValidationError, is_valid, validate, validate_before_write


def make_checkpoint(**overrides):
    values = dict(
        epic_id="3",
        last_story_index=1,
        last_story_id="3-2-profile",
        completed=2,
        failed=0,
        skipped=0,
        timestamp="2026-10-01T12:00:00",
    )
    values.update(overrides)
    return Checkpoint(**values)


class TestCheckpoint:
    """Resume checkpoint persistence."""

    def test_path(self, tmp_path):
        """Checkpoints live beside the stories as a hidden per-epic file."""
        assert checkpoint_path(tmp_path, "3") == tmp_path / ".epic-3-checkpoint"

    def test_save_and_load(self, tmp_path):
        """A saved checkpoint loads back unchanged and resumes after the last story."""
        path = checkpoint_path(tmp_path, "3")
        save_checkpoint(path, make_checkpoint(exit_code=2))

        loaded = load_checkpoint(path, "3", max_age_days=7, now=datetime(2026, 10, 2))
        assert loaded == make_checkpoint(exit_code=2)
        assert loaded.resume_index == 2

    def test_file_is_key_value(self, tmp_path):
        """The file is KEY=VALUE lines; an unset exit code is not written."""
        path = checkpoint_path(tmp_path, "3")
        save_checkpoint(path, make_checkpoint())
        text = path.read_text()
        assert "LAST_STORY_INDEX=1" in text
        assert "EXIT_CODE" not in text

    def test_missing_returns_none(self, tmp_path):
        """No checkpoint file means a fresh start."""
        assert load_checkpoint(tmp_path / ".epic-3-checkpoint", "3", 7) is None

    def test_stale_ignored(self, tmp_path, caplog):
        """Checkpoints older than the age limit are ignored."""
        path = checkpoint_path(tmp_path, "3")
        save_checkpoint(path, make_checkpoint())
        now = datetime(2026, 10, 1, 12) + timedelta(days=8)
        assert load_checkpoint(path, "3", max_age_days=7, now=now) is None
        assert "stale checkpoint" in caplog.text

    def test_other_epic_ignored(self, tmp_path, caplog):
        """A checkpoint for a different epic is never resumed."""
        path = checkpoint_path(tmp_path, "3")
        save_checkpoint(path, make_checkpoint(epic_id="4"))
        assert load_checkpoint(path, "3", 7, now=datetime(2026, 10, 2)) is None
        assert "belongs to epic 4" in caplog.text

    def test_malformed_ignored(self, tmp_path, caplog):
        """Unparseable values are logged and ignored."""
        path = checkpoint_path(tmp_path, "3")
        path.write_text("EPIC_ID=3\nLAST_STORY_INDEX=abc\nTIMESTAMP=2026-10-01T12:00:00\n")
        assert load_checkpoint(path, "3", 7) is None
        assert "unreadable checkpoint" in caplog.text

    def test_invalid_not_written(self, tmp_path):
        """Schema failures leave no file behind."""
        path = checkpoint_path(tmp_path, "3")
        with pytest.raises(ValidationError):
            save_checkpoint(path, make_checkpoint(completed=-1))
        assert not path.exists()

    def test_clear(self, tmp_path):
        """Clearing twice is harmless."""
        path = checkpoint_path(tmp_path, "3")
        save_checkpoint(path, make_checkpoint())
        clear_checkpoint(path)
        assert not path.exists()
        clear_checkpoint(path)


class TestEpicMetrics:
    """Per-epic metrics document."""

    def test_initial_document_written_on_update(self, tmp_path):
        """The first update writes the full initial document."""
        path = metrics_path(tmp_path, "3")
        metrics = EpicMetrics(path, "3", total_stories=4)
        metrics.record_fix_attempt()

        data = yaml.safe_load(path.read_text())
        assert data["epic_id"] == "3"
        assert data["stories"]["total"] == 4
        assert data["fix_loop"]["total_fix_attempts"] == 1
        assert data["execution"]["end_time"] is None

    def test_record_story(self, tmp_path):
        """Story outcomes update the counts and the details list."""
        metrics = EpicMetrics(tmp_path / "m.yaml", "3", 3)
        metrics.record_story("3-1-a", "completed", fix_attempts=2, duration_seconds=12.34)
        metrics.record_story("3-2-b", "failed")
        metrics.record_story("3-3-c", "skipped")

        assert metrics.counts() == {"total": 3, "completed": 1, "failed": 1, "skipped": 1}
        assert metrics.data["fix_loop"]["stories_requiring_fixes"] == 1
        assert metrics.data["story_details"][0]["duration_seconds"] == 12.3

    def test_max_retries_adds_issue(self, tmp_path):
        """Exhausted fix loops are counted and listed as issues."""
        metrics = EpicMetrics(tmp_path / "m.yaml", "3")
        metrics.record_max_retries("3-1-a", "code_review")
        assert metrics.data["fix_loop"]["max_retries_hit"] == 1
        assert metrics.data["issues"][0]["type"] == "max_retries_exhausted"
        assert metrics.data["issues"][0]["story"] == "3-1-a"

    def test_record_gate(self, tmp_path):
        """Gate verdicts are stored with subject, phase and score."""
        metrics = EpicMetrics(tmp_path / "m.yaml", "3")
        metrics.record_gate("3-1-a", GateVerdict(PhaseType.TEST_QUALITY, Verdict.CONCERNS, "score 65", 65))
        assert metrics.data["gates"] == [{
            "subject": "3-1-a",
            "phase": "test_quality",
            "verdict": "CONCERNS",
            "reason": "score 65",
            "score": 65,
        }]

    def test_finalize_once(self, tmp_path):
        """Only the first finalize records the exit code."""
        path = tmp_path / "m.yaml"
        metrics = EpicMetrics(path, "3")
        assert metrics.finalize(0) is True
        assert metrics.finalize(1) is False

        data = load_metrics(path)
        assert data["execution"]["exit_code"] == 0
        assert data["execution"]["duration_seconds"] >= 0
        assert metrics.finalized

    def test_updates_after_finalize_ignored(self, tmp_path):
        """A finalized document is never rewritten."""
        metrics = EpicMetrics(tmp_path / "m.yaml", "3")
        metrics.finalize(0)
        metrics.record_fix_attempt()
        assert load_metrics(tmp_path / "m.yaml")["fix_loop"]["total_fix_attempts"] == 0

    def test_load_missing_or_broken(self, tmp_path):
        """Missing and unparseable metrics load as None."""
        assert load_metrics(tmp_path / "missing.yaml") is None
        broken = tmp_path / "broken.yaml"
        broken.write_text("a: [unclosed\n")
        assert load_metrics(broken) is None


class TestDecisionLog:
    """Cumulative epic decision log."""

    def test_init_is_idempotent(self, tmp_path):
        """Initializing an existing log keeps its contents."""
        path = decision_log_path(tmp_path, "3")
        init_decision_log(path, "3")
        path.write_text(path.read_text() + "kept\n")
        init_decision_log(path, "3")
        assert path.read_text().endswith("kept\n")
        assert path.read_text().startswith("# Epic 3 Decision Log")

    def test_append(self, tmp_path):
        """Decisions are appended under a phase and story heading."""
        path = init_decision_log(decision_log_path(tmp_path, "3"), "3")
        assert append_decisions(path, "dev", "3-1-a", ["Used SQLite", ""])
        text = read_decision_log(path)
        assert "## DEV: 3-1-a" in text
        assert "- Used SQLite" in text

    def test_append_nothing(self, tmp_path):
        """Empty decision lists write nothing."""
        path = init_decision_log(decision_log_path(tmp_path, "3"), "3")
        assert not append_decisions(path, "dev", "3-1-a", [])

    def test_append_uninitialized(self, tmp_path):
        """Appending to a log that was never created is refused."""
        assert not append_decisions(tmp_path / "none.md", "dev", "3-1-a", ["x"])

    def test_read_missing(self, tmp_path):
        """A missing log reads as empty."""
        assert read_decision_log(tmp_path / "none.md") == ""


class TestValidation:
    """Schema validation helpers."""

    def test_validate_reports_path(self):
        """Errors name the schema and the offending field."""
        with pytest.raises(ValidationError) as exc_info:
            validate({"epic_id": "3", "last_story_index": "x", "completed": 0,
                      "failed": 0, "skipped": 0, "timestamp": "t"}, "checkpoint")
        assert "last_story_index" in str(exc_info.value)
        assert exc_info.value.schema_name == "checkpoint"

    def test_unknown_schema(self):
        """Unknown schema names raise."""
        with pytest.raises(ValidationError, match="Schema file not found"):
            validate({}, "nonexistent")

    def test_is_valid(self):
        """is_valid answers without raising."""
        assert is_valid({"status": "COMPLETE"}, "agent_result")
        assert not is_valid(["not", "a", "dict"], "agent_result")

    def test_validate_before_write_names_file(self, tmp_path):
        """The refusal names the file that was not written."""
        with pytest.raises(ValidationError, match="Refusing to write"):
            validate_before_write({}, "metrics", tmp_path / "m.yaml")


class TestWriteAtomic:
    def test_replaces_whole_file(self, tmp_path):
        """Rewrites leave only the target file, no temp files."""
        path = tmp_path / "nested" / "state.txt"
        write_atomic(path, "first")
        write_atomic(path, "second")
        assert path.read_text() == "second"
        assert [p.name for p in path.parent.iterdir()] == ["state.txt"]
