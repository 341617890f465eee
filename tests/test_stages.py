"""Tests for the epic run plumbing: stages, shutdown guard, epic lock."""

import signal
from unittest.mock import MagicMock, patch

import pytest

from epicrun.runner.locking import LockTimeout, epic_lock, is_epic_locked, lock_path
from epicrun.runner.shutdown import SIGNAL_EXIT_CODES, ShutdownGuard
from epicrun.runner.stages import StageError, StageResult, StageSkipped, run_stage


class FakeContext:
    def __init__(self):
        self.stages = {}
        self.lines = []

    def log(self, message):
        self.lines.append(message)

    def record_stage(self, stage, status, duration, notes=""):
        self.stages[stage] = {"status": status, "duration_seconds": duration, "notes": notes}


class TestRunStage:
    """Tests for run_stage()."""

    def test_passed(self):
        ctx = FakeContext()
        assert run_stage(ctx, "baseline", lambda c: None) == StageResult.PASSED
        assert ctx.stages["baseline"]["status"] == "passed"

    def test_skipped(self):
        ctx = FakeContext()

        def stage(c):
            raise StageSkipped("traceability", "no completed stories")

        assert run_stage(ctx, "traceability", stage) == StageResult.SKIPPED
        assert ctx.stages["traceability"]["notes"] == "no completed stories"

    def test_stage_error_propagates(self):
        ctx = FakeContext()

        def stage(c):
            raise StageError("baseline", "tests broken", 1)

        with pytest.raises(StageError):
            run_stage(ctx, "baseline", stage)
        assert ctx.stages["baseline"]["status"] == "failed"

    def test_unexpected_error_wrapped(self):
        ctx = FakeContext()

        def stage(c):
            raise RuntimeError("boom")

        with pytest.raises(StageError) as exc_info:
            run_stage(ctx, "baseline", stage)
        assert exc_info.value.exit_code == 1
        assert str(exc_info.value) == "[baseline] boom"


class TestShutdownGuard:
    """The cleanup callback runs exactly once."""

    def test_run_once(self):
        callback = MagicMock()
        guard = ShutdownGuard(callback)
        assert guard.run(0) is True
        assert guard.run(1) is False
        callback.assert_called_once_with(0)
        assert guard.done

    def test_atexit_after_normal_run_is_noop(self):
        callback = MagicMock()
        with ShutdownGuard(callback) as guard:
            guard.run(0)
        guard._atexit()
        callback.assert_called_once_with(0)

    def test_signal_runs_callback_and_exits(self):
        callback = MagicMock()
        guard = ShutdownGuard(callback)
        with pytest.raises(SystemExit) as exc_info:
            guard._on_signal(signal.SIGTERM, None)
        assert exc_info.value.code == 143
        callback.assert_called_once_with(143)

    def test_signal_after_completion_does_not_rerun(self):
        callback = MagicMock()
        guard = ShutdownGuard(callback)
        guard.run(0)
        with pytest.raises(SystemExit):
            guard._on_signal(signal.SIGINT, None)
        callback.assert_called_once_with(0)

    def test_handlers_restored(self):
        previous = signal.getsignal(signal.SIGTERM)
        with ShutdownGuard(MagicMock()):
            assert signal.getsignal(signal.SIGTERM) != previous
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_callback_error_logged(self, caplog):
        guard = ShutdownGuard(MagicMock(side_effect=OSError("disk full")))
        assert guard.run(1) is True
        assert "Shutdown cleanup failed: disk full" in caplog.text

    def test_exit_codes(self):
        assert SIGNAL_EXIT_CODES[signal.SIGINT] == 130


class TestEpicLock:
    """Per-epic flock."""

    def test_lock_path(self, tmp_path):
        assert lock_path(tmp_path, "3") == tmp_path / "locks" / "epic-3.lock"

    def test_held_lock_reported(self, tmp_path):
        assert not is_epic_locked(tmp_path, "3")
        with epic_lock(tmp_path, "3"):
            assert is_epic_locked(tmp_path, "3")
        assert not is_epic_locked(tmp_path, "3")
        assert lock_path(tmp_path, "3").exists()

    @patch("epicrun.runner.locking.time.sleep")
    def test_second_holder_times_out(self, mock_sleep, tmp_path):
        with epic_lock(tmp_path, "3"):
            with pytest.raises(LockTimeout, match="epic 3"):
                with epic_lock(tmp_path, "3", timeout=0):
                    pass

    def test_different_epics_independent(self, tmp_path):
        with epic_lock(tmp_path, "3"):
            with epic_lock(tmp_path, "4"):
                assert is_epic_locked(tmp_path, "4")
