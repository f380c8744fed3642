"""
Unit tests for detached (best-effort) tasks.
"""
from loanspread.services.detached import run_detached


class TestRunDetached:
    """Tests for the detached task contract."""

    def test_success_returns_true(self):
        calls = []
        assert run_detached("ok", calls.append, 1) is True
        assert calls == [1]

    def test_failure_is_swallowed(self):
        def boom():
            raise RuntimeError("disk full")

        assert run_detached("boom", boom) is False

    def test_cleanup_runs_after_failure(self):
        cleaned = []

        def boom():
            raise RuntimeError("disk full")

        run_detached("boom", boom, cleanup=lambda: cleaned.append(True))
        assert cleaned == [True]

    def test_failing_cleanup_is_swallowed_too(self):
        def boom():
            raise RuntimeError("disk full")

        def bad_cleanup():
            raise RuntimeError("still broken")

        assert run_detached("boom", boom, cleanup=bad_cleanup) is False
