"""Tests for hook execution."""

from pathlib import Path

import pytest

from dotkeeper.core.errors import HookFailure
from dotkeeper.core.hooks import HookRunner


def test_run_success(tmp_path: Path) -> None:
    """Test every command of a passing hook set runs."""
    runner = HookRunner(timeout=10, cwd=str(tmp_path))
    results = runner.run("post_apply", ["touch one", "touch two"])

    assert [r.success for r in results] == [True, True]
    assert (tmp_path / "one").exists()
    assert (tmp_path / "two").exists()


def test_run_stops_at_first_failure(tmp_path: Path) -> None:
    """Test a failing command stops the rest of its set."""
    runner = HookRunner(timeout=10, cwd=str(tmp_path))
    results = runner.run("pre_apply", ["echo 'bad config' >&2; exit 1", "touch after"])

    assert len(results) == 1
    assert not results[0].success
    assert results[0].error == "bad config"
    assert not (tmp_path / "after").exists()


def test_run_reports_exit_status() -> None:
    """Test a silent failure reports its exit status."""
    (result,) = HookRunner(timeout=10).run("pre_apply", ["exit 4"])
    assert result.error == "exited with status 4"


def test_run_timeout() -> None:
    """Test a hook that runs too long fails."""
    (result,) = HookRunner(timeout=0.2).run("pre_snapshot", ["sleep 5"])
    assert not result.success
    assert "timed out" in result.error


def test_run_or_raise() -> None:
    """Test run_or_raise raises HookFailure naming the hook."""
    runner = HookRunner(timeout=10)
    assert runner.run_or_raise("pre_snapshot", ["true"])[0].success

    with pytest.raises(HookFailure, match="pre_snapshot hook 'false' failed"):
        runner.run_or_raise("pre_snapshot", ["false"])


def test_empty_hook_set() -> None:
    """Test an empty hook set is a no-op."""
    assert HookRunner().run("post_snapshot", []) == []
