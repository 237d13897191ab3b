"""Test CLI commands."""

import os
from pathlib import Path
from typing import Optional

import pytest
import yaml
from click.testing import CliRunner, Result

from conftest import build_manifest, write_config
from dotkeeper import __version__
from dotkeeper.cli import cli
from dotkeeper.core.config import Config


@pytest.fixture
def cli_runner() -> CliRunner:
    """Return a CLI runner."""
    return CliRunner()


def run(runner: CliRunner, home: Path, *args: str, input: Optional[str] = None) -> Result:
    return runner.invoke(cli, list(args), input=input, env={"HOME": str(home)})


@pytest.fixture
def captured(cli_runner: CliRunner, home: Path) -> Path:
    """Initialize a configuration tracking ~/.zshrc and capture it."""
    (home / ".zshrc").write_text("A\n")
    assert run(cli_runner, home, "init", "-t", "~/.zshrc").exit_code == 0
    result = run(cli_runner, home, "capture")
    assert result.exit_code == 0, result.output
    return home


def test_version(cli_runner: CliRunner) -> None:
    """Test --version."""
    result = cli_runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_init(cli_runner: CliRunner, home: Path) -> None:
    """Test init writes the configuration once."""
    result = run(cli_runner, home, "init", "-t", "~/.zshrc", "-t", "~/.gitconfig")
    assert result.exit_code == 0
    assert "Created configuration" in result.output

    with open(home / ".dotkeeper" / "config.yaml") as f:
        data = yaml.safe_load(f)
    assert data["tracked_files"] == ["~/.zshrc", "~/.gitconfig"]
    assert (home / ".dotkeeper" / "compiled").is_dir()

    result = run(cli_runner, home, "init")
    assert result.exit_code == 0
    assert "already exists" in result.output


def test_capture(captured: Path) -> None:
    """Test capture copies tracked files into the repository."""
    assert (captured / ".dotkeeper" / "compiled" / ".zshrc").read_text() == "A\n"
    assert (captured / ".dotkeeper" / "manifest.lock").exists()


def test_capture_without_tracked_files(cli_runner: CliRunner, home: Path) -> None:
    """Test capture refuses to run with nothing tracked."""
    result = run(cli_runner, home, "capture")
    assert result.exit_code == 1
    assert "No tracked files" in result.output


def test_diff_apply_flow(cli_runner: CliRunner, captured: Path) -> None:
    """Test diff, apply and a second no-op apply."""
    home = captured
    result = run(cli_runner, home, "diff")
    assert result.exit_code == 0
    assert "Everything is up to date" in result.output

    (home / ".zshrc").write_text("B\n")
    result = run(cli_runner, home, "diff", "--detailed")
    assert result.exit_code == 0
    assert "modified" in result.output
    assert "-B" in result.output
    assert "+A" in result.output

    result = run(cli_runner, home, "apply", "--force")
    assert result.exit_code == 0, result.output
    assert "1 applied" in result.output
    assert os.path.realpath(home / ".zshrc") == str(
        (home / ".dotkeeper" / "compiled" / ".zshrc").resolve()
    )
    backups = [p for p in home.iterdir() if p.name.startswith(".zshrc.bak.")]
    assert len(backups) == 1
    assert backups[0].read_text() == "B\n"

    result = run(cli_runner, home, "apply", "--force")
    assert result.exit_code == 0
    assert "Nothing to apply." in result.output


def test_apply_prompt_declined(cli_runner: CliRunner, captured: Path) -> None:
    """Test declining the prompt leaves the system untouched."""
    (captured / ".zshrc").write_text("B\n")
    result = run(cli_runner, captured, "apply", input="n\n")
    assert result.exit_code == 0
    assert "Apply cancelled." in result.output
    assert (captured / ".zshrc").read_text() == "B\n"


def test_apply_interactive(cli_runner: CliRunner, captured: Path) -> None:
    """Test interactive apply asks per file."""
    (captured / ".zshrc").unlink()
    result = run(cli_runner, captured, "apply", "--interactive", input="y\n")
    assert result.exit_code == 0, result.output
    assert (captured / ".zshrc").is_symlink()


def test_apply_only_and_interactive_conflict(cli_runner: CliRunner, captured: Path) -> None:
    """Test --interactive and --only are mutually exclusive."""
    result = run(cli_runner, captured, "apply", "-i", "--only", "~/.zshrc")
    assert result.exit_code == 2
    assert "cannot be combined" in result.output


def test_apply_dry_run(cli_runner: CliRunner, captured: Path) -> None:
    """Test a dry run reports but changes nothing."""
    (captured / ".zshrc").write_text("B\n")
    result = run(cli_runner, captured, "apply", "--dry-run")
    assert result.exit_code == 0
    assert "dry run" in result.output
    assert (captured / ".zshrc").read_text() == "B\n"


def test_apply_fails_on_undecryptable_file(cli_runner: CliRunner, home: Path) -> None:
    """Test apply exits 1 when an encrypted file cannot be decrypted."""
    write_config(home, {"tracked_files": ["~/.netrc.age"]})
    config = Config(home=home)
    config.repo_dir.mkdir(parents=True)
    (config.repo_dir / ".netrc.age").write_bytes(b"not age ciphertext")
    (home / ".netrc").write_text("machine example.com\n")
    build_manifest(config, config.tracked_files).save(config.manifest_path)

    result = run(cli_runner, home, "apply", "--force")

    assert result.exit_code == 1
    assert "Cannot decrypt .netrc.age" in result.output
    assert "Nothing to apply." not in result.output
    assert (home / ".netrc").read_text() == "machine example.com\n"


def test_diff_without_manifest(cli_runner: CliRunner, home: Path) -> None:
    """Test commands needing a manifest fail with exit code 1."""
    result = run(cli_runner, home, "diff")
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_snapshot_commands(cli_runner: CliRunner, captured: Path) -> None:
    """Test snapshot create, list and prune."""
    result = run(cli_runner, captured, "snapshot", "create", "-m", "first")
    assert result.exit_code == 0
    assert "Created snapshot" in result.output

    result = run(cli_runner, captured, "snapshot", "list")
    assert result.exit_code == 0
    assert "first" in result.output

    result = run(cli_runner, captured, "snapshot", "prune")
    assert "keeping all snapshots" in result.output

    result = run(cli_runner, captured, "snapshot", "prune", "--keep-count", "0", "--dry-run")
    assert "Would delete 1 snapshot(s)" in result.output

    result = run(cli_runner, captured, "snapshot", "prune", "--keep-count", "0")
    assert "Deleted 1 snapshot(s)" in result.output
    assert "No snapshots found." in run(cli_runner, captured, "snapshot", "list").output


def test_snapshot_rollback(cli_runner: CliRunner, captured: Path) -> None:
    """Test rolling the repository back to an earlier snapshot."""
    run(cli_runner, captured, "snapshot", "create")
    snapshots = captured / ".dotkeeper" / "snapshots"
    (snapshot_id,) = [p.name for p in snapshots.iterdir() if p.name != "blobs"]

    (captured / ".zshrc").write_text("B\n")
    assert run(cli_runner, captured, "capture").exit_code == 0
    assert (captured / ".dotkeeper" / "compiled" / ".zshrc").read_text() == "B\n"

    result = run(cli_runner, captured, "snapshot", "rollback", snapshot_id, "--force")
    assert result.exit_code == 0, result.output
    assert (captured / ".dotkeeper" / "compiled" / ".zshrc").read_text() == "A\n"


def test_snapshot_rollback_unknown(cli_runner: CliRunner, captured: Path) -> None:
    """Test rolling back to an unknown snapshot fails."""
    result = run(cli_runner, captured, "snapshot", "rollback", "20200101-000000", "--force")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_secrets_encrypt_without_key(cli_runner: CliRunner, home: Path) -> None:
    """Test encrypting without an age key fails clearly."""
    secret = home / "token"
    secret.write_text("hunter2")
    result = run(cli_runner, home, "secrets", "encrypt", str(secret))
    assert result.exit_code == 1
    assert "secrets init" in result.output


def test_profile_commands(cli_runner: CliRunner, home: Path) -> None:
    """Test profile create, switch and list."""
    result = run(cli_runner, home, "profile", "create", "work")
    assert result.exit_code == 0
    assert (home / ".dotkeeper" / "profiles" / "work" / "compiled").is_dir()

    assert run(cli_runner, home, "profile", "switch", "work").exit_code == 0
    result = run(cli_runner, home, "profile", "list")
    assert "default" in result.output
    assert "work (active)" in result.output

    result = run(cli_runner, home, "profile", "switch", "missing")
    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_remote_push_pull(cli_runner: CliRunner, captured: Path, tmp_path: Path) -> None:
    """Test pushing to and pulling from a local remote."""
    storage = tmp_path / "storage"
    write_config(
        captured,
        {"tracked_files": ["~/.zshrc"], "remote": {"kind": "localfs", "endpoint": str(storage)}},
    )

    result = run(cli_runner, captured, "remote", "show")
    assert "localfs" in result.output

    result = run(cli_runner, captured, "remote", "push")
    assert result.exit_code == 0, result.output
    assert len(list(storage.glob("dotkeeper-default-*.zip"))) == 1

    (captured / ".dotkeeper" / "compiled" / ".zshrc").write_text("changed\n")
    result = run(cli_runner, captured, "remote", "pull")
    assert result.exit_code == 0, result.output
    assert (captured / ".dotkeeper" / "compiled" / ".zshrc").read_text() == "A\n"


def test_remote_not_configured(cli_runner: CliRunner, home: Path) -> None:
    """Test remote commands without a remote."""
    assert "No remote configured." in run(cli_runner, home, "remote", "show").output
    result = run(cli_runner, home, "remote", "push")
    assert result.exit_code == 1


def test_daemon_status_and_run(cli_runner: CliRunner, captured: Path) -> None:
    """Test daemon status and a bounded foreground run."""
    result = run(cli_runner, captured, "daemon", "status")
    assert "Daemon is not running" in result.output

    result = run(cli_runner, captured, "daemon", "run", "--max-iterations", "1")
    assert result.exit_code == 0, result.output
    assert "Watching 1 file(s)" in result.output

    result = run(cli_runner, captured, "daemon", "stop")
    assert result.exit_code == 1
    assert "not running" in result.output
