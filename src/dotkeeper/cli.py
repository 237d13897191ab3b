"""Command line interface for dotkeeper."""

from __future__ import annotations

import functools
import logging
import signal
import tempfile
from pathlib import Path
from typing import Any, Callable, List, NoReturn, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .core.apply import ApplyEngine, ApplyOptions, Outcome, PlanAction, build_plan
from .core.bundle import BundleWriter, bundle_name, unpack
from .core.capture import CaptureManager, expand_tracked, scan_live_paths
from .core.config import Config
from .core.daemon import Daemon, DaemonLock, Debouncer, PollingWatcher, running_pid
from .core.daemon import stop as stop_daemon
from .core.diff import DiffEngine, DiffEntry, DiffStatus, filter_by_paths, summarize
from .core.errors import DotkeeperError
from .core.logging import setup_logging
from .core.manifest import Manifest
from .core.paths import live_location
from .core.profiles import ProfileManager
from .core.remote import create_remote
from .core.secrets import AgeSecretsProvider, decrypt_file, encrypt_file, load_provider
from .core.snapshots import PruneCriteria, SnapshotStore

console = Console()
logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    DiffStatus.MODIFIED: "yellow",
    DiffStatus.NEW: "cyan",
    DiffStatus.MISSING: "red",
    DiffStatus.IDENTICAL: "green",
    DiffStatus.DECRYPT_FAILED: "magenta",
}


def fail(message: Any) -> NoReturn:
    """Print an error and exit with status 1."""
    console.print(f"[red]Error: {escape(str(message))}")
    raise click.exceptions.Exit(1)


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn a :class:`DotkeeperError` raised by a command into exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except DotkeeperError as e:
            logger.debug("Command failed", exc_info=True)
            fail(e)

    return wrapper


def load_config(ctx: click.Context) -> Config:
    """Load the configuration with the active profile layered on top."""
    config = Config(config_file=ctx.obj.get("config_file"))
    config = ProfileManager(config).activate(config)
    for problem in config.validate():
        logger.warning("Configuration: %s", problem)
    return config


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


@click.group()
@click.version_option(version=__version__, prog_name="dotkeeper")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (defaults to ~/.dotkeeper/config.yaml)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs to this file")
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[Path], debug: bool, log_file: Optional[str]) -> None:
    """Dotfiles management tool.

    dotkeeper keeps canonical copies of your configuration files in a
    repository (~/.dotkeeper/compiled), detects drift between that copy and
    your home directory, and applies the repository copy back safely.

    Main commands:

      init      Create the configuration
      capture   Copy tracked files into the repository
      diff      Show drift between the repository and the system
      apply     Write the repository copy onto the system
      snapshot  Create, list, roll back and prune snapshots

    Run 'dotkeeper COMMAND --help' for more information on a specific command.
    """
    setup_logging(debug=debug, log_file=log_file)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


@cli.command()
@click.option(
    "--track", "-t", multiple=True, help="Path to track (can specify multiple times, e.g., -t ~/.zshrc)"
)
@click.pass_context
@handle_errors
def init(ctx: click.Context, track: Tuple[str, ...]) -> None:
    """Initialize dotkeeper configuration.

    Writes a default configuration file and creates the repository and
    snapshot directories. An existing configuration is left alone.

    Examples:

      # Initialize and track two files
      dotkeeper init -t ~/.zshrc -t ~/.gitconfig
    """
    config = Config(config_file=None)
    target = ctx.obj.get("config_file") or config.default_config_file
    if Path(target).exists():
        console.print(f"[yellow]Configuration already exists at {target}")
        return

    if track:
        config.merge({"tracked_files": list(track)})
    config.save(Path(target))
    config.repo_dir.mkdir(parents=True, exist_ok=True)
    config.snapshots_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"[green]Created configuration at {target}")
    console.print("Next: run 'dotkeeper capture' to copy your tracked files into the repository.")


@cli.command()
@click.argument("paths", nargs=-1)
@click.option("--dry-run", is_flag=True, help="Show what would be captured without making any changes")
@click.pass_context
@handle_errors
def capture(ctx: click.Context, paths: Tuple[str, ...], dry_run: bool) -> None:
    """Copy tracked files from the system into the repository.

    PATHS limits the copy to the given tracked paths; the manifest is always
    rebuilt for every tracked path.
    """
    config = load_config(ctx)
    if not config.tracked_files:
        fail("No tracked files configured; add some to tracked_files in the config")

    manager = CaptureManager(config, console, secrets=load_provider(config))
    result = manager.capture(paths or None, dry_run=dry_run)

    for path in result.missing:
        console.print(f"[yellow]Not found on system: {path}")
    for path, cause in result.failed.items():
        console.print(f"[red]Failed: {path}: {escape(cause)}")
    if dry_run:
        return

    console.print(
        f"[green]Captured {len(result.copied)} file(s), {len(result.unchanged)} unchanged"
    )
    if result.manifest is not None:
        console.print(f"Manifest: {config.manifest_path} ({len(result.manifest)} entries)")
    if not result.ok:
        raise click.exceptions.Exit(1)


def _diff(config: Config) -> Tuple[Manifest, DiffEngine, List[DiffEntry]]:
    manifest = Manifest.load(config.manifest_path)
    secrets = load_provider(config) if any(e.is_encrypted for e in manifest) else None
    engine = DiffEngine(config.repo_dir, config.home, secrets)
    return manifest, engine, engine.diff(manifest, scan_live_paths(config))


@cli.command()
@click.option("--detailed", "-d", is_flag=True, help="Show a line diff for modified text files")
@click.option("--all", "show_all", is_flag=True, help="Include identical files")
@click.pass_context
@handle_errors
def diff(ctx: click.Context, detailed: bool, show_all: bool) -> None:
    """Show drift between the repository and the system."""
    config = load_config(ctx)
    manifest, engine, entries = _diff(config)

    shown = entries if show_all else [e for e in entries if e.is_changed]
    if not shown:
        console.print("[green]Everything is up to date.")
        return

    table = Table(title="Differences")
    table.add_column("Status")
    table.add_column("Path", style="cyan")
    table.add_column("Note")
    for entry in shown:
        style = _STATUS_STYLES[entry.status]
        table.add_row(
            f"[{style}]{entry.status.symbol} {entry.status.description}",
            entry.path,
            escape(entry.note or ""),
        )
    console.print(table)

    counts = summarize(entries)
    console.print(
        ", ".join(f"{counts[s]} {s.value}" for s in DiffStatus if counts[s])
    )

    if detailed:
        for entry in shown:
            if entry.status != DiffStatus.MODIFIED:
                continue
            console.print(f"\n[bold]{entry.path}")
            for line in engine.detail(entry, manifest):
                style = "green" if line.startswith("+") else "red" if line.startswith("-") else ""
                console.print(f"[{style}]{escape(line)}" if style else escape(line))


@cli.command()
@click.option("--interactive", "-i", is_flag=True, help="Confirm each file individually")
@click.option("--only", "only", multiple=True, help="Only apply these paths (can specify multiple times)")
@click.option("--force", "-f", is_flag=True, help="Apply without the confirmation prompt")
@click.option("--dry-run", is_flag=True, help="Show what would be applied without making any changes")
@click.option(
    "--allow-outside-home", is_flag=True, help="Allow writing files outside the home directory"
)
@click.option("--no-backup", is_flag=True, help="Overwrite differing files without a .bak copy")
@click.pass_context
@handle_errors
def apply(
    ctx: click.Context,
    interactive: bool,
    only: Tuple[str, ...],
    force: bool,
    dry_run: bool,
    allow_outside_home: bool,
    no_backup: bool,
) -> None:
    """Write the repository copy onto the system.

    Missing files are written, modified files are backed up to
    <path>.bak.<timestamp> and replaced. Files that already match are left
    alone, so running apply twice does nothing the second time.

    Examples:

      # Apply everything after a confirmation prompt
      dotkeeper apply

      # Apply a single file without prompting
      dotkeeper apply --only ~/.zshrc --force

      # Choose file by file
      dotkeeper apply --interactive
    """
    if interactive and only:
        raise click.UsageError("--interactive and --only cannot be combined")

    config = load_config(ctx)
    manifest, _, entries = _diff(config)
    if only:
        entries = filter_by_paths(entries, only, config.home)
    plan = build_plan(entries, manifest, config.overrides)

    undecryptable = [item for item in plan if item.status == DiffStatus.DECRYPT_FAILED]
    for item in plan:
        if item in undecryptable:
            console.print(f"[red]Cannot decrypt {item.path}: {escape(item.note or '')}")
        elif item.action == PlanAction.SKIP:
            console.print(f"[yellow]Skipping {item.path}: {escape(item.note or '')}")
    plan = [item for item in plan if item.action != PlanAction.SKIP]
    if not plan:
        if undecryptable:
            console.print(f"[red]{len(undecryptable)} file(s) could not be decrypted.")
            raise click.exceptions.Exit(1)
        console.print("[green]Nothing to apply.")
        return

    table = Table(title="Apply plan")
    table.add_column("Action", style="magenta")
    table.add_column("Path", style="cyan")
    table.add_column("Destination")
    for item in plan:
        table.add_row(item.action.value, item.path, str(live_location(item.path, config.home)))
    console.print(table)

    if interactive:
        plan = [item for item in plan if click.confirm(f"Apply {item.path}?", default=False)]
        if not plan:
            console.print("[yellow]Nothing selected.")
            raise click.exceptions.Exit(1 if undecryptable else 0)
    elif not force and not dry_run:
        if not click.confirm("Continue?", default=False):
            console.print("[yellow]Apply cancelled.")
            raise click.exceptions.Exit(1 if undecryptable else 0)

    secrets = load_provider(config) if any(item.needs_decrypt for item in plan) else None
    engine = ApplyEngine.from_config(config, manifest, secrets)
    options = ApplyOptions(
        backup=config.backup and not no_backup,
        allow_outside_root=allow_outside_home or config.allow_outside_home,
        dry_run=dry_run,
    )
    report = engine.apply(undecryptable + plan, options)

    for result in report.results:
        if result.outcome == Outcome.APPLIED:
            line = f"[green]Applied {result.path}"
            if result.backup_path is not None:
                line += f" (backup: {result.backup_path})"
            console.print(line)
        elif result.outcome == Outcome.SKIPPED:
            console.print(f"[blue]Skipped {result.path}: {escape(result.note or '')}")
        else:
            console.print(f"[red]Failed {result.path}: {escape(str(result.error))}")
    if report.hook_error is not None:
        console.print(f"[red]{escape(str(report.hook_error))}")

    console.print(
        f"{len(report.applied)} applied, {len(report.skipped)} skipped, {len(report.failed)} failed"
    )
    if report.exit_code:
        raise click.exceptions.Exit(report.exit_code)


@cli.group()
def snapshot() -> None:
    """Create, list, roll back and prune snapshots."""


@snapshot.command("create")
@click.option("--message", "-m", default="", help="Description stored with the snapshot")
@click.pass_context
@handle_errors
def snapshot_create(ctx: click.Context, message: str) -> None:
    """Snapshot the current repository."""
    config = load_config(ctx)
    manifest = Manifest.load(config.manifest_path)
    snap = SnapshotStore.from_config(config).create(manifest, message)
    console.print(
        f"[green]Created snapshot {snap.id} ({snap.file_count} files, {format_size(snap.total_bytes)})"
    )


@snapshot.command("list")
@click.pass_context
@handle_errors
def snapshot_list(ctx: click.Context) -> None:
    """List snapshots, newest first."""
    config = load_config(ctx)
    snapshots = SnapshotStore.from_config(config).list()
    if not snapshots:
        console.print("[yellow]No snapshots found.")
        return

    table = Table(title="Snapshots")
    table.add_column("ID", style="cyan")
    table.add_column("Created", style="yellow")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Message", style="magenta")
    for snap in snapshots:
        table.add_row(
            snap.id,
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(snap.file_count),
            format_size(snap.total_bytes),
            escape(snap.message),
        )
    console.print(table)


@snapshot.command("rollback")
@click.argument("snapshot_id")
@click.option("--force", "-f", is_flag=True, help="Roll back without confirmation prompt")
@click.pass_context
@handle_errors
def snapshot_rollback(ctx: click.Context, snapshot_id: str, force: bool) -> None:
    """Restore the repository to SNAPSHOT_ID.

    The system itself is not touched; run 'dotkeeper apply' afterwards.
    """
    config = load_config(ctx)
    store = SnapshotStore.from_config(config)
    store.get(snapshot_id)
    if not force and not click.confirm(
        f"Roll back the repository to snapshot {snapshot_id}?", default=False
    ):
        console.print("[yellow]Rollback cancelled.")
        return
    manifest = store.rollback(snapshot_id)
    console.print(f"[green]Rolled back to snapshot {snapshot_id} ({len(manifest)} files)")
    console.print("Run 'dotkeeper apply' to apply the restored files to your system.")


@snapshot.command("delete")
@click.argument("snapshot_id")
@click.option("--force", "-f", is_flag=True, help="Delete without confirmation prompt")
@click.pass_context
@handle_errors
def snapshot_delete(ctx: click.Context, snapshot_id: str, force: bool) -> None:
    """Delete SNAPSHOT_ID."""
    config = load_config(ctx)
    store = SnapshotStore.from_config(config)
    store.get(snapshot_id)
    if not force and not click.confirm(f"Delete snapshot {snapshot_id}?", default=False):
        console.print("[yellow]Delete cancelled.")
        return
    store.delete(snapshot_id)
    console.print(f"[green]Deleted snapshot {snapshot_id}")


@snapshot.command("prune")
@click.option("--keep-count", type=click.IntRange(min=0), help="Keep the N newest snapshots")
@click.option("--keep-age", help="Keep snapshots younger than this (e.g. 30d, 2w, 12h, 1m)")
@click.option("--keep-size", help="Keep newest snapshots up to this total size (e.g. 500MB)")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.pass_context
@handle_errors
def snapshot_prune(
    ctx: click.Context,
    keep_count: Optional[int],
    keep_age: Optional[str],
    keep_size: Optional[str],
    dry_run: bool,
) -> None:
    """Delete snapshots that no retention rule keeps.

    A snapshot survives if any of the given rules keeps it. Without rules
    nothing is deleted.
    """
    config = load_config(ctx)
    criteria = PruneCriteria.parse(keep_count, keep_age, keep_size)
    if criteria.is_empty:
        console.print("[yellow]No retention rules given; keeping all snapshots.")
        return

    pruned = SnapshotStore.from_config(config).prune(criteria, dry_run=dry_run)
    if not pruned:
        console.print("No snapshots to prune.")
        return
    verb = "Would delete" if dry_run else "Deleted"
    for snapshot_id in pruned:
        console.print(f"{verb} {snapshot_id}")
    console.print(f"[green]{verb} {len(pruned)} snapshot(s)")


@cli.group()
def secrets() -> None:
    """Manage age encryption."""


@secrets.command("init")
@click.pass_context
@handle_errors
def secrets_init(ctx: click.Context) -> None:
    """Generate an age key unless one exists."""
    config = load_config(ctx)
    provider = AgeSecretsProvider.from_config(config)
    public_key = provider.init_key()
    console.print(f"[green]Age key: {provider.key_path}")
    console.print(f"Public key: {public_key}")


@secrets.command("encrypt")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Output file")
@click.pass_context
@handle_errors
def secrets_encrypt(ctx: click.Context, input_path: Path, output: Optional[Path]) -> None:
    """Encrypt INPUT_PATH to INPUT_PATH.age."""
    provider = AgeSecretsProvider.from_config(load_config(ctx))
    out = encrypt_file(provider, input_path, output)
    console.print(f"[green]Encrypted to {out}")


@secrets.command("decrypt")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Output file")
@click.pass_context
@handle_errors
def secrets_decrypt(ctx: click.Context, input_path: Path, output: Optional[Path]) -> None:
    """Decrypt INPUT_PATH."""
    provider = AgeSecretsProvider.from_config(load_config(ctx))
    out = decrypt_file(provider, input_path, output)
    console.print(f"[green]Decrypted to {out}")


@cli.group()
def profile() -> None:
    """Manage profiles."""


@profile.command("list")
@click.pass_context
@handle_errors
def profile_list(ctx: click.Context) -> None:
    """List profiles."""
    manager = ProfileManager(Config(config_file=ctx.obj.get("config_file")))
    active = manager.active()
    for prof in manager.list():
        marker = " [green](active)" if prof.name == active else ""
        console.print(f"  {prof.name}{marker}")


@profile.command("create")
@click.argument("name")
@click.pass_context
@handle_errors
def profile_create(ctx: click.Context, name: str) -> None:
    """Create profile NAME."""
    manager = ProfileManager(Config(config_file=ctx.obj.get("config_file")))
    prof = manager.create(name)
    console.print(f"[green]Created profile {name} at {prof.root}")
    console.print(f"Switch to it with: dotkeeper profile switch {name}")


@profile.command("switch")
@click.argument("name")
@click.pass_context
@handle_errors
def profile_switch(ctx: click.Context, name: str) -> None:
    """Make NAME the active profile."""
    manager = ProfileManager(Config(config_file=ctx.obj.get("config_file")))
    manager.switch(name)
    console.print(f"[green]Switched to profile {name}")


@cli.group()
def remote() -> None:
    """Push and pull repository bundles."""


@remote.command("show")
@click.pass_context
@handle_errors
def remote_show(ctx: click.Context) -> None:
    """Show the remote configuration."""
    config = load_config(ctx)
    if not config.remote:
        console.print("[yellow]No remote configured.")
        return
    for key, value in config.remote.items():
        console.print(f"  {key}: {value}")


@remote.command("push")
@click.option("--dry-run", is_flag=True, help="Build the bundle without uploading it")
@click.pass_context
@handle_errors
def remote_push(ctx: click.Context, dry_run: bool) -> None:
    """Bundle the repository and push it to the remote."""
    config = load_config(ctx)
    backend = create_remote(config)
    with tempfile.TemporaryDirectory() as tmp:
        bundle = Path(tmp) / bundle_name(config.profile)
        meta = BundleWriter(config.repo_dir, config.manifest_path, bundle).pack(config.profile)
        if dry_run:
            console.print(
                f"Would push {bundle.name} ({meta.file_count} files, {format_size(bundle.stat().st_size)})"
            )
            return
        obj = backend.push(bundle)
    console.print(f"[green]Pushed {meta.file_count} files ({format_size(obj.size_bytes)}) to {backend.name}")


@remote.command("pull")
@click.pass_context
@handle_errors
def remote_pull(ctx: click.Context) -> None:
    """Pull the newest bundle and replace the repository with it."""
    config = load_config(ctx)
    backend = create_remote(config)
    with tempfile.TemporaryDirectory() as tmp:
        bundle = Path(tmp) / "pulled.zip"
        backend.pull(bundle)
        meta = unpack(bundle, config.repo_dir, config.manifest_path)
    console.print(f"[green]Pulled {meta.file_count} files from {meta.hostname} ({meta.timestamp})")
    console.print("Run 'dotkeeper apply' to apply the pulled files to your system.")


@cli.group()
def daemon() -> None:
    """Watch tracked files and snapshot changes."""


@daemon.command("run")
@click.option("--max-iterations", type=int, default=None, hidden=True)
@click.pass_context
@handle_errors
def daemon_run(ctx: click.Context, max_iterations: Optional[int]) -> None:
    """Run the watcher in the foreground until stopped."""
    config = load_config(ctx)
    mode = config.daemon.get("mode", "ask")
    watched = {path: live_location(path, config.home) for path in expand_tracked(config)}

    def on_burst(changed: List[str]) -> None:
        if mode != "auto":
            logger.warning(
                "%d tracked file(s) changed: %s; run 'dotkeeper capture' to record them",
                len(changed),
                ", ".join(changed[:5]),
            )
            return
        try:
            result = CaptureManager(config, console, secrets=load_provider(config)).capture()
            if result.manifest is not None:
                SnapshotStore.from_config(config).create(
                    result.manifest, f"Auto-snapshot: {len(changed)} file(s) changed"
                )
        except DotkeeperError as e:
            logger.error("Auto-snapshot failed: %s", e)

    with DaemonLock(config.base_dir):
        runner = Daemon(
            PollingWatcher(watched),
            Debouncer(config.daemon.get("debounce_ms", 1500) / 1000),
            on_burst,
            poll_interval=config.daemon.get("poll_interval_ms", 500) / 1000,
        )
        previous = {sig: signal.signal(sig, runner.stop) for sig in (signal.SIGTERM, signal.SIGINT)}
        console.print(f"Watching {len(watched)} file(s) in '{mode}' mode")
        try:
            runner.run(max_iterations=max_iterations)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


@daemon.command("status")
@click.pass_context
@handle_errors
def daemon_status(ctx: click.Context) -> None:
    """Show whether the watcher is running."""
    config = load_config(ctx)
    pid = running_pid(config.base_dir)
    if pid is None:
        console.print("Daemon is not running")
    else:
        console.print(f"[green]Daemon is running (PID: {pid if pid > 0 else 'unknown'})")


@daemon.command("stop")
@click.pass_context
@handle_errors
def daemon_stop(ctx: click.Context) -> None:
    """Stop the running watcher."""
    config = load_config(ctx)
    pid = stop_daemon(config.base_dir)
    console.print(f"[green]Stopped daemon (PID: {pid})")


def main() -> None:
    """Entry point for the dotkeeper CLI."""
    cli()


if __name__ == "__main__":
    main()
