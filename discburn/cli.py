"""
CLI interface for discburn.

The initiator side (submit, cancel, status, ...) and the executor loop share
one entry point and one config file. Both talk only to the shared store
configured as `store_root`.
"""


import signal

import click
from pathlib import Path

from discburn import __version__


@click.group()
@click.version_option(version=__version__, prog_name="discburn")
@click.pass_context
def main(ctx):
    """
    discburn - Remote disc burn queue.

    Submit burn jobs from anywhere; an executor next to the burner runs them.
    """
    from discburn.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # init runs without a config; other commands report this error
        ctx.obj["config_error"] = str(e)


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'discburn init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _commands(ctx):
    from discburn.commands import JobCommands
    from discburn.store import FileBlobStore
    from discburn.utils import setup_logging

    config = _require_config(ctx)
    setup_logging(log_file=config.log_path, log_level=config.log_level, log_format=config.log_format, console_output=False)
    return JobCommands(FileBlobStore(config.store_path), config)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize discburn configuration."""
    from discburn.config import default_config_dict, get_discburn_home
    import yaml

    home = get_discburn_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config_dict(home), sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# DISCBURN_SIGNING_KEY=...\n")

    click.echo(f"Initialized discburn config at {cfg_path}")


# =============================================================================
# Initiator commands
# =============================================================================

@main.command("submit")
@click.argument("files", nargs=-1, required=True)
@click.option(
    "--priority",
    type=click.Choice(["urgent", "high", "normal", "low"]),
    default="normal",
    show_default=True,
    help="Scheduling priority",
)
@click.option("--device", help="Target burner (defaults to device_name from config)")
@click.pass_context
def submit(ctx, files: tuple[str, ...], priority: str, device: str | None):
    """Submit a burn job for FILES."""
    commands = _commands(ctx)
    try:
        job_id = commands.submit_job(list(files), priority=priority, device=device)
    except Exception as e:
        click.echo(f"✗ Submit failed: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Submitted {job_id} ({priority}, {len(files)} files)")


@main.command("cancel")
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id: str):
    """Cancel JOB_ID."""
    commands = _commands(ctx)
    try:
        immediate = commands.cancel_job(job_id)
    except Exception as e:
        click.echo(f"✗ Cancel failed: {e}", err=True)
        raise SystemExit(1)
    if immediate:
        click.echo(f"✓ Cancelled {job_id}")
    else:
        click.echo(f"✓ Cancel requested for {job_id}; the executor stops it at the next burn phase")


@main.command("status")
@click.argument("job_id")
@click.pass_context
def status(ctx, job_id: str):
    """Show the latest status of JOB_ID."""
    commands = _commands(ctx)
    record = commands.get_job_status(job_id)
    if record is None:
        click.echo(f"✗ Unknown job: {job_id}", err=True)
        raise SystemExit(1)

    click.echo(f"Job: {record['job_id']}")
    click.echo(f"Status: {record['status']}")
    if "progress" in record:
        click.echo(f"Progress: {record['progress']}%")
    click.echo(f"Retries: {record.get('retry_count', 0)}")
    if record.get("device"):
        click.echo(f"Device: {record['device']}")
    if record.get("error"):
        click.echo(f"Error: {record['error']}")


@main.command("pending")
@click.pass_context
def pending(ctx):
    """List queued jobs in execution order."""
    commands = _commands(ctx)
    descriptors = commands.list_pending()
    if not descriptors:
        click.echo("No pending jobs.")
        return
    for d in descriptors:
        click.echo(f"  {d.job_id}  {d.priority.value:<7} {d.status.value:<8} files={len(d.files)} retries={d.retry_count}")


@main.command("audit")
@click.option("--limit", type=int, default=20, show_default=True, help="Entries to show")
@click.pass_context
def audit(ctx, limit: int):
    """Show the administrative audit log."""
    commands = _commands(ctx)
    entries = commands.get_audit_log(limit)
    if not entries:
        click.echo("Audit log is empty.")
        return
    for entry in entries:
        target = f" {entry.target}" if entry.target else ""
        click.echo(f"{entry.timestamp.isoformat()}  {entry.level:<5} {entry.action}{target}  ({entry.actor}, {entry.result})")


@main.command("resubmit")
@click.argument("job_id")
@click.pass_context
def resubmit(ctx, job_id: str):
    """Put a failed or cancelled JOB_ID back in the queue."""
    commands = _commands(ctx)
    try:
        descriptor = commands.resubmit_job(job_id)
    except Exception as e:
        click.echo(f"✗ Resubmit failed: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Resubmitted {job_id} (retry_count={descriptor.retry_count})")


# =============================================================================
# Executor
# =============================================================================

@main.command("executor")
@click.option("--once", is_flag=True, help="Run a single polling tick and exit")
@click.option("--max-ticks", type=int, default=None, help="Stop after N polling ticks")
@click.pass_context
def executor(ctx, once: bool, max_ticks: int | None):
    """Run the burn executor loop next to the burner.

    Polls the shared store for pending jobs and burns them one at a time
    in priority order. Ctrl-C or SIGTERM lets the active job finish, then
    exits.
    """
    from discburn.executor import BurnExecutor
    from discburn.store import FileBlobStore
    from discburn.utils import setup_logging

    config = _require_config(ctx)
    setup_logging(log_file=config.log_path, log_level=config.log_level, log_format=config.log_format)

    store_path = Path(config.store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    burner = BurnExecutor(FileBlobStore(store_path), config=config)

    def _request_stop(signum, frame):
        click.echo("Stop requested; finishing the active job first.", err=True)
        burner.stop()

    if once:
        max_ticks = 1
    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        ticks = burner.run(max_ticks=max_ticks)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    state = burner.state()
    click.echo(
        f"✓ Executor stopped after {ticks} ticks "
        f"(completed={len(state.completed_jobs)}, failed={len(state.failed_jobs)}, "
        f"cancelled={len(state.cancelled_jobs)})"
    )


@main.command("burn")
@click.argument("job_id")
@click.pass_context
def burn(ctx, job_id: str):
    """Burn one pending JOB_ID now, ahead of the queue."""
    from discburn.errors import JobNotFoundError, ParseError
    from discburn.executor import BurnExecutor
    from discburn.schemas import JobStatus
    from discburn.store import FileBlobStore
    from discburn.utils import setup_logging

    config = _require_config(ctx)
    setup_logging(log_file=config.log_path, log_level=config.log_level, log_format=config.log_format)

    burner = BurnExecutor(FileBlobStore(config.store_path), config=config)
    try:
        outcome = burner.run_job(job_id)
    except JobNotFoundError:
        click.echo(f"✗ Job not found: {job_id}", err=True)
        raise SystemExit(1)
    except ParseError as e:
        click.echo(f"✗ Unreadable job {job_id}: {e}", err=True)
        raise SystemExit(1)

    if outcome.status == JobStatus.COMPLETE:
        click.echo(f"✓ Burned {job_id}")
    elif outcome.status == JobStatus.CANCELLED:
        click.echo(f"✓ {job_id} was cancelled")
    else:
        click.echo(f"✗ Burn failed: {outcome.error} (status={outcome.status.value}, retries={outcome.retry_count})", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
