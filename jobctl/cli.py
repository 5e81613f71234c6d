"""CLI interface for jobctl."""

import functools
import json
import signal
from datetime import datetime
from typing import Optional

import click

from .errors import QueueError
from .log import setup_logging
from .manager import WorkerManager, live_worker_count
from .models import Job, JobState
from .queue import JobQueue
from .settings import get_settings
from .storage import Storage
from .worker import Worker


def get_storage(ctx: click.Context) -> Storage:
    """Open the store for this invocation; closed when the command ends."""
    obj = ctx.find_root().obj
    return ctx.with_resource(Storage(obj["db_path"], settings=obj["settings"]))


def get_queue(ctx: click.Context) -> JobQueue:
    storage = get_storage(ctx)
    return JobQueue(storage, active_workers=lambda: live_worker_count(storage))


def reports_errors(f):
    """Turn queue errors into a clean message and exit status 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except QueueError as e:
            raise click.ClickException(str(e)) from e
    return wrapper


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _truncate(text: Optional[str], width: int) -> str:
    text = (text or "").replace("\n", " ")
    return text if len(text) <= width else text[: width - 3] + "..."


@click.group()
@click.option("--db", "db_path", default=None, help="Path to the job database (default: $JOBCTL_DB_PATH)")
@click.pass_context
def cli(ctx: click.Context, db_path: Optional[str]):
    """jobctl - Background Job Queue"""
    settings = get_settings()
    setup_logging(settings)
    ctx.obj = {"settings": settings, "db_path": db_path or settings.db_path}


@cli.command()
@click.argument("job_json")
@click.pass_context
@reports_errors
def enqueue(ctx: click.Context, job_json: str):
    """Enqueue a new job.

    Example:
        jobctl enqueue '{"id":"job1","command":"echo hello"}'
    """
    try:
        job_data = json.loads(job_json)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON: {e}")
    if not isinstance(job_data, dict):
        raise click.ClickException("Job must be a JSON object")

    job = get_queue(ctx).enqueue(job_data)
    click.secho(f"✓ Job {job.id} enqueued successfully", fg="green")


@cli.command("list")
@click.option("--state", type=click.Choice([s.value for s in JobState]), help="Filter by state")
@click.option("--limit", default=20, show_default=True, help="Maximum jobs to display")
@click.pass_context
@reports_errors
def list_jobs(ctx: click.Context, state: Optional[str], limit: int):
    """List jobs, newest first.

    Example:
        jobctl list --state pending
    """
    jobs = get_queue(ctx).list(JobState(state) if state else None, limit=limit)
    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<28} {'State':<12} {'Attempts':<10} {'Command':<30} {'Created':<20}")
    click.echo("-" * 102)
    for job in jobs:
        attempts = f"{job.attempts}/{job.max_retries}"
        click.echo(
            f"{job.id:<28} {job.state.value:<12} {attempts:<10} "
            f"{_truncate(job.command, 30):<30} {_fmt_time(job.created_at):<20}"
        )
    click.echo()


@cli.command()
@click.pass_context
@reports_errors
def status(ctx: click.Context):
    """Show job counts per state and active workers."""
    result = get_queue(ctx).get_status()
    stats = result.stats

    click.echo("\n" + "=" * 40)
    click.echo("jobctl Status")
    click.echo("=" * 40)
    click.echo(f"Total Jobs:     {sum(stats.values())}")
    click.echo(f"  Pending:      {stats['pending']}")
    click.echo(f"  Processing:   {stats['processing']}")
    click.echo(f"  Completed:    {stats['completed']}")
    click.echo(f"  Failed:       {stats['failed']}")
    click.echo(f"  Dead (DLQ):   {stats['dead']}")
    click.echo(f"\nActive Workers: {result.active_workers}")
    click.echo("=" * 40 + "\n")


@cli.group()
def worker():
    """Manage worker processes"""


@worker.command()
@click.option("--count", default=1, show_default=True, help="Number of workers to start")
@click.pass_context
@reports_errors
def start(ctx: click.Context, count: int):
    """Start worker processes and supervise them until Ctrl+C.

    Example:
        jobctl worker start --count 3
    """
    if count < 1:
        raise click.BadParameter("count must be at least 1", param_hint="--count")

    obj = ctx.find_root().obj
    manager = WorkerManager(settings=obj["settings"], db_path=obj["db_path"])
    manager.install_signal_handlers()
    manager.start_workers(count)
    click.echo(f"Started {count} worker(s). Press Ctrl+C to stop.")
    manager.supervise()
    click.echo("Workers stopped")


@worker.command("run")
@click.option("--name", default="worker-1", show_default=True, help="Worker identity recorded on claimed jobs")
@click.pass_context
@reports_errors
def run_worker(ctx: click.Context, name: str):
    """Run a single worker in the foreground."""
    obj = ctx.find_root().obj
    w = Worker(get_storage(ctx), name, settings=obj["settings"])

    def _handle_shutdown(signum, frame):
        w.stop()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)
    w.run()


@cli.group()
def dlq():
    """Manage Dead Letter Queue"""


@dlq.command("list")
@click.option("--limit", default=20, show_default=True, help="Maximum jobs to display")
@click.pass_context
@reports_errors
def dlq_list(ctx: click.Context, limit: int):
    """List jobs in the Dead Letter Queue."""
    jobs = get_queue(ctx).list_dead(limit=limit)
    if not jobs:
        click.echo("Dead Letter Queue is empty")
        return

    click.echo(f"\n{'ID':<28} {'Command':<30} {'Attempts':<10} {'Last Error':<40} {'Failed At':<20}")
    click.echo("-" * 132)
    for job in jobs:
        attempts = f"{job.attempts}/{job.max_retries}"
        click.echo(
            f"{job.id:<28} {_truncate(job.command, 30):<30} {attempts:<10} "
            f"{_truncate(job.last_error, 40):<40} {_fmt_time(job.updated_at):<20}"
        )
    click.echo()


@dlq.command("inspect")
@click.argument("job_id")
@click.pass_context
@reports_errors
def dlq_inspect(ctx: click.Context, job_id: str):
    """Show full details of a dead job."""
    job: Job = get_queue(ctx).inspect_dead(job_id)
    click.echo(f"\nID:          {job.id}")
    click.echo(f"Command:     {job.command}")
    click.echo(f"State:       {job.state.value}")
    click.echo(f"Attempts:    {job.attempts}/{job.max_retries}")
    click.echo(f"Created At:  {_fmt_time(job.created_at)}")
    click.echo(f"Failed At:   {_fmt_time(job.updated_at)}")
    click.echo(f"Exit Code:   {job.exit_code if job.exit_code is not None else 'N/A'}")
    click.echo("Last Error:")
    click.echo(job.last_error or job.error or "No error message available")
    if job.output:
        click.echo("Output:")
        click.echo(job.output)
    click.echo()


@dlq.command("retry")
@click.argument("job_id")
@click.pass_context
@reports_errors
def dlq_retry(ctx: click.Context, job_id: str):
    """Move a dead job back to the queue.

    Example:
        jobctl dlq retry job1
    """
    job = get_queue(ctx).retry_from_dlq(job_id)
    click.secho(f"✓ Job {job.id} moved back to queue (attempts reset to 0/{job.max_retries})", fg="green")


@dlq.command("retry-all")
@click.pass_context
@reports_errors
def dlq_retry_all(ctx: click.Context):
    """Move every dead job back to the queue."""
    count = get_queue(ctx).retry_all_dead()
    click.echo(f"✓ Moved {count} job(s) from dead to pending")


@dlq.command("delete")
@click.argument("job_id")
@click.pass_context
@reports_errors
def dlq_delete(ctx: click.Context, job_id: str):
    """Permanently delete a dead job."""
    get_queue(ctx).delete_dead(job_id)
    click.echo(f"✓ Job {job_id} deleted from Dead Letter Queue")


@dlq.command("clear")
@click.confirmation_option(prompt="Permanently delete every dead job?")
@click.pass_context
@reports_errors
def dlq_clear(ctx: click.Context):
    """Permanently delete every dead job."""
    count = get_queue(ctx).clear_dead()
    click.echo(f"✓ Cleared Dead Letter Queue ({count} job(s) deleted)")


@dlq.command("stats")
@click.pass_context
@reports_errors
def dlq_stats(ctx: click.Context):
    """Show Dead Letter Queue statistics."""
    stats = get_queue(ctx).dead_stats()
    click.echo(f"\nTotal Dead Jobs: {stats.total}")
    if stats.total:
        click.echo(f"Oldest Dead Job: {_fmt_time(stats.oldest_dead_at)}")
    if stats.top_errors:
        click.echo("\nMost Common Errors:")
        for group in stats.top_errors:
            click.echo(f"  {group.count:>5}  {_truncate(group.message, 70)}")
    click.echo()


@cli.group()
def config():
    """Manage stored configuration"""


@config.command("get")
@click.argument("key")
@click.pass_context
@reports_errors
def config_get(ctx: click.Context, key: str):
    """Print a configuration value."""
    value = get_storage(ctx).get_config(key)
    if value is None:
        raise click.ClickException(f"Unknown config key: {key}")
    click.echo(value)


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
@reports_errors
def config_set(ctx: click.Context, key: str, value: str):
    """Set a configuration value.

    Example:
        jobctl config set notify-email ops@example.com
    """
    get_storage(ctx).set_config(key, value)
    click.echo(f"✓ Configuration updated: {key} = {value}")


@config.command("list")
@click.pass_context
@reports_errors
def config_list(ctx: click.Context):
    """Show every stored configuration value."""
    entries = get_storage(ctx).list_config()
    if not entries:
        click.echo("No configuration stored")
        return
    for entry in entries:
        click.echo(f"  {entry.key:<20} {entry.value}")


if __name__ == "__main__":
    cli()
