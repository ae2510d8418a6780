"""EventRelay server CLI."""

import asyncio
import logging
import re
import secrets
import subprocess
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from eventrelay import __version__
from eventrelay.config import get_settings

app = typer.Typer(
    name="eventrelay",
    help="EventRelay - multi-tenant webhook delivery service",
    no_args_is_help=True,
)

console = Console()

# Subcommands
db_app = typer.Typer(help="Database management commands")
jobs_app = typer.Typer(help="Background job commands")
webhooks_app = typer.Typer(help="Webhook outbox commands")

app.add_typer(db_app, name="db")
app.add_typer(jobs_app, name="jobs")
app.add_typer(webhooks_app, name="webhooks")


def run_async(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_tenant(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Invalid tenant id: {value}[/red]")
        raise typer.Exit(1) from None


@app.command()
def serve(
    api_only: bool = typer.Option(False, "--api-only", help="Run only the API server"),
    worker_only: bool = typer.Option(False, "--worker-only", help="Run only the workers"),
    shutdown_timeout: int = typer.Option(
        30, "--shutdown-timeout", help="Timeout for graceful shutdown in seconds"
    ),
):
    """Start the EventRelay server."""
    import signal

    import uvicorn

    from eventrelay.cleanup import CleanupWorker
    from eventrelay.db.session import close_engine
    from eventrelay.jobs.worker import JobWorker

    if api_only and worker_only:
        console.print("[red]--api-only and --worker-only are mutually exclusive[/red]")
        raise typer.Exit(1)

    _configure_logging()
    settings = get_settings()

    async def run_all():
        uvicorn_server: uvicorn.Server | None = None
        job_worker: JobWorker | None = None
        cleanup_worker: CleanupWorker | None = None

        async def graceful_shutdown(sig: signal.Signals | None = None) -> None:
            """Handle graceful shutdown of all components."""
            if shutting_down.is_set():
                return
            shutting_down.set()
            if sig:
                console.print(f"\n[yellow]Received {sig.name}, shutting down...[/yellow]")
            else:
                console.print("\n[yellow]Shutting down...[/yellow]")

            # Stop components in reverse order of startup
            shutdown_tasks = []

            if cleanup_worker is not None:
                shutdown_tasks.append(cleanup_worker.stop())
                console.print("[dim]Stopping cleanup worker...[/dim]")

            if job_worker is not None:
                shutdown_tasks.append(job_worker.stop())
                console.print("[dim]Stopping job worker...[/dim]")

            if uvicorn_server is not None:
                uvicorn_server.should_exit = True
                console.print("[dim]Stopping API server...[/dim]")

            if shutdown_tasks:
                try:
                    await asyncio.wait_for(
                        asyncio.gather(*shutdown_tasks, return_exceptions=True),
                        timeout=shutdown_timeout,
                    )
                except TimeoutError:
                    console.print("[red]Shutdown timed out, forcing exit[/red]")

            console.print("[green]Shutdown complete[/green]")
            stopped.set()

        stopped = asyncio.Event()
        shutting_down = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            loop.create_task(graceful_shutdown(sig))

        # Register signal handlers (Unix only)
        try:
            loop.add_signal_handler(signal.SIGTERM, lambda: signal_handler(signal.SIGTERM))
            loop.add_signal_handler(signal.SIGINT, lambda: signal_handler(signal.SIGINT))
        except NotImplementedError:
            pass

        tasks = []

        if not worker_only:
            config = uvicorn.Config(
                "eventrelay.main:create_app",
                factory=True,
                host=settings.api_host,
                port=settings.api_port,
                log_level=settings.log_level.lower(),
            )
            uvicorn_server = uvicorn.Server(config)
            tasks.append(asyncio.create_task(uvicorn_server.serve()))
            console.print(
                f"[green]API server started on {settings.api_host}:{settings.api_port}[/green]"
            )

        if not api_only:
            job_worker = JobWorker(settings)
            job_worker.start()
            console.print(f"[green]Job worker started ({job_worker.worker_id})[/green]")

            cleanup_worker = CleanupWorker(settings)
            cleanup_worker.start()
            if settings.rate_limit_cleanup_enabled:
                console.print(
                    "[green]Cleanup worker started "
                    f"(interval: {settings.rate_limit_cleanup_interval_seconds}s)[/green]"
                )
            # Workers run until a signal arrives
            tasks.append(asyncio.create_task(stopped.wait()))

        try:
            if tasks:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                # uvicorn may exit on its own signal handling
                if not shutting_down.is_set():
                    await graceful_shutdown()
                await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            await close_engine()

    try:
        asyncio.run(run_all())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


@app.command()
def version():
    """Show version information."""
    console.print(f"EventRelay version {__version__}")


@app.command()
def show_config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="EventRelay Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for field_name in type(settings).model_fields:
        value = getattr(settings, field_name)
        # Hide sensitive values
        if "key" in field_name.lower() or "secret" in field_name.lower():
            value = "********"
        table.add_row(field_name, str(value))

    console.print(table)


@app.command()
def generate_secret_key():
    """Generate a value for EVENTRELAY_WEBHOOK_SECRET_KEY or EVENTRELAY_ROOT_API_KEY."""
    console.print(secrets.token_urlsafe(32))


@app.command()
def cleanup(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be deleted without actually deleting"
    ),
    older_than: str | None = typer.Option(
        None, "--older-than", help="Override retention period (e.g., '2h', '30m', '1d')"
    ),
):
    """Delete expired rate limit buckets."""
    from eventrelay.cleanup.service import RateLimitCleanupService
    from eventrelay.db.session import async_session, close_engine

    settings = get_settings()

    retention_seconds: int | None = None
    if older_than:
        retention_seconds = _parse_duration_to_seconds(older_than)
        if retention_seconds is None:
            console.print(f"[red]Invalid duration format: {older_than}[/red]")
            console.print("Use format like '1d' (days), '6h' (hours) or '30m' (minutes)")
            raise typer.Exit(1)

    async def run_cleanup():
        try:
            async with async_session() as session:
                service = RateLimitCleanupService(settings, session)
                return await service.cleanup(dry_run=dry_run, retention_seconds=retention_seconds)
        finally:
            await close_engine()

    result = run_async(run_cleanup())
    cutoff_str = result.cutoff_date.strftime("%Y-%m-%d %H:%M:%S UTC")

    if dry_run:
        console.print(
            f"[yellow]Would delete {result.deleted_count} rate limit buckets "
            f"older than {cutoff_str}[/yellow]"
        )
    else:
        console.print(
            f"[green]Deleted {result.deleted_count} rate limit buckets "
            f"older than {cutoff_str}[/green]"
        )


def _parse_duration_to_seconds(duration: str) -> int | None:
    """Parse a duration string like '1d', '6h', '30m' or '90s' to seconds.

    Returns None if the format is invalid.
    """
    match = re.match(r"^(\d+)([dhms])$", duration.lower())
    if not match:
        return None

    value = int(match.group(1))
    multiplier = {"d": 86400, "h": 3600, "m": 60, "s": 1}[match.group(2)]
    return value * multiplier or None


# Database commands


@db_app.command("upgrade")
def db_upgrade(
    revision: str = typer.Argument("head", help="Revision to upgrade to"),
):
    """Upgrade database to a revision."""
    _run_alembic("upgrade", revision)


@db_app.command("downgrade")
def db_downgrade(
    revision: str = typer.Argument(..., help="Revision to downgrade to"),
):
    """Downgrade database to a revision."""
    _run_alembic("downgrade", revision)


@db_app.command("revision")
def db_revision(
    message: str = typer.Option(..., "-m", "--message", help="Revision message"),
    autogenerate: bool = typer.Option(True, "--autogenerate/--no-autogenerate"),
):
    """Create a new database revision."""
    args = ["revision", "-m", message]
    if autogenerate:
        args.append("--autogenerate")
    _run_alembic(*args)


@db_app.command("current")
def db_current():
    """Show current database revision."""
    _run_alembic("current")


@db_app.command("history")
def db_history():
    """Show revision history."""
    _run_alembic("history")


def _run_alembic(*args):
    """Run alembic command."""
    # src/eventrelay/cli.py -> project root
    package_dir = Path(__file__).parent.parent.parent
    alembic_ini = package_dir / "alembic.ini"

    if not alembic_ini.exists():
        console.print(f"[red]alembic.ini not found at {alembic_ini}[/red]")
        raise typer.Exit(1)

    cmd = ["alembic", "-c", str(alembic_ini), *args]
    result = subprocess.run(cmd, cwd=package_dir)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)


# Job commands


@jobs_app.command("reap")
def jobs_reap():
    """Reclaim stuck jobs and outbox entries across all tenants."""
    from eventrelay.db.session import close_engine
    from eventrelay.jobs.worker import JobWorker

    _configure_logging()

    async def reap():
        worker = JobWorker(get_settings())
        try:
            return await worker.reap()
        finally:
            await worker.delivery_worker.close()
            await close_engine()

    jobs, entries = run_async(reap())
    console.print(f"[green]Reclaimed {jobs} jobs and {entries} outbox entries[/green]")


@jobs_app.command("list")
def jobs_list(
    tenant: str = typer.Argument(..., help="Tenant ID"),
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of jobs"),
):
    """List a tenant's background jobs."""
    from eventrelay.db.enums import JobStatus
    from eventrelay.db.session import close_engine, tenant_session
    from eventrelay.jobs.queue import list_jobs

    tenant_id = _parse_tenant(tenant)
    try:
        status_filter = JobStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Invalid status: {status}[/red]")
        raise typer.Exit(1) from None

    async def fetch():
        try:
            async with tenant_session(tenant_id) as session:
                return await list_jobs(session, tenant_id, status=status_filter, limit=limit)
        finally:
            await close_engine()

    jobs, total = run_async(fetch())

    table = Table(title=f"Jobs ({len(jobs)} of {total})")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Run after")
    table.add_column("Error", style="red")

    for job in jobs:
        table.add_row(
            str(job.id),
            job.type,
            job.status,
            f"{job.attempts}/{job.max_attempts}",
            job.run_after.strftime("%Y-%m-%d %H:%M:%S"),
            (job.error_message or "")[:60],
        )

    console.print(table)


# Webhook commands


@webhooks_app.command("drain")
def webhooks_drain(
    tenant: str = typer.Argument(..., help="Tenant ID"),
    max_entries: int | None = typer.Option(
        None, "--max", help="Stop after this many outbox entries"
    ),
):
    """Deliver a tenant's due outbox entries now."""
    from eventrelay.db.session import close_engine
    from eventrelay.webhook.dispatcher import DeliveryWorker

    _configure_logging()
    tenant_id = _parse_tenant(tenant)

    async def drain():
        worker = DeliveryWorker(get_settings())
        try:
            processed = await worker.drain_tenant(tenant_id, max_entries=max_entries)
            await worker.schedule_next_drain(tenant_id)
            return processed
        finally:
            await worker.close()
            await close_engine()

    processed = run_async(drain())
    console.print(f"[green]Processed {processed} outbox entries[/green]")


@webhooks_app.command("retry")
def webhooks_retry(
    tenant: str = typer.Argument(..., help="Tenant ID"),
    outbox_id: str = typer.Argument(..., help="Outbox entry ID"),
):
    """Send a dead-lettered outbox entry back for delivery."""
    from eventrelay.db.session import close_engine, tenant_session
    from eventrelay.ratelimit import RateLimitExceeded
    from eventrelay.webhook.outbox import retry_outbox_entry

    tenant_id = _parse_tenant(tenant)
    try:
        entry_id = uuid.UUID(outbox_id)
    except ValueError:
        console.print(f"[red]Invalid outbox id: {outbox_id}[/red]")
        raise typer.Exit(1) from None

    async def retry():
        try:
            async with tenant_session(tenant_id) as session:
                return await retry_outbox_entry(session, tenant_id, entry_id)
        finally:
            await close_engine()

    try:
        retried = run_async(retry())
    except RateLimitExceeded as e:
        console.print(
            f"[red]Retry rate limit reached, try again in {e.result.retry_after}s[/red]"
        )
        raise typer.Exit(1) from None

    if not retried:
        console.print(f"[yellow]Outbox entry {outbox_id} is not in dead_letter[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Outbox entry {outbox_id} queued for retry[/green]")


if __name__ == "__main__":
    app()
