"""Command line interface for acidjob workers, the outbox and Run inspection."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import List, Optional

import typer

from acidjob import JobWorker, OutboxDispatcher, get_repository, get_transport
from acidjob.config import load_config
from acidjob.errors import UnknownJobError

app = typer.Typer(help="CLI for acidjob idempotent jobs")

worker_app = typer.Typer(help="Commands for running job workers")
outbox_app = typer.Typer(help="Commands for the transactional outbox")
runs_app = typer.Typer(help="Commands for inspecting Runs")

app.add_typer(worker_app, name="worker")
app.add_typer(outbox_app, name="outbox")
app.add_typer(runs_app, name="runs")


@app.callback()
def main() -> None:
    """acidjob CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _import_modules(modules: List[str]) -> None:
    for module in modules:
        importlib.import_module(module)


@worker_app.command("start")
def worker_start(
    job_name: str,
    import_: List[str] = typer.Option(
        [], "--import", "-i", help="Module(s) that declare the job classes"
    ),
    transport: Optional[str] = typer.Option(None, help="Override the transport backend"),
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker process for the specified job.

    Example:
        acidjob worker start RideCreateJob --import myapp.jobs
        acidjob worker start RideCreateJob -i myapp.jobs --lifespan 300
    """
    _import_modules(import_)
    try:
        worker = JobWorker(get_transport(transport), job_name, repository=get_repository())
    except UnknownJobError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Starting worker: {job_name}")
    asyncio.run(_run_worker(worker, lifespan))


async def _run_worker(worker: JobWorker, lifespan: Optional[float]) -> None:
    await worker.transport.connect()
    try:
        await worker.start(lifespan=lifespan)
    finally:
        await worker.transport.disconnect()


@outbox_app.command("dispatch")
def outbox_dispatch(
    once: bool = typer.Option(False, help="Drain pending entries once and exit"),
    import_: List[str] = typer.Option(
        [], "--import", "-i", help="Module(s) that declare the job classes"
    ),
    lifespan: Optional[float] = None,
) -> None:
    """Forward committed outbox entries to the job queue."""
    _import_modules(import_)
    dispatcher = OutboxDispatcher(get_repository())
    sent = asyncio.run(_run_dispatcher(dispatcher, once, lifespan))
    if once:
        typer.echo(f"Dispatched {sent} entries")


async def _run_dispatcher(
    dispatcher: OutboxDispatcher, once: bool, lifespan: Optional[float]
) -> int:
    try:
        if once:
            return await dispatcher.dispatch_pending()
        await dispatcher.run(lifespan=lifespan)
        return 0
    finally:
        await dispatcher.close()


@outbox_app.command("list")
def outbox_list(pending: bool = typer.Option(False, help="Only undispatched entries")) -> None:
    """List outbox entries."""
    repo = get_repository()
    entries = asyncio.run(repo.list_outbox_entries(pending_only=pending))
    if not entries:
        typer.echo("No outbox entries found")
        return
    for entry in entries:
        state = "pending" if entry.pending else f"dispatched {entry.dispatched_at}"
        typer.echo(f"{entry.id}\t{entry.job_name}\t{entry.adapter}\t{state}")


@runs_app.command("list")
def runs_list(
    staged: Optional[bool] = typer.Option(
        None, "--staged/--unstaged", help="Filter by record classification"
    ),
) -> None:
    """
    List Runs with their recovery point.

    Example:
        acidjob runs list
        # Output: 5b2c...    RideCreateJob    create_stripe_charge    FAILED
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(staged=staged))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        status = "FAILED" if run.failed else ("LOCKED" if run.locked else "OK")
        typer.echo(f"{run.id}\t{run.job_name}\t{run.recovery_point}\t{status}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """Show one Run, including its working state and last error."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.job_name} @ {run.recovery_point}")
    typer.echo(f"Idempotency key: {run.idempotency_key}")
    typer.echo(f"Staged: {run.staged}")
    typer.echo(f"Last run at: {run.last_run_at}")
    if run.locked_at:
        typer.echo(f"Locked at: {run.locked_at}")
    typer.echo(f"Working state: {run.job_args}")
    if run.error_object:
        typer.echo(f"Error: {run.error_object.qualified_name}: {run.error_object.message}")
        typer.echo(run.error_object.backtrace)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
