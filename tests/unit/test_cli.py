"""CLI tests for Run and outbox inspection."""

import asyncio

import pytest
from typer.testing import CliRunner

from acidjob import persistence
from acidjob.cli import app
from acidjob.outbox import OutboxDispatcher
from acidjob.persistence import InMemoryRunRepository
from acidjob.persistence.models import ErrorObject, OutboxEntry, Run


@pytest.fixture
def cli_repo(monkeypatch, tmp_path):
    monkeypatch.setenv("ACIDJOB_CONFIG", str(tmp_path / "missing.yaml"))
    repo = InMemoryRunRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def _seed(repo, *runs, entries=()):
    async def insert():
        async with repo.transaction() as tx:
            for run in runs:
                await tx.insert_run(run)
            for entry in entries:
                await tx.add_outbox_entry(entry)

    asyncio.run(insert())


def test_runs_list_empty(cli_repo):
    result = CliRunner().invoke(app, ["runs", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.stdout


def test_runs_list_and_filter(cli_repo):
    failed = Run(
        idempotency_key="k1",
        job_name="RideCreateJob",
        args_fingerprint="fp",
        recovery_point="create_stripe_charge",
        error_object=ErrorObject(class_name="CardDeclined", module="app", message="no"),
    )
    staged = Run(idempotency_key="k2", job_name="SendReceipt", args_fingerprint="fp", staged=True)
    _seed(cli_repo, failed, staged)

    result = CliRunner().invoke(app, ["runs", "list"])
    assert result.exit_code == 0
    assert f"{failed.id}\tRideCreateJob\tcreate_stripe_charge\tFAILED" in result.stdout
    assert staged.id in result.stdout

    result = CliRunner().invoke(app, ["runs", "list", "--unstaged"])
    assert failed.id in result.stdout
    assert staged.id not in result.stdout


def test_runs_show(cli_repo):
    run = Run(
        idempotency_key="k1",
        job_name="RideCreateJob",
        args_fingerprint="fp",
        job_args={"ride_id": 12},
        error_object=ErrorObject(class_name="CardDeclined", module="app", message="declined"),
    )
    _seed(cli_repo, run)

    result = CliRunner().invoke(app, ["runs", "show", run.id])
    assert result.exit_code == 0
    assert "Idempotency key: k1" in result.stdout
    assert "{'ride_id': 12}" in result.stdout
    assert "app.CardDeclined: declined" in result.stdout


def test_runs_show_missing(cli_repo):
    result = CliRunner().invoke(app, ["runs", "show", "nope"])
    assert result.exit_code == 1
    assert "Run not found" in result.stdout


def test_outbox_list(cli_repo):
    entry = OutboxEntry(adapter="inmemory", job_name="SendReceipt")
    _seed(cli_repo, entries=[entry])

    result = CliRunner().invoke(app, ["outbox", "list", "--pending"])
    assert result.exit_code == 0
    assert f"{entry.id}\tSendReceipt\tinmemory\tpending" in result.stdout


def test_outbox_dispatch_once_closes_transports(cli_repo, monkeypatch):
    closed = []
    original_close = OutboxDispatcher.close

    async def close(self):
        closed.append(sorted(self._connected))
        await original_close(self)

    monkeypatch.setattr(OutboxDispatcher, "close", close)
    _seed(cli_repo, entries=[OutboxEntry(adapter="inmemory", job_name="SendReceipt")])

    result = CliRunner().invoke(app, ["outbox", "dispatch", "--once"])

    assert result.exit_code == 0
    assert "Dispatched 1 entries" in result.stdout
    assert closed == [["inmemory"]]
    assert asyncio.run(cli_repo.list_outbox_entries(pending_only=True)) == []
