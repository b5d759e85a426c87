"""Idempotency key resolver tests."""

import pytest

from acidjob.errors import DuplicateRunError
from acidjob.persistence.inmemory import InMemoryRunTransaction
from acidjob.resolver import (
    IdempotencyKeyResolver,
    args_fingerprint,
    derive_idempotency_key,
)


def test_fingerprint_is_stable_and_order_independent():
    first = args_fingerprint([1, "a"], {"x": 1, "y": [1, 2]})
    second = args_fingerprint([1, "a"], {"y": [1, 2], "x": 1})
    assert first == second
    assert first != args_fingerprint([1, "b"], {"x": 1, "y": [1, 2]})


def test_resolve_key_prefers_explicit_key(memory_repo):
    resolver = IdempotencyKeyResolver(memory_repo)

    derived = resolver.resolve_key("ChargeCard", [1], {})
    assert derived == derive_idempotency_key("ChargeCard", args_fingerprint([1], {}))
    assert resolver.resolve_key("ChargeCard", [1], {}, explicit_key="abc") == "abc"
    assert resolver.resolve_key("RefundCard", [1], {}) != derived


@pytest.mark.asyncio
async def test_find_or_create_collapses_identical_invocations(repo):
    resolver = IdempotencyKeyResolver(repo)

    first, created = await resolver.find_or_create("ChargeCard", [1], {}, {"charge_id": None})
    second, created_again = await resolver.find_or_create(
        "ChargeCard", [1], {}, {"charge_id": "ignored"}
    )

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert second.job_args == {"charge_id": None}
    assert len(await repo.list_runs()) == 1


@pytest.mark.asyncio
async def test_find_or_create_separates_different_arguments(repo):
    resolver = IdempotencyKeyResolver(repo)

    first, _ = await resolver.find_or_create("ChargeCard", [1], {}, {})
    second, _ = await resolver.find_or_create("ChargeCard", [2], {}, {})

    assert first.id != second.id
    assert len(await repo.list_runs()) == 2


@pytest.mark.asyncio
async def test_find_or_create_records_staged_classification(repo):
    resolver = IdempotencyKeyResolver(repo)

    run, _ = await resolver.find_or_create("SendReceipt", [], {}, {}, explicit_key="e1", staged=True)

    assert run.staged is True
    assert run.idempotency_key == "e1"
    assert [r.id for r in await repo.list_runs(staged=True)] == [run.id]
    assert await repo.list_runs(staged=False) == []


@pytest.mark.asyncio
async def test_find_or_create_falls_back_when_losing_the_race(memory_repo, monkeypatch):
    resolver = IdempotencyKeyResolver(memory_repo)
    winner, _ = await resolver.find_or_create("ChargeCard", [1], {}, {"charge_id": "ch_1"})

    original_find = InMemoryRunTransaction.find_run
    calls = {"count": 0}

    async def find_missing_once(self, *args):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return await original_find(self, *args)

    monkeypatch.setattr(InMemoryRunTransaction, "find_run", find_missing_once)

    loser, created = await resolver.find_or_create("ChargeCard", [1], {}, {"charge_id": None})

    assert created is False
    assert loser.id == winner.id
    assert loser.job_args == {"charge_id": "ch_1"}
    assert len(await memory_repo.list_runs()) == 1


@pytest.mark.asyncio
async def test_duplicate_insert_is_reported(repo):
    resolver = IdempotencyKeyResolver(repo)
    run, _ = await resolver.find_or_create("ChargeCard", [1], {}, {})

    with pytest.raises(DuplicateRunError):
        async with repo.transaction() as tx:
            await tx.insert_run(run.model_copy(update={"id": "another-id"}))
