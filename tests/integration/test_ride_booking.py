"""Ride booking: business writes, an external charge and a follow-on job.

The job writes its own rows through the step transaction, so a crash
anywhere leaves either the whole step or none of it.
"""

from collections import Counter

import pytest
import pytest_asyncio

from acidjob import IdempotentJob

CALLS = Counter()


class SimulatedCrash(Exception):
    pass


class FakeChargeGateway:
    """Payment API that deduplicates charges by idempotency key."""

    def __init__(self):
        self.charges = {}
        self.calls = 0

    def charge(self, idempotency_key, card, amount):
        self.calls += 1
        if card == "declined":
            return None
        if idempotency_key not in self.charges:
            self.charges[idempotency_key] = f"ch_{len(self.charges) + 1}"
        return self.charges[idempotency_key]


GATEWAY = FakeChargeGateway()


class SendRideReceipt(IdempotentJob, queue_adapter="inmemory"):
    async def perform(self, ride_id):
        async with self.with_acidity() as flow:
            flow.step("deliver")

    async def deliver(self, ctx):
        CALLS["receipt"] += 1


class RideCreateJob(IdempotentJob, queue_adapter="inmemory"):
    crash_in = set()

    async def perform(self, user_id, origin, destination):
        providing = {
            "user_id": user_id,
            "origin": origin,
            "destination": destination,
            "ride_id": None,
            "charge_id": None,
        }
        async with self.with_acidity(providing=providing) as flow:
            flow.step("create_ride_and_audit_record")
            flow.step("create_stripe_charge")
            flow.step("send_receipt")

    async def create_ride_and_audit_record(self, ctx):
        tx = ctx.transaction
        await tx.execute(
            "INSERT INTO rides (user_id, origin, destination) VALUES (?, ?, ?)",
            ctx.state.user_id,
            ctx.state.origin,
            ctx.state.destination,
        )
        [row] = await tx.fetch("SELECT max(id) AS id FROM rides")
        await tx.execute(
            "INSERT INTO audit_records (action, ride_id) VALUES (?, ?)",
            "AUDIT_RIDE_CREATED",
            row["id"],
        )
        if "create_ride_and_audit_record" in self.crash_in:
            raise SimulatedCrash()
        ctx.state.ride_id = row["id"]

    async def create_stripe_charge(self, ctx):
        [user] = await ctx.transaction.fetch(
            "SELECT card FROM users WHERE id = ?", ctx.state.user_id
        )
        charge_id = GATEWAY.charge(ctx.run.idempotency_key, user["card"], 2000)
        if "create_stripe_charge" in self.crash_in:
            raise SimulatedCrash()
        if charge_id is None:
            return ctx.finish()
        ctx.state.charge_id = charge_id
        await ctx.transaction.execute(
            "UPDATE rides SET charge_id = ? WHERE id = ?", charge_id, ctx.state.ride_id
        )

    async def send_receipt(self, ctx):
        ctx.enqueue(SendRideReceipt, ctx.state.ride_id)
        if "send_receipt" in self.crash_in:
            raise SimulatedCrash()


@pytest_asyncio.fixture
async def ride_db(sqlite_repo):
    async with sqlite_repo.transaction() as tx:
        await tx.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, card TEXT)")
        await tx.execute(
            "CREATE TABLE rides (id INTEGER PRIMARY KEY, user_id INTEGER, "
            "origin TEXT, destination TEXT, charge_id TEXT)"
        )
        await tx.execute(
            "CREATE TABLE audit_records (id INTEGER PRIMARY KEY, action TEXT, ride_id INTEGER)"
        )
        await tx.execute("INSERT INTO users (id, card) VALUES (1, 'tok_visa')")
        await tx.execute("INSERT INTO users (id, card) VALUES (2, 'declined')")
    return sqlite_repo


@pytest.fixture(autouse=True)
def reset_world():
    global GATEWAY
    GATEWAY = FakeChargeGateway()
    CALLS.clear()
    RideCreateJob.crash_in = set()
    yield
    RideCreateJob.crash_in = set()


async def _rows(repo, query):
    async with repo.transaction() as tx:
        return await tx.fetch(query)


@pytest.mark.asyncio
async def test_successful_booking(ride_db):
    job = RideCreateJob(repository=ride_db)
    await job.perform_now(1, "home", "airport")

    assert job.run.finished
    [ride] = await _rows(ride_db, "SELECT * FROM rides")
    assert ride["charge_id"] == "ch_1"
    assert job.state.ride_id == ride["id"]
    assert len(await _rows(ride_db, "SELECT * FROM audit_records")) == 1
    [entry] = await ride_db.list_outbox_entries()
    assert entry.job_name == "SendRideReceipt"
    assert entry.job_args["args"] == [ride["id"]]


@pytest.mark.asyncio
async def test_declined_card_finishes_without_receipt(ride_db):
    job = RideCreateJob(repository=ride_db)
    await job.perform_now(2, "home", "airport")

    assert job.run.finished
    assert job.state.charge_id is None
    assert GATEWAY.charges == {}
    assert await ride_db.list_outbox_entries() == []


@pytest.mark.asyncio
async def test_failed_first_step_rolls_back_ride_insert(ride_db):
    RideCreateJob.crash_in = {"create_ride_and_audit_record"}

    with pytest.raises(SimulatedCrash):
        await RideCreateJob(repository=ride_db).perform_now(1, "home", "airport")

    assert await _rows(ride_db, "SELECT * FROM rides") == []
    assert await _rows(ride_db, "SELECT * FROM audit_records") == []
    [run] = await ride_db.list_runs()
    assert run.recovery_point == "create_ride_and_audit_record"


@pytest.mark.asyncio
async def test_crash_after_charge_does_not_double_charge(ride_db):
    RideCreateJob.crash_in = {"create_stripe_charge"}
    with pytest.raises(SimulatedCrash):
        await RideCreateJob(repository=ride_db).perform_now(1, "home", "airport")

    [run] = await ride_db.list_runs()
    assert run.recovery_point == "create_stripe_charge"
    assert run.job_args["charge_id"] is None

    RideCreateJob.crash_in = set()
    job = RideCreateJob(repository=ride_db)
    await job.perform_now(1, "home", "airport")

    assert job.run.finished
    assert GATEWAY.calls == 2
    assert GATEWAY.charges == {run.idempotency_key: "ch_1"}
    assert len(await _rows(ride_db, "SELECT * FROM rides")) == 1


@pytest.mark.asyncio
async def test_crash_while_enqueueing_receipt_resumes_last_step(ride_db):
    RideCreateJob.crash_in = {"send_receipt"}
    with pytest.raises(SimulatedCrash):
        await RideCreateJob(repository=ride_db).perform_now(1, "home", "airport")
    assert await ride_db.list_outbox_entries() == []

    RideCreateJob.crash_in = set()
    await RideCreateJob(repository=ride_db).perform_now(1, "home", "airport")

    assert GATEWAY.calls == 1
    assert len(await ride_db.list_outbox_entries()) == 1
    assert len(await _rows(ride_db, "SELECT * FROM rides")) == 1
