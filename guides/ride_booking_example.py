"""Example showing an idempotent ride booking job with a follow-on receipt."""

import asyncio

from acidjob import IdempotentJob, JobWorker, OutboxDispatcher, get_transport
from acidjob.persistence import SQLiteRunRepository


class SendRideReceipt(IdempotentJob, queue_adapter="inmemory"):
    async def perform(self, ride_id):
        async with self.with_acidity(providing={"ride_id": ride_id}) as flow:
            flow.step("deliver_receipt")

    async def deliver_receipt(self, ctx):
        print(f"📧 Receipt sent for ride {ctx.state.ride_id}")


class RideCreateJob(IdempotentJob, queue_adapter="inmemory"):
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
        # Business rows commit in the same transaction as the recovery point
        await ctx.transaction.execute(
            "INSERT INTO rides (user_id, origin, destination) VALUES (?, ?, ?)",
            ctx.state.user_id,
            ctx.state.origin,
            ctx.state.destination,
        )
        [row] = await ctx.transaction.fetch("SELECT max(id) AS id FROM rides")
        ctx.state.ride_id = row["id"]

    async def create_stripe_charge(self, ctx):
        # A real payment API would receive ctx.run.idempotency_key
        ctx.state.charge_id = f"ch_{ctx.run.idempotency_key[:8]}"

    async def send_receipt(self, ctx):
        SendRideReceipt.perform_transactionally(ctx, ctx.state.ride_id)


async def main():
    repo = SQLiteRunRepository("rides.db")
    async with repo.transaction() as tx:
        await tx.execute(
            "CREATE TABLE IF NOT EXISTS rides "
            "(id INTEGER PRIMARY KEY, user_id INTEGER, origin TEXT, destination TEXT)"
        )

    job = RideCreateJob(repository=repo)
    await job.perform_now(1, "Main St", "Airport")
    print(f"✅ Run {job.run.id} at {job.run.recovery_point}")
    print(f"🔑 Idempotency key: {job.run.idempotency_key}")

    # Forward the staged receipt job and consume it
    transport = get_transport("inmemory")
    dispatcher = OutboxDispatcher(repo, transports={"inmemory": transport})
    sent = await dispatcher.dispatch_pending()
    print(f"📤 Dispatched {sent} outbox entries")

    worker = JobWorker(transport, "SendRideReceipt", repository=repo)
    await worker.start(lifespan=1)
    await dispatcher.close()


if __name__ == "__main__":
    asyncio.run(main())
