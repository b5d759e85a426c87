"""Message contract tests."""

import json

from acidjob.contracts import JobMessage, RetryPolicy
from acidjob.persistence.models import ErrorObject, OutboxEntry, Run
from acidjob.utils.retry import compute_backoff


def test_message_bump_attempt():
    msg = JobMessage(job_name="ChargeCard", adapter="inmemory", idempotency_key="k1")
    bumped = msg.bump_attempt()
    assert bumped.attempt == msg.attempt + 1
    assert bumped.message_id != msg.message_id
    assert bumped.idempotency_key == "k1"


def test_message_from_outbox_entry_uses_entry_identity():
    entry = OutboxEntry(
        adapter="inmemory",
        job_name="SendReceipt",
        job_args={"args": [1], "kwargs": {"currency": "usd"}},
    )

    message = JobMessage.from_outbox_entry(entry)

    assert message.message_id == entry.id
    assert message.idempotency_key == entry.id
    assert message.outbox_entry_id == entry.id
    assert message.staged is True
    assert message.args == [1]
    assert message.kwargs == {"currency": "usd"}


def test_message_from_outbox_entry_keeps_explicit_key():
    entry = OutboxEntry(adapter="inmemory", job_name="SendReceipt", idempotency_key="receipt-1")
    assert JobMessage.from_outbox_entry(entry).idempotency_key == "receipt-1"


def test_message_json():
    msg = JobMessage(job_name="ChargeCard", adapter="redis", args=[1, "a"])
    restored = JobMessage.from_json(msg.to_json())
    assert restored == msg
    assert restored.staged is False
    assert set(json.loads(msg.to_json())) == {
        "message_id",
        "job_name",
        "adapter",
        "args",
        "kwargs",
        "idempotency_key",
        "outbox_entry_id",
        "attempt",
        "timestamp",
    }


def test_retry_policy_should_retry():
    policy = RetryPolicy(max_attempts=2)
    assert policy.should_retry(1)
    assert not policy.should_retry(2)


def test_compute_backoff_growth():
    first = compute_backoff(1, base=2, jitter=0)
    second = compute_backoff(2, base=2, jitter=0)
    assert second > first


class CardDeclined(Exception):
    pass


def test_error_object_from_exception():
    try:
        raise CardDeclined("Your card was declined.")
    except CardDeclined as exc:
        error = ErrorObject.from_exception(exc)

    assert error.class_name == "CardDeclined"
    assert error.message == "Your card was declined."
    assert "CardDeclined" in error.backtrace
    assert error.matches(CardDeclined)
    assert not error.matches(ValueError)


def test_run_lock_staleness():
    from datetime import timedelta

    from acidjob.persistence.models import utcnow

    run = Run(idempotency_key="k", job_name="j", args_fingerprint="f")
    assert not run.is_lock_stale(60)

    now = utcnow()
    run.locked_at = now - timedelta(seconds=120)
    assert run.is_lock_stale(60, now=now)
    assert not run.is_lock_stale(600, now=now)
