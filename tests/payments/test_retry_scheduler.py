from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.services.retry_service import RetryScheduler
from domain.transaction.entity import Transaction, TransactionStatus
from domain.transaction.events import TransactionCompleted, TransactionFailed
from domain.transaction.retry import RetryPolicy
from domain.user.entity import SubscriptionStatus


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
POLICY = RetryPolicy(interval=timedelta(minutes=30))


def _failed(store, *, retry_count=1, next_retry_at=NOW, max_retries=3, order_id="hp_1") -> str:
    tx = Transaction.start(user_id=1, plan_id=7, amount=Decimal("999.00"), max_retries=max_retries, now=NOW)
    tx.id = len(store.transactions) + 1
    tx.gateway_order_id = order_id
    tx.mark_failed("gateway_status:pending", now=NOW)
    tx.retry_count = retry_count
    tx.next_retry_at = next_retry_at
    store.transactions[tx.transaction_id] = tx
    return tx.transaction_id


def _scheduler(store, gateway, publisher=None):
    return RetryScheduler(store.uow, gateway, retry_policy=POLICY, publisher=publisher)


@pytest.mark.asyncio
async def test_due_retry_that_fails_again_backs_off_linearly(store, gateway):
    txid = _failed(store, retry_count=1)
    gateway.set_status("hp_1", "failed")

    summary = await _scheduler(store, gateway).run_due(NOW)

    assert summary == {"due": 1, "completed": 0, "failed": 1, "skipped": 0}
    tx = store.transaction(txid)
    assert tx.status == TransactionStatus.FAILED
    assert tx.retry_count == 2
    assert tx.next_retry_at == NOW + timedelta(minutes=60)


@pytest.mark.asyncio
async def test_due_retry_that_finds_payment_completes(store, gateway, publisher):
    txid = _failed(store)
    gateway.set_status("hp_1", "paid", payment_id="pay_late")

    summary = await _scheduler(store, gateway, publisher).run_due(NOW)

    assert summary["completed"] == 1
    tx = store.transaction(txid)
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.gateway_payment_id == "pay_late"
    (event,) = publisher.of_type(TransactionCompleted)
    assert event.source == "retry"
    assert store.users[1].subscription_status == SubscriptionStatus.ACTIVE
    assert store.users[1].plan_purchased_at == NOW


@pytest.mark.asyncio
async def test_not_yet_due_is_left_alone(store, gateway):
    txid = _failed(store, next_retry_at=NOW + timedelta(minutes=1))

    summary = await _scheduler(store, gateway).run_due(NOW)

    assert summary["due"] == 0
    assert gateway.status_calls == []
    assert store.transaction(txid).status == TransactionStatus.FAILED


@pytest.mark.asyncio
async def test_last_attempt_exhausts_without_cancelling(store, gateway):
    txid = _failed(store, retry_count=3, max_retries=3)
    gateway.set_status("hp_1", "pending")

    await _scheduler(store, gateway).run_due(NOW)

    tx = store.transaction(txid)
    assert tx.status == TransactionStatus.FAILED
    assert tx.retry_count == 3
    assert tx.next_retry_at is None


@pytest.mark.asyncio
async def test_gateway_error_counts_as_failed_attempt(store, gateway):
    txid = _failed(store)
    gateway.fail_status = True

    summary = await _scheduler(store, gateway).run_due(NOW)

    assert summary["failed"] == 1
    tx = store.transaction(txid)
    assert tx.failure_reason == "gateway_error"
    assert tx.retry_count == 2


@pytest.mark.asyncio
async def test_schedule_pending_picks_up_unscheduled_failures(store, gateway):
    txid = _failed(store, retry_count=0, next_retry_at=None)
    exhausted = _failed(store, retry_count=3, next_retry_at=None, order_id="hp_2")

    scheduled = await _scheduler(store, gateway).schedule_pending(NOW)

    assert scheduled == 1
    tx = store.transaction(txid)
    assert tx.retry_count == 1
    assert tx.next_retry_at == NOW + timedelta(minutes=30)
    assert store.transaction(exhausted).next_retry_at is None


def _stuck(store, *, started_at, order_id="hp_1") -> str:
    """A retry attempt whose worker died after moving it to processing."""
    txid = _failed(store, order_id=order_id)
    store.transactions[txid].mark_processing(started_at)
    return txid


@pytest.mark.asyncio
async def test_interrupted_attempt_is_failed_and_rescheduled(store, gateway, publisher):
    txid = _stuck(store, started_at=NOW - timedelta(minutes=20))

    recovered = await _scheduler(store, gateway, publisher).recover_stale(NOW, stale_after=timedelta(minutes=10))

    assert recovered == 1
    tx = store.transaction(txid)
    assert tx.status == TransactionStatus.FAILED
    assert tx.failure_reason == "retry_interrupted"
    assert tx.retry_count == 2
    assert tx.next_retry_at == NOW + timedelta(minutes=60)
    assert len(publisher.of_type(TransactionFailed)) == 1


@pytest.mark.asyncio
async def test_attempt_still_in_flight_is_not_recovered(store, gateway):
    txid = _stuck(store, started_at=NOW - timedelta(minutes=2))

    recovered = await _scheduler(store, gateway).recover_stale(NOW, stale_after=timedelta(minutes=10))

    assert recovered == 0
    assert store.transaction(txid).status == TransactionStatus.PROCESSING


@pytest.mark.asyncio
async def test_recovered_attempt_is_picked_up_by_next_due_sweep(store, gateway):
    txid = _stuck(store, started_at=NOW - timedelta(minutes=20))
    gateway.set_status("hp_1", "paid", payment_id="pay_late")
    scheduler = _scheduler(store, gateway)

    await scheduler.recover_stale(NOW, stale_after=timedelta(minutes=10))
    summary = await scheduler.run_due(NOW + timedelta(minutes=60))

    assert summary["completed"] == 1
    assert store.transaction(txid).status == TransactionStatus.COMPLETED
