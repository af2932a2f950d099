from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import (
    DomainValidationException,
    InvalidTransactionTransition,
    RefundExceedsBalanceException,
    TransactionNotRefundableException,
)
from domain.transaction.entity import RefundStatus, Transaction, TransactionStatus, generate_transaction_id
from domain.transaction.retry import RetryPolicy


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _tx(**overrides) -> Transaction:
    tx = Transaction.start(user_id=1, plan_id=7, amount=Decimal("999.00"), now=NOW)
    for name, value in overrides.items():
        setattr(tx, name, value)
    return tx


def test_transaction_id_format():
    txid = generate_transaction_id(NOW)
    prefix, millis, suffix = txid.split("_")
    assert prefix == "TXN"
    assert millis == str(int(NOW.timestamp() * 1000))
    assert len(suffix) == 6
    assert all(c in "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ" for c in suffix)


def test_start_defaults_to_pending_inr():
    tx = _tx()
    assert tx.status == TransactionStatus.PENDING
    assert tx.currency == "INR"
    assert tx.retry_count == 0
    assert tx.initiated_at == NOW


def test_negative_amount_rejected():
    with pytest.raises(DomainValidationException):
        Transaction(id=None, transaction_id="TXN_1_A", user_id=1, plan_id=1, amount=Decimal("-1"))


def test_unsupported_currency_rejected():
    with pytest.raises(DomainValidationException):
        Transaction(id=None, transaction_id="TXN_1_A", user_id=1, plan_id=1, amount=Decimal("1"), currency="GBP")


def test_complete_is_idempotent():
    tx = _tx()
    assert tx.mark_completed(gateway_payment_id="pay_1", now=NOW) is True
    first_completed_at = tx.completed_at
    assert tx.mark_completed(gateway_payment_id="pay_2", now=NOW + timedelta(minutes=5)) is False
    assert tx.completed_at == first_completed_at
    assert tx.gateway_payment_id == "pay_1"


def test_failed_transaction_can_still_complete():
    tx = _tx()
    tx.mark_failed("gateway_status:failed", now=NOW)
    assert tx.mark_completed(now=NOW) is True
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.next_retry_at is None


def test_cancelled_cannot_complete():
    tx = _tx()
    tx.cancel(NOW)
    with pytest.raises(InvalidTransactionTransition):
        tx.mark_completed(now=NOW)


def test_completed_cannot_fail_or_cancel():
    tx = _tx()
    tx.mark_completed(now=NOW)
    with pytest.raises(InvalidTransactionTransition):
        tx.mark_failed("late failure")
    with pytest.raises(InvalidTransactionTransition):
        tx.cancel()


def test_processing_only_from_pending_or_failed():
    tx = _tx()
    tx.mark_processing(NOW)
    assert tx.status == TransactionStatus.PROCESSING
    tx.mark_completed(now=NOW)
    with pytest.raises(InvalidTransactionTransition):
        tx.mark_processing(NOW)


def test_refund_requires_completed():
    tx = _tx()
    with pytest.raises(TransactionNotRefundableException):
        tx.request_refund(Decimal("10"))


def test_partial_then_full_refund():
    tx = _tx()
    tx.mark_completed(now=NOW)
    first = tx.request_refund(Decimal("400.00"), now=NOW)
    tx.mark_refund_processed(first.refund_id, "gr_1", now=NOW)
    assert tx.status == TransactionStatus.PARTIALLY_REFUNDED
    assert tx.total_refunded == Decimal("400.00")

    second = tx.request_refund(Decimal("599.00"), now=NOW)
    assert second.refund_id != first.refund_id
    tx.mark_refund_processed(second.refund_id, "gr_2", now=NOW)
    assert tx.status == TransactionStatus.REFUNDED
    assert tx.net_amount == Decimal("0")


def test_pending_refunds_count_against_balance():
    tx = _tx()
    tx.mark_completed(now=NOW)
    tx.request_refund(Decimal("900.00"), now=NOW)
    with pytest.raises(RefundExceedsBalanceException):
        tx.request_refund(Decimal("100.00"), now=NOW)


def test_failed_refund_releases_balance():
    tx = _tx()
    tx.mark_completed(now=NOW)
    refund = tx.request_refund(Decimal("999.00"), now=NOW)
    tx.mark_refund_failed(refund.refund_id, "rejected")
    assert tx.get_refund(refund.refund_id).status == RefundStatus.FAILED
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.refundable_amount == Decimal("999.00")


def test_retry_policy_linear_backoff():
    policy = RetryPolicy(interval=timedelta(minutes=30))
    tx = _tx()
    tx.mark_failed("first", now=NOW)
    tx.retry_count = 1
    assert policy.schedule(tx, NOW) is True
    assert tx.retry_count == 2
    assert tx.next_retry_at == NOW + timedelta(minutes=60)
    assert policy.is_eligible(tx, NOW + timedelta(minutes=59)) is False
    assert policy.is_eligible(tx, NOW + timedelta(minutes=60)) is True


def test_retry_policy_exhausted_clears_schedule():
    policy = RetryPolicy()
    tx = _tx(max_retries=3)
    tx.mark_failed("x", now=NOW)
    tx.retry_count = 3
    tx.next_retry_at = NOW
    assert policy.schedule(tx, NOW) is False
    assert tx.next_retry_at is None
    assert tx.status == TransactionStatus.FAILED


def test_retry_policy_ignores_non_failed():
    tx = _tx()
    assert RetryPolicy().schedule(tx, NOW) is False
    assert tx.retry_count == 0
