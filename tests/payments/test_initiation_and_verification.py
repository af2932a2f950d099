import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from kombu.exceptions import OperationalError

from application.dtos.payments import InitiatePayment, VerifyPayment
from application.services.initiation_service import InitiationService
from application.services.verification_service import VerificationService
from application.services.webhook_service import WebhookProcessor, compute_signature
from domain.common.exceptions import (
    PaymentGatewayException,
    PaymentVerificationFailedException,
    PlanNotFoundException,
    PlanUnavailableException,
    TransactionNotFoundException,
)
from domain.transaction.entity import TransactionStatus
from domain.transaction.events import TransactionCompleted
from domain.user.entity import SubscriptionStatus
from infrastructure.events.publishers import CeleryReconciliationPublisher


SECRET = "whsec_test"


class BrokerDownDispatcher:
    def __init__(self):
        self.attempts = 0

    def reconcile_transaction(self, transaction_id: str) -> None:
        self.attempts += 1
        raise OperationalError("broker unreachable")


def _initiation(store, gateway, publisher=None):
    return InitiationService(store.uow, gateway, publisher=publisher)


def _verification(store, gateway, publisher=None):
    return VerificationService(store.uow, gateway, publisher=publisher)


async def _initiate(store, gateway):
    user = store.users[1]
    return await _initiation(store, gateway).initiate(user, InitiatePayment(plan_id=7))


@pytest.mark.asyncio
async def test_initiate_creates_pending_transaction_with_session(store, gateway):
    result = await _initiate(store, gateway)

    assert result.transaction_id.startswith("TXN_")
    assert result.amount == Decimal("999.00")
    assert result.currency == "INR"
    assert result.payment_url.endswith(result.gateway_order_id)
    tx = store.transaction(result.transaction_id)
    assert tx.status == TransactionStatus.PENDING
    assert tx.gateway_order_id == result.gateway_order_id
    assert gateway.sessions[result.gateway_order_id] == result.transaction_id


@pytest.mark.asyncio
async def test_initiate_unknown_plan(store, gateway):
    with pytest.raises(PlanNotFoundException):
        await _initiation(store, gateway).initiate(store.users[1], InitiatePayment(plan_id=404))
    assert store.transactions == {}


@pytest.mark.asyncio
async def test_initiate_plan_outside_window(store, gateway):
    store.add_plan(
        id=8,
        name="Expired",
        price=Decimal("10"),
        available_until=datetime.now(timezone.utc) - timedelta(days=1),
    )
    with pytest.raises(PlanUnavailableException):
        await _initiation(store, gateway).initiate(store.users[1], InitiatePayment(plan_id=8))


@pytest.mark.asyncio
async def test_initiate_gateway_failure_leaves_pending_without_session(store, gateway):
    gateway.fail_create = True
    with pytest.raises(PaymentGatewayException):
        await _initiate(store, gateway)

    (tx,) = store.transactions.values()
    assert tx.status == TransactionStatus.PENDING
    assert tx.gateway_order_id is None


@pytest.mark.asyncio
async def test_cancel_requires_owner(store, gateway):
    result = await _initiate(store, gateway)
    service = _initiation(store, gateway)
    with pytest.raises(TransactionNotFoundException):
        await service.cancel(store.users[2], result.transaction_id)
    dto = await service.cancel(store.users[1], result.transaction_id)
    assert dto.status == "cancelled"


@pytest.mark.asyncio
async def test_verify_paid_completes_once(store, gateway, publisher):
    result = await _initiate(store, gateway)
    gateway.set_status(result.gateway_order_id, "paid", payment_id="pay_1")
    service = _verification(store, gateway, publisher)
    req = VerifyPayment(transaction_id=result.transaction_id, payment_id="pay_1", signature="ignored")

    first = await service.verify(store.users[1], req)
    second = await service.verify(store.users[1], req)

    assert first.status == "completed" and first.already_completed is False
    assert second.already_completed is True
    assert len(publisher.of_type(TransactionCompleted)) == 1
    tx = store.transaction(result.transaction_id)
    assert tx.gateway_payment_id == "pay_1"
    assert tx.completed_at is not None


@pytest.mark.asyncio
async def test_verify_paid_grants_plan_to_buyer(store, gateway):
    result = await _initiate(store, gateway)
    gateway.set_status(result.gateway_order_id, "paid", payment_id="pay_1")
    assert store.users[1].subscription_status == SubscriptionStatus.INACTIVE

    await _verification(store, gateway).verify(store.users[1], VerifyPayment(transaction_id=result.transaction_id))

    user = store.users[1]
    tx = store.transaction(result.transaction_id)
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.current_plan_id == 7
    assert user.plan_purchased_at == tx.completed_at


@pytest.mark.asyncio
async def test_verify_succeeds_when_reconciliation_cannot_be_enqueued(store, gateway):
    result = await _initiate(store, gateway)
    gateway.set_status(result.gateway_order_id, "paid", payment_id="pay_1")
    dispatcher = BrokerDownDispatcher()
    service = _verification(store, gateway, CeleryReconciliationPublisher(dispatcher))

    verified = await service.verify(store.users[1], VerifyPayment(transaction_id=result.transaction_id))

    assert verified.status == "completed"
    assert verified.already_completed is False
    assert dispatcher.attempts == 1
    assert store.transaction(result.transaction_id).status == TransactionStatus.COMPLETED
    assert store.users[1].subscription_status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_verify_not_paid_fails_and_schedules_retry(store, gateway):
    result = await _initiate(store, gateway)
    gateway.set_status(result.gateway_order_id, "failed")

    with pytest.raises(PaymentVerificationFailedException):
        await _verification(store, gateway).verify(store.users[1], VerifyPayment(transaction_id=result.transaction_id))

    tx = store.transaction(result.transaction_id)
    assert tx.status == TransactionStatus.FAILED
    assert tx.failure_reason == "gateway_status:failed"
    assert tx.retry_count == 1
    assert tx.next_retry_at is not None
    assert store.users[1].subscription_status == SubscriptionStatus.INACTIVE
    assert store.users[1].current_plan_id is None


@pytest.mark.asyncio
async def test_verify_gateway_error_records_failure(store, gateway):
    result = await _initiate(store, gateway)
    gateway.fail_status = True

    with pytest.raises(PaymentGatewayException):
        await _verification(store, gateway).verify(store.users[1], VerifyPayment(transaction_id=result.transaction_id))

    tx = store.transaction(result.transaction_id)
    assert tx.status == TransactionStatus.FAILED
    assert tx.failure_reason == "gateway_error"


@pytest.mark.asyncio
async def test_verify_other_users_transaction_is_not_found(store, gateway):
    result = await _initiate(store, gateway)
    with pytest.raises(TransactionNotFoundException):
        await _verification(store, gateway).verify(store.users[2], VerifyPayment(transaction_id=result.transaction_id))
    assert gateway.status_calls == []


@pytest.mark.asyncio
async def test_verify_without_session_fails(store, gateway):
    gateway.fail_create = True
    with pytest.raises(PaymentGatewayException):
        await _initiate(store, gateway)
    (txid,) = store.transactions.keys()

    with pytest.raises(PaymentVerificationFailedException):
        await _verification(store, gateway).verify(store.users[1], VerifyPayment(transaction_id=txid))


@pytest.mark.asyncio
async def test_concurrent_verify_and_webhook_complete_exactly_once(store, gateway, publisher):
    result = await _initiate(store, gateway)
    gateway.set_status(result.gateway_order_id, "paid", payment_id="pay_9")
    body = json.dumps({
        "event_type": "payment_succeeded",
        "data": {"hostedpage_id": result.gateway_order_id, "payment_id": "pay_9"},
    }).encode()
    processor = WebhookProcessor(store.uow, SECRET, publisher=publisher)
    verifier = _verification(store, gateway, publisher)

    verified, ack = await asyncio.gather(
        verifier.verify(store.users[1], VerifyPayment(transaction_id=result.transaction_id)),
        processor.process(body, compute_signature(SECRET, body)),
    )

    assert verified.status == "completed"
    assert ack.transaction_id == result.transaction_id
    assert len(publisher.of_type(TransactionCompleted)) == 1
    tx = store.transaction(result.transaction_id)
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.webhook_verified is True
    assert tx.gateway_payment_id == "pay_9"
