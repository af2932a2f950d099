import json
from decimal import Decimal

import pytest
from kombu.exceptions import OperationalError

from application.dtos.payments import InitiatePayment, VerifyPayment
from application.services.initiation_service import InitiationService
from application.services.reconciliation_service import ReconciliationWorker
from application.services.verification_service import VerificationService
from application.services.webhook_service import WebhookProcessor, compute_signature
from domain.transaction.entity import ReconciliationStatus, TransactionStatus
from domain.user.entity import SubscriptionStatus
from infrastructure.events.publishers import CeleryReconciliationPublisher, InlineReconciliationPublisher


SECRET = "whsec_test"


@pytest.mark.asyncio
async def test_plan_purchase_is_paid_and_reconciled(store, gateway, ledger):
    worker = ReconciliationWorker(store.uow, ledger)
    publisher = InlineReconciliationPublisher(worker.reconcile)
    user = store.users[1]

    started = await InitiationService(store.uow, gateway, publisher=publisher).initiate(user, InitiatePayment(plan_id=7))
    assert started.amount == Decimal("999.00")
    assert started.currency == "INR"

    gateway.set_status(started.gateway_order_id, "paid", payment_id="pay_999")
    raw = json.dumps({
        "event_type": "payment_succeeded",
        "data": {"hostedpage": {"hostedpage_id": started.gateway_order_id, "payment_id": "pay_999"}},
    }).encode()
    await WebhookProcessor(store.uow, SECRET, publisher=publisher).process(raw, compute_signature(SECRET, raw))
    verified = await VerificationService(store.uow, gateway, publisher=publisher).verify(
        user, VerifyPayment(transaction_id=started.transaction_id, payment_id="pay_999")
    )
    await publisher.drain()

    assert verified.already_completed is True
    tx = store.transaction(started.transaction_id)
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.reconciliation_status == ReconciliationStatus.MATCHED
    assert tx.invoice_number == "INV1"
    assert tx.ledger_payment_id == "P1"
    (payment,) = ledger.payments.values()
    assert payment.amount == Decimal("999.00")
    assert payment.reference_number == "pay_999"
    assert ledger.calls.count("create_invoice") == 1
    assert store.users[1].subscription_status == SubscriptionStatus.ACTIVE
    assert store.users[1].current_plan_id == 7


class UnreachableBroker:
    def reconcile_transaction(self, transaction_id: str) -> None:
        raise OperationalError("connection refused")


@pytest.mark.asyncio
async def test_completion_missed_by_broker_is_reconciled_by_sweep(store, gateway, ledger):
    user = store.users[1]
    started = await InitiationService(store.uow, gateway).initiate(user, InitiatePayment(plan_id=7))
    gateway.set_status(started.gateway_order_id, "paid", payment_id="pay_1")

    verified = await VerificationService(
        store.uow, gateway, publisher=CeleryReconciliationPublisher(UnreachableBroker())
    ).verify(user, VerifyPayment(transaction_id=started.transaction_id))
    assert verified.status == "completed"
    assert store.transaction(started.transaction_id).reconciliation_status == ReconciliationStatus.PENDING

    summary = await ReconciliationWorker(store.uow, ledger).reconcile_pending(grace_seconds=0)

    assert summary["matched"] == 1
    tx = store.transaction(started.transaction_id)
    assert tx.reconciliation_status == ReconciliationStatus.MATCHED
    assert tx.ledger_payment_id == "P1"
