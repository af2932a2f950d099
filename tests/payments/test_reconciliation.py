import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.dtos.ledger import LedgerCustomer
from application.ports.ledger import LedgerError
from application.services.reconciliation_service import ReconciliationWorker
from domain.transaction.entity import ReconciliationStatus, Transaction

from tests.fakes import FakeLedger


def _completed(store, *, user_id: int = 1, payment_id: str = "pay_1") -> str:
    now = datetime.now(timezone.utc)
    tx = Transaction.start(user_id=user_id, plan_id=7, amount=Decimal("999.00"), now=now)
    tx.id = len(store.transactions) + 1
    tx.gateway_order_id = f"hp_{tx.id}"
    tx.mark_completed(gateway_payment_id=payment_id, now=now)
    store.transactions[tx.transaction_id] = tx
    return tx.transaction_id


class LostResponseLedger(FakeLedger):
    """Ledger that stores the payment but the response never arrives."""

    def __init__(self) -> None:
        super().__init__()
        self.drop_next_payment_response = True

    async def record_payment(self, req):
        payment = await super().record_payment(req)
        if self.drop_next_payment_response:
            self.drop_next_payment_response = False
            raise LedgerError("read timeout", operation="record_payment")
        return payment


@pytest.mark.asyncio
async def test_reconcile_creates_customer_invoice_and_payment(store, ledger):
    txid = _completed(store)

    result = await ReconciliationWorker(store.uow, ledger).reconcile(txid)

    assert result == "matched"
    tx = store.transaction(txid)
    assert tx.reconciliation_status == ReconciliationStatus.MATCHED
    assert tx.reconciled_at is not None
    assert tx.reconciliation_lease_until is None
    assert tx.invoice_number == "INV1"
    assert tx.ledger_payment_id == "P1"
    assert store.users[1].ledger_customer_id == "C1"
    assert ledger.emailed == ["INV1"]
    (invoice,) = ledger.invoices.values()
    assert invoice.reference_number == txid
    assert invoice.item_name == "Pro Annual"
    (payment,) = ledger.payments.values()
    assert payment.reference_number == "pay_1"
    assert payment.invoice_id == "INV1"


@pytest.mark.asyncio
async def test_existing_ledger_customer_is_updated_not_duplicated(store, ledger):
    ledger.customers["C77"] = LedgerCustomer(customer_id="C77", name="Old Name", email="asha@example.com")
    txid = _completed(store)

    await ReconciliationWorker(store.uow, ledger).reconcile(txid)

    assert "create_customer" not in ledger.calls
    assert ledger.customers["C77"].name == "Asha Rao"
    assert store.users[1].ledger_customer_id == "C77"


@pytest.mark.asyncio
async def test_resume_after_partial_failure_does_not_duplicate_invoice(store, ledger):
    txid = _completed(store)
    worker = ReconciliationWorker(store.uow, ledger)
    ledger.fail_on.add("record_payment")

    assert await worker.reconcile(txid) == "failed"
    tx = store.transaction(txid)
    assert tx.invoice_number == "INV1"
    assert tx.reconciliation_status == ReconciliationStatus.PENDING
    assert tx.reconciliation_lease_until is None

    ledger.fail_on.clear()
    assert await worker.reconcile(txid) == "matched"
    assert len(ledger.invoices) == 1
    assert len(ledger.payments) == 1
    assert store.transaction(txid).ledger_payment_id == "P1"


@pytest.mark.asyncio
async def test_lost_payment_response_is_adopted_on_rerun(store):
    ledger = LostResponseLedger()
    txid = _completed(store)
    worker = ReconciliationWorker(store.uow, ledger)

    assert await worker.reconcile(txid) == "failed"
    assert store.transaction(txid).ledger_payment_id is None
    assert await worker.reconcile(txid) == "matched"

    assert len(ledger.payments) == 1
    assert store.transaction(txid).ledger_payment_id == "P1"


@pytest.mark.asyncio
async def test_invoice_email_failure_does_not_block_matching(store, ledger):
    txid = _completed(store)
    ledger.fail_on.add("email_invoice")

    assert await ReconciliationWorker(store.uow, ledger).reconcile(txid) == "matched"
    assert store.transaction(txid).reconciliation_status == ReconciliationStatus.MATCHED


@pytest.mark.asyncio
async def test_held_lease_skips_run(store, ledger):
    txid = _completed(store)
    store.transactions[txid].reconciliation_lease_until = datetime.now(timezone.utc) + timedelta(minutes=5)

    assert await ReconciliationWorker(store.uow, ledger).reconcile(txid) == "skipped"
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(store, ledger):
    txid = _completed(store)
    store.transactions[txid].reconciliation_lease_until = datetime.now(timezone.utc) - timedelta(seconds=1)

    assert await ReconciliationWorker(store.uow, ledger).reconcile(txid) == "matched"


@pytest.mark.asyncio
async def test_matched_and_unpaid_transactions_are_skipped(store, ledger):
    txid = _completed(store)
    worker = ReconciliationWorker(store.uow, ledger)
    await worker.reconcile(txid)
    calls = len(ledger.calls)

    assert await worker.reconcile(txid) == "skipped"
    assert len(ledger.calls) == calls

    pending = Transaction.start(user_id=1, plan_id=7, amount=Decimal("999.00"))
    store.transactions[pending.transaction_id] = pending
    assert await worker.reconcile(pending.transaction_id) == "skipped"


@pytest.mark.asyncio
async def test_ledger_outage_never_raises(store, ledger):
    txid = _completed(store)
    ledger.fail_on.add("find_customer")

    assert await ReconciliationWorker(store.uow, ledger).reconcile(txid) == "failed"
    tx = store.transaction(txid)
    assert tx.invoice_number is None
    assert tx.reconciliation_lease_until is None


class LostInvoiceResponseLedger(FakeLedger):
    """Ledger that stores the invoice but the response never arrives."""

    def __init__(self) -> None:
        super().__init__()
        self.drop_next_invoice_response = True

    async def create_invoice(self, req):
        invoice = await super().create_invoice(req)
        if self.drop_next_invoice_response:
            self.drop_next_invoice_response = False
            raise LedgerError("read timeout", operation="create_invoice")
        return invoice


class LeaseTakeoverLedger(FakeLedger):
    """Another worker takes the lease over while the customer is being synced."""

    def __init__(self, store, transaction_id: str, taken_until: datetime) -> None:
        super().__init__()
        self.store = store
        self.transaction_id = transaction_id
        self.taken_until = taken_until

    async def create_customer(self, details):
        customer = await super().create_customer(details)
        self.store.transactions[self.transaction_id].reconciliation_lease_until = self.taken_until
        return customer


@pytest.mark.asyncio
async def test_lost_invoice_response_is_adopted_on_rerun(store):
    ledger = LostInvoiceResponseLedger()
    txid = _completed(store)
    worker = ReconciliationWorker(store.uow, ledger)

    assert await worker.reconcile(txid) == "failed"
    assert store.transaction(txid).invoice_number is None
    assert await worker.reconcile(txid) == "matched"

    assert len(ledger.invoices) == 1
    assert ledger.calls.count("create_invoice") == 1
    assert store.transaction(txid).invoice_number == "INV1"
    (payment,) = ledger.payments.values()
    assert payment.invoice_id == "INV1"


@pytest.mark.asyncio
async def test_lease_taken_over_mid_run_stops_without_release(store):
    txid = _completed(store)
    taken_until = datetime.now(timezone.utc) + timedelta(hours=1)
    ledger = LeaseTakeoverLedger(store, txid, taken_until)

    assert await ReconciliationWorker(store.uow, ledger).reconcile(txid) == "skipped"

    tx = store.transaction(txid)
    assert "create_invoice" not in ledger.calls
    assert "record_payment" not in ledger.calls
    assert tx.reconciliation_status == ReconciliationStatus.PENDING
    assert tx.reconciliation_lease_until == taken_until


@pytest.mark.asyncio
async def test_lease_is_extended_between_steps(store):
    txid = _completed(store)
    leases = []

    class SlowLedger(FakeLedger):
        async def find_customer_by_email(self, email):
            leases.append(store.transactions[txid].reconciliation_lease_until)
            await asyncio.sleep(0.05)
            return await super().find_customer_by_email(email)

        async def record_payment(self, req):
            leases.append(store.transactions[txid].reconciliation_lease_until)
            return await super().record_payment(req)

    assert await ReconciliationWorker(store.uow, SlowLedger(), lease_seconds=60).reconcile(txid) == "matched"

    claimed, before_payment = leases
    assert before_payment > claimed


@pytest.mark.asyncio
async def test_pending_sweep_reconciles_unmatched_completions(store, ledger):
    orphan = _completed(store, payment_id="pay_1")
    held = _completed(store, payment_id="pay_2")
    store.transactions[held].reconciliation_lease_until = datetime.now(timezone.utc) + timedelta(minutes=5)
    matched = _completed(store, payment_id="pay_3")
    worker = ReconciliationWorker(store.uow, ledger)
    await worker.reconcile(matched)

    summary = await worker.reconcile_pending(grace_seconds=0)

    assert summary == {"candidates": 1, "matched": 1, "failed": 0, "skipped": 0}
    assert store.transaction(orphan).reconciliation_status == ReconciliationStatus.MATCHED
    assert store.transaction(held).reconciliation_status == ReconciliationStatus.PENDING


@pytest.mark.asyncio
async def test_pending_sweep_leaves_fresh_completions_to_their_own_run(store, ledger):
    txid = _completed(store)

    summary = await ReconciliationWorker(store.uow, ledger).reconcile_pending(grace_seconds=600)

    assert summary["candidates"] == 0
    assert store.transaction(txid).reconciliation_status == ReconciliationStatus.PENDING
