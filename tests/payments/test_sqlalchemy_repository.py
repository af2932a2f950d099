from datetime import datetime, timedelta, timezone
from decimal import Decimal
from functools import partial

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from application.services.entitlements import grant_plan
from domain.transaction.entity import ReconciliationStatus, Transaction, TransactionStatus
from domain.transaction.service import TransactionDomainService
from domain.user.entity import SubscriptionStatus
from domain.webhook.entity import WebhookEvent
from infrastructure.models import Base, PlanModel, UserModel
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


@pytest_asyncio.fixture
async def uow_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    async with session_factory() as session:
        session.add(UserModel(id=1, name="Asha Rao", email="asha@example.com"))
        session.add(PlanModel(id=7, name="Pro Annual", price=Decimal("999.00"), currency="INR"))
        await session.commit()
    yield partial(SQLAlchemyUnitOfWork, session_factory=session_factory)
    await engine.dispose()


async def _create(uow_factory) -> str:
    async with uow_factory() as uow:
        tx = await uow.transaction_repository.create(
            Transaction.start(user_id=1, plan_id=7, amount=Decimal("999.00"))
        )
    return tx.transaction_id


@pytest.mark.asyncio
async def test_create_and_read_back(uow_factory):
    txid = await _create(uow_factory)

    async with uow_factory(readonly=True) as uow:
        tx = await uow.transaction_repository.get_by_transaction_id(txid.lower())
        history = await uow.transaction_repository.list_by_user(1)

    assert tx.status == TransactionStatus.PENDING
    assert tx.amount == Decimal("999.00")
    assert tx.version == 0
    assert [t.transaction_id for t in history] == [txid]


@pytest.mark.asyncio
async def test_stale_version_save_is_rejected(uow_factory):
    txid = await _create(uow_factory)
    async with uow_factory(readonly=True) as uow:
        stale = await uow.transaction_repository.get_by_transaction_id(txid)

    async with uow_factory() as uow:
        fresh = await uow.transaction_repository.get_by_transaction_id(txid)
        fresh.mark_completed(gateway_payment_id="pay_1")
        assert await uow.transaction_repository.save(fresh) is True

    stale.mark_failed("late")
    async with uow_factory() as uow:
        assert await uow.transaction_repository.save(stale) is False

    async with uow_factory(readonly=True) as uow:
        stored = await uow.transaction_repository.get_by_transaction_id(txid)
    assert stored.status == TransactionStatus.COMPLETED
    assert stored.version == 1


@pytest.mark.asyncio
async def test_domain_service_complete_and_refund_persist(uow_factory):
    txid = await _create(uow_factory)
    async with uow_factory() as uow:
        service = TransactionDomainService(uow.transaction_repository)
        _, transitioned = await service.complete(txid, source="verification", gateway_payment_id="pay_1")
        assert transitioned
        _, refund = await service.request_refund(txid, Decimal("100.00"), "goodwill")
        await service.resolve_refund(txid, refund.refund_id, succeeded=True, gateway_refund_id="gr_1")

    async with uow_factory(readonly=True) as uow:
        tx = await uow.transaction_repository.get_by_transaction_id(txid)
    assert tx.status == TransactionStatus.PARTIALLY_REFUNDED
    assert tx.total_refunded == Decimal("100.00")
    assert tx.refunds[0].gateway_refund_id == "gr_1"


@pytest.mark.asyncio
async def test_reconciliation_markers_are_write_once(uow_factory):
    txid = await _create(uow_factory)
    async with uow_factory() as uow:
        await TransactionDomainService(uow.transaction_repository).complete(txid, source="webhook")

    async with uow_factory() as uow:
        repo = uow.transaction_repository
        assert await repo.set_invoice_number(txid, "INV1") is True
        assert await repo.set_invoice_number(txid, "INV2") is False
        assert await repo.set_ledger_payment_id(txid, "P1") is True
        assert await repo.set_ledger_payment_id(txid, "P2") is False

    # a later lifecycle save must not clobber the markers
    async with uow_factory() as uow:
        service = TransactionDomainService(uow.transaction_repository)
        await service.request_refund(txid, Decimal("1.00"))

    async with uow_factory(readonly=True) as uow:
        tx = await uow.transaction_repository.get_by_transaction_id(txid)
    assert tx.invoice_number == "INV1"
    assert tx.ledger_payment_id == "P1"


@pytest.mark.asyncio
async def test_reconciliation_lease(uow_factory):
    txid = await _create(uow_factory)
    now = datetime.now(timezone.utc)

    async with uow_factory() as uow:
        assert await uow.transaction_repository.claim_reconciliation(txid, now, now + timedelta(minutes=5)) is False
        await TransactionDomainService(uow.transaction_repository).complete(txid, source="webhook")

    async with uow_factory() as uow:
        repo = uow.transaction_repository
        assert await repo.claim_reconciliation(txid, now, now + timedelta(minutes=5)) is True
        assert await repo.claim_reconciliation(txid, now, now + timedelta(minutes=5)) is False
        later = now + timedelta(minutes=6)
        assert await repo.claim_reconciliation(txid, later, later + timedelta(minutes=5)) is True
        await repo.mark_reconciled(txid, ReconciliationStatus.MATCHED, later)
        assert await repo.claim_reconciliation(txid, later, later + timedelta(minutes=5)) is False


@pytest.mark.asyncio
async def test_retry_queries(uow_factory):
    txid = await _create(uow_factory)
    now = datetime.now(timezone.utc)
    async with uow_factory() as uow:
        await TransactionDomainService(uow.transaction_repository).fail(txid, "gateway_status:failed", now=now)

    async with uow_factory(readonly=True) as uow:
        unscheduled = await uow.transaction_repository.list_unscheduled_failures()
        due = await uow.transaction_repository.list_retry_due(now)
    assert [t.transaction_id for t in unscheduled] == [txid]
    assert due == []

    async with uow_factory() as uow:
        await TransactionDomainService(uow.transaction_repository).schedule_retry(txid, now)

    async with uow_factory(readonly=True) as uow:
        assert await uow.transaction_repository.list_retry_due(now) == []
        due = await uow.transaction_repository.list_retry_due(now + timedelta(minutes=30))
    assert [t.transaction_id for t in due] == [txid]


@pytest.mark.asyncio
async def test_webhook_event_dedupe(uow_factory):
    event = WebhookEvent(event_key="a" * 64, event_type="payment_succeeded", gateway_order_id="hp_1")
    async with uow_factory() as uow:
        assert await uow.webhook_event_repository.record(event) is True
    async with uow_factory() as uow:
        assert await uow.webhook_event_repository.record(event) is False


@pytest.mark.asyncio
async def test_reconciliation_lease_renewal_requires_current_holder(uow_factory):
    txid = await _create(uow_factory)
    now = datetime.now(timezone.utc)
    first = now + timedelta(minutes=5)
    async with uow_factory() as uow:
        await TransactionDomainService(uow.transaction_repository).complete(txid, source="webhook")

    async with uow_factory() as uow:
        repo = uow.transaction_repository
        assert await repo.claim_reconciliation(txid, now, first) is True
        assert await repo.renew_reconciliation(txid, first, first + timedelta(minutes=5)) is True
        # a holder still pointing at the old value has lost the lease
        assert await repo.renew_reconciliation(txid, first, first + timedelta(minutes=10)) is False

    async with uow_factory(readonly=True) as uow:
        tx = await uow.transaction_repository.get_by_transaction_id(txid)
    assert tx.reconciliation_lease_until.replace(tzinfo=None) == (first + timedelta(minutes=5)).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_unreconciled_query(uow_factory):
    txid = await _create(uow_factory)
    now = datetime.now(timezone.utc)
    async with uow_factory() as uow:
        await TransactionDomainService(uow.transaction_repository).complete(txid, source="webhook", now=now)

    async with uow_factory(readonly=True) as uow:
        repo = uow.transaction_repository
        assert [t.transaction_id for t in await repo.list_unreconciled(now, now + timedelta(seconds=1))] == [txid]
        assert await repo.list_unreconciled(now, now - timedelta(minutes=1)) == []

    async with uow_factory() as uow:
        await uow.transaction_repository.claim_reconciliation(txid, now, now + timedelta(minutes=5))
    async with uow_factory(readonly=True) as uow:
        assert await uow.transaction_repository.list_unreconciled(now, now + timedelta(seconds=1)) == []

    async with uow_factory() as uow:
        await uow.transaction_repository.mark_reconciled(txid, ReconciliationStatus.MATCHED, now)
    async with uow_factory(readonly=True) as uow:
        later = now + timedelta(hours=1)
        assert await uow.transaction_repository.list_unreconciled(later, later) == []


@pytest.mark.asyncio
async def test_stale_processing_query(uow_factory):
    txid = await _create(uow_factory)
    now = datetime.now(timezone.utc)
    async with uow_factory() as uow:
        service = TransactionDomainService(uow.transaction_repository)
        await service.fail(txid, "gateway_status:pending", schedule_retry=True, now=now)
    due = now + timedelta(minutes=30)
    async with uow_factory() as uow:
        _, started = await TransactionDomainService(uow.transaction_repository).begin_retry(txid, due)
    assert started is True

    async with uow_factory(readonly=True) as uow:
        repo = uow.transaction_repository
        assert await repo.list_stale_processing(due - timedelta(minutes=1)) == []
        stale = await repo.list_stale_processing(due + timedelta(minutes=10))
    assert [t.transaction_id for t in stale] == [txid]


@pytest.mark.asyncio
async def test_plan_grant_commits_with_completion(uow_factory):
    txid = await _create(uow_factory)
    async with uow_factory() as uow:
        tx, transitioned = await TransactionDomainService(uow.transaction_repository).complete(
            txid, source="verification"
        )
        assert transitioned
        await grant_plan(uow, tx)

    async with uow_factory(readonly=True) as uow:
        user = await uow.user_repository.get_by_id(1)
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.current_plan_id == 7
    assert user.plan_purchased_at is not None


@pytest.mark.asyncio
async def test_plan_grant_rolls_back_with_completion(uow_factory):
    txid = await _create(uow_factory)
    with pytest.raises(RuntimeError):
        async with uow_factory() as uow:
            tx, _ = await TransactionDomainService(uow.transaction_repository).complete(txid, source="verification")
            await grant_plan(uow, tx)
            raise RuntimeError("crash before commit")

    async with uow_factory(readonly=True) as uow:
        user = await uow.user_repository.get_by_id(1)
        tx = await uow.transaction_repository.get_by_transaction_id(txid)
    assert tx.status == TransactionStatus.PENDING
    assert user.subscription_status == SubscriptionStatus.INACTIVE
    assert user.current_plan_id is None
