import pytest
from kombu.exceptions import OperationalError

from domain.transaction.events import TransactionCancelled, TransactionCompleted
from infrastructure.events import publishers
from infrastructure.events.publishers import CeleryReconciliationPublisher, InlineReconciliationPublisher


class StubDispatcher:
    def __init__(self):
        self.reconciled = []

    def reconcile_transaction(self, transaction_id: str) -> None:
        self.reconciled.append(transaction_id)


class BrokerDownDispatcher:
    def reconcile_transaction(self, transaction_id: str) -> None:
        raise OperationalError("connection refused")


class RecordingLogger:
    """Same call shape as a structlog bound logger."""

    def __init__(self):
        self.records = []

    def info(self, event, **kw):
        self.records.append((event, kw))

    exception = error = warning = info


@pytest.mark.asyncio
async def test_inline_publisher_reconciles_completed_only():
    seen = []

    async def reconcile(transaction_id: str) -> str:
        seen.append(transaction_id)
        return "matched"

    publisher = InlineReconciliationPublisher(reconcile)
    await publisher.publish([
        TransactionCompleted(transaction_id="TXN_1_A", user_id=1),
        TransactionCancelled(transaction_id="TXN_2_B", user_id=1),
    ])
    await publisher.drain()

    assert seen == ["TXN_1_A"]


@pytest.mark.asyncio
async def test_inline_publisher_survives_crashing_worker():
    async def reconcile(transaction_id: str) -> str:
        raise RuntimeError("boom")

    publisher = InlineReconciliationPublisher(reconcile)
    await publisher.publish([TransactionCompleted(transaction_id="TXN_1_A", user_id=1)])
    await publisher.drain()


@pytest.mark.asyncio
async def test_celery_publisher_enqueues_by_id():
    dispatcher = StubDispatcher()

    await CeleryReconciliationPublisher(dispatcher).publish([TransactionCompleted(transaction_id="TXN_1_A", user_id=1)])

    assert dispatcher.reconciled == ["TXN_1_A"]


@pytest.mark.asyncio
async def test_celery_publisher_surfaces_broker_errors():
    with pytest.raises(OperationalError):
        await CeleryReconciliationPublisher(BrokerDownDispatcher()).publish(
            [TransactionCompleted(transaction_id="TXN_1_A", user_id=1)]
        )


@pytest.mark.asyncio
async def test_domain_event_log_names_the_event_type(monkeypatch):
    log = RecordingLogger()
    monkeypatch.setattr(publishers, "logger", log)

    await CeleryReconciliationPublisher(StubDispatcher()).publish(
        [TransactionCancelled(transaction_id="TXN_2_B", user_id=1)]
    )

    assert log.records == [("domain_event", {"event_name": "TransactionCancelled", "transaction_id": "TXN_2_B"})]
