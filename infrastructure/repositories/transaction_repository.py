"""
交易仓储实现 - 使用SQLAlchemy实现数据访问

生命周期字段通过 UPDATE ... WHERE version = :expected 条件写回，
对账标记通过 UPDATE ... WHERE col IS NULL 只写一次，
两类写入互不覆盖对方的列。
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from domain.transaction.entity import (
    Transaction,
    Refund,
    TransactionStatus,
    RefundStatus,
    ReconciliationStatus,
    PAID_STATUSES,
)
from domain.transaction.repository import TransactionRepository
from infrastructure.models.transaction import TransactionModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _refund_to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            refund_id=model.refund_id,
            amount=Decimal(str(model.amount)),
            status=RefundStatus(model.status),
            reason=model.reason,
            gateway_refund_id=model.gateway_refund_id,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            processed_at=model.processed_at,
        )

    def _to_entity(self, model: TransactionModel) -> Transaction:
        """将数据库模型转换为领域实体"""
        return Transaction(
            id=model.id,
            transaction_id=model.transaction_id,
            user_id=model.user_id,
            plan_id=model.plan_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=TransactionStatus(model.status),
            payment_gateway=model.payment_gateway,
            payment_method=model.payment_method,
            gateway_order_id=model.gateway_order_id,
            gateway_payment_id=model.gateway_payment_id,
            gateway_transaction_id=model.gateway_transaction_id,
            payment_url=model.payment_url,
            failure_reason=model.failure_reason,
            error_code=model.error_code,
            error_message=model.error_message,
            retry_count=model.retry_count,
            max_retries=model.max_retries,
            next_retry_at=model.next_retry_at,
            invoice_number=model.invoice_number,
            ledger_payment_id=model.ledger_payment_id,
            reconciliation_status=ReconciliationStatus(model.reconciliation_status),
            reconciled_at=model.reconciled_at,
            reconciliation_lease_until=model.reconciliation_lease_until,
            webhook_received=model.webhook_received,
            webhook_verified=model.webhook_verified,
            webhook_received_at=model.webhook_received_at,
            refunds=[self._refund_to_entity(r) for r in model.refunds],
            initiated_at=model.initiated_at,
            completed_at=model.completed_at,
            failed_at=model.failed_at,
            cancelled_at=model.cancelled_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version,
        )

    def _lifecycle_values(self, entity: Transaction) -> dict:
        """save 可写入的列（不含对账标记与租约）"""
        return {
            "status": entity.status.value,
            "gateway_order_id": entity.gateway_order_id,
            "gateway_payment_id": entity.gateway_payment_id,
            "gateway_transaction_id": entity.gateway_transaction_id,
            "payment_url": entity.payment_url,
            "failure_reason": entity.failure_reason,
            "error_code": entity.error_code,
            "error_message": entity.error_message,
            "retry_count": entity.retry_count,
            "max_retries": entity.max_retries,
            "next_retry_at": entity.next_retry_at,
            "webhook_received": entity.webhook_received,
            "webhook_verified": entity.webhook_verified,
            "webhook_received_at": entity.webhook_received_at,
            "completed_at": entity.completed_at,
            "failed_at": entity.failed_at,
            "cancelled_at": entity.cancelled_at,
            "updated_at": entity.updated_at or datetime.now(timezone.utc),
        }

    def _select(self):
        # populate_existing 保证并发冲突后重新读取到最新行
        return (
            select(TransactionModel)
            .options(selectinload(TransactionModel.refunds))
            .execution_options(populate_existing=True)
        )

    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易记录"""
        db_tx = TransactionModel(
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
            plan_id=transaction.plan_id,
            amount=transaction.amount,
            currency=transaction.currency,
            payment_gateway=transaction.payment_gateway,
            payment_method=transaction.payment_method,
            reconciliation_status=transaction.reconciliation_status.value,
            initiated_at=transaction.initiated_at,
            created_at=transaction.created_at or datetime.now(timezone.utc),
            version=transaction.version,
            **self._lifecycle_values(transaction),
        )
        self.session.add(db_tx)
        await self.session.flush()
        transaction.id = db_tx.id
        logger.info(
            "transaction_created",
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
            plan_id=transaction.plan_id,
            amount=str(transaction.amount),
        )
        return transaction

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        """根据交易号获取交易"""
        result = await self.session.execute(
            self._select().where(TransactionModel.transaction_id == transaction_id.upper())
        )
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Transaction]:
        """根据网关结账会话ID获取交易"""
        result = await self.session.execute(
            self._select().where(TransactionModel.gateway_order_id == gateway_order_id)
        )
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def list_by_user(self, user_id: int, skip: int = 0, limit: int = 100) -> List[Transaction]:
        """获取用户的交易列表"""
        result = await self.session.execute(
            self._select()
            .where(TransactionModel.user_id == user_id)
            .order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_retry_due(self, now: datetime, limit: int = 100) -> List[Transaction]:
        """获取已到重试时间的失败交易"""
        result = await self.session.execute(
            self._select()
            .where(
                TransactionModel.status == TransactionStatus.FAILED.value,
                TransactionModel.next_retry_at.is_not(None),
                TransactionModel.next_retry_at <= now,
            )
            .order_by(TransactionModel.next_retry_at.asc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_unscheduled_failures(self, limit: int = 100) -> List[Transaction]:
        """获取尚未安排重试的失败交易"""
        result = await self.session.execute(
            self._select()
            .where(
                TransactionModel.status == TransactionStatus.FAILED.value,
                TransactionModel.next_retry_at.is_(None),
                TransactionModel.retry_count < TransactionModel.max_retries,
            )
            .order_by(TransactionModel.failed_at.asc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_stale_processing(self, updated_before: datetime, limit: int = 100) -> List[Transaction]:
        """获取停留在处理中状态超时的交易"""
        result = await self.session.execute(
            self._select()
            .where(
                TransactionModel.status == TransactionStatus.PROCESSING.value,
                TransactionModel.updated_at <= updated_before,
            )
            .order_by(TransactionModel.updated_at.asc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_unreconciled(self, now: datetime, completed_before: datetime, limit: int = 100) -> List[Transaction]:
        """获取待对账交易（已支付、未匹配、无有效租约）"""
        result = await self.session.execute(
            self._select()
            .where(
                TransactionModel.status.in_([s.value for s in PAID_STATUSES]),
                TransactionModel.reconciliation_status != ReconciliationStatus.MATCHED.value,
                TransactionModel.completed_at <= completed_before,
                or_(
                    TransactionModel.reconciliation_lease_until.is_(None),
                    TransactionModel.reconciliation_lease_until < now,
                ),
            )
            .order_by(TransactionModel.completed_at.asc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def save(self, transaction: Transaction) -> bool:
        """按版本号条件更新"""
        if transaction.id is None:
            raise ValueError("Transaction must be created before it can be saved")
        result = await self.session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.id == transaction.id,
                TransactionModel.version == transaction.version,
            )
            .values(version=TransactionModel.version + 1, **self._lifecycle_values(transaction))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "transaction_version_conflict",
                transaction_id=transaction.transaction_id,
                expected_version=transaction.version,
            )
            return False
        await self._sync_refunds(transaction)
        transaction.version += 1
        return True

    async def _sync_refunds(self, transaction: Transaction) -> None:
        """按 refund_id 同步退款明细"""
        if not transaction.refunds:
            return
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.transaction_pk == transaction.id)
        )
        existing = {m.refund_id: m for m in result.scalars().all()}
        for refund in transaction.refunds:
            db_refund = existing.get(refund.refund_id)
            if db_refund is None:
                self.session.add(RefundModel(
                    transaction_pk=transaction.id,
                    refund_id=refund.refund_id,
                    gateway_refund_id=refund.gateway_refund_id,
                    amount=refund.amount,
                    status=refund.status.value,
                    reason=refund.reason,
                    failure_reason=refund.failure_reason,
                    created_at=refund.created_at or datetime.now(timezone.utc),
                    processed_at=refund.processed_at,
                ))
                continue
            db_refund.status = refund.status.value
            db_refund.gateway_refund_id = refund.gateway_refund_id
            db_refund.failure_reason = refund.failure_reason
            db_refund.processed_at = refund.processed_at
        await self.session.flush()

    async def _write_once(self, transaction_id: str, column, value: str) -> bool:
        result = await self.session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.transaction_id == transaction_id,
                column.is_(None),
            )
            .values({column.key: value})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_invoice_number(self, transaction_id: str, invoice_number: str) -> bool:
        """仅当发票号为空时写入"""
        return await self._write_once(transaction_id, TransactionModel.invoice_number, invoice_number)

    async def set_ledger_payment_id(self, transaction_id: str, ledger_payment_id: str) -> bool:
        """仅当账簿收款ID为空时写入"""
        return await self._write_once(transaction_id, TransactionModel.ledger_payment_id, ledger_payment_id)

    async def claim_reconciliation(self, transaction_id: str, now: datetime, lease_until: datetime) -> bool:
        """抢占对账租约"""
        result = await self.session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.transaction_id == transaction_id,
                TransactionModel.status.in_([s.value for s in PAID_STATUSES]),
                TransactionModel.reconciliation_status != ReconciliationStatus.MATCHED.value,
                or_(
                    TransactionModel.reconciliation_lease_until.is_(None),
                    TransactionModel.reconciliation_lease_until < now,
                ),
            )
            .values(reconciliation_lease_until=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def renew_reconciliation(self, transaction_id: str, held_until: datetime, lease_until: datetime) -> bool:
        """续期对账租约，租约已被接管时返回 False"""
        result = await self.session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.transaction_id == transaction_id,
                TransactionModel.reconciliation_status != ReconciliationStatus.MATCHED.value,
                TransactionModel.reconciliation_lease_until == held_until,
            )
            .values(reconciliation_lease_until=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_reconciliation(self, transaction_id: str) -> None:
        """释放对账租约"""
        await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.transaction_id == transaction_id)
            .values(reconciliation_lease_until=None)
            .execution_options(synchronize_session=False)
        )

    async def mark_reconciled(
        self,
        transaction_id: str,
        status: ReconciliationStatus,
        reconciled_at: Optional[datetime],
    ) -> None:
        """记录对账结果并释放租约"""
        await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.transaction_id == transaction_id)
            .values(
                reconciliation_status=status.value,
                reconciled_at=reconciled_at,
                reconciliation_lease_until=None,
            )
            .execution_options(synchronize_session=False)
        )
