"""
交易领域服务 - 以乐观锁驱动交易状态迁移

所有迁移都走"读取 -> 在实体上应用 -> 按版本号条件写回"的循环，
条件写失败说明有并发写入者，重新读取最新状态后再次应用。
只有真正赢得迁移的一方才会产生领域事件，从而保证完成事件至多一次。
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .entity import Transaction, Refund, TransactionStatus
from .events import (
    TransactionCompleted,
    TransactionFailed,
    TransactionCancelled,
    TransactionRefunded,
)
from .repository import TransactionRepository
from .retry import RetryPolicy
from domain.common.exceptions import (
    ConcurrentModificationException,
    TransactionNotFoundException,
)


class TransactionDomainService:
    """
    交易领域服务

    职责：
    1. 交易状态迁移（完成、失败、取消、重试）
    2. 退款申请与结果落账
    3. 收集领域事件，由应用层在提交后分发
    """

    def __init__(
        self,
        transaction_repository: TransactionRepository,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        max_cas_attempts: int = 5,
    ):
        self.transaction_repository = transaction_repository
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_cas_attempts = max_cas_attempts
        self.events: List = []  # 领域事件收集

    async def _apply(
        self,
        transaction_id: str,
        mutate: Callable[[Transaction], bool],
    ) -> Transaction:
        """在最新状态上应用变更并条件写回；mutate 返回 False 表示无需写入"""
        for _ in range(self.max_cas_attempts):
            transaction = await self.transaction_repository.get_by_transaction_id(transaction_id)
            if transaction is None:
                raise TransactionNotFoundException(transaction_id)
            if not mutate(transaction):
                return transaction
            if await self.transaction_repository.save(transaction):
                return transaction
        raise ConcurrentModificationException(transaction_id)

    async def attach_checkout_session(
        self,
        transaction_id: str,
        gateway_order_id: str,
        payment_url: Optional[str],
    ) -> Transaction:
        def mutate(tx: Transaction) -> bool:
            tx.attach_checkout_session(gateway_order_id, payment_url)
            return True

        return await self._apply(transaction_id, mutate)

    async def complete(
        self,
        transaction_id: str,
        *,
        source: str,
        gateway_payment_id: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        webhook_verified: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Transaction, bool]:
        """
        幂等地完成交易

        返回 (交易, 是否由本次调用完成)。已完成的交易不会重复迁移，
        也不会重复产生 TransactionCompleted 事件。
        """
        now = now or datetime.now(timezone.utc)
        transitioned = False

        def mutate(tx: Transaction) -> bool:
            nonlocal transitioned
            transitioned = tx.mark_completed(
                gateway_payment_id=gateway_payment_id,
                gateway_transaction_id=gateway_transaction_id,
                now=now,
            )
            if webhook_verified is not None:
                tx.record_webhook(verified=webhook_verified, now=now)
                return True
            return transitioned

        transaction = await self._apply(transaction_id, mutate)
        if transitioned:
            self.events.append(TransactionCompleted(
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                amount=str(transaction.amount),
                currency=transaction.currency,
                source=source,
            ))
        return transaction, transitioned

    async def fail(
        self,
        transaction_id: str,
        reason: Optional[str],
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        schedule_retry: bool = False,
        webhook_verified: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Transaction, bool]:
        """
        标记交易失败

        已收款或已取消的交易忽略失败信号（返回 False）。
        schedule_retry 为 True 时在同一次写入中安排下一次重试。
        """
        now = now or datetime.now(timezone.utc)
        transitioned = False

        def mutate(tx: Transaction) -> bool:
            nonlocal transitioned
            transitioned = False
            if webhook_verified is not None:
                tx.record_webhook(verified=webhook_verified, now=now)
            if tx.is_paid or tx.status == TransactionStatus.CANCELLED:
                return webhook_verified is not None
            transitioned = tx.mark_failed(
                reason,
                error_code=error_code,
                error_message=error_message,
                now=now,
            )
            if transitioned and schedule_retry:
                self.retry_policy.schedule(tx, now)
            return transitioned or webhook_verified is not None

        transaction = await self._apply(transaction_id, mutate)
        if transitioned:
            self.events.append(TransactionFailed(
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                reason=reason,
            ))
        return transaction, transitioned

    async def schedule_retry(self, transaction_id: str, now: Optional[datetime] = None) -> Tuple[Transaction, bool]:
        """为失败交易安排重试"""
        scheduled = False

        def mutate(tx: Transaction) -> bool:
            nonlocal scheduled
            had_schedule = tx.next_retry_at is not None
            scheduled = self.retry_policy.schedule(tx, now)
            return scheduled or had_schedule

        transaction = await self._apply(transaction_id, mutate)
        return transaction, scheduled

    async def begin_retry(self, transaction_id: str, now: Optional[datetime] = None) -> Tuple[Transaction, bool]:
        """failed -> processing，仅在到达重试时间时生效"""
        now = now or datetime.now(timezone.utc)
        started = False

        def mutate(tx: Transaction) -> bool:
            nonlocal started
            started = self.retry_policy.is_eligible(tx, now)
            if started:
                tx.mark_processing(now)
            return started

        transaction = await self._apply(transaction_id, mutate)
        return transaction, started

    async def cancel(self, transaction_id: str, now: Optional[datetime] = None) -> Tuple[Transaction, bool]:
        """取消交易"""
        cancelled = False

        def mutate(tx: Transaction) -> bool:
            nonlocal cancelled
            cancelled = tx.cancel(now)
            return cancelled

        transaction = await self._apply(transaction_id, mutate)
        if cancelled:
            self.events.append(TransactionCancelled(
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
            ))
        return transaction, cancelled

    async def request_refund(
        self,
        transaction_id: str,
        amount: Decimal,
        reason: Optional[str] = None,
    ) -> Tuple[Transaction, Refund]:
        """
        申请退款

        业务规则在实体内校验，任何写入之前拒绝超额退款。
        """
        created: List[Refund] = []

        def mutate(tx: Transaction) -> bool:
            created.clear()
            created.append(tx.request_refund(amount, reason))
            return True

        transaction = await self._apply(transaction_id, mutate)
        return transaction, created[0]

    async def resolve_refund(
        self,
        transaction_id: str,
        refund_id: str,
        *,
        succeeded: bool,
        gateway_refund_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Transaction:
        """落账网关退款结果，成功时重新推导交易状态"""

        def mutate(tx: Transaction) -> bool:
            if succeeded:
                tx.mark_refund_processed(refund_id, gateway_refund_id)
            else:
                tx.mark_refund_failed(refund_id, reason)
            return True

        transaction = await self._apply(transaction_id, mutate)
        if succeeded:
            refund = transaction.get_refund(refund_id)
            self.events.append(TransactionRefunded(
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                refund_id=refund.refund_id,
                amount=str(refund.amount),
            ))
        return transaction

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
