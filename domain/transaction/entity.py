"""
交易领域实体 - 交易聚合根

一笔交易对应用户对某个套餐的一次购买尝试，聚合内包含退款明细。
状态机：
    pending -> processing -> completed / failed
    pending -> completed / failed（网关直接给出结果）
    failed -> processing（仅由重试调度触发）
    failed -> completed（网关确认已收款）
    completed -> partially_refunded / refunded
    pending / processing -> cancelled
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import (
    DomainValidationException,
    InvalidTransactionTransition,
    RefundExceedsBalanceException,
    TransactionNotRefundableException,
)


SUPPORTED_CURRENCIES = ("INR", "USD", "EUR")
DEFAULT_CURRENCY = "INR"
DEFAULT_GATEWAY = "zoho"
DEFAULT_MAX_RETRIES = 3

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class TransactionStatus(str, Enum):
    """交易状态枚举"""
    PENDING = "pending"                        # 待支付
    PROCESSING = "processing"                  # 处理中
    COMPLETED = "completed"                    # 已完成
    FAILED = "failed"                          # 失败
    CANCELLED = "cancelled"                    # 已取消
    REFUNDED = "refunded"                      # 全额退款
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ReconciliationStatus(str, Enum):
    """对账状态枚举"""
    PENDING = "pending"
    MATCHED = "matched"
    DISCREPANCY = "discrepancy"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    NET_BANKING = "net_banking"
    UPI = "upi"
    WALLET = "wallet"
    EMI = "emi"
    BANK_TRANSFER = "bank_transfer"
    ONLINE = "online"


# 已收款状态：进入这些状态后不会再回到 pending/processing
PAID_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.PARTIALLY_REFUNDED,
    TransactionStatus.REFUNDED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _epoch_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    """生成交易号：TXN_<毫秒时间戳>_<6位大写base36随机串>"""
    now = now or _utcnow()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"TXN_{_epoch_millis(now)}_{suffix}"


@dataclass
class Refund:
    """退款明细 - Transaction 聚合的一部分"""

    refund_id: str
    amount: Decimal
    status: RefundStatus = RefundStatus.PENDING
    reason: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"退款金额必须大于0: {self.amount}",
                field="amount",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.processed_at = _ensure_utc(self.processed_at)


@dataclass
class Transaction:
    """
    交易聚合根

    业务规则：
    1. transaction_id 全局唯一且创建后不可变
    2. 已处理退款总额不能超过交易金额
    3. 发票号一旦写入不可覆盖
    4. 进入已收款状态后只允许因退款变化
    """

    id: Optional[int]
    transaction_id: str
    user_id: int
    plan_id: int
    amount: Decimal
    currency: str = DEFAULT_CURRENCY
    status: TransactionStatus = TransactionStatus.PENDING

    payment_gateway: str = DEFAULT_GATEWAY
    payment_method: Optional[str] = None

    # 网关关联信息
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    payment_url: Optional[str] = None

    # 失败信息
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # 重试信息
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    next_retry_at: Optional[datetime] = None

    # 账簿对账信息
    invoice_number: Optional[str] = None
    ledger_payment_id: Optional[str] = None
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.PENDING
    reconciled_at: Optional[datetime] = None
    reconciliation_lease_until: Optional[datetime] = None

    # Webhook 信息
    webhook_received: bool = False
    webhook_verified: bool = False
    webhook_received_at: Optional[datetime] = None

    refunds: list[Refund] = field(default_factory=list)

    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # 乐观锁版本号
    version: int = 0

    def __post_init__(self):
        """初始化后验证"""
        if self.amount < 0:
            raise DomainValidationException(
                f"交易金额不能为负数: {self.amount}",
                field="amount",
            )
        self.currency = (self.currency or DEFAULT_CURRENCY).upper()
        if self.currency not in SUPPORTED_CURRENCIES:
            raise DomainValidationException(
                f"不支持的货币代码: {self.currency}",
                field="currency",
            )
        self.transaction_id = self.transaction_id.upper()
        if self.refunds is None:
            self.refunds = []
        for name in (
            "next_retry_at", "reconciled_at", "reconciliation_lease_until",
            "webhook_received_at", "initiated_at", "completed_at", "failed_at",
            "cancelled_at", "created_at", "updated_at",
        ):
            setattr(self, name, _ensure_utc(getattr(self, name)))

    @classmethod
    def start(
        cls,
        *,
        user_id: int,
        plan_id: int,
        amount: Decimal,
        currency: str = DEFAULT_CURRENCY,
        payment_method: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        now: Optional[datetime] = None,
    ) -> "Transaction":
        """创建一笔新的待支付交易"""
        now = now or _utcnow()
        return cls(
            id=None,
            transaction_id=generate_transaction_id(now),
            user_id=user_id,
            plan_id=plan_id,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            max_retries=max_retries,
            initiated_at=now,
            created_at=now,
            updated_at=now,
        )

    # ---- 查询 ----

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    @property
    def total_refunded(self) -> Decimal:
        """已处理退款总额"""
        return sum(
            (r.amount for r in self.refunds if r.status == RefundStatus.PROCESSED),
            Decimal("0"),
        )

    @property
    def committed_refund_amount(self) -> Decimal:
        """已处理 + 处理中的退款总额"""
        return sum(
            (r.amount for r in self.refunds if r.status != RefundStatus.FAILED),
            Decimal("0"),
        )

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.committed_refund_amount

    @property
    def net_amount(self) -> Decimal:
        return self.amount - self.total_refunded

    def get_refund(self, refund_id: str) -> Refund:
        for refund in self.refunds:
            if refund.refund_id == refund_id:
                return refund
        raise DomainValidationException(f"退款记录不存在: {refund_id}", field="refund_id")

    # ---- 状态迁移 ----

    def _invalid(self, target: TransactionStatus) -> InvalidTransactionTransition:
        return InvalidTransactionTransition(self.transaction_id, self.status.value, target.value)

    def _touch(self, now: datetime) -> None:
        self.updated_at = now

    def attach_checkout_session(self, gateway_order_id: str, payment_url: Optional[str], now: Optional[datetime] = None) -> None:
        """记录网关结账会话"""
        if self.status != TransactionStatus.PENDING:
            raise DomainValidationException(
                f"只有待支付交易可以绑定结账会话，当前状态: {self.status.value}",
                field="status",
            )
        self.gateway_order_id = gateway_order_id
        self.payment_url = payment_url
        self._touch(now or _utcnow())

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        """标记为处理中（pending 或 failed 重试时）"""
        if self.status not in (TransactionStatus.PENDING, TransactionStatus.FAILED):
            raise self._invalid(TransactionStatus.PROCESSING)
        self.status = TransactionStatus.PROCESSING
        self._touch(now or _utcnow())

    def mark_completed(
        self,
        *,
        gateway_payment_id: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        标记交易完成

        已处于已收款状态时为幂等空操作，返回 False；发生状态迁移时返回 True。
        """
        if self.is_paid:
            return False
        if self.status == TransactionStatus.CANCELLED:
            raise self._invalid(TransactionStatus.COMPLETED)
        now = now or _utcnow()
        self.status = TransactionStatus.COMPLETED
        self.completed_at = now
        if gateway_payment_id and not self.gateway_payment_id:
            self.gateway_payment_id = gateway_payment_id
        if gateway_transaction_id and not self.gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id
        self.next_retry_at = None
        self._touch(now)
        return True

    def mark_failed(
        self,
        reason: Optional[str] = None,
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """标记交易失败；已失败时只刷新失败信息并返回 False"""
        now = now or _utcnow()
        if self.status == TransactionStatus.FAILED:
            self.failure_reason = reason or self.failure_reason
            self._touch(now)
            return False
        if self.status not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
            raise self._invalid(TransactionStatus.FAILED)
        self.status = TransactionStatus.FAILED
        self.failure_reason = reason
        self.error_code = error_code
        self.error_message = error_message
        self.failed_at = now
        self._touch(now)
        return True

    def cancel(self, now: Optional[datetime] = None) -> bool:
        """取消交易（用户关闭支付页等外部信号）"""
        if self.status == TransactionStatus.CANCELLED:
            return False
        if self.status not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
            raise self._invalid(TransactionStatus.CANCELLED)
        now = now or _utcnow()
        self.status = TransactionStatus.CANCELLED
        self.cancelled_at = now
        self._touch(now)
        return True

    def record_webhook(self, *, verified: bool, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        self.webhook_received = True
        self.webhook_verified = self.webhook_verified or verified
        self.webhook_received_at = now
        self._touch(now)

    # ---- 退款 ----

    def _next_refund_id(self, now: datetime) -> str:
        millis = _epoch_millis(now)
        existing = {r.refund_id for r in self.refunds}
        refund_id = f"REF_{self.transaction_id}_{millis}"
        while refund_id in existing:
            millis += 1
            refund_id = f"REF_{self.transaction_id}_{millis}"
        return refund_id

    def request_refund(self, amount: Decimal, reason: Optional[str] = None, now: Optional[datetime] = None) -> Refund:
        """
        申请退款

        业务规则：
        1. 只有已完成或部分退款的交易才能退款
        2. 处理中 + 已处理的退款总额不能超过交易金额
        """
        if self.status not in (TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED):
            raise TransactionNotRefundableException(self.transaction_id, self.status.value)
        if amount <= 0:
            raise DomainValidationException(f"退款金额必须大于0: {amount}", field="amount")
        available = self.refundable_amount
        if amount > available:
            raise RefundExceedsBalanceException(amount, available)
        now = now or _utcnow()
        refund = Refund(
            refund_id=self._next_refund_id(now),
            amount=amount,
            reason=reason,
            created_at=now,
        )
        self.refunds.append(refund)
        self._touch(now)
        return refund

    def mark_refund_processed(
        self,
        refund_id: str,
        gateway_refund_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Refund:
        refund = self.get_refund(refund_id)
        if refund.status != RefundStatus.PENDING:
            raise DomainValidationException(
                f"退款 {refund_id} 状态为 {refund.status.value}，无法标记为已处理",
                field="status",
            )
        if self.total_refunded + refund.amount > self.amount:
            raise RefundExceedsBalanceException(refund.amount, self.amount - self.total_refunded)
        now = now or _utcnow()
        refund.status = RefundStatus.PROCESSED
        refund.gateway_refund_id = gateway_refund_id or refund.gateway_refund_id
        refund.processed_at = now
        self._recompute_refund_status()
        self._touch(now)
        return refund

    def mark_refund_failed(self, refund_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> Refund:
        refund = self.get_refund(refund_id)
        if refund.status != RefundStatus.PENDING:
            raise DomainValidationException(
                f"退款 {refund_id} 状态为 {refund.status.value}，无法标记为失败",
                field="status",
            )
        refund.status = RefundStatus.FAILED
        refund.failure_reason = reason
        self._touch(now or _utcnow())
        return refund

    def _recompute_refund_status(self) -> None:
        """根据已处理退款总额推导状态"""
        total = self.total_refunded
        if total <= 0:
            return
        if total >= self.amount:
            self.status = TransactionStatus.REFUNDED
        else:
            self.status = TransactionStatus.PARTIALLY_REFUNDED
