"""
交易数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, Boolean,
    Index, ForeignKey
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class TransactionModel(Base):
    """
    交易数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.transaction.entity.Transaction 中
    """
    __tablename__ = "transactions"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 交易标识
    transaction_id = Column(String(64), unique=True, index=True, nullable=False, comment="交易号 TXN_<ms>_<rand>")
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True, comment="用户ID")
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True, comment="套餐ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="交易金额")
    currency = Column(String(3), nullable=False, default="INR", comment="货币代码 ISO-4217")

    # 网关信息
    payment_gateway = Column(String(50), nullable=False, default="zoho", comment="支付网关")
    payment_method = Column(String(32), nullable=True, comment="支付方式")
    gateway_order_id = Column(String(200), nullable=True, unique=True, index=True, comment="网关结账会话ID")
    gateway_payment_id = Column(String(200), nullable=True, index=True, comment="网关支付ID")
    gateway_transaction_id = Column(String(200), nullable=True, comment="网关交易ID")
    payment_url = Column(String(1000), nullable=True, comment="支付跳转链接")

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="交易状态: pending/processing/completed/failed/cancelled/refunded/partially_refunded"
    )

    # 失败信息
    failure_reason = Column(Text, nullable=True, comment="失败原因")
    error_code = Column(String(64), nullable=True, comment="错误码")
    error_message = Column(Text, nullable=True, comment="错误信息")

    # 重试信息
    retry_count = Column(Integer, nullable=False, default=0, comment="已重试次数")
    max_retries = Column(Integer, nullable=False, default=3, comment="最大重试次数")
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True, comment="下次重试时间")

    # 账簿对账信息
    invoice_number = Column(String(100), nullable=True, comment="账簿发票号（只写一次）")
    ledger_payment_id = Column(String(100), nullable=True, comment="账簿收款ID（只写一次）")
    reconciliation_status = Column(String(32), nullable=False, default="pending", comment="对账状态: pending/matched/discrepancy")
    reconciled_at = Column(DateTime(timezone=True), nullable=True, comment="对账完成时间")
    reconciliation_lease_until = Column(DateTime(timezone=True), nullable=True, comment="对账租约到期时间")

    # Webhook 信息
    webhook_received = Column(Boolean, nullable=False, default=False, comment="是否收到Webhook")
    webhook_verified = Column(Boolean, nullable=False, default=False, comment="Webhook签名是否通过")
    webhook_received_at = Column(DateTime(timezone=True), nullable=True, comment="Webhook接收时间")

    # 时间戳
    initiated_at = Column(DateTime(timezone=True), nullable=True, comment="发起时间")
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="完成时间")
    failed_at = Column(DateTime(timezone=True), nullable=True, comment="失败时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    # 乐观锁
    version = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")

    # 关系
    refunds = relationship(
        "RefundModel",
        back_populates="transaction",
        lazy="selectin",
        order_by="RefundModel.id",
    )

    # 索引
    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_status_retry", "status", "next_retry_at"),
    )

    def __repr__(self):
        return (
            f"<TransactionModel(id={self.id}, transaction_id='{self.transaction_id}', "
            f"amount={self.amount}, status='{self.status}', version={self.version})>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为交易聚合的一部分，记录交易的退款明细
    """
    __tablename__ = "refunds"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 关联交易
    transaction_pk = Column(
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的交易主键"
    )

    refund_id = Column(String(100), unique=True, index=True, nullable=False, comment="退款号 REF_<交易号>_<ms>")
    gateway_refund_id = Column(String(200), nullable=True, comment="网关退款ID")

    # 金额信息
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款金额")

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="pending",
        comment="退款状态: pending/processed/failed"
    )
    reason = Column(Text, nullable=True, comment="退款原因")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="退款完成时间")

    # 关系
    transaction = relationship("TransactionModel", back_populates="refunds")

    def __repr__(self):
        return (
            f"<RefundModel(id={self.id}, refund_id='{self.refund_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )
