"""
交易仓储接口 - 定义交易数据访问的抽象接口

所有写操作都是条件写：save 基于版本号比较并交换，
对账标记基于"字段为空才写入"，返回 False 表示条件不成立。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import Transaction, ReconciliationStatus


class TransactionRepository(ABC):
    """交易仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易记录"""
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        """根据交易号获取交易（总是读取最新持久化状态）"""
        pass

    @abstractmethod
    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Transaction]:
        """根据网关结账会话ID获取交易"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: int, skip: int = 0, limit: int = 100) -> List[Transaction]:
        """获取用户的交易列表，按创建时间倒序"""
        pass

    @abstractmethod
    async def list_retry_due(self, now: datetime, limit: int = 100) -> List[Transaction]:
        """获取已到重试时间的失败交易"""
        pass

    @abstractmethod
    async def list_unscheduled_failures(self, limit: int = 100) -> List[Transaction]:
        """获取尚未安排重试且仍有重试次数的失败交易"""
        pass

    @abstractmethod
    async def list_stale_processing(self, updated_before: datetime, limit: int = 100) -> List[Transaction]:
        """获取停留在处理中状态超过时限的交易（重试进程中断后遗留）"""
        pass

    @abstractmethod
    async def list_unreconciled(self, now: datetime, completed_before: datetime, limit: int = 100) -> List[Transaction]:
        """获取已支付、尚未对账且无有效租约的交易"""
        pass

    @abstractmethod
    async def save(self, transaction: Transaction) -> bool:
        """按版本号条件更新生命周期字段与退款明细；成功后版本号加一"""
        pass

    @abstractmethod
    async def set_invoice_number(self, transaction_id: str, invoice_number: str) -> bool:
        """仅当发票号为空时写入"""
        pass

    @abstractmethod
    async def set_ledger_payment_id(self, transaction_id: str, ledger_payment_id: str) -> bool:
        """仅当账簿收款ID为空时写入"""
        pass

    @abstractmethod
    async def claim_reconciliation(self, transaction_id: str, now: datetime, lease_until: datetime) -> bool:
        """抢占对账租约（无租约或租约已过期时成功）"""
        pass

    @abstractmethod
    async def renew_reconciliation(self, transaction_id: str, held_until: datetime, lease_until: datetime) -> bool:
        """续期对账租约；仅当租约仍是 held_until（未被他人接管）时成功"""
        pass

    @abstractmethod
    async def release_reconciliation(self, transaction_id: str) -> None:
        """释放对账租约"""
        pass

    @abstractmethod
    async def mark_reconciled(
        self,
        transaction_id: str,
        status: ReconciliationStatus,
        reconciled_at: Optional[datetime],
    ) -> None:
        """记录对账结果并释放租约"""
        pass
