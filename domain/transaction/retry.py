"""
交易重试策略

失败交易按线性退避重新查询网关：第 n 次重试安排在失败后 n × interval。
重试次数耗尽后清空 next_retry_at，交由人工处理，不会自动取消。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .entity import Transaction, TransactionStatus


@dataclass(frozen=True)
class RetryPolicy:
    interval: timedelta = timedelta(minutes=30)

    def has_attempts_left(self, transaction: Transaction) -> bool:
        return transaction.retry_count < transaction.max_retries

    def schedule(self, transaction: Transaction, now: Optional[datetime] = None) -> bool:
        """为失败交易安排下一次重试；返回 False 表示已耗尽或状态不符"""
        if transaction.status != TransactionStatus.FAILED:
            return False
        if not self.has_attempts_left(transaction):
            transaction.next_retry_at = None
            return False
        now = now or datetime.now(timezone.utc)
        transaction.retry_count += 1
        transaction.next_retry_at = now + self.interval * transaction.retry_count
        transaction.updated_at = now
        return True

    def is_eligible(self, transaction: Transaction, now: Optional[datetime] = None) -> bool:
        """是否到达重试时间"""
        now = now or datetime.now(timezone.utc)
        return (
            transaction.status == TransactionStatus.FAILED
            and transaction.next_retry_at is not None
            and transaction.next_retry_at <= now
        )
