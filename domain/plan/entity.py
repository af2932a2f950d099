"""
套餐实体 - 只读的外部目录数据
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


@dataclass
class Plan:
    """可购买的套餐"""

    id: Optional[int]
    name: str
    price: Decimal
    currency: str = "INR"
    description: Optional[str] = None
    is_active: bool = True
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_available(self, now: Optional[datetime] = None) -> bool:
        """业务规则：已上架且处于售卖时间窗口内"""
        if not self.is_active:
            return False
        now = now or datetime.now(timezone.utc)
        if self.available_from is not None and _as_utc(self.available_from) > now:
            return False
        if self.available_until is not None and _as_utc(self.available_until) < now:
            return False
        return True


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
