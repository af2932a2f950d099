"""
用户领域实体 - 购买方
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from dataclasses import dataclass
import re


class SubscriptionStatus(str, Enum):
    """订阅状态，支付成功后变为 active"""
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class User:
    """用户实体 - 交易的购买方，同时是账簿中的客户"""

    id: Optional[int]
    name: str
    email: str
    mobile: Optional[str] = None
    is_active: bool = True
    is_superuser: bool = False
    ledger_customer_id: Optional[str] = None
    current_plan_id: Optional[int] = None
    plan_purchased_at: Optional[datetime] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后的业务规则验证"""
        self.validate_email()

    def validate_email(self) -> None:
        """业务规则：邮箱格式验证"""
        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if not re.match(email_pattern, self.email):
            raise ValueError(f"无效的邮箱格式: {self.email}")

    def activate_plan(self, plan_id: int, purchased_at: datetime) -> None:
        """业务规则：支付完成即开通所购套餐"""
        self.current_plan_id = plan_id
        self.plan_purchased_at = purchased_at
        self.subscription_status = SubscriptionStatus.ACTIVE
