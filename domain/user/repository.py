"""
用户仓储接口 - 定义数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from .entity import User


class UserRepository(ABC):
    """用户仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, user: User) -> User:
        """创建用户"""
        pass

    @abstractmethod
    async def get_by_id(self, user_id: int) -> Optional[User]:
        """根据ID获取用户"""
        pass

    @abstractmethod
    async def set_ledger_customer_id(self, user_id: int, ledger_customer_id: str) -> None:
        """记录用户在账簿中的客户ID"""
        pass

    @abstractmethod
    async def activate_plan(self, user_id: int, plan_id: int, purchased_at: datetime) -> None:
        """开通套餐：记录当前套餐、购买时间并将订阅状态置为 active"""
        pass
