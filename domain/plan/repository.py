"""
套餐仓储接口
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import Plan


class PlanRepository(ABC):
    """套餐仓储抽象接口"""

    @abstractmethod
    async def get_by_id(self, plan_id: int) -> Optional[Plan]:
        """根据ID获取套餐"""
        pass

    @abstractmethod
    async def create(self, plan: Plan) -> Plan:
        """创建套餐（目录同步与测试数据使用）"""
        pass
