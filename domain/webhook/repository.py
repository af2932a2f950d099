"""
Webhook 事件仓储接口
"""
from abc import ABC, abstractmethod

from .entity import WebhookEvent


class WebhookEventRepository(ABC):

    @abstractmethod
    async def record(self, event: WebhookEvent) -> bool:
        """记录事件；同一去重键已存在时返回 False"""
        pass
