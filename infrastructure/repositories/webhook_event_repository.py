"""
Webhook 事件仓储实现

去重记录与交易状态变更处于同一个数据库事务中：
处理失败回滚时去重记录一并回滚，网关重投时可以重新处理。
"""
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.webhook.entity import WebhookEvent
from domain.webhook.repository import WebhookEventRepository
from infrastructure.models.webhook_event import WebhookEventModel


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, event: WebhookEvent) -> bool:
        result = await self.session.execute(
            select(WebhookEventModel.id).where(WebhookEventModel.event_key == event.event_key)
        )
        if result.scalar_one_or_none() is not None:
            return False
        # 并发插入同一事件时唯一索引会抛 IntegrityError，整个事务回滚，由网关重投
        self.session.add(WebhookEventModel(
            event_key=event.event_key,
            event_type=event.event_type,
            gateway_order_id=event.gateway_order_id,
            received_at=event.received_at or datetime.now(timezone.utc),
        ))
        await self.session.flush()
        return True
