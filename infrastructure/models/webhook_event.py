"""
Webhook 事件数据库模型 - 持久化去重
"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone

from .base import Base


class WebhookEventModel(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_key = Column(String(64), unique=True, nullable=False, comment="原始请求体 sha256")
    event_type = Column(String(64), nullable=False, comment="事件类型")
    gateway_order_id = Column(String(200), nullable=True, index=True, comment="网关结账会话ID")
    received_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="接收时间"
    )

    def __repr__(self):
        return f"<WebhookEventModel(id={self.id}, event_type='{self.event_type}')>"
