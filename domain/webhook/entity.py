"""
Webhook 事件记录 - 用于持久化去重
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


def webhook_event_key(raw_body: bytes) -> str:
    """以原始请求体的 sha256 作为事件去重键"""
    return hashlib.sha256(raw_body).hexdigest()


@dataclass
class WebhookEvent:
    event_key: str
    event_type: str
    gateway_order_id: Optional[str] = None
    received_at: Optional[datetime] = None
    id: Optional[int] = None
