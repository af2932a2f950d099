"""
套餐数据库模型
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, Boolean
from datetime import datetime, timezone

from .base import Base


class PlanModel(Base):
    """套餐表（由目录服务维护，本服务只读）"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, comment="套餐名称")
    description = Column(Text, nullable=True, comment="套餐描述")
    price = Column(Numeric(precision=15, scale=2), nullable=False, comment="价格")
    currency = Column(String(3), nullable=False, default="INR", comment="货币代码")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否上架")
    available_from = Column(DateTime(timezone=True), nullable=True, comment="开始售卖时间")
    available_until = Column(DateTime(timezone=True), nullable=True, comment="结束售卖时间")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    def __repr__(self):
        return f"<PlanModel(id={self.id}, name='{self.name}', price={self.price})>"
