"""
用户数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from datetime import datetime, timezone

from .base import Base


class UserModel(Base):
    """
    用户数据库模型

    用户由身份服务维护，本服务只回写账簿客户ID与订阅信息
    """
    __tablename__ = "users"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 用户基本信息
    name = Column(String(100), nullable=False, comment="姓名")
    email = Column(String(100), unique=True, index=True, nullable=False, comment="邮箱")
    mobile = Column(String(20), nullable=True, comment="手机号")

    # 状态信息
    is_active = Column(Boolean, default=True, nullable=False, comment="是否激活")
    is_superuser = Column(Boolean, default=False, nullable=False, comment="是否超级管理员")

    # 账簿信息
    ledger_customer_id = Column(String(100), nullable=True, comment="账簿客户ID")

    # 订阅信息（支付完成时写入）
    current_plan_id = Column(Integer, nullable=True, comment="当前套餐ID")
    plan_purchased_at = Column(DateTime(timezone=True), nullable=True, comment="套餐购买时间")
    subscription_status = Column(String(20), default="inactive", nullable=False, comment="订阅状态")

    # 时间信息
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
        return f"<UserModel(id={self.id}, email='{self.email}')>"
