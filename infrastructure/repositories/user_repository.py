"""
用户仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from domain.user.entity import SubscriptionStatus, User
from domain.user.repository import UserRepository
from infrastructure.models.user import UserModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyUserRepository(UserRepository):
    """用户仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: UserModel) -> User:
        """将数据库模型转换为领域实体"""
        return User(
            id=model.id,
            name=model.name,
            email=model.email,
            mobile=model.mobile,
            is_active=model.is_active,
            is_superuser=model.is_superuser,
            ledger_customer_id=model.ledger_customer_id,
            current_plan_id=model.current_plan_id,
            plan_purchased_at=model.plan_purchased_at,
            subscription_status=SubscriptionStatus(model.subscription_status),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: User) -> UserModel:
        """将领域实体转换为数据库模型"""
        return UserModel(
            id=entity.id,
            name=entity.name,
            email=entity.email,
            mobile=entity.mobile,
            is_active=entity.is_active,
            is_superuser=entity.is_superuser,
            ledger_customer_id=entity.ledger_customer_id,
            current_plan_id=entity.current_plan_id,
            plan_purchased_at=entity.plan_purchased_at,
            subscription_status=entity.subscription_status.value,
        )

    async def create(self, user: User) -> User:
        """创建用户"""
        db_user = self._to_model(user)
        self.session.add(db_user)
        await self.session.flush()  # 获取生成的ID
        await self.session.refresh(db_user)
        return self._to_entity(db_user)

    async def get_by_id(self, user_id: int) -> Optional[User]:
        """根据ID获取用户"""
        result = await self.session.execute(
            select(UserModel).where(UserModel.id == user_id).execution_options(populate_existing=True)
        )
        db_user = result.scalar_one_or_none()
        return self._to_entity(db_user) if db_user else None

    async def set_ledger_customer_id(self, user_id: int, ledger_customer_id: str) -> None:
        """记录账簿客户ID"""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(ledger_customer_id=ledger_customer_id)
            .execution_options(synchronize_session=False)
        )
        logger.info("user_ledger_customer_linked", user_id=user_id, ledger_customer_id=ledger_customer_id)

    async def activate_plan(self, user_id: int, plan_id: int, purchased_at: datetime) -> None:
        """开通套餐，与交易完成写入同一事务"""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(
                current_plan_id=plan_id,
                plan_purchased_at=purchased_at,
                subscription_status=SubscriptionStatus.ACTIVE.value,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("user_plan_activated", user_id=user_id, plan_id=plan_id)
