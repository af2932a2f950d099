"""
套餐仓储实现
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.plan.entity import Plan
from domain.plan.repository import PlanRepository
from infrastructure.models.plan import PlanModel


class SQLAlchemyPlanRepository(PlanRepository):
    """套餐仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PlanModel) -> Plan:
        return Plan(
            id=model.id,
            name=model.name,
            description=model.description,
            price=Decimal(str(model.price)),
            currency=model.currency,
            is_active=model.is_active,
            available_from=model.available_from,
            available_until=model.available_until,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, plan_id: int) -> Optional[Plan]:
        result = await self.session.execute(select(PlanModel).where(PlanModel.id == plan_id))
        db_plan = result.scalar_one_or_none()
        return self._to_entity(db_plan) if db_plan else None

    async def create(self, plan: Plan) -> Plan:
        db_plan = PlanModel(
            name=plan.name,
            description=plan.description,
            price=plan.price,
            currency=plan.currency,
            is_active=plan.is_active,
            available_from=plan.available_from,
            available_until=plan.available_until,
        )
        self.session.add(db_plan)
        await self.session.flush()
        await self.session.refresh(db_plan)
        return self._to_entity(db_plan)
