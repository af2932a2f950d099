"""
Read-side use-cases for a user's transactions.
"""
from __future__ import annotations

from typing import Callable, List

from application.dtos.payments import TransactionDTO
from domain.common.exceptions import TransactionNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.user.entity import User


class TransactionQueryService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork]) -> None:
        self._uow_factory = uow_factory

    async def history(self, user: User, *, skip: int = 0, limit: int = 20) -> List[TransactionDTO]:
        """Newest first."""
        async with self._uow_factory(readonly=True) as uow:
            transactions = await uow.transaction_repository.list_by_user(user.id, skip=skip, limit=limit)
        return [TransactionDTO.from_entity(tx) for tx in transactions]

    async def get(self, user: User, transaction_id: str) -> TransactionDTO:
        async with self._uow_factory(readonly=True) as uow:
            transaction = await uow.transaction_repository.get_by_transaction_id(transaction_id)
        if transaction is None or (transaction.user_id != user.id and not user.is_superuser):
            raise TransactionNotFoundException(transaction_id)
        return TransactionDTO.from_entity(transaction)
