"""
余额仓储实现 - 使用SQLAlchemy实现数据访问
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.balance.entity import (
    BalanceReservation,
    BalanceTransaction,
    ReservationStatus,
    TransactionPhase,
    TransactionType,
    UserBalance,
)
from domain.balance.exceptions import ReservationNotFoundException
from domain.balance.repository import BalanceRepository
from infrastructure.models.balance import (
    BalanceReservationModel,
    BalanceTransactionModel,
    UserBalanceModel,
)


logger = get_logger(__name__)


def _dec(value) -> Decimal:
    return Decimal(str(value if value is not None else 0))


class SQLAlchemyBalanceRepository(BalanceRepository):
    """余额仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: UserBalanceModel) -> UserBalance:
        return UserBalance(
            id=model.id,
            user_id=model.user_id,
            balance=_dec(model.balance),
            frozen_balance=_dec(model.frozen_balance),
            total_recharge=_dec(model.total_recharge),
            total_consume=_dec(model.total_consume),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _txn_to_entity(self, model: BalanceTransactionModel) -> BalanceTransaction:
        return BalanceTransaction(
            id=model.id,
            user_id=model.user_id,
            type=TransactionType(model.type),
            phase=TransactionPhase(model.phase),
            amount=_dec(model.amount),
            balance_before=_dec(model.balance_before),
            balance_after=_dec(model.balance_after),
            frozen_before=_dec(model.frozen_before),
            frozen_after=_dec(model.frozen_after),
            related_id=model.related_id,
            related_type=model.related_type,
            description=model.description,
            created_at=model.created_at,
        )

    def _reservation_to_entity(self, model: BalanceReservationModel) -> BalanceReservation:
        return BalanceReservation(
            id=model.id,
            user_id=model.user_id,
            amount=_dec(model.amount),
            status=ReservationStatus(model.status),
            related_id=model.related_id,
            related_type=model.related_type,
            created_at=model.created_at,
            settled_at=model.settled_at,
        )

    async def _get_model(self, user_id: int, *, for_update: bool = False) -> Optional[UserBalanceModel]:
        query = select(UserBalanceModel).where(UserBalanceModel.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: int, *, for_update: bool = False) -> Optional[UserBalance]:
        model = await self._get_model(user_id, for_update=for_update)
        return self._to_entity(model) if model else None

    async def get_or_create(self, user_id: int) -> UserBalance:
        model = await self._get_model(user_id, for_update=True)
        if model is None:
            model = UserBalanceModel(
                user_id=user_id,
                balance=Decimal("0.00"),
                frozen_balance=Decimal("0.00"),
                total_recharge=Decimal("0.00"),
                total_consume=Decimal("0.00"),
            )
            self.session.add(model)
            await self.session.flush()
            await self.session.refresh(model)
            logger.info("user_balance_created", user_id=user_id)
        return self._to_entity(model)

    async def save(self, balance: UserBalance) -> UserBalance:
        model = await self._get_model(balance.user_id)
        if model is None:
            model = UserBalanceModel(user_id=balance.user_id)
            self.session.add(model)

        model.balance = balance.balance
        model.frozen_balance = balance.frozen_balance
        model.total_recharge = balance.total_recharge
        model.total_consume = balance.total_consume
        if balance.updated_at is not None:
            model.updated_at = balance.updated_at

        await self.session.flush()
        await self.session.refresh(model)
        return self._to_entity(model)

    async def add_transaction(self, txn: BalanceTransaction) -> BalanceTransaction:
        model = BalanceTransactionModel(
            user_id=txn.user_id,
            type=txn.type.value,
            phase=txn.phase.value,
            amount=txn.amount,
            balance_before=txn.balance_before,
            balance_after=txn.balance_after,
            frozen_before=txn.frozen_before,
            frozen_after=txn.frozen_after,
            description=txn.description,
            related_id=txn.related_id,
            related_type=txn.related_type,
            created_at=txn.created_at,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)

        logger.info(
            "balance_transaction_recorded",
            user_id=txn.user_id,
            type=txn.type.value,
            phase=txn.phase.value,
            amount=str(txn.amount),
            balance_after=str(txn.balance_after),
            frozen_after=str(txn.frozen_after),
            related_id=txn.related_id,
        )
        return self._txn_to_entity(model)

    async def list_transactions(
        self,
        user_id: int,
        *,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[BalanceTransaction]:
        query = (
            select(BalanceTransactionModel)
            .where(BalanceTransactionModel.user_id == user_id)
            .order_by(BalanceTransactionModel.id)
            .offset(skip)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [self._txn_to_entity(m) for m in result.scalars().all()]

    async def add_reservation(self, reservation: BalanceReservation) -> BalanceReservation:
        model = BalanceReservationModel(
            id=reservation.id,
            user_id=reservation.user_id,
            amount=reservation.amount,
            status=reservation.status.value,
            related_id=reservation.related_id,
            related_type=reservation.related_type,
            created_at=reservation.created_at,
            settled_at=reservation.settled_at,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        logger.info(
            "balance_reserved",
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            amount=str(reservation.amount),
        )
        return self._reservation_to_entity(model)

    async def get_reservation(
        self,
        reservation_id: str,
        *,
        for_update: bool = False
    ) -> Optional[BalanceReservation]:
        query = select(BalanceReservationModel).where(BalanceReservationModel.id == reservation_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        model = result.scalar_one_or_none()
        return self._reservation_to_entity(model) if model else None

    async def update_reservation(self, reservation: BalanceReservation) -> BalanceReservation:
        result = await self.session.execute(
            select(BalanceReservationModel).where(BalanceReservationModel.id == reservation.id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            raise ReservationNotFoundException(reservation.id)

        model.status = reservation.status.value
        model.settled_at = reservation.settled_at
        await self.session.flush()
        await self.session.refresh(model)
        logger.info(
            "balance_reservation_settled",
            reservation_id=reservation.id,
            status=reservation.status.value,
        )
        return self._reservation_to_entity(model)
