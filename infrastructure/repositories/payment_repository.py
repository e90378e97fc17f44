"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from typing import Optional, List, Sequence
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import (
    ACTIVE_STATUSES,
    Payment,
    PaymentIncident,
    PaymentMethod,
    PaymentStatus,
)
from domain.payment.exceptions import PaymentAlreadyExistsException, PaymentNotFoundException
from domain.payment.repository import PaymentRepository
from infrastructure.models.payment import PaymentModel, PaymentIncidentModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            payment_number=model.payment_number,
            order_id=model.order_id,
            user_id=model.user_id,
            payment_method=PaymentMethod(model.payment_method),
            amount=Decimal(str(model.amount)),
            status=PaymentStatus(model.status),
            transaction_id=model.transaction_id,
            gateway_reference=model.gateway_reference,
            dispatched_at=model.dispatched_at,
            payment_time=model.payment_time,
            reservation_id=model.reservation_id,
            failure_reason=model.failure_reason,
            refund_id=model.refund_id,
            refund_time=model.refund_time,
            refund_amount=Decimal(str(model.refund_amount or 0)),
            pending_refund_amount=Decimal(str(model.pending_refund_amount or 0)),
            refund_reason=model.refund_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            payment_number=entity.payment_number,
            order_id=entity.order_id,
            user_id=entity.user_id,
            payment_method=entity.payment_method.value,
            amount=entity.amount,
            status=entity.status.value,
            transaction_id=entity.transaction_id,
            gateway_reference=entity.gateway_reference,
            dispatched_at=entity.dispatched_at,
            payment_time=entity.payment_time,
            reservation_id=entity.reservation_id,
            failure_reason=entity.failure_reason,
            refund_id=entity.refund_id,
            refund_time=entity.refund_time,
            refund_amount=entity.refund_amount,
            pending_refund_amount=entity.pending_refund_amount,
            refund_reason=entity.refund_reason,
            created_at=entity.created_at or datetime.now(timezone.utc),
            updated_at=entity.updated_at or datetime.now(timezone.utc),
        )

    @staticmethod
    def _apply_filters(
        query,
        *,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        if status:
            query = query.where(PaymentModel.status == status.value)
        if payment_method:
            query = query.where(PaymentModel.payment_method == payment_method.value)
        if start:
            query = query.where(PaymentModel.created_at >= start)
        if end:
            query = query.where(PaymentModel.created_at < end)
        return query

    async def _get_one(self, *criteria, for_update: bool = False) -> Optional[PaymentModel]:
        query = select(PaymentModel).where(*criteria)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            db_payment = self._to_model(payment)
            self.session.add(db_payment)
            await self.session.flush()
            await self.session.refresh(db_payment)
        except IntegrityError as e:
            logger.warning(
                "payment_create_conflict",
                order_id=payment.order_id,
                payment_number=payment.payment_number,
                error=str(e.orig),
            )
            raise PaymentAlreadyExistsException(payment.order_id) from e
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            payment_number=db_payment.payment_number,
            order_id=db_payment.order_id,
            payment_method=db_payment.payment_method,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int, *, for_update: bool = False) -> Optional[Payment]:
        """根据ID获取支付"""
        db_payment = await self._get_one(PaymentModel.id == payment_id, for_update=for_update)
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_payment_number(
        self,
        payment_number: str,
        *,
        for_update: bool = False
    ) -> Optional[Payment]:
        """根据支付单号获取支付"""
        db_payment = await self._get_one(
            PaymentModel.payment_number == payment_number, for_update=for_update
        )
        return self._to_entity(db_payment) if db_payment else None

    async def get_active_by_order(self, order_id: int) -> Optional[Payment]:
        """获取订单当前未终结的支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.order_id == order_id,
                PaymentModel.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .order_by(PaymentModel.id.desc())
            .limit(1)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        db_payment = await self._get_one(PaymentModel.id == payment.id)
        if not db_payment:
            raise PaymentNotFoundException(f"id={payment.id}")

        # 更新可变字段
        db_payment.status = payment.status.value
        db_payment.transaction_id = payment.transaction_id
        db_payment.gateway_reference = payment.gateway_reference
        db_payment.dispatched_at = payment.dispatched_at
        db_payment.payment_time = payment.payment_time
        db_payment.reservation_id = payment.reservation_id
        db_payment.failure_reason = payment.failure_reason
        db_payment.refund_id = payment.refund_id
        db_payment.refund_time = payment.refund_time
        db_payment.refund_amount = payment.refund_amount
        db_payment.pending_refund_amount = payment.pending_refund_amount
        db_payment.refund_reason = payment.refund_reason
        db_payment.updated_at = payment.updated_at

        await self.session.flush()
        await self.session.refresh(db_payment)

        logger.info(
            "payment_updated",
            payment_id=db_payment.id,
            payment_number=db_payment.payment_number,
            status=db_payment.status,
        )

        return self._to_entity(db_payment)

    async def list_by_user(
        self,
        user_id: int,
        *,
        skip: int = 0,
        limit: int = 100,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Payment]:
        """获取用户的支付列表"""
        query = self._apply_filters(
            select(PaymentModel).where(PaymentModel.user_id == user_id),
            status=status,
            payment_method=payment_method,
            start=start,
            end=end,
        )
        query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc()).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_by_user(
        self,
        user_id: int,
        *,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """统计用户的支付数量"""
        query = self._apply_filters(
            select(func.count(PaymentModel.id)).where(PaymentModel.user_id == user_id),
            status=status,
            payment_method=payment_method,
            start=start,
            end=end,
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def list_created_between(
        self,
        start: datetime,
        end: datetime,
        *,
        payment_method: Optional[PaymentMethod] = None,
    ) -> List[Payment]:
        query = self._apply_filters(
            select(PaymentModel),
            payment_method=payment_method,
            start=start,
            end=end,
        ).order_by(PaymentModel.created_at, PaymentModel.id)
        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_stale_pending(
        self,
        before: datetime,
        methods: Sequence[PaymentMethod],
        limit: int = 100,
    ) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.payment_method.in_([m.value for m in methods]),
                func.coalesce(PaymentModel.dispatched_at, PaymentModel.created_at) < before,
            )
            .order_by(PaymentModel.id)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def add_incident(self, incident: PaymentIncident) -> PaymentIncident:
        db_incident = PaymentIncidentModel(
            payment_id=incident.payment_id,
            payment_number=incident.payment_number,
            kind=incident.kind.value,
            detail=incident.detail,
            created_at=incident.created_at,
        )
        self.session.add(db_incident)
        await self.session.flush()
        logger.warning(
            "payment_incident_recorded",
            payment_id=incident.payment_id,
            payment_number=incident.payment_number,
            kind=incident.kind.value,
        )
        incident.id = db_incident.id
        return incident

    async def list_incidents(self, start: datetime, end: datetime) -> List[PaymentIncident]:
        result = await self.session.execute(
            select(PaymentIncidentModel)
            .where(PaymentIncidentModel.created_at >= start, PaymentIncidentModel.created_at < end)
            .order_by(PaymentIncidentModel.id)
        )
        return [
            PaymentIncident(
                id=m.id,
                payment_id=m.payment_id,
                payment_number=m.payment_number,
                kind=m.kind,
                detail=m.detail or {},
                created_at=m.created_at,
            )
            for m in result.scalars().all()
        ]
