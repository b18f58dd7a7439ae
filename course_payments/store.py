from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from course_payments.errors import PersistenceError
from course_payments.models import Payment, PaymentStatus

logger = structlog.get_logger(__name__)

GATEWAY_METHOD = "payhere"


class PaymentStore:
    """
    Persistence and lifecycle of ``Payment`` rows.

    Status changes are conditional updates guarded by the current status, so
    concurrent notifications for one order cannot both move it out of
    ``pending``. Rows are never deleted.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def create_pending(
        self,
        order_id: str,
        user_id: str,
        course_id: str,
        amount: Decimal,
        currency: str,
    ) -> Payment:
        payment = Payment(
            id=order_id,
            user_id=user_id,
            course_id=course_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            method=GATEWAY_METHOD,
        )
        async with self._session_factory() as session:
            try:
                session.add(payment)
                await session.commit()
                await session.refresh(payment)
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("payment_create_failed", order_id=order_id, error=str(exc))
                raise PersistenceError("Failed to create payment record", {"order_id": order_id}) from exc
        return payment

    async def get(self, order_id: str) -> Optional[Payment]:
        async with self._session_factory() as session:
            try:
                return await session.get(Payment, order_id)
            except SQLAlchemyError as exc:
                logger.error("payment_read_failed", order_id=order_id, error=str(exc))
                raise PersistenceError("Failed to load payment record", {"order_id": order_id}) from exc

    async def transition(
        self,
        order_id: str,
        new_status: PaymentStatus,
        *,
        gateway_payment_id: Optional[str] = None,
        status_code: Optional[str] = None,
        status_message: Optional[str] = None,
        gateway_method: Optional[str] = None,
    ) -> bool:
        """
        Move a pending payment into ``new_status``.

        Returns False when the payment was not pending any more, i.e. another
        notification already applied its transition.
        """
        if not new_status.is_terminal:
            raise ValueError(f"{new_status} is not a terminal status")

        stmt = (
            update(Payment)
            .where(Payment.id == order_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=new_status,
                gateway_payment_id=gateway_payment_id,
                gateway_status_code=status_code,
                gateway_status_message=status_message,
                gateway_method=gateway_method,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("payment_transition_failed", order_id=order_id, status=new_status.value, error=str(exc))
                raise PersistenceError("Failed to update payment status", {"order_id": order_id}) from exc
        return result.rowcount == 1

    async def mark_access_granted(self, order_id: str) -> bool:
        now = datetime.utcnow()
        stmt = (
            update(Payment)
            .where(
                Payment.id == order_id,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.access_granted_at.is_(None),
            )
            .values(access_granted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("payment_access_mark_failed", order_id=order_id, error=str(exc))
                raise PersistenceError("Failed to record access grant", {"order_id": order_id}) from exc
        return result.rowcount == 1
