from datetime import datetime
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from course_payments.errors import AccessGrantError
from course_payments.models import Purchase

logger = structlog.get_logger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _grant_statement(dialect_name: str, user_id: str, course_id: str, payment_id: str):
    try:
        insert = _UPSERT_DIALECTS[dialect_name]
    except KeyError:
        raise AccessGrantError(f"Unsupported database dialect for access upsert: {dialect_name}")

    stmt = insert(Purchase).values(
        id=str(uuid4()),
        user_id=user_id,
        course_id=course_id,
        payment_id=payment_id,
        access_granted=True,
        purchase_date=datetime.utcnow(),
    )
    # An already granted purchase is left untouched; access is never revoked here.
    return stmt.on_conflict_do_update(
        index_elements=[Purchase.user_id, Purchase.course_id],
        set_={
            "access_granted": True,
            "payment_id": stmt.excluded.payment_id,
            "purchase_date": stmt.excluded.purchase_date,
        },
        where=Purchase.access_granted.is_(False),
    )


class AccessGranter:
    """Turns a completed payment into durable course access."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def grant(self, user_id: str, course_id: str, payment_id: str) -> Purchase:
        """
        Idempotently grant access to ``course_id`` for ``user_id``.

        Creates the purchase, flips a pre-existing non-granted one, or leaves a
        granted one as it is. Runs as one atomic upsert so two concurrent
        notifications cannot both insert.
        """
        log = logger.bind(user_id=user_id, course_id=course_id, payment_id=payment_id)
        async with self._session_factory() as session:
            try:
                stmt = _grant_statement(session.get_bind().dialect.name, user_id, course_id, payment_id)
                await session.execute(stmt)
                result = await session.execute(
                    select(Purchase).where(Purchase.user_id == user_id, Purchase.course_id == course_id)
                )
                purchase = result.scalar_one()
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                log.error("access_grant_failed", error=str(exc))
                raise AccessGrantError(
                    "Failed to grant course access",
                    {"payment_id": payment_id, "user_id": user_id, "course_id": course_id},
                ) from exc

        log.info("access_granted", purchase_id=purchase.id, granted_by=purchase.payment_id)
        return purchase
