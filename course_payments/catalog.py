from typing import Optional, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from course_payments.errors import PersistenceError
from course_payments.models import Course, Profile

logger = structlog.get_logger(__name__)


class CatalogReader(Protocol):
    async def get_course(self, course_id: str) -> Optional[Course]: ...

    async def get_user(self, user_id: str) -> Optional[Profile]: ...


class SqlCatalogReader:
    """Reads courses and profiles straight from the catalog tables, uncached."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def get_course(self, course_id: str) -> Optional[Course]:
        return await self._get(Course, course_id)

    async def get_user(self, user_id: str) -> Optional[Profile]:
        return await self._get(Profile, user_id)

    async def _get(self, model, entity_id: str):
        async with self._session_factory() as session:
            try:
                return await session.get(model, entity_id)
            except SQLAlchemyError as exc:
                logger.error("catalog_read_failed", table=model.__tablename__, entity_id=entity_id, error=str(exc))
                raise PersistenceError(f"Failed to load {model.__name__.lower()}") from exc
