from decimal import Decimal

import structlog

from course_payments.catalog import CatalogReader
from course_payments.errors import NotFoundError, ValidationError
from course_payments.models import Course, Profile
from course_payments.results import Err, Ok, Result

logger = structlog.get_logger(__name__)

PUBLISHED = "published"


class CourseValidator:
    def __init__(self, catalog: CatalogReader, tolerance: Decimal = Decimal("0.01")):
        self._catalog = catalog
        self._tolerance = tolerance

    async def validate(self, course_id: str, expected_amount: Decimal) -> Result[Course]:
        """
        Confirm the course exists, is published and costs what the client claims.

        A price mismatch is rejected rather than corrected: it usually means the
        checkout request was tampered with.
        """
        course = await self._catalog.get_course(course_id)
        if course is None:
            return Err(NotFoundError.for_resource("Course", course_id=course_id))

        if course.status != PUBLISHED:
            return Err(ValidationError(
                "Course is not available for purchase",
                {"reason": "not_published", "course_id": course_id},
            ))

        if abs(Decimal(course.price) - Decimal(expected_amount)) > self._tolerance:
            logger.warning(
                "course_price_mismatch",
                course_id=course_id,
                expected_amount=str(expected_amount),
                actual_price=str(course.price),
            )
            return Err(ValidationError(
                "Payment amount does not match course price",
                {"reason": "price_mismatch", "course_id": course_id},
            ))

        return Ok(course)


class UserValidator:
    def __init__(self, catalog: CatalogReader):
        self._catalog = catalog

    async def validate(self, user_id: str) -> Result[Profile]:
        user = await self._catalog.get_user(user_id)
        if user is None:
            return Err(NotFoundError.for_resource("User", user_id=user_id))
        return Ok(user)
