import time
from dataclasses import dataclass
from uuid import uuid4

import structlog

from course_payments import signature
from course_payments.config import Settings
from course_payments.errors import ValidationError
from course_payments.results import Err, Ok, Result
from course_payments.schemas import CheckoutRequest
from course_payments.store import PaymentStore
from course_payments.validators import CourseValidator, UserValidator

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckoutTicket:
    digest: str
    merchant_id: str
    order_id: str
    amount: str
    currency: str


class CheckoutInitiator:
    def __init__(
        self,
        settings: Settings,
        store: PaymentStore,
        course_validator: CourseValidator,
        user_validator: UserValidator,
    ):
        self._settings = settings
        self._store = store
        self._course_validator = course_validator
        self._user_validator = user_validator

    async def start(self, request: CheckoutRequest) -> Result[CheckoutTicket]:
        """
        Validate a checkout and prepare the signed gateway redirect.

        The pending payment is committed before the digest is returned, so the
        gateway can never notify about an order this service has not stored.
        """
        started = time.monotonic()
        course_id, user_id = str(request.course_id), str(request.user_id)
        log = logger.bind(course_id=course_id, user_id=user_id, amount=str(request.amount))
        log.info("checkout_started", currency=request.currency)

        if request.currency not in self._settings.currencies:
            return self._reject(log, ValidationError(
                f"Unsupported currency: {request.currency}",
                {"reason": "unsupported_currency", "currency": request.currency},
            ))

        course = await self._course_validator.validate(course_id, request.amount)
        if isinstance(course, Err):
            return self._reject(log, course.error)

        user = await self._user_validator.validate(user_id)
        if isinstance(user, Err):
            return self._reject(log, user.error)

        order_id = str(uuid4())
        payment = await self._store.create_pending(
            order_id=order_id,
            user_id=user_id,
            course_id=course_id,
            amount=request.amount,
            currency=request.currency,
        )

        digest = signature.sign(
            self._settings.merchant_id,
            payment.id,
            payment.amount,
            payment.currency,
            self._settings.merchant_secret,
        )
        log.info("checkout_ready", order_id=order_id, duration_ms=round((time.monotonic() - started) * 1000, 2))
        return Ok(CheckoutTicket(
            digest=digest,
            merchant_id=self._settings.merchant_id,
            order_id=order_id,
            amount=signature.format_amount(payment.amount),
            currency=payment.currency,
        ))

    @staticmethod
    def _reject(log, error) -> Err:
        log.warning("checkout_rejected", code=error.code, reason=error.details.get("reason"), message=error.message)
        return Err(error)
