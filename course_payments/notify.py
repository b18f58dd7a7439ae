"""
Gateway notification handling.

    pending   + bad signature          -> rejected, nothing written
    pending   + good signature, "2"    -> completed, access granted
    pending   + good signature, other  -> failed
    completed / failed                 -> acknowledged, not re-applied

The pending -> terminal step is a single conditional update, so when the
gateway (or anyone replaying a captured payload) delivers the same
notification concurrently only one delivery applies it. Access granting is a
separate, idempotent write tracked by ``Payment.access_granted_at``: if it
fails the error propagates so the gateway redelivers, and the redelivery
retries the grant for the already completed payment.
"""
import enum
from dataclasses import dataclass
from typing import Optional

import structlog

from course_payments import signature
from course_payments.access import AccessGranter
from course_payments.config import Settings
from course_payments.errors import AccessGrantError, NotFoundError, PaymentError, PaymentServiceError, SignatureError
from course_payments.messaging import PAYMENT_COMPLETED, PAYMENT_FAILED, Publisher, build_payment_event
from course_payments.models import Payment, PaymentStatus
from course_payments.schemas import NotificationPayload
from course_payments.store import PaymentStore

logger = structlog.get_logger(__name__)


class Outcome(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    INVALID_SIGNATURE = "invalid_signature"
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass(frozen=True)
class NotificationOutcome:
    outcome: Outcome
    status: str  # "success" | "failed", as reported back to the gateway
    message: str
    payment_status: Optional[PaymentStatus] = None
    error: Optional[PaymentServiceError] = None


class NotificationHandler:
    def __init__(
        self,
        settings: Settings,
        store: PaymentStore,
        granter: AccessGranter,
        publisher: Publisher,
    ):
        self._settings = settings
        self._store = store
        self._granter = granter
        self._publisher = publisher

    async def handle(self, notification: NotificationPayload, client_ip: Optional[str] = None) -> NotificationOutcome:
        order_id = notification.order_id
        log = logger.bind(order_id=order_id, status_code=notification.status_code, client_ip=client_ip)
        log.info(
            "notification_received",
            amount=notification.amount,
            currency=notification.currency,
            gateway_payment_id=notification.gateway_payment_id,
            method=notification.method,
        )

        payment = await self._store.get(order_id)
        if payment is None:
            log.warning("notification_rejected", outcome=Outcome.NOT_FOUND.value, reason="unknown order")
            return NotificationOutcome(
                Outcome.NOT_FOUND, "failed", "Payment record not found",
                error=NotFoundError.for_resource("Payment", order_id=order_id),
            )

        if not signature.verify(
            self._settings.merchant_id,
            order_id,
            notification.amount,
            notification.currency,
            notification.status_code,
            self._settings.merchant_secret,
            notification.signature,
        ):
            log.warning("notification_rejected", outcome=Outcome.INVALID_SIGNATURE.value, reason="signature mismatch")
            return NotificationOutcome(
                Outcome.INVALID_SIGNATURE, "failed", "Invalid payment signature", payment.status,
                SignatureError("Invalid payment signature", {"order_id": order_id}),
            )

        if not self._matches_quote(payment, notification):
            log.warning(
                "notification_rejected",
                outcome=Outcome.AMOUNT_MISMATCH.value,
                reason="amount or currency differs from checkout",
                expected_amount=str(payment.amount),
                expected_currency=payment.currency,
            )
            return NotificationOutcome(
                Outcome.AMOUNT_MISMATCH, "failed", "Payment amount mismatch", payment.status,
                PaymentError("Payment amount mismatch", {"order_id": order_id, "amount": notification.amount}),
            )

        if payment.status.is_terminal:
            return await self._acknowledge(payment, log)

        new_status = (
            PaymentStatus.COMPLETED
            if notification.status_code == self._settings.success_status_code
            else PaymentStatus.FAILED
        )
        applied = await self._store.transition(
            order_id,
            new_status,
            gateway_payment_id=notification.gateway_payment_id,
            status_code=notification.status_code,
            status_message=notification.status_message,
            gateway_method=notification.method,
        )
        if not applied:
            # Lost the race against a concurrent delivery
            payment = await self._store.get(order_id)
            return await self._acknowledge(payment, log)

        log.info("payment_transitioned", outcome=new_status.value, reason=notification.status_message)
        payment = await self._store.get(order_id)

        if new_status is PaymentStatus.FAILED:
            await self._publisher.publish(PAYMENT_FAILED, build_payment_event("PaymentFailed", payment))
            return NotificationOutcome(
                Outcome.FAILED, "failed", notification.status_message or "Payment failed", PaymentStatus.FAILED
            )

        await self._grant_access(payment, log)
        await self._publisher.publish(PAYMENT_COMPLETED, build_payment_event("PaymentCompleted", payment))
        return NotificationOutcome(
            Outcome.COMPLETED, "success", "Payment completed successfully", PaymentStatus.COMPLETED
        )

    async def _acknowledge(self, payment: Payment, log) -> NotificationOutcome:
        log.info("notification_duplicate", outcome=Outcome.DUPLICATE.value, reason=f"payment already {payment.status.value}")
        if payment.status is PaymentStatus.COMPLETED:
            if payment.access_granted_at is None:
                await self._grant_access(payment, log)
            return NotificationOutcome(
                Outcome.DUPLICATE, "success", "Payment already completed", PaymentStatus.COMPLETED
            )
        return NotificationOutcome(Outcome.DUPLICATE, "failed", "Payment already failed", PaymentStatus.FAILED)

    async def _grant_access(self, payment: Payment, log):
        try:
            await self._granter.grant(payment.user_id, payment.course_id, payment.id)
        except AccessGrantError:
            log.error("access_grant_pending", outcome="completed", reason="access grant failed, awaiting redelivery")
            raise
        await self._store.mark_access_granted(payment.id)

    @staticmethod
    def _matches_quote(payment: Payment, notification: NotificationPayload) -> bool:
        return (
            notification.amount == signature.format_amount(payment.amount)
            and notification.currency == payment.currency
        )
