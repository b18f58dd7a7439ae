"""
Student-facing payment notices.

Listens for ``payment.completed`` / ``payment.failed`` and queues the purchase
confirmation or failure notice for the student.
"""
import asyncio
import json

import aio_pika
import structlog

from course_payments.config import Settings
from course_payments.logging_config import configure_logging
from course_payments.messaging import PAYMENT_COMPLETED, PAYMENT_EXCHANGE, PAYMENT_FAILED

logger = structlog.get_logger(__name__)

NOTIFICATION_QUEUE = "payment_notifications_q"

TEMPLATES = {
    "PaymentCompleted": "payment-success",
    "PaymentFailed": "payment-failed",
}


async def process_payment_event(message: aio_pika.abc.AbstractIncomingMessage):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("payment_event_unreadable", routing_key=message.routing_key, error=str(e))
            return

        event_type = event_data.get("event_type", "UNKNOWN")
        template = TEMPLATES.get(event_type)
        if template is None:
            logger.warning("payment_event_ignored", event_type=event_type, order_id=event_data.get("order_id"))
            return

        logger.info(
            "student_notice_queued",
            template=template,
            event_type=event_type,
            order_id=event_data.get("order_id"),
            user_id=event_data.get("user_id"),
            course_id=event_data.get("course_id"),
            amount=event_data.get("amount"),
            currency=event_data.get("currency"),
            gateway_payment_id=event_data.get("gateway_payment_id"),
        )


async def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    connection = await aio_pika.connect_robust(settings.rabbitmq_url)
    async with connection:
        channel = await connection.channel()

        payment_exchange = await channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        queue = await channel.declare_queue(NOTIFICATION_QUEUE, durable=True)
        await queue.bind(payment_exchange, PAYMENT_COMPLETED)
        await queue.bind(payment_exchange, PAYMENT_FAILED)

        logger.info("consumer_listening", queue=NOTIFICATION_QUEUE)
        await queue.consume(process_payment_event)

        # Keep the main task running
        await asyncio.Future()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("consumer_stopped")
