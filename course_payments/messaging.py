import json
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from uuid import uuid4

import aio_pika
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from course_payments.models import Payment

logger = structlog.get_logger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"
PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"


@runtime_checkable
class Publisher(Protocol):
    async def connect(self): ...

    async def close(self): ...

    async def publish(self, routing_key: str, message_data: Dict[str, Any]) -> bool: ...


def build_payment_event(event_type: str, payment: Payment) -> Dict[str, Any]:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.utcnow().isoformat(),
        "order_id": payment.id,
        "user_id": payment.user_id,
        "course_id": payment.course_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "gateway_payment_id": payment.gateway_payment_id,
    }


class EventPublisher:
    """Publishes payment events to a durable topic exchange."""

    def __init__(self, rabbitmq_url: str, exchange_name: str = PAYMENT_EXCHANGE):
        self._rabbitmq_url = rabbitmq_url
        self._exchange_name = exchange_name
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._exchange: Optional[aio_pika.abc.AbstractExchange] = None

    async def connect(self):
        self._connection = await aio_pika.connect_robust(self._rabbitmq_url)
        channel = await self._connection.channel()
        self._exchange = await channel.declare_exchange(
            self._exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )
        logger.info("rabbitmq_ready", exchange=self._exchange_name)

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._exchange = None

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    async def _send(self, routing_key: str, message_data: Dict[str, Any]):
        if self._exchange is None:
            await self.connect()
        message = aio_pika.Message(
            json.dumps(message_data).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=routing_key)

    async def publish(self, routing_key: str, message_data: Dict[str, Any]) -> bool:
        """Publish an event. Failures are logged, never raised."""
        try:
            await self._send(routing_key, message_data)
        except Exception as exc:
            logger.error(
                "event_publish_failed",
                routing_key=routing_key,
                order_id=message_data.get("order_id"),
                error=str(exc),
            )
            return False
        logger.info("event_published", routing_key=routing_key, event_type=message_data["event_type"],
                    order_id=message_data.get("order_id"))
        return True


class NullPublisher:
    """Used when messaging is disabled."""

    async def connect(self):
        pass

    async def close(self):
        pass

    async def publish(self, routing_key: str, message_data: Dict[str, Any]) -> bool:
        logger.debug("event_dropped", routing_key=routing_key, order_id=message_data.get("order_id"))
        return False
