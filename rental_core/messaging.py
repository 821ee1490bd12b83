import json
import logging
from datetime import datetime
from uuid import uuid4

import aio_pika

from rental_core.models import utcnow

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "rental_exchange"


class EventPublisher:
    """Publishes domain events to RabbitMQ.

    Publishing runs after the owning transaction has committed. A broker
    outage is logged and never fails the operation that raised the event.
    """

    def __init__(self, rabbitmq_url: str, exchange_name: str = EXCHANGE_NAME):
        self.rabbitmq_url = rabbitmq_url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info("RabbitMQ setup complete.")
        except Exception as e:
            logger.error(f"Error setting up RabbitMQ: {e}")

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
            self.channel = None
            self.exchange = None

    async def publish(self, routing_key: str, event_type: str, payload: dict) -> bool:
        event = {
            "event_id": str(uuid4()),
            "event_type": event_type,
            "timestamp": utcnow().isoformat(),
            **payload,
        }
        if self.exchange is None:
            logger.warning(
                f"RabbitMQ channel not available. Dropping {event_type} event.",
                extra={"event_type": event_type},
            )
            return False

        message = aio_pika.Message(
            json.dumps(event, default=_json_default).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
            logger.info(f"Published event to {routing_key}: {event_type}", extra={"event_type": event_type})
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event_type}: {e}", extra={"event_type": event_type})
            return False


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)
