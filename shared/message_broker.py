"""Message broker abstraction for RabbitMQ."""
import json
import logging
from typing import Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "escrow_events"


class MessageBroker:
    """RabbitMQ publisher for escrow lifecycle events."""

    def __init__(self, rabbitmq_url: str, exchange_name: str = EXCHANGE_NAME):
        self.rabbitmq_url = rabbitmq_url
        self.exchange_name = exchange_name
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None

    @property
    def is_connected(self) -> bool:
        return self.exchange is not None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()

        # Topic exchange so consumers can bind on "transaction.*" or "refund.*"
        self.exchange = await self.channel.declare_exchange(
            self.exchange_name,
            ExchangeType.TOPIC,
            durable=True
        )

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection:
            await self.connection.close()
            self.exchange = None
            logger.info("Disconnected from RabbitMQ")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """
        Publish an event to the message broker.

        Args:
            event: The event to publish
            routing_key: Optional routing key (defaults to event_type)
        """
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        routing_key = routing_key or event.event_type.value

        message = Message(
            body=json.dumps(event.model_dump(mode="json")).encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "correlation_id": str(event.correlation_id),
                "version": event.version
            }
        )

        await self.exchange.publish(message, routing_key=routing_key)

        logger.info(
            f"Published event: {event.event_type.value} "
            f"(id={event.event_id}, correlation={event.correlation_id})"
        )
