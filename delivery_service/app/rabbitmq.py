"""
RabbitMQ event gateway.

Every consumed routing key gets its own durable quorum queue bound to the
topic exchange. A message is acked once its handler returns, nacked back
onto the queue when the handler raises, and rejected outright when its
payload does not match the schema for its routing key. The broker counts
redeliveries and dead-letters a message after MAX_DELIVERY_ATTEMPTS.
"""
import asyncio
import json
import logging
from functools import partial
from typing import Awaitable, Callable, Dict, Optional

import aio_pika
from aio_pika.abc import AbstractIncomingMessage
from pydantic import ValidationError as SchemaError

from . import events
from .config import settings
from .exceptions import EventPublishError

logger = logging.getLogger(__name__)

Handler = Callable[[events.Event], Awaitable[object]]


class EventGateway:
    def __init__(
        self,
        url: str = None,
        exchange_name: str = None,
        queue_prefix: str = None,
        max_delivery_attempts: int = None,
        reconnect_delay: float = None,
        prefetch_count: int = 10,
    ):
        self.url = url or settings.AMQP_URL
        self.exchange_name = exchange_name or settings.EXCHANGE_NAME
        self.queue_prefix = queue_prefix or settings.QUEUE_PREFIX
        self.max_delivery_attempts = max_delivery_attempts or settings.MAX_DELIVERY_ATTEMPTS
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.RECONNECT_DELAY
        self.prefetch_count = prefetch_count

        self.connection = None
        self.channel = None
        self.exchange = None
        self.handlers: Dict[str, Handler] = {}

    @property
    def dead_letter_exchange_name(self) -> str:
        return f"{self.exchange_name}.dlx"

    @property
    def dead_letter_queue_name(self) -> str:
        return f"{self.queue_prefix}.dead-letter"

    def queue_name(self, routing_key: str) -> str:
        return f"{self.queue_prefix}.{routing_key}"

    def subscribe(self, routing_key: str, handler: Handler):
        if routing_key not in events.CONSUMED:
            raise ValueError(f"No event schema registered for {routing_key}")
        self.handlers[routing_key] = handler

    async def connect(self, attempts: Optional[int] = None):
        """Open the connection and declare the exchanges, retrying until it works or attempts run out."""
        await self._with_retries(self._open, attempts)

    async def start(self, attempts: Optional[int] = None):
        """Connect and consume every subscribed routing key; any setup failure starts over."""
        await self._with_retries(self._open_and_consume, attempts)

    async def _with_retries(self, setup, attempts: Optional[int]):
        attempt = 0
        while True:
            attempt += 1
            try:
                logger.info(f"Connecting to RabbitMQ (attempt {attempt})")
                await setup()
                return
            except Exception as e:
                await self._discard_connection()
                if attempts is not None and attempt >= attempts:
                    raise
                logger.error(f"RabbitMQ setup failed: {e}; reconnecting in {self.reconnect_delay} seconds")
                await asyncio.sleep(self.reconnect_delay)

    async def _open(self):
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel()
        await self.channel.set_qos(prefetch_count=self.prefetch_count)
        self.exchange = await self.channel.declare_exchange(
            self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )
        dead_letters = await self.channel.declare_exchange(
            self.dead_letter_exchange_name, aio_pika.ExchangeType.FANOUT, durable=True
        )
        dead_letter_queue = await self.channel.declare_queue(self.dead_letter_queue_name, durable=True)
        await dead_letter_queue.bind(dead_letters)
        logger.info(f"Connected to RabbitMQ, exchange {self.exchange_name}")

    async def _open_and_consume(self):
        await self._open()
        for routing_key in self.handlers:
            await self._consume(routing_key)

    async def _discard_connection(self):
        connection = self.connection
        self.connection = None
        self.channel = None
        self.exchange = None
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Error closing broken RabbitMQ connection: {e}")

    async def _consume(self, routing_key: str):
        queue = await self.channel.declare_queue(
            self.queue_name(routing_key),
            durable=True,
            arguments={
                "x-queue-type": "quorum",
                "x-delivery-limit": self.max_delivery_attempts,
                "x-dead-letter-exchange": self.dead_letter_exchange_name,
            },
        )
        await queue.bind(self.exchange, routing_key=routing_key)
        await queue.consume(partial(self._on_message, routing_key))
        logger.info(f"Consuming {routing_key} from {queue.name}")

    async def _on_message(self, routing_key: str, message: AbstractIncomingMessage):
        schema = events.CONSUMED[routing_key]
        try:
            event = schema.model_validate_json(message.body)
        except SchemaError as e:
            logger.error(f"Rejecting malformed {routing_key} message: {e}")
            await message.reject(requeue=False)
            return

        handler = self.handlers[routing_key]
        try:
            await handler(event)
        except Exception as e:
            attempts = (message.headers or {}).get("x-delivery-count", 0)
            logger.error(f"Error processing {routing_key} message (redelivered {attempts} times): {e}", exc_info=True)
            await message.nack(requeue=True)
            return

        await message.ack()

    async def publish(self, event: events.Event):
        await self.publish_raw(event.routing_key, event.to_payload())

    async def publish_raw(self, routing_key: str, payload: dict):
        if self.exchange is None:
            raise EventPublishError(routing_key, "not connected to RabbitMQ")
        message = aio_pika.Message(
            body=json.dumps(payload).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
        except (aio_pika.exceptions.AMQPError, aio_pika.exceptions.ChannelInvalidStateError,
                OSError, asyncio.TimeoutError) as e:
            raise EventPublishError(routing_key, str(e))
        logger.info(f"Published {routing_key}: {payload}")

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
        self.connection = None
        self.channel = None
        self.exchange = None
        logger.info("Closed connection to RabbitMQ")
