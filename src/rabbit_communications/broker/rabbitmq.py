"""RabbitMQ broker client built on aio-pika.

One robust connection is shared by every channel the client hands out.
When the connection drops, aio-pika restores it in the background; once
it is back, each channel's ``on_reconnect`` hook runs again so exchanges,
queues, bindings and consumers are re-asserted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from ..config import RabbitOptions
from .base import BrokerChannel, ConsumeHandler, ReconnectHook

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class RabbitChannel:
    """BrokerChannel implementation over an aio-pika channel."""

    def __init__(self, channel: AbstractChannel) -> None:
        self._channel = channel
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._consumer_tags: dict[str, str] = {}

    @property
    def raw(self) -> AbstractChannel:
        """Underlying aio-pika channel."""
        return self._channel

    async def assert_exchange(self, name: str, exchange_type: str = "direct") -> None:
        self._exchanges[name] = await self._channel.declare_exchange(
            name,
            aio_pika.ExchangeType(exchange_type),
            durable=True,
        )

    async def assert_queue(self, name: str, message_ttl: int | None = None) -> None:
        arguments = {"x-message-ttl": message_ttl} if message_ttl is not None else None
        self._queues[name] = await self._channel.declare_queue(
            name,
            durable=True,
            arguments=arguments,
        )

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        await self._get_queue(queue).bind(exchange, routing_key=routing_key)

    async def consume(self, queue: str, handler: ConsumeHandler) -> None:
        if queue in self._consumer_tags:
            # aio-pika restores consumers on reconnect by itself
            return

        async def on_message(message: AbstractIncomingMessage) -> None:
            try:
                payload = self._decode(message)
            except ValueError as e:
                logger.error(f"Rejecting undecodable message on {queue}: {e}")
                await message.reject(requeue=False)
                return
            await handler(message, self, payload)

        self._consumer_tags[queue] = await self._get_queue(queue).consume(
            on_message, no_ack=False
        )
        logger.debug(f"Consuming {queue}")

    async def publish(self, exchange: str, routing_key: str, payload: Any) -> None:
        target = self._exchanges.get(exchange)
        if target is None:
            target = await self._channel.get_exchange(exchange, ensure=False)
            self._exchanges[exchange] = target
        await target.publish(self._encode(payload), routing_key=routing_key)

    async def ack(self, message: AbstractIncomingMessage) -> None:
        await message.ack()

    async def nack(
        self,
        message: AbstractIncomingMessage,
        multiple: bool = False,
        requeue: bool = True,
    ) -> None:
        await message.nack(multiple=multiple, requeue=requeue)

    def _get_queue(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            raise LookupError(f"Queue {name} was not asserted on this channel")
        return queue

    def _encode(self, payload: Any) -> aio_pika.Message:
        return aio_pika.Message(
            body=json.dumps(payload).encode(),
            content_type=JSON_CONTENT_TYPE,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )

    def _decode(self, message: AbstractIncomingMessage) -> Any:
        return json.loads(message.body)


class RabbitClient:
    """Broker client that creates channels on a shared robust connection.

    Usage:
        client = RabbitClient(RabbitOptions(url="amqp://localhost/"))
        channel = await client.get_channel(on_reconnect=setup)
    """

    def __init__(self, options: RabbitOptions | None = None) -> None:
        self.options = options or RabbitOptions.from_env()
        self._connection: AbstractRobustConnection | None = None
        self._connect_lock = asyncio.Lock()
        self._hooks: list[tuple[RabbitChannel, ReconnectHook]] = []
        self._reconnect_tasks: set[asyncio.Task[None]] = set()

    @property
    def url(self) -> str:
        return self.options.url

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> AbstractRobustConnection:
        """Open the shared connection (once)."""
        async with self._connect_lock:
            if self._connection is None:
                client_properties = {}
                if self.options.app_name:
                    client_properties["connection_name"] = self.options.app_name
                self._connection = await aio_pika.connect_robust(
                    self.options.url,
                    client_properties=client_properties,
                    reconnect_interval=self.options.sleep_time,
                )
                self._connection.reconnect_callbacks.add(self._on_connection_reconnect)
                logger.info(f"Connected to RabbitMQ at {self.options.url}")
            return self._connection

    async def get_channel(self, on_reconnect: ReconnectHook | None = None) -> BrokerChannel:
        connection = await self.connect()
        channel = RabbitChannel(await connection.channel())
        if on_reconnect is not None:
            await on_reconnect(channel)
            self._hooks.append((channel, on_reconnect))
        return channel

    async def close(self) -> None:
        for task in list(self._reconnect_tasks):
            task.cancel()
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("RabbitMQ connection closed")

    def _on_connection_reconnect(self, _connection: Any) -> None:
        logger.info(f"Reconnected to RabbitMQ at {self.options.url}, re-asserting topology")
        for channel, hook in self._hooks:
            task = asyncio.create_task(self._rerun_hook(channel, hook))
            self._reconnect_tasks.add(task)
            task.add_done_callback(self._reconnect_tasks.discard)

    async def _rerun_hook(self, channel: RabbitChannel, hook: ReconnectHook) -> None:
        try:
            await hook(channel)
        except Exception:
            logger.exception("Failed to re-assert topology after reconnect")
