"""In-memory broker for tests and local runs.

Implements the BrokerClient/BrokerChannel protocol without a server,
with the delivery semantics endpoints rely on:

- direct exchanges route by exact binding key; unroutable messages drop
- each delivery runs as its own task, so handlers for distinct messages
  of one queue may be in flight at the same time
- consumers of one queue receive messages round-robin
- nack with requeue puts the message back with ``redelivered=True``
- payloads are JSON round-tripped, as they would be on the wire

Usage:
    broker = InMemoryBroker()
    service = Service(name="billing", rabbit_client=broker)
    ...
    await broker.join()  # wait until every delivery is settled
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any

from .base import ConsumeHandler, ReconnectHook

logger = logging.getLogger(__name__)


@dataclass
class MemoryMessage:
    """A message as delivered to a consumer."""

    delivery_tag: int
    queue: str
    exchange: str
    routing_key: str
    body: str
    redelivered: bool = False

    def decode(self) -> Any:
        return json.loads(self.body)


@dataclass
class _Consumer:
    channel: MemoryChannel
    handler: ConsumeHandler


@dataclass
class _MemoryQueue:
    name: str
    message_ttl: int | None = None
    ready: deque[MemoryMessage] = field(default_factory=deque)
    unacked: dict[int, MemoryMessage] = field(default_factory=dict)
    consumers: list[_Consumer] = field(default_factory=list)
    next_consumer: int = 0


class MemoryChannel:
    """BrokerChannel implementation backed by an InMemoryBroker."""

    def __init__(self, broker: InMemoryBroker, on_reconnect: ReconnectHook | None = None) -> None:
        self.broker = broker
        self.on_reconnect = on_reconnect
        self._consumed: set[str] = set()

    async def assert_exchange(self, name: str, exchange_type: str = "direct") -> None:
        if exchange_type != "direct":
            raise ValueError(f"Unsupported exchange type: {exchange_type}")
        self.broker._exchanges.setdefault(name, exchange_type)

    async def assert_queue(self, name: str, message_ttl: int | None = None) -> None:
        if name not in self.broker._queues:
            self.broker._queues[name] = _MemoryQueue(name=name, message_ttl=message_ttl)

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        if exchange not in self.broker._exchanges:
            raise LookupError(f"No exchange '{exchange}'")
        if queue not in self.broker._queues:
            raise LookupError(f"No queue '{queue}'")
        self.broker._bindings[exchange][routing_key].add(queue)

    async def consume(self, queue: str, handler: ConsumeHandler) -> None:
        if queue in self._consumed:
            return
        target = self.broker._queues.get(queue)
        if target is None:
            raise LookupError(f"No queue '{queue}'")
        self._consumed.add(queue)
        target.consumers.append(_Consumer(channel=self, handler=handler))
        self.broker._dispatch(target)

    async def publish(self, exchange: str, routing_key: str, payload: Any) -> None:
        self.broker._route(exchange, routing_key, json.dumps(payload))

    async def ack(self, message: MemoryMessage) -> None:
        self.broker._settle(message)
        self.broker.acked.append(message)

    async def nack(self, message: MemoryMessage, multiple: bool = False, requeue: bool = True) -> None:
        queue = self.broker._settle(message)
        self.broker.nacked.append(message)
        if requeue:
            message.redelivered = True
            queue.ready.append(message)
            self.broker._dispatch(queue)

    def _drop_consumers(self) -> None:
        for queue in self.broker._queues.values():
            queue.consumers = [c for c in queue.consumers if c.channel is not self]
        self._consumed.clear()


class InMemoryBroker:
    """Broker client keeping exchanges, queues and deliveries in memory."""

    url = "memory://"

    def __init__(self) -> None:
        self._exchanges: dict[str, str] = {}
        self._queues: dict[str, _MemoryQueue] = {}
        self._bindings: dict[str, dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))
        self._channels: list[MemoryChannel] = []
        self._tags = itertools.count(1)
        self._in_flight: set[asyncio.Task[None]] = set()
        self.published: list[tuple[str, str, Any]] = []
        self.acked: list[MemoryMessage] = []
        self.nacked: list[MemoryMessage] = []

    @property
    def exchange_names(self) -> set[str]:
        return set(self._exchanges)

    @property
    def queue_names(self) -> set[str]:
        return set(self._queues)

    def bindings(self, exchange: str) -> dict[str, set[str]]:
        """Routing key -> bound queues for ``exchange``."""
        return {key: set(queues) for key, queues in self._bindings.get(exchange, {}).items()}

    def queue_depth(self, queue: str) -> int:
        """Messages waiting for delivery on ``queue``."""
        return len(self._queues[queue].ready)

    async def get_channel(self, on_reconnect: ReconnectHook | None = None) -> MemoryChannel:
        channel = MemoryChannel(self, on_reconnect)
        if on_reconnect is not None:
            await on_reconnect(channel)
        self._channels.append(channel)
        return channel

    async def close(self) -> None:
        for task in list(self._in_flight):
            task.cancel()
        self._channels.clear()

    async def simulate_reconnect(self) -> None:
        """Drop every consumer and unacked delivery, then re-run channel hooks.

        Mirrors a connection loss: unacknowledged messages go back to their
        queues flagged as redelivered.
        """
        for channel in self._channels:
            channel._drop_consumers()
        for queue in self._queues.values():
            for message in queue.unacked.values():
                message.redelivered = True
                queue.ready.appendleft(message)
            queue.unacked.clear()
        for channel in self._channels:
            if channel.on_reconnect is not None:
                await channel.on_reconnect(channel)

    async def join(self, timeout: float = 5.0) -> None:
        """Wait until no delivery is in flight and consumed queues are empty."""
        async with asyncio.timeout(timeout):
            while True:
                if self._in_flight:
                    await asyncio.gather(*list(self._in_flight), return_exceptions=True)
                    continue
                if any(q.ready and q.consumers for q in self._queues.values()):
                    await asyncio.sleep(0)
                    continue
                # let callbacks scheduled by settled handlers run
                await asyncio.sleep(0)
                if not self._in_flight:
                    return

    def _route(self, exchange: str, routing_key: str, body: str) -> None:
        if exchange not in self._exchanges:
            raise LookupError(f"No exchange '{exchange}'")
        self.published.append((exchange, routing_key, json.loads(body)))
        queues = self._bindings[exchange].get(routing_key, set())
        if not queues:
            logger.debug(f"Dropped unroutable message {exchange}/{routing_key}")
        for name in queues:
            queue = self._queues[name]
            queue.ready.append(
                MemoryMessage(
                    delivery_tag=next(self._tags),
                    queue=name,
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                )
            )
            self._dispatch(queue)

    def _dispatch(self, queue: _MemoryQueue) -> None:
        while queue.ready and queue.consumers:
            message = queue.ready.popleft()
            consumer = queue.consumers[queue.next_consumer % len(queue.consumers)]
            queue.next_consumer += 1
            queue.unacked[message.delivery_tag] = message
            task = asyncio.create_task(self._deliver(consumer, message))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _deliver(self, consumer: _Consumer, message: MemoryMessage) -> None:
        try:
            await consumer.handler(message, consumer.channel, message.decode())
        except Exception:
            logger.exception(f"Consumer of {message.queue} raised")

    def _settle(self, message: MemoryMessage) -> _MemoryQueue:
        queue = self._queues[message.queue]
        if queue.unacked.pop(message.delivery_tag, None) is None:
            raise RuntimeError(f"Unknown delivery tag {message.delivery_tag} on {message.queue}")
        return queue
