"""Broker client protocol required by endpoints.

Endpoints never talk to a broker library directly. They depend on this
small surface, which the RabbitMQ client and the in-memory broker both
implement:

- ``get_channel(on_reconnect)`` opens a channel and runs ``on_reconnect``
  on it now and after every reconnect, so topology and consumers are
  re-established by the same code that created them
- channel operations are idempotent; asserting an existing exchange or
  queue and re-binding are safe to repeat
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

# handler(raw_message, channel, decoded_body)
ConsumeHandler = Callable[[Any, "BrokerChannel", Any], Awaitable[None]]
ReconnectHook = Callable[["BrokerChannel"], Awaitable[None]]


@runtime_checkable
class BrokerChannel(Protocol):
    """A channel with the operations endpoints need."""

    async def assert_exchange(self, name: str, exchange_type: str = "direct") -> None:
        """Declare an exchange if it does not exist."""
        ...

    async def assert_queue(self, name: str, message_ttl: int | None = None) -> None:
        """Declare a queue if it does not exist.

        Args:
            name: Queue name
            message_ttl: Per-queue message TTL in milliseconds
        """
        ...

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        """Bind ``queue`` to ``exchange`` with ``routing_key``."""
        ...

    async def consume(self, queue: str, handler: ConsumeHandler) -> None:
        """Start delivering messages from ``queue`` to ``handler``.

        Messages are delivered unacknowledged; the handler must ack or nack.
        """
        ...

    async def publish(self, exchange: str, routing_key: str, payload: Any) -> None:
        """Encode and publish ``payload``."""
        ...

    async def ack(self, message: Any) -> None:
        ...

    async def nack(self, message: Any, multiple: bool = False, requeue: bool = True) -> None:
        ...


@runtime_checkable
class BrokerClient(Protocol):
    """A connection factory handing out self-healing channels."""

    @property
    def url(self) -> str:
        """Broker URL (for logging)."""
        ...

    async def get_channel(self, on_reconnect: ReconnectHook | None = None) -> BrokerChannel:
        """Open a channel and run ``on_reconnect`` on it.

        ``on_reconnect`` runs again on the fresh channel after every
        reconnect of the underlying connection.
        """
        ...

    async def close(self) -> None:
        ...
