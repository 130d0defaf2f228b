"""Base class for Service and Communicator endpoints.

Provides:
- Broker client creation when only options were configured
- Topology assertion (exchange, queue, binding) for one queue
- The acknowledgment policy shared by both roles
- A one-shot "started" signal that publishers wait on
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from .broker.base import BrokerChannel, BrokerClient
from .broker.rabbitmq import RabbitClient
from .config import EndpointSettings
from .envelope import Envelope
from .errors import ConfigurationError
from .topology import Topology

logger = logging.getLogger(__name__)


class BaseEndpoint(ABC):
    """Common lifecycle and delivery handling of both endpoint roles."""

    settings: EndpointSettings

    def __init__(self, settings: EndpointSettings, topology: Topology) -> None:
        self.settings = settings
        self.topology = topology
        self.rabbit_client: BrokerClient | None = settings.rabbit_client
        self.input_channel: BrokerChannel | None = None
        self.output_channel: BrokerChannel | None = None
        self._started = asyncio.Event()
        self._start_lock = asyncio.Lock()

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    @property
    def metadata(self) -> dict[str, Any]:
        """Default metadata attached to every outgoing message."""
        return self.settings.metadata

    @property
    def is_input_enabled(self) -> bool:
        return self.settings.is_input_enabled

    @property
    def is_output_enabled(self) -> bool:
        return self.settings.is_output_enabled

    @property
    def should_discard_messages(self) -> bool:
        return self.settings.should_discard_messages

    @property
    def input_queue_name(self) -> str:
        return self.topology.input_queue

    @property
    def output_queue_name(self) -> str:
        return self.topology.output_queue

    @property
    def is_started(self) -> bool:
        return self._started.is_set()

    async def wait_started(self) -> None:
        """Block until ``start()`` has completed."""
        await self._started.wait()

    async def start(self) -> None:
        """Bind queues and start consuming. Repeated calls are no-ops."""
        async with self._start_lock:
            if self._started.is_set():
                return
            self._ensure_client()
            await self._start()
            self._started.set()

    @abstractmethod
    async def _start(self) -> None:
        """Role-specific channel setup."""

    @abstractmethod
    async def _dispatch(self, envelope: Envelope, message: Any, channel: BrokerChannel) -> None:
        """Route one inbound envelope. Raising means the delivery failed."""

    @abstractmethod
    def _default_app_name(self) -> str:
        """Connection name used when the endpoint creates its own client."""

    def _ensure_client(self) -> BrokerClient:
        if self.rabbit_client is None:
            options = self.settings.rabbit_options
            if options is None:
                raise ConfigurationError(
                    f"{self!r} has neither a rabbit_client nor rabbit_options"
                )
            if not options.app_name:
                options = options.model_copy(update={"app_name": self._default_app_name()})
            self.rabbit_client = RabbitClient(options)
        return self.rabbit_client

    async def _open_channel(
        self,
        queue: str,
        message_ttl: int | None = None,
        consume: bool = False,
    ) -> BrokerChannel:
        """Open a channel whose setup asserts ``queue`` (and consumes it).

        The setup runs again on every reconnect of the underlying client.
        """
        client = self._ensure_client()

        async def setup(channel: BrokerChannel) -> None:
            await channel.assert_exchange(self.topology.exchange, self.topology.exchange_type)
            await channel.assert_queue(queue, message_ttl=message_ttl)
            await channel.bind_queue(queue, self.topology.exchange, self.topology.binding_key(queue))
            if consume:
                await channel.consume(queue, self._on_delivery)

        return await client.get_channel(on_reconnect=setup)

    async def _on_delivery(self, message: Any, channel: BrokerChannel, payload: Any) -> None:
        """Run dispatch, then ack on success or nack on failure.

        A body that cannot be read as an envelope is never requeued.
        """
        try:
            envelope = Envelope.from_wire(payload)
        except ValueError:
            logger.exception(f"{self!r} received an unreadable message (discarding)")
            await channel.nack(message, False, False)
            return

        try:
            await self._dispatch(envelope, message, channel)
        except Exception:
            requeue = not self.should_discard_messages
            logger.exception(
                f"{self!r} failed to handle message "
                f"({'requeueing' if requeue else 'discarding'})"
            )
            await channel.nack(message, False, requeue)
            return
        await channel.ack(message)

    async def _publish(self, queue: str, envelope: Envelope) -> None:
        """Publish to one of the endpoint's queues once started.

        Each queue is always published through the channel that asserted it.
        """
        await self.wait_started()
        channel = self.input_channel if queue == self.input_queue_name else self.output_channel
        if channel is None:
            raise RuntimeError(f"{self!r} has no channel for {queue}")
        await channel.publish(self.topology.exchange, self.topology.binding_key(queue), envelope.to_wire())
        logger.debug(f"Published to {queue}: metadata={envelope.metadata}")
