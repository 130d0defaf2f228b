"""Service: the endpoint that owns a named entity's queues.

A Service consumes its input queue and publishes to its output queue.
Communicators elsewhere do the opposite, so every exchange between them
flows through exactly two queues:

    Communicator --send/ask--> {namespace}:{name}:input  --> Service
    Communicator <---------- {namespace}:{name}:output <--send/reply-- Service

Example:
    service = Service(name="billing", rabbit_client=client)

    async def total(ctx):
        await ctx.reply({"total": sum(ctx.data["items"])})

    service.add_ask_listener("total", total)
    await service.start()
"""

from __future__ import annotations

import logging
from typing import Any

from .broker.base import BrokerChannel
from .config import ServiceSettings, load_settings
from .context import ListenerContext
from .envelope import Envelope, MessageKind
from .endpoint import BaseEndpoint
from .errors import ChannelDisabledError, ConfigurationError, NoListenerError, StartupError
from .middleware import Listener, maybe_await
from .topology import Topology

logger = logging.getLogger(__name__)


class Service(BaseEndpoint):
    """Owner endpoint of ``{namespace}:{name}:input`` and ``:output``.

    Args:
        name: Service name (part of both queue names)
        **options: Any ServiceSettings field: rabbit_client, rabbit_options,
            namespace, metadata, is_input_enabled, is_output_enabled,
            should_discard_messages, output_message_ttl

    Raises:
        ConfigurationError: If the settings are invalid
    """

    settings: ServiceSettings

    def __init__(self, name: str | None = None, **options: Any) -> None:
        settings = load_settings(ServiceSettings, {"name": name, **options})
        super().__init__(settings, Topology(settings.namespace, settings.name))
        self.input_listener: Listener | None = None
        self._ask_listeners: dict[str, Listener] = {}

    def __repr__(self) -> str:
        return f"Service({self.name!r}, namespace={self.namespace!r})"

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def ask_subjects(self) -> list[str]:
        return list(self._ask_listeners)

    def add_input_listener(self, fn: Listener) -> None:
        """Set the listener for plain messages on the input queue."""
        if not self.is_input_enabled:
            raise ConfigurationError(
                "Service input channel is disabled, therefore input listener would never be called"
            )
        self.input_listener = fn

    def add_ask_listener(self, subject: str, fn: Listener) -> None:
        """Set the listener for ask requests with ``subject``.

        Ask listeners answer through ``ctx.reply()``, which needs the
        output channel.
        """
        if not self.is_input_enabled:
            raise ConfigurationError(
                "Service input channel is disabled, therefore ask listeners would never be called"
            )
        if not self.is_output_enabled:
            raise ConfigurationError(
                "Service output channel is disabled, therefore ask listener "
                "will not be able to reply to the incoming message"
            )
        self._ask_listeners[subject] = fn

    async def send(self, data: Any, metadata: dict[str, Any] | None = None) -> None:
        """Publish ``data`` to the output queue.

        Per-call metadata overrides the service's default metadata.
        """
        if not self.is_output_enabled:
            raise ChannelDisabledError("Service output channel is disabled, can not send message")
        await self._publish(self.output_queue_name, Envelope.build(data, self.metadata, metadata))

    async def _start(self) -> None:
        client = self._ensure_client()
        if self.is_input_enabled and self.input_listener is None and not self._ask_listeners:
            raise StartupError("Service input is enabled but no listener is provided")

        if self.is_output_enabled:
            self.output_channel = await self._open_channel(
                self.output_queue_name,
                message_ttl=self.settings.output_message_ttl,
            )

        if self.is_input_enabled:
            self.input_channel = await self._open_channel(self.input_queue_name, consume=True)

        logger.info(
            f'Service "{self.name}" successfully started\n'
            f"  RabbitMQ connection url: {client.url}\n"
            f"  Input queue name: {self.input_queue_name if self.is_input_enabled else 'DISABLED'}\n"
            f"  Output queue name: {self.output_queue_name if self.is_output_enabled else 'DISABLED'}"
        )

    def _default_app_name(self) -> str:
        return self.name

    def _resolve_listener(self, envelope: Envelope) -> Listener:
        if envelope.kind is MessageKind.ASK_REQUEST:
            ask_listener = self._ask_listeners.get(envelope.subject or "")
            if ask_listener is not None:
                return ask_listener
        if self.input_listener is None:
            if envelope.kind is MessageKind.ASK_REQUEST:
                raise NoListenerError(
                    f'Received ask request for subject "{envelope.subject}" but no listener registered'
                )
            raise NoListenerError(f"{self!r} received a message but has no input listener")
        return self.input_listener

    async def _dispatch(self, envelope: Envelope, message: Any, channel: BrokerChannel) -> None:
        listener = self._resolve_listener(envelope)
        ctx = ListenerContext.create(envelope, self, message=message, channel=channel)
        await maybe_await(listener(ctx))
