"""Communicator: the endpoint that connects to a Service from outside.

A Communicator publishes into the target Service's input queue and
consumes the Service's output queue. Besides fire-and-forget ``send`` it
supports ``ask``: a request tagged with a fresh ``messageId`` whose reply
(a message carrying ``isReplyTo``) is routed back to the caller instead
of the output listener.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .broker.base import BrokerChannel
from .config import CommunicatorSettings, load_settings
from .context import ListenerContext
from .envelope import Envelope, MessageKind, new_message_id
from .endpoint import BaseEndpoint
from .errors import ChannelDisabledError, ConfigurationError, NoListenerError, StartupError
from .middleware import Listener, maybe_await
from .pending import PendingAskTable
from .topology import Topology

if TYPE_CHECKING:
    from .manager import CommunicationsManager

logger = logging.getLogger(__name__)


class Communicator(BaseEndpoint):
    """Peer endpoint of the Service named ``target_service_name``.

    Args:
        target_service_name: Name of the Service to talk to
        **options: Any CommunicatorSettings field: rabbit_client,
            rabbit_options, namespace, metadata, is_input_enabled,
            is_output_enabled, should_discard_messages, output_message_ttl,
            ask_timeout, manager

    Raises:
        ConfigurationError: If the settings are invalid
    """

    settings: CommunicatorSettings

    def __init__(self, target_service_name: str | None = None, **options: Any) -> None:
        settings = load_settings(
            CommunicatorSettings,
            {"target_service_name": target_service_name, **options},
        )
        super().__init__(settings, Topology(settings.namespace, settings.target_service_name))
        self.output_listener: Listener | None = None
        self._pending = PendingAskTable()

    def __repr__(self) -> str:
        return f"Communicator({self.target_service_name!r}, namespace={self.namespace!r})"

    @property
    def target_service_name(self) -> str:
        return self.settings.target_service_name

    @property
    def manager(self) -> CommunicationsManager | None:
        return self.settings.manager

    @property
    def ask_timeout(self) -> float:
        return self.settings.ask_timeout

    @property
    def pending_asks(self) -> PendingAskTable:
        return self._pending

    def add_output_listener(self, fn: Listener) -> None:
        """Set the listener for messages on the service's output queue."""
        if not self.is_output_enabled:
            raise ConfigurationError(
                "Service output channel is disabled, therefore output listener would never be called"
            )
        self.output_listener = fn

    async def send(self, data: Any, metadata: dict[str, Any] | None = None) -> None:
        """Publish ``data`` to the service's input queue.

        Waits for ``start()`` to complete if it has not yet.
        """
        if not self.is_input_enabled:
            raise ChannelDisabledError("Service input channel is disabled, can not send message")
        await self._publish(self.input_queue_name, Envelope.build(data, self.metadata, metadata))

    async def ask(
        self,
        subject: str,
        data: Any,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Envelope:
        """Send an ask request and wait for the service's reply.

        Args:
            subject: Ask listener to invoke on the service
            data: Request payload
            metadata: Extra request metadata
            timeout: Seconds to wait (defaults to ``ask_timeout``)

        Returns:
            The reply envelope (``.data`` and ``.metadata``)

        Raises:
            AskTimeoutError: If no reply arrives in time
        """
        if not (self.is_input_enabled and self.is_output_enabled):
            raise ChannelDisabledError(
                "Both input and output channels must be enabled to ask the service"
            )
        await self.wait_started()

        message_id = new_message_id()
        request = Envelope.ask_request(
            subject, data, {**self.metadata, **(metadata or {})}, message_id=message_id
        )
        future = self._pending.register(
            message_id,
            timeout if timeout is not None else self.ask_timeout,
            subject=subject,
        )
        try:
            await self._publish(self.input_queue_name, request)
            return await future
        finally:
            self._pending.discard(message_id)

    async def close(self) -> None:
        """Fail every pending ask with AskCancelledError."""
        cancelled = self._pending.cancel_all()
        if cancelled:
            logger.info(f"{self!r} cancelled {cancelled} pending asks")

    async def _start(self) -> None:
        if self.is_output_enabled and self.output_listener is None:
            raise StartupError("Service output is enabled but no listener is provided")

        if self.is_input_enabled:
            self.input_channel = await self._open_channel(self.input_queue_name)

        if self.is_output_enabled:
            self.output_channel = await self._open_channel(
                self.output_queue_name,
                message_ttl=self.settings.output_message_ttl,
                consume=True,
            )

        logger.info(
            f'Communicator for service "{self.target_service_name}" started '
            f"(input: {'enabled' if self.is_input_enabled else 'DISABLED'}, "
            f"output: {'enabled' if self.is_output_enabled else 'DISABLED'})"
        )

    def _default_app_name(self) -> str:
        return f"{self.target_service_name}-communicator"

    async def _dispatch(self, envelope: Envelope, message: Any, channel: BrokerChannel) -> None:
        if envelope.kind is MessageKind.ASK_REPLY:
            reply_to = envelope.is_reply_to
            if not self._pending.resolve(reply_to, envelope):
                logger.warning(
                    f"{self!r} dropped reply to unknown or expired ask {reply_to}"
                )
            return

        if self.output_listener is None:
            raise NoListenerError(f"{self!r} has no output listener")
        ctx = ListenerContext.create(envelope, self, message=message, channel=channel)
        await maybe_await(self.output_listener(ctx))
