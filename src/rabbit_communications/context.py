"""Per-message context handed to listeners and middleware."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .envelope import IS_REPLY_TO, Envelope, MessageKind

if TYPE_CHECKING:
    from .communicator import Communicator
    from .service import Service

SendFn = Callable[[Any, dict[str, Any] | None], Awaitable[Any]]


@dataclass(frozen=True)
class Responder:
    """Reply capability bound to the endpoint that received a message.

    Correlation metadata is fixed when the context is built: replying to an
    ask request always carries ``isReplyTo`` with the request's id, and
    callers cannot override it.
    """

    send: SendFn
    correlation: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_envelope(cls, send: SendFn, envelope: Envelope) -> Responder:
        if envelope.kind is MessageKind.ASK_REQUEST and envelope.message_id is not None:
            return cls(send=send, correlation={IS_REPLY_TO: envelope.message_id})
        return cls(send=send)

    async def reply(self, data: Any, metadata: dict[str, Any] | None = None) -> Any:
        merged = {**(metadata or {}), **self.correlation}
        return await self.send(data, merged)


@dataclass(frozen=True)
class ListenerContext:
    """Everything a listener needs to handle one inbound message.

    Attributes:
        data: Application payload
        metadata: Envelope metadata
        message: Raw broker message (for ack-level introspection)
        channel: Broker channel the message arrived on
        endpoint: The Service or Communicator that received the message
        responder: Bound reply capability
    """

    data: Any
    metadata: dict[str, Any]
    message: Any
    channel: Any
    endpoint: Service | Communicator
    responder: Responder
    envelope: Envelope

    @classmethod
    def create(
        cls,
        envelope: Envelope,
        endpoint: Service | Communicator,
        message: Any = None,
        channel: Any = None,
    ) -> ListenerContext:
        return cls(
            data=envelope.data,
            metadata=envelope.metadata,
            message=message,
            channel=channel,
            endpoint=endpoint,
            responder=Responder.for_envelope(endpoint.send, envelope),
            envelope=envelope,
        )

    @property
    def kind(self) -> MessageKind:
        return self.envelope.kind

    @property
    def subject(self) -> str | None:
        return self.envelope.subject

    @property
    def message_id(self) -> str | None:
        return self.envelope.message_id

    @property
    def service(self) -> Service | None:
        from .service import Service

        return self.endpoint if isinstance(self.endpoint, Service) else None

    @property
    def communicator(self) -> Communicator | None:
        from .communicator import Communicator

        return self.endpoint if isinstance(self.endpoint, Communicator) else None

    async def reply(self, data: Any, metadata: dict[str, Any] | None = None) -> Any:
        """Send ``data`` back through the receiving endpoint."""
        return await self.responder.reply(data, metadata)
