"""Message envelope exchanged over the broker.

Every message on the wire is a JSON object with two keys:

    {
        "metadata": {"messageId": "msg_abc123", "ask": true, "subject": "sum"},
        "data": {"numbers": [1, 2, 3]}
    }

Metadata is free-form. Four keys are reserved for request/response
correlation:

- ``messageId``: id of the message, generated for every ask request
- ``ask``: marks a request that expects a reply
- ``subject``: selects the ask listener on the receiving Service
- ``isReplyTo``: ``messageId`` of the ask request this message answers
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

MESSAGE_ID = "messageId"
ASK = "ask"
SUBJECT = "subject"
IS_REPLY_TO = "isReplyTo"


def new_message_id() -> str:
    """Generate a correlation id for an outgoing ask."""
    return f"msg_{uuid.uuid4().hex[:12]}"


class MessageKind(str, Enum):
    """Routing class of an inbound envelope."""

    PLAIN = "plain"
    ASK_REQUEST = "ask_request"
    ASK_REPLY = "ask_reply"


class Envelope(BaseModel):
    """Application payload plus metadata."""

    metadata: dict[str, Any] = Field(default_factory=dict)
    data: Any = None

    @property
    def message_id(self) -> str | None:
        return self.metadata.get(MESSAGE_ID)

    @property
    def subject(self) -> str | None:
        return self.metadata.get(SUBJECT)

    @property
    def is_reply_to(self) -> str | None:
        return self.metadata.get(IS_REPLY_TO)

    @property
    def is_ask(self) -> bool:
        return bool(self.metadata.get(ASK))

    @property
    def kind(self) -> MessageKind:
        """Classify the envelope by the shape of its metadata.

        A reply is recognised first: replies may echo arbitrary metadata
        of the request, including ``ask`` and ``subject``.
        """
        if self.is_reply_to is not None:
            return MessageKind.ASK_REPLY
        if self.is_ask and self.subject is not None:
            return MessageKind.ASK_REQUEST
        return MessageKind.PLAIN

    def to_wire(self) -> dict[str, Any]:
        return {"metadata": dict(self.metadata), "data": self.data}

    @classmethod
    def from_wire(cls, payload: Any) -> Envelope:
        """Build an envelope from a decoded message body.

        Bodies that are not envelopes (published by foreign producers) are
        carried whole as ``data`` with empty metadata. A body is an envelope
        only if it has ``data`` and its ``metadata`` is a mapping or absent.
        """
        if isinstance(payload, Envelope):
            return payload
        if isinstance(payload, dict) and "data" in payload:
            metadata = payload.get("metadata")
            if metadata is None:
                return cls(data=payload["data"])
            if isinstance(metadata, dict):
                return cls(metadata=metadata, data=payload["data"])
        return cls(data=payload)

    @classmethod
    def build(
        cls,
        data: Any,
        *metadata_layers: dict[str, Any] | None,
    ) -> Envelope:
        """Create an envelope merging metadata layers left to right.

        Later layers win on conflicting keys.
        """
        metadata: dict[str, Any] = {}
        for layer in metadata_layers:
            if layer:
                metadata.update(layer)
        return cls(metadata=metadata, data=data)

    @classmethod
    def ask_request(
        cls,
        subject: str,
        data: Any,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> Envelope:
        """Create an ask request envelope with a fresh correlation id."""
        return cls.build(
            data,
            metadata,
            {ASK: True, SUBJECT: subject, MESSAGE_ID: message_id or new_message_id()},
        )
