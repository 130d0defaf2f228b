"""Exception hierarchy for rabbit-communications.

Configuration errors are raised synchronously from constructors and
registration methods. Startup errors are raised from ``start()``.
Listener failures never surface here: they are logged and the message is
negatively acknowledged.
"""

from __future__ import annotations


class RabbitCommunicationsError(Exception):
    """Base class for all library errors."""


class ConfigurationError(RabbitCommunicationsError, ValueError):
    """Invalid endpoint or manager configuration."""


class ChannelDisabledError(ConfigurationError):
    """Operation requires a communication channel that is disabled."""


class StartupError(RabbitCommunicationsError, RuntimeError):
    """Endpoint cannot start with its current registrations."""


class UnknownCommunicatorError(RabbitCommunicationsError, KeyError):
    """No communicator registered under the requested name."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0]) if self.args else ""


class NoListenerError(RabbitCommunicationsError, LookupError):
    """An inbound message has no listener able to handle it."""


class MiddlewareError(RabbitCommunicationsError, RuntimeError):
    """Misuse of the middleware continuation."""


class AskTimeoutError(RabbitCommunicationsError, TimeoutError):
    """No reply arrived for an ask request within its timeout."""

    def __init__(
        self,
        message_id: str,
        timeout: float,
        subject: str | None = None,
    ) -> None:
        self.message_id = message_id
        self.timeout = timeout
        self.subject = subject
        super().__init__(
            f"Ask {message_id} (subject={subject!r}) was not answered within {timeout} seconds"
        )


class AskCancelledError(RabbitCommunicationsError):
    """Pending ask was cancelled before a reply arrived."""
