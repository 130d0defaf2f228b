"""Service-to-service messaging conventions on top of RabbitMQ.

Key concepts:
- Service: owns ``{namespace}:{name}:input`` / ``:output`` queues
- Communicator: talks to a Service from outside (send, ask, output listener)
- CommunicationsManager: a pool of Communicators with koa-style middleware
- Ask: request/response correlated by ``messageId`` / ``isReplyTo``
"""

from .broker import InMemoryBroker, RabbitClient
from .communicator import Communicator
from .config import (
    CommunicatorSettings,
    ManagerSettings,
    RabbitOptions,
    ServiceSettings,
)
from .context import ListenerContext, Responder
from .envelope import Envelope, MessageKind
from .errors import (
    AskCancelledError,
    AskTimeoutError,
    ChannelDisabledError,
    ConfigurationError,
    MiddlewareError,
    NoListenerError,
    RabbitCommunicationsError,
    StartupError,
    UnknownCommunicatorError,
)
from .manager import CommunicationsManager
from .middleware import compose
from .pending import PendingAskTable
from .service import Service
from .topology import DEFAULT_NAMESPACE, Topology

__all__ = [
    "AskCancelledError",
    "AskTimeoutError",
    "ChannelDisabledError",
    "CommunicationsManager",
    "Communicator",
    "CommunicatorSettings",
    "ConfigurationError",
    "DEFAULT_NAMESPACE",
    "Envelope",
    "InMemoryBroker",
    "ListenerContext",
    "ManagerSettings",
    "MessageKind",
    "MiddlewareError",
    "NoListenerError",
    "PendingAskTable",
    "RabbitClient",
    "RabbitCommunicationsError",
    "RabbitOptions",
    "Responder",
    "Service",
    "ServiceSettings",
    "StartupError",
    "Topology",
    "UnknownCommunicatorError",
    "compose",
]
