"""Broker clients.

- ``RabbitClient``: RabbitMQ via aio-pika
- ``InMemoryBroker``: same protocol, no server (tests, local runs)
"""

from .base import BrokerChannel, BrokerClient, ConsumeHandler, ReconnectHook
from .memory import InMemoryBroker, MemoryChannel, MemoryMessage
from .rabbitmq import RabbitChannel, RabbitClient

__all__ = [
    "BrokerChannel",
    "BrokerClient",
    "ConsumeHandler",
    "ReconnectHook",
    "InMemoryBroker",
    "MemoryChannel",
    "MemoryMessage",
    "RabbitChannel",
    "RabbitClient",
]
