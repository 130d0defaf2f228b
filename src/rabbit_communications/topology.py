"""Queue and exchange naming.

Both roles derive names from the same ``(namespace, name)`` pair, so a
Service and every Communicator pointed at it agree on the topology
without exchanging any configuration:

    exchange:      {namespace}            (type "direct")
    input queue:   {namespace}:{name}:input
    output queue:  {namespace}:{name}:output

Each queue is bound to the exchange with its own name as the binding key.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_NAMESPACE = "rabbit-communications"
EXCHANGE_TYPE = "direct"


def input_queue_name(namespace: str, name: str) -> str:
    return f"{namespace}:{name}:input"


def output_queue_name(namespace: str, name: str) -> str:
    return f"{namespace}:{name}:output"


@dataclass(frozen=True)
class Topology:
    """Resolved broker names for one endpoint identity."""

    namespace: str
    name: str

    @property
    def exchange(self) -> str:
        return self.namespace

    @property
    def exchange_type(self) -> str:
        return EXCHANGE_TYPE

    @property
    def input_queue(self) -> str:
        return input_queue_name(self.namespace, self.name)

    @property
    def output_queue(self) -> str:
        return output_queue_name(self.namespace, self.name)

    def binding_key(self, queue: str) -> str:
        """Routing key binding ``queue`` to the exchange."""
        return queue
