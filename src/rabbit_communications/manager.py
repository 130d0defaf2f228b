"""CommunicationsManager: a pool of Communicators on one broker client.

The manager is the gateway side of the protocol. It registers one
Communicator per target service, routes ``send``/``ask`` by service name,
broadcasts to every service, and wraps each communicator's output
listener in a middleware chain:

    manager = CommunicationsManager(rabbit_client=client)
    manager.register_communicator("billing", output_listener=on_billing)
    manager.apply_middleware(log_timing)                # every service
    manager.apply_middleware("billing", check_tenant)   # billing only
    await manager.start()

For a message from ``billing`` the chain runs
``log_timing -> check_tenant -> on_billing``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from .broker.base import BrokerClient
from .broker.rabbitmq import RabbitClient
from .communicator import Communicator
from .config import CommunicatorSettings, ManagerSettings, load_settings
from .envelope import Envelope
from .errors import ConfigurationError, UnknownCommunicatorError
from .middleware import Listener, Middleware, as_list, compose

logger = logging.getLogger(__name__)


class CommunicationsManager:
    """Supervises Communicators sharing one broker client.

    Args:
        **options: Any ManagerSettings field: rabbit_client, rabbit_options,
            namespace

    Raises:
        ConfigurationError: If neither a client nor client options are given
    """

    def __init__(self, **options: Any) -> None:
        self.settings = load_settings(ManagerSettings, options)
        self.rabbit_client: BrokerClient = self.settings.rabbit_client or self._create_client()

        self._communicators: dict[str, Communicator] = {}
        self._root_middleware: list[Middleware] = []
        self._scoped_middleware: dict[str, list[Middleware]] = {}
        # terminal listener and installed chain per service
        self._terminal_listeners: dict[str, Listener] = {}
        self._chains: dict[str, Listener] = {}
        self._started = asyncio.Event()
        self._start_lock = asyncio.Lock()

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    @property
    def communicators(self) -> Mapping[str, Communicator]:
        return MappingProxyType(self._communicators)

    @property
    def is_started(self) -> bool:
        return self._started.is_set()

    def is_communicator_registered(self, target_service_name: str) -> bool:
        return target_service_name in self._communicators

    def get_communicator(self, target_service_name: str) -> Communicator:
        communicator = self._communicators.get(target_service_name)
        if communicator is None:
            raise UnknownCommunicatorError(
                f'No communicator registered for service "{target_service_name}"'
            )
        return communicator

    def register_communicator(
        self,
        target_service_name: str,
        options: CommunicatorSettings | dict[str, Any] | None = None,
        output_listener: Listener | None = None,
    ) -> Communicator:
        """Create and store a Communicator for ``target_service_name``.

        The communicator shares the manager's client and namespace.

        Raises:
            ConfigurationError: If the service already has a communicator
        """
        if self.is_communicator_registered(target_service_name):
            raise ConfigurationError(
                f"Communicator for service {target_service_name} is already registered"
            )

        if isinstance(options, CommunicatorSettings):
            values = options.model_dump(exclude_unset=True)
        else:
            values = dict(options or {})
        values.update(
            rabbit_client=self.rabbit_client,
            namespace=self.namespace,
            manager=self,
        )
        values.pop("target_service_name", None)

        communicator = Communicator(target_service_name, **values)
        self._communicators[target_service_name] = communicator

        if callable(output_listener):
            communicator.add_output_listener(output_listener)
        return communicator

    def add_output_listener(self, target_service_name: str, fn: Listener) -> None:
        self.get_communicator(target_service_name).add_output_listener(fn)

    def apply_middleware(self, *args: Any) -> None:
        """Register middleware globally or for specific services.

        Accepted forms:
            apply_middleware(mw)
            apply_middleware([mw1, mw2])
            apply_middleware("billing", mw)
            apply_middleware(["billing", "orders"], [mw1, mw2])
        """
        if len(args) == 1:
            self._root_middleware.extend(as_list(args[0]))
        elif len(args) == 2:
            middleware = as_list(args[1])
            for name in as_list(args[0]):
                self._scoped_middleware.setdefault(name, []).extend(middleware)
        else:
            raise TypeError(f"apply_middleware() takes 1 or 2 arguments ({len(args)} given)")

    def middleware_for(self, target_service_name: str) -> list[Middleware]:
        """Effective middleware list for one service, global first."""
        return [
            *self._root_middleware,
            *self._scoped_middleware.get(target_service_name, []),
        ]

    async def send(
        self,
        target_service_name: str,
        data: Any,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Send ``data`` to one service once the manager has started."""
        await self.wait_started()
        await self.get_communicator(target_service_name).send(data, metadata)

    async def ask(
        self,
        target_service_name: str,
        subject: str,
        data: Any,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Envelope:
        """Ask one service and wait for its reply."""
        await self.wait_started()
        return await self.get_communicator(target_service_name).ask(
            subject, data, metadata, timeout=timeout
        )

    async def broadcast(self, data: Any, metadata: dict[str, Any] | None = None) -> list[Any]:
        """Send ``data`` to every service whose input channel is enabled."""
        await self.wait_started()
        return await asyncio.gather(
            *(
                communicator.send(data, metadata)
                for communicator in self._communicators.values()
                if communicator.is_input_enabled
            )
        )

    async def wait_started(self) -> None:
        await self._started.wait()

    async def start(self) -> None:
        """Install middleware chains and start every communicator concurrently.

        Repeated and concurrent calls are safe. After a failed start, calling
        ``start()`` again rebuilds each chain around the original listener.
        """
        async with self._start_lock:
            if self._started.is_set():
                return

            for name, communicator in self._communicators.items():
                self._install_chain(name, communicator)

            await asyncio.gather(*(c.start() for c in self._communicators.values()))
            self._started.set()
        logger.info(
            f"CommunicationsManager started {len(self._communicators)} communicators "
            f"in namespace {self.namespace!r}"
        )

    async def close(self) -> None:
        """Cancel pending asks of every communicator."""
        await asyncio.gather(*(c.close() for c in self._communicators.values()))

    def _install_chain(self, name: str, communicator: Communicator) -> None:
        current = communicator.output_listener
        if current is None:
            return
        if current is not self._chains.get(name):
            self._terminal_listeners[name] = current
        chain = compose(self.middleware_for(name), self._terminal_listeners[name])
        self._chains[name] = chain
        communicator.output_listener = chain

    def _create_client(self) -> RabbitClient:
        options = self.settings.rabbit_options
        if options is None:
            raise ConfigurationError(
                "CommunicationsManager has neither a rabbit_client nor rabbit_options"
            )
        if not options.app_name:
            options = options.model_copy(
                update={"app_name": f"{self.namespace}-communicator-manager"}
            )
        return RabbitClient(options)
