"""Koa-style middleware composition.

A middleware receives the listener context and a ``next`` continuation
that runs the rest of the chain, terminal listener included:

    async def timing(ctx, next):
        started = time.monotonic()
        await next()
        logger.info(f"handled in {time.monotonic() - started:.3f}s")

Code before ``await next()`` runs in registration order; code after it
runs in reverse order, once everything downstream has finished. A
middleware that never calls ``next`` short-circuits the chain.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import MiddlewareError

if TYPE_CHECKING:
    from .context import ListenerContext

T = TypeVar("T")

Next = Callable[[], Awaitable[Any]]
Listener = Callable[["ListenerContext"], Awaitable[Any] | Any]
Middleware = Callable[["ListenerContext", Next], Awaitable[Any] | Any]


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, so sync callables are accepted."""
    if inspect.isawaitable(value):
        return await value
    return value


def as_list(value: T | Iterable[T]) -> list[T]:
    """Normalize a single item or a list/tuple of items to a list."""
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]  # type: ignore[list-item]


def _link(middleware: Middleware, downstream: Listener) -> Listener:
    async def handle(ctx: ListenerContext) -> Any:
        called = False

        async def next_() -> Any:
            nonlocal called
            if called:
                raise MiddlewareError("next() called multiple times")
            called = True
            return await maybe_await(downstream(ctx))

        return await maybe_await(middleware(ctx, next_))

    return handle


def compose(middlewares: Sequence[Middleware], terminal: Listener) -> Listener:
    """Fold ``middlewares`` around ``terminal`` into a single listener."""
    chain: Listener = terminal
    for middleware in reversed(middlewares):
        chain = _link(middleware, chain)

    if chain is terminal:

        async def handle(ctx: ListenerContext) -> Any:
            return await maybe_await(terminal(ctx))

        return handle
    return chain
