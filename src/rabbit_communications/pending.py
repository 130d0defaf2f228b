"""Table of ask requests waiting for their reply.

Each entry settles exactly once: a matching reply resolves it, the timeout
rejects it, and whichever comes first removes the entry and cancels the
other path. A reply arriving after removal is reported as unmatched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .errors import AskCancelledError, AskTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class PendingAsk:
    """An ask request waiting for its reply."""

    message_id: str
    future: asyncio.Future[Any]
    deadline: float
    timeout: float
    subject: str | None = None
    timer: asyncio.TimerHandle | None = None


class PendingAskTable:
    """Maps correlation ids to futures settled by replies or timeouts.

    All mutation happens on the event loop thread (consumer callbacks,
    timer callbacks and the public API), so settling and removing an entry
    is atomic with respect to the competing path.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingAsk] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def register(
        self,
        message_id: str,
        timeout: float,
        subject: str | None = None,
    ) -> asyncio.Future[Any]:
        """Create a pending entry and arm its timeout.

        Returns:
            Future resolved with the reply, or failed with AskTimeoutError
        """
        if message_id in self._pending:
            raise ValueError(f"Ask {message_id} is already pending")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        pending = PendingAsk(
            message_id=message_id,
            future=future,
            deadline=loop.time() + timeout,
            timeout=timeout,
            subject=subject,
        )
        pending.timer = loop.call_later(timeout, self._expire, message_id)
        self._pending[message_id] = pending
        logger.debug(f"Registered ask {message_id} (subject={subject!r}, timeout={timeout}s)")
        return future

    def resolve(self, message_id: str, value: Any) -> bool:
        """Settle an entry with a reply.

        Returns:
            True if the reply matched a pending ask, False otherwise
        """
        pending = self._pop(message_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(value)
        return True

    def reject(self, message_id: str, error: BaseException) -> bool:
        """Fail an entry with ``error``."""
        pending = self._pop(message_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(error)
        return True

    def discard(self, message_id: str) -> None:
        """Remove an entry without settling it (the caller owns the future)."""
        pending = self._pop(message_id)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def cancel_all(self) -> int:
        """Fail every pending ask with AskCancelledError.

        Returns:
            Number of asks cancelled
        """
        count = 0
        for message_id in list(self._pending):
            if self.reject(message_id, AskCancelledError(f"Ask {message_id} was cancelled")):
                count += 1
        return count

    def _pop(self, message_id: str) -> PendingAsk | None:
        pending = self._pending.pop(message_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, message_id: str) -> None:
        pending = self._pending.get(message_id)
        if pending is None:
            return
        logger.warning(f"Ask {message_id} timed out after {pending.timeout}s")
        self.reject(
            message_id,
            AskTimeoutError(message_id, pending.timeout, subject=pending.subject),
        )
