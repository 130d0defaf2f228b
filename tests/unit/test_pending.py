"""Tests for the pending-ask table."""

from __future__ import annotations

import asyncio

import pytest

from rabbit_communications.errors import AskCancelledError, AskTimeoutError
from rabbit_communications.pending import PendingAskTable


class TestPendingAskTable:
    """Entries settle exactly once and never outlive settlement."""

    @pytest.mark.asyncio
    async def test_resolve(self):
        table = PendingAskTable()
        future = table.register("m1", timeout=1.0)

        assert "m1" in table
        assert table.resolve("m1", "reply") is True
        assert await future == "reply"
        assert "m1" not in table
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_timeout_rejects_and_removes(self):
        table = PendingAskTable()
        future = table.register("m1", timeout=0.01, subject="sum")

        with pytest.raises(AskTimeoutError) as exc_info:
            await future

        assert exc_info.value.message_id == "m1"
        assert exc_info.value.subject == "sum"
        assert "m1" not in table

    @pytest.mark.asyncio
    async def test_reply_after_timeout_is_unmatched(self):
        table = PendingAskTable()
        future = table.register("m1", timeout=0.01)

        with pytest.raises(AskTimeoutError):
            await future

        assert table.resolve("m1", "late") is False

    @pytest.mark.asyncio
    async def test_resolve_cancels_timer(self):
        table = PendingAskTable()
        future = table.register("m1", timeout=0.02)
        table.resolve("m1", "fast")

        await asyncio.sleep(0.05)

        assert future.result() == "fast"

    @pytest.mark.asyncio
    async def test_second_resolve_is_noop(self):
        table = PendingAskTable()
        future = table.register("m1", timeout=1.0)

        assert table.resolve("m1", "first") is True
        assert table.resolve("m1", "second") is False
        assert await future == "first"

    @pytest.mark.asyncio
    async def test_unknown_id(self):
        table = PendingAskTable()
        assert table.resolve("nope", "x") is False

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self):
        table = PendingAskTable()
        table.register("m1", timeout=1.0)

        with pytest.raises(ValueError, match="already pending"):
            table.register("m1", timeout=1.0)

        table.discard("m1")

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        table = PendingAskTable()
        futures = [table.register(f"m{i}", timeout=1.0) for i in range(3)]

        assert table.cancel_all() == 3
        assert len(table) == 0
        for future in futures:
            with pytest.raises(AskCancelledError):
                await future

    @pytest.mark.asyncio
    async def test_discard_cancels_future(self):
        table = PendingAskTable()
        future = table.register("m1", timeout=1.0)

        table.discard("m1")

        assert future.cancelled()
        assert table.pending_ids() == []
