"""Tests for the Communicator (peer) endpoint."""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from rabbit_communications import (
    AskCancelledError,
    AskTimeoutError,
    ChannelDisabledError,
    Communicator,
    ConfigurationError,
    Service,
    StartupError,
)
from rabbit_communications.envelope import MessageKind


async def started_service(broker, name: str = "svc", **options) -> tuple[Service, list]:
    received: list = []
    service = Service(name, rabbit_client=broker, **options)
    service.add_input_listener(lambda ctx: received.append(ctx.data))
    await service.start()
    return service, received


class TestCommunicatorStart:
    """Startup validation and topology."""

    @pytest.mark.asyncio
    async def test_output_enabled_without_listener_fails(self, broker):
        communicator = Communicator("svc", rabbit_client=broker)

        with pytest.raises(StartupError, match="no listener"):
            await communicator.start()

    @pytest.mark.asyncio
    async def test_derives_same_queues_as_service(self, broker):
        service = Service("svc", rabbit_client=broker, namespace="ns")
        communicator = Communicator("svc", rabbit_client=broker, namespace="ns")

        assert communicator.input_queue_name == service.input_queue_name
        assert communicator.output_queue_name == service.output_queue_name

    @pytest.mark.asyncio
    async def test_creates_queues_before_service_exists(self, broker):
        communicator = Communicator("svc", rabbit_client=broker)
        communicator.add_output_listener(lambda ctx: None)

        await communicator.start()

        assert broker.queue_names == {
            communicator.input_queue_name,
            communicator.output_queue_name,
        }

    @pytest.mark.asyncio
    async def test_output_listener_rejected_when_output_disabled(self, broker):
        communicator = Communicator("svc", rabbit_client=broker, is_output_enabled=False)

        with pytest.raises(ConfigurationError):
            communicator.add_output_listener(lambda ctx: None)

    @pytest.mark.asyncio
    async def test_input_disabled_cannot_send(self, broker):
        communicator = Communicator("svc", rabbit_client=broker, is_input_enabled=False)
        communicator.add_output_listener(lambda ctx: None)
        await communicator.start()

        assert communicator.input_channel is None
        with pytest.raises(ChannelDisabledError):
            await communicator.send("x")


class TestCommunicatorMessaging:
    """Sending to the service and listening to its output."""

    @pytest.mark.asyncio
    async def test_sends_to_service_input(self, broker):
        service, received = await started_service(broker)
        communicator = Communicator(
            "svc", rabbit_client=broker, is_output_enabled=False, metadata={"from": "gw"}
        )
        await communicator.start()

        await communicator.send({"n": 1}, {"trace": "t1"})
        await broker.join()

        assert received == [{"n": 1}]
        _, routing_key, payload = broker.published[-1]
        assert routing_key == service.input_queue_name
        assert payload["metadata"] == {"from": "gw", "trace": "t1"}

    @pytest.mark.asyncio
    async def test_calls_output_listener(self, broker):
        service, _ = await started_service(broker)
        seen = []
        communicator = Communicator("svc", rabbit_client=broker)
        communicator.add_output_listener(lambda ctx: seen.append((ctx.data, ctx.communicator)))
        await communicator.start()

        await service.send("from service")
        await broker.join()

        assert seen == [("from service", communicator)]

    @pytest.mark.asyncio
    async def test_reply_through_context_reaches_service_input(self, broker):
        service, received = await started_service(broker)
        communicator = Communicator("svc", rabbit_client=broker)

        async def answer(ctx):
            await ctx.reply({"ack": ctx.data})

        communicator.add_output_listener(answer)
        await communicator.start()

        await service.send("hello")
        await broker.join()

        assert received == [{"ack": "hello"}]

    @pytest.mark.asyncio
    async def test_output_listener_failure_requeues(self, broker):
        service, _ = await started_service(broker)
        attempts: Counter[str] = Counter()
        communicator = Communicator("svc", rabbit_client=broker)

        async def flaky(ctx):
            attempts[ctx.data] += 1
            if attempts[ctx.data] == 1:
                raise RuntimeError("boom")

        communicator.add_output_listener(flaky)
        await communicator.start()

        await service.send("a")
        await service.send("b")
        await broker.join()

        assert attempts == Counter({"a": 2, "b": 2})

    @pytest.mark.asyncio
    async def test_output_listener_failure_discards(self, broker):
        service, _ = await started_service(broker)
        attempts: Counter[str] = Counter()
        communicator = Communicator("svc", rabbit_client=broker, should_discard_messages=True)

        async def failing(ctx):
            attempts[ctx.data] += 1
            raise RuntimeError("boom")

        communicator.add_output_listener(failing)
        await communicator.start()

        await service.send("a")
        await broker.join()

        assert attempts == Counter({"a": 1})

    @pytest.mark.asyncio
    async def test_send_before_start_waits(self, broker):
        _, received = await started_service(broker)
        communicator = Communicator("svc", rabbit_client=broker, is_output_enabled=False)

        pending = asyncio.create_task(communicator.send("early"))
        await asyncio.sleep(0.01)
        assert not pending.done()

        await communicator.start()
        await pending
        await broker.join()

        assert received == ["early"]


class TestCommunicatorAsk:
    """Request/response correlation."""

    async def ask_setup(self, broker, ask_listener, **options):
        service = Service("svc", rabbit_client=broker)
        service.add_ask_listener("sum", ask_listener)
        await service.start()

        output = []
        communicator = Communicator("svc", rabbit_client=broker, **options)
        communicator.add_output_listener(lambda ctx: output.append(ctx.data))
        await communicator.start()
        return service, communicator, output

    @pytest.mark.asyncio
    async def test_ask_resolves_with_reply(self, broker):
        async def total(ctx):
            await ctx.reply(sum(ctx.data), {"unit": "items"})

        _, communicator, output = await self.ask_setup(broker, total)

        reply = await communicator.ask("sum", [1, 2, 3])

        assert reply.data == 6
        assert reply.metadata["unit"] == "items"
        assert reply.kind is MessageKind.ASK_REPLY
        assert output == []
        assert len(communicator.pending_asks) == 0

    @pytest.mark.asyncio
    async def test_ask_request_metadata(self, broker):
        requests = []

        async def total(ctx):
            requests.append(dict(ctx.metadata))
            await ctx.reply(0)

        _, communicator, _ = await self.ask_setup(broker, total, metadata={"from": "gw"})

        reply = await communicator.ask("sum", [], {"trace": "t1"})

        request = requests[0]
        assert request["ask"] is True
        assert request["subject"] == "sum"
        assert request["from"] == "gw"
        assert request["trace"] == "t1"
        assert reply.metadata["isReplyTo"] == request["messageId"]

    @pytest.mark.asyncio
    async def test_concurrent_asks_correlate(self, broker):
        async def total(ctx):
            await asyncio.sleep(0.001 * (10 - ctx.data[0]))
            await ctx.reply(sum(ctx.data))

        _, communicator, _ = await self.ask_setup(broker, total)

        replies = await asyncio.gather(*(communicator.ask("sum", [i, i]) for i in range(10)))

        assert [r.data for r in replies] == [2 * i for i in range(10)]

    @pytest.mark.asyncio
    async def test_ask_times_out(self, broker):
        async def silent(ctx):
            pass

        _, communicator, _ = await self.ask_setup(broker, silent, ask_timeout=0.05)

        with pytest.raises(AskTimeoutError) as exc_info:
            await communicator.ask("sum", [1])

        assert exc_info.value.subject == "sum"
        assert len(communicator.pending_asks) == 0

    @pytest.mark.asyncio
    async def test_per_call_timeout(self, broker):
        async def silent(ctx):
            pass

        _, communicator, _ = await self.ask_setup(broker, silent)

        with pytest.raises(AskTimeoutError):
            await communicator.ask("sum", [1], timeout=0.02)

    @pytest.mark.asyncio
    async def test_late_reply_is_dropped(self, broker):
        release = asyncio.Event()

        async def slow(ctx):
            await release.wait()
            await ctx.reply("late")

        _, communicator, output = await self.ask_setup(broker, slow)

        with pytest.raises(AskTimeoutError):
            await communicator.ask("sum", [1], timeout=0.02)

        release.set()
        await broker.join()

        assert output == []
        assert broker.queue_depth(communicator.output_queue_name) == 0
        assert broker.nacked == []

    @pytest.mark.asyncio
    async def test_ask_requires_both_channels(self, broker):
        communicator = Communicator("svc", rabbit_client=broker, is_output_enabled=False)
        await communicator.start()

        with pytest.raises(ChannelDisabledError):
            await communicator.ask("sum", [1])

    @pytest.mark.asyncio
    async def test_close_cancels_pending_asks(self, broker):
        async def silent(ctx):
            pass

        _, communicator, _ = await self.ask_setup(broker, silent)

        pending = asyncio.create_task(communicator.ask("sum", [1]))
        await asyncio.sleep(0.01)
        await communicator.close()

        with pytest.raises(AskCancelledError):
            await pending
