"""
Tests for the NATS and AMQP transports against stubbed client objects:
inbound message mapping (origin tag, reply address, correlation id), reject
wiring and reply routing.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from services.broker.amqp_transport import AmqpTransport
from services.broker.nats_transport import NatsTransport
from services.broker.transport import ORIGIN_HEADER


async def _iterate(items):
    for item in items:
        yield item


async def _collect(iterator, count):
    messages = []
    async for message in iterator:
        messages.append(message)
        if len(messages) == count:
            break
    return messages


class FakeQueueIterator:
    """aio-pika queue.iterator() stand-in: async context manager + iterator."""

    def __init__(self, messages):
        self._messages = list(messages)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def _incoming(routing_key, *, reply_to=None, correlation_id=None, headers=None, body=b""):
    return SimpleNamespace(
        routing_key=routing_key,
        body=body,
        reply_to=reply_to,
        correlation_id=correlation_id,
        headers=headers or {},
        ack=AsyncMock(),
        reject=AsyncMock(),
    )


def _amqp(messages):
    transport = AmqpTransport("amqp://localhost/", exchange="ops", queue_name="streamer.control")

    queue = MagicMock()
    queue.bind = AsyncMock()
    queue.iterator = MagicMock(return_value=FakeQueueIterator(messages))

    channel = MagicMock()
    channel.declare_queue = AsyncMock(return_value=queue)
    channel.default_exchange.publish = AsyncMock()

    exchange = MagicMock()
    exchange.publish = AsyncMock()

    transport._channel = channel
    transport._exchange = exchange
    return transport, queue, channel, exchange


class TestAmqpTransport:
    def test_subscribe_maps_inbound_message(self):
        async def scenario():
            incoming = _incoming(
                "control.restart",
                reply_to="amq.gen-X",
                correlation_id="c-1",
                headers={ORIGIN_HEADER: b"streamer-self"},
                body=b'{"id": "1"}',
            )
            transport, queue, _, exchange = _amqp([incoming])

            [message] = await _collect(transport.subscribe("control.>"), 1)

            queue.bind.assert_awaited_once_with(exchange, routing_key="control.#")
            assert message.topic == "control.restart"
            assert message.reply_address == "amq.gen-X"
            assert message.correlation_id == "c-1"
            assert message.origin_tag == "streamer-self"
            assert message.data() == {"id": "1"}

            await message.reject()
            incoming.reject.assert_awaited_once_with(requeue=True)

            await message.ack()
            incoming.ack.assert_awaited_once()

        asyncio.run(scenario())

    def test_unanswered_requests_leave_no_state(self):
        async def scenario():
            pongs = [
                _incoming("control.pong", reply_to=f"amq.gen-{n}", correlation_id=f"c-{n}")
                for n in range(50)
            ]
            transport, _, _, _ = _amqp(pongs)

            messages = await _collect(transport.subscribe("control.>"), 50)

            assert len(messages) == 50
            assert not [
                value for value in vars(transport).values()
                if isinstance(value, dict) and value
            ]

        asyncio.run(scenario())

    def test_reply_goes_to_reply_queue_with_correlation_id(self):
        async def scenario():
            transport, _, channel, exchange = _amqp([])

            await transport.publish(
                "amq.gen-X", b"true", headers={ORIGIN_HEADER: "streamer-self"}, correlation_id="c-1"
            )

            exchange.publish.assert_not_awaited()
            sent, = channel.default_exchange.publish.await_args.args
            assert sent.correlation_id == "c-1"
            assert sent.body == b"true"
            assert channel.default_exchange.publish.await_args.kwargs["routing_key"] == "amq.gen-X"

        asyncio.run(scenario())

    def test_plain_publish_uses_topic_exchange(self):
        async def scenario():
            transport, _, channel, exchange = _amqp([])

            await transport.publish("streamer.connected", b"", reply="streamer.connected.abc")

            channel.default_exchange.publish.assert_not_awaited()
            sent, = exchange.publish.await_args.args
            assert sent.message_id == "streamer.connected.abc"
            assert exchange.publish.await_args.kwargs["routing_key"] == "streamer.connected"

        asyncio.run(scenario())


class TestNatsTransport:
    def test_subscribe_maps_inbound_message(self):
        async def scenario():
            msgs = [
                SimpleNamespace(
                    subject="control.eval",
                    data=b'{"id": "42", "code": "1"}',
                    reply="_INBOX.abc",
                    headers={ORIGIN_HEADER: "control-plane"},
                ),
                SimpleNamespace(subject="control.pong", data=b"", reply="", headers=None),
            ]
            sub = SimpleNamespace(messages=_iterate(msgs))

            transport = NatsTransport("nats://localhost:4222")
            transport._client = MagicMock()
            transport._client.subscribe = AsyncMock(return_value=sub)

            first, second = await _collect(transport.subscribe("control.>"), 2)

            transport._client.subscribe.assert_awaited_once_with("control.>")
            assert first.topic == "control.eval"
            assert first.reply_address == "_INBOX.abc"
            assert first.origin_tag == "control-plane"
            assert first.data() == {"id": "42", "code": "1"}

            assert second.reply_address is None
            assert second.origin_tag is None

            # NATS core has no requeue; rejecting must still be safe
            await first.reject()
            await first.ack()

        asyncio.run(scenario())

    def test_publish_passes_reply_and_headers(self):
        async def scenario():
            transport = NatsTransport("nats://localhost:4222")
            transport._client = MagicMock()
            transport._client.publish = AsyncMock()

            await transport.publish(
                "_INBOX.abc", b"true", headers={ORIGIN_HEADER: "streamer-self"}, correlation_id="c-1"
            )

            transport._client.publish.assert_awaited_once_with(
                "_INBOX.abc", b"true", reply="", headers={ORIGIN_HEADER: "streamer-self"}
            )

        asyncio.run(scenario())
