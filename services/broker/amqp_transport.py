"""
AMQP transport (exchange / queue addressing).

Subjects map to routing keys on one topic exchange; the NATS-style ``>``
wildcard is translated to AMQP ``#``. Requests use an exclusive reply queue
and a correlation id. Inbound requests carry their reply queue in
``reply_to`` and their correlation id on the ControlMessage; the reply is
sent straight to that queue carrying the same correlation id.

Rejected messages are requeued so another consumer bound to the same queue
can pick them up.
"""

from __future__ import annotations

import asyncio
import uuid
from functools import partial
from typing import Any, AsyncIterator, Dict, Optional

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
)

from services.broker.transport import (
    ORIGIN_HEADER,
    BrokerTransport,
    ControlMessage,
    TransportError,
)
from shared.logging.logger import get_logger

log = get_logger("broker.amqp")


def _header(headers: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(key)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class AmqpTransport(BrokerTransport):
    def __init__(self, url: str, *, exchange: str, queue_name: str):
        self._url = url
        self._exchange_name = exchange
        self._queue_name = queue_name

        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._closed: Optional[asyncio.Future] = None

    # ------------------------------------------------------------

    @property
    def channel(self) -> AbstractChannel:
        if not self._channel:
            raise TransportError("AMQP channel not initialized")
        return self._channel

    @property
    def exchange(self) -> AbstractExchange:
        if not self._exchange:
            raise TransportError("AMQP exchange not declared")
        return self._exchange

    def _on_connection_closed(self, _sender: Any, exc: Optional[BaseException] = None) -> None:
        if self._closed and not self._closed.done():
            self._closed.set_result(exc)

    # ------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------

    async def connect(self) -> None:
        self._closed = asyncio.get_running_loop().create_future()
        self._connection = await aio_pika.connect(self._url)
        self._connection.close_callbacks.add(self._on_connection_closed)

        self._channel = await self._connection.channel()
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name, ExchangeType.TOPIC, durable=True
        )
        log.debug(f"AMQP session opened (exchange={self._exchange_name})")

    async def publish(
        self,
        subject: str,
        data: bytes,
        *,
        reply: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        if correlation_id is not None:
            # Reply to an inbound request: direct to its reply queue
            await self.channel.default_exchange.publish(
                Message(body=data, headers=headers or {}, correlation_id=correlation_id),
                routing_key=subject,
            )
            return

        await self.exchange.publish(
            Message(body=data, headers=headers or {}, message_id=reply),
            routing_key=subject,
        )

    async def request(
        self,
        subject: str,
        data: bytes,
        *,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        correlation_id = str(uuid.uuid4())

        queue = await self.channel.declare_queue(exclusive=True, auto_delete=True)

        async def _on_reply(message: AbstractIncomingMessage) -> None:
            if message.correlation_id == correlation_id and not future.done():
                future.set_result(message.body)

        tag = await queue.consume(_on_reply, no_ack=True)
        try:
            await self.exchange.publish(
                Message(
                    body=data,
                    headers=headers or {},
                    reply_to=queue.name,
                    correlation_id=correlation_id,
                ),
                routing_key=subject,
            )
            return await asyncio.wait_for(future, timeout)
        finally:
            await queue.cancel(tag)

    async def subscribe(self, subject: str) -> AsyncIterator[ControlMessage]:
        queue = await self.channel.declare_queue(self._queue_name, durable=True)
        await queue.bind(self.exchange, routing_key=subject.replace(">", "#"))
        log.debug(f"AMQP consumer attached to {self._queue_name} ({subject})")

        async with queue.iterator() as messages:
            async for message in messages:
                yield ControlMessage(
                    topic=message.routing_key or "",
                    payload=message.body,
                    reply_address=message.reply_to,
                    origin_tag=_header(message.headers, ORIGIN_HEADER),
                    correlation_id=message.correlation_id,
                    _ack=message.ack,
                    _reject=partial(message.reject, requeue=True),
                )

    async def drain(self) -> None:
        # AMQP has no drain verb: closing the channel waits for pending
        # publisher confirms before the connection goes away.
        if self._channel and not self._channel.is_closed:
            await self._channel.close()
        await self.close()

    async def close(self) -> None:
        if self._connection and not self._connection.is_closed:
            await self._connection.close()

    async def wait_closed(self) -> Optional[BaseException]:
        if not self._closed:
            raise TransportError("AMQP session was never opened")
        return await self._closed
