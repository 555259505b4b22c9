"""
NATS transport (subject addressing).

Replies use the transport-native reply inbox. NATS core has no
acknowledgement, so ack/reject are no-ops: a rejected loopback message is
simply not handed to the local dispatcher, while every other subscriber on the
subject still receives its own copy.

Client-side reconnect is disabled; BrokerConnection owns the retry policy.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, List, Optional

import nats
from nats.aio.client import Client as NatsClient

from services.broker.transport import (
    ORIGIN_HEADER,
    BrokerTransport,
    ControlMessage,
    TransportError,
)
from shared.logging.logger import get_logger

log = get_logger("broker.nats")


class NatsTransport(BrokerTransport):
    def __init__(self, servers: str | List[str], *, connect_timeout: float = 2.0):
        if isinstance(servers, str):
            servers = [s.strip() for s in servers.split(",") if s.strip()]

        self._servers = servers
        self._connect_timeout = connect_timeout
        self._client: Optional[NatsClient] = None
        self._closed: Optional[asyncio.Future] = None
        self._last_error: Optional[BaseException] = None

    # ------------------------------------------------------------

    @property
    def client(self) -> NatsClient:
        if not self._client:
            raise TransportError("NATS client not initialized")
        return self._client

    # ------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------

    async def _on_error(self, err: Exception) -> None:
        self._last_error = err
        log.error(f"NATS error: {err}")

    async def _on_disconnected(self) -> None:
        log.warning("NATS disconnected")

    async def _on_closed(self) -> None:
        if self._closed and not self._closed.done():
            self._closed.set_result(self._last_error)

    # ------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------

    async def connect(self) -> None:
        self._closed = asyncio.get_running_loop().create_future()
        self._client = await nats.connect(
            servers=self._servers,
            allow_reconnect=False,
            connect_timeout=self._connect_timeout,
            error_cb=self._on_error,
            disconnected_cb=self._on_disconnected,
            closed_cb=self._on_closed,
        )
        log.debug(f"NATS session opened ({', '.join(self._servers)})")

    async def publish(
        self,
        subject: str,
        data: bytes,
        *,
        reply: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self.client.publish(subject, data, reply=reply or "", headers=headers)

    async def request(
        self,
        subject: str,
        data: bytes,
        *,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        msg = await self.client.request(subject, data, timeout=timeout, headers=headers)
        return msg.data

    async def subscribe(self, subject: str) -> AsyncIterator[ControlMessage]:
        sub = await self.client.subscribe(subject)
        log.debug(f"NATS consumer attached to {subject}")

        async for msg in sub.messages:
            headers = msg.headers or {}
            yield ControlMessage(
                topic=msg.subject,
                payload=msg.data,
                reply_address=msg.reply or None,
                origin_tag=headers.get(ORIGIN_HEADER),
            )

    async def drain(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.drain()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.close()

    async def wait_closed(self) -> Optional[BaseException]:
        if not self._closed:
            raise TransportError("NATS session was never opened")
        return await self._closed
