"""
Broker connection (control-plane session owner).

Owns the lifetime of one message-bus session at a time:

- connect()    open a session, probe the control plane, announce, then block
               until the session ends and reconnect with backoff (forever)
- reconnect()  tear down, bump the retry counter, wait out the backoff
- publish()    tagged fire-and-forget send; errors are logged, never raised
- destroy()    drain and close; terminal

Inbound messages are handled one at a time in receipt order. Messages carrying
this connection's own origin tag are handed back to the broker and never reach
the dispatcher.
"""

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from services.broker.heartbeat import BrokerHeartbeat
from services.broker.topics import TopicSpace
from services.broker.transport import (
    ORIGIN_HEADER,
    BrokerTransport,
    ControlMessage,
    encode_payload,
)
from shared.logging.logger import get_logger

log = get_logger("broker.connection")

BASE_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 30000


def backoff_delay_ms(retry_count: int) -> int:
    """
    Exponential reconnect delay: min(1000 * 2^n, 30000) milliseconds.
    """
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")

    # 2^15 * 1000 is already past the cap
    return min(BASE_BACKOFF_MS * 2 ** min(retry_count, 15), MAX_BACKOFF_MS)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"
    CLOSED = "closed"


class MessageDispatcher(Protocol):
    async def dispatch(self, message: ControlMessage) -> None: ...


class BrokerConnection:
    def __init__(
        self,
        transport_factory: Callable[[], BrokerTransport],
        topics: Optional[TopicSpace] = None,
        *,
        dispatcher: Optional[MessageDispatcher] = None,
        probe_timeout: float = 5.0,
        origin_tag: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._transport_factory = transport_factory
        self._topics = topics or TopicSpace()
        self._dispatcher = dispatcher
        self._probe_timeout = probe_timeout
        self._sleep = sleep

        self.origin_tag = origin_tag or f"streamer-{uuid.uuid4().hex}"
        self.heartbeat = BrokerHeartbeat()

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[BrokerTransport] = None
        self._consumer: Optional[asyncio.Task] = None
        self._retry_count = 0

    # ------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def topics(self) -> TopicSpace:
        return self._topics

    @property
    def session(self) -> Optional[BrokerTransport]:
        """
        The live transport session; None outside CONNECTED / DRAINING.
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.DRAINING):
            return self._transport
        return None

    @property
    def closing(self) -> bool:
        return self._state in (ConnectionState.DRAINING, ConnectionState.CLOSED)

    def attach(self, dispatcher: MessageDispatcher) -> None:
        self._dispatcher = dispatcher

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "retry_count": self._retry_count,
            "origin_tag": self.origin_tag,
            "heartbeat": self.heartbeat.snapshot().snapshot(),
        }

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def connect(self) -> None:
        """
        Run the session loop until destroy() is called.

        Every failed attempt (transport error, probe timeout, unexpected
        close) goes through reconnect(); there is no retry limit.
        """
        self.heartbeat.start()

        while not self.closing:
            if not await self._open_session():
                await self.reconnect()
                continue

            error = await self._transport.wait_closed()
            if self.closing:
                break

            if error:
                log.error(f"Broker connection closed: {error}")

            log.warning("Broker connection unexpectedly closed, reconnecting...")
            await self.reconnect()

        log.warning("Broker connection closed")

    async def _open_session(self) -> bool:
        self._state = ConnectionState.CONNECTING
        transport = self._transport_factory()
        self._transport = transport

        try:
            await transport.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to connect to broker: {e}")
            return False

        if self._state is not ConnectionState.CONNECTING:
            # destroy() ran while the transport was connecting
            await transport.close()
            return False

        self._state = ConnectionState.CONNECTED
        self._retry_count = 0
        self.heartbeat.set_connected(True)

        self._consumer = asyncio.create_task(self._consume(transport))

        try:
            await transport.request(
                self._topics.streamer_ping,
                b"",
                timeout=self._probe_timeout,
                headers=self._headers(),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to ping control plane: {e!r}")
            return False

        log.debug("Broker connected")
        await self.publish(self._topics.streamer_connected)
        return True

    async def reconnect(self) -> None:
        """
        Tear down the current session and wait out the backoff delay.

        The caller (the connect() loop) opens the next session.
        """
        if self.closing:
            return

        await self._teardown()

        self._retry_count += 1
        delay_ms = backoff_delay_ms(self._retry_count)
        log.warning(
            f"Reconnecting to broker in {delay_ms} ms (attempt {self._retry_count})"
        )
        await self._sleep(delay_ms / 1000)

    async def _teardown(self) -> None:
        await self._stop_consumer()

        transport, self._transport = self._transport, None
        self._state = ConnectionState.DISCONNECTED
        self.heartbeat.set_connected(False)

        if transport:
            try:
                await transport.close()
            except Exception as e:
                log.debug(f"Broker session close error ignored: {e}")

    async def _stop_consumer(self) -> None:
        consumer, self._consumer = self._consumer, None
        if not consumer or consumer is asyncio.current_task() or consumer.done():
            return

        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

    async def destroy(self) -> None:
        """
        Drain the session and close for good. Idempotent.
        """
        if self._state is ConnectionState.CLOSED:
            return

        log.warning("Closing broker connection")

        previous = self._state
        transport = self._transport
        self._state = ConnectionState.DRAINING

        try:
            if transport and previous is ConnectionState.CONNECTED:
                await transport.drain()
            elif transport:
                await transport.close()
        except Exception as e:
            log.warning(f"Broker drain error ignored: {e}")

        await self._stop_consumer()

        self._transport = None
        self._state = ConnectionState.CLOSED
        self.heartbeat.stop()

    # ------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {ORIGIN_HEADER: self.origin_tag}

    async def publish(
        self, subject: str, data: Any = None, *, in_reply_to: Optional[str] = None
    ) -> str:
        """
        Publish a tagged message. Returns its correlation id.

        in_reply_to carries the correlation id of the request being answered.

        Failures are logged only; the caller observes no acknowledgement.
        """
        correlation_id = f"{subject}.{uuid.uuid4()}"

        transport = self.session
        if transport is None:
            log.error(f"Failed to publish message to broker: not connected ({subject})")
            return correlation_id

        try:
            await transport.publish(
                subject,
                encode_payload(data),
                reply=correlation_id,
                headers=self._headers(),
                correlation_id=in_reply_to,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to publish message to broker: {e}")

        return correlation_id

    # ------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------

    async def _consume(self, transport: BrokerTransport) -> None:
        try:
            async for message in transport.subscribe(self._topics.control_wildcard):
                await self._deliver(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Broker consumer failed: {e}")
            if self._state is ConnectionState.CONNECTED:
                # Force the session loop into reconnect
                await transport.close()

    async def _deliver(self, message: ControlMessage) -> None:
        if message.origin_tag == self.origin_tag:
            log.debug(f"Loopback message on {message.topic} handed back to broker")
            try:
                await message.reject()
            except Exception as e:
                log.warning(f"Failed to reject loopback message: {e}")
            return

        try:
            await message.ack()
        except Exception as e:
            log.warning(f"Failed to acknowledge message on {message.topic}: {e}")

        if not self._dispatcher:
            log.warning(f"No dispatcher attached; dropping {message.topic}")
            return

        try:
            await self._dispatcher.dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception(f"Handler for {message.topic} failed")
