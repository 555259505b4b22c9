"""
Broker transport capability.

Every backend (NATS subjects, AMQP topic exchanges) implements the same
narrow surface so BrokerConnection and the command dispatcher never depend on
a concrete client library:

- connect()      open one session
- publish()      fire-and-forget send, optionally with a reply address
- request()      send and wait (bounded) for a single reply
- subscribe()    async iterator of inbound ControlMessage objects
- drain()        finish in-flight work, stop accepting new work, close
- close()        abrupt teardown of a broken or partial session
- wait_closed()  suspend until the session ends for any reason

A transport instance represents exactly one session; reconnecting means
building a new instance.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

ORIGIN_HEADER = "X-Origin-Tag"


class TransportError(RuntimeError):
    """
    Raised by transports when a session cannot be used.
    """


async def _noop() -> None:
    return None


@dataclass
class ControlMessage:
    topic: str
    payload: Optional[bytes] = None
    reply_address: Optional[str] = None
    origin_tag: Optional[str] = None
    correlation_id: Optional[str] = None

    _ack: Callable[[], Awaitable[None]] = field(default=_noop, repr=False, compare=False)
    _reject: Callable[[], Awaitable[None]] = field(default=_noop, repr=False, compare=False)

    async def ack(self) -> None:
        await self._ack()

    async def reject(self) -> None:
        """
        Hand the message back to the broker for its intended consumer.
        """
        await self._reject()

    def data(self) -> Any:
        """
        Decode the payload as JSON, falling back to raw text.
        """
        if not self.payload:
            return None

        text = self.payload.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text


def encode_payload(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, bytes):
        return data
    return json.dumps(data).encode("utf-8")


class BrokerTransport(ABC):
    """
    One broker session.
    """

    @abstractmethod
    async def connect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def publish(
        self,
        subject: str,
        data: bytes,
        *,
        reply: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def request(
        self,
        subject: str,
        data: bytes,
        *,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, subject: str) -> AsyncIterator[ControlMessage]:
        raise NotImplementedError

    @abstractmethod
    async def drain(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def wait_closed(self) -> Optional[BaseException]:
        """
        Suspend until the session ends. Returns the closing error, if any.
        """
        raise NotImplementedError
