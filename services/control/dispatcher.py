"""
Control command dispatcher.

Maps control topics to handlers. The broker connection invokes dispatch() for
one message at a time, so handlers never overlap on the same connection.

Request topics (restart, reload, eval) require a reply address; without one
the message is logged and dropped. The page and process handles stay
supervisor-owned: handlers only borrow them for the duration of one call.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from services.broker.connection import BrokerConnection
from services.broker.topics import Topic
from services.broker.transport import ControlMessage
from services.control.evaluator import PendingEvalJob, run_script
from shared.logging.logger import get_logger

log = get_logger("control.dispatcher")

Handler = Callable[[ControlMessage], Awaitable[None]]


class SupervisorControls(Protocol):
    async def restart(self) -> bool: ...

    def active_page(self) -> Optional[Any]: ...


class CommandDispatcher:
    def __init__(self, connection: BrokerConnection, supervisor: SupervisorControls):
        self._connection = connection
        self._supervisor = supervisor

        self._handlers: Dict[str, Handler] = {
            Topic.PING.value: self._on_ping,
            Topic.PONG.value: self._on_pong,
            Topic.CONNECTED.value: self._on_connected,
            Topic.RESTART.value: self._on_restart,
            Topic.RELOAD.value: self._on_reload,
            Topic.EVAL.value: self._on_eval,
            Topic.PROXY_SOCKET.value: self._on_proxy_socket,
        }

    # ------------------------------------------------------------

    def handler_for(self, subject: str) -> Optional[Handler]:
        topic = self._connection.topics.resolve(subject)
        if topic is None:
            return None
        return self._handlers.get(topic)

    async def dispatch(self, message: ControlMessage) -> None:
        handler = self.handler_for(message.topic)
        if handler is None:
            log.warning(f"Unknown message subject: {message.topic}")
            return

        await handler(message)

    # ------------------------------------------------------------

    @staticmethod
    def _reply_address(message: ControlMessage) -> Optional[str]:
        if not message.reply_address:
            log.error(f"No reply subject provided for job request ({message.topic})")
            return None
        return message.reply_address

    async def _reply(self, message: ControlMessage, data: Any) -> None:
        await self._connection.publish(
            message.reply_address, data, in_reply_to=message.correlation_id
        )

    # ------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------

    async def _on_ping(self, message: ControlMessage) -> None:
        if not message.reply_address:
            log.debug("Ping received without reply subject")
            return
        await self._reply(message, {"pong": True})

    async def _on_pong(self, message: ControlMessage) -> None:
        log.debug("Control plane answered ping")

    async def _on_connected(self, message: ControlMessage) -> None:
        log.debug("Control plane connected")

    async def _on_restart(self, message: ControlMessage) -> None:
        if not self._reply_address(message):
            return

        log.debug("Restarting stream")
        result = await self._supervisor.restart()
        await self._reply(message, result)

    async def _on_reload(self, message: ControlMessage) -> None:
        if not self._reply_address(message):
            return

        page = self._supervisor.active_page()
        if page is None:
            log.warning("Page is not defined, cannot reload")
            return

        log.debug("Reloading page")
        try:
            response = await page.reload()
        except Exception as e:
            log.warning(f"Page reload raised: {e}")
            response = None

        if response is None:
            log.warning("Page reload failed")
        await self._reply(message, response is not None)

    async def _on_eval(self, message: ControlMessage) -> None:
        if not self._reply_address(message):
            return

        page = self._supervisor.active_page()
        if page is None:
            log.warning("Page is not defined, cannot evaluate script")
            return

        job = PendingEvalJob.from_payload(message.data())
        if job is None:
            log.warning("Invalid eval data")
            return

        result = await run_script(page, job.code)
        await self._reply(message, {"id": job.job_id, "result": result})

    async def _on_proxy_socket(self, message: ControlMessage) -> None:
        return None
