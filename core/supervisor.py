"""
Stream Supervisor

Owns the lifetime of the live stream:
- one encoder process (ProcessHandle) fed at a fixed frame rate
- one dashboard browser session producing frames into the FrameCell
- one broker connection exposing the control plane

State machine:
    INITIALIZING -> STREAMING -> RESTARTING -> STREAMING ...
    any state    -> SHUTTING_DOWN (terminal)

IMPORTANT:
- Only supervisor methods transition state
- At most one restart sequence is in flight; concurrent requests get False
- restart_count grows only on uncaught faults and is reset by every restart
  attempt; reaching the limit escalates to shutdown
- Shutdown runs exactly once no matter how many times it is requested
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from core.config_loader import StreamerConfig
from core.state_snapshot import RuntimeSnapshotWriter
from services.broker.connection import BrokerConnection
from services.browser.browser_client import DashboardBrowserClient
from services.control.dispatcher import CommandDispatcher
from services.encoder.process import ProcessHandle, spawn_encoder
from shared.logging.logger import get_logger
from shared.runtime.frame_cell import FrameCell

log = get_logger("core.supervisor")


class SupervisorState(Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"


class EncoderExited(RuntimeError):
    def __init__(self, code: Optional[int]):
        super().__init__(f"encoder exited with code {code}")
        self.code = code


class ShutdownInProgress(RuntimeError):
    pass


class StreamSupervisor:
    def __init__(
        self,
        config: StreamerConfig,
        *,
        broker: BrokerConnection,
        browser: DashboardBrowserClient,
        spawn: Callable[..., Awaitable[ProcessHandle]] = spawn_encoder,
        frame_cell: Optional[FrameCell] = None,
        snapshot_writer: Optional[RuntimeSnapshotWriter] = None,
        tick: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config
        self._broker = broker
        self._browser = browser
        self._spawn = spawn
        self._tick = tick
        self._snapshot_writer = snapshot_writer

        self._frame_cell = (
            frame_cell if frame_cell is not None
            else FrameCell.from_image(config.supervisor.startup_image)
        )

        self._state = SupervisorState.INITIALIZING
        self._restart_count = 0
        self._hard_limit = config.supervisor.restart_limit

        self._handle: Optional[ProcessHandle] = None
        self._page: Optional[Any] = None

        self._feed_task: Optional[asyncio.Task] = None
        self._broker_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._shutdown_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        self._started_at: Optional[datetime] = None
        self._last_restart_at: Optional[datetime] = None

        self.exit_code = 0

        self._dispatcher = CommandDispatcher(broker, self)
        broker.attach(self._dispatcher)

    # --------------------------------------------------
    # Read-only Introspection
    # --------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def restarting(self) -> bool:
        return self._state is SupervisorState.RESTARTING

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    @property
    def frame_cell(self) -> FrameCell:
        return self._frame_cell

    @property
    def shutting_down(self) -> bool:
        return self._state is SupervisorState.SHUTTING_DOWN

    def active_page(self) -> Optional[Any]:
        return self._page

    async def wait_stopped(self) -> int:
        await self._stopped.wait()
        return self.exit_code

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "restart_count": self._restart_count,
            "restart_limit": self._hard_limit,
            "encoder_pid": self._handle.pid if self._handle else None,
            "page_active": self._page is not None,
            "frames_received": self._frame_cell.generation,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "last_restart_at": (
                self._last_restart_at.isoformat() if self._last_restart_at else None
            ),
            "broker": self._broker.snapshot(),
        }

    # --------------------------------------------------
    # Helpers
    # --------------------------------------------------

    def _set_state(self, state: SupervisorState) -> None:
        if self._state is SupervisorState.SHUTTING_DOWN:
            return

        log.debug(f"Supervisor state: {self._state.value} -> {state.value}")
        self._state = state
        self._write_snapshot()

    def _write_snapshot(self) -> None:
        if self._snapshot_writer:
            self._snapshot_writer.write(self.snapshot())

    def _spawn_task(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            self.handle_fatal_fault(error)

    def _guard(self) -> None:
        if self.shutting_down:
            raise ShutdownInProgress("shutdown requested during initialization")

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    async def start(self) -> None:
        log.info("Starting stream supervisor")
        self._started_at = datetime.now(timezone.utc)

        await self._initialize()

        self._broker_task = self._spawn_task(self._broker.connect())
        self._spawn_task(self._forced_restart_loop())
        self._spawn_task(self._heartbeat_loop())

        log.info("Stream supervisor started")

    async def _initialize(self) -> None:
        try:
            handle = await self._spawn(
                self._config.encoder, on_exit=self._on_encoder_exit
            )
            self._handle = handle
            self._guard()

            self._feed_task = asyncio.create_task(self._feed(handle))

            await self._browser.start()
            log.debug("Created browser")
            self._guard()

            page = await self._browser.open_dashboard()
            await self._browser.start_screencast(self._frame_cell.put)
            self._guard()
        except ShutdownInProgress:
            await self._teardown_stream()
            await self._browser.shutdown()
            raise

        self._page = page
        self._set_state(SupervisorState.STREAMING)

    # --------------------------------------------------
    # Feed loop
    # --------------------------------------------------

    async def _feed(self, handle: ProcessHandle) -> None:
        interval = 1 / self._config.encoder.fps

        while handle.writable:
            frame = self._frame_cell.get()
            if frame:
                stdin = handle.stdin
                try:
                    stdin.write(frame)
                    await stdin.drain()
                except Exception as e:
                    if handle.released:
                        break
                    log.error(f"Error writing to FFmpeg stdin: {e}")
                    self.request_shutdown(exit_code=1)
                    return

            await self._tick(interval)

        log.debug("Encoder input closed; feed loop stopped")

    # --------------------------------------------------
    # Faults
    # --------------------------------------------------

    def _on_encoder_exit(self, code: Optional[int]) -> None:
        if self.shutting_down:
            return
        self.handle_fatal_fault(EncoderExited(code))

    def handle_fatal_fault(self, error: BaseException) -> None:
        """
        Uncaught fault hook: count it and restart, or shut down past the limit.
        """
        log.error(f"Uncaught fault: {error!r}")

        if self.shutting_down:
            return

        if self._restart_count >= self._hard_limit:
            log.error("Restart limit reached. Exiting...")
            self.request_shutdown(exit_code=1)
            return

        self._restart_count += 1
        self._spawn_task(self._restart_sequence())

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """
        asyncio exception handler: every uncaught exception is a fatal fault.
        """
        error = context.get("exception")
        if error is None:
            log.error(f"Unhandled event loop error: {context.get('message')}")
            return
        self.handle_fatal_fault(error)

    # --------------------------------------------------
    # Restart
    # --------------------------------------------------

    async def restart(self) -> bool:
        """
        Restart encoder + browser. False when rejected or failed.
        """
        if self._restart_count >= self._hard_limit:
            log.error("Restart limit reached. Exiting...")
            self.request_shutdown(exit_code=1)
            return False

        return await self._restart_sequence()

    async def _restart_sequence(self) -> bool:
        if self._state in (SupervisorState.RESTARTING, SupervisorState.SHUTTING_DOWN):
            log.warning(f"Restart rejected (state={self._state.value})")
            return False

        self._set_state(SupervisorState.RESTARTING)
        self._last_restart_at = datetime.now(timezone.utc)

        try:
            log.debug("Restarting stream...")
            await self._teardown_stream()
            self._page = None
            await self._initialize()
            log.debug("Stream restarted")
            return True
        except Exception as e:
            log.error(f"Failed to restart stream: {e}")
            return False
        finally:
            self._restart_count = 0
            if self._state is SupervisorState.RESTARTING:
                self._set_state(SupervisorState.STREAMING)

    async def _teardown_stream(self) -> None:
        await self._browser.stop_screencast()

        handle, self._handle = self._handle, None
        if handle is None:
            log.error("No FFmpeg process found to kill!")
            return

        if not await handle.release():
            log.error("Encoder termination not confirmed; continuing without retry")

    # --------------------------------------------------
    # Background timers
    # --------------------------------------------------

    async def _forced_restart_loop(self) -> None:
        interval = self._config.supervisor.forced_restart_hours * 3600

        while True:
            await asyncio.sleep(interval)
            log.info("Scheduled restart triggered")
            result = await self.restart()
            log.info(f"Scheduled restart {'succeeded' if result else 'failed'}")

    async def _heartbeat_loop(self) -> None:
        while True:
            self._broker.heartbeat.tick()
            self._write_snapshot()
            await asyncio.sleep(self._config.supervisor.heartbeat_seconds)

    # --------------------------------------------------
    # Shutdown
    # --------------------------------------------------

    def request_shutdown(self, exit_code: int = 0) -> asyncio.Task:
        """
        Start the shutdown sequence once; later calls return the same task.
        """
        if self._shutdown_task is None:
            self.exit_code = exit_code
            self._set_state(SupervisorState.SHUTTING_DOWN)
            self._shutdown_task = asyncio.create_task(self._shutdown_sequence())
        return self._shutdown_task

    async def shutdown(self, exit_code: int = 0) -> None:
        await asyncio.shield(self.request_shutdown(exit_code))

    async def _shutdown_sequence(self) -> None:
        log.info("Shutting down stream supervisor")

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and task is not self._broker_task and not task.done():
                task.cancel()

        if self._feed_task and not self._feed_task.done():
            self._feed_task.cancel()

        log.debug("Killing FFmpeg process...")
        try:
            await self._teardown_stream()
        except Exception as e:
            log.warning(f"Encoder teardown error ignored: {e}")

        try:
            await self._browser.shutdown()
        except Exception as e:
            log.warning(f"Browser shutdown error ignored: {e}")

        try:
            await self._broker.destroy()
        except Exception as e:
            log.warning(f"Broker shutdown error ignored: {e}")

        if self._broker_task and not self._broker_task.done():
            self._broker_task.cancel()

        pending = [t for t in self._tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._write_snapshot()
        log.debug("Exiting...")
        self._stopped.set()
