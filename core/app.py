import asyncio
import signal
import sys

from dotenv import load_dotenv

from core.config_loader import ConfigError, ConfigLoader
from core.state_snapshot import RuntimeSnapshotWriter
from core.supervisor import StreamSupervisor
from runtime import version
from services.broker.connection import BrokerConnection
from services.broker.factory import build_transport_factory
from services.broker.topics import TopicSpace
from services.browser.browser_client import DashboardBrowserClient
from shared.logging.logger import get_logger

log = get_logger("core.app")


def build_supervisor(config) -> StreamSupervisor:
    topics = TopicSpace(
        control=config.broker.control_namespace,
        streamer=config.broker.streamer_namespace,
    )
    broker = BrokerConnection(
        build_transport_factory(config.broker, topics),
        topics,
        probe_timeout=config.broker.probe_timeout,
    )

    return StreamSupervisor(
        config,
        broker=broker,
        browser=DashboardBrowserClient(config.browser),
        snapshot_writer=RuntimeSnapshotWriter(config.supervisor.snapshot_path),
    )


async def main(stop_event: asyncio.Event) -> int:
    # --------------------------------------------------
    # ENV + CONFIG
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info(f"{version.as_string()} booting")

    try:
        config = ConfigLoader().load()
    except ConfigError as e:
        log.error(str(e))
        return 1

    # --------------------------------------------------
    # SUPERVISOR (single owned instance)
    # --------------------------------------------------
    supervisor = build_supervisor(config)
    asyncio.get_running_loop().set_exception_handler(supervisor.handle_loop_exception)

    try:
        await supervisor.start()
    except Exception:
        log.exception("Failed to start stream")
        await supervisor.shutdown(exit_code=1)
        return supervisor.exit_code

    # --------------------------------------------------
    # BLOCK UNTIL SIGNAL OR SUPERVISOR-INITIATED SHUTDOWN
    # --------------------------------------------------
    stop_wait = asyncio.create_task(stop_event.wait())
    supervisor_wait = asyncio.create_task(supervisor.wait_stopped())

    await asyncio.wait({stop_wait, supervisor_wait}, return_when=asyncio.FIRST_COMPLETED)

    log.info("Shutdown initiated")
    await supervisor.shutdown()

    for task in (stop_wait, supervisor_wait):
        task.cancel()

    log.info(f"Streamer stopped (exit code {supervisor.exit_code})")
    return supervisor.exit_code


# ----------------------------------------------------------------------
# SIGNAL HANDLING
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    SIGINT / SIGTERM both unwind through the same stop event.
    """

    def _handler(signum, frame):
        log.info(f"Received signal {signum}")
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run() -> int:
    stop_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _install_signal_handlers(loop, stop_event)

    exit_code = 1
    try:
        exit_code = loop.run_until_complete(main(stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received — shutdown initiated")

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        loop.run_until_complete(loop.shutdown_asyncgens())

        asyncio.set_event_loop(None)
        loop.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(run())
