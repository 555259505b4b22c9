"""
Broker heartbeat (control-plane liveness state).

This class is intentionally passive:
- No timers
- No asyncio tasks
- No external I/O

BrokerConnection flips the connected flag; the supervisor calls tick() on its
heartbeat schedule and serializes snapshot() into the runtime state file.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.logging.logger import get_logger

log = get_logger("broker.heartbeat")


class BrokerHeartbeatState:
    """
    Immutable snapshot of heartbeat state.
    """

    def __init__(
        self,
        *,
        started_at: Optional[datetime] = None,
        last_tick_at: Optional[datetime] = None,
        last_connected_at: Optional[datetime] = None,
        connected: bool = False,
    ):
        self.started_at = started_at
        self.last_tick_at = last_tick_at
        self.last_connected_at = last_connected_at
        self.connected = connected

    def snapshot(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_connected_at": (
                self.last_connected_at.isoformat() if self.last_connected_at else None
            ),
            "connected": self.connected,
        }


class BrokerHeartbeat:
    def __init__(self):
        self._started_at: Optional[datetime] = None
        self._last_tick_at: Optional[datetime] = None
        self._last_connected_at: Optional[datetime] = None
        self._connected: bool = False

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    def start(self):
        if self._started_at is None:
            self._started_at = datetime.now(timezone.utc)
            log.info("Broker heartbeat started")

    def stop(self):
        self._connected = False
        log.info("Broker heartbeat stopped")

    # --------------------------------------------------
    # State Updates
    # --------------------------------------------------

    def set_connected(self, connected: bool):
        self._connected = connected
        if connected:
            self._last_connected_at = datetime.now(timezone.utc)
        log.debug(f"Broker heartbeat connection state: {connected}")

    def tick(self):
        self._last_tick_at = datetime.now(timezone.utc)
        log.debug("Broker heartbeat tick")

    # --------------------------------------------------

    def snapshot(self) -> BrokerHeartbeatState:
        return BrokerHeartbeatState(
            started_at=self._started_at,
            last_tick_at=self._last_tick_at,
            last_connected_at=self._last_connected_at,
            connected=self._connected,
        )
