"""
Control-plane topic names.

Inbound commands live under the control namespace
(e.g. ``control.restart``); the streamer's own liveness probe and
announcements live under the streamer namespace (e.g. ``streamer.connected``).
The dispatcher routes on the bare topic (``restart``), never on the
namespaced subject.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Topic(str, Enum):
    PING = "ping"
    PONG = "pong"
    CONNECTED = "connected"
    RESTART = "restart"
    RELOAD = "reload"
    EVAL = "eval"
    PROXY_SOCKET = "proxy-socket"


@dataclass(frozen=True)
class TopicSpace:
    control: str = "control"
    streamer: str = "streamer"

    # ------------------------------------------------------------

    @property
    def control_wildcard(self) -> str:
        return f"{self.control}.>"

    @property
    def streamer_ping(self) -> str:
        return f"{self.streamer}.{Topic.PING.value}"

    @property
    def streamer_connected(self) -> str:
        return f"{self.streamer}.{Topic.CONNECTED.value}"

    def control_subject(self, topic: Topic) -> str:
        return f"{self.control}.{topic.value}"

    # ------------------------------------------------------------

    def resolve(self, subject: str) -> Optional[str]:
        """
        Strip the control namespace from an inbound subject.

        Returns None for subjects outside the control namespace.
        """
        prefix = f"{self.control}."
        if not subject.startswith(prefix):
            return None
        return subject[len(prefix):]
