"""Version banner for the dashboard streamer, logged once at boot."""

from __future__ import annotations

PROJECT_NAME = "Dashboard Streamer Runtime"
VERSION = "v1.0.0"
BUILD = "2026.10"


def as_string() -> str:
    return f"{PROJECT_NAME} {VERSION} (Build {BUILD})"
