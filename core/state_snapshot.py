"""
Atomic JSON snapshot writer for the streamer runtime state.

Owned exclusively by the StreamSupervisor so there is a single authoritative
output for dashboards and external monitors.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from shared.logging.logger import get_logger

log = get_logger("core.state_snapshot")


class RuntimeSnapshotWriter:
    def __init__(self, path: Optional[Path | str] = None):
        self._path = Path(path) if path else Path("shared/state/streamer/runtime.json")
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, payload: Dict[str, Any]) -> None:
        """
        Persist a snapshot atomically to avoid partial reads by consumers.
        """
        try:
            serialized = json.dumps(payload, indent=2)
            with tempfile.NamedTemporaryFile(
                "w", dir=self._path.parent, delete=False, encoding="utf-8"
            ) as tmp:
                tmp.write(serialized)
                tmp.flush()
                os.fsync(tmp.fileno())
                temp_path = Path(tmp.name)

            temp_path.replace(self._path)
        except Exception as e:
            log.error(f"Failed to write runtime snapshot: {e}")
