"""
Single-slot frame holder shared by the frame source and the feed loop.

The frame source overwrites the slot whenever a new frame arrives; the feed
loop reads whatever is there on every tick. Both run on the same event loop,
so a plain attribute swap is atomic: a reader observes either the previous
frame or the new one, never a partial buffer. A missed update means the
previous frame is sent again (repetition, never corruption).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from shared.logging.logger import get_logger

log = get_logger("shared.runtime.frame_cell")


class FrameCell:
    __slots__ = ("_frame", "_generation")

    def __init__(self, initial: bytes = b""):
        self._frame = bytes(initial)
        self._generation = 0

    @classmethod
    def from_image(cls, path: Optional[Path | str]) -> "FrameCell":
        """
        Build a cell preloaded with a startup image.

        A missing or unreadable image is logged and yields an empty cell.
        """
        if not path:
            return cls()

        try:
            return cls(Path(path).read_bytes())
        except OSError as e:
            log.error(f"Could not read startup image {path}: {e}")
            return cls()

    # ------------------------------------------------------------

    def put(self, frame: bytes) -> None:
        self._frame = bytes(frame)
        self._generation += 1

    def get(self) -> bytes:
        return self._frame

    # ------------------------------------------------------------

    @property
    def generation(self) -> int:
        """
        Number of frames written since construction.
        """
        return self._generation

    def __bool__(self) -> bool:
        return bool(self._frame)
