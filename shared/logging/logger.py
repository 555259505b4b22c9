import logging
import os
from datetime import datetime
from pathlib import Path

LOG_DIR = Path("logs")

# One stamp per process: every logger of a runtime appends to the same file
RUN_STAMP = datetime.now().strftime("%Y%m%d-%H%M%S")

_FORMATTER = logging.Formatter(
    "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)

_LOGGERS = {}
_FILE_HANDLERS = {}


def _console_level() -> int:
    name = os.getenv("STREAMER_LOG_LEVEL", "DEBUG").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.DEBUG


def _file_handler(runtime: str) -> logging.FileHandler:
    handler = _FILE_HANDLERS.get(runtime)
    if handler is None:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(
            LOG_DIR / f"{runtime}-{RUN_STAMP}.log", encoding="utf-8"
        )
        handler.setFormatter(_FORMATTER)
        _FILE_HANDLERS[runtime] = handler
    return handler


def get_logger(
    name: str,
    *,
    runtime: str = "streamer",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. core.supervisor, broker.connection)
    - runtime: log file prefix (streamer | encoder | browser)

    The console honours STREAMER_LOG_LEVEL; the per-run file always records
    DEBUG so encoder stderr and frame-level chatter stay available
    after the fact.
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(logging.DEBUG)

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setLevel(_console_level())
    console.setFormatter(_FORMATTER)
    logger.addHandler(console)

    # ------------------------------
    # File handler (shared per runtime)
    # ------------------------------
    logger.addHandler(_file_handler(runtime))

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger
