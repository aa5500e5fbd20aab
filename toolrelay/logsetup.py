"""Logging setup: rich console handler plus an optional rotating log file."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from toolrelay.config import LoggingConfig

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "aiosqlite")


def _parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(
    cfg: LoggingConfig | None = None,
    *,
    console: Console | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path | None:
    """
    Configure root logging from *cfg*.

    Console output goes to stderr through ``RichHandler``.  When
    ``cfg.file`` is set, a rotating file handler is added as well and its
    path is returned.
    """
    cfg = cfg or LoggingConfig()
    level = _parse_level(cfg.level)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    log_path: Path | None = None
    if cfg.file:
        log_path = Path(cfg.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)

    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)
    logging.captureWarnings(True)

    quiet_level = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    return log_path
