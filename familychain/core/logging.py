"""
Structured logging for the reconciler, built on structlog over stdlib logging.

Every record carries the chain it belongs to once bind_chain_context() has
been called, so logs from several deployments can share one sink.
"""

import sys
import logging
from typing import List, Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings


QUIET_LOGGERS = ("asyncio", "aiosqlite", "sqlalchemy.engine", "web3", "urllib3", "aiohttp.access")

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: Settings, log_file: Optional[str] = None) -> None:
    """
    Configure structlog and the root logger from settings.

    Args:
        settings: Application settings
        log_file: Optional log file path, wins over settings.log_file
    """
    json_output = settings.log_format == "json"
    level = getattr(logging, settings.log_level)

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.getLogger().handlers.clear()
    logging.basicConfig(
        level=level,
        handlers=_build_handlers(settings, level, log_file or settings.log_file),
        force=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _build_handlers(settings: Settings, level: int, log_file: Optional[str]) -> List[logging.Handler]:
    json_output = settings.log_format == "json"
    formatter = logging.Formatter("%(message)s" if json_output else PLAIN_FORMAT)
    handlers: List[logging.Handler] = []

    # Rich console only for interactive development runs
    if settings.is_development and not json_output:
        console_handler: logging.Handler = RichHandler(
            console=Console(file=sys.stderr),
            show_time=False,
            show_path=True,
            rich_tracebacks=True,
        )
    else:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    handlers.append(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    return handlers


def bind_chain_context(chain_id: int, **extra) -> None:
    """Attach chain identity to every subsequent log record in this context."""
    structlog.contextvars.bind_contextvars(chain_id=chain_id, **extra)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, usually get_logger(__name__)."""
    return structlog.get_logger(name)
