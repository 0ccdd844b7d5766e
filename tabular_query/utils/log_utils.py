"""
Centralized logging configuration for the tabular query engine.

Every engine logger lives under the "tq" namespace and messages carry a
"[Component]" prefix, e.g. "[DataGateway] Full fetch failed". The level comes
from TQ_LOG_LEVEL unless one is passed explicitly.
"""

import logging
import sys
from typing import Optional

from tabular_query.core.constants import LOG_LEVEL

ROOT_LOGGER = "tq"

_initialized = False


def resolve_level(name: str, default: int = logging.INFO) -> int:
    """Numeric level for a name like "DEBUG"; unknown names fall back to `default`."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


def setup_logging(
    level: Optional[int] = None,
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Configure logging for the engine.
    Only runs once, subsequent calls return existing logger.
    """
    global _initialized

    if _initialized:
        return logging.getLogger(ROOT_LOGGER)

    if level is None:
        level = resolve_level(LOG_LEVEL)
    if format_string is None:
        format_string = (
            "%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s"
        )

    logging.basicConfig(
        level=level,
        format=format_string,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    logging.getLogger(ROOT_LOGGER).setLevel(level)

    # Every store fetch logs a request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _initialized = True
    return logging.getLogger(ROOT_LOGGER)


def get_logger(name: str) -> logging.Logger:
    """Module logger under the engine namespace; "tabular_query.engine.x" becomes "tq.engine.x"."""
    setup_logging()
    if name.startswith("tabular_query."):
        name = name[len("tabular_query."):]
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
