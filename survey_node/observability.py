"""structlog setup for the node.

Call ``configure_logging()`` once at startup, then log with::

    log = structlog.get_logger(__name__)
    log.info("vote_cast", survey_id=..., option_id=...)
"""

import logging
from typing import Optional

import structlog
from structlog.typing import Processor

from .config import LOG_FORMAT, LOG_LEVEL, NODE_ID


def _add_node_id(logger, method_name, event_dict):
    event_dict.setdefault("node", NODE_ID)
    return event_dict


def configure_logging(fmt: Optional[str] = None, level: Optional[str] = None) -> None:
    fmt = fmt or LOG_FORMAT
    level_no = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_node_id,
    ]

    if fmt == "console":
        renderer: Processor = structlog.dev.ConsoleRenderer(colors=True)
    else:
        shared.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
