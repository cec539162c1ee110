"""Structured logging configuration.

Modules log through ``structlog.get_logger(__name__)`` with an event name and
keyword context:

    log.info("chunk_accepted", job_id=job_id, next_offset=offset)

Log lines go to stderr so CLI summaries on stdout stay clean. Access and
refresh tokens are never passed as log context.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Set the level filter and renderer for every structlog logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: One JSON object per line (log aggregation) instead of console format
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
