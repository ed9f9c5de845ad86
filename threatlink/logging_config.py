"""structlog setup for the threatlink command line.

The core modules only call ``get_logger``; until ``setup_logging`` runs
their events go through structlog's defaults, so library callers are not
forced into this configuration.
"""

import logging
import sys

import structlog
from structlog.types import Processor


LOG_FORMATS = ('json', 'console')


def _renderer(log_format: str) -> Processor:
    if log_format not in LOG_FORMATS:
        raise ValueError(f'Unknown log format {log_format!r} (expected one of: {", ".join(LOG_FORMATS)})')
    if log_format == 'json':
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def setup_logging(log_level: str = 'INFO', log_format: str = 'console') -> None:
    """Route structlog events through stdlib logging to stderr.

    stdout is reserved for reports (JSON models, diffs, summaries), so
    progress events such as ``scan_started`` or ``report_load_failed``
    never mix with machine-readable output.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.format_exc_info,
        _renderer(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format='%(message)s',
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
