"""structlog setup for the engine.

Engine modules log through structlog with keyword fields; the stdlib loggers
used by the plugin loader, the WebSocket sink and the runner are rendered by the
same formatter. Every line logged during a run carries `execution_id` (and
`batch_id` for batch runs) through contextvars.
"""

import logging
import sys
from typing import Optional

import structlog
from app.config import get_settings

# Libraries whose INFO output drowns the engine's own lines
QUIET_LOGGERS = ("aiosqlite", "httpx", "httpcore")


def _renderer(log_format: str, development: bool):
    if development or log_format == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    `level` and `log_format` default to LOG_LEVEL and LOG_FORMAT.
    """
    settings = get_settings()
    log_format = log_format or settings.LOG_FORMAT

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(log_format, settings.is_development),
        ],
        foreign_pre_chain=pre_chain,
    ))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def execution_log_context(execution_id: str, batch_id: Optional[str] = None):
    """Bind execution identifiers for the duration of a `with` block.

    Previous values are restored on exit, so one run never leaks its ids into
    the next log line of the caller.
    """
    fields = {"execution_id": execution_id}
    if batch_id:
        fields["batch_id"] = batch_id
    return structlog.contextvars.bound_contextvars(**fields)
