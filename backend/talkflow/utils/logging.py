# /talkflow/utils/logging.py

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from talkflow.config.settings import settings

# structlog on top of the stdlib logging tree, so uvicorn, gunicorn and
# library loggers come out in the same format as the engine's own events.

AUDIT_LOGGER_NAME = "talkflow.audit"

# Third-party loggers that only matter when something is wrong
QUIET_LOGGERS = ("uvicorn.access", "apscheduler.executors.default", "httpx")

_PRE_CHAIN = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _renderer(environment: str):
    if environment == "development":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(level: Optional[str] = None, environment: Optional[str] = None) -> None:
    """Route structlog and stdlib records through one stdout handler. Safe to call more than once."""
    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=_renderer(environment or settings.environment),
        foreign_pre_chain=_PRE_CHAIN,
    ))

    root = logging.getLogger()
    root.handlers = [stdout]
    root.setLevel((level or settings.log_level).upper())

    # Audit lines are kept whatever the root level
    logging.getLogger(AUDIT_LOGGER_NAME).setLevel(logging.INFO)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def command_context(command_name: str, talk_id: Optional[str]) -> Iterator[None]:
    """Tag every structlog event emitted while a command runs with the command and its Talk."""
    with structlog.contextvars.bound_contextvars(command=command_name, talk_id=talk_id):
        yield
