"""structlog setup shared by the API process and scripts.

Console output in development, JSON lines elsewhere. When LOG_FILE is set
every line is also appended to that file.
"""

from __future__ import annotations

import logging
import sys
from typing import IO

import structlog

from atelier.config import settings

# Third-party loggers that are chatty at INFO (every boto request, every
# connection checkout).
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer", "sqlalchemy.engine")


class _TeeWriter:
    """File-like object writing to stdout and, when possible, a log file.

    A log file that cannot be opened or written is dropped with a warning
    on stderr; stdout logging keeps working.
    """

    def __init__(self, file_path: str) -> None:
        self._path = file_path
        self._file: IO[str] | None = None
        try:
            self._file = open(file_path, "a")  # noqa: SIM115
        except OSError as exc:
            self._disable(f"could not open log file {file_path!r}: {exc}")

    def _disable(self, reason: str) -> None:
        self._file = None
        print(f"WARNING: {reason}. Logging to stdout only.", file=sys.stderr)

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._file is None:
            return
        try:
            self._file.write(data)
            self._file.flush()
        except (OSError, ValueError) as exc:
            self._disable(f"write to {self._path!r} failed: {exc}")

    def flush(self) -> None:
        sys.stdout.flush()
        if self._file is None:
            return
        try:
            self._file.flush()
        except (OSError, ValueError) as exc:
            self._disable(f"flush of {self._path!r} failed: {exc}")


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(
    environment: str | None = None,
    log_level: str | None = None,
    log_file: str | None = None,
) -> None:
    """Configure structlog for the process.

    Arguments default to the values in settings; they exist so scripts and
    tests can force a renderer without touching the environment.
    """
    environment = environment or settings.environment
    level = _resolve_level(log_level or settings.log_level)
    log_file = settings.log_file if log_file is None else log_file

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if environment == "development":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(),
            ]
        )

    logger_factory: structlog.types.WrappedLogger
    if log_file:
        # PrintLoggerFactory only needs write() and flush()
        logger_factory = structlog.PrintLoggerFactory(file=_TeeWriter(log_file))  # type: ignore[arg-type]
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
