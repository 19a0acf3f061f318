"""structlog configuration shared by the API process and its background pollers."""

from __future__ import annotations

import logging
import sys
from typing import IO, Any

import structlog

from fesoni.config import settings

_LOG_LEVEL_MAP: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_REDACTED = "***"


class _TeeWriter:
    """Write log lines to stdout and append them to a file.

    If the file cannot be opened or a write fails, file logging is dropped
    and stdout keeps working.
    """

    def __init__(self, file_path: str) -> None:
        self._file: IO[str] | None = None
        try:
            self._file = open(file_path, "a")  # noqa: SIM115
        except OSError as exc:
            # structlog is not configured yet
            print(
                f"WARNING: Could not open log file {file_path!r}: {exc}. "
                "Logging to stdout only.",
                file=sys.stderr,
            )

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._file is None:
            return
        try:
            self._file.write(data)
            self._file.flush()
        except (OSError, ValueError):
            self._disable("write")

    def flush(self) -> None:
        sys.stdout.flush()
        if self._file is None:
            return
        try:
            self._file.flush()
        except (OSError, ValueError):
            self._disable("flush")

    def _disable(self, op: str) -> None:
        self._file = None
        print(f"WARNING: Log file {op} failed. File logging disabled.", file=sys.stderr)


def _secrets() -> list[str]:
    return [
        s
        for s in (
            settings.anthropic_api_key,
            settings.rapidapi_key,
            settings.foxit_client_secret,
        )
        if s
    ]


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask API credentials that leak into error strings from remote services."""
    secrets = _secrets()
    if not secrets:
        return event_dict
    for key, value in event_dict.items():
        if isinstance(value, str):
            for secret in secrets:
                value = value.replace(secret, _REDACTED)
            event_dict[key] = value
    return event_dict


def configure_logging() -> None:
    """Console renderer in development, JSON lines everywhere else.

    LOG_FILE additionally tees every line to the given file.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer()
    )

    level = _LOG_LEVEL_MAP.get(settings.log_level.upper(), logging.INFO)

    logger_factory: structlog.types.WrappedLogger
    if settings.log_file:
        logger_factory = structlog.PrintLoggerFactory(file=_TeeWriter(settings.log_file))  # type: ignore[arg-type]
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )
