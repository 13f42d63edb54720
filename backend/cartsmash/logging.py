"""structlog setup for hosts embedding the checkout engine.

The orchestrator binds ``checkout_session_id``, ``retailer_id`` and ``step``
as contextvars for the duration of each operation, so every event from the
client, matcher and queue can be tied back to one checkout. Call
``configure_logging()`` once at host startup; library modules only ever call
``structlog.get_logger``.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog

from cartsmash.config import settings

# Keys that may carry a signed-in user's credentials.
_REDACTED_KEYS = frozenset({"auth_token", "authorization", "token"})


def redact_credentials(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in _REDACTED_KEYS & event_dict.keys():
        event_dict[key] = "***"
    return event_dict


class _TeeWriter:
    """Fan each rendered line out to stdout and an append-only checkout log.

    A log file that cannot be opened or written is dropped with one warning
    on stderr; stdout keeps working.
    """

    def __init__(self, file_path: str) -> None:
        self._path = file_path
        self._file: TextIO | None = None
        try:
            self._file = open(file_path, "a")  # noqa: SIM115
        except OSError as exc:
            self._disable(f"could not open ({exc})")

    def _disable(self, reason: str) -> None:
        self._file = None
        print(
            f"WARNING: checkout log file {self._path!r} {reason}; logging to stdout only.",
            file=sys.stderr,
        )

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._file is None:
            return
        try:
            self._file.write(data)
            self._file.flush()
        except (OSError, ValueError) as exc:
            self._disable(f"write failed ({exc})")

    def flush(self) -> None:
        sys.stdout.flush()


def configure_logging(*, level: str | None = None, environment: str | None = None) -> None:
    """Console renderer in development, JSON lines elsewhere.

    ``level``/``environment`` override LOG_LEVEL/ENVIRONMENT for hosts that
    manage their own config. LOG_FILE, when set, tees output to that file.
    """
    environment = environment or settings.environment
    level_name = (level or settings.log_level).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer = (
        structlog.dev.ConsoleRenderer()
        if environment == "development"
        else structlog.processors.JSONRenderer()
    )
    if settings.log_file:
        factory = structlog.PrintLoggerFactory(file=_TeeWriter(settings.log_file))  # type: ignore[arg-type]
    else:
        factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_credentials,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=factory,
        cache_logger_on_first_use=False,
    )
