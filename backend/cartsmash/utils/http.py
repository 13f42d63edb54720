"""Shared HTTP retry helpers for catalog and cart calls.

Retries transient failures (timeouts, transport errors, 429, 5xx) with
capped exponential backoff. Everything else is returned to the caller
on the first attempt.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
import structlog

from cartsmash.config import settings

log = structlog.get_logger("checkout.http")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.2
    max_delay_s: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=max(1, settings.retry_max_attempts),
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        )


class TransportError(Exception):
    """Every attempt failed before an HTTP response was received."""

    def __init__(self, message: str, *, timed_out: bool) -> None:
        super().__init__(message)
        self.timed_out = timed_out


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    policy: RetryPolicy,
    operation: str,
) -> httpx.Response:
    """Run ``send`` until it yields a non-transient response or attempts run out.

    The last response is returned even if its status is retryable, so the
    caller decides how a final 5xx is reported. Raises ``TransportError`` if
    the final attempt produced no response at all.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            resp = await send()
        except httpx.TimeoutException as exc:
            if attempt >= attempts:
                log.warning("http_timeout_final", operation=operation, attempts=attempt)
                raise TransportError(f"{operation} timed out", timed_out=True) from exc
            log.warning("http_timeout_retrying", operation=operation, attempt=attempt)
        except httpx.RequestError as exc:
            if attempt >= attempts:
                log.warning(
                    "http_transport_error_final",
                    operation=operation,
                    attempts=attempt,
                    error=type(exc).__name__,
                )
                raise TransportError(
                    f"{operation} failed: {type(exc).__name__}", timed_out=False
                ) from exc
            log.warning(
                "http_transport_error_retrying",
                operation=operation,
                attempt=attempt,
                error=type(exc).__name__,
            )
        else:
            if not is_retryable_status(resp.status_code) or attempt >= attempts:
                return resp
            log.warning(
                "http_status_retrying",
                operation=operation,
                status=resp.status_code,
                attempt=attempt,
            )

        await asyncio.sleep(policy.delay_for(attempt))

    raise AssertionError("unreachable")  # pragma: no cover
