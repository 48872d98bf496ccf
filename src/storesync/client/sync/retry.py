"""Error classification and retry with exponential backoff.

This module provides:
- classify_error: transient vs permanent, with a suggested retry delay
- tag_error / is_permanent_error: the [RETRYABLE]/[PERMANENT] prefixes
  stored on journal entries so recovery logic never re-derives them
- retry_with_backoff: async exponential backoff retry of transient errors

Classification:
| Error                      | Category  | Delay |
|----------------------------|-----------|-------|
| network / timeout          | transient | 5s    |
| 5xx                        | transient | 10s   |
| 429                        | transient | 60s   |
| 404                        | transient | 2s    |
| 401 / 403 / other 4xx      | permanent | -     |
| parent not synced yet      | transient | -     |
| parent missing locally     | permanent | -     |
| anything else              | transient | 5s    |

Errors raised by storesync carry ``transient`` and ``retry_delay``
attributes; anything else is classified by type.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 2  # three attempts in total
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 30.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

NETWORK_RETRY_DELAY = 5.0
UNKNOWN_RETRY_DELAY = 5.0

RETRYABLE_TAG = "[RETRYABLE]"
PERMANENT_TAG = "[PERMANENT]"

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class ErrorCategory:
    """Classification of a failure."""

    transient: bool
    retry_delay: float | None
    reason: str


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an error as transient or permanent."""
    transient = getattr(error, "transient", None)
    if transient is not None:
        delay = getattr(error, "retry_delay", None) if transient else None
        return ErrorCategory(bool(transient), delay, type(error).__name__)
    if isinstance(error, NETWORK_EXCEPTIONS):
        return ErrorCategory(True, NETWORK_RETRY_DELAY, "network")
    return ErrorCategory(True, UNKNOWN_RETRY_DELAY, "unknown")


def strip_tag(message: str) -> str:
    for tag in (RETRYABLE_TAG, PERMANENT_TAG):
        if message.startswith(tag):
            return message[len(tag):].lstrip()
    return message


def tag_error(message: str, transient: bool) -> str:
    """Prefix an error message with its category tag."""
    tag = RETRYABLE_TAG if transient else PERMANENT_TAG
    return f"{tag} {strip_tag(message)}"


def describe_error(error: BaseException) -> str:
    """Tagged message for an error, as stored on a journal entry."""
    category = classify_error(error)
    return tag_error(str(error) or type(error).__name__, category.transient)


def is_permanent_error(message: str | None) -> bool:
    return message is not None and message.startswith(PERMANENT_TAG)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> T:
    """Await a coroutine function, retrying transient failures.

    Permanent failures (see classify_error) are raised immediately.

    Args:
        func: Coroutine function to execute.
        max_retries: Maximum number of retry attempts after the first one.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.

    Returns:
        Result of the coroutine.

    Raises:
        The last exception if all retries fail.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not classify_error(e).transient:
                raise
            if attempt == max_retries:
                logger.error(f"All {max_retries + 1} attempts failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")
