"""
Exponential backoff retry handler for catalog HTTP calls with jitter

- Exponential backoff: wait_time = (2 ** retries) * initial_delay + random.uniform(0, 1)
- Respects Retry-After header for 429 (Too Many Requests) responses
- Does not retry other 4xx responses
- Retries 5xx responses, transport errors and timeouts
"""

import asyncio
import random
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog

from .errors import RetryExhausted

logger = structlog.get_logger(__name__)

T = TypeVar('T')

DEFAULT_RETRY_AFTER = 60.0


async def fetch_with_exponential_backoff(
    api_call_func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    logger_context: Optional[Dict[str, Any]] = None
) -> T:
    """
    Execute an HTTP call with exponential backoff retry logic.

    Args:
        api_call_func: Async callable performing the request; it must call
            response.raise_for_status() so HTTP errors surface as exceptions
        max_retries: Maximum number of retry attempts
        initial_delay: Base delay for exponential backoff in seconds
        max_delay: Maximum delay cap in seconds
        logger_context: Additional context for structured logging

    Returns:
        The result of the successful call

    Raises:
        RetryExhausted: When max_retries is exceeded
        httpx.HTTPStatusError: For client errors (4xx except 429)
    """
    context = logger_context or {}
    retries = 0

    while True:
        try:
            result = await api_call_func()

            if retries > 0:
                logger.info("API call succeeded after retries", retries=retries, **context)

            return result

        except httpx.HTTPStatusError as e:
            status = e.response.status_code

            if status == 429:
                retries += 1
                if retries > max_retries:
                    raise RetryExhausted(retries, e)

                wait_time = min(_extract_retry_after(e.response.headers), max_delay)
                logger.warning(
                    "Rate limit hit (429), respecting Retry-After header",
                    wait_time=wait_time,
                    retries=retries,
                    max_retries=max_retries,
                    **context
                )
                await asyncio.sleep(wait_time)
                continue

            if 400 <= status < 500:
                logger.error("Client error - not retrying", status=status, error=str(e), **context)
                raise

            retries += 1
            if retries > max_retries:
                raise RetryExhausted(retries, e)

            wait_time = _calculate_backoff(retries, initial_delay, max_delay)
            logger.warning(
                "Server error - retrying with exponential backoff",
                status=status,
                retries=retries,
                max_retries=max_retries,
                wait_time=wait_time,
                **context
            )
            await asyncio.sleep(wait_time)

        except (httpx.TransportError, asyncio.TimeoutError) as e:
            retries += 1
            if retries > max_retries:
                raise RetryExhausted(retries, e)

            wait_time = _calculate_backoff(retries, initial_delay, max_delay)
            logger.warning(
                "Network/timeout error - retrying with exponential backoff",
                error_type=type(e).__name__,
                retries=retries,
                max_retries=max_retries,
                wait_time=wait_time,
                error=str(e),
                **context
            )
            await asyncio.sleep(wait_time)


def _calculate_backoff(
    retries: int,
    initial_delay: float = 1.0,
    max_delay: float = 30.0
) -> float:
    """Exponential backoff with jitter, capped at max_delay."""
    exponential_delay = (2 ** retries) * initial_delay
    jitter = random.uniform(0, 1)
    return min(exponential_delay + jitter, max_delay)


def _extract_retry_after(headers: httpx.Headers) -> float:
    """
    Extract Retry-After value in seconds.

    Supports both "Retry-After: 120" and the HTTP-date form. Defaults to 60
    seconds when the header is absent or unparseable.
    """
    retry_after_header = headers.get('Retry-After')

    if not retry_after_header:
        return DEFAULT_RETRY_AFTER

    try:
        return float(retry_after_header)
    except ValueError:
        pass

    try:
        retry_date = parsedate_to_datetime(retry_after_header)
    except (TypeError, ValueError):
        logger.warning("Failed to parse Retry-After header", header_value=retry_after_header)
        return DEFAULT_RETRY_AFTER

    return max(retry_date.timestamp() - time.time(), 0)
