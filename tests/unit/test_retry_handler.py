"""
Unit tests for the exponential backoff retry handler.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from setlist_sync.errors import RetryExhausted
from setlist_sync.retry_handler import (
    DEFAULT_RETRY_AFTER,
    _calculate_backoff,
    _extract_retry_after,
    fetch_with_exponential_backoff,
)


def _status_error(status: int, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/v1/thing")
    response = httpx.Response(status, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestFetchWithExponentialBackoff:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        call = AsyncMock(return_value={"ok": True})
        assert await fetch_with_exponential_backoff(call) == {"ok": True}
        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_server_errors_then_succeeds(self):
        call = AsyncMock(side_effect=[_status_error(503), _status_error(502), {"ok": True}])

        with patch("setlist_sync.retry_handler.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await fetch_with_exponential_backoff(call, max_retries=3)

        assert result == {"ok": True}
        assert call.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        call = AsyncMock(side_effect=_status_error(404))

        with pytest.raises(httpx.HTTPStatusError):
            await fetch_with_exponential_backoff(call)

        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        call = AsyncMock(side_effect=[_status_error(429, {"Retry-After": "2"}), {"ok": True}])

        with patch("setlist_sync.retry_handler.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await fetch_with_exponential_backoff(call)

        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_exhaustion_raises(self):
        call = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch("setlist_sync.retry_handler.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryExhausted) as exc_info:
                await fetch_with_exponential_backoff(call, max_retries=2)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, httpx.ConnectError)
        assert call.await_count == 3


class TestBackoffHelpers:
    def test_backoff_is_capped(self):
        assert _calculate_backoff(10, initial_delay=1.0, max_delay=30.0) == 30.0

    def test_backoff_grows(self):
        assert 2.0 <= _calculate_backoff(1, initial_delay=1.0, max_delay=60.0) <= 3.0
        assert 8.0 <= _calculate_backoff(3, initial_delay=1.0, max_delay=60.0) <= 9.0

    def test_retry_after_parsing(self):
        assert _extract_retry_after(httpx.Headers({"Retry-After": "120"})) == 120.0
        assert _extract_retry_after(httpx.Headers()) == DEFAULT_RETRY_AFTER
        assert _extract_retry_after(httpx.Headers({"Retry-After": "soon"})) == DEFAULT_RETRY_AFTER
        assert _extract_retry_after(httpx.Headers({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})) == 0
