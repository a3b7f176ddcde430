"""Tests for retry_with_backoff."""

from unittest.mock import AsyncMock, patch

import pytest

from rag_pipeline.core.retry import retry_with_backoff


class TransientError(Exception):
    pass


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        func = AsyncMock(return_value="ok")
        assert await retry_with_backoff(func, initial_delay=0) == "ok"
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_errors_with_growing_delays(self):
        func = AsyncMock(side_effect=[TransientError("a"), TransientError("b"), "done"])
        with patch("rag_pipeline.core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await retry_with_backoff(
                func,
                max_retries=3,
                initial_delay=1.0,
                backoff_factor=2.0,
                retry_on=(TransientError,),
            )

        assert result == "done"
        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self):
        func = AsyncMock(side_effect=[TransientError(), TransientError(), TransientError(), 1])
        with patch("rag_pipeline.core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_with_backoff(
                func, max_retries=3, initial_delay=4.0, backoff_factor=3.0, max_delay=5.0
            )
        assert [call.args[0] for call in sleep.await_args_list] == [4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        func = AsyncMock(side_effect=[TransientError("first"), TransientError("last")])
        with patch("rag_pipeline.core.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TransientError, match="last"):
                await retry_with_backoff(func, max_retries=1, retry_on=(TransientError,))
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_raised_immediately(self):
        func = AsyncMock(side_effect=KeyError("bad request"))
        with pytest.raises(KeyError):
            await retry_with_backoff(func, max_retries=5, retry_on=(TransientError,))
        assert func.await_count == 1
