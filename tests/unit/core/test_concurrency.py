"""Tests for bounded-concurrency helpers."""

import asyncio

import pytest

from rag_pipeline.core.concurrency import chunked, gather_bounded, outcomes_by_key


class TestChunked:
    def test_preserves_order_and_remainder(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_empty_input(self):
        assert list(chunked([], 3)) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestGatherBounded:
    @pytest.mark.asyncio
    async def test_outcomes_keep_input_order_and_keys(self):
        async def worker(item):
            # Later items finish first
            await asyncio.sleep(0.01 * (3 - item))
            return item * 10

        outcomes = await gather_bounded([1, 2, 3], worker, key=lambda i: f"doc{i}", limit=3)

        assert [o.key for o in outcomes] == ["doc1", "doc2", "doc3"]
        assert [o.value for o in outcomes] == [10, 20, 30]
        assert all(o.ok for o in outcomes)

    @pytest.mark.asyncio
    async def test_failure_is_captured_not_raised(self):
        async def worker(item):
            if item == 2:
                raise RuntimeError("boom")
            return item

        outcomes = await gather_bounded([1, 2, 3], worker, key=str, limit=2)
        by_key = outcomes_by_key(outcomes)

        assert by_key["1"].ok and by_key["3"].ok
        assert not by_key["2"].ok
        assert isinstance(by_key["2"].error, RuntimeError)
        assert by_key["2"].error_message == "boom"

    @pytest.mark.asyncio
    async def test_limit_bounds_in_flight_calls(self):
        in_flight = 0
        peak = 0

        async def worker(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return item

        await gather_bounded(list(range(10)), worker, key=str, limit=3)
        assert peak == 3

    @pytest.mark.asyncio
    async def test_rejects_non_positive_limit(self):
        async def worker(item):
            return item

        with pytest.raises(ValueError):
            await gather_bounded([1], worker, key=str, limit=0)
