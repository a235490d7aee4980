import asyncio

import pytest

from services.agg_stream import AggregationStream
from services.aggregations import AggRow, AggregationResult


def _batch(n: int) -> AggregationResult:
    return AggregationResult(rows=(AggRow("k", n),))


async def _source(items, *, closed=None):
    try:
        for item in items:
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            yield item
    finally:
        if closed is not None:
            closed.append(True)


class TestAggregationStream:
    @pytest.mark.asyncio
    async def test_yields_batches_in_order_until_done_marker(self):
        stream = AggregationStream(_source([_batch(1), _batch(2), None, _batch(3)]), generation=1)
        got = [b.rows[0].count async for b in stream]
        assert got == [1, 2]
        assert stream.done
        assert not stream.cancelled

    @pytest.mark.asyncio
    async def test_source_exhaustion_ends_stream(self):
        stream = AggregationStream(_source([_batch(1)]), generation=1)
        assert [b.rows[0].count async for b in stream] == [1]

    @pytest.mark.asyncio
    async def test_source_error_is_reraised(self):
        stream = AggregationStream(_source([_batch(1), RuntimeError("boom")]), generation=3)
        first = await stream.__anext__()
        assert first.rows[0].count == 1
        with pytest.raises(RuntimeError, match="boom"):
            await stream.__anext__()
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_lazy_until_iterated(self):
        closed = []
        stream = AggregationStream(_source([_batch(1)], closed=closed), generation=1)
        await asyncio.sleep(0)
        assert closed == []
        assert stream.generation == 1

    @pytest.mark.asyncio
    async def test_cancel_wakes_waiting_consumer(self):
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            yield _batch(1)

        closes = []
        stream = AggregationStream(slow(), generation=1, on_close=closes.append)
        consumer = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0.01)
        stream.cancel()
        with pytest.raises(StopAsyncIteration):
            await consumer
        await stream.aclose()
        assert stream.cancelled
        assert closes == [stream]

    @pytest.mark.asyncio
    async def test_cancel_before_start_closes_once(self):
        closes = []
        stream = AggregationStream(_source([_batch(1)]), generation=1, on_close=closes.append)
        stream.cancel()
        stream.cancel()
        assert [b async for b in stream] == []
        await stream.aclose()
        assert closes == [stream]

    @pytest.mark.asyncio
    async def test_buffered_batches_not_delivered_after_cancel(self):
        stream = AggregationStream(_source([_batch(1), _batch(2), _batch(3)]), generation=1)
        first = await stream.__anext__()
        assert first.rows[0].count == 1
        await asyncio.sleep(0.01)
        stream.cancel()
        assert [b async for b in stream] == []

    @pytest.mark.asyncio
    async def test_context_manager_closes_source(self):
        closed = []
        async with AggregationStream(_source([_batch(1), _batch(2)], closed=closed), generation=1) as stream:
            await stream.__anext__()
        assert stream.cancelled
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_aclose_propagates_caller_cancellation(self):
        release = asyncio.Event()

        async def _slow_closing_source():
            try:
                yield _batch(1)
                await asyncio.Event().wait()
            finally:
                await release.wait()

        stream = AggregationStream(_slow_closing_source(), generation=1)
        await stream.__anext__()

        closer = asyncio.create_task(stream.aclose())
        for _ in range(3):
            await asyncio.sleep(0)
        assert not closer.done()

        closer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closer

        release.set()
        await stream.aclose()
        assert stream.cancelled
