"""
Tests for the request coordinator.

Tests verify:
- Results of superseded cycles never reach callbacks
- Loading flags are cleared only by the current generation
- Failures resolve only their own chart
- Streams apply batches in order and drain stale batches silently
- Timeouts surface as RequestTimeoutError
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from services.agg_stream import AggregationStream
from services.aggregations import AggregationResult, DataShapeError
from services.request_coordinator import (
    ChartState,
    RequestCoordinator,
    RequestTimeoutError,
)
from tests.fakes import result


def _after(gate: asyncio.Event, value):
    async def _fetch():
        await gate.wait()
        return value

    return _fetch


def _raising(exc):
    async def _fetch():
        raise exc

    return _fetch


async def _batches(queue: asyncio.Queue):
    while True:
        item = await queue.get()
        if isinstance(item, BaseException):
            raise item
        yield item
        if item is None:
            return


def _stream(queue: asyncio.Queue, generation: int) -> AggregationStream:
    return AggregationStream(_batches(queue), generation=generation)


class TestCycles:
    def test_begin_cycle_increments(self):
        coordinator = RequestCoordinator()
        assert coordinator.generation == 0
        assert coordinator.begin_cycle() == 1
        assert coordinator.begin_cycle() == 2
        assert coordinator.is_current(2)
        assert not coordinator.is_current(1)

    def test_timeout_normalized(self):
        assert RequestCoordinator(timeout=0).timeout is None
        assert RequestCoordinator(timeout=-3).timeout is None
        assert RequestCoordinator(timeout=5).timeout == 5

    @pytest.mark.asyncio
    async def test_stale_submit_is_dropped(self):
        coordinator = RequestCoordinator()
        old = coordinator.begin_cycle()
        coordinator.begin_cycle()
        on_result = MagicMock()
        assert coordinator.submit("a", old, _raising(RuntimeError()), on_result) is None
        assert coordinator.status("a").state == ChartState.IDLE

    @pytest.mark.asyncio
    async def test_submit_after_close_raises(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        await coordinator.close()
        with pytest.raises(RuntimeError):
            coordinator.submit("a", generation, _raising(RuntimeError()), MagicMock())


class TestOneShot:
    @pytest.mark.asyncio
    async def test_result_applied_and_loading_cleared(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        gate = asyncio.Event()
        on_result = MagicMock()

        coordinator.submit("a", generation, _after(gate, result(("x", 1))), on_result)
        assert coordinator.loading("a")
        assert coordinator.any_loading

        gate.set()
        await coordinator.wait_settled()

        on_result.assert_called_once_with(result(("x", 1)))
        assert not coordinator.loading("a")
        assert coordinator.status("a").state == ChartState.COMPLETE

    @pytest.mark.asyncio
    async def test_empty_result_still_rendered(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        on_result = MagicMock()

        async def _fetch():
            return AggregationResult()

        coordinator.submit("a", generation, _fetch, on_result)
        await coordinator.wait_settled()
        on_result.assert_called_once()
        assert coordinator.status("a").state == ChartState.EMPTY

    @pytest.mark.asyncio
    async def test_out_of_order_completion_applies_latest_only(self):
        """A slow response from generation 1 landing after generation 2 is dropped."""
        coordinator = RequestCoordinator()
        applied = []
        slow, fast = asyncio.Event(), asyncio.Event()

        g1 = coordinator.begin_cycle()
        coordinator.submit("a", g1, _after(slow, "old"), applied.append)
        g2 = coordinator.begin_cycle()
        coordinator.submit("a", g2, _after(fast, "new"), applied.append)

        fast.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        slow.set()
        await coordinator.wait_settled()

        assert applied == ["new"]
        status = coordinator.status("a")
        assert status.generation == g2
        assert status.state == ChartState.COMPLETE

    @pytest.mark.asyncio
    async def test_superseded_ticket_does_not_clear_loading(self):
        coordinator = RequestCoordinator()
        old_gate, new_gate = asyncio.Event(), asyncio.Event()
        g1 = coordinator.begin_cycle()
        coordinator.submit("a", g1, _after(old_gate, 1), MagicMock())
        g2 = coordinator.begin_cycle()
        coordinator.submit("a", g2, _after(new_gate, 2), MagicMock())

        old_gate.set()
        await asyncio.sleep(0.01)
        assert coordinator.loading("a")

        new_gate.set()
        await coordinator.wait_settled()
        assert not coordinator.loading("a")

    @pytest.mark.asyncio
    async def test_begin_cycle_supersedes_requesting_tickets(self):
        coordinator = RequestCoordinator()
        gate = asyncio.Event()
        g1 = coordinator.begin_cycle()
        coordinator.submit("a", g1, _after(gate, 1), MagicMock())
        coordinator.begin_cycle()
        assert coordinator.status("a").state == ChartState.SUPERSEDED
        assert not coordinator.loading("a")
        gate.set()
        await coordinator.wait_settled()
        assert coordinator.status("a").state == ChartState.SUPERSEDED

    @pytest.mark.asyncio
    async def test_error_resolves_only_its_chart(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        on_error = MagicMock()
        ok = MagicMock()

        coordinator.submit("bad", generation, _raising(RuntimeError("boom")), MagicMock(), on_error=on_error)
        coordinator.submit("good", generation, _after(asyncio.Event(), None), ok)
        await asyncio.sleep(0.01)

        on_error.assert_called_once()
        assert coordinator.status("bad").state == ChartState.ERROR
        assert coordinator.status("bad").error == "boom"
        assert coordinator.loading("good")
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_stale_error_is_dropped(self):
        coordinator = RequestCoordinator()
        gate = asyncio.Event()
        on_error = MagicMock()

        async def _fail_later():
            await gate.wait()
            raise RuntimeError("late")

        g1 = coordinator.begin_cycle()
        coordinator.submit("a", g1, _fail_later, MagicMock(), on_error=on_error)
        coordinator.begin_cycle()
        gate.set()
        await coordinator.wait_settled()
        on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_data_shape_error_skips_without_on_error(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        on_error, on_skip = MagicMock(), MagicMock()

        coordinator.submit(
            "a", generation, _raising(DataShapeError("rows must be an array")), MagicMock(),
            on_error=on_error, on_skip=on_skip,
        )
        await coordinator.wait_settled()

        on_error.assert_not_called()
        on_skip.assert_called_once()
        status = coordinator.status("a")
        assert status.state == ChartState.ERROR
        assert status.error.startswith("EVS-DATA-001")

    @pytest.mark.asyncio
    async def test_on_result_failure_is_an_error(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        on_error = MagicMock()

        async def _fetch():
            return 1

        coordinator.submit("a", generation, _fetch, MagicMock(side_effect=ValueError("render")), on_error=on_error)
        await coordinator.wait_settled()
        on_error.assert_called_once()
        assert coordinator.status("a").state == ChartState.ERROR

    @pytest.mark.asyncio
    async def test_timeout(self):
        coordinator = RequestCoordinator(timeout=0.01)
        generation = coordinator.begin_cycle()
        on_error = MagicMock()

        coordinator.submit("slow", generation, _after(asyncio.Event(), 1), MagicMock(), on_error=on_error)
        await coordinator.wait_settled()

        (exc,), _ = on_error.call_args
        assert isinstance(exc, RequestTimeoutError)
        assert exc.code == "EVS-RC-001"
        assert coordinator.status("slow").state == ChartState.ERROR

    @pytest.mark.asyncio
    async def test_wait_settled_covers_tasks_spawned_by_callbacks(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        applied = []

        async def _value(v):
            await asyncio.sleep(0)
            return v

        def _spawn_child(value):
            applied.append(value)
            coordinator.submit("child", generation, lambda: _value("child"), applied.append)

        coordinator.submit("parent", generation, lambda: _value("parent"), _spawn_child)
        await coordinator.wait_settled()
        assert applied == ["parent", "child"]

    @pytest.mark.asyncio
    async def test_forget_drops_settled_tickets(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()

        async def _fetch():
            return 1

        for key in ("sparkline:a", "sparkline:b", "other"):
            coordinator.submit(key, generation, _fetch, MagicMock())
        await coordinator.wait_settled()
        coordinator.forget("sparkline:", {"sparkline:b"})
        assert sorted(coordinator.statuses()) == ["other", "sparkline:b"]


class TestStreams:
    @pytest.mark.asyncio
    async def test_batches_in_order(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        queue: asyncio.Queue = asyncio.Queue()
        seen = []
        done = MagicMock()

        coordinator.submit_stream(
            "s", generation, lambda: _stream(queue, generation),
            lambda batch, seq: seen.append((seq, batch.rows[0].count)),
            on_done=done,
        )
        for n in (1, 2, 3):
            queue.put_nowait(result(("k", n)))
        queue.put_nowait(None)
        await coordinator.wait_settled()

        assert seen == [(0, 1), (1, 2), (2, 3)]
        done.assert_called_once_with(result(("k", 3)))
        status = coordinator.status("s")
        assert status.state == ChartState.COMPLETE
        assert status.batches == 3

    @pytest.mark.asyncio
    async def test_no_batches_is_empty(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        queue: asyncio.Queue = asyncio.Queue()
        done = MagicMock()

        coordinator.submit_stream("s", generation, lambda: _stream(queue, generation), MagicMock(), on_done=done)
        queue.put_nowait(None)
        await coordinator.wait_settled()

        done.assert_called_once_with(None)
        assert coordinator.status("s").state == ChartState.EMPTY

    @pytest.mark.asyncio
    async def test_stale_batches_drained_silently(self):
        coordinator = RequestCoordinator()
        g1 = coordinator.begin_cycle()
        queue: asyncio.Queue = asyncio.Queue()
        seen = []
        done = MagicMock()
        on_error = MagicMock()

        coordinator.submit_stream(
            "s", g1, lambda: _stream(queue, g1),
            lambda batch, seq: seen.append(batch), on_done=done, on_error=on_error,
        )
        queue.put_nowait(result(("k", 1)))
        await asyncio.sleep(0.01)
        coordinator.begin_cycle()
        queue.put_nowait(result(("k", 2)))
        queue.put_nowait(RuntimeError("late failure"))
        await coordinator.wait_settled()

        assert len(seen) == 1
        done.assert_not_called()
        on_error.assert_not_called()
        assert coordinator.status("s").state == ChartState.SUPERSEDED

    @pytest.mark.asyncio
    async def test_stream_error_resolves_error(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        queue: asyncio.Queue = asyncio.Queue()
        on_error = MagicMock()

        coordinator.submit_stream(
            "s", generation, lambda: _stream(queue, generation), MagicMock(), on_error=on_error
        )
        queue.put_nowait(result(("k", 1)))
        queue.put_nowait(RuntimeError("reset"))
        await coordinator.wait_settled()

        on_error.assert_called_once()
        assert coordinator.status("s").state == ChartState.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_stream_before_any_batch_is_superseded(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        queue: asyncio.Queue = asyncio.Queue()
        streams = []
        done = MagicMock()

        def _open():
            stream = _stream(queue, generation)
            streams.append(stream)
            return stream

        coordinator.submit_stream("s", generation, _open, MagicMock(), on_done=done)
        await asyncio.sleep(0.01)
        streams[0].cancel()
        await coordinator.wait_settled()

        done.assert_not_called()
        assert coordinator.status("s").state == ChartState.SUPERSEDED

    @pytest.mark.asyncio
    async def test_close_cancels_pending_work(self):
        coordinator = RequestCoordinator()
        generation = coordinator.begin_cycle()
        queue: asyncio.Queue = asyncio.Queue()
        on_result = MagicMock()

        coordinator.submit("a", generation, _after(asyncio.Event(), 1), on_result)
        coordinator.submit_stream("s", generation, lambda: _stream(queue, generation), MagicMock())
        await asyncio.sleep(0)
        await coordinator.close()
        await coordinator.close()

        on_result.assert_not_called()
        assert not coordinator.any_loading
        assert coordinator.status("a").state == ChartState.SUPERSEDED
        assert coordinator.status("s").state == ChartState.SUPERSEDED
