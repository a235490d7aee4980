"""
evescope - Streaming aggregation channel

An AggregationStream is a lazy, finite, non-restartable async sequence of
partial AggregationResult batches. The underlying source terminates the
sequence with a ``None`` (done) marker or by running out.

cancel() is a first-class operation: it stops the producer and wakes any
consumer, which then sees the end of the sequence. Batches already buffered
when cancel() is called are not delivered.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from services.aggregations import AggregationResult

log = logging.getLogger("evescope.agg_stream")

_DONE = object()


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


class AggregationStream:
    def __init__(
        self,
        source: AsyncIterator[Optional[AggregationResult]],
        *,
        generation: int,
        label: str = "",
        on_close: Optional[Callable[["AggregationStream"], None]] = None,
    ) -> None:
        self._source = source
        self._generation = int(generation)
        self._label = label
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None
        self._cancelled = False
        self._exhausted = False
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"AggregationStream(label={self._label!r}, generation={self._generation}, "
            f"cancelled={self._cancelled}, exhausted={self._exhausted})"
        )

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._exhausted or self._cancelled

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def _ensure_started(self) -> None:
        if self._pump is None and not self._cancelled:
            self._pump = asyncio.create_task(
                self._run(), name=f"evescope-stream:{self._label}:{self._generation}"
            )

    async def _run(self) -> None:
        try:
            async for item in self._source:
                if item is None:
                    break
                self._queue.put_nowait(item)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._queue.put_nowait(_Failure(exc))
        finally:
            self._queue.put_nowait(_DONE)
            await self._close_source()

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        except RuntimeError:
            # generator still running in another task
            log.debug("agg_stream.close_source_busy", extra={"label": self._label})
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def __aiter__(self) -> "AggregationStream":
        return self

    async def __anext__(self) -> AggregationResult:
        if self.done:
            raise StopAsyncIteration
        self._ensure_started()
        item = await self._queue.get()
        if self._cancelled or item is _DONE:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._exhausted = True
            raise item.exc
        return item

    def cancel(self) -> None:
        """Best-effort cancellation; safe to call repeatedly and from any callback."""
        if self._cancelled:
            return
        self._cancelled = True
        log.debug(
            "agg_stream.cancel",
            extra={"label": self._label, "generation": self._generation},
        )
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._mark_closed()
        self._queue.put_nowait(_DONE)

    async def aclose(self) -> None:
        self.cancel()
        if self._pump is not None and not self._pump.done():
            # wait() neither re-raises the pump's own cancellation nor hides ours
            await asyncio.wait((self._pump,))

    async def __aenter__(self) -> "AggregationStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
