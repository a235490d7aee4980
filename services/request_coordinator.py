"""
evescope - Request Coordinator

Runs the backend requests of one refresh cycle concurrently and decides which
completions may touch the screen.

Every cycle gets a generation number from begin_cycle(). Each request
("ticket") captures the generation current at issue time; every callback
compares it with the current generation and is silently dropped when stale.
There is no transport cancellation of one-shot requests.

Per-chart lifecycle, per cycle:

    IDLE -> REQUESTING -> COMPLETE | EMPTY | ERROR | SUPERSEDED

SUPERSEDED is terminal and produces no visual update.

INVARIANTS:
  - only the current generation's tickets clear loading flags
  - a failure (transport, timeout, data shape) resolves only its own chart
  - within one stream, batches apply in receipt order
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from api.metrics import REFRESH_CYCLES, STREAM_BATCHES, record_chart_outcome, record_discard
from services.agg_stream import AggregationStream
from services.aggregations import AggregationResult, DataShapeError
from services.error_sanitizer import describe_error

log = logging.getLogger("evescope.coordinator")

T = TypeVar("T")

OnError = Callable[[BaseException], None]


class ChartState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    COMPLETE = "complete"
    EMPTY = "empty"
    ERROR = "error"
    SUPERSEDED = "superseded"


TERMINAL_STATES = frozenset(
    {ChartState.COMPLETE, ChartState.EMPTY, ChartState.ERROR, ChartState.SUPERSEDED}
)


class RequestTimeoutError(RuntimeError):
    code = "EVS-RC-001"

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"{key} timed out after {timeout:g}s")
        self.key = key
        self.timeout = timeout


@dataclass(frozen=True)
class ChartStatus:
    key: str
    generation: int
    state: ChartState
    error: Optional[str] = None
    batches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "generation": self.generation,
            "state": self.state.value,
            "error": self.error,
            "batches": self.batches,
        }


class _Ticket:
    __slots__ = ("key", "generation", "state", "error", "batches", "issued_at", "stream")

    def __init__(self, key: str, generation: int) -> None:
        self.key = key
        self.generation = generation
        self.state = ChartState.REQUESTING
        self.error: Optional[str] = None
        self.batches = 0
        self.issued_at = time.monotonic()
        self.stream: Optional[AggregationStream] = None

    def status(self) -> ChartStatus:
        return ChartStatus(self.key, self.generation, self.state, self.error, self.batches)


def _default_is_empty(result: Any) -> bool:
    if result is None:
        return True
    empty = getattr(result, "empty", None)
    if isinstance(empty, bool):
        return empty
    try:
        return len(result) == 0
    except TypeError:
        return False


class RequestCoordinator:
    def __init__(self, *, timeout: Optional[float] = None) -> None:
        self._timeout = timeout if timeout and timeout > 0 else None
        self._generation = 0
        self._tickets: dict[str, _Ticket] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def begin_cycle(self) -> int:
        self._generation += 1
        superseded = 0
        for ticket in self._tickets.values():
            if ticket.state == ChartState.REQUESTING:
                self._resolve(ticket, ChartState.SUPERSEDED)
                superseded += 1
        REFRESH_CYCLES.inc()
        log.debug(
            "coordinator.begin_cycle",
            extra={"generation": self._generation, "superseded": superseded},
        )
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _is_live(self, ticket: _Ticket) -> bool:
        return ticket.generation == self._generation and self._tickets.get(ticket.key) is ticket

    def _issue(self, key: str, generation: int) -> Optional[_Ticket]:
        if self._closed:
            raise RuntimeError("coordinator is closed")
        if generation != self._generation:
            log.debug("coordinator.stale_submit", extra={"key": key, "generation": generation})
            record_discard("stale")
            return None
        previous = self._tickets.get(key)
        if previous is not None and previous.state == ChartState.REQUESTING:
            self._resolve(previous, ChartState.SUPERSEDED)
        ticket = _Ticket(key, generation)
        self._tickets[key] = ticket
        return ticket

    def _spawn(self, ticket: _Ticket, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"evescope:{ticket.key}:{ticket.generation}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve(self, ticket: _Ticket, state: ChartState, error: Optional[str] = None) -> None:
        if ticket.state in TERMINAL_STATES:
            return
        ticket.state = state
        ticket.error = error
        latency = None if state == ChartState.SUPERSEDED else time.monotonic() - ticket.issued_at
        record_chart_outcome(ticket.key, state.value, latency)

    def _discard_stale(self, ticket: _Ticket, reason: str = "stale") -> None:
        record_discard(reason)
        log.debug(
            "coordinator.discard",
            extra={"key": ticket.key, "generation": ticket.generation, "current": self._generation},
        )

    def _fail(
        self,
        ticket: _Ticket,
        exc: BaseException,
        on_error: Optional[OnError],
        on_skip: Optional[OnError] = None,
    ) -> None:
        if not self._is_live(ticket):
            self._discard_stale(ticket)
            return
        if isinstance(exc, DataShapeError):
            log.error(
                "coordinator.data_shape",
                extra={"key": ticket.key, "generation": ticket.generation, "error": str(exc)},
            )
            record_discard("shape")
            self._resolve(ticket, ChartState.ERROR, describe_error(exc))
            if on_skip is not None:
                on_skip(exc)
            return
        log.warning(
            "coordinator.request_failed",
            extra={
                "key": ticket.key,
                "generation": ticket.generation,
                "error": type(exc).__name__,
                "code": getattr(exc, "code", None),
            },
        )
        self._resolve(ticket, ChartState.ERROR, describe_error(exc))
        if on_error is not None:
            on_error(exc)

    async def _bounded(self, key: str, awaitable: Awaitable[T]) -> T:
        if self._timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, self._timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(key, self._timeout) from exc

    # ------------------------------------------------------------------
    # One-shot requests
    # ------------------------------------------------------------------

    def submit(
        self,
        key: str,
        generation: int,
        fetch: Callable[[], Awaitable[T]],
        on_result: Callable[[T], None],
        *,
        on_error: Optional[OnError] = None,
        on_skip: Optional[OnError] = None,
        is_empty: Callable[[Any], bool] = _default_is_empty,
    ) -> Optional[asyncio.Task]:
        """
        Issue one request for ``key``. ``on_result`` runs only if the ticket
        is still current when the fetch completes; it also runs for empty
        results so the chart can render its "no data" visual.

        Transport errors and timeouts go to ``on_error``. A data-shape
        mismatch only skips the update; ``on_skip`` is told about it.
        """
        ticket = self._issue(key, generation)
        if ticket is None:
            return None
        return self._spawn(ticket, self._run_one(ticket, fetch, on_result, on_error, on_skip, is_empty))

    async def _run_one(
        self,
        ticket: _Ticket,
        fetch: Callable[[], Awaitable[T]],
        on_result: Callable[[T], None],
        on_error: Optional[OnError],
        on_skip: Optional[OnError],
        is_empty: Callable[[Any], bool],
    ) -> None:
        try:
            result = await self._bounded(ticket.key, fetch())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(ticket, exc, on_error, on_skip)
            return
        if not self._is_live(ticket):
            self._discard_stale(ticket)
            return
        try:
            on_result(result)
        except Exception as exc:
            self._fail(ticket, exc, on_error, on_skip)
            return
        self._resolve(ticket, ChartState.EMPTY if is_empty(result) else ChartState.COMPLETE)

    # ------------------------------------------------------------------
    # Streaming requests
    # ------------------------------------------------------------------

    def submit_stream(
        self,
        key: str,
        generation: int,
        open_stream: Callable[[], AggregationStream],
        on_batch: Callable[[AggregationResult, int], None],
        *,
        on_done: Optional[Callable[[Optional[AggregationResult]], None]] = None,
        on_error: Optional[OnError] = None,
    ) -> Optional[asyncio.Task]:
        """
        Consume a streamed aggregation. ``on_batch(batch, seq)`` gets every
        batch received while the ticket is current (``seq`` counts applied
        batches from 0); ``on_done(last)`` runs once the stream ends, with
        the last applied batch or None.
        """
        ticket = self._issue(key, generation)
        if ticket is None:
            return None
        return self._spawn(ticket, self._run_stream(ticket, open_stream, on_batch, on_done, on_error))

    async def _consume(
        self,
        ticket: _Ticket,
        stream: AggregationStream,
        on_batch: Callable[[AggregationResult, int], None],
    ) -> Optional[AggregationResult]:
        last: Optional[AggregationResult] = None
        async for batch in stream:
            STREAM_BATCHES.labels(chart=ticket.key).inc()
            if not self._is_live(ticket):
                # keep draining; the transport is only cut by cancel-all
                self._discard_stale(ticket, "stale_batch")
                continue
            on_batch(batch, ticket.batches)
            ticket.batches += 1
            last = batch
        return last

    async def _run_stream(
        self,
        ticket: _Ticket,
        open_stream: Callable[[], AggregationStream],
        on_batch: Callable[[AggregationResult, int], None],
        on_done: Optional[Callable[[Optional[AggregationResult]], None]],
        on_error: Optional[OnError],
    ) -> None:
        stream: Optional[AggregationStream] = None
        try:
            stream = open_stream()
            ticket.stream = stream
            last = await self._bounded(ticket.key, self._consume(ticket, stream, on_batch))
            if not self._is_live(ticket):
                self._discard_stale(ticket)
                return
            if stream.cancelled and ticket.batches == 0:
                # cancel-all cut the stream before anything arrived
                self._resolve(ticket, ChartState.SUPERSEDED)
                return
            if on_done is not None:
                on_done(last)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(ticket, exc, on_error)
            return
        finally:
            if stream is not None:
                await stream.aclose()
        self._resolve(
            ticket,
            ChartState.EMPTY if last is None or last.empty else ChartState.COMPLETE,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def loading(self, key: str) -> bool:
        ticket = self._tickets.get(key)
        return (
            ticket is not None
            and ticket.generation == self._generation
            and ticket.state == ChartState.REQUESTING
        )

    def loading_flags(self) -> dict[str, bool]:
        return {key: self.loading(key) for key in self._tickets}

    @property
    def any_loading(self) -> bool:
        return any(self.loading(key) for key in self._tickets)

    def status(self, key: str) -> ChartStatus:
        ticket = self._tickets.get(key)
        if ticket is None:
            return ChartStatus(key, self._generation, ChartState.IDLE)
        return ticket.status()

    def statuses(self) -> dict[str, ChartStatus]:
        return {key: ticket.status() for key, ticket in self._tickets.items()}

    def forget(self, prefix: str, keep: set[str]) -> None:
        """Drop settled tickets under ``prefix`` whose keys are no longer in use."""
        for key in [k for k in self._tickets if k.startswith(prefix) and k not in keep]:
            if not self.loading(key):
                del self._tickets[key]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_settled(self) -> None:
        """Wait until no task is pending, including tasks spawned by callbacks."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        for ticket in self._tickets.values():
            if ticket.state == ChartState.REQUESTING:
                self._resolve(ticket, ChartState.SUPERSEDED)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.debug("coordinator.closed", extra={"cancelled": len(tasks)})
