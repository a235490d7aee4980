"""
evescope - EVE event backend connector

The dashboard talks to the event store through the EventBackend protocol.
HttpEventBackend implements it over the backend's JSON/SSE HTTP API with
httpx. Every failure surfaces as BackendError with a deterministic code:

  EVS-BE-001  request timed out
  EVS-BE-002  transport failure (connect/reset/protocol)
  EVS-BE-003  backend answered with an error status
  EVS-BE-004  backend answered with a body that is not JSON
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional, Protocol

import httpx

from services.agg_stream import AggregationStream
from services.aggregations import (
    AggregationResult,
    TimeBucket,
    SeverityBucket,
    parse_agg_result,
    parse_severity_histogram,
    parse_time_histogram,
)
from services.query_composer import QueryDescriptor

log = logging.getLogger("evescope.backend")

ERR_TIMEOUT = "EVS-BE-001"
ERR_TRANSPORT = "EVS-BE-002"
ERR_HTTP_STATUS = "EVS-BE-003"
ERR_BAD_JSON = "EVS-BE-004"

RETRYABLE_STATUSES = {408, 425, 429, 500, 502, 503, 504}

PIVOT_AGG = "pivot"
_SSE_DATA = "data:"


class BackendError(RuntimeError):
    def __init__(
        self,
        code: str,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(detail or code)
        self.code = code
        self.retryable = retryable
        self.status_code = status_code
        self.detail = detail


class EventBackend(Protocol):
    async def aggregate(self, descriptor: QueryDescriptor) -> AggregationResult: ...

    def stream_aggregate(
        self, descriptor: QueryDescriptor, generation: int
    ) -> AggregationStream: ...

    async def histogram_time(
        self,
        time_range: str,
        interval: Optional[str] = None,
        event_type: Optional[str] = None,
        query_string: str = "",
    ) -> list[TimeBucket]: ...

    async def histogram_severity(
        self, time_range: str, interval: Optional[str] = None, query_string: str = ""
    ) -> list[SeverityBucket]: ...

    async def query(self, agg: str, params: dict[str, Any]) -> dict[str, Any]: ...

    async def event_types(self, time_range: str) -> list[str]: ...

    def cancel_all_streams(self) -> None: ...

    async def aclose(self) -> None: ...


def _histogram_params(
    time_range: str,
    interval: Optional[str],
    event_type: Optional[str],
    query_string: str,
) -> dict[str, Any]:
    params: dict[str, Any] = {"time_range": time_range}
    if interval:
        params["interval"] = interval
    if event_type:
        params["event_type"] = event_type
    if query_string:
        params["query_string"] = query_string
    return params


class HttpEventBackend:
    """EventBackend over HTTP. One instance per dashboard session."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
        )
        self._stream_timeout = httpx.Timeout(timeout, read=None)
        self._streams: set[AggregationStream] = set()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_for_status(response: httpx.Response, path: str) -> None:
        if response.status_code < 400:
            return
        log.warning(
            "backend.http_status",
            extra={"path": path, "status_code": response.status_code},
        )
        raise BackendError(
            ERR_HTTP_STATUS,
            retryable=response.status_code in RETRYABLE_STATUSES,
            status_code=response.status_code,
            detail=f"{path} returned HTTP {response.status_code}",
        )

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise BackendError(ERR_TIMEOUT, retryable=True, detail=f"{path} timed out") from exc
        except httpx.HTTPError as exc:
            raise BackendError(
                ERR_TRANSPORT, retryable=True, detail=f"{path}: {type(exc).__name__}"
            ) from exc
        self._raise_for_status(response, path)
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                ERR_BAD_JSON, status_code=response.status_code, detail=f"{path} returned invalid JSON"
            ) from exc

    # ------------------------------------------------------------------
    # One-shot requests
    # ------------------------------------------------------------------

    async def aggregate(self, descriptor: QueryDescriptor) -> AggregationResult:
        payload = await self._get_json("api/agg", descriptor.agg_params())
        return parse_agg_result(payload)

    async def histogram_time(
        self,
        time_range: str,
        interval: Optional[str] = None,
        event_type: Optional[str] = None,
        query_string: str = "",
    ) -> list[TimeBucket]:
        payload = await self._get_json(
            "api/report/histogram/time",
            _histogram_params(time_range, interval, event_type, query_string),
        )
        return parse_time_histogram(payload)

    async def histogram_severity(
        self, time_range: str, interval: Optional[str] = None, query_string: str = ""
    ) -> list[SeverityBucket]:
        payload = await self._get_json(
            "api/report/histogram/severity",
            _histogram_params(time_range, interval, None, query_string),
        )
        return parse_severity_histogram(payload)

    async def query(self, agg: str, params: dict[str, Any]) -> dict[str, Any]:
        """
        Ad-hoc analytics. ``pivot`` is the multi-field aggregation endpoint,
        everything else (heatmap, flow-bytes, ...) goes to the analytics
        endpoint keyed by ``agg``.
        """
        clean = {k: v for k, v in params.items() if v is not None and v != ""}
        if agg == PIVOT_AGG:
            payload = await self._get_json("api/aggregations", clean)
        else:
            payload = await self._get_json("api/analytics", {"agg": agg, **clean})
        if not isinstance(payload, dict):
            raise BackendError(ERR_BAD_JSON, detail=f"{agg} payload must be an object")
        return payload

    async def event_types(self, time_range: str) -> list[str]:
        payload = await self._get_json("api/event_types", {"time_range": time_range})
        if isinstance(payload, dict):
            payload = payload.get("event_types", [])
        if not isinstance(payload, list):
            raise BackendError(ERR_BAD_JSON, detail="event_types payload must be an array")
        return [str(t) for t in payload if t]

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _sse_batches(
        self, descriptor: QueryDescriptor
    ) -> AsyncIterator[Optional[AggregationResult]]:
        path = "api/sse/agg"
        try:
            async with self._client.stream(
                "GET",
                path,
                params=descriptor.agg_params(),
                headers={"Accept": "text/event-stream"},
                timeout=self._stream_timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                self._raise_for_status(response, path)
                async for line in response.aiter_lines():
                    if not line.startswith(_SSE_DATA):
                        continue
                    raw = line[len(_SSE_DATA):].strip()
                    try:
                        data = json.loads(raw)
                    except ValueError as exc:
                        raise BackendError(
                            ERR_BAD_JSON, detail=f"{path} sent an invalid event"
                        ) from exc
                    if data is None:
                        yield None
                        return
                    yield parse_agg_result(data)
        except httpx.TimeoutException as exc:
            raise BackendError(ERR_TIMEOUT, retryable=True, detail=f"{path} timed out") from exc
        except httpx.HTTPError as exc:
            raise BackendError(
                ERR_TRANSPORT, retryable=True, detail=f"{path}: {type(exc).__name__}"
            ) from exc

    def stream_aggregate(
        self, descriptor: QueryDescriptor, generation: int
    ) -> AggregationStream:
        stream = AggregationStream(
            self._sse_batches(descriptor),
            generation=generation,
            label=descriptor.field or "",
            on_close=self._streams.discard,
        )
        self._streams.add(stream)
        return stream

    @property
    def open_streams(self) -> int:
        return len(self._streams)

    def cancel_all_streams(self) -> None:
        streams = list(self._streams)
        self._streams.clear()
        if streams:
            log.debug("backend.cancel_all_streams", extra={"count": len(streams)})
        for stream in streams:
            stream.cancel()

    async def aclose(self) -> None:
        self.cancel_all_streams()
        if self._owns_client:
            await self._client.aclose()
