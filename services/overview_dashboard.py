"""
evescope - Overview dashboard

The page controller. Owns the filter state, subscribes to it, and on every
change fans one refresh cycle out into independent chart requests through the
request coordinator. Results land in the chart sink registry; clicks come
back through cross-filter feedback and mutate the filter state again.

Charts per cycle:
  top:*               8 streamed top-N tables
  protocolMix         streamed donut, patched in place between batches
  eventsByType        stacked histogram, one series per event type
  eventsPerMinute     alert histogram with an average line
  severityStack       stacked severity histogram
  topTalkersSrc/Dst   top source / destination addresses
  topSignatures       top signatures, plus one sparkline:<signature> each
  dnsHttpTls          grouped protocol metadata counts
  heatmap             hour x weekday bubble chart
  flowDuration        flow duration distribution
  bytesScatter        bytes to server vs bytes to client
  pivot               source -> signature -> destination links
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from services.aggregations import (
    AggregationResult,
    AggRow,
    parse_flow_points,
    parse_heatmap,
    parse_pivot_rows,
)
from services.chart_configs import (
    InteractionEvent,
    Series,
    TIMESTAMP_LOCAL,
    bar_chart,
    bytes_scatter_chart,
    donut_chart,
    empty_chart,
    error_chart,
    events_by_type_chart,
    events_per_minute_chart,
    format_time,
    grouped_bar_chart,
    heatmap_chart,
    palette,
    pivot_chart,
    severity_stack_chart,
    sparkline_chart,
    table_view,
)
from services.chart_sinks import ChartSinkRegistry
from services.connectors.evebox import PIVOT_AGG, EventBackend
from services.cross_filter import CrossFilterFeedback
from services.error_sanitizer import describe_error
from services.filter_state import FilterSnapshot, FilterState
from services.notifications import NotificationCenter
from services.query_composer import (
    ALERTS,
    DNS,
    DNS_QUERIES,
    FLOWS,
    HTTP,
    QUIC,
    TLS,
    Restriction,
    aggregate_descriptor,
    compose,
)
from services.query_syntax import format_fragment
from services.request_coordinator import RequestCoordinator

log = logging.getLogger("evescope.dashboard")


@dataclass(frozen=True)
class TopTable:
    key: str
    title: str
    field: str
    restriction: Restriction
    quote: bool = False


TOP_TABLES = (
    TopTable("top:alerts", "Top Alerts", "alert.signature", ALERTS, quote=True),
    TopTable("top:dns", "Top DNS Requests", "dns.rrname", DNS_QUERIES),
    TopTable("top:tls_sni", "Top TLS SNI", "tls.sni", TLS),
    TopTable("top:quic_sni", "Top QUIC SNI", "quic.sni", QUIC),
    TopTable("top:src_ip", "Top Source IPs", "src_ip", FLOWS),
    TopTable("top:dest_ip", "Top Destination IPs", "dest_ip", FLOWS),
    TopTable("top:src_port", "Top Source Ports", "src_port", FLOWS),
    TopTable("top:dest_port", "Top Destination Ports", "dest_port", FLOWS),
)

PROTOCOL_MIX = "protocolMix"
EVENTS_BY_TYPE = "eventsByType"
EVENTS_PER_MINUTE = "eventsPerMinute"
SEVERITY_STACK = "severityStack"
TOP_TALKERS_SRC = "topTalkersSrc"
TOP_TALKERS_DST = "topTalkersDst"
TOP_SIGNATURES = "topSignatures"
DNS_HTTP_TLS = "dnsHttpTls"
HEATMAP = "heatmap"
FLOW_DURATION = "flowDuration"
BYTES_SCATTER = "bytesScatter"
PIVOT = "pivot"

SPARKLINE_PREFIX = "sparkline:"

CHART_TITLES = {
    **{t.key: t.title for t in TOP_TABLES},
    PROTOCOL_MIX: "Protocol Mix",
    EVENTS_BY_TYPE: "Events by Type",
    EVENTS_PER_MINUTE: "Events per Minute",
    SEVERITY_STACK: "Severity over Time",
    TOP_TALKERS_SRC: "Top Talkers · Src",
    TOP_TALKERS_DST: "Top Talkers · Dst",
    TOP_SIGNATURES: "Top Signatures",
    DNS_HTTP_TLS: "DNS / HTTP / TLS",
    HEATMAP: "Activity Heatmap",
    FLOW_DURATION: "Flow Duration",
    BYTES_SCATTER: "Flow Bytes",
    PIVOT: "Source → Signature → Destination",
}

HIDDEN_EVENT_TYPES = frozenset({"anomaly", "stats", "netflow"})
QUICK_FILTERS = ("event_type:alert", "alert.severity:1", "proto:tcp", "dns.type:query")

DNS_HTTP_TLS_FIELDS: tuple[tuple[str, Restriction], ...] = (
    ("dns.rrtype", DNS),
    ("dns.rrname", DNS),
    ("http.method", HTTP),
    ("http.status", HTTP),
    ("tls.version", TLS),
    ("tls.cipher", TLS),
)
PIVOT_FIELDS = "src_ip,alert.signature,dest_ip"


@dataclass(frozen=True)
class StackedSeries:
    labels: tuple[str, ...]
    series: tuple[Series, ...]

    @property
    def empty(self) -> bool:
        return not self.series


class OverviewDashboard:
    def __init__(
        self,
        backend: EventBackend,
        *,
        filters: Optional[FilterState] = None,
        registry: Optional[ChartSinkRegistry] = None,
        coordinator: Optional[RequestCoordinator] = None,
        notifications: Optional[NotificationCenter] = None,
        query_timeout: Optional[float] = None,
        timestamp_mode: str = TIMESTAMP_LOCAL,
        owns_backend: bool = False,
        auto_refresh: bool = True,
    ) -> None:
        self.backend = backend
        self.filters = filters if filters is not None else FilterState()
        self.registry = registry if registry is not None else ChartSinkRegistry()
        self.coordinator = coordinator or RequestCoordinator(timeout=query_timeout)
        self.notifications = notifications or NotificationCenter()
        self.cross_filter = CrossFilterFeedback(self.registry, self.filters)
        self._timestamp_mode = timestamp_mode
        self._owns_backend = owns_backend
        self._signatures: tuple[str, ...] = ()
        self._closed = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        if auto_refresh:
            self._unsubscribe = self.filters.subscribe(self._on_filters_changed)

    @property
    def generation(self) -> int:
        return self.coordinator.generation

    @property
    def signatures(self) -> tuple[str, ...]:
        return self._signatures

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_filters_changed(self, snapshot: FilterSnapshot) -> None:
        self.refresh(snapshot)

    # ------------------------------------------------------------------
    # Refresh cycle
    # ------------------------------------------------------------------

    def refresh(self, snapshot: Optional[FilterSnapshot] = None) -> int:
        """
        Start a new cycle and return its generation. Must run inside the
        event loop; the requests themselves are left running.
        """
        if self._closed:
            raise RuntimeError("dashboard is closed")
        snap = snapshot or self.filters.snapshot()
        generation = self.coordinator.begin_cycle()
        try:
            self.backend.cancel_all_streams()
        except Exception as exc:
            log.warning("dashboard.cancel_streams_failed", extra={"error": type(exc).__name__})
        log.info(
            "dashboard.refresh",
            extra={"generation": generation, "time_range": snap.time_range, "query": compose(snap)},
        )

        for table in TOP_TABLES:
            self._load_top_table(snap, generation, table)
        self._load_protocol_mix(snap, generation)
        self._load_events_by_type(snap, generation)
        self._load_events_per_minute(snap, generation)
        self._load_severity_stack(snap, generation)
        self._load_top_talkers(snap, generation, "src_ip", TOP_TALKERS_SRC)
        self._load_top_talkers(snap, generation, "dest_ip", TOP_TALKERS_DST)
        self._load_top_signatures(snap, generation)
        self._load_dns_http_tls(snap, generation)
        self._load_heatmap(snap, generation)
        self._load_flow_duration(snap, generation)
        self._load_bytes_scatter(snap, generation)
        self._load_pivot(snap, generation)
        return generation

    async def wait_settled(self) -> None:
        await self.coordinator.wait_settled()

    def _failed(self, key: str, *, notify: bool = True) -> Callable[[BaseException], None]:
        title = CHART_TITLES.get(key, key)

        def _on_error(exc: BaseException) -> None:
            if notify:
                self.notifications.add_error(
                    key, f"Failed to load {title}", detail=describe_error(exc)
                )
            self.registry.upsert(key, error_chart(title))

        return _on_error

    # ------------------------------------------------------------------
    # Streamed charts
    # ------------------------------------------------------------------

    def _load_top_table(self, snap: FilterSnapshot, generation: int, table: TopTable) -> None:
        descriptor = aggregate_descriptor(snap, table.field, table.restriction, streaming=True)

        def _on_batch(batch: AggregationResult, seq: int) -> None:
            self.registry.upsert(
                table.key, table_view(table.title, batch, table.field, quote=table.quote)
            )

        def _on_done(last: Optional[AggregationResult]) -> None:
            if last is None:
                self.registry.upsert(table.key, empty_chart(table.title))

        self.coordinator.submit_stream(
            table.key,
            generation,
            lambda: self.backend.stream_aggregate(descriptor, generation),
            _on_batch,
            on_done=_on_done,
            on_error=self._failed(table.key),
        )

    def _load_protocol_mix(self, snap: FilterSnapshot, generation: int) -> None:
        title = CHART_TITLES[PROTOCOL_MIX]
        descriptor = aggregate_descriptor(snap, "proto", FLOWS, streaming=True)

        def _on_batch(batch: AggregationResult, seq: int) -> None:
            config = donut_chart(title, batch.rows, "proto")
            if seq == 0:
                self.registry.upsert(PROTOCOL_MIX, config)
                return
            self.registry.patch(
                PROTOCOL_MIX,
                [r.key for r in batch.rows],
                [r.count for r in batch.rows],
                fallback=config,
            )

        def _on_done(last: Optional[AggregationResult]) -> None:
            if last is None:
                self.registry.upsert(PROTOCOL_MIX, empty_chart(title))

        self.coordinator.submit_stream(
            PROTOCOL_MIX,
            generation,
            lambda: self.backend.stream_aggregate(descriptor, generation),
            _on_batch,
            on_done=_on_done,
            on_error=self._failed(PROTOCOL_MIX),
        )

    # ------------------------------------------------------------------
    # Histograms
    # ------------------------------------------------------------------

    async def _fetch_events_by_type(self, snap: FilterSnapshot) -> StackedSeries:
        event_types = await self.backend.event_types(snap.time_range)
        query_string = compose(snap)
        responses = await asyncio.gather(
            *(
                self.backend.histogram_time(snap.time_range, None, t, query_string)
                for t in event_types
            ),
            return_exceptions=True,
        )
        times: Optional[tuple[datetime, ...]] = None
        series: list[Series] = []
        failures: list[BaseException] = []
        colors = palette(len(event_types))
        for idx, (event_type, buckets) in enumerate(zip(event_types, responses)):
            if isinstance(buckets, BaseException):
                if not isinstance(buckets, Exception):
                    raise buckets
                log.warning(
                    "dashboard.event_type_failed",
                    extra={"event_type": event_type, "error": type(buckets).__name__},
                )
                failures.append(buckets)
                continue
            bucket_times = tuple(b.time for b in buckets)
            if not bucket_times:
                log.debug("dashboard.event_type_empty", extra={"event_type": event_type})
                continue
            if times is None:
                times = bucket_times
            if bucket_times != times:
                log.error(
                    "dashboard.label_mismatch",
                    extra={"event_type": event_type, "expected": len(times), "got": len(bucket_times)},
                )
                continue
            series.append(
                Series(
                    label=event_type,
                    values=tuple(b.count for b in buckets),
                    colors=(colors[idx],),
                    hidden=event_type in HIDDEN_EVENT_TYPES,
                    stack="events",
                )
            )
        if failures and len(failures) == len(event_types):
            raise failures[0]
        labels = tuple(format_time(t, self._timestamp_mode) for t in times or ())
        return StackedSeries(labels=labels, series=tuple(series))

    def _load_events_by_type(self, snap: FilterSnapshot, generation: int) -> None:
        def _on_result(result: StackedSeries) -> None:
            self.registry.upsert(
                EVENTS_BY_TYPE,
                events_by_type_chart(result.labels, result.series, title=CHART_TITLES[EVENTS_BY_TYPE]),
            )

        self.coordinator.submit(
            EVENTS_BY_TYPE,
            generation,
            lambda: self._fetch_events_by_type(snap),
            _on_result,
            on_error=self._failed(EVENTS_BY_TYPE),
        )

    def _load_events_per_minute(self, snap: FilterSnapshot, generation: int) -> None:
        self.coordinator.submit(
            EVENTS_PER_MINUTE,
            generation,
            lambda: self.backend.histogram_time(
                snap.time_range, "1m", "alert", compose(snap, ALERTS)
            ),
            lambda buckets: self.registry.upsert(
                EVENTS_PER_MINUTE, events_per_minute_chart(buckets, mode=self._timestamp_mode)
            ),
            on_error=self._failed(EVENTS_PER_MINUTE),
        )

    def _load_severity_stack(self, snap: FilterSnapshot, generation: int) -> None:
        self.coordinator.submit(
            SEVERITY_STACK,
            generation,
            lambda: self.backend.histogram_severity(snap.time_range, "5m", compose(snap, ALERTS)),
            lambda buckets: self.registry.upsert(
                SEVERITY_STACK, severity_stack_chart(buckets, mode=self._timestamp_mode)
            ),
            on_error=self._failed(SEVERITY_STACK),
        )

    # ------------------------------------------------------------------
    # Aggregations
    # ------------------------------------------------------------------

    def _load_top_talkers(self, snap: FilterSnapshot, generation: int, field: str, key: str) -> None:
        descriptor = aggregate_descriptor(snap, field, ALERTS)
        self.coordinator.submit(
            key,
            generation,
            lambda: self.backend.aggregate(descriptor),
            lambda result: self.registry.upsert(
                key, bar_chart(CHART_TITLES[key], result.rows, field, horizontal=True)
            ),
            on_error=self._failed(key),
        )

    def _set_signatures(self, signatures: Sequence[str]) -> None:
        self._signatures = tuple(signatures)
        self.registry.retain(SPARKLINE_PREFIX, self._signatures)
        self.coordinator.forget(
            SPARKLINE_PREFIX, {SPARKLINE_PREFIX + s for s in self._signatures}
        )

    def _load_top_signatures(self, snap: FilterSnapshot, generation: int) -> None:
        descriptor = aggregate_descriptor(snap, "alert.signature", ALERTS)
        on_error = self._failed(TOP_SIGNATURES)

        def _on_result(result: AggregationResult) -> None:
            self.registry.upsert(
                TOP_SIGNATURES,
                bar_chart(
                    CHART_TITLES[TOP_SIGNATURES], result.rows, "alert.signature",
                    horizontal=True, quote=True,
                ),
            )
            self._set_signatures(result.keys())
            for signature in self._signatures:
                self._load_sparkline(snap, generation, signature)

        def _on_error(exc: BaseException) -> None:
            on_error(exc)
            self._set_signatures(())

        self.coordinator.submit(
            TOP_SIGNATURES,
            generation,
            lambda: self.backend.aggregate(descriptor),
            _on_result,
            on_error=_on_error,
        )

    def _load_sparkline(self, snap: FilterSnapshot, generation: int, signature: str) -> None:
        key = SPARKLINE_PREFIX + signature
        query_string = compose(
            snap, ALERTS, extra=(format_fragment("alert.signature", signature, force_quote=True),)
        )

        def _on_result(buckets) -> None:
            if signature in self._signatures:
                self.registry.upsert(key, sparkline_chart(signature, buckets, mode=self._timestamp_mode))

        def _on_error(exc: BaseException) -> None:
            if signature in self._signatures:
                self.registry.upsert(key, error_chart(signature))

        def _on_skip(exc: BaseException) -> None:
            # a sparkline must exist for every displayed signature
            if signature in self._signatures and key not in self.registry:
                self.registry.upsert(key, error_chart(signature))

        self.coordinator.submit(
            key,
            generation,
            lambda: self.backend.histogram_time(snap.time_range, "10m", "alert", query_string),
            _on_result,
            on_error=_on_error,
            on_skip=_on_skip,
        )

    async def _fetch_dns_http_tls(self, snap: FilterSnapshot) -> list[tuple[str, tuple[AggRow, ...]]]:
        results = await asyncio.gather(
            *(
                self.backend.aggregate(aggregate_descriptor(snap, field, restriction, size=6))
                for field, restriction in DNS_HTTP_TLS_FIELDS
            )
        )
        return [(field, result.rows) for (field, _), result in zip(DNS_HTTP_TLS_FIELDS, results)]

    def _load_dns_http_tls(self, snap: FilterSnapshot, generation: int) -> None:
        self.coordinator.submit(
            DNS_HTTP_TLS,
            generation,
            lambda: self._fetch_dns_http_tls(snap),
            lambda groups: self.registry.upsert(
                DNS_HTTP_TLS, grouped_bar_chart(CHART_TITLES[DNS_HTTP_TLS], groups)
            ),
            on_error=self._failed(DNS_HTTP_TLS),
            is_empty=lambda groups: not any(rows for _, rows in groups),
        )

    def _load_flow_duration(self, snap: FilterSnapshot, generation: int) -> None:
        descriptor = aggregate_descriptor(snap, "flow.duration", FLOWS, size=20)
        self.coordinator.submit(
            FLOW_DURATION,
            generation,
            lambda: self.backend.aggregate(descriptor),
            lambda result: self.registry.upsert(
                FLOW_DURATION, bar_chart(CHART_TITLES[FLOW_DURATION], result.rows, "flow.duration")
            ),
            on_error=self._failed(FLOW_DURATION),
        )

    # ------------------------------------------------------------------
    # Analytics queries
    # ------------------------------------------------------------------

    def _load_heatmap(self, snap: FilterSnapshot, generation: int) -> None:
        async def _fetch():
            return parse_heatmap(
                await self.backend.query("heatmap", {"time_range": snap.time_range, "q": compose(snap)})
            )

        self.coordinator.submit(
            HEATMAP,
            generation,
            _fetch,
            lambda cells: self.registry.upsert(HEATMAP, heatmap_chart(cells)),
            on_error=self._failed(HEATMAP),
        )

    def _load_bytes_scatter(self, snap: FilterSnapshot, generation: int) -> None:
        async def _fetch():
            return parse_flow_points(
                await self.backend.query(
                    "flow-bytes", {"time_range": snap.time_range, "q": compose(snap, FLOWS)}
                )
            )

        self.coordinator.submit(
            BYTES_SCATTER,
            generation,
            _fetch,
            lambda points: self.registry.upsert(BYTES_SCATTER, bytes_scatter_chart(points)),
            on_error=self._failed(BYTES_SCATTER),
        )

    def _load_pivot(self, snap: FilterSnapshot, generation: int) -> None:
        async def _fetch():
            return parse_pivot_rows(
                await self.backend.query(
                    PIVOT_AGG,
                    {
                        "time_range": snap.time_range,
                        "q": compose(snap, ALERTS),
                        "field": PIVOT_FIELDS,
                        "size": 8,
                    },
                )
            )

        self.coordinator.submit(
            PIVOT,
            generation,
            _fetch,
            lambda rows: self.registry.upsert(PIVOT, pivot_chart(rows)),
            on_error=self._failed(PIVOT),
        )

    # ------------------------------------------------------------------
    # Interaction and state
    # ------------------------------------------------------------------

    def interact(self, event: InteractionEvent) -> Optional[str]:
        """Cross-filter on a chart click. Returns the fragment added, if any."""
        return self.cross_filter.handle(event)

    def snapshot(self) -> dict[str, Any]:
        return {
            "filters": self.filters.snapshot().to_dict(),
            "url_params": self.filters.to_url_params(),
            "generation": self.coordinator.generation,
            "any_loading": self.coordinator.any_loading,
            "loading": self.coordinator.loading_flags(),
            "statuses": {k: s.to_dict() for k, s in self.coordinator.statuses().items()},
            "charts": self.registry.snapshot(),
            "signatures": list(self._signatures),
            "notifications": [n.to_dict() for n in self.notifications.items()],
            "quick_filters": list(QUICK_FILTERS),
        }

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.backend.cancel_all_streams()
        await self.coordinator.close()
        self.registry.destroy_all()
        self._signatures = ()
        if self._owns_backend:
            await self.backend.aclose()
