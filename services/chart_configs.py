"""
evescope - Chart configuration variants

A ChartConfig is the immutable, renderer-neutral description of one visual:
labels, series, and an explicit element map from rendered elements back to
the ``{field, value}`` they were built from. Cross-filtering resolves clicks
through that map instead of reading anything back from the renderer.

Variants: BarChart, LineChart, DonutChart, BubbleChart, ScatterChart,
TableView and EmptyChart (explicit "no data" / "failed to load" visual).
Builder functions at the bottom turn parsed backend data into configs.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Iterable, Optional, Sequence

from services.aggregations import (
    AggregationResult,
    AggRow,
    FlowPoint,
    HeatCell,
    PivotRow,
    SeverityBucket,
    TimeBucket,
)
from services.query_syntax import Severity, format_fragment

NO_DATA_MESSAGE = "No data for the selected period"
LOAD_FAILED_MESSAGE = "Failed to load data"

PALETTE = (
    "#2e78d2",
    "#4caf50",
    "#ff9800",
    "#9c27b0",
    "#e91e63",
    "#00bcd4",
    "#795548",
    "#607d8b",
    "#cddc39",
    "#3f51b5",
)

_PROTOCOL_COLORS = {"tcp": "#2e78d2", "udp": "#4caf50", "icmp": "#9e9e9e", "quic": "#ff9800"}
_SEVERITY_COLORS = {
    Severity.LOW: "rgba(0, 176, 80, 0.6)",
    Severity.MEDIUM: "rgba(255, 193, 7, 0.6)",
    Severity.HIGH: "rgba(220, 53, 69, 0.6)",
}

TIMESTAMP_LOCAL = "local"
TIMESTAMP_UTC = "utc"


def palette(count: int) -> tuple[str, ...]:
    return tuple(PALETTE[i % len(PALETTE)] for i in range(count))


def protocol_color(proto: str) -> str:
    return _PROTOCOL_COLORS.get(str(proto).lower(), "#607d8b")


def format_time(ts: datetime, mode: str = TIMESTAMP_LOCAL) -> str:
    """Display-only formatting; never affects what is queried."""
    if mode == TIMESTAMP_UTC:
        return ts.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")
    return ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Interaction model
# ---------------------------------------------------------------------------


class InteractionKind(str, Enum):
    ELEMENT = "element"
    LEGEND = "legend"
    CHART = "chart"


@dataclass(frozen=True)
class InteractionEvent:
    chart: str
    kind: InteractionKind = InteractionKind.ELEMENT
    index: Optional[int] = None
    dataset_index: Optional[int] = None


@dataclass(frozen=True)
class ClickTarget:
    field: str
    value: str
    quote: bool = False

    def fragment(self) -> str:
        return format_fragment(self.field, self.value, force_quote=self.quote)


def _pick(targets: Sequence[Optional[ClickTarget]], idx: Optional[int]) -> Optional[ClickTarget]:
    if idx is None or idx < 0 or idx >= len(targets):
        return None
    return targets[idx]


# ---------------------------------------------------------------------------
# Config variants
# ---------------------------------------------------------------------------


class ChartType(str, Enum):
    BAR = "bar"
    LINE = "line"
    DOUGHNUT = "doughnut"
    BUBBLE = "bubble"
    SCATTER = "scatter"
    TABLE = "table"
    EMPTY = "empty"


@dataclass(frozen=True)
class Series:
    label: str
    values: tuple[float, ...] = ()
    kind: str = "bar"
    colors: tuple[str, ...] = ()
    hidden: bool = False
    stack: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "values": list(self.values),
            "kind": self.kind,
            "colors": list(self.colors),
            "hidden": self.hidden,
            "stack": self.stack,
        }


@dataclass(frozen=True)
class Point:
    x: float
    y: float
    r: Optional[float] = None
    meta: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"x": self.x, "y": self.y}
        if self.r is not None:
            out["r"] = self.r
        if self.meta:
            out["meta"] = self.meta
        return out


@dataclass(frozen=True, kw_only=True)
class ChartConfig:
    chart_type: ClassVar[ChartType]

    title: str = ""
    labels: tuple[str, ...] = ()
    series: tuple[Series, ...] = ()
    index_targets: tuple[Optional[ClickTarget], ...] = ()
    series_targets: tuple[Optional[ClickTarget], ...] = ()
    chart_target: Optional[ClickTarget] = None
    # When set, patch() rebuilds index_targets from the new labels.
    target_field: Optional[str] = None
    target_quote: bool = False

    @property
    def clickable(self) -> bool:
        return bool(
            any(self.index_targets) or any(self.series_targets) or self.chart_target
        )

    def target_for(self, event: InteractionEvent) -> Optional[ClickTarget]:
        """Element map lookup. Unmapped interactions resolve to None."""
        if event.kind == InteractionKind.CHART:
            return self.chart_target
        if event.kind == InteractionKind.LEGEND:
            return _pick(self.series_targets, event.dataset_index)
        return (
            _pick(self.index_targets, event.index)
            or _pick(self.series_targets, event.dataset_index)
            or self.chart_target
        )

    def with_patch(self, labels: Sequence[str], values: Sequence[float]) -> "ChartConfig":
        labels = tuple(str(v) for v in labels)
        values = tuple(values)
        if len(labels) != len(values):
            raise ValueError("labels and values must have the same length")
        first = self.series[0] if self.series else Series(label=self.title)
        patched = replace(first, values=values, colors=palette(len(values)) if first.colors else ())
        index_targets = self.index_targets
        if self.target_field:
            index_targets = tuple(
                ClickTarget(self.target_field, label, self.target_quote) for label in labels
            )
        return replace(
            self,
            labels=labels,
            series=(patched, *self.series[1:]),
            index_targets=index_targets,
        )

    def _extra(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.chart_type.value,
            "title": self.title,
            "labels": list(self.labels),
            "series": [s.to_dict() for s in self.series],
            "clickable": self.clickable,
        }
        out.update(self._extra())
        return out


@dataclass(frozen=True, kw_only=True)
class BarChart(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.BAR

    horizontal: bool = False
    stacked: bool = False
    time_axis: bool = False

    def _extra(self) -> dict[str, Any]:
        return {"horizontal": self.horizontal, "stacked": self.stacked, "time_axis": self.time_axis}


@dataclass(frozen=True, kw_only=True)
class LineChart(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.LINE

    stacked: bool = False
    time_axis: bool = True
    minimal: bool = False

    def _extra(self) -> dict[str, Any]:
        return {"stacked": self.stacked, "time_axis": self.time_axis, "minimal": self.minimal}


@dataclass(frozen=True, kw_only=True)
class DonutChart(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.DOUGHNUT

    def with_patch(self, labels: Sequence[str], values: Sequence[float]) -> "ChartConfig":
        patched = super().with_patch(labels, values)
        first = replace(patched.series[0], colors=tuple(protocol_color(label) for label in patched.labels))
        return replace(patched, series=(first, *patched.series[1:]))


@dataclass(frozen=True, kw_only=True)
class BubbleChart(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.BUBBLE

    points: tuple[Point, ...] = ()

    def _extra(self) -> dict[str, Any]:
        return {"points": [p.to_dict() for p in self.points]}


@dataclass(frozen=True, kw_only=True)
class ScatterChart(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.SCATTER

    points: tuple[Point, ...] = ()
    x_title: str = ""
    y_title: str = ""

    def _extra(self) -> dict[str, Any]:
        return {
            "points": [p.to_dict() for p in self.points],
            "x_title": self.x_title,
            "y_title": self.y_title,
        }


@dataclass(frozen=True, kw_only=True)
class TableView(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.TABLE

    rows: tuple[AggRow, ...] = ()
    earliest_ts: Optional[datetime] = None

    def _extra(self) -> dict[str, Any]:
        return {
            "rows": [r.to_dict() for r in self.rows],
            "earliest_ts": self.earliest_ts.isoformat() if self.earliest_ts else None,
        }


@dataclass(frozen=True, kw_only=True)
class EmptyChart(ChartConfig):
    chart_type: ClassVar[ChartType] = ChartType.EMPTY

    message: str = NO_DATA_MESSAGE
    failed: bool = False

    def _extra(self) -> dict[str, Any]:
        return {"message": self.message, "failed": self.failed}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def empty_chart(title: str = "", message: str = NO_DATA_MESSAGE) -> EmptyChart:
    return EmptyChart(title=title, message=message)


def error_chart(title: str = "", message: str = LOAD_FAILED_MESSAGE) -> EmptyChart:
    return EmptyChart(title=title, message=message, failed=True)


def _row_targets(rows: Iterable[AggRow], field_name: str, quote: bool) -> tuple[ClickTarget, ...]:
    return tuple(ClickTarget(field_name, r.key, quote) for r in rows)


def table_view(title: str, result: AggregationResult, field_name: str, *, quote: bool = False) -> ChartConfig:
    if result.empty:
        return empty_chart(title)
    return TableView(
        title=title,
        labels=tuple(result.keys()),
        rows=result.rows,
        earliest_ts=result.earliest_ts,
        index_targets=_row_targets(result.rows, field_name, quote),
        target_field=field_name,
        target_quote=quote,
    )


def bar_chart(
    title: str,
    rows: Sequence[AggRow],
    field_name: str,
    *,
    horizontal: bool = False,
    quote: bool = False,
    clickable: bool = True,
) -> ChartConfig:
    if not rows:
        return empty_chart(title)
    return BarChart(
        title=title,
        labels=tuple(r.key for r in rows),
        series=(Series(label=field_name, values=tuple(r.count for r in rows), colors=palette(len(rows))),),
        index_targets=_row_targets(rows, field_name, quote) if clickable else (),
        target_field=field_name if clickable else None,
        target_quote=quote,
        horizontal=horizontal,
    )


def donut_chart(title: str, rows: Sequence[AggRow], field_name: str) -> ChartConfig:
    if not rows:
        return empty_chart(title)
    return DonutChart(
        title=title,
        labels=tuple(r.key for r in rows),
        series=(
            Series(
                label=field_name,
                values=tuple(r.count for r in rows),
                kind="doughnut",
                colors=tuple(protocol_color(r.key) for r in rows),
            ),
        ),
        index_targets=_row_targets(rows, field_name, False),
        target_field=field_name,
    )


def events_per_minute_chart(
    buckets: Sequence[TimeBucket], *, mode: str = TIMESTAMP_LOCAL, title: str = "Events per Minute"
) -> ChartConfig:
    if not buckets:
        return empty_chart(title)
    values = tuple(b.count for b in buckets)
    avg = sum(values) / len(values)
    return BarChart(
        title=title,
        labels=tuple(format_time(b.time, mode) for b in buckets),
        series=(
            Series(label="Events", values=values),
            Series(label="Average", values=tuple(avg for _ in values), kind="line"),
        ),
        chart_target=ClickTarget("event_type", "alert"),
        time_axis=True,
    )


def severity_stack_chart(
    buckets: Sequence[SeverityBucket], *, mode: str = TIMESTAMP_LOCAL, title: str = "Severity over Time"
) -> ChartConfig:
    if not buckets:
        return empty_chart(title)
    order = (Severity.LOW, Severity.MEDIUM, Severity.HIGH)
    return LineChart(
        title=title,
        labels=tuple(format_time(b.time, mode) for b in buckets),
        series=tuple(
            Series(
                label=sev.value,
                values=tuple(b.count_for(sev.code) for b in buckets),
                kind="line",
                colors=(_SEVERITY_COLORS[sev],),
                stack="sev",
            )
            for sev in order
        ),
        series_targets=tuple(ClickTarget("alert.severity", str(sev.code)) for sev in order),
        stacked=True,
    )


def sparkline_chart(signature: str, buckets: Sequence[TimeBucket], *, mode: str = TIMESTAMP_LOCAL) -> LineChart:
    return LineChart(
        title=signature,
        labels=tuple(format_time(b.time, mode) for b in buckets),
        series=(Series(label=signature, values=tuple(b.count for b in buckets), kind="line"),),
        minimal=True,
    )


def events_by_type_chart(
    labels: Sequence[str],
    series: Sequence[Series],
    *,
    title: str = "Events by Type",
) -> ChartConfig:
    if not series:
        return empty_chart(title)
    return BarChart(
        title=title,
        labels=tuple(labels),
        series=tuple(series),
        series_targets=tuple(ClickTarget("event_type", s.label) for s in series),
        stacked=True,
        time_axis=True,
    )


def grouped_bar_chart(
    title: str, groups: Sequence[tuple[str, Sequence[AggRow]]], *, per_group: int = 5
) -> ChartConfig:
    """One series per (field, value) pair; a click filters on that pair."""
    series: list[Series] = []
    targets: list[ClickTarget] = []
    for field_name, rows in groups:
        for row in list(rows)[:per_group]:
            series.append(
                Series(
                    label=f"{field_name}: {row.key}",
                    values=tuple(row.count if f == field_name else 0 for f, _ in groups),
                    colors=(PALETTE[0],),
                )
            )
            targets.append(ClickTarget(field_name, row.key))
    if not series:
        return empty_chart(title)
    return BarChart(
        title=title,
        labels=tuple(f for f, _ in groups),
        series=tuple(series),
        series_targets=tuple(targets),
        horizontal=True,
    )


def heatmap_chart(cells: Sequence[HeatCell], *, title: str = "Activity Heatmap") -> ChartConfig:
    if not cells:
        return empty_chart(title)
    return BubbleChart(
        title=title,
        series=(Series(label="Hours/Days", kind="bubble"),),
        points=tuple(
            Point(x=c.hour, y=c.day, r=max(3.0, c.count / 5), meta=str(c.count)) for c in cells
        ),
        index_targets=tuple(ClickTarget("@timestamp.hour", str(c.hour)) for c in cells),
    )


def bytes_scatter_chart(points: Sequence[FlowPoint], *, title: str = "Flow Bytes") -> ChartConfig:
    if not points:
        return empty_chart(title)
    return ScatterChart(
        title=title,
        series=(Series(label="Flows", kind="scatter"),),
        points=tuple(
            Point(
                x=p.bytes_toserver,
                y=p.bytes_toclient,
                meta=f"{p.src_ip} → {p.dest_ip}" if p.src_ip or p.dest_ip else None,
            )
            for p in points
        ),
        x_title="to server",
        y_title="to client",
    )


def pivot_chart(rows: Sequence[PivotRow], *, title: str = "Source → Signature → Destination") -> ChartConfig:
    if not rows:
        return empty_chart(title)
    return BarChart(
        title=title,
        labels=tuple(r.label for r in rows),
        series=(Series(label="Links", values=tuple(r.count for r in rows)),),
        index_targets=tuple(ClickTarget("src_ip", r.path[0]) for r in rows),
    )
