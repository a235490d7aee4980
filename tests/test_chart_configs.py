"""
Tests for chart configuration variants and builders.

Tests verify:
- Element map resolution for element, legend and chart clicks
- Patching labels and values in place
- Explicit empty / error visuals instead of blank charts
- Builder output for every chart family
"""

from datetime import datetime, timezone

import pytest

from services.aggregations import AggregationResult, AggRow, FlowPoint, HeatCell, PivotRow
from services.chart_configs import (
    BarChart,
    ChartType,
    ClickTarget,
    DonutChart,
    EmptyChart,
    InteractionEvent,
    InteractionKind,
    LOAD_FAILED_MESSAGE,
    NO_DATA_MESSAGE,
    TIMESTAMP_UTC,
    LineChart,
    Series,
    TableView,
    bar_chart,
    bytes_scatter_chart,
    donut_chart,
    error_chart,
    events_by_type_chart,
    events_per_minute_chart,
    format_time,
    grouped_bar_chart,
    heatmap_chart,
    palette,
    pivot_chart,
    protocol_color,
    severity_stack_chart,
    sparkline_chart,
    table_view,
)
from tests.fakes import buckets, result, severity_buckets

ROWS = (AggRow("10.0.0.1", 9), AggRow("10.0.0.2", 4))


def _click(index=None, dataset_index=None, kind=InteractionKind.ELEMENT):
    return InteractionEvent(chart="c", kind=kind, index=index, dataset_index=dataset_index)


class TestElementMap:
    def test_bar_element_click(self):
        cfg = bar_chart("Top", ROWS, "src_ip")
        assert cfg.target_for(_click(index=1)) == ClickTarget("src_ip", "10.0.0.2")
        assert cfg.target_for(_click(index=1)).fragment() == "src_ip:10.0.0.2"

    def test_out_of_range_click_is_none(self):
        cfg = bar_chart("Top", ROWS, "src_ip")
        assert cfg.target_for(_click(index=5)) is None
        assert cfg.target_for(_click()) is None

    def test_quoted_target(self):
        cfg = bar_chart("Sigs", (AggRow("ET SCAN", 1),), "alert.signature", quote=True)
        assert cfg.target_for(_click(index=0)).fragment() == 'alert.signature:"ET SCAN"'

    def test_not_clickable(self):
        cfg = bar_chart("Dur", ROWS, "flow.duration", clickable=False)
        assert not cfg.clickable
        assert cfg.target_for(_click(index=0)) is None

    def test_legend_click_uses_series_targets(self):
        cfg = events_by_type_chart(["t0"], [_series("alert"), _series("dns")])
        fragment = cfg.target_for(_click(dataset_index=1, kind=InteractionKind.LEGEND)).fragment()
        assert fragment == "event_type:dns"

    def test_element_falls_back_to_series_then_chart(self):
        sev = severity_stack_chart(severity_buckets({1: 2}), mode=TIMESTAMP_UTC)
        assert sev.target_for(_click(index=0, dataset_index=2)).fragment() == "alert.severity:1"
        epm = events_per_minute_chart(buckets(1, 2), mode=TIMESTAMP_UTC)
        assert epm.target_for(_click(index=0)).fragment() == "event_type:alert"
        assert epm.target_for(_click(kind=InteractionKind.CHART)).fragment() == "event_type:alert"


def _series(label):
    return Series(label=label, values=(1,))


class TestPatch:
    def test_with_patch_rebuilds_targets(self):
        cfg = donut_chart("Proto", (AggRow("tcp", 3),), "proto")
        patched = cfg.with_patch(["tcp", "udp"], [5, 2])
        assert isinstance(patched, DonutChart)
        assert patched.labels == ("tcp", "udp")
        assert patched.series[0].values == (5, 2)
        assert patched.series[0].colors == (protocol_color("tcp"), protocol_color("udp"))
        assert patched.target_for(_click(index=1)).fragment() == "proto:udp"
        assert cfg.labels == ("tcp",)

    def test_with_patch_length_mismatch(self):
        cfg = bar_chart("Top", ROWS, "src_ip")
        with pytest.raises(ValueError):
            cfg.with_patch(["a"], [1, 2])


class TestEmptyVisuals:
    def test_empty_rows_give_no_data_chart(self):
        for cfg in (
            bar_chart("T", (), "f"),
            donut_chart("T", (), "f"),
            table_view("T", AggregationResult(), "f"),
            events_per_minute_chart([]),
            severity_stack_chart([]),
            events_by_type_chart([], []),
            grouped_bar_chart("T", [("a", ())]),
            heatmap_chart([]),
            bytes_scatter_chart([]),
            pivot_chart([]),
        ):
            assert isinstance(cfg, EmptyChart)
            assert cfg.message == NO_DATA_MESSAGE
            assert not cfg.failed
            assert cfg.to_dict()["type"] == ChartType.EMPTY.value

    def test_error_chart(self):
        cfg = error_chart("Top")
        assert cfg.failed
        assert cfg.message == LOAD_FAILED_MESSAGE
        assert cfg.to_dict() == {
            "type": "empty",
            "title": "Top",
            "labels": [],
            "series": [],
            "clickable": False,
            "message": LOAD_FAILED_MESSAGE,
            "failed": True,
        }


class TestBuilders:
    def test_table_view(self):
        earliest = datetime(2024, 5, 1, tzinfo=timezone.utc)
        cfg = table_view("Top DNS", result(("a.example", 3), earliest_ts=earliest), "dns.rrname")
        assert isinstance(cfg, TableView)
        data = cfg.to_dict()
        assert data["rows"] == [{"key": "a.example", "count": 3}]
        assert data["earliest_ts"] == earliest.isoformat()
        assert cfg.target_for(_click(index=0)).fragment() == "dns.rrname:a.example"

    def test_events_per_minute_average_line(self):
        cfg = events_per_minute_chart(buckets(2, 4, 6), mode=TIMESTAMP_UTC)
        assert isinstance(cfg, BarChart)
        assert cfg.series[1].kind == "line"
        assert cfg.series[1].values == (4.0, 4.0, 4.0)
        assert cfg.labels[0] == "2024-05-01 12:00:00Z"

    def test_severity_stack_series_order(self):
        cfg = severity_stack_chart(severity_buckets({1: 1, 2: 2, 3: 3}), mode=TIMESTAMP_UTC)
        assert isinstance(cfg, LineChart)
        assert [s.label for s in cfg.series] == ["low", "medium", "high"]
        assert [s.values for s in cfg.series] == [(3,), (2,), (1,)]
        assert cfg.stacked

    def test_sparkline_is_minimal_and_not_clickable(self):
        cfg = sparkline_chart("ET X", buckets(1, 0, 3), mode=TIMESTAMP_UTC)
        assert cfg.minimal
        assert not cfg.clickable
        assert cfg.series[0].values == (1, 0, 3)

    def test_grouped_bar_one_series_per_pair(self):
        cfg = grouped_bar_chart(
            "DNS/HTTP/TLS",
            [("dns.rrtype", (AggRow("A", 5), AggRow("AAAA", 2))), ("http.method", (AggRow("GET", 7),))],
        )
        assert cfg.labels == ("dns.rrtype", "http.method")
        assert [s.label for s in cfg.series] == ["dns.rrtype: A", "dns.rrtype: AAAA", "http.method: GET"]
        assert cfg.series[2].values == (0, 7)
        fragment = cfg.target_for(_click(index=0, dataset_index=2)).fragment()
        assert fragment == "http.method:GET"

    def test_grouped_bar_caps_per_group(self):
        rows = tuple(AggRow(str(i), i) for i in range(10))
        cfg = grouped_bar_chart("G", [("f", rows)], per_group=3)
        assert len(cfg.series) == 3

    def test_heatmap(self):
        cfg = heatmap_chart([HeatCell(hour=4, day=2, count=50), HeatCell(hour=5, day=2, count=1)])
        data = cfg.to_dict()
        assert data["points"][0] == {"x": 4, "y": 2, "r": 10.0, "meta": "50"}
        assert data["points"][1]["r"] == 3.0
        assert cfg.target_for(_click(index=0)).fragment() == "@timestamp.hour:4"

    def test_bytes_scatter(self):
        cfg = bytes_scatter_chart([FlowPoint(10, 20, "a", "b")])
        assert cfg.to_dict()["points"] == [{"x": 10, "y": 20, "meta": "a → b"}]
        assert not cfg.clickable

    def test_pivot_clicks_filter_on_source(self):
        cfg = pivot_chart([PivotRow(("10.0.0.9", "ET X", "10.0.0.1"), 3)])
        assert cfg.labels == ("10.0.0.9 → ET X → 10.0.0.1",)
        assert cfg.target_for(_click(index=0)).fragment() == "src_ip:10.0.0.9"


class TestHelpers:
    def test_palette_cycles(self):
        colors = palette(12)
        assert len(colors) == 12
        assert colors[10] == colors[0]

    def test_protocol_color_default(self):
        assert protocol_color("TCP") == protocol_color("tcp")
        assert protocol_color("sctp") == "#607d8b"

    def test_format_time_utc(self):
        ts = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)
        assert format_time(ts, TIMESTAMP_UTC) == "2024-05-01 12:30:05Z"
        assert len(format_time(ts)) == len("2024-05-01 12:30:05")
