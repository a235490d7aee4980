from services.aggregations import AggRow
from services.chart_configs import InteractionEvent, InteractionKind, bar_chart, sparkline_chart
from services.chart_sinks import ChartSinkRegistry
from services.cross_filter import CrossFilterFeedback
from services.filter_state import FilterState
from tests.fakes import buckets


def _setup():
    registry = ChartSinkRegistry()
    filters = FilterState()
    notified = []
    filters.subscribe(notified.append)
    return registry, filters, notified, CrossFilterFeedback(registry, filters)


class TestCrossFilterFeedback:
    def test_click_appends_fragment_and_notifies(self):
        registry, filters, notified, feedback = _setup()
        registry.upsert("sig", bar_chart("Sig", (AggRow("ET SCAN x", 2),), "alert.signature", quote=True))

        fragment = feedback.handle(InteractionEvent(chart="sig", index=0))

        assert fragment == 'alert.signature:"ET SCAN x"'
        assert filters.tokens == (fragment,)
        assert len(notified) == 1

    def test_repeat_click_still_notifies(self):
        registry, filters, notified, feedback = _setup()
        registry.upsert("src", bar_chart("Src", (AggRow("1.1.1.1", 2),), "src_ip"))
        event = InteractionEvent(chart="src", index=0)
        feedback.handle(event)
        feedback.handle(event)
        assert filters.tokens == ("src_ip:1.1.1.1",)
        assert len(notified) == 2

    def test_unmapped_click_is_noop(self):
        registry, filters, notified, feedback = _setup()
        registry.upsert("spark", sparkline_chart("ET X", buckets(1, 2)))
        assert feedback.handle(InteractionEvent(chart="spark", index=1)) is None
        assert feedback.handle(InteractionEvent(chart="spark", kind=InteractionKind.CHART)) is None
        assert notified == []

    def test_unknown_chart_is_noop(self):
        registry, filters, notified, feedback = _setup()
        assert feedback.fragment_for(InteractionEvent(chart="gone", index=0)) is None
        assert feedback.handle(InteractionEvent(chart="gone", index=0)) is None
        assert notified == []
