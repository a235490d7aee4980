"""
evescope - Cross-filter feedback

Turns a click on a rendered chart into a ``field:value`` fragment through
the registry's element map and appends it to the filter state. The filter
state's subscribers then start the next refresh cycle.
"""
from __future__ import annotations

import logging
from typing import Optional

from services.chart_configs import InteractionEvent
from services.chart_sinks import ChartSinkRegistry, UnknownChartError
from services.filter_state import FilterState

log = logging.getLogger("evescope.cross_filter")


class CrossFilterFeedback:
    def __init__(self, registry: ChartSinkRegistry, filters: FilterState) -> None:
        self._registry = registry
        self._filters = filters

    def fragment_for(self, event: InteractionEvent) -> Optional[str]:
        try:
            target = self._registry.resolve(event)
        except UnknownChartError:
            log.debug("cross_filter.unknown_chart", extra={"chart": event.chart})
            return None
        return target.fragment() if target is not None else None

    def handle(self, event: InteractionEvent) -> Optional[str]:
        """Apply the interaction. Returns the fragment added, or None for a no-op."""
        fragment = self.fragment_for(event)
        if fragment is None:
            return None
        log.info(
            "cross_filter.add",
            extra={"chart": event.chart, "kind": event.kind.value, "fragment": fragment},
        )
        self._filters.add_token(fragment)
        return fragment
