"""
evescope - Chart sink registry

The registry exclusively owns every live visual. It is the only component
that calls create/destroy on a chart surface.

INVARIANTS:
  - at most one live handle per key, even transiently: upsert() destroys the
    old handle before creating the new one
  - every handle is destroyed exactly once (destroy_all() empties the
    registry, so a second call is a no-op)
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Protocol, Sequence

from api.metrics import LIVE_CHART_SINKS
from services.chart_configs import ChartConfig, ClickTarget, InteractionEvent

log = logging.getLogger("evescope.chart_sinks")


class ChartLifecycleError(RuntimeError):
    code = "EVS-CS-001"


class UnknownChartError(KeyError):
    code = "EVS-CS-002"


class ChartHandle(Protocol):
    def patch(self, labels: Sequence[str], values: Sequence[float]) -> None: ...

    def destroy(self) -> None: ...


class ChartSurface(Protocol):
    def create(self, key: str, config: ChartConfig) -> ChartHandle: ...


# ---------------------------------------------------------------------------
# Snapshot surface: keeps serializable chart state for the HTTP API
# ---------------------------------------------------------------------------


class SnapshotHandle:
    def __init__(self, surface: "SnapshotSurface", key: str, config: ChartConfig) -> None:
        self._surface = surface
        self.key = key
        self.config = config
        self.destroyed = False
        self.redraws = 0

    def patch(self, labels: Sequence[str], values: Sequence[float]) -> None:
        if self.destroyed:
            raise ChartLifecycleError(f"patch on destroyed chart {self.key!r}")
        self.config = self.config.with_patch(labels, values)
        self.redraws += 1

    def destroy(self) -> None:
        if self.destroyed:
            raise ChartLifecycleError(f"chart {self.key!r} destroyed twice")
        self.destroyed = True
        self._surface.destroyed += 1

    def to_dict(self) -> dict[str, Any]:
        return self.config.to_dict()


class SnapshotSurface:
    def __init__(self) -> None:
        self.created = 0
        self.destroyed = 0
        self.handles: list[SnapshotHandle] = []

    def create(self, key: str, config: ChartConfig) -> SnapshotHandle:
        handle = SnapshotHandle(self, key, config)
        self.created += 1
        self.handles.append(handle)
        return handle

    def live_handles(self, key: Optional[str] = None) -> list[SnapshotHandle]:
        return [h for h in self.handles if not h.destroyed and (key is None or h.key == key)]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ChartSinkRegistry:
    def __init__(self, surface: Optional[ChartSurface] = None) -> None:
        self._surface = surface if surface is not None else SnapshotSurface()
        self._handles: dict[str, ChartHandle] = {}
        self._configs: dict[str, ChartConfig] = {}

    @property
    def surface(self) -> ChartSurface:
        return self._surface

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def live_keys(self) -> list[str]:
        return list(self._handles)

    def config(self, key: str) -> ChartConfig:
        try:
            return self._configs[key]
        except KeyError:
            raise UnknownChartError(key) from None

    def _drop(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        self._configs.pop(key, None)
        if handle is not None:
            LIVE_CHART_SINKS.dec()
            handle.destroy()

    def upsert(self, key: str, config: ChartConfig) -> None:
        self._drop(key)
        handle = self._surface.create(key, config)
        self._handles[key] = handle
        self._configs[key] = config
        LIVE_CHART_SINKS.inc()

    def patch(
        self,
        key: str,
        labels: Sequence[str],
        values: Sequence[float],
        *,
        fallback: Optional[ChartConfig] = None,
    ) -> None:
        """
        Mutate the live chart's labels and first series in place and redraw.

        When nothing is live for ``key`` (or the live chart is of a different
        variant) ``fallback`` is upserted instead. Without a fallback that is
        an UnknownChartError.
        """
        current = self._configs.get(key)
        if current is None or (fallback is not None and type(current) is not type(fallback)):
            if fallback is None:
                raise UnknownChartError(key)
            self.upsert(key, fallback)
            return
        patched = current.with_patch(labels, values)
        self._handles[key].patch(patched.labels, patched.series[0].values)
        self._configs[key] = patched

    def destroy(self, key: str) -> bool:
        if key not in self._handles:
            return False
        self._drop(key)
        return True

    def retain(self, prefix: str, keys: Iterable[str]) -> list[str]:
        """Destroy every live ``prefix*`` key not in ``keys``. Returns the destroyed keys."""
        keep = {f"{prefix}{k}" for k in keys}
        doomed = [k for k in self._handles if k.startswith(prefix) and k not in keep]
        for key in doomed:
            self._drop(key)
        return doomed

    def destroy_all(self) -> int:
        keys = list(self._handles)
        for key in keys:
            self._drop(key)
        if keys:
            log.debug("chart_sinks.destroy_all", extra={"count": len(keys)})
        return len(keys)

    def resolve(self, event: InteractionEvent) -> Optional[ClickTarget]:
        return self.config(event.chart).target_for(event)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {key: cfg.to_dict() for key, cfg in self._configs.items()}
