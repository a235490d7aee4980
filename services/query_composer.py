"""
evescope - Query Composer

Pure translation of a FilterSnapshot plus a chart's fixed semantic
restriction into the backend query string and request descriptors.

Composition order (space joined, empty segments omitted):
  sensor scoping -> structured filters -> free-text tokens -> extra terms
  -> semantic restriction

compose() is deterministic: the same snapshot always yields a byte-identical
string.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from services.filter_state import FilterSnapshot
from services.query_syntax import format_fragment, join_tokens

DEFAULT_AGG_SIZE = 10
DEFAULT_ORDER = "desc"
_ORDERS = {"asc", "desc"}


@dataclass(frozen=True)
class Restriction:
    """Fixed per-chart semantic restriction, e.g. "alert events only"."""

    name: str
    terms: tuple[str, ...]

    @property
    def query(self) -> str:
        return join_tokens(self.terms)


ALERTS = Restriction("alerts", ("event_type:alert",))
FLOWS = Restriction("flows", ("event_type:flow",))
DNS = Restriction("dns", ("event_type:dns",))
DNS_QUERIES = Restriction("dns_queries", ("event_type:dns", "dns.type:query"))
HTTP = Restriction("http", ("event_type:http",))
TLS = Restriction("tls", ("event_type:tls",))
QUIC = Restriction("quic", ("event_type:quic",))


@dataclass(frozen=True)
class QueryDescriptor:
    """One backend request. Immutable and hashable so it can key caches."""

    time_range: str
    query_string: str = ""
    field: Optional[str] = None
    size: int = DEFAULT_AGG_SIZE
    order: str = DEFAULT_ORDER
    streaming: bool = False

    def __post_init__(self) -> None:
        if self.size < 1:
            raise ValueError("size must be >= 1")
        if self.order not in _ORDERS:
            raise ValueError(f"order must be one of {sorted(_ORDERS)}")

    def agg_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "field": self.field,
            "size": self.size,
            "order": self.order,
            "time_range": self.time_range,
        }
        if self.query_string:
            params["q"] = self.query_string
        return params


def sensor_term(sensor: Optional[str]) -> Optional[str]:
    if not sensor:
        return None
    return format_fragment("host", sensor)


def compose(
    state: FilterSnapshot,
    restriction: Optional[Restriction] = None,
    extra: Iterable[str] = (),
) -> str:
    parts: list[str] = []
    host = sensor_term(state.sensor)
    if host:
        parts.append(host)
    parts.extend(state.structured_terms())
    parts.extend(state.tokens)
    parts.extend(extra)
    if restriction is not None:
        parts.extend(restriction.terms)
    return join_tokens(p.strip() for p in parts)


def aggregate_descriptor(
    state: FilterSnapshot,
    field: str,
    restriction: Optional[Restriction] = None,
    *,
    size: int = DEFAULT_AGG_SIZE,
    order: str = DEFAULT_ORDER,
    streaming: bool = False,
    extra: Iterable[str] = (),
) -> QueryDescriptor:
    return QueryDescriptor(
        time_range=state.time_range,
        query_string=compose(state, restriction, extra),
        field=field,
        size=size,
        order=order,
        streaming=streaming,
    )

