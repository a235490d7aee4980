"""
evescope - Dashboard Filter State

Single source of truth for the dashboard filters:
- time range (preset or duration)
- sensor
- free-text query tokens (ordered, deduplicated)
- structured filters (severity, ip, signature, proto, port)

Synchronized with the shareable URL: only ``sensor`` and ``q`` are URL
parameters. Structured filters are folded into ``q`` by apply().

Every mutation notifies subscribers synchronously. There is no debounce; the
request coordinator discards results of superseded refresh cycles.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Sequence
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from services.query_syntax import (
    Severity,
    join_tokens,
    split_query,
    structured_terms,
    unique_tokens,
)

log = logging.getLogger("evescope.filter_state")

DEFAULT_TIME_RANGE = "24h"
TIME_RANGE_ALL = "all"

_TIME_RANGE_RE = re.compile(r"^[1-9][0-9]{0,5}[smhdw]$")
_STRUCTURED_FIELDS = ("ip", "signature", "proto", "port")

Subscriber = Callable[["FilterSnapshot"], None]


def validate_time_range(value: str) -> str:
    v = str(value or "").strip().lower()
    if v == TIME_RANGE_ALL or _TIME_RANGE_RE.match(v):
        return v
    raise ValueError(f"invalid time range: {value!r}")


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


@dataclass(frozen=True)
class FilterSnapshot:
    """Immutable copy of the filter state handed to one refresh cycle."""

    time_range: str = DEFAULT_TIME_RANGE
    sensor: Optional[str] = None
    tokens: tuple[str, ...] = ()
    severity: frozenset[Severity] = field(default_factory=frozenset)
    ip: Optional[str] = None
    signature: Optional[str] = None
    proto: Optional[str] = None
    port: Optional[str] = None

    @property
    def query(self) -> str:
        return join_tokens(self.tokens)

    def structured_terms(self) -> list[str]:
        return structured_terms(
            severity=self.severity,
            ip=self.ip,
            signature=self.signature,
            proto=self.proto,
            port=self.port,
        )

    def to_dict(self) -> dict:
        return {
            "time_range": self.time_range,
            "sensor": self.sensor,
            "tokens": list(self.tokens),
            "query": self.query,
            "severity": sorted(s.value for s in self.severity),
            "ip": self.ip,
            "signature": self.signature,
            "proto": self.proto,
            "port": self.port,
        }


class FilterState:
    """Mutable filter state owned by one dashboard page."""

    def __init__(
        self,
        *,
        time_range: Optional[str] = None,
        sensor: Optional[str] = None,
        query: Optional[str] = None,
        default_time_range: str = DEFAULT_TIME_RANGE,
    ) -> None:
        self._default_time_range = validate_time_range(default_time_range)
        self._time_range = validate_time_range(time_range or self._default_time_range)
        self._sensor = _clean_optional(sensor)
        self._tokens: list[str] = unique_tokens(split_query(query))
        self._severity: frozenset[Severity] = frozenset()
        self._ip: Optional[str] = None
        self._signature: Optional[str] = None
        self._proto: Optional[str] = None
        self._port: Optional[str] = None
        self._subscribers: list[Subscriber] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def time_range(self) -> str:
        return self._time_range

    @property
    def sensor(self) -> Optional[str]:
        return self._sensor

    @property
    def tokens(self) -> tuple[str, ...]:
        return tuple(self._tokens)

    @property
    def query(self) -> str:
        return join_tokens(self._tokens)

    @property
    def severity(self) -> frozenset[Severity]:
        return self._severity

    def snapshot(self) -> FilterSnapshot:
        return FilterSnapshot(
            time_range=self._time_range,
            sensor=self._sensor,
            tokens=tuple(self._tokens),
            severity=self._severity,
            ip=self._ip,
            signature=self._signature,
            proto=self._proto,
            port=self._port,
        )

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, reason: str) -> None:
        snap = self.snapshot()
        log.debug(
            "filter_state.changed",
            extra={"reason": reason, "query": snap.query, "time_range": snap.time_range},
        )
        for callback in list(self._subscribers):
            callback(snap)

    # ------------------------------------------------------------------
    # Token mutations
    # ------------------------------------------------------------------

    def add_token(self, fragment: str) -> bool:
        """
        Append ``fragment`` unless already present and notify subscribers.

        Returns True when the token set changed. Subscribers are notified
        either way: re-selecting an active filter re-runs the dashboard.
        """
        new_tokens = unique_tokens(split_query(fragment))
        if not new_tokens:
            raise ValueError("filter fragment must not be empty")
        before = len(self._tokens)
        self._tokens = unique_tokens([*self._tokens, *new_tokens])
        changed = len(self._tokens) != before
        self._notify("add_token")
        return changed

    def remove_token(self, fragment: str) -> bool:
        drop = set(unique_tokens(split_query(fragment)))
        if not drop:
            raise ValueError("filter fragment must not be empty")
        before = len(self._tokens)
        self._tokens = [t for t in self._tokens if t not in drop]
        changed = len(self._tokens) != before
        self._notify("remove_token")
        return changed

    def set_query(self, text: Optional[str]) -> None:
        self._tokens = unique_tokens(split_query(text))
        self._notify("set_query")

    # ------------------------------------------------------------------
    # Scalar mutations
    # ------------------------------------------------------------------

    def set_time_range(self, value: str) -> None:
        self._time_range = validate_time_range(value)
        self._notify("set_time_range")

    def set_sensor(self, sensor: Optional[str]) -> None:
        self._sensor = _clean_optional(sensor)
        self._notify("set_sensor")

    def set_structured(
        self,
        *,
        severity: Optional[Iterable[Severity | str]] = None,
        **fields: Optional[str],
    ) -> None:
        """
        Replace the given structured filters. Omitted filters are untouched;
        ``None`` or an empty string clears one.
        """
        unknown = set(fields) - set(_STRUCTURED_FIELDS)
        if unknown:
            raise ValueError(f"unknown structured filter(s): {sorted(unknown)}")
        if severity is not None:
            self._severity = frozenset(Severity(s) for s in severity)
        for name, value in fields.items():
            setattr(self, f"_{name}", _clean_optional(value))
        self._notify("set_structured")

    def apply(self) -> None:
        """Fold structured filters into the free-text query and clear them."""
        terms = self.snapshot().structured_terms()
        self._tokens = unique_tokens([*self._tokens, *terms])
        self._severity = frozenset()
        for name in _STRUCTURED_FIELDS:
            setattr(self, f"_{name}", None)
        self._notify("apply")

    def reset(self) -> None:
        self._tokens = []
        self._sensor = None
        self._severity = frozenset()
        for name in _STRUCTURED_FIELDS:
            setattr(self, f"_{name}", None)
        self._time_range = self._default_time_range
        self._notify("reset")

    # ------------------------------------------------------------------
    # URL synchronization
    # ------------------------------------------------------------------

    def to_url_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self._sensor:
            params["sensor"] = self._sensor
        q = self.query
        if q:
            params["q"] = q
        return params

    def to_url(self, base: str) -> str:
        parts = urlsplit(base)
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path, urlencode(self.to_url_params()), parts.fragment)
        )

    @classmethod
    def from_url_params(
        cls,
        params: Mapping[str, str | Sequence[str]],
        *,
        time_range: Optional[str] = None,
        default_time_range: str = DEFAULT_TIME_RANGE,
    ) -> "FilterState":
        def _first(name: str) -> Optional[str]:
            raw = params.get(name)
            if raw is None:
                return None
            if isinstance(raw, str):
                return raw
            return raw[0] if raw else None

        return cls(
            time_range=time_range,
            sensor=_first("sensor"),
            query=_first("q"),
            default_time_range=default_time_range,
        )

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "FilterState":
        return cls.from_url_params(parse_qs(urlsplit(url).query), **kwargs)
