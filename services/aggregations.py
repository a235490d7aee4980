from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


class DataShapeError(ValueError):
    """Backend payload does not have the shape a chart expects."""

    code = "EVS-DATA-001"


@dataclass(frozen=True)
class AggRow:
    key: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "count": self.count}


@dataclass(frozen=True)
class AggregationResult:
    rows: tuple[AggRow, ...] = ()
    earliest_ts: Optional[datetime] = None

    @property
    def empty(self) -> bool:
        return not self.rows

    def keys(self) -> list[str]:
        return [r.key for r in self.rows]


@dataclass(frozen=True)
class TimeBucket:
    time: datetime
    count: int


@dataclass(frozen=True)
class SeverityBucket:
    time: datetime
    counts: dict[int, int] = field(default_factory=dict)

    def count_for(self, code: int) -> int:
        return int(self.counts.get(code, 0))


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Epoch seconds, epoch milliseconds or ISO-8601, normalized to UTC."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = raw / 1000.0 if abs(raw) >= 1e11 else float(raw)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise DataShapeError(f"timestamp out of range: {raw!r}") from exc
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as exc:
            raise DataShapeError(f"invalid timestamp: {raw!r}") from exc
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    raise DataShapeError(f"invalid timestamp: {raw!r}")


def _key_text(key: Any) -> str:
    if isinstance(key, list):
        return " → ".join(str(k) for k in key)
    return str(key)


def parse_agg_rows(raw_rows: Any) -> tuple[AggRow, ...]:
    if raw_rows is None:
        return ()
    if not isinstance(raw_rows, list):
        raise DataShapeError("rows must be an array")
    rows: list[AggRow] = []
    for i, row in enumerate(raw_rows):
        if not isinstance(row, dict) or "key" not in row:
            raise DataShapeError(f"rows[{i}] must be an object with a key")
        try:
            count = int(row.get("count", 0))
        except (TypeError, ValueError) as exc:
            raise DataShapeError(f"rows[{i}].count must be an integer") from exc
        rows.append(AggRow(key=_key_text(row["key"]), count=count))
    return tuple(rows)


def parse_agg_result(payload: Any) -> AggregationResult:
    if not isinstance(payload, dict):
        raise DataShapeError("aggregation payload must be an object")
    return AggregationResult(
        rows=parse_agg_rows(payload.get("rows")),
        earliest_ts=parse_timestamp(payload.get("earliest_ts")),
    )


def parse_time_histogram(payload: Any) -> list[TimeBucket]:
    if not isinstance(payload, dict):
        raise DataShapeError("histogram payload must be an object")
    data = payload.get("data") or []
    if not isinstance(data, list):
        raise DataShapeError("histogram data must be an array")
    buckets: list[TimeBucket] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict) or "time" not in item:
            raise DataShapeError(f"data[{i}] must be an object with a time")
        ts = parse_timestamp(item["time"])
        if ts is None:
            raise DataShapeError(f"data[{i}].time is empty")
        try:
            count = int(item.get("count", 0) or 0)
        except (TypeError, ValueError) as exc:
            raise DataShapeError(f"data[{i}].count must be an integer") from exc
        buckets.append(TimeBucket(time=ts, count=count))
    return buckets


def _bucket_container(payload: dict[str, Any]) -> list[Any]:
    if isinstance(payload.get("buckets"), list):
        return payload["buckets"]
    for key, value in payload.items():
        if key.startswith("per_") and isinstance(value, dict):
            buckets = value.get("buckets")
            if isinstance(buckets, list):
                return buckets
    raise DataShapeError("severity histogram has no bucket container")


def parse_severity_histogram(payload: Any) -> list[SeverityBucket]:
    """
    Parse the nested time -> severity structure:

        {"per_5m": {"buckets": [{"key": <ts>, "sev": {"buckets": [
            {"key": 1, "doc_count": 4}, ...]}}]}}
    """
    if not isinstance(payload, dict):
        raise DataShapeError("severity histogram payload must be an object")
    out: list[SeverityBucket] = []
    for i, bucket in enumerate(_bucket_container(payload)):
        if not isinstance(bucket, dict) or "key" not in bucket:
            raise DataShapeError(f"buckets[{i}] must be an object with a key")
        ts = parse_timestamp(bucket["key"])
        if ts is None:
            raise DataShapeError(f"buckets[{i}].key is empty")
        counts: dict[int, int] = {}
        sev_container = bucket.get("sev") or {}
        if not isinstance(sev_container, dict):
            raise DataShapeError(f"buckets[{i}].sev must be an object")
        sev_buckets = sev_container.get("buckets") or []
        if not isinstance(sev_buckets, list):
            raise DataShapeError(f"buckets[{i}].sev.buckets must be an array")
        for sev in sev_buckets:
            try:
                counts[int(sev["key"])] = int(sev.get("doc_count", 0))
            except (KeyError, TypeError, ValueError) as exc:
                raise DataShapeError(f"buckets[{i}].sev is malformed") from exc
        out.append(SeverityBucket(time=ts, counts=counts))
    return out


# ---------------------------------------------------------------------------
# Analytics payloads (heatmap, flow-bytes, multi-field pivot)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeatCell:
    hour: int
    day: int
    count: int


@dataclass(frozen=True)
class FlowPoint:
    bytes_toserver: int
    bytes_toclient: int
    src_ip: Optional[str] = None
    dest_ip: Optional[str] = None


@dataclass(frozen=True)
class PivotRow:
    path: tuple[str, ...]
    count: int

    @property
    def label(self) -> str:
        return _key_text(list(self.path))


def _analytics_body(payload: Any, name: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise DataShapeError(f"{name} payload must be an object")
    inner = payload.get("data")
    return inner if isinstance(inner, dict) else payload


def _list_of(body: dict[str, Any], key: str, name: str) -> list[Any]:
    items = body.get(key) or []
    if not isinstance(items, list):
        raise DataShapeError(f"{name}.{key} must be an array")
    return items


def parse_heatmap(payload: Any) -> list[HeatCell]:
    body = _analytics_body(payload, "heatmap")
    cells: list[HeatCell] = []
    for i, item in enumerate(_list_of(body, "buckets", "heatmap")):
        try:
            cells.append(
                HeatCell(hour=int(item["hour"]), day=int(item["day"]), count=int(item.get("count", 0)))
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DataShapeError(f"heatmap.buckets[{i}] is malformed") from exc
    return cells


def parse_flow_points(payload: Any) -> list[FlowPoint]:
    body = _analytics_body(payload, "flow-bytes")
    points: list[FlowPoint] = []
    for i, item in enumerate(_list_of(body, "points", "flow-bytes")):
        try:
            points.append(
                FlowPoint(
                    bytes_toserver=int(item["bytes_toserver"]),
                    bytes_toclient=int(item["bytes_toclient"]),
                    src_ip=item.get("src_ip"),
                    dest_ip=item.get("dest_ip"),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DataShapeError(f"flow-bytes.points[{i}] is malformed") from exc
    return points


def parse_pivot_rows(payload: Any) -> list[PivotRow]:
    body = _analytics_body(payload, "pivot")
    rows: list[PivotRow] = []
    for i, item in enumerate(_list_of(body, "rows", "pivot")):
        key = item.get("key") if isinstance(item, dict) else None
        if not isinstance(key, list) or not key:
            raise DataShapeError(f"pivot.rows[{i}].key must be a non-empty array")
        try:
            count = int(item.get("count", 0))
        except (TypeError, ValueError) as exc:
            raise DataShapeError(f"pivot.rows[{i}].count must be an integer") from exc
        rows.append(PivotRow(path=tuple(str(k) for k in key), count=count))
    return rows
