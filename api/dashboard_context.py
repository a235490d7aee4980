from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from services.chart_configs import InteractionKind
from services.query_syntax import Severity


class SessionCreate(BaseModel):
    """Initial dashboard state; mirrors the shareable URL plus the time range."""

    time_range: str | None = Field(default=None, min_length=2, max_length=32)
    sensor: str | None = Field(default=None, max_length=128)
    q: str | None = Field(default=None, max_length=2048)


class SessionCreated(BaseModel):
    id: str
    generation: int
    url_params: dict[str, str] = Field(default_factory=dict)


class FilterFragment(BaseModel):
    fragment: str = Field(..., min_length=1, max_length=512)


class FilterUpdate(BaseModel):
    """Only the fields present in the request body are applied."""

    time_range: str | None = Field(default=None, min_length=2, max_length=32)
    sensor: str | None = Field(default=None, max_length=128)
    q: str | None = Field(default=None, max_length=2048)
    severity: list[Severity] | None = None
    ip: str | None = Field(default=None, max_length=128)
    signature: str | None = Field(default=None, max_length=512)
    proto: str | None = Field(default=None, max_length=32)
    port: str | None = Field(default=None, max_length=16)
    apply: bool = False


class FilterChange(BaseModel):
    fragment: str | None = None
    changed: bool = False
    generation: int
    query: str = ""


class InteractionIn(BaseModel):
    chart: str = Field(..., min_length=1, max_length=256)
    kind: InteractionKind = InteractionKind.ELEMENT
    index: int | None = Field(default=None, ge=0)
    dataset_index: int | None = Field(default=None, ge=0)


class InteractionOut(BaseModel):
    fragment: Optional[str] = None
    generation: int


class SessionOut(BaseModel):
    id: str
    filters: dict[str, Any]
    url_params: dict[str, str] = Field(default_factory=dict)
    generation: int
    any_loading: bool
    loading: dict[str, bool] = Field(default_factory=dict)
    statuses: dict[str, dict[str, Any]] = Field(default_factory=dict)
    charts: dict[str, dict[str, Any]] = Field(default_factory=dict)
    signatures: list[str] = Field(default_factory=list)
    notifications: list[dict[str, Any]] = Field(default_factory=list)
    quick_filters: list[str] = Field(default_factory=list)
