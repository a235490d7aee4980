from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from api.config.settings import Settings
from api.dashboard_context import (
    FilterChange,
    FilterFragment,
    FilterUpdate,
    InteractionIn,
    InteractionOut,
    SessionCreate,
    SessionCreated,
    SessionOut,
)
from api.metrics import DASHBOARD_SESSIONS
from services.chart_configs import InteractionEvent
from services.connectors.evebox import EventBackend, HttpEventBackend
from services.filter_state import FilterState
from services.overview_dashboard import OverviewDashboard

log = logging.getLogger("evescope.api.dashboard")

BackendFactory = Callable[[Settings], EventBackend]

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


class UnknownSessionError(KeyError):
    code = "EVS-API-404"


def default_backend_factory(settings: Settings) -> EventBackend:
    return HttpEventBackend(
        settings.backend_url,
        token=settings.backend_token,
        timeout=settings.http_timeout,
    )


# -------------------------
# Session store
# -------------------------


class DashboardSessionStore:
    """In-process dashboard sessions; the oldest is torn down past max_sessions."""

    def __init__(
        self,
        settings: Settings,
        backend_factory: Optional[BackendFactory] = None,
    ) -> None:
        self._settings = settings
        self._backend_factory = backend_factory or default_backend_factory
        self._sessions: "OrderedDict[str, OverviewDashboard]" = OrderedDict()

    @property
    def settings(self) -> Settings:
        return self._settings

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> OverviewDashboard:
        dashboard = self._sessions.get(session_id)
        if dashboard is None or dashboard.closed:
            raise UnknownSessionError(session_id)
        return dashboard

    async def create(
        self,
        *,
        time_range: Optional[str] = None,
        sensor: Optional[str] = None,
        q: Optional[str] = None,
    ) -> tuple[str, OverviewDashboard]:
        filters = FilterState(
            time_range=time_range,
            sensor=sensor,
            query=q,
            default_time_range=self._settings.default_time_range,
        )
        dashboard = OverviewDashboard(
            self._backend_factory(self._settings),
            filters=filters,
            query_timeout=self._settings.query_timeout,
            timestamp_mode=self._settings.timestamp_mode,
            owns_backend=True,
        )
        session_id = uuid.uuid4().hex
        self._sessions[session_id] = dashboard
        while len(self._sessions) > self._settings.max_sessions:
            oldest_id, oldest = self._sessions.popitem(last=False)
            log.info("dashboard.session_evicted", extra={"session_id": oldest_id})
            await oldest.close()
        DASHBOARD_SESSIONS.set(len(self._sessions))
        dashboard.refresh()
        return session_id, dashboard

    async def close(self, session_id: str) -> None:
        dashboard = self._sessions.pop(session_id, None)
        if dashboard is None:
            raise UnknownSessionError(session_id)
        DASHBOARD_SESSIONS.set(len(self._sessions))
        await dashboard.close()

    async def close_all(self) -> None:
        while self._sessions:
            _, dashboard = self._sessions.popitem(last=False)
            await dashboard.close()
        DASHBOARD_SESSIONS.set(0)


def get_store(request: Request) -> DashboardSessionStore:
    return request.app.state.sessions


def _dashboard(session_id: str, store: DashboardSessionStore) -> OverviewDashboard:
    try:
        return store.get(session_id)
    except UnknownSessionError:
        raise HTTPException(status_code=404, detail="unknown dashboard session") from None


def _session_out(session_id: str, dashboard: OverviewDashboard) -> SessionOut:
    return SessionOut(id=session_id, **dashboard.snapshot())


def _change(dashboard: OverviewDashboard, fragment: Optional[str], changed: bool) -> FilterChange:
    return FilterChange(
        fragment=fragment,
        changed=changed,
        generation=dashboard.generation,
        query=dashboard.filters.query,
    )


# -------------------------
# Routes
# -------------------------


@router.post("/sessions", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionCreate,
    store: DashboardSessionStore = Depends(get_store),
) -> SessionCreated:
    try:
        session_id, dashboard = await store.create(
            time_range=body.time_range, sensor=body.sensor, q=body.q
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return SessionCreated(
        id=session_id,
        generation=dashboard.generation,
        url_params=dashboard.filters.to_url_params(),
    )


@router.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: str,
    wait: bool = Query(default=False, description="Wait for in-flight requests to settle"),
    store: DashboardSessionStore = Depends(get_store),
) -> SessionOut:
    dashboard = _dashboard(session_id, store)
    if wait:
        await dashboard.wait_settled()
    return _session_out(session_id, dashboard)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    store: DashboardSessionStore = Depends(get_store),
) -> Response:
    try:
        await store.close(session_id)
    except UnknownSessionError:
        raise HTTPException(status_code=404, detail="unknown dashboard session") from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{session_id}/filters", response_model=FilterChange)
async def add_filter(
    session_id: str,
    body: FilterFragment,
    store: DashboardSessionStore = Depends(get_store),
) -> FilterChange:
    dashboard = _dashboard(session_id, store)
    try:
        changed = dashboard.filters.add_token(body.fragment)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _change(dashboard, body.fragment, changed)


@router.delete("/sessions/{session_id}/filters", response_model=FilterChange)
async def remove_filter(
    session_id: str,
    fragment: str = Query(..., min_length=1, max_length=512),
    store: DashboardSessionStore = Depends(get_store),
) -> FilterChange:
    dashboard = _dashboard(session_id, store)
    try:
        changed = dashboard.filters.remove_token(fragment)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _change(dashboard, fragment, changed)


@router.put("/sessions/{session_id}/filters", response_model=FilterChange)
async def update_filters(
    session_id: str,
    body: FilterUpdate,
    store: DashboardSessionStore = Depends(get_store),
) -> FilterChange:
    dashboard = _dashboard(session_id, store)
    filters = dashboard.filters
    provided = body.model_fields_set
    try:
        if "time_range" in provided and body.time_range:
            filters.set_time_range(body.time_range)
        if "sensor" in provided:
            filters.set_sensor(body.sensor)
        if "q" in provided:
            filters.set_query(body.q)
        structured = {
            name: getattr(body, name)
            for name in ("ip", "signature", "proto", "port")
            if name in provided
        }
        if structured or "severity" in provided:
            filters.set_structured(
                severity=(body.severity or []) if "severity" in provided else None,
                **structured,
            )
        if body.apply:
            filters.apply()
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _change(dashboard, None, True)


@router.post("/sessions/{session_id}/reset", response_model=FilterChange)
async def reset_filters(
    session_id: str,
    store: DashboardSessionStore = Depends(get_store),
) -> FilterChange:
    dashboard = _dashboard(session_id, store)
    dashboard.filters.reset()
    return _change(dashboard, None, True)


@router.post("/sessions/{session_id}/refresh", response_model=FilterChange)
async def refresh(
    session_id: str,
    store: DashboardSessionStore = Depends(get_store),
) -> FilterChange:
    dashboard = _dashboard(session_id, store)
    dashboard.refresh()
    return _change(dashboard, None, False)


@router.post("/sessions/{session_id}/interactions", response_model=InteractionOut)
async def interact(
    session_id: str,
    body: InteractionIn,
    store: DashboardSessionStore = Depends(get_store),
) -> InteractionOut:
    dashboard = _dashboard(session_id, store)
    if body.chart not in dashboard.registry:
        raise HTTPException(status_code=404, detail="unknown chart")
    fragment = dashboard.interact(
        InteractionEvent(
            chart=body.chart,
            kind=body.kind,
            index=body.index,
            dataset_index=body.dataset_index,
        )
    )
    return InteractionOut(fragment=fragment, generation=dashboard.generation)
