from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import DiaryError, SubmissionRejected
from .logging_utils import log_event, log_warning
from .models import (
    CommunityActionRequest,
    CommunityActionResponse,
    PathSummary,
    RouteComparisonModel,
    RoutePairResponse,
    RouteQuery,
    RouteQueryResponse,
    SegmentAggregateView,
    SegmentListResponse,
    SubmitRejectedResponse,
    SubmitResponse,
)
from .segment_graph import SegmentNetwork
from .session import CommunityActionResult, RoutingSession
from .settings import settings
from .shortest_path import PathResult


def _initial_session() -> RoutingSession:
    path = settings.segments_asset_path.strip()
    if path and Path(path).exists():
        try:
            return RoutingSession.from_geojson(path)
        except DiaryError as exc:
            log_warning("segment_network_unavailable", reason_code=exc.reason_code, detail=str(exc))
    elif path:
        log_warning("segment_network_unavailable", reason_code="network_asset_unavailable", path=path)
    return RoutingSession.from_network(SegmentNetwork(segments=(), baselines={}))


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.session = _initial_session()
    log_event(
        "diary_session_ready",
        nodes=len(app.state.session.graph.nodes),
        segments=len(app.state.session.graph.segments),
    )
    yield


app = FastAPI(title="Route Safety Diary", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def diary_session(request: Request) -> RoutingSession:
    session: RoutingSession | None = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="diary session not initialised")
    return session


SessionDep = Annotated[RoutingSession, Depends(diary_session)]


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
def health(session: SessionDep) -> dict[str, object]:
    return {
        "status": "ok",
        "nodes": len(session.graph.nodes),
        "segments": len(session.graph.segments),
        "aggregates": len(session.store),
        "session_id": session.session_id,
        "votes": session.votes_by_kind(),
    }


@app.get("/segments", response_model=SegmentListResponse)
def list_segments(
    session: SessionDep,
    ids: Annotated[str | None, Query(description="Comma-separated segment ids")] = None,
) -> SegmentListResponse:
    wanted = [s.strip() for s in ids.split(",") if s.strip()] if ids else None
    return SegmentListResponse(segments=session.segments(wanted))


@app.get("/segments/{segment_id}", response_model=SegmentAggregateView)
def get_segment(segment_id: str, session: SessionDep) -> SegmentAggregateView:
    view = session.segment(segment_id)
    if view is None:
        raise HTTPException(status_code=404, detail={"reason_code": "segment_unknown", "segment_id": segment_id})
    return view


@app.post("/diary/submit", response_model=SubmitResponse, responses={422: {"model": SubmitRejectedResponse}})
def submit_diary(payload: dict, session: SessionDep) -> SubmitResponse | JSONResponse:
    try:
        views = session.submit(payload)
    except SubmissionRejected as exc:
        log_event("submission_rejected", session_id=session.session_id, errors=len(exc.errors))
        body = SubmitRejectedResponse(reason_code=exc.reason_code, errors=exc.human_readable())
        return JSONResponse(status_code=422, content=body.model_dump())
    return SubmitResponse(route_id=str(payload.get("route_id", "")), updated_segments=views)


def _segment_unknown(exc: DiaryError) -> HTTPException:
    return HTTPException(status_code=404, detail={"reason_code": exc.reason_code, **(exc.details or {})})


def _action_response(result: CommunityActionResult) -> CommunityActionResponse:
    return CommunityActionResponse(
        ok=True,
        recorded=result.recorded,
        segment_id=result.segment_id,
        kind=result.kind,
        message=result.message,
        aggregate=result.aggregate,
    )


@app.post("/diary/agree", response_model=CommunityActionResponse)
def submit_agree(body: CommunityActionRequest, session: SessionDep) -> CommunityActionResponse:
    try:
        return _action_response(session.agree(body.segment_id))
    except DiaryError as exc:
        raise _segment_unknown(exc) from exc


@app.post("/diary/improve", response_model=CommunityActionResponse)
def submit_improve(body: CommunityActionRequest, session: SessionDep) -> CommunityActionResponse:
    try:
        return _action_response(session.feels_safer(body.segment_id))
    except DiaryError as exc:
        raise _segment_unknown(exc) from exc


def _path_summary(path: PathResult) -> PathSummary:
    return PathSummary(
        segment_path=list(path.segment_path),
        node_path=list(path.node_path),
        total_length_m=round(path.total_length_m, 2),
    )


@app.post("/diary/route", response_model=RouteQueryResponse)
def safer_route(query: RouteQuery, session: SessionDep) -> RouteQueryResponse:
    result = session.route_between(
        (query.start.lon, query.start.lat),
        (query.end.lon, query.end.lat),
        penalty_factor=query.penalty_factor,
        mode=query.mode,
    )
    if result is None:
        return RouteQueryResponse(ok=True, route=None, message="No route found")
    comparison = result.comparison
    return RouteQueryResponse(
        ok=True,
        route=RoutePairResponse(
            base=_path_summary(result.pair.base),
            alt=_path_summary(result.pair.alt),
            penalty_factor=round(result.pair.penalty_factor, 3),
            alt_matches_base=result.pair.alt_matches_base,
            comparison=RouteComparisonModel(
                avoided_low_rated_count=comparison.avoided_low_rated_count,
                base_low_rated_count=comparison.base_low_rated_count,
                alt_low_rated_count=comparison.alt_low_rated_count,
                overhead_percent=comparison.overhead_percent,
                eta_delta_minutes=comparison.eta_delta_minutes,
                worth_showing=comparison.worth_showing,
            ),
        ),
        message="" if not result.pair.alt_matches_base else "No safer alternative found",
    )
