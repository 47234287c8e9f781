from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any

from .aggregator import AggregateStore, AggregatorParams, record_view
from .comparison import RouteComparison, summarize
from .decay import RatingSample, as_utc, utc_now
from .errors import DiaryError
from .logging_utils import log_event
from .models import ActionKind, RatingSubmission, SegmentAggregateView, TravelMode, validate_submission
from .segment_graph import (
    Route,
    SegmentGraph,
    SegmentNetwork,
    build_segment_graph,
    load_segment_network,
    route_from_segment_ids,
)
from .shortest_path import RoutePair, find_route_pair
from .throttle import SessionThrottle

ACTION_MESSAGES: dict[ActionKind, str] = {
    "agree": "Thanks, confidence updated",
    "feels_safer": "Thanks, improvement noted",
}
ALREADY_RECORDED_MESSAGE = "Already recorded for this segment"


@dataclass(frozen=True)
class CommunityActionResult:
    segment_id: str
    kind: ActionKind
    recorded: bool
    message: str
    aggregate: SegmentAggregateView | None


@dataclass(frozen=True)
class SessionRoute:
    pair: RoutePair
    comparison: RouteComparison


class RoutingSession:
    """Graph, aggregate store and throttle for one user session.

    Calls are serialized by an internal lock; decay depends on arrival order.
    """

    def __init__(
        self,
        graph: SegmentGraph,
        *,
        store: AggregateStore | None = None,
        throttle: SessionThrottle | None = None,
        clock: Callable[[], datetime] = utc_now,
        session_id: str | None = None,
    ) -> None:
        self.graph = graph
        self.store = store if store is not None else AggregateStore()
        self.throttle = throttle if throttle is not None else SessionThrottle()
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._clock = clock
        self._lock = Lock()

    @classmethod
    def from_network(
        cls,
        network: SegmentNetwork,
        *,
        params: AggregatorParams | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "RoutingSession":
        graph = build_segment_graph(network.segments)
        store = AggregateStore(params=params, baselines=network.baselines)
        return cls(graph, store=store, clock=clock)

    @classmethod
    def from_geojson(cls, path: str | Path, **kwargs: Any) -> "RoutingSession":
        return cls.from_network(load_segment_network(path), **kwargs)

    def now(self) -> datetime:
        return as_utc(self._clock())

    def score_for(self, segment_id: str) -> float | None:
        return self.store.score_for(segment_id)

    def knows_segment(self, segment_id: str) -> bool:
        return segment_id in self.graph.segments or self.store.knows(segment_id)

    # --- ratings ---

    def submit(self, payload: Mapping[str, Any] | RatingSubmission) -> list[SegmentAggregateView]:
        """Validate then apply; a rejected payload leaves every record untouched."""
        submission = validate_submission(payload)
        with self._lock:
            records = self.store.apply_submission(submission, self.now())
            views = self.store.views(r.segment_id for r in records)
        unknown = [s for s in submission.segment_ids if s not in self.graph.segments]
        log_event(
            "submission_applied",
            session_id=self.session_id,
            route_id=submission.route_id,
            segments=len(submission.segment_ids),
            unknown_segments=len(unknown),
            mode=submission.mode,
        )
        return views

    def agree(self, segment_id: str) -> CommunityActionResult:
        return self._community_action("agree", segment_id)

    def feels_safer(self, segment_id: str) -> CommunityActionResult:
        return self._community_action("feels_safer", segment_id)

    def _community_action(self, kind: ActionKind, segment_id: str) -> CommunityActionResult:
        with self._lock:
            # Votes only land on segments the network or a diary entry already introduced.
            if not self.knows_segment(segment_id):
                raise DiaryError(
                    reason_code="segment_unknown",
                    message=f"segment {segment_id!r} is not part of the network",
                    details={"segment_id": segment_id, "kind": kind},
                )
            now = self.now()
            if not self.throttle.record_vote(segment_id, kind, now):
                log_event(
                    "community_action_throttled",
                    session_id=self.session_id,
                    segment_id=segment_id,
                    kind=kind,
                )
                return CommunityActionResult(
                    segment_id=segment_id,
                    kind=kind,
                    recorded=False,
                    message=ALREADY_RECORDED_MESSAGE,
                    aggregate=self.store.view(segment_id),
                )
            if kind == "agree":
                self.store.agree(segment_id, now)
            else:
                self.store.feels_safer(segment_id, now)
            view = self.store.view(segment_id)
        log_event("community_action_recorded", session_id=self.session_id, segment_id=segment_id, kind=kind)
        return CommunityActionResult(
            segment_id=segment_id,
            kind=kind,
            recorded=True,
            message=ACTION_MESSAGES[kind],
            aggregate=view,
        )

    def rebuild_segment(
        self,
        segment_id: str,
        samples: Iterable[RatingSample],
        *,
        tag_counts: Mapping[str, float] | None = None,
    ) -> SegmentAggregateView:
        """Replace a segment's incremental aggregate with one recomputed from its history."""
        history = list(samples)
        with self._lock:
            record = self.store.rebuild_from_samples(segment_id, history, self.now(), tag_counts=tag_counts)
            view = record_view(record, self.store.params)
        log_event("segment_rebuilt", session_id=self.session_id, segment_id=segment_id, samples=len(history))
        return view

    def segment(self, segment_id: str) -> SegmentAggregateView | None:
        with self._lock:
            return self.store.view(segment_id)

    def segments(self, segment_ids: Iterable[str] | None = None) -> list[SegmentAggregateView]:
        with self._lock:
            return self.store.views(segment_ids)

    def votes_by_kind(self) -> dict[str, int]:
        with self._lock:
            return self.throttle.snapshot()

    # --- routing ---

    def route_between_nodes(
        self,
        start_node: str | None,
        end_node: str | None,
        *,
        penalty_factor: float | None = None,
        mode: TravelMode = "walk",
    ) -> SessionRoute | None:
        with self._lock:
            pair = find_route_pair(
                self.graph,
                start_node,
                end_node,
                score_lookup=self.store.score_for,
                penalty_factor=penalty_factor,
            )
            if pair is None:
                log_event(
                    "route_no_path",
                    session_id=self.session_id,
                    start_node=start_node,
                    end_node=end_node,
                )
                return None
            comparison = summarize(
                pair.base.to_route(),
                pair.alt.to_route(),
                self.store.score_for,
                mode=mode,
            )
        return SessionRoute(pair=pair, comparison=comparison)

    def route_between(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
        *,
        penalty_factor: float | None = None,
        mode: TravelMode = "walk",
    ) -> SessionRoute | None:
        """Snap (lon, lat) endpoints to graph nodes and route; None when either fails to snap."""
        start_node = self.graph.nearest_node(*start)
        end_node = self.graph.nearest_node(*end)
        if start_node is None or end_node is None:
            log_event(
                "route_unsnapped_endpoint",
                session_id=self.session_id,
                start_snapped=start_node is not None,
                end_snapped=end_node is not None,
            )
            return None
        return self.route_between_nodes(start_node, end_node, penalty_factor=penalty_factor, mode=mode)

    def route_for_segments(self, segment_ids: Iterable[str]) -> Route:
        return route_from_segment_ids(self.graph, segment_ids)

    def compare(
        self,
        base_segment_ids: Iterable[str],
        alt_segment_ids: Iterable[str],
        *,
        mode: TravelMode = "walk",
    ) -> RouteComparison:
        base = self.route_for_segments(base_segment_ids)
        alt = self.route_for_segments(alt_segment_ids)
        with self._lock:
            return summarize(base, alt, self.store.score_for, mode=mode)
