from __future__ import annotations

import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from .decay import NEUTRAL_MEAN, clamp_mean
from .logging_utils import log_event
from .segment_graph import GraphEdge, Route, SegmentGraph
from .settings import settings

CostKind = Literal["base", "alt"]
ScoreLookup = Callable[[str], float | None]


@dataclass(frozen=True)
class PathResult:
    node_path: tuple[str, ...]
    segment_path: tuple[str, ...]
    total_length_m: float
    cost: float

    def to_route(self) -> Route:
        return Route(segment_ids=self.segment_path, total_length_m=self.total_length_m)


@dataclass(frozen=True)
class RoutePair:
    base: PathResult
    alt: PathResult
    penalty_factor: float
    escalations: int
    alt_matches_base: bool


def edge_cost(
    edge: GraphEdge,
    *,
    cost_kind: CostKind = "base",
    penalty_factor: float = 1.0,
    score_lookup: ScoreLookup | None = None,
) -> float:
    length = max(0.0, float(edge.length_m))
    if cost_kind != "alt":
        return length
    score = score_lookup(edge.segment_id) if score_lookup is not None else None
    score = clamp_mean(score) if score is not None else NEUTRAL_MEAN
    return length * (1.0 + max(0.0, float(penalty_factor)) * (6.0 - score) / 5.0)


def shortest_path(
    graph: SegmentGraph,
    start: str | None,
    goal: str | None,
    *,
    cost_kind: CostKind = "base",
    penalty_factor: float = 1.0,
    score_lookup: ScoreLookup | None = None,
) -> PathResult | None:
    """Dijkstra over the segment graph.

    Returns None when either endpoint is missing or the goal is unreachable.
    Heap entries carry an insertion counter, so equal-cost ties resolve the
    same way on every call.
    """
    if start is None or goal is None:
        return None
    if not graph.has_node(start) or not graph.has_node(goal):
        return None

    counter = itertools.count()
    dist: dict[str, float] = {start: 0.0}
    length_to: dict[str, float] = {start: 0.0}
    prev_edge: dict[str, GraphEdge] = {}
    settled: set[str] = set()
    heap: list[tuple[float, int, str]] = [(0.0, next(counter), start)]

    while heap:
        cost, _, node = heapq.heappop(heap)
        if node in settled:
            continue
        settled.add(node)
        if node == goal:
            break
        for edge in graph.adjacency.get(node, ()):
            nxt = edge.to_node
            if nxt in settled:
                continue
            new_cost = cost + edge_cost(
                edge,
                cost_kind=cost_kind,
                penalty_factor=penalty_factor,
                score_lookup=score_lookup,
            )
            prev_best = dist.get(nxt)
            if prev_best is not None and new_cost >= prev_best:
                continue
            dist[nxt] = new_cost
            length_to[nxt] = length_to[node] + max(0.0, float(edge.length_m))
            prev_edge[nxt] = edge
            heapq.heappush(heap, (new_cost, next(counter), nxt))

    if goal not in settled:
        return None

    nodes: list[str] = [goal]
    segments: list[str] = []
    cur = goal
    while cur != start:
        edge = prev_edge[cur]
        segments.append(edge.segment_id)
        cur = edge.from_node
        nodes.append(cur)
    nodes.reverse()
    segments.reverse()
    return PathResult(
        node_path=tuple(nodes),
        segment_path=tuple(segments),
        total_length_m=length_to[goal],
        cost=dist[goal],
    )


def find_route_pair(
    graph: SegmentGraph,
    start: str | None,
    goal: str | None,
    *,
    score_lookup: ScoreLookup | None,
    penalty_factor: float | None = None,
    escalation_step: float | None = None,
    max_penalty_factor: float | None = None,
) -> RoutePair | None:
    """Base (distance) route plus a safety-weighted alternative.

    When the alternative lands on the same segments as the base route, the
    penalty is raised by `escalation_step` until it differs or the ceiling is hit.
    """
    base = shortest_path(graph, start, goal, cost_kind="base")
    if base is None:
        return None

    factor = settings.default_penalty_factor if penalty_factor is None else max(0.0, float(penalty_factor))
    step = settings.penalty_escalation_step if escalation_step is None else max(0.0, float(escalation_step))
    ceiling = settings.max_penalty_factor if max_penalty_factor is None else float(max_penalty_factor)
    ceiling = max(ceiling, factor)

    escalations = 0
    alt = shortest_path(
        graph, start, goal, cost_kind="alt", penalty_factor=factor, score_lookup=score_lookup
    )
    while (
        alt is not None
        and alt.segment_path == base.segment_path
        and step > 0.0
        and factor + step <= ceiling + 1e-9
    ):
        factor += step
        escalations += 1
        alt = shortest_path(
            graph, start, goal, cost_kind="alt", penalty_factor=factor, score_lookup=score_lookup
        )

    # Same connectivity as base, so alt cannot be None here; keep the base as a fallback.
    if alt is None:
        alt = base
    alt_matches_base = alt.segment_path == base.segment_path
    log_event(
        "route_pair_computed",
        base_segments=len(base.segment_path),
        alt_segments=len(alt.segment_path),
        base_length_m=round(base.total_length_m, 2),
        alt_length_m=round(alt.total_length_m, 2),
        penalty_factor=round(factor, 3),
        escalations=escalations,
        alt_matches_base=alt_matches_base,
    )
    return RoutePair(
        base=base,
        alt=alt,
        penalty_factor=factor,
        escalations=escalations,
        alt_matches_base=alt_matches_base,
    )
