from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .decay import clamp_mean, effective_n
from .errors import DiaryError
from .logging_utils import log_event, log_warning
from .settings import settings

EARTH_RADIUS_M = 6_371_000.0
# Quick reject before the haversine check when snapping a coordinate.
NEAREST_NODE_BBOX_DEG = 0.1


def _haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def polyline_length_m(coordinates: Sequence[tuple[float, float]]) -> float:
    total = 0.0
    for (lon1, lat1), (lon2, lat2) in zip(coordinates, coordinates[1:]):
        total += _haversine_m(lat1, lon1, lat2, lon2)
    return total


def snap_key(lon: float, lat: float, decimals: int | None = None) -> str:
    places = settings.node_snap_decimals if decimals is None else max(0, int(decimals))
    return f"{lon:.{places}f},{lat:.{places}f}"


@dataclass(frozen=True)
class Segment:
    segment_id: str
    coordinates: tuple[tuple[float, float], ...]  # [lon, lat]
    length_m: float
    road_class: int = 3
    street_name: str = ""


@dataclass(frozen=True)
class SegmentBaseline:
    """Historical aggregate snapshot shipped alongside the network."""

    mean: float
    n_eff: float
    top_tags: tuple[tuple[str, float], ...] = ()
    delta_30d: float = 0.0


@dataclass(frozen=True)
class SegmentNetwork:
    segments: tuple[Segment, ...]
    baselines: dict[str, SegmentBaseline]


@dataclass(frozen=True)
class GraphEdge:
    segment_id: str
    from_node: str
    to_node: str
    length_m: float
    road_class: int


@dataclass(frozen=True)
class Route:
    segment_ids: tuple[str, ...]
    total_length_m: float


@dataclass
class SegmentGraph:
    snap_decimals: int = 3
    nodes: dict[str, tuple[float, float]] = field(default_factory=dict)
    adjacency: dict[str, list[GraphEdge]] = field(default_factory=dict)
    segments: dict[str, Segment] = field(default_factory=dict)
    skipped_segments: int = 0

    @property
    def edge_count(self) -> int:
        return sum(len(edges) for edges in self.adjacency.values())

    def has_node(self, node_id: str | None) -> bool:
        return node_id is not None and node_id in self.nodes

    def node_for(self, lon: float, lat: float) -> str | None:
        key = snap_key(lon, lat, self.snap_decimals)
        return key if key in self.nodes else None

    def nearest_node(
        self,
        lon: float,
        lat: float,
        *,
        max_radius_m: float | None = None,
    ) -> str | None:
        radius = settings.nearest_node_max_radius_m if max_radius_m is None else float(max_radius_m)
        best: str | None = None
        best_dist = math.inf
        for node_id, (node_lon, node_lat) in self.nodes.items():
            if abs(node_lon - lon) > NEAREST_NODE_BBOX_DEG or abs(node_lat - lat) > NEAREST_NODE_BBOX_DEG:
                continue
            d = _haversine_m(lat, lon, node_lat, node_lon)
            if d < best_dist:
                best_dist = d
                best = node_id
        if best is not None and best_dist <= radius:
            return best
        return None

    def _add_edge(self, edge: GraphEdge) -> None:
        self.adjacency.setdefault(edge.from_node, []).append(edge)


def build_segment_graph(
    segments: Iterable[Segment],
    *,
    snap_decimals: int | None = None,
) -> SegmentGraph:
    """Materialize topology only: nodes from rounded endpoints, one edge per direction."""
    decimals = settings.node_snap_decimals if snap_decimals is None else max(0, int(snap_decimals))
    graph = SegmentGraph(snap_decimals=decimals)
    for seg in segments:
        if len(seg.coordinates) < 2:
            graph.skipped_segments += 1
            log_warning("segment_skipped", segment_id=seg.segment_id, reason="fewer_than_two_coordinates")
            continue
        if seg.segment_id in graph.segments:
            graph.skipped_segments += 1
            log_warning("segment_skipped", segment_id=seg.segment_id, reason="duplicate_segment_id")
            continue
        a_lon, a_lat = seg.coordinates[0]
        b_lon, b_lat = seg.coordinates[-1]
        from_id = snap_key(a_lon, a_lat, decimals)
        to_id = snap_key(b_lon, b_lat, decimals)
        graph.nodes.setdefault(from_id, (a_lon, a_lat))
        graph.nodes.setdefault(to_id, (b_lon, b_lat))
        graph.segments[seg.segment_id] = seg
        graph._add_edge(
            GraphEdge(
                segment_id=seg.segment_id,
                from_node=from_id,
                to_node=to_id,
                length_m=seg.length_m,
                road_class=seg.road_class,
            )
        )
        graph._add_edge(
            GraphEdge(
                segment_id=seg.segment_id,
                from_node=to_id,
                to_node=from_id,
                length_m=seg.length_m,
                road_class=seg.road_class,
            )
        )
    log_event(
        "segment_graph_built",
        nodes=len(graph.nodes),
        edges=graph.edge_count,
        segments=len(graph.segments),
        skipped_segments=graph.skipped_segments,
    )
    return graph


def route_from_segment_ids(graph: SegmentGraph, segment_ids: Iterable[str]) -> Route:
    """Build a Route from an id list; ids missing from the graph are skipped, not fatal."""
    kept: list[str] = []
    total = 0.0
    for segment_id in segment_ids:
        seg = graph.segments.get(segment_id)
        if seg is None:
            log_warning("route_topology_gap", segment_id=segment_id)
            continue
        kept.append(segment_id)
        total += seg.length_m
    return Route(segment_ids=tuple(kept), total_length_m=total)


# --- GeoJSON ingestion ---


def _finite_or_none(value: Any) -> float | None:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def _parse_coordinates(geometry: Any) -> tuple[tuple[float, float], ...]:
    if not isinstance(geometry, Mapping) or geometry.get("type") != "LineString":
        return ()
    coords = geometry.get("coordinates")
    if not isinstance(coords, list):
        return ()
    out: list[tuple[float, float]] = []
    for pt in coords:
        if (
            isinstance(pt, (list, tuple))
            and len(pt) >= 2
            and isinstance(pt[0], (int, float))
            and isinstance(pt[1], (int, float))
        ):
            out.append((float(pt[0]), float(pt[1])))
    return tuple(out)


def _parse_top_tags(raw: Any) -> tuple[tuple[str, float], ...]:
    if not isinstance(raw, list):
        return ()
    tags: list[tuple[str, float]] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            tags.append((item.strip(), 1.0 / len(raw)))
        elif isinstance(item, Mapping) and isinstance(item.get("tag"), str):
            p = _finite_or_none(item.get("p"))
            tags.append((item["tag"], max(0.0, p) if p is not None else 0.0))
    return tuple(tags)


def segment_from_feature(feature: Mapping[str, Any], idx: int = 0) -> tuple[Segment, SegmentBaseline | None]:
    props = feature.get("properties") or {}
    if not isinstance(props, Mapping):
        props = {}
    raw_id = props.get("segment_id")
    segment_id = raw_id.strip() if isinstance(raw_id, str) and raw_id.strip() else f"seg_{idx + 1}"

    coordinates = _parse_coordinates(feature.get("geometry"))
    length = _finite_or_none(props.get("length_m"))
    if length is None or length <= 0.0:
        length = polyline_length_m(coordinates)

    cls = _finite_or_none(props.get("class"))
    road_class = int(cls) if cls is not None and 1 <= int(cls) <= 4 else settings.default_segment_class

    street = props.get("street_name") or props.get("street") or props.get("name") or ""
    segment = Segment(
        segment_id=segment_id,
        coordinates=coordinates,
        length_m=float(length),
        road_class=road_class,
        street_name=street if isinstance(street, str) else "",
    )

    baseline: SegmentBaseline | None = None
    mean_raw = _finite_or_none(props.get("decayed_mean"))
    if mean_raw is not None:
        delta = _finite_or_none(props.get("delta_30d"))
        baseline = SegmentBaseline(
            mean=clamp_mean(mean_raw),
            n_eff=effective_n(_finite_or_none(props.get("n_eff")) or 0.0),
            top_tags=_parse_top_tags(props.get("top_tags")),
            delta_30d=delta if delta is not None else 0.0,
        )
    return segment, baseline


def segments_from_feature_collection(collection: Any) -> SegmentNetwork:
    features: list[Any] = []
    if isinstance(collection, Mapping) and collection.get("type") == "FeatureCollection":
        raw = collection.get("features")
        if isinstance(raw, list):
            features = raw
    segments: list[Segment] = []
    baselines: dict[str, SegmentBaseline] = {}
    for idx, feature in enumerate(features):
        if not isinstance(feature, Mapping):
            continue
        segment, baseline = segment_from_feature(feature, idx)
        segments.append(segment)
        if baseline is not None:
            baselines.setdefault(segment.segment_id, baseline)
    return SegmentNetwork(segments=tuple(segments), baselines=baselines)


def load_segment_network(path: str | Path) -> SegmentNetwork:
    p = Path(path)
    try:
        payload = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise DiaryError(
            reason_code="network_asset_unavailable",
            message=f"segment network could not be read: {exc}",
            details={"path": str(p)},
        ) from exc
    network = segments_from_feature_collection(payload)
    log_event(
        "segment_network_loaded",
        path=str(p),
        segments=len(network.segments),
        baselines=len(network.baselines),
    )
    return network
