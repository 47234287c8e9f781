from __future__ import annotations

from dataclasses import dataclass

from .models import TravelMode
from .segment_graph import Route
from .settings import settings
from .shortest_path import ScoreLookup


@dataclass(frozen=True)
class RouteComparison:
    avoided_low_rated_count: int
    base_low_rated_count: int
    alt_low_rated_count: int
    overhead_percent: float
    eta_delta_minutes: float

    @property
    def worth_showing(self) -> bool:
        return self.avoided_low_rated_count > 0


def low_rated_segments(
    segment_ids: tuple[str, ...],
    score_lookup: ScoreLookup,
    *,
    threshold: float,
) -> set[str]:
    low: set[str] = set()
    for segment_id in segment_ids:
        score = score_lookup(segment_id)
        if score is not None and score < threshold:
            low.add(segment_id)
    return low


def speed_m_per_min(mode: TravelMode) -> float:
    if mode == "bike":
        return settings.bike_speed_m_per_min
    return settings.walk_speed_m_per_min


def summarize(
    base: Route,
    alt: Route,
    score_lookup: ScoreLookup,
    *,
    mode: TravelMode = "walk",
    low_rated_threshold: float | None = None,
) -> RouteComparison:
    """Justify (or not) surfacing the alternative: what it avoids and what it costs."""
    threshold = settings.low_rated_threshold if low_rated_threshold is None else float(low_rated_threshold)
    base_low = low_rated_segments(base.segment_ids, score_lookup, threshold=threshold)
    alt_low = low_rated_segments(alt.segment_ids, score_lookup, threshold=threshold)
    avoided = base_low - set(alt.segment_ids)

    base_len = max(0.0, base.total_length_m)
    alt_len = max(0.0, alt.total_length_m)
    overhead = ((alt_len - base_len) / base_len * 100.0) if base_len > 1e-9 else 0.0
    eta_delta = (alt_len - base_len) / max(1e-9, speed_m_per_min(mode))

    return RouteComparison(
        avoided_low_rated_count=len(avoided),
        base_low_rated_count=len(base_low),
        alt_low_rated_count=len(alt_low),
        overhead_percent=round(overhead, 2),
        eta_delta_minutes=round(eta_delta, 2),
    )
