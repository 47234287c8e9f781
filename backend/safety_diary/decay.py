from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

DAY_SECONDS = 86_400.0
EPSILON = 1e-6
NEUTRAL_MEAN = 3.0

TrendDirection = Literal["up", "down", "flat"]


@dataclass(frozen=True)
class RatingSample:
    rating: float
    timestamp: datetime


@dataclass(frozen=True)
class SegmentStats:
    rating: float
    n_eff: float
    confidence: float
    trend_30d: float


def as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def elapsed_days(since: datetime, now: datetime) -> float:
    """Days between two instants, floored at zero so replays and clock skew never grow weight."""
    seconds = (as_utc(now) - as_utc(since)).total_seconds()
    if not math.isfinite(seconds):
        return 0.0
    return max(0.0, seconds / DAY_SECONDS)


def decay_factor(days: float, half_life_days: float) -> float:
    if not math.isfinite(days) or days <= 0.0:
        return 1.0
    half_life = max(EPSILON, float(half_life_days))
    return math.pow(2.0, -days / half_life)


def weight_for(timestamp: datetime, now: datetime, half_life_days: float) -> float:
    """Weight of an observation taken at `timestamp`, seen from `now`.

    1.0 for a fresh observation, 0.5 one half-life later, strictly decreasing after.
    """
    return decay_factor(elapsed_days(timestamp, now), half_life_days)


def clamp_mean(value: float, *, low: float = 1.0, high: float = 5.0) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_MEAN
    if not math.isfinite(v):
        return NEUTRAL_MEAN
    return min(high, max(low, v))


def bayesian_shrink(mean: float, n: float, prior_mean: float, prior_n: float) -> float:
    n = float(n)
    if math.isinf(n) and n > 0:
        return float(mean)
    if math.isnan(n) or n < 0.0:
        n = 0.0
    prior_n = max(0.0, float(prior_n))
    denom = prior_n + n
    if denom <= EPSILON:
        return float(prior_mean)
    return ((float(prior_mean) * prior_n) + (float(mean) * n)) / denom


def effective_n(sum_w: float) -> float:
    if not math.isfinite(float(sum_w)):
        return 0.0
    return max(0.0, float(sum_w))


def confidence_percent(n_eff: float, *, full_n_eff: float = 50.0) -> float:
    return min(100.0, (effective_n(n_eff) / max(EPSILON, float(full_n_eff))) * 100.0)


def trend_indicator(delta: float, *, threshold: float = 0.2) -> TrendDirection:
    if not math.isfinite(float(delta)):
        return "flat"
    if delta > threshold:
        return "up"
    if delta < -threshold:
        return "down"
    return "flat"


# Batch re-aggregation from a full sample history. Used to rebuild a record
# from scratch and to cross-check the incremental path.


def decayed_mean(
    samples: Iterable[RatingSample],
    now: datetime,
    half_life_days: float,
    *,
    fallback: float = NEUTRAL_MEAN,
) -> float:
    weighted_sum = 0.0
    weight_sum = 0.0
    for sample in samples:
        w = weight_for(sample.timestamp, now, half_life_days)
        weighted_sum += float(sample.rating) * w
        weight_sum += w
    if weight_sum <= EPSILON:
        return fallback
    return weighted_sum / weight_sum


def effective_n_from_samples(
    samples: Iterable[RatingSample],
    now: datetime,
    half_life_days: float,
) -> float:
    return sum(weight_for(sample.timestamp, now, half_life_days) for sample in samples)


def delta_30d_from_samples(samples: Iterable[RatingSample], now: datetime) -> float:
    """Mean of the last 30 days minus mean of days 31-90; 0 when either side is empty."""
    now = as_utc(now)
    recent_cutoff = now - timedelta(days=30)
    older_cutoff = now - timedelta(days=90)
    recent: list[float] = []
    older: list[float] = []
    for sample in samples:
        ts = as_utc(sample.timestamp)
        if ts >= recent_cutoff:
            recent.append(float(sample.rating))
        elif ts >= older_cutoff:
            older.append(float(sample.rating))
    if not recent or not older:
        return 0.0
    return (sum(recent) / len(recent)) - (sum(older) / len(older))


def segment_stats_from_samples(
    samples: Iterable[RatingSample],
    now: datetime,
    *,
    half_life_days: float,
    prior_mean: float,
    prior_n: float,
    full_n_eff: float = 50.0,
) -> SegmentStats:
    history = list(samples)
    observed_mean = decayed_mean(history, now, half_life_days, fallback=prior_mean)
    observed_n = effective_n_from_samples(history, now, half_life_days)
    rating = clamp_mean(bayesian_shrink(observed_mean, observed_n, prior_mean, prior_n))
    return SegmentStats(
        rating=rating,
        n_eff=effective_n(observed_n),
        confidence=confidence_percent(observed_n, full_n_eff=full_n_eff),
        trend_30d=delta_30d_from_samples(history, now),
    )
