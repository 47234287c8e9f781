from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from .decay import (
    EPSILON,
    RatingSample,
    as_utc,
    bayesian_shrink,
    clamp_mean,
    confidence_percent,
    decay_factor,
    effective_n,
    elapsed_days,
    segment_stats_from_samples,
    trend_indicator,
)
from .models import RatingSubmission, SegmentAggregateView, TagShare
from .segment_graph import SegmentBaseline
from .settings import Settings, settings


@dataclass(frozen=True)
class AggregatorParams:
    half_life_days: float = 21.0
    prior_mean: float = 3.0
    prior_n: float = 5.0
    window_weight_cap: float = 100.0
    agree_increment: float = 0.3
    agree_weight_cap: float = 50.0
    feels_safer_step: float = 0.1
    feels_safer_delta_bump: float = 0.05
    confidence_full_n_eff: float = 50.0
    trend_threshold: float = 0.2

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> "AggregatorParams":
        cfg = cfg or settings
        return cls(
            half_life_days=cfg.half_life_days,
            prior_mean=cfg.prior_mean,
            prior_n=cfg.prior_n,
            window_weight_cap=cfg.window_weight_cap,
            agree_increment=cfg.agree_increment,
            agree_weight_cap=cfg.agree_weight_cap,
            feels_safer_step=cfg.feels_safer_step,
            feels_safer_delta_bump=cfg.feels_safer_delta_bump,
            confidence_full_n_eff=cfg.confidence_full_n_eff,
            trend_threshold=cfg.trend_threshold,
        )


@dataclass
class AggregateRecord:
    segment_id: str
    updated: datetime
    mean: float = 3.0
    sum_w: float = 0.0
    n_eff: float = 0.0
    tag_counts: dict[str, float] = field(default_factory=dict)
    top_tags: list[tuple[str, float]] = field(default_factory=list)
    delta_30d: float = 0.0
    # Rolling 30-day reference: decayed sum of post-update means and its weight.
    window_sum: float = 0.0
    window_w: float = 0.0
    agree_count: int = 0
    improvement_count: int = 0


def recompute_top_tags(tag_counts: Mapping[str, float]) -> list[tuple[str, float]]:
    total = sum(max(0.0, c) for c in tag_counts.values())
    if total <= EPSILON:
        return []
    shares = [(tag, round(max(0.0, count) / total, 2)) for tag, count in tag_counts.items()]
    shares.sort(key=lambda item: (-item[1], item[0]))
    return shares


def _touch(record: AggregateRecord, now: datetime) -> None:
    # Never move backwards; a late event must not re-open decay already applied.
    if now > record.updated:
        record.updated = now


def apply_decay(record: AggregateRecord, now: datetime, params: AggregatorParams) -> float:
    factor = decay_factor(elapsed_days(record.updated, now), params.half_life_days)
    record.sum_w *= factor
    record.window_sum *= factor
    record.window_w *= factor
    record.n_eff = effective_n(record.sum_w)
    return factor


def apply_rating(
    record: AggregateRecord,
    rating: float,
    tags: Iterable[str],
    now: datetime,
    params: AggregatorParams,
) -> AggregateRecord:
    now = as_utc(now)
    apply_decay(record, now, params)
    previous_mean = clamp_mean(record.mean)
    rating = clamp_mean(rating)

    new_sum_w = effective_n(record.sum_w) + 1.0
    raw_mean = (previous_mean * effective_n(record.sum_w) + rating) / max(EPSILON, new_sum_w)
    shrunk = clamp_mean(bayesian_shrink(raw_mean, new_sum_w, params.prior_mean, params.prior_n))

    record.mean = shrunk
    record.sum_w = new_sum_w
    record.n_eff = effective_n(new_sum_w)

    for tag in tags:
        record.tag_counts[tag] = record.tag_counts.get(tag, 0.0) + 1.0
    record.top_tags = recompute_top_tags(record.tag_counts)

    if record.window_w > EPSILON:
        reference = record.window_sum / record.window_w
    else:
        reference = previous_mean
    record.delta_30d = shrunk - reference
    record.window_sum += shrunk
    record.window_w += 1.0
    if record.window_w > params.window_weight_cap:
        scale = params.window_weight_cap / record.window_w
        record.window_sum *= scale
        record.window_w = params.window_weight_cap

    _touch(record, now)
    return record


def apply_agree(record: AggregateRecord, now: datetime, params: AggregatorParams) -> AggregateRecord:
    """More people confirm the current score: confidence grows, mean stays."""
    now = as_utc(now)
    apply_decay(record, now, params)
    bumped = min(params.agree_weight_cap, record.sum_w + params.agree_increment)
    record.sum_w = max(record.sum_w, bumped)
    record.n_eff = effective_n(record.sum_w)
    record.agree_count += 1
    _touch(record, now)
    return record


def apply_feels_safer(record: AggregateRecord, now: datetime, params: AggregatorParams) -> AggregateRecord:
    now = as_utc(now)
    apply_decay(record, now, params)
    current = clamp_mean(record.mean)
    # Synthetic input one step above the current mean, shrunk toward the current mean.
    weight = effective_n(record.sum_w) + 1.0
    record.mean = clamp_mean(
        bayesian_shrink(current + params.feels_safer_step, weight, current, params.prior_n)
    )
    record.delta_30d += params.feels_safer_delta_bump
    record.improvement_count += 1
    _touch(record, now)
    return record


def record_view(record: AggregateRecord, params: AggregatorParams) -> SegmentAggregateView:
    return SegmentAggregateView(
        segment_id=record.segment_id,
        mean=round(clamp_mean(record.mean), 3),
        n_eff=round(record.n_eff, 3),
        delta_30d=round(record.delta_30d, 2),
        top_tags=[TagShare(tag=tag, p=p) for tag, p in record.top_tags],
        confidence=round(confidence_percent(record.n_eff, full_n_eff=params.confidence_full_n_eff), 1),
        trend=trend_indicator(record.delta_30d, threshold=params.trend_threshold),
        updated=record.updated,
        agree_count=record.agree_count,
        improvement_count=record.improvement_count,
    )


class AggregateStore:
    """Owns every AggregateRecord of one session, keyed by segment id."""

    def __init__(
        self,
        *,
        params: AggregatorParams | None = None,
        baselines: Mapping[str, SegmentBaseline] | None = None,
    ) -> None:
        self.params = params or AggregatorParams.from_settings()
        self._baselines: dict[str, SegmentBaseline] = dict(baselines or {})
        self._records: dict[str, AggregateRecord] = {}

    def __contains__(self, segment_id: object) -> bool:
        return segment_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, segment_id: str) -> AggregateRecord | None:
        return self._records.get(segment_id)

    def ensure(self, segment_id: str, now: datetime) -> AggregateRecord:
        record = self._records.get(segment_id)
        if record is None:
            record = self._new_record(segment_id, as_utc(now))
            self._records[segment_id] = record
        return record

    def _new_record(self, segment_id: str, now: datetime) -> AggregateRecord:
        baseline = self._baselines.get(segment_id)
        if baseline is None:
            return AggregateRecord(segment_id=segment_id, updated=now, mean=self.params.prior_mean)
        # Tag proportions are turned back into pseudo-counts sized by the baseline n_eff.
        scale = max(1.0, baseline.n_eff)
        tag_counts = {tag: p * scale for tag, p in baseline.top_tags if p > 0.0}
        return AggregateRecord(
            segment_id=segment_id,
            updated=now,
            mean=clamp_mean(baseline.mean),
            sum_w=effective_n(baseline.n_eff),
            n_eff=effective_n(baseline.n_eff),
            tag_counts=tag_counts,
            top_tags=recompute_top_tags(tag_counts),
            delta_30d=baseline.delta_30d,
        )

    def score_for(self, segment_id: str) -> float | None:
        record = self._records.get(segment_id)
        if record is not None:
            return record.mean
        baseline = self._baselines.get(segment_id)
        return baseline.mean if baseline is not None else None

    def apply_submission(self, submission: RatingSubmission, now: datetime) -> list[AggregateRecord]:
        """Fold a validated submission into every referenced segment, in payload order."""
        now = as_utc(now)
        # Client timestamps may backdate a trip but never run ahead of the server clock.
        when = min(as_utc(submission.timestamp), now) if submission.timestamp is not None else now
        touched: list[AggregateRecord] = []
        for segment_id in submission.segment_ids:
            record = self.ensure(segment_id, when)
            apply_rating(record, submission.rating_for(segment_id), submission.tags, when, self.params)
            touched.append(record)
        return touched

    def agree(self, segment_id: str, now: datetime) -> AggregateRecord:
        return apply_agree(self.ensure(segment_id, now), now, self.params)

    def feels_safer(self, segment_id: str, now: datetime) -> AggregateRecord:
        return apply_feels_safer(self.ensure(segment_id, now), now, self.params)

    def rebuild_from_samples(
        self,
        segment_id: str,
        samples: Iterable[RatingSample],
        now: datetime,
        *,
        tag_counts: Mapping[str, float] | None = None,
    ) -> AggregateRecord:
        """Recompute a record from its full rating history; same input, same record.

        Incremental state (rolling window, tag counts) is replaced, not merged.
        """
        now = as_utc(now)
        stats = segment_stats_from_samples(
            samples,
            now,
            half_life_days=self.params.half_life_days,
            prior_mean=self.params.prior_mean,
            prior_n=self.params.prior_n,
            full_n_eff=self.params.confidence_full_n_eff,
        )
        record = self.ensure(segment_id, now)
        record.mean = stats.rating
        record.sum_w = stats.n_eff
        record.n_eff = stats.n_eff
        record.delta_30d = stats.trend_30d
        record.window_sum = 0.0
        record.window_w = 0.0
        record.tag_counts = {tag: float(c) for tag, c in (tag_counts or {}).items() if c > 0}
        record.top_tags = recompute_top_tags(record.tag_counts)
        _touch(record, now)
        return record

    def knows(self, segment_id: str) -> bool:
        return segment_id in self._records or segment_id in self._baselines

    def view(self, segment_id: str) -> SegmentAggregateView | None:
        record = self._records.get(segment_id)
        return record_view(record, self.params) if record is not None else None

    def views(self, segment_ids: Iterable[str] | None = None) -> list[SegmentAggregateView]:
        ids = sorted(self._records) if segment_ids is None else [s for s in segment_ids if s in self._records]
        return [record_view(self._records[s], self.params) for s in ids]
