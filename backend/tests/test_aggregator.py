from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from safety_diary.aggregator import (
    AggregateRecord,
    AggregateStore,
    AggregatorParams,
    apply_agree,
    apply_feels_safer,
    apply_rating,
    recompute_top_tags,
)
from safety_diary.decay import RatingSample
from safety_diary.models import validate_submission
from safety_diary.segment_graph import SegmentBaseline

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "route_id": "route_a",
        "segment_ids": ["seg_001", "seg_002"],
        "overall_rating": 3,
        "tags": ["poor_lighting"],
        "segment_overrides": [],
        "mode": "walk",
        "user_hash": "u_123",
    }
    payload.update(overrides)
    return payload


def _store(**kwargs: Any) -> AggregateStore:
    return AggregateStore(params=AggregatorParams(), **kwargs)


def test_two_submissions_rank_segments_and_grow_n_eff() -> None:
    store = _store()
    store.apply_submission(
        validate_submission(
            _payload(segment_overrides=[{"segment_id": "seg_002", "rating": 4}])
        ),
        T0,
    )
    first_seg1 = store.get("seg_001")
    assert first_seg1 is not None
    n_eff_after_first = first_seg1.n_eff
    assert first_seg1.mean == pytest.approx(3.0)
    assert store.get("seg_002").mean == pytest.approx(19.0 / 6.0)  # type: ignore[union-attr]

    store.apply_submission(
        validate_submission(_payload(segment_ids=["seg_001"], overall_rating=2, tags=["dogs"])),
        T0,
    )
    seg1 = store.get("seg_001")
    seg2 = store.get("seg_002")
    assert seg1 is not None and seg2 is not None
    assert seg2.mean > seg1.mean
    assert seg1.n_eff > n_eff_after_first
    assert seg1.mean == pytest.approx(20.0 / 7.0)
    assert dict(seg1.top_tags) == {"poor_lighting": 0.5, "dogs": 0.5}


def test_replaying_same_timestamp_only_adds_unit_weight() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0)
    for expected in (1.0, 2.0, 3.0):
        apply_rating(record, 4.0, ["busy"], T0, params)
        assert record.n_eff == pytest.approx(expected)


def test_weight_decays_between_ratings() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0)
    apply_rating(record, 4.0, [], T0, params)
    apply_rating(record, 4.0, [], T0 + timedelta(days=21), params)
    assert record.n_eff == pytest.approx(1.5)
    assert record.updated == T0 + timedelta(days=21)


def test_late_rating_does_not_move_updated_backwards() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0)
    apply_rating(record, 2.0, [], T0, params)
    apply_rating(record, 2.0, [], T0 - timedelta(days=10), params)
    assert record.updated == T0
    assert record.n_eff == pytest.approx(2.0)


def test_aggregates_stay_bounded_and_finite() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0)
    for i in range(200):
        rating = 1.0 if i % 2 else 5.0
        apply_rating(record, rating, ["crowded"], T0 + timedelta(hours=i), params)
        assert 1.0 <= record.mean <= 5.0
        assert math.isfinite(record.n_eff) and record.n_eff >= 0.0
        assert math.isfinite(record.delta_30d)
    apply_rating(record, float("nan"), [], T0 + timedelta(days=30), params)
    assert math.isfinite(record.mean)


def test_window_weight_is_capped_and_rescaled() -> None:
    params = AggregatorParams(window_weight_cap=3.0)
    record = AggregateRecord(segment_id="s", updated=T0)
    for _ in range(6):
        apply_rating(record, 5.0, [], T0, params)
    assert record.window_w == pytest.approx(3.0)
    reference = record.window_sum / record.window_w
    assert 3.0 < reference <= record.mean


def test_first_rating_delta_is_relative_to_previous_mean() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0)
    apply_rating(record, 5.0, [], T0, params)
    # (5 + 3 * 5) / 6 minus the neutral starting mean
    assert record.delta_30d == pytest.approx(20.0 / 6.0 - 3.0)


def test_agree_raises_weight_without_moving_mean_and_is_capped() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0, mean=2.2, sum_w=4.0, n_eff=4.0)
    apply_agree(record, T0, params)
    assert record.n_eff == pytest.approx(4.3)
    assert record.mean == pytest.approx(2.2)
    assert record.agree_count == 1

    near_cap = AggregateRecord(segment_id="s", updated=T0, sum_w=49.9, n_eff=49.9)
    apply_agree(near_cap, T0, params)
    assert near_cap.n_eff == pytest.approx(50.0)

    above_cap = AggregateRecord(segment_id="s", updated=T0, sum_w=60.0, n_eff=60.0)
    apply_agree(above_cap, T0, params)
    assert above_cap.n_eff == pytest.approx(60.0)


def test_feels_safer_nudges_mean_and_delta_upward() -> None:
    params = AggregatorParams()
    record = AggregateRecord(segment_id="s", updated=T0, mean=3.0)
    apply_feels_safer(record, T0, params)
    assert record.mean == pytest.approx((3.0 * 5.0 + 3.1) / 6.0)
    assert record.delta_30d == pytest.approx(0.05)
    assert record.improvement_count == 1
    assert record.n_eff == 0.0

    top = AggregateRecord(segment_id="t", updated=T0, mean=5.0, sum_w=10.0, n_eff=10.0)
    apply_feels_safer(top, T0, params)
    assert top.mean == 5.0


def test_recompute_top_tags_orders_by_share_then_name() -> None:
    shares = recompute_top_tags({"dogs": 1.0, "busy": 1.0, "poor_lighting": 2.0})
    assert shares == [("poor_lighting", 0.5), ("busy", 0.25), ("dogs", 0.25)]
    assert recompute_top_tags({}) == []


def test_store_seeds_new_records_from_baselines() -> None:
    baseline = SegmentBaseline(
        mean=2.4,
        n_eff=12.0,
        top_tags=(("poor_lighting", 0.6), ("isolated", 0.4)),
        delta_30d=-0.3,
    )
    store = _store(baselines={"seg_9": baseline})
    assert store.score_for("seg_9") == pytest.approx(2.4)
    assert store.score_for("seg_unknown") is None
    assert "seg_9" not in store

    record = store.ensure("seg_9", T0)
    assert record.mean == pytest.approx(2.4)
    assert record.n_eff == pytest.approx(12.0)
    assert record.top_tags == [("poor_lighting", 0.6), ("isolated", 0.4)]
    assert record.delta_30d == pytest.approx(-0.3)
    assert len(store) == 1


def test_submission_timestamp_overrides_clock() -> None:
    store = _store()
    ts = T0 - timedelta(days=3)
    store.apply_submission(validate_submission(_payload(timestamp=ts.isoformat())), T0)
    record = store.get("seg_001")
    assert record is not None
    assert record.updated == ts


def test_views_round_values_and_sort_ids() -> None:
    store = _store()
    store.apply_submission(validate_submission(_payload(segment_ids=["seg_b", "seg_a"])), T0)
    views = store.views()
    assert [v.segment_id for v in views] == ["seg_a", "seg_b"]
    assert views[0].confidence == pytest.approx(2.0)
    assert views[0].trend == "flat"
    assert store.view("missing") is None
    assert [v.segment_id for v in store.views(["seg_b", "nope"])] == ["seg_b"]


def test_rebuild_from_samples_is_deterministic() -> None:
    samples = [
        RatingSample(rating=2.0, timestamp=T0 - timedelta(days=40)),
        RatingSample(rating=4.0, timestamp=T0 - timedelta(days=3)),
        RatingSample(rating=5.0, timestamp=T0),
    ]
    first = _store().rebuild_from_samples("seg", samples, T0)
    second = _store().rebuild_from_samples("seg", samples, T0)
    assert first == second
    assert 3.0 < first.mean < 5.0
    assert first.delta_30d == pytest.approx(4.5 - 2.0)


def test_future_submission_timestamp_never_moves_updated_past_now() -> None:
    store = _store()
    store.apply_submission(validate_submission(_payload(timestamp="2999-01-01T00:00:00Z")), T0)
    record = store.get("seg_001")
    assert record is not None
    assert record.updated == T0

    store.apply_submission(validate_submission(_payload()), T0 + timedelta(days=84))
    assert record.n_eff == pytest.approx(1.0 + 2.0 ** -4)


def test_rebuild_resets_window_and_tags_and_keeps_updated_monotone() -> None:
    store = _store()
    store.apply_submission(validate_submission(_payload(tags=["dogs"])), T0)
    record = store.rebuild_from_samples(
        "seg_001",
        [RatingSample(rating=2.0, timestamp=T0 - timedelta(days=5))],
        T0 - timedelta(days=1),
        tag_counts={"isolated": 3.0, "noisy": 0.0},
    )
    assert record.updated == T0
    assert record.window_w == 0.0
    assert record.window_sum == 0.0
    assert record.tag_counts == {"isolated": 3.0}
    assert record.top_tags == [("isolated", 1.0)]
    assert store.knows("seg_001")
    assert not store.knows("seg_404")
