from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from safety_diary.aggregator import AggregatorParams
from safety_diary.main import app
from safety_diary.segment_graph import Segment, SegmentBaseline, SegmentNetwork
from safety_diary.session import RoutingSession
from safety_diary.settings import settings

NOW = datetime(2025, 5, 20, 7, 45, tzinfo=UTC)


def _session() -> RoutingSession:
    network = SegmentNetwork(
        segments=(
            Segment("short_1", ((0.0, 51.0), (0.001, 51.0)), 50.0),
            Segment("short_2", ((0.001, 51.0), (0.002, 51.0)), 50.0),
            Segment("long_1", ((0.0, 51.0), (0.001, 51.001)), 75.0),
            Segment("long_2", ((0.001, 51.001), (0.002, 51.0)), 75.0),
        ),
        baselines={
            "short_1": SegmentBaseline(mean=1.5, n_eff=8.0),
            "short_2": SegmentBaseline(mean=1.5, n_eff=8.0),
            "long_1": SegmentBaseline(mean=4.5, n_eff=8.0),
            "long_2": SegmentBaseline(mean=4.5, n_eff=8.0),
        },
    )
    return RoutingSession.from_network(network, params=AggregatorParams(), clock=lambda: NOW)


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setattr(settings, "segments_asset_path", "")
    with TestClient(app) as test_client:
        app.state.session = _session()
        yield test_client


def _submission(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "route_id": "morning_walk",
        "segment_ids": ["short_1", "short_2"],
        "overall_rating": 2,
        "tags": ["poor_lighting"],
        "segment_overrides": [{"segment_id": "short_2", "rating": 4}],
        "travel_mode": "walk",
        "user_hash": "u_42",
    }
    payload.update(overrides)
    return payload


def test_health_reports_loaded_graph(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["nodes"] == 4
    assert data["segments"] == 4
    assert data["aggregates"] == 0


def test_submit_updates_segments_and_exposes_views(client: TestClient) -> None:
    resp = client.post("/diary/submit", json=_submission())
    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert data["route_id"] == "morning_walk"
    ids = [s["segment_id"] for s in data["updated_segments"]]
    assert ids == ["short_1", "short_2"]

    listed = client.get("/segments", params={"ids": "short_2,short_1"}).json()["segments"]
    assert [s["segment_id"] for s in listed] == ["short_2", "short_1"]
    one = client.get("/segments/short_1").json()
    assert one["top_tags"] == [{"tag": "poor_lighting", "p": 1.0}]
    assert 1.5 < one["mean"] < 3.0
    assert one["n_eff"] == pytest.approx(9.0)


def test_submit_rejection_lists_field_errors(client: TestClient) -> None:
    resp = client.post("/diary/submit", json=_submission(overall_rating=0, notes="x" * 250))
    assert resp.status_code == 422
    data = resp.json()
    assert data["ok"] is False
    assert data["reason_code"] == "submission_invalid"
    assert any(e.startswith("overall_rating:") for e in data["errors"])
    assert any(e.startswith("notes:") for e in data["errors"])
    assert client.get("/health").json()["aggregates"] == 0


def test_unknown_segment_returns_404_with_reason_code(client: TestClient) -> None:
    resp = client.get("/segments/nope")
    assert resp.status_code == 404
    assert resp.json()["detail"]["reason_code"] == "segment_unknown"


def test_agree_is_recorded_once_per_segment(client: TestClient) -> None:
    first = client.post("/diary/agree", json={"segment_id": "long_1"}).json()
    assert first["recorded"] is True
    assert first["message"] == "Thanks, confidence updated"
    second = client.post("/diary/agree", json={"segment_id": "long_1"}).json()
    assert second["recorded"] is False
    assert second["aggregate"]["n_eff"] == first["aggregate"]["n_eff"]
    assert client.get("/health").json()["votes"] == {"agree": 1}


def test_votes_on_unknown_segment_return_404(client: TestClient) -> None:
    for path in ("/diary/agree", "/diary/improve"):
        resp = client.post(path, json={"segment_id": "nowhere"})
        assert resp.status_code == 404
        detail = resp.json()["detail"]
        assert detail["reason_code"] == "segment_unknown"
        assert detail["segment_id"] == "nowhere"
    health = client.get("/health").json()
    assert health["aggregates"] == 0
    assert health["votes"] == {}


def test_improve_reports_improvement(client: TestClient) -> None:
    data = client.post("/diary/improve", json={"segment_id": "short_1"}).json()
    assert data["recorded"] is True
    assert data["kind"] == "feels_safer"
    assert data["aggregate"]["improvement_count"] == 1
    assert data["aggregate"]["mean"] > 1.5


def test_route_returns_base_and_safer_alternative(client: TestClient) -> None:
    resp = client.post(
        "/diary/route",
        json={
            "start": {"lon": 0.0, "lat": 51.0},
            "end": {"lon": 0.002, "lat": 51.0},
            "penalty_factor": 1.2,
        },
    )
    assert resp.status_code == 200
    route = resp.json()["route"]
    assert route["base"]["segment_path"] == ["short_1", "short_2"]
    assert route["alt"]["segment_path"] == ["long_1", "long_2"]
    assert route["alt_matches_base"] is False
    assert route["comparison"]["avoided_low_rated_count"] == 2
    assert route["comparison"]["overhead_percent"] == pytest.approx(50.0)
    assert route["comparison"]["worth_showing"] is True


def test_route_without_snappable_endpoint(client: TestClient) -> None:
    resp = client.post(
        "/diary/route",
        json={"start": {"lon": 3.0, "lat": 48.0}, "end": {"lon": 0.002, "lat": 51.0}},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["route"] is None
    assert data["message"] == "No route found"


def test_route_query_rejects_unknown_fields(client: TestClient) -> None:
    resp = client.post(
        "/diary/route",
        json={"start": {"lon": 0, "lat": 51}, "end": {"lon": 0.002, "lat": 51}, "avoid": "all"},
    )
    assert resp.status_code == 422


def test_startup_loads_configured_geojson(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    asset = tmp_path / "segments.geojson"
    asset.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "features": [
                    {
                        "type": "Feature",
                        "geometry": {"type": "LineString", "coordinates": [[0.0, 51.0], [0.001, 51.0]]},
                        "properties": {"segment_id": "seg_a", "decayed_mean": 2.0, "n_eff": 4},
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(settings, "segments_asset_path", str(asset))
    with TestClient(app) as test_client:
        health = test_client.get("/health").json()
    assert health["segments"] == 1
    assert health["nodes"] == 2
