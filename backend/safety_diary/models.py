from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)

from .errors import SubmissionRejected

TravelMode = Literal["walk", "bike"]
ActionKind = Literal["agree", "feels_safer"]
TrendDirection = Literal["up", "down", "flat"]

Tag = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=30)]


class LngLat(BaseModel):
    lon: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)


class SegmentOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    segment_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)


class RatingSubmission(BaseModel):
    """Trip rating as posted by the diary form. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    route_id: str = Field(..., min_length=1, max_length=100)
    segment_ids: list[str] = Field(..., min_length=1, max_length=500)
    overall_rating: int = Field(..., ge=1, le=5)
    tags: list[Tag] = Field(..., min_length=1, max_length=3)
    segment_overrides: list[SegmentOverride] = Field(default_factory=list, max_length=2)
    mode: TravelMode = Field(..., validation_alias=AliasChoices("mode", "travel_mode"))
    user_hash: str = Field(..., min_length=1, max_length=128)
    notes: str | None = Field(default=None, max_length=200)
    timestamp: datetime | None = None

    @model_validator(mode="after")
    def _consistent_segments(self) -> "RatingSubmission":
        ids = [s.strip() for s in self.segment_ids]
        if any(not s for s in ids):
            raise ValueError("segment_ids must not contain blank ids")
        # Order-preserving de-duplication; a segment is rated once per trip.
        self.segment_ids = list(dict.fromkeys(ids))
        self.tags = list(dict.fromkeys(self.tags))

        seen: set[str] = set()
        for override in self.segment_overrides:
            if override.segment_id not in self.segment_ids:
                raise ValueError(f"override segment {override.segment_id!r} is not part of segment_ids")
            if override.segment_id in seen:
                raise ValueError(f"duplicate override for segment {override.segment_id!r}")
            seen.add(override.segment_id)
        return self

    def rating_for(self, segment_id: str) -> int:
        for override in self.segment_overrides:
            if override.segment_id == segment_id:
                return override.rating
        return self.overall_rating


def _error_field(loc: tuple[Any, ...]) -> str:
    parts = [str(p) for p in loc]
    return ".".join(parts) if parts else "payload"


def validate_submission(payload: Mapping[str, Any] | RatingSubmission) -> RatingSubmission:
    """Schema-check a raw submission; raises SubmissionRejected listing every bad field."""
    if isinstance(payload, RatingSubmission):
        return payload
    if not isinstance(payload, Mapping):
        raise SubmissionRejected(
            reason_code="submission_invalid",
            message="submission must be a JSON object",
            errors=[{"field": "payload", "message": "expected an object"}],
        )
    try:
        return RatingSubmission.model_validate(dict(payload))
    except ValidationError as exc:
        errors = [
            {"field": _error_field(tuple(err.get("loc", ()))), "message": str(err.get("msg", "invalid"))}
            for err in exc.errors()
        ]
        raise SubmissionRejected(
            reason_code="submission_invalid",
            message=f"submission rejected: {len(errors)} invalid field(s)",
            errors=errors,
        ) from exc


# --- Read models / HTTP payloads ---


class TagShare(BaseModel):
    tag: str
    p: float


class SegmentAggregateView(BaseModel):
    segment_id: str
    mean: float
    n_eff: float
    delta_30d: float
    top_tags: list[TagShare]
    confidence: float
    trend: TrendDirection
    updated: datetime
    agree_count: int = 0
    improvement_count: int = 0


class SegmentListResponse(BaseModel):
    segments: list[SegmentAggregateView]


class SubmitResponse(BaseModel):
    ok: bool = True
    route_id: str
    updated_segments: list[SegmentAggregateView]


class SubmitRejectedResponse(BaseModel):
    ok: bool = False
    reason_code: str
    errors: list[str]


class CommunityActionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    segment_id: str = Field(..., min_length=1)


class CommunityActionResponse(BaseModel):
    ok: bool
    recorded: bool
    segment_id: str
    kind: ActionKind
    message: str
    aggregate: SegmentAggregateView | None = None


class RouteQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: LngLat
    end: LngLat
    penalty_factor: float | None = Field(default=None, ge=0.0, le=50.0)
    mode: TravelMode = "walk"


class PathSummary(BaseModel):
    segment_path: list[str]
    node_path: list[str]
    total_length_m: float


class RouteComparisonModel(BaseModel):
    avoided_low_rated_count: int
    base_low_rated_count: int
    alt_low_rated_count: int
    overhead_percent: float
    eta_delta_minutes: float
    worth_showing: bool


class RoutePairResponse(BaseModel):
    base: PathSummary
    alt: PathSummary
    penalty_factor: float
    alt_matches_base: bool
    comparison: RouteComparisonModel


class RouteQueryResponse(BaseModel):
    ok: bool = True
    route: RoutePairResponse | None = None
    message: str = ""
