from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "submission_invalid",
        "segment_unknown",
        "route_no_path",
        "route_unsnapped_endpoint",
        "network_asset_unavailable",
        "action_throttled",
    }
)


@dataclass
class DiaryError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class SubmissionRejected(DiaryError):
    """Raised before any aggregate is touched; `errors` holds one entry per bad field."""

    errors: list[dict[str, str]] = field(default_factory=list)

    def human_readable(self) -> list[str]:
        return [f"{item['field']}: {item['message']}" for item in self.errors]


def normalize_reason_code(reason_code: str, *, default: str = "submission_invalid") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
