from __future__ import annotations

from datetime import datetime

from .decay import as_utc, utc_now
from .models import ActionKind


class SessionThrottle:
    """One-shot gate per (kind, segment) for the life of a session.

    Without it a user could inflate n_eff indefinitely by repeated clicking.
    """

    def __init__(self) -> None:
        self._votes: dict[tuple[str, str], datetime] = {}

    def record_vote(self, segment_id: str, kind: ActionKind, now: datetime | None = None) -> bool:
        """Store the vote time; False when this segment+kind was already recorded."""
        key = (kind, segment_id)
        if key in self._votes:
            return False
        self._votes[key] = as_utc(now) if now is not None else utc_now()
        return True

    def snapshot(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for kind, _ in self._votes:
            counts[kind] = counts.get(kind, 0) + 1
        return counts
