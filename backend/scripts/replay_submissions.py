from __future__ import annotations

import argparse
import json
import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Sequence

from safety_diary.decay import RatingSample, as_utc
from safety_diary.errors import SubmissionRejected
from safety_diary.models import validate_submission
from safety_diary.session import RoutingSession


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay a JSONL log of diary submissions against a segment network and dump aggregates."
    )
    parser.add_argument("--segments", required=True, help="GeoJSON FeatureCollection of street segments")
    parser.add_argument("--submissions", required=True, help="JSONL file, one submission object per line")
    parser.add_argument("--out-file", default=None, help="Write the summary JSON here instead of stdout")
    parser.add_argument("--segment-id", action="append", default=None, help="Only report these segments")
    parser.add_argument(
        "--recompute",
        action="store_true",
        help="Recompute every rated segment from its full rating history after the replay",
    )
    return parser


def read_submissions(path: str) -> list[tuple[int, Any]]:
    rows: list[tuple[int, Any]] = []
    with Path(path).open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                rows.append((line_no, json.loads(text)))
            except json.JSONDecodeError as exc:
                rows.append((line_no, {"__decode_error__": str(exc)}))
    return rows


def run_replay(args: argparse.Namespace) -> dict[str, Any]:
    session = RoutingSession.from_geojson(args.segments)
    accepted = 0
    rejected: list[dict[str, Any]] = []
    history: dict[str, list[RatingSample]] = defaultdict(list)
    tag_counts: dict[str, dict[str, float]] = defaultdict(dict)

    for line_no, payload in read_submissions(args.submissions):
        if isinstance(payload, dict) and "__decode_error__" in payload:
            rejected.append({"line": line_no, "errors": [f"payload: {payload['__decode_error__']}"]})
            continue
        try:
            submission = validate_submission(payload)
        except SubmissionRejected as exc:
            rejected.append({"line": line_no, "errors": exc.human_readable()})
            continue
        session.submit(submission)
        accepted += 1

        now = session.now()
        when = min(as_utc(submission.timestamp), now) if submission.timestamp is not None else now
        for segment_id in submission.segment_ids:
            history[segment_id].append(RatingSample(rating=submission.rating_for(segment_id), timestamp=when))
            counts = tag_counts[segment_id]
            for tag in submission.tags:
                counts[tag] = counts.get(tag, 0.0) + 1.0

    if args.recompute:
        for segment_id, samples in history.items():
            session.rebuild_segment(segment_id, samples, tag_counts=tag_counts[segment_id])

    views = session.segments(args.segment_id)
    summary = {
        "segments_in_network": len(session.graph.segments),
        "accepted": accepted,
        "rejected": rejected,
        "recomputed": bool(args.recompute),
        "aggregates": [view.model_dump(mode="json") for view in views],
    }
    text = json.dumps(summary, indent=2)
    if args.out_file:
        out = Path(args.out_file)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text, encoding="utf-8")
    else:
        sys.stdout.write(text + "\n")
    return summary


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    summary = run_replay(args)
    return 0 if not summary["rejected"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
