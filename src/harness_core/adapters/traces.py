# harness_core/adapters/traces.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from pydantic import ValidationError

from harness_core.contracts import (
    RevisionMetrics,
    TraceOutcome,
    TraceRecord,
    TraceScanStats,
    TraceSummary,
)
from harness_core.logging_config import get_logger

logger = get_logger(__name__)

TRACE_SUFFIXES = (".jsonl", ".json")
DEFAULT_TRACE_DIR = Path(".harness/traces")


@dataclass(frozen=True)
class TraceScan:
    trace_dir: Path
    stats: TraceScanStats
    records: List[TraceRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _parse_line(line: bytes) -> TraceRecord:
    raw = json.loads(line.decode("utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"expected JSON object, got {type(raw).__name__}")
    return TraceRecord.model_validate(raw)


def scan_traces(trace_dir: Path, *, now: datetime, staleness_days: int) -> TraceScan:
    """
    Read every ``*.jsonl``/``*.json`` file in ``trace_dir`` (one record per line).
    - malformed lines (bad UTF-8 included) are excluded and reported, never raised;
    - records older than ``staleness_days`` are counted as stale and excluded.
    A missing directory is an empty scan.
    """
    if not trace_dir.is_dir():
        return TraceScan(trace_dir=trace_dir, stats=TraceScanStats())

    recent = stale = malformed = 0
    records: list[TraceRecord] = []
    warnings: list[str] = []

    files = sorted(p for p in trace_dir.iterdir() if p.is_file() and p.suffix in TRACE_SUFFIXES)
    for path in files:
        with path.open("rb") as f:
            for lineno, line in enumerate(f, start=1):
                s = line.strip()
                if not s:
                    continue
                try:
                    record = _parse_line(s)
                except (ValueError, ValidationError) as exc:
                    malformed += 1
                    reason = exc.errors()[0]["msg"] if isinstance(exc, ValidationError) else str(exc)
                    message = f"{path.name}:{lineno}: malformed trace record excluded ({reason})"
                    warnings.append(message)
                    logger.warning(message, extra={"trace_file": str(path), "lineno": lineno})
                    continue

                age_days = (now - record.timestamp).days
                if age_days <= staleness_days:
                    recent += 1
                    records.append(record)
                else:
                    stale += 1

    stats = TraceScanStats(recent=recent, stale=stale, malformed=malformed)
    logger.debug("traces scanned", extra={"trace_dir": str(trace_dir), **stats.model_dump()})
    return TraceScan(trace_dir=trace_dir, stats=stats, records=records, warnings=warnings)


def _revision_metrics(revision: str, records: List[TraceRecord]) -> RevisionMetrics:
    total = len(records)
    success = sum(1 for r in records if r.outcome is TraceOutcome.SUCCESS)
    steps = [r.steps for r in records if r.steps is not None]
    tokens = [r.token_est for r in records if r.token_est is not None]
    return RevisionMetrics(
        revision=revision,
        total=total,
        completion_rate=success / total if total else 0.0,
        avg_steps=sum(steps) / len(steps) if steps else 0.0,
        avg_tokens=sum(tokens) / len(tokens) if tokens else 0.0,
        tasks=sorted({r.task_id for r in records}),
        latest_ts=max(r.timestamp for r in records),
    )


def summarize_traces(scan: TraceScan) -> TraceSummary:
    per_revision: Dict[str, List[TraceRecord]] = {}
    for record in scan.records:
        per_revision.setdefault(record.revision, []).append(record)

    revisions = [_revision_metrics(rev, per_revision[rev]) for rev in sorted(per_revision)]
    revisions.sort(key=lambda m: (m.latest_ts, m.revision))

    warnings = list(scan.warnings)
    if scan.stats.malformed:
        warnings.append(f"ignored malformed trace records: {scan.stats.malformed}")
    return TraceSummary(
        trace_dir=str(scan.trace_dir),
        stats=scan.stats,
        revisions=revisions,
        warnings=warnings,
    )


def load_trace_summary(trace_dir: Path, *, now: datetime, staleness_days: int) -> TraceSummary:
    return summarize_traces(scan_traces(trace_dir, now=now, staleness_days=staleness_days))
