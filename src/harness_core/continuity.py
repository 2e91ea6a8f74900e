# harness_core/continuity.py
"""
Session continuity log.

Appends one line per event to the configured progress file so the next agent
session can pick up where the last one stopped. Milestones are always written;
progress events only under ``log_sampling = "all"`` and in batches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Sequence

from harness_core._compat import utc_now
from harness_core.contracts import ContinuityConfig, HarnessConfig, LogSampling
from harness_core.logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    feature: str
    action: str
    evidence: tuple[str, ...]
    next_state: str

    def render(self) -> str:
        evidence = ", ".join(self.evidence) if self.evidence else "-"
        return (
            f"- timestamp: {self.timestamp} | feature: {self.feature} | action: {self.action}"
            f" | evidence: {evidence} | next_state: {self.next_state}"
        )


def is_rotated_log(path: str, progress_file: str) -> bool:
    """True for ``<stem>-<stamp>.<ext>`` siblings of the progress file."""
    candidate, progress = PurePosixPath(path), PurePosixPath(progress_file)
    return (
        candidate.parent == progress.parent
        and candidate.name.startswith(f"{progress.stem}-")
        and candidate.suffix == progress.suffix
    )


@dataclass
class ContinuityLogger:
    root: Path
    settings: ContinuityConfig = field(default_factory=ContinuityConfig)
    clock: Clock = utc_now
    pending: List[LogEntry] = field(default_factory=list)
    last_flush: Optional[datetime] = None

    @classmethod
    def for_repo(cls, root: Path, config: Optional[HarnessConfig], clock: Clock = utc_now) -> "ContinuityLogger":
        settings = config.continuity if config is not None else ContinuityConfig()
        return cls(root=root, settings=settings, clock=clock, last_flush=clock())

    @property
    def progress_path(self) -> Path:
        path = Path(self.settings.progress_file)
        return path if path.is_absolute() else self.root / path

    def _push(self, feature: str, action: str, evidence: Sequence[str], next_state: str) -> None:
        self.pending.append(
            LogEntry(
                timestamp=self.clock().isoformat(),
                feature=feature,
                action=action,
                evidence=tuple(evidence),
                next_state=next_state,
            )
        )

    def record_milestone(self, feature: str, action: str, evidence: Sequence[str] = (), next_state: str = "running") -> None:
        self._push(feature, action, evidence, next_state)
        self.flush()

    def record_progress(self, feature: str, action: str, evidence: Sequence[str] = (), next_state: str = "running") -> None:
        if self.settings.log_sampling is not LogSampling.ALL:
            return
        self._push(feature, action, evidence, next_state)
        now = self.clock()
        if self.last_flush is None or (now - self.last_flush).total_seconds() >= self.settings.batch_interval_secs:
            self.flush()

    def flush(self) -> None:
        if not self.pending:
            return
        path = self.progress_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            for entry in self.pending:
                f.write(entry.render() + "\n")
        self.pending.clear()
        self.last_flush = self.clock()
        self._rotate_if_needed()

    # --------------------------------------------------------------------------
    # Rotation
    # --------------------------------------------------------------------------

    def _rotate_if_needed(self) -> None:
        path = self.progress_path
        if not path.is_file() or path.stat().st_size <= self.settings.max_log_size_kb * 1024:
            return
        stem, ext = path.stem, path.suffix
        # fixed-width microsecond stamp: name order is age order
        stamp = int(self.clock().timestamp() * 1_000_000)
        rotated = path.with_name(f"{stem}-{stamp:020d}{ext}")
        while rotated.exists():
            stamp += 1
            rotated = path.with_name(f"{stem}-{stamp:020d}{ext}")
        path.replace(rotated)
        path.write_text("", encoding="utf-8")
        logger.info("progress log rotated", extra={"rotated": rotated.name})
        self._prune(path)

    def _prune(self, path: Path) -> None:
        keep = max(1, self.settings.retained_logs)
        rotated = sorted(
            p for p in path.parent.iterdir() if p.is_file() and p.name.startswith(f"{path.stem}-") and p.suffix == path.suffix
        )
        for stale in rotated[: max(0, len(rotated) - keep)]:
            stale.unlink()
            logger.debug("rotated progress log pruned", extra={"path": stale.name})


def safe_milestone(
    continuity: ContinuityLogger,
    feature: str,
    action: str,
    evidence: Sequence[str] = (),
    next_state: str = "running",
) -> None:
    """Continuity is advisory: an I/O failure is logged, never raised."""
    try:
        continuity.record_milestone(feature, action, evidence, next_state)
    except OSError as exc:
        logger.warning("continuity milestone logging failed", extra={"error": str(exc), "feature": feature})


def safe_progress(
    continuity: ContinuityLogger,
    feature: str,
    action: str,
    evidence: Sequence[str] = (),
    next_state: str = "running",
) -> None:
    try:
        continuity.record_progress(feature, action, evidence, next_state)
    except OSError as exc:
        logger.warning("continuity progress logging failed", extra={"error": str(exc), "feature": feature})
