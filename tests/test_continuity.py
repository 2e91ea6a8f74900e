# tests/test_continuity.py
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from harness_core.continuity import ContinuityLogger, LogEntry, is_rotated_log, safe_milestone
from harness_core.contracts import ContinuityConfig, HarnessConfig, LogSampling

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def _logger(root: Path, clock: SteppingClock, **settings: object) -> ContinuityLogger:
    return ContinuityLogger(root=root, settings=ContinuityConfig(**settings), clock=clock, last_flush=clock())


def _lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


def test_entry_renders_as_one_line() -> None:
    entry = LogEntry(
        timestamp="2026-03-01T12:00:00+00:00",
        feature="apply",
        action="complete",
        evidence=("files=2", "exit_code=0"),
        next_state="done",
    )
    assert entry.render() == (
        "- timestamp: 2026-03-01T12:00:00+00:00 | feature: apply | action: complete"
        " | evidence: files=2, exit_code=0 | next_state: done"
    )
    empty = LogEntry(timestamp="t", feature="f", action="a", evidence=(), next_state="s")
    assert "| evidence: - |" in empty.render()


def test_milestones_are_written_immediately(tmp_path: Path) -> None:
    clock = SteppingClock()
    continuity = _logger(tmp_path, clock)

    continuity.record_milestone("analyze", "start", ["path=."])
    continuity.record_milestone("analyze", "complete", ["exit_code=0"], "done")

    lines = _lines(tmp_path / ".harness" / "progress.md")
    assert len(lines) == 2
    assert lines[0].endswith("| feature: analyze | action: start | evidence: path=. | next_state: running")
    assert lines[1].endswith("| next_state: done")


def test_progress_events_need_sampling_all(tmp_path: Path) -> None:
    clock = SteppingClock()
    continuity = _logger(tmp_path, clock)

    continuity.record_progress("init", "file_written", ["file=AGENTS.md"])
    continuity.flush()

    assert not (tmp_path / ".harness" / "progress.md").exists()


def test_progress_events_are_batched_by_interval(tmp_path: Path) -> None:
    clock = SteppingClock()
    continuity = _logger(tmp_path, clock, log_sampling=LogSampling.ALL, batch_interval_secs=60)
    progress = tmp_path / ".harness" / "progress.md"

    continuity.record_progress("init", "file_written", ["file=a"])
    continuity.record_progress("init", "file_written", ["file=b"])
    assert not progress.exists()
    assert len(continuity.pending) == 2

    clock.advance(timedelta(seconds=61))
    continuity.record_progress("init", "file_written", ["file=c"])

    assert len(_lines(progress)) == 3
    assert continuity.pending == []


def test_oversized_log_rotates_and_old_logs_are_pruned(tmp_path: Path) -> None:
    clock = SteppingClock()
    continuity = _logger(tmp_path, clock, max_log_size_kb=1, retained_logs=2)
    evidence = ["x" * 1100]

    for _ in range(4):
        continuity.record_milestone("optimize", "trace_scanned", evidence)
        clock.advance(timedelta(seconds=1))

    harness_dir = tmp_path / ".harness"
    rotated = sorted(p.name for p in harness_dir.iterdir() if p.name != "progress.md")
    assert len(rotated) == 2
    assert all(is_rotated_log(f".harness/{name}", ".harness/progress.md") for name in rotated)
    assert (harness_dir / "progress.md").read_text(encoding="utf-8") == ""


def test_rotation_never_overwrites_with_a_frozen_clock(tmp_path: Path) -> None:
    clock = SteppingClock()
    continuity = _logger(tmp_path, clock, max_log_size_kb=1, retained_logs=5)

    for _ in range(3):
        continuity.record_milestone("lint", "complete", ["y" * 1100])

    rotated = [p for p in (tmp_path / ".harness").iterdir() if p.name != "progress.md"]
    assert len(rotated) == 3


def test_rotated_log_names() -> None:
    assert is_rotated_log(".harness/progress-00000001767225600000000.md", ".harness/progress.md")
    assert not is_rotated_log(".harness/progress.md", ".harness/progress.md")
    assert not is_rotated_log("docs/progress-1.md", ".harness/progress.md")
    assert not is_rotated_log(".harness/progress-1.txt", ".harness/progress.md")


def test_logging_failures_are_not_raised(tmp_path: Path) -> None:
    (tmp_path / ".harness").write_text("not a directory", encoding="utf-8")
    continuity = _logger(tmp_path, SteppingClock())
    safe_milestone(continuity, "analyze", "start")


def test_for_repo_uses_config_settings(tmp_path: Path, make_config: Callable[..., HarnessConfig]) -> None:
    config = make_config(continuity={"progress_file": "notes/progress.log"})
    continuity = ContinuityLogger.for_repo(tmp_path, config, SteppingClock())
    assert continuity.progress_path == tmp_path / "notes" / "progress.log"
    assert isinstance(continuity.last_flush, datetime)
