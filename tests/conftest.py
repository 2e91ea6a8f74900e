# tests/conftest.py
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from harness_core.config import validate_config
from harness_core.contracts import (
    ContinuitySignals,
    DocSignals,
    Effort,
    FilePatch,
    HarnessConfig,
    Impact,
    OutcomeMetric,
    QualitySignals,
    Recommendation,
    RepoModel,
    Risk,
    ToolSignals,
)

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeGit:
    """Scripted ``GitCommandRunner``: clean status, no history unless told otherwise."""

    def __init__(self, status: str | None = "", commit_times: dict[str, int] | None = None) -> None:
        self.status = status
        self.commit_times = dict(commit_times or {})
        self.calls: list[list[str]] = []

    def __call__(self, base_dir: Path, args: list[str]) -> str | None:
        self.calls.append(list(args))
        if args[:1] == ["status"]:
            return self.status
        if args[:1] == ["log"]:
            stamp = self.commit_times.get(args[-1])
            return None if stamp is None else str(stamp)
        if args[:1] == ["rev-parse"]:
            return "true" if self.status is not None else None
        return None


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def make_config() -> Callable[..., HarnessConfig]:
    def _make_config(**tables: Any) -> HarnessConfig:
        return validate_config(tables)

    return _make_config


@pytest.fixture
def make_model() -> Callable[..., RepoModel]:
    def _make_model(
        *,
        files: list[str] | None = None,
        docs: dict[str, Any] | None = None,
        tools: dict[str, Any] | None = None,
        continuity: dict[str, Any] | None = None,
        quality: dict[str, Any] | None = None,
    ) -> RepoModel:
        return RepoModel(
            root="/repo",
            files=files if files is not None else [],
            docs=DocSignals(**(docs or {})),
            tools=ToolSignals(**(tools or {"tool_names": ["bash", "cat", "find", "git", "ls", "rg"]})),
            continuity=ContinuitySignals(**(continuity or {})),
            quality=QualitySignals(**(quality or {})),
        )

    return _make_model


@pytest.fixture
def make_recommendation() -> Callable[..., Recommendation]:
    def _make_recommendation(
        *,
        rec_id: str = "rec.test",
        title: str = "Test",
        impact: Impact = Impact.MEDIUM,
        effort: Effort = Effort.M,
        risk: Risk = Risk.SAFE,
        confidence: float = 0.5,
        metric: OutcomeMetric | None = None,
        patches: list[FilePatch] | None = None,
        commands: list[str] | None = None,
    ) -> Recommendation:
        return Recommendation(
            id=rec_id,
            title=title,
            summary=f"{title} summary",
            confidence=confidence,
            impact=impact,
            effort=effort,
            risk=risk,
            metric=metric,
            patches=patches or [],
            commands=commands or [],
        )

    return _make_recommendation


@pytest.fixture
def fake_repo(tmp_path: Path) -> Path:
    """A directory that passes the CLI's ``.git`` check; pair it with ``fake_git``."""
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    return root


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", "-C", str(repo), *args], check=True, capture_output=True, text=True)
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    root = tmp_path / "gitrepo"
    root.mkdir()
    git(root, "init", "-q")
    git(root, "config", "user.email", "harness@example.com")
    git(root, "config", "user.name", "Harness Tests")
    git(root, "config", "commit.gpgsign", "false")
    (root / "README.md").write_text("# Sample\n", encoding="utf-8")
    git(root, "add", "-A")
    git(root, "commit", "-q", "-m", "initial")
    return root


@pytest.fixture
def make_fake_git() -> Callable[..., FakeGit]:
    return FakeGit


@pytest.fixture
def run_git() -> Callable[..., str]:
    return git
