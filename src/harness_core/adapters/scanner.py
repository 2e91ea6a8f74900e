"""Repository scanner: filesystem and git metadata into an immutable ``RepoModel``."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from harness_core._compat import utc_now
from harness_core.adapters.git import GitCommandRunner, doc_age_days, run_git_command
from harness_core.contracts import (
    ContextConfig,
    ContinuityConfig,
    ContinuitySignals,
    DocSignals,
    HarnessConfig,
    QualitySignals,
    RepoModel,
    ToolSignals,
)
from harness_core.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TOOLS = ("bash", "ls", "find", "cat", "rg", "git")
OVERLAP_CLUSTERS = (("grep", "rg", "ag", "ack"), ("find", "fd"))
DESTRUCTIVE_TOOLS = ("sudo", "mkfs", "fdisk", "rm", "shutdown")

ARCHITECTURE_DOCS = ("ARCHITECTURE.md", "docs/ARCHITECTURE.md")
LINT_CONFIG_FILES = (
    "rustfmt.toml",
    ".clippy.toml",
    "clippy.toml",
    "ruff.toml",
    ".ruff.toml",
    ".flake8",
    ".pylintrc",
    ".eslintrc.json",
    ".golangci.yml",
)
_SKIP_DIRS = {".git"}


def list_files(root: Path) -> list[str]:
    """Every regular file under ``root`` as a sorted posix path relative to it."""
    out: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        base = Path(dirpath)
        for name in filenames:
            full = base / name
            if full.is_file():
                out.append(full.relative_to(root).as_posix())
    return sorted(out)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


def detect_docs(
    root: Path,
    context: ContextConfig,
    *,
    now: datetime,
    git_runner: GitCommandRunner = run_git_command,
) -> DocSignals:
    agents_path = root / context.agents_map
    agents_content = _read_text(agents_path)
    readme_content = _read_text(root / "README.md")

    tracked = [context.agents_map, context.context_index, *ARCHITECTURE_DOCS, "README.md"]
    return DocSignals(
        has_agents_md=agents_path.is_file(),
        agents_has_section_header=any(line.lstrip().startswith("#") for line in agents_content.splitlines()),
        has_context_index=(root / context.context_index).is_file(),
        has_architecture_doc=any((root / p).is_file() for p in ARCHITECTURE_DOCS),
        readme_links_architecture="architecture" in readme_content.lower(),
        docs_age_days=doc_age_days(root, tracked, now=now, git_runner=git_runner),
    )


def collect_tool_names(config: Optional[HarnessConfig]) -> list[str]:
    names: list[str] = []
    if config is not None:
        names.extend(config.tools.baseline.read)
        names.extend(config.tools.baseline.write)
        names.extend(config.tools.specialized.extra)
    names = [n.strip().lower() for n in names if n.strip()]
    if not names:
        names = list(DEFAULT_TOOLS)
    return sorted(names)


def detect_tools(config: Optional[HarnessConfig]) -> ToolSignals:
    names = collect_tool_names(config)
    present = set(names)
    clusters = sum(1 for cluster in OVERLAP_CLUSTERS if sum(1 for t in cluster if t in present) > 1)
    return ToolSignals(
        tool_names=names,
        risky_overlap_clusters=clusters,
        unrestricted_destructive=sum(1 for n in names if n in DESTRUCTIVE_TOOLS),
        has_ambiguous_duplicates=len(present) != len(names),
    )


def detect_continuity(root: Path, continuity: ContinuityConfig) -> ContinuitySignals:
    progress = root / continuity.progress_file
    return ContinuitySignals(
        has_initializer_prompt=(root / continuity.initializer).is_file(),
        has_coding_prompt=(root / continuity.coding_prompt).is_file(),
        has_progress_file=progress.is_file(),
        has_feature_state_file=(root / continuity.feature_state_file).is_file(),
        has_progress_summary="summary" in _read_text(progress).lower(),
    )


def _is_test_path(rel: str) -> bool:
    parts = rel.split("/")
    name = parts[-1]
    if "tests" in parts[:-1] or "test" in parts[:-1]:
        return True
    return (
        name.endswith(("_test.rs", "_spec.rs", "_test.py", "_test.go", ".test.ts", ".test.js"))
        or (name.startswith("test_") and name.endswith(".py"))
    )


def detect_quality(root: Path, files: list[str]) -> QualitySignals:
    return QualitySignals(
        has_ci_workflow=any(f.startswith(".github/workflows/") for f in files) or ".gitlab-ci.yml" in files,
        has_tests=any(_is_test_path(f) for f in files),
        has_lint_config=any((root / name).is_file() for name in LINT_CONFIG_FILES),
    )


def discover(
    root: Path,
    config: Optional[HarnessConfig],
    *,
    now: Optional[datetime] = None,
    git_runner: GitCommandRunner = run_git_command,
) -> RepoModel:
    """Build the snapshot every engine reads. Never mutates the repository."""
    effective = config or HarnessConfig()
    moment = now or utc_now()
    files = list_files(root)
    model = RepoModel(
        root=str(root),
        files=files,
        docs=detect_docs(root, effective.context, now=moment, git_runner=git_runner),
        tools=detect_tools(config),
        continuity=detect_continuity(root, effective.continuity),
        quality=detect_quality(root, files),
        verification_commands=list(config.verification.required) if config and config.verification else [],
    )
    logger.debug("repository scanned", extra={"root": str(root), "file_count": model.file_count})
    return model
