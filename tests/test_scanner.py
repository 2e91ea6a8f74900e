# tests/test_scanner.py
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from harness_core.adapters.git import dirty_paths, doc_age_days, is_repository, last_commit_unix
from harness_core.adapters.scanner import collect_tool_names, detect_tools, discover, list_files
from harness_core.contracts import HarnessConfig
from harness_core.errors import NotGitRepo


def _touch(root: Path, rel: str, text: str = "") -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.fixture
def populated_repo(fake_repo: Path) -> Path:
    _touch(fake_repo, "AGENTS.md", "# Agents\n\nRead the index first.\n")
    _touch(fake_repo, "docs/context/INDEX.md", "# Index\n")
    _touch(fake_repo, "docs/ARCHITECTURE.md", "# Architecture\n")
    _touch(fake_repo, "README.md", "See the Architecture notes.\n")
    _touch(fake_repo, "src/app.py", "print('hi')\n")
    _touch(fake_repo, "tests/test_app.py", "def test_app():\n    pass\n")
    _touch(fake_repo, ".github/workflows/ci.yml", "on: push\n")
    _touch(fake_repo, "ruff.toml", "line-length = 120\n")
    _touch(fake_repo, ".harness/initializer.prompt.md", "init\n")
    _touch(fake_repo, ".harness/progress.md", "## Summary\n\nall good\n")
    _touch(fake_repo, ".git/HEAD", "ref: refs/heads/main\n")
    return fake_repo


def test_list_files_is_sorted_and_skips_git(populated_repo: Path) -> None:
    files = list_files(populated_repo)
    assert files == sorted(files)
    assert "src/app.py" in files
    assert not any(f.startswith(".git/") for f in files)


def test_discover_collects_every_signal(
    populated_repo: Path, make_fake_git: Callable[..., Any], fixed_clock: Callable[[], datetime]
) -> None:
    now = fixed_clock()
    runner = make_fake_git(commit_times={"AGENTS.md": int((now - timedelta(days=10)).timestamp())})

    model = discover(populated_repo, None, now=now, git_runner=runner)

    assert model.docs.has_agents_md
    assert model.docs.agents_has_section_header
    assert model.docs.has_context_index
    assert model.docs.has_architecture_doc
    assert model.docs.readme_links_architecture
    assert model.docs.docs_age_days == 10

    assert model.continuity.has_initializer_prompt
    assert not model.continuity.has_coding_prompt
    assert model.continuity.has_progress_file
    assert model.continuity.has_progress_summary

    assert model.quality.has_ci_workflow
    assert model.quality.has_tests
    assert model.quality.has_lint_config

    assert model.tools.tool_names == ["bash", "cat", "find", "git", "ls", "rg"]
    assert model.verification_commands == []


def test_discover_never_writes(populated_repo: Path, fake_git: Any) -> None:
    before = list_files(populated_repo)
    discover(populated_repo, None, git_runner=fake_git)
    assert list_files(populated_repo) == before


def test_uncommitted_docs_have_no_age(populated_repo: Path, fake_git: Any) -> None:
    assert discover(populated_repo, None, git_runner=fake_git).docs.docs_age_days is None


def test_configured_paths_drive_detection(
    fake_repo: Path, fake_git: Any, make_config: Callable[..., HarnessConfig]
) -> None:
    _touch(fake_repo, "handbook/AGENTS.md", "no header here\n")
    config = make_config(
        context={"agents_map": "handbook/AGENTS.md"},
        verification={"required": ["make test", "make lint"]},
    )
    model = discover(fake_repo, config, git_runner=fake_git)
    assert model.docs.has_agents_md
    assert not model.docs.agents_has_section_header
    assert model.verification_commands == ["make test", "make lint"]


def test_tool_signals_from_config(make_config: Callable[..., HarnessConfig]) -> None:
    config = make_config(
        tools={
            "baseline": {"read": ["grep", "rg", "find", "fd", "cat", "Cat"], "write": ["rm"]},
            "specialized": {"extra": ["sudo"]},
        }
    )
    signals = detect_tools(config)
    assert signals.risky_overlap_clusters == 2
    assert signals.unrestricted_destructive == 2
    assert signals.has_ambiguous_duplicates
    assert collect_tool_names(None) == ["bash", "cat", "find", "git", "ls", "rg"]


# ------------------------------------------------------------------------------
# git adapter
# ------------------------------------------------------------------------------


def test_dirty_paths_parses_porcelain(fake_repo: Path, make_fake_git: Callable[..., Any]) -> None:
    status = "\n".join([" M src/app.py", "R  old.md -> new.md", '?? "with space.txt"', "?? .harness/plans/p.json"])
    assert dirty_paths(fake_repo, make_fake_git(status=status)) == ["new.md", "src/app.py", "with space.txt"]
    assert dirty_paths(fake_repo, make_fake_git(status=status), ignore=["new.md"]) == ["src/app.py", "with space.txt"]


def test_status_failure_means_not_a_repository(fake_repo: Path, make_fake_git: Callable[..., Any]) -> None:
    runner = make_fake_git(status=None)
    assert not is_repository(fake_repo, runner)
    with pytest.raises(NotGitRepo):
        dirty_paths(fake_repo, runner)


def test_doc_age_uses_the_newest_commit(fake_repo: Path, make_fake_git: Callable[..., Any]) -> None:
    now = datetime.fromtimestamp(1_000 * 86_400).astimezone()
    runner = make_fake_git(commit_times={"a.md": 900 * 86_400, "b.md": 990 * 86_400})
    assert doc_age_days(fake_repo, ["a.md", "b.md", "c.md"], now=now, git_runner=runner) == 10
    assert last_commit_unix(fake_repo, "c.md", runner) is None


def test_real_repository_helpers(git_repo: Path) -> None:
    assert is_repository(git_repo)
    assert dirty_paths(git_repo) == []
    (git_repo / "notes.txt").write_text("draft\n", encoding="utf-8")
    assert dirty_paths(git_repo) == ["notes.txt"]
    assert last_commit_unix(git_repo, "README.md") is not None
