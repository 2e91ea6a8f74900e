from __future__ import annotations

import subprocess
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from harness_core.errors import NotGitRepo

# None on failure; stdout without trailing whitespace (possibly "") on success.
GitCommandRunner = Callable[[Path, list[str]], str | None]

STATUS_COMMAND = "git status --porcelain"

# Harness-owned artifact locations; their churn never makes a tree dirty.
MANAGED_PREFIXES = (".harness/plans/", ".harness/rollback/", ".harness/optimize/")


def run_git_command(base_dir: Path, args: list[str]) -> str | None:
    try:
        result = subprocess.run(
            ["git", "-C", str(base_dir), *args],
            check=True,
            capture_output=True,
            text=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return result.stdout.rstrip()


def is_repository(root: Path, git_runner: GitCommandRunner = run_git_command) -> bool:
    return git_runner(root, ["rev-parse", "--is-inside-work-tree"]) == "true"


def _porcelain_path(line: str) -> str:
    path = line[3:] if len(line) > 3 else line
    if " -> " in path:
        path = path.split(" -> ", 1)[1]
    return path.strip().strip('"')


def dirty_paths(
    root: Path,
    git_runner: GitCommandRunner = run_git_command,
    *,
    ignore: Iterable[str] = (),
) -> list[str]:
    """Paths reported by ``git status --porcelain`` minus harness-managed artifacts."""
    out = git_runner(root, ["status", "--porcelain", "--untracked-files=all"])
    if out is None:
        raise NotGitRepo(str(root))
    ignored = set(ignore)
    paths: list[str] = []
    for line in out.splitlines():
        if not line.strip():
            continue
        path = _porcelain_path(line)
        if path in ignored or path.startswith(MANAGED_PREFIXES):
            continue
        paths.append(path)
    return sorted(paths)


def last_commit_unix(root: Path, relative_path: str, git_runner: GitCommandRunner = run_git_command) -> int | None:
    out = git_runner(root, ["log", "-1", "--format=%ct", "--", relative_path])
    if not out:
        return None
    try:
        return int(out)
    except ValueError:
        return None


def doc_age_days(
    root: Path,
    tracked_paths: Iterable[str],
    *,
    now: datetime,
    git_runner: GitCommandRunner = run_git_command,
) -> int | None:
    """Age in whole days of the most recently committed path, or None if none are committed."""
    stamps = [ts for ts in (last_commit_unix(root, p, git_runner) for p in tracked_paths) if ts is not None]
    if not stamps:
        return None
    return max(0, int(now.timestamp()) - max(stamps)) // 86_400
