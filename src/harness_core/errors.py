# harness_core/errors.py
from __future__ import annotations

from typing import Any, ClassVar, Mapping

EXIT_SUCCESS = 0
EXIT_WARNINGS = 1
EXIT_BLOCKING = 2
EXIT_RUNTIME_FAILURE = 3


class HarnessError(Exception):
    """Base for every failure the engines surface to the outermost caller.

    ``category`` is stable and greppable; ``exit_code`` is what the CLI returns.
    """

    category: ClassVar[str] = "runtime"
    exit_code: ClassVar[int] = EXIT_RUNTIME_FAILURE

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        return self.message


class ConfigInvalid(HarnessError):
    category = "config_invalid"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        if not message.startswith("config parse error:"):
            message = f"config parse error: {message}"
        super().__init__(message, details=details)


class PlanInvalid(HarnessError):
    category = "plan_invalid"


class WorkingTreeDirty(HarnessError):
    category = "working_tree_dirty"


class SelectorMisuse(HarnessError):
    category = "selector_misuse"


class ForbiddenToolAccess(HarnessError):
    category = "forbidden_tool_access"

    def __init__(self, command: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(f"forbidden tool access attempt: {command}", details=details)
        self.command = command


class RollbackWriteFailed(HarnessError):
    category = "rollback_write_failed"


class RepoFileUnreadable(HarnessError):
    category = "repo_file_unreadable"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"repository file unreadable: {path} ({reason})", details={"path": path})


class BucketPenaltyExceeded(HarnessError):
    """Internal consistency guard; fires only on a programming error."""

    category = "bucket_penalty_exceeded"


class LoopGuardTriggered(HarnessError):
    category = "loop_guard_triggered"


class NotGitRepo(HarnessError):
    category = "not_git_repo"

    def __init__(self, path: str) -> None:
        super().__init__(f"not a git repository: {path}", details={"path": path})


class PathNotFound(HarnessError):
    category = "path_not_found"

    def __init__(self, path: str) -> None:
        super().__init__(f"path not found: {path}", details={"path": path})


__all__ = [
    "EXIT_BLOCKING",
    "EXIT_RUNTIME_FAILURE",
    "EXIT_SUCCESS",
    "EXIT_WARNINGS",
    "BucketPenaltyExceeded",
    "ConfigInvalid",
    "ForbiddenToolAccess",
    "HarnessError",
    "LoopGuardTriggered",
    "NotGitRepo",
    "PathNotFound",
    "PlanInvalid",
    "RepoFileUnreadable",
    "RollbackWriteFailed",
    "SelectorMisuse",
    "WorkingTreeDirty",
]
