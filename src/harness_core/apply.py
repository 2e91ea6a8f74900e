# harness_core/apply.py
"""
Apply engine: the only component that mutates the repository.

The run is a strict sequence; a failing step raises and nothing after it happens:

1. clean working tree (unless ``allow_dirty``)
2. plan selection and validation, change materialisation, command guard
3. rollback manifest (apply mode only)
4. change scope handed to ``scope_sink`` (every mode)
5. confirmation gate (apply mode only), then one staged write of every file
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from harness_core._compat import utc_now
from harness_core._version import __version__
from harness_core.adapters.confirmation import PROMPT, ConfirmationProvider
from harness_core.adapters.git import STATUS_COMMAND, GitCommandRunner, dirty_paths, run_git_command
from harness_core.adapters.persistence import (
    PLANS_DIR,
    commit_staged,
    discard_staged,
    read_plan,
    stage_files,
    write_rollback_manifest,
)
from harness_core.adapters.scanner import discover
from harness_core.config import REPO_CONFIG, repo_forbidden, rewrite_forbidden
from harness_core.continuity import is_rotated_log
from harness_core.contracts import (
    ApplyFlags,
    ApplyMode,
    ApplyResult,
    ApplyStatus,
    ChangeAction,
    ChangeScope,
    HarnessConfig,
    PatchKind,
    PlannedChange,
    PlanSelection,
    Recommendation,
    Risk,
    RollbackEntry,
    RollbackManifest,
)
from harness_core.errors import PlanInvalid, RepoFileUnreadable, SelectorMisuse, WorkingTreeDirty
from harness_core.logging_config import get_logger
from harness_core.policy import promotion_candidates, validate
from harness_core.recommend import RULES_BY_ID, build_recommendations, sort_recommendations
from harness_core.scoring import analyze
from harness_core.stable_ids import derive_plan_id, file_sha256

logger = get_logger(__name__)

Clock = Callable[[], datetime]
ScopeSink = Callable[[ChangeScope], None]

PATCH_COMMAND = "apply_patch"
PROMOTION_SOURCE = "tools.lifecycle.promotion"
GENERATED_HEADER = "# Generated by harness"
STAMP_FORMAT = "%Y%m%dT%H%M%SZ"


# ------------------------------------------------------------------------------
# Step 1: clean tree
# ------------------------------------------------------------------------------


def check_clean_tree(
    root: Path,
    flags: ApplyFlags,
    config: Optional[HarnessConfig],
    git_runner: GitCommandRunner,
) -> None:
    if flags.allow_dirty:
        logger.info("apply phase", extra={"phase": "clean_tree", "skipped": True})
        return
    validate([STATUS_COMMAND], 0, config)
    progress = (config or HarnessConfig()).continuity.progress_file
    dirty = [p for p in dirty_paths(root, git_runner, ignore=(progress,)) if not is_rotated_log(p, progress)]
    if dirty:
        raise WorkingTreeDirty(
            "working tree is dirty; use --allow-dirty to override",
            details={"paths": dirty},
        )
    logger.info("apply phase", extra={"phase": "clean_tree"})


# ------------------------------------------------------------------------------
# Step 2: plan selection
# ------------------------------------------------------------------------------


def check_selector(selection: PlanSelection) -> None:
    if selection.plan_file and selection.plan_all:
        raise SelectorMisuse("--plan-file cannot be used with --plan-all")
    if not selection.plan_file and not selection.plan_all:
        raise SelectorMisuse("exactly one of --plan-file or --plan-all is required")


def _segments(raw: str) -> List[str]:
    return [s for s in raw.replace("\\", "/").split("/") if s]


def resolve_plan_path(root: Path, raw: str) -> Path:
    """
    A bare file name resolves inside ``.harness/plans``; anything else is taken
    relative to the repository root and must still land inside that directory.
    """
    candidate = Path(raw)
    if candidate.is_absolute() or raw.startswith(("/", "\\")):
        raise PlanInvalid(f"absolute plan path rejected: {raw}")
    segments = _segments(raw)
    if ".." in segments:
        raise PlanInvalid(f"path traversal rejected: {raw}")

    plans_dir = (root / PLANS_DIR).resolve()
    target = plans_dir / segments[-1] if len(segments) == 1 else root / Path(*segments)
    resolved = target.resolve()
    if plans_dir not in resolved.parents:
        raise PlanInvalid(f"plan file outside managed plan directory: {raw}")
    if not resolved.is_file():
        raise PlanInvalid(f"plan file not found: {raw}")
    return resolved


def _major_minor(version: str) -> Optional[Tuple[int, int]]:
    parts = version.strip().split(".")
    if len(parts) < 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def check_version(found: str, expected: str = __version__) -> None:
    theirs = _major_minor(found)
    if theirs is None or theirs != _major_minor(expected):
        raise PlanInvalid(f"plan version mismatch: expected {expected}, found {found}")


def _plan_file_ids(root: Path, raw: str) -> Tuple[List[str], Optional[str]]:
    path = resolve_plan_path(root, raw)
    artifact = read_plan(path)
    check_version(artifact.version)
    unknown = [i for i in artifact.recommendations if i not in RULES_BY_ID]
    if unknown:
        raise PlanInvalid(f"unknown recommendation id in plan: {unknown[0]}", details={"unknown": unknown})
    ids: List[str] = []
    for rec_id in artifact.recommendations:
        if rec_id not in ids:
            ids.append(rec_id)
    return ids, artifact.plan_id or derive_plan_id(ids)


def _plan_all_ids(
    root: Path,
    config: Optional[HarnessConfig],
    git_runner: GitCommandRunner,
    now: datetime,
) -> Tuple[List[str], str]:
    model = discover(root, config, now=now, git_runner=git_runner)
    report = analyze(model, config)
    ids = [r.id for r in report.recommendations if r.risk is Risk.SAFE]
    return ids, derive_plan_id(ids)


def select_recommendations(
    selection: PlanSelection,
    root: Path,
    config: Optional[HarnessConfig],
    git_runner: GitCommandRunner,
    now: datetime,
) -> Tuple[List[Recommendation], Optional[str]]:
    check_selector(selection)
    if selection.plan_file:
        ids, plan_id = _plan_file_ids(root, selection.plan_file)
    else:
        ids, plan_id = _plan_all_ids(root, config, git_runner, now)
    recs = sort_recommendations(build_recommendations(ids, config))
    logger.info("apply phase", extra={"phase": "plan_validation", "plan_id": plan_id, "recommendations": ids})
    return recs, plan_id


# ------------------------------------------------------------------------------
# Change materialisation
# ------------------------------------------------------------------------------


def _safe_relative(path: str) -> str:
    if Path(path).is_absolute() or ".." in _segments(path):
        raise PlanInvalid(f"path traversal rejected: {path}")
    return "/".join(_segments(path))


def read_repo_text(root: Path, path: str) -> Optional[str]:
    """Current UTF-8 text of a repository file, None when it does not exist."""
    target = root / path
    if not target.is_file():
        return None
    try:
        return target.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise RepoFileUnreadable(path, f"not valid UTF-8: {exc.reason}") from exc
    except OSError as exc:
        raise RepoFileUnreadable(path, exc.strerror or str(exc)) from exc


def _header_for(path: str) -> str:
    title = Path(path).stem.replace("_", " ").replace("-", " ").title()
    return f"{GENERATED_HEADER}\n# {title}\n\n"


class _ChangeSet:
    """Changes keyed by path; later patches on one path build on the pending content."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._changes: Dict[str, PlannedChange] = {}

    def current(self, path: str) -> Optional[str]:
        pending = self._changes.get(path)
        if pending is not None:
            return pending.content
        return read_repo_text(self.root, path)

    def put(self, path: str, action: ChangeAction, content: Optional[str], source: str) -> None:
        pending = self._changes.get(path)
        if pending is not None and pending.action is ChangeAction.CREATE and action is ChangeAction.MODIFY:
            action = ChangeAction.CREATE
        self._changes[path] = PlannedChange(path=path, action=action, content=content, source=source)

    def changes(self) -> List[PlannedChange]:
        return list(self._changes.values())


def _apply_patch(changes: _ChangeSet, rec: Recommendation, kind: PatchKind, path: str, content: str) -> None:
    existing = changes.current(path)
    if kind is PatchKind.CREATE_IF_MISSING:
        if existing is None:
            changes.put(path, ChangeAction.CREATE, content, rec.id)
        return
    if kind is PatchKind.ENSURE_LINE:
        line = content.rstrip("\n")
        if existing is None:
            changes.put(path, ChangeAction.CREATE, f"{_header_for(path)}{line}\n", rec.id)
            return
        if line in (ln.rstrip() for ln in existing.splitlines()):
            return
        sep = "" if not existing or existing.endswith("\n") else "\n"
        changes.put(path, ChangeAction.MODIFY, f"{existing}{sep}{line}\n", rec.id)
        return
    if existing is not None:
        changes.put(path, ChangeAction.DELETE, None, rec.id)


def _promotion_change(root: Path, config: Optional[HarnessConfig]) -> Tuple[Optional[PlannedChange], List[str]]:
    candidates = promotion_candidates(config)
    text = read_repo_text(root, REPO_CONFIG.as_posix()) if candidates else None
    if text is None:
        return None, []
    current = repo_forbidden(text)
    added = [name for name in candidates if name not in current]
    if not added:
        return None, []
    updated = rewrite_forbidden(text, [*current, *added])
    change = PlannedChange(
        path=REPO_CONFIG.as_posix(),
        action=ChangeAction.MODIFY,
        content=updated,
        source=PROMOTION_SOURCE,
    )
    return change, added


def materialise(
    root: Path,
    recs: Sequence[Recommendation],
    config: Optional[HarnessConfig],
) -> Tuple[List[PlannedChange], List[str]]:
    """Every change the plan implies, promotion included; preview and apply see the same list."""
    changes = _ChangeSet(root)
    for rec in recs:
        for patch in rec.patches:
            _apply_patch(changes, rec, patch.kind, _safe_relative(patch.path), patch.content)
    planned = changes.changes()

    promotion, promoted = _promotion_change(root, config)
    if promotion is not None:
        planned.append(promotion)
    return planned, promoted


def guard_commands(changes: Sequence[PlannedChange], recs: Sequence[Recommendation], config: Optional[HarnessConfig]) -> None:
    commands = [f"{PATCH_COMMAND} {c.path}" for c in changes]
    for rec in recs:
        commands.extend(rec.commands)
    validate(commands, len(changes), config)


def change_scope(changes: Sequence[PlannedChange]) -> ChangeScope:
    return ChangeScope(
        create=[c.path for c in changes if c.action is ChangeAction.CREATE],
        modify=[c.path for c in changes if c.action is ChangeAction.MODIFY],
        delete=[c.path for c in changes if c.action is ChangeAction.DELETE],
    )


# ------------------------------------------------------------------------------
# Step 3: rollback manifest
# ------------------------------------------------------------------------------


def build_manifest(root: Path, changes: Sequence[PlannedChange], plan_id: Optional[str], now: datetime) -> RollbackManifest:
    return RollbackManifest(
        timestamp=now.isoformat(),
        harness_version=__version__,
        plan_id=plan_id,
        files=[
            RollbackEntry(
                path=c.path,
                action=c.action,
                content_hash_before=None if c.action is ChangeAction.CREATE else file_sha256(root / c.path),
            )
            for c in changes
        ],
    )


def verify_manifest(root: Path, manifest: RollbackManifest) -> None:
    """Every file must still hash to what the manifest recorded (absent stays absent)."""
    for entry in manifest.files:
        if file_sha256(root / entry.path) != entry.content_hash_before:
            raise WorkingTreeDirty(
                f"working tree changed since precondition check: {entry.path}",
                details={"path": entry.path},
            )


# ------------------------------------------------------------------------------
# Step 5: confirmation and write
# ------------------------------------------------------------------------------


def confirm(recs: Sequence[Recommendation], flags: ApplyFlags, confirmation: ConfirmationProvider) -> Optional[str]:
    """None when confirmed; otherwise the reason the run was cancelled."""
    high_risk = [r.id for r in recs if r.requires_confirmation]
    if high_risk:
        if not confirmation.interactive:
            return f"high-risk recommendations require interactive confirmation: {', '.join(high_risk)}"
        return None if confirmation.confirm(PROMPT) else "confirmation declined"
    if flags.yes:
        return None
    return None if confirmation.confirm(PROMPT) else "confirmation declined"


def write_changes(root: Path, changes: Sequence[PlannedChange]) -> List[str]:
    payloads = [(root / c.path, c.content or "") for c in changes if c.action is not ChangeAction.DELETE]
    staged = stage_files(payloads)
    try:
        commit_staged(staged)
    except OSError:
        discard_staged(staged)
        raise
    for change in changes:
        if change.action is ChangeAction.DELETE:
            (root / change.path).unlink(missing_ok=True)
    return [c.path for c in changes]


def apply(
    selection: PlanSelection,
    repo_root: Path,
    mode: ApplyMode,
    flags: ApplyFlags,
    *,
    config: Optional[HarnessConfig],
    confirmation: ConfirmationProvider,
    git_runner: GitCommandRunner = run_git_command,
    clock: Clock = utc_now,
    scope_sink: Optional[ScopeSink] = None,
) -> ApplyResult:
    root = Path(repo_root)
    now = clock()

    check_clean_tree(root, flags, config, git_runner)

    recs, plan_id = select_recommendations(selection, root, config, git_runner, now)
    rec_ids = [r.id for r in recs]
    changes, promoted = materialise(root, recs, config)
    guard_commands(changes, recs, config)

    manifest = build_manifest(root, changes, plan_id, now)
    manifest_path: Optional[str] = None
    if mode is ApplyMode.APPLY and changes:
        written_to = write_rollback_manifest(root, manifest, stamp=now.strftime(STAMP_FORMAT))
        manifest_path = written_to.relative_to(root).as_posix()
        logger.info("apply phase", extra={"phase": "rollback_manifest", "path": manifest_path})

    scope = change_scope(changes)
    if scope_sink is not None:
        scope_sink(scope)
    logger.info(
        "apply phase",
        extra={"phase": "change_scope", "create": len(scope.create), "modify": len(scope.modify), "delete": len(scope.delete)},
    )

    def result(status: ApplyStatus, *, written: Optional[List[str]] = None, reason: Optional[str] = None) -> ApplyResult:
        return ApplyResult(
            mode=mode,
            status=status,
            scope=scope,
            recommendation_ids=rec_ids,
            manifest=manifest if manifest_path else None,
            manifest_path=manifest_path,
            written=written or [],
            promoted_tools=promoted if status in (ApplyStatus.APPLIED, ApplyStatus.PREVIEW) else [],
            reason=reason,
        )

    if mode is ApplyMode.PREVIEW:
        return result(ApplyStatus.PREVIEW)
    if not changes:
        logger.info("apply phase", extra={"phase": "write", "skipped": True})
        return result(ApplyStatus.NOOP, reason="no changes to apply")

    reason = confirm(recs, flags, confirmation)
    if reason is not None:
        logger.info("apply phase", extra={"phase": "confirmation", "confirmed": False, "reason": reason})
        return result(ApplyStatus.CANCELLED, reason=reason)
    logger.info("apply phase", extra={"phase": "confirmation", "confirmed": True})

    verify_manifest(root, manifest)
    written = write_changes(root, changes)
    logger.info("apply phase", extra={"phase": "write", "files": written, "promoted": promoted})
    return result(ApplyStatus.APPLIED, written=written)
