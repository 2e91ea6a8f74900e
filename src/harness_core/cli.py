# harness_core/cli.py
from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from harness_core._compat import utc_now
from harness_core._version import __version__
from harness_core.adapters.confirmation import (
    ConfirmationProvider,
    InteractiveConfirmation,
    NonInteractiveConfirmation,
)
from harness_core.adapters.git import GitCommandRunner, run_git_command
from harness_core.adapters.persistence import OPTIMIZE_DIR, write_plan, write_text_atomic
from harness_core.adapters.scanner import discover
from harness_core.adapters.traces import DEFAULT_TRACE_DIR, load_trace_summary
from harness_core.apply import STAMP_FORMAT, apply
from harness_core.config import load_config, render_init_config
from harness_core.continuity import ContinuityLogger, safe_milestone, safe_progress
from harness_core.contracts import (
    SUPPORTED_PROFILES,
    ApplyFlags,
    ApplyMode,
    HarnessConfig,
    PlanSelection,
    Risk,
)
from harness_core.errors import EXIT_RUNTIME_FAILURE, EXIT_SUCCESS, HarnessError, NotGitRepo, PathNotFound
from harness_core.logging_config import configure_logging, get_logger, level_from_flags
from harness_core.recommend import export_plan, plan_with_evidence
from harness_core.report import render, render_apply_result, render_optimize_report, render_scope
from harness_core.scoring import analyze, exit_code_for, score

logger = get_logger(__name__)

Clock = Callable[[], datetime]

INIT_AGENTS_MD = "# Generated by harness\n# Agents\n\n- Context index: docs/context/INDEX.md\n"
INIT_CONTEXT_INDEX = "# Generated by harness\n# Context Index\n\n- AGENTS.md\n- harness.toml\n"


def _repo_path(raw: str) -> Path:
    path = Path(raw)
    if not path.exists():
        raise PathNotFound(raw)
    if not (path / ".git").exists():
        raise NotGitRepo(raw)
    return path


def _emit(lines: Sequence[str]) -> None:
    for line in lines:
        print(line)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------


def cmd_init(args: argparse.Namespace, *, clock: Clock, **_: object) -> int:
    root = Path(args.path)
    files = [
        (root / "harness.toml", render_init_config(args.profile, args.name or root.resolve().name)),
        (root / "AGENTS.md", INIT_AGENTS_MD),
        (root / "docs/context/INDEX.md", INIT_CONTEXT_INDEX),
    ]
    print("init plan:")
    _emit([f"- {path.as_posix()}" for path, _ in files])
    if args.dry_run:
        print("dry-run: no files were written")
        return EXIT_SUCCESS

    root.mkdir(parents=True, exist_ok=True)
    continuity = ContinuityLogger.for_repo(root, None, clock)
    safe_milestone(continuity, "init", "start", [f"path={root.as_posix()}"])
    for path, content in files:
        if path.exists() and args.no_overwrite:
            print(f"skip existing: {path.as_posix()}")
            safe_progress(continuity, "init", "skip_existing", [f"file={path.as_posix()}"])
            continue
        write_text_atomic(path, content)
        safe_progress(continuity, "init", "file_written", [f"file={path.as_posix()}"])
    print("init complete")
    safe_milestone(continuity, "init", "complete", [f"exit_code={EXIT_SUCCESS}"], "done")
    return EXIT_SUCCESS


def cmd_analyze(args: argparse.Namespace, *, clock: Clock, git_runner: GitCommandRunner, **_: object) -> int:
    root = _repo_path(args.path)
    config = load_config(root)
    continuity = ContinuityLogger.for_repo(root, config, clock)
    safe_milestone(continuity, "analyze", "start", [f"path={root.as_posix()}"])

    model = discover(root, config, now=clock(), git_runner=git_runner)
    report = analyze(model, config)
    if args.min_impact == "safe":
        report = report.model_copy(
            update={"recommendations": [r for r in report.recommendations if r.risk is Risk.SAFE]}
        )
    if config is None:
        print(f"warning: no harness.toml found in {root.as_posix()}", file=sys.stderr)

    sys.stdout.write(render(report, args.format))
    safe_progress(
        continuity,
        "analyze",
        "report_rendered",
        [f"findings={len(report.findings)}", f"recommendations={len(report.recommendations)}"],
    )
    code = exit_code_for(report.findings)
    safe_milestone(continuity, "analyze", "complete", [f"exit_code={code}"], "done")
    return code


def cmd_lint(args: argparse.Namespace, *, clock: Clock, git_runner: GitCommandRunner, **_: object) -> int:
    root = _repo_path(args.path)
    config = load_config(root)
    continuity = ContinuityLogger.for_repo(root, config, clock)
    safe_milestone(continuity, "lint", "start", [f"path={root.as_posix()}"])

    model = discover(root, config, now=clock(), git_runner=git_runner)
    _, findings = score(model, config)
    if not findings:
        print("lint: no findings")
    for finding in findings:
        where = f" ({finding.file})" if finding.file else ""
        print(f"[{finding.severity.value}] {finding.id}: {finding.message}{where}")

    code = exit_code_for(findings)
    safe_milestone(continuity, "lint", "complete", [f"findings={len(findings)}", f"exit_code={code}"], "done")
    return code


def cmd_suggest(args: argparse.Namespace, *, clock: Clock, git_runner: GitCommandRunner, **_: object) -> int:
    root = _repo_path(args.path)
    config = load_config(root)
    continuity = ContinuityLogger.for_repo(root, config, clock)
    safe_milestone(continuity, "suggest", "start", [f"path={root.as_posix()}"])

    now = clock()
    model = discover(root, config, now=now, git_runner=git_runner)
    report = analyze(model, config)
    if not report.recommendations:
        print("suggest: no recommendations")
    else:
        print("suggestions:")
        for rec in report.recommendations:
            print(f"- {rec.id} [{rec.title} {rec.impact.value}/{rec.bucket.value}]")

    if args.export_plan and report.recommendations:
        artifact = export_plan(report.recommendations, now=now)
        path = write_plan(root, artifact, stamp=now.strftime(STAMP_FORMAT))
        print(f"plan file: {path.relative_to(root).as_posix()}")
        safe_progress(continuity, "suggest", "plan_exported", [f"plan={path.name}"])

    safe_milestone(
        continuity,
        "suggest",
        "complete",
        [f"recommendations={len(report.recommendations)}", f"exit_code={EXIT_SUCCESS}"],
        "done",
    )
    return EXIT_SUCCESS


def cmd_apply(
    args: argparse.Namespace,
    *,
    clock: Clock,
    git_runner: GitCommandRunner,
    confirmation: Optional[ConfirmationProvider] = None,
    **_: object,
) -> int:
    root = _repo_path(args.path)
    config = load_config(root)
    if confirmation is None:
        confirmation = InteractiveConfirmation() if sys.stdin.isatty() else NonInteractiveConfirmation(args.yes)

    result = apply(
        PlanSelection(plan_file=args.plan_file, plan_all=args.plan_all),
        root,
        ApplyMode(args.apply_mode),
        ApplyFlags(allow_dirty=args.allow_dirty, yes=args.yes),
        config=config,
        confirmation=confirmation,
        git_runner=git_runner,
        clock=clock,
        scope_sink=lambda scope: _emit(render_scope(scope)),
    )
    _emit(render_apply_result(result))
    return EXIT_SUCCESS


def cmd_optimize(args: argparse.Namespace, *, clock: Clock, git_runner: GitCommandRunner, **_: object) -> int:
    root = _repo_path(args.path)
    config = load_config(root)
    effective = config or HarnessConfig()
    thresholds = effective.optimization
    continuity = ContinuityLogger.for_repo(root, config, clock)
    safe_milestone(continuity, "optimize", "start", [f"path={root.as_posix()}"])

    now = clock()
    trace_dir = Path(args.trace_dir) if args.trace_dir else root / DEFAULT_TRACE_DIR
    summary = load_trace_summary(trace_dir, now=now, staleness_days=thresholds.trace_staleness_days)
    stats = summary.stats
    safe_progress(
        continuity,
        "optimize",
        "trace_scanned",
        [f"recent={stats.recent}", f"stale={stats.stale}", f"malformed={stats.malformed}"],
    )

    model = discover(root, config, now=now, git_runner=git_runner)
    report = analyze(model, config)
    result = plan_with_evidence(report, config, summary, model=model)
    content = render_optimize_report(report, result, stats, thresholds, trace_dir)
    out_path = write_text_atomic(root / OPTIMIZE_DIR / f"optimize-{now.strftime(STAMP_FORMAT)}.md", content)
    print(f"optimize report: {out_path.relative_to(root).as_posix()}")

    status = result.delta.status.value if result.delta is not None else "none"
    safe_milestone(continuity, "optimize", "complete", [f"status={status}", f"exit_code={EXIT_SUCCESS}"], "done")
    return EXIT_SUCCESS


# ------------------------------------------------------------------------------
# Parser
# ------------------------------------------------------------------------------


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    verbosity = common.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="only log errors")
    common.add_argument("--log-format", choices=["text", "json"], default="text")

    parser = argparse.ArgumentParser(prog="harness", description="Agent harness scoring, planning and safe apply.")
    parser.add_argument("--version", action="version", version=f"harness {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", parents=[common], help="write a starter harness.toml and agent docs")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("--profile", choices=list(SUPPORTED_PROFILES), default="general")
    p.add_argument("--name", default=None)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--no-overwrite", action="store_true")
    p.set_defaults(handler=cmd_init)

    p = sub.add_parser("analyze", parents=[common], help="score the repository and list recommendations")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("-f", "--format", choices=["md", "json", "sarif"], default="md")
    p.add_argument("--min-impact", choices=["all", "safe"], default="all")
    p.set_defaults(handler=cmd_analyze)

    p = sub.add_parser("lint", parents=[common], help="report findings only")
    p.add_argument("path", nargs="?", default=".")
    p.set_defaults(handler=cmd_lint)

    p = sub.add_parser("suggest", parents=[common], help="list ranked recommendations")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("--export-plan", action="store_true", help="write safe recommendations to .harness/plans")
    p.set_defaults(handler=cmd_suggest)

    p = sub.add_parser("apply", parents=[common], help="preview or apply a plan")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("--plan-file", default=None)
    p.add_argument("--plan-all", action="store_true")
    p.add_argument("--apply-mode", choices=[m.value for m in ApplyMode], default=ApplyMode.PREVIEW.value)
    p.add_argument("--allow-dirty", action="store_true")
    p.add_argument("-y", "--yes", action="store_true")
    p.set_defaults(handler=cmd_apply)

    p = sub.add_parser("optimize", parents=[common], help="fold run traces into recommendation evidence")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("--trace-dir", default=None)
    p.set_defaults(handler=cmd_optimize)

    return parser.parse_args(argv)


def main(
    argv: Optional[List[str]] = None,
    *,
    clock: Clock = utc_now,
    git_runner: GitCommandRunner = run_git_command,
    confirmation: Optional[ConfirmationProvider] = None,
) -> int:
    args = _parse_args(argv)
    configure_logging(level_from_flags(args.verbose, args.quiet), structured=args.log_format == "json")
    try:
        return args.handler(args, clock=clock, git_runner=git_runner, confirmation=confirmation)
    except HarnessError as exc:
        logger.debug("command failed", extra={"category": exc.category, **exc.details})
        print(f"error: {exc.message}", file=sys.stderr)
        return exc.exit_code
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
