# tests/test_report.py
from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest

from harness_core._version import __version__
from harness_core.contracts import (
    ApplyMode,
    ApplyResult,
    ApplyStatus,
    Category,
    ChangeScope,
    Finding,
    HarnessReport,
    OptimizationThresholds,
    RepoModel,
    RevisionMetrics,
    ScoreCard,
    Severity,
    TraceScanStats,
    TraceSummary,
)
from harness_core.recommend import plan_with_evidence
from harness_core.report import (
    render,
    render_apply_result,
    render_markdown,
    render_optimize_report,
    render_sarif,
    render_scope,
    report_payload,
)
from harness_core.scoring import analyze
from harness_core.stable_ids import derive_finding_fingerprint

CARD = ScoreCard(context=0.5, tools=1.0, continuity=0.0, verification=0.25, repository_quality=0.0, overall=0.4)


def _finding(finding_id: str, severity: Severity, file: str | None = None, line: int | None = None) -> Finding:
    return Finding(
        id=finding_id,
        category=Category.CONTEXT,
        title=finding_id.replace(".", " "),
        message=f"{finding_id} message",
        severity=severity,
        file=file,
        line=line,
    )


@pytest.fixture
def report(make_model: Callable[..., RepoModel]) -> HarnessReport:
    return analyze(make_model(docs={"docs_age_days": 400}), None)


def test_markdown_lists_scores_findings_and_recommendations(report: HarnessReport) -> None:
    text = render_markdown(report)
    assert text.startswith("# Harness Report\n\nOverall score: ")
    assert "## Category Scores\n\n- context: " in text
    assert "- [warning] " in text
    assert "- `rec.context.index` Add Context Index (high/s, safe, confidence 0.92)" in text


def test_markdown_for_an_empty_report() -> None:
    text = render_markdown(HarnessReport(score_card=CARD))
    assert "Overall score: 0.400" in text
    assert text.count("- none") == 2


def test_json_payload_carries_overall_and_buckets(report: HarnessReport) -> None:
    payload = json.loads(render(report, "json"))
    assert payload["overall_score"] == pytest.approx(report.overall_score)
    assert payload == report_payload(report)
    buckets = {r["id"]: r["bucket"] for r in payload["recommendations"]}
    assert buckets["rec.context.index"] == "safe"
    assert buckets["rec.verification.gate"] == "medium-risk"


def test_sarif_levels_locations_and_fingerprints() -> None:
    findings = [
        _finding("tools.deprecated", Severity.BLOCKING, "harness.toml", 12),
        _finding("context.stale_docs", Severity.WARNING, "AGENTS.md"),
        _finding("context.missing_index", Severity.INFO),
    ]
    sarif = json.loads(render_sarif(HarnessReport(score_card=CARD, findings=findings)))

    assert sarif["version"] == "2.1.0"
    assert sarif["$schema"].endswith("sarif-2.1.0.json")
    run = sarif["runs"][0]
    assert run["tool"]["driver"]["name"] == "harness"
    assert run["tool"]["driver"]["version"] == __version__
    assert [r["id"] for r in run["tool"]["driver"]["rules"]] == [f.id for f in findings]

    blocking, warning, info = run["results"]
    assert [blocking["level"], warning["level"], info["level"]] == ["error", "warning", "note"]
    assert blocking["locations"][0]["physicalLocation"] == {
        "artifactLocation": {"uri": "harness.toml"},
        "region": {"startLine": 12},
    }
    assert "region" not in warning["locations"][0]["physicalLocation"]
    assert "locations" not in info
    assert blocking["partialFingerprints"]["harnessFinding/v1"] == derive_finding_fingerprint(
        "tools.deprecated", "harness.toml", 12
    )


def test_sarif_is_stable_across_runs(report: HarnessReport) -> None:
    assert render_sarif(report) == render_sarif(report)


def test_scope_lines() -> None:
    scope = ChangeScope(create=["AGENTS.md"], modify=["harness.toml"])
    assert render_scope(scope) == [
        "scope: create=1 modify=1 delete=0",
        "create: AGENTS.md",
        "modify: harness.toml",
    ]


def test_apply_result_lines() -> None:
    result = ApplyResult(
        mode=ApplyMode.APPLY,
        status=ApplyStatus.APPLIED,
        scope=ChangeScope(),
        recommendation_ids=["rec.context.index"],
        manifest_path=".harness/rollback/20260301T120000Z.json",
        promoted_tools=["nc"],
    )
    assert render_apply_result(result) == [
        "apply: mode=apply status=applied",
        "recommendations: rec.context.index",
        "rollback manifest: .harness/rollback/20260301T120000Z.json",
        "promoted to tools.baseline.forbidden: nc",
    ]
    preview = result.model_copy(update={"mode": ApplyMode.PREVIEW, "status": ApplyStatus.PREVIEW, "manifest_path": None})
    assert render_apply_result(preview)[-1] == "would promote to tools.baseline.forbidden: nc"
    cancelled = result.model_copy(update={"status": ApplyStatus.CANCELLED, "promoted_tools": [], "reason": "confirmation declined"})
    assert render_apply_result(cancelled)[-1] == "reason: confirmation declined"


# ------------------------------------------------------------------------------
# optimize
# ------------------------------------------------------------------------------


def _revision(revision: str, day: int, completion: float) -> RevisionMetrics:
    return RevisionMetrics(
        revision=revision,
        total=25,
        completion_rate=completion,
        avg_steps=10.0,
        avg_tokens=1000.0,
        tasks=["a", "b", "c"],
        latest_ts=datetime(2026, 2, day, tzinfo=timezone.utc),
    )


def test_optimize_report_with_too_few_traces(report: HarnessReport) -> None:
    stats = TraceScanStats(recent=3, stale=1, malformed=2)
    summary = TraceSummary(stats=stats, warnings=["ignored malformed trace records: 2"])
    result = plan_with_evidence(report, None, summary)

    text = render_optimize_report(report, result, stats, OptimizationThresholds(), Path(".harness/traces"))

    assert "Trace records: recent=3, stale=1, malformed=2" in text
    assert "Warning: ignored malformed trace records: 2" in text
    assert "Status: insufficient data for optimization recommendations." in text
    assert "Need at least 20 recent traces before computing optimize deltas." in text
    assert "## Top Recommendations" not in text


def test_optimize_report_with_a_comparison(report: HarnessReport, make_model: Callable[..., RepoModel]) -> None:
    stats = TraceScanStats(recent=50)
    summary = TraceSummary(stats=stats, revisions=[_revision("rev-a", 1, 0.5), _revision("rev-b", 2, 0.8)])
    result = plan_with_evidence(report, None, summary, model=make_model())

    text = render_optimize_report(report, result, stats, OptimizationThresholds(), Path("traces"))

    assert "- revisions compared: baseline=`rev-a`, current=`rev-b`" in text
    assert "- task overlap: 1.00" in text
    assert "- completion delta: +0.300, token delta (rel): +0.000, step delta (rel): +0.000" in text
    assert "Status: improvement detected." in text
    assert "## Top Recommendations" in text
    assert "evidence: evidence_backed" in text
    assert "evidence: rule_only" in text
