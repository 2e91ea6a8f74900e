# harness_core/report.py
"""Renderers. Engines hand over structured data; every text format is produced here."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from harness_core._version import __version__
from harness_core.adapters.persistence import dumps_pretty
from harness_core.contracts import (
    CATEGORY_ORDER,
    ApplyMode,
    ApplyResult,
    ChangeScope,
    DeltaStatus,
    HarnessReport,
    OptimizationThresholds,
    Severity,
    TraceScanStats,
)
from harness_core.recommend import OptimizationResult, sort_recommendations
from harness_core.stable_ids import derive_finding_fingerprint

SARIF_VERSION = "2.1.0"
SARIF_SCHEMA = "https://json.schemastore.org/sarif-2.1.0.json"
TOP_RECOMMENDATIONS = 10

_SARIF_LEVEL = {
    Severity.BLOCKING: "error",
    Severity.WARNING: "warning",
    Severity.INFO: "note",
}


def report_payload(report: HarnessReport) -> Dict[str, Any]:
    payload = report.model_dump(mode="json")
    payload["overall_score"] = report.overall_score
    for rec, dumped in zip(report.recommendations, payload["recommendations"]):
        dumped["bucket"] = rec.bucket.value
    return payload


def render_json(report: HarnessReport) -> str:
    return dumps_pretty(report_payload(report))


def render_markdown(report: HarnessReport) -> str:
    lines: List[str] = ["# Harness Report", "", f"Overall score: {report.overall_score:.3f}", ""]

    lines += ["## Category Scores", ""]
    for category in CATEGORY_ORDER:
        lines.append(f"- {category.value}: {report.score_card.category(category):.3f}")
    lines.append("")

    lines += ["## Findings", ""]
    if not report.findings:
        lines.append("- none")
    for finding in report.findings:
        where = f" ({finding.file})" if finding.file else ""
        lines.append(f"- [{finding.severity.value}] {finding.title}: {finding.message}{where}")
    lines.append("")

    lines += ["## Recommendations", ""]
    if not report.recommendations:
        lines.append("- none")
    for rec in report.recommendations:
        lines.append(
            f"- `{rec.id}` {rec.title} ({rec.impact.value}/{rec.effort.value}, {rec.bucket.value}, "
            f"confidence {rec.confidence:.2f}): {rec.summary}"
        )
    lines.append("")
    return "\n".join(lines)


def render_sarif(report: HarnessReport) -> str:
    rules: Dict[str, Dict[str, Any]] = {}
    results: List[Dict[str, Any]] = []
    for finding in report.findings:
        rules.setdefault(
            finding.id,
            {"id": finding.id, "shortDescription": {"text": finding.title}},
        )
        result: Dict[str, Any] = {
            "ruleId": finding.id,
            "level": _SARIF_LEVEL[finding.severity],
            "message": {"text": finding.message},
            "partialFingerprints": {
                "harnessFinding/v1": derive_finding_fingerprint(finding.id, finding.file, finding.line)
            },
        }
        if finding.file:
            location: Dict[str, Any] = {"artifactLocation": {"uri": finding.file}}
            if finding.line is not None:
                location["region"] = {"startLine": finding.line}
            result["locations"] = [{"physicalLocation": location}]
        results.append(result)

    sarif = {
        "$schema": SARIF_SCHEMA,
        "version": SARIF_VERSION,
        "runs": [
            {
                "tool": {"driver": {"name": "harness", "version": __version__, "rules": list(rules.values())}},
                "results": results,
            }
        ],
    }
    return json.dumps(sarif, indent=2, ensure_ascii=False) + "\n"


RENDERERS = {
    "json": render_json,
    "md": render_markdown,
    "sarif": render_sarif,
}


def render(report: HarnessReport, fmt: str) -> str:
    return RENDERERS[fmt](report)


# ------------------------------------------------------------------------------
# apply / optimize
# ------------------------------------------------------------------------------


def render_scope(scope: ChangeScope) -> List[str]:
    lines = [f"scope: create={len(scope.create)} modify={len(scope.modify)} delete={len(scope.delete)}"]
    lines += [f"create: {p}" for p in scope.create]
    lines += [f"modify: {p}" for p in scope.modify]
    lines += [f"delete: {p}" for p in scope.delete]
    return lines


def render_apply_result(result: ApplyResult) -> List[str]:
    lines = [f"apply: mode={result.mode.value} status={result.status.value}"]
    if result.recommendation_ids:
        lines.append(f"recommendations: {', '.join(result.recommendation_ids)}")
    if result.manifest_path:
        lines.append(f"rollback manifest: {result.manifest_path}")
    if result.promoted_tools:
        verb = "would promote" if result.mode is ApplyMode.PREVIEW else "promoted"
        lines.append(f"{verb} to tools.baseline.forbidden: {', '.join(result.promoted_tools)}")
    if result.reason:
        lines.append(f"reason: {result.reason}")
    return lines


_DELTA_STATUS_LINE = {
    DeltaStatus.IMPROVEMENT: "Status: improvement detected.",
    DeltaStatus.REGRESSION: "Status: regression warning.",
    DeltaStatus.NEUTRAL: "Status: stable; changes are below uplift thresholds.",
    DeltaStatus.INSUFFICIENT_DATA: "Status: insufficient comparative data for optimize deltas.",
}


def render_optimize_report(
    report: HarnessReport,
    result: OptimizationResult,
    stats: TraceScanStats,
    thresholds: OptimizationThresholds,
    trace_dir: Path,
) -> str:
    lines: List[str] = [
        "# Harness Optimize Report",
        "",
        f"Overall score: {report.overall_score:.3f}",
        f"Trace directory: {trace_dir.as_posix()}",
        f"Trace records: recent={stats.recent}, stale={stats.stale}, malformed={stats.malformed}",
        f"Recent traces required for optimization: {thresholds.min_traces}",
        "",
    ]
    if stats.malformed > 0:
        lines.append(f"Warning: ignored malformed trace records: {stats.malformed}")

    if stats.recent < thresholds.min_traces:
        lines += [
            "Status: insufficient data for optimization recommendations.",
            f"Need at least {thresholds.min_traces} recent traces before computing optimize deltas.",
            "",
        ]
        return "\n".join(lines)

    delta = result.delta
    lines.append("## Optimization Delta")
    if delta is not None:
        if delta.baseline_revision and delta.current_revision:
            lines.append(
                f"- revisions compared: baseline=`{delta.baseline_revision}`, current=`{delta.current_revision}`"
            )
        lines.append(f"- task overlap: {delta.task_overlap:.2f}")
        lines.append(
            f"- completion delta: {delta.completion_delta:+.3f}, token delta (rel): {delta.token_delta_rel:+.3f}, "
            f"step delta (rel): {delta.step_delta_rel:+.3f}"
        )
        lines.append(_DELTA_STATUS_LINE[delta.status])
        if delta.reason:
            lines.append(f"Reason: {delta.reason}")
    for warning in result.warnings:
        if f"Warning: {warning}" not in lines:
            lines.append(f"Warning: {warning}")
    lines.append("")

    if delta is None or delta.status is DeltaStatus.INSUFFICIENT_DATA:
        return "\n".join(lines)

    lines.append("## Top Recommendations")
    recs = sort_recommendations(result.recommendations)
    if not recs:
        lines.append("- No recommendations available.")
    for rec in recs[:TOP_RECOMMENDATIONS]:
        lines.append(
            f"- `{rec.id}`: {rec.summary} (impact: {rec.impact.value}, effort: {rec.effort.value}, "
            f"risk: {rec.risk.value}, confidence: {rec.confidence:.2f}, evidence: {rec.evidence.value})"
        )
    lines.append("")
    return "\n".join(lines)
