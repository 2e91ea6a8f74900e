# harness_core/recommend.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from harness_core._version import __version__
from harness_core.contracts import (
    EFFORT_RANK,
    IMPACT_RANK,
    DeltaStatus,
    Effort,
    EvidenceStatus,
    FilePatch,
    HarnessConfig,
    HarnessReport,
    Impact,
    MetricEvidence,
    OptimizationThresholds,
    OptimizeDelta,
    OutcomeMetric,
    PatchKind,
    PlanArtifact,
    Recommendation,
    RepoModel,
    RevisionMetrics,
    Risk,
    TraceSummary,
)
from harness_core.logging_config import get_logger
from harness_core.stable_ids import derive_plan_id

logger = get_logger(__name__)

_EPS = 1e-9
SMALL_REPO_FILES = 20

INDEX_TEMPLATE = "# Generated by harness\n# Context Index\n\n- {agents_map}\n"
ARCHITECTURE_TEMPLATE = "# Generated by harness\n# Architecture\n\n## Overview\n\nTBD.\n"
INITIALIZER_TEMPLATE = (
    "# Generated by harness\n# Initializer Prompt\n\n"
    "Read {agents_map} and {context_index}, then record the feature list in {feature_state}.\n"
)
CODING_TEMPLATE = (
    "# Generated by harness\n# Coding Prompt\n\n"
    "Pick one open feature from {feature_state}, implement it, run verification, and update {progress}.\n"
)
PROGRESS_TEMPLATE = "# Generated by harness\n# Progress\n\n## Summary\n\nNo sessions recorded yet.\n"
FEATURE_STATE_TEMPLATE = '{\n  "features": []\n}\n'


# ------------------------------------------------------------------------------
# Rule table
# ------------------------------------------------------------------------------

Trigger = Callable[[HarnessReport, Optional[RepoModel]], bool]
PatchFactory = Callable[[HarnessConfig], List[FilePatch]]


def _has(*finding_ids: str) -> Trigger:
    def _trigger(report: HarnessReport, model: Optional[RepoModel]) -> bool:
        return any(f.id in finding_ids for f in report.findings)

    return _trigger


def _no_patches(config: HarnessConfig) -> List[FilePatch]:
    return []


def _context_index_patches(config: HarnessConfig) -> List[FilePatch]:
    ctx = config.context
    return [
        FilePatch(
            path=ctx.context_index,
            kind=PatchKind.CREATE_IF_MISSING,
            content=INDEX_TEMPLATE.format(agents_map=ctx.agents_map),
        ),
        FilePatch(path=ctx.agents_map, kind=PatchKind.ENSURE_LINE, content=f"- Context index: {ctx.context_index}"),
    ]


def _continuity_patches(config: HarnessConfig) -> List[FilePatch]:
    c, ctx = config.continuity, config.context
    names = {
        "agents_map": ctx.agents_map,
        "context_index": ctx.context_index,
        "feature_state": c.feature_state_file,
        "progress": c.progress_file,
    }
    return [
        FilePatch(path=c.initializer, kind=PatchKind.CREATE_IF_MISSING, content=INITIALIZER_TEMPLATE.format(**names)),
        FilePatch(path=c.coding_prompt, kind=PatchKind.CREATE_IF_MISSING, content=CODING_TEMPLATE.format(**names)),
        FilePatch(path=c.progress_file, kind=PatchKind.CREATE_IF_MISSING, content=PROGRESS_TEMPLATE),
        FilePatch(path=c.feature_state_file, kind=PatchKind.CREATE_IF_MISSING, content=FEATURE_STATE_TEMPLATE),
    ]


def _architecture_patches(config: HarnessConfig) -> List[FilePatch]:
    return [FilePatch(path="ARCHITECTURE.md", kind=PatchKind.CREATE_IF_MISSING, content=ARCHITECTURE_TEMPLATE)]


def _tool_pressure(report: HarnessReport, model: Optional[RepoModel]) -> bool:
    return _has("tools.overlap", "tools.destructive_exposed")(report, model) or report.score_card.tools < 1.0


def _continuity_gap(report: HarnessReport, model: Optional[RepoModel]) -> bool:
    return report.score_card.continuity < 0.5


def _quality_gap(report: HarnessReport, model: Optional[RepoModel]) -> bool:
    return report.score_card.repository_quality < 0.5


def _small_repo(report: HarnessReport, model: Optional[RepoModel]) -> bool:
    return model is not None and model.file_count < SMALL_REPO_FILES and not model.docs.has_architecture_doc


@dataclass(frozen=True)
class RecommendationRule:
    id: str
    title: str
    summary: str
    impact: Impact
    effort: Effort
    risk: Risk
    confidence: float
    trigger: Trigger
    patches: PatchFactory = _no_patches
    metric: Optional[OutcomeMetric] = None

    def build(self, config: HarnessConfig) -> Recommendation:
        return Recommendation(
            id=self.id,
            title=self.title,
            summary=self.summary,
            confidence=self.confidence,
            impact=self.impact,
            effort=self.effort,
            risk=self.risk,
            patches=self.patches(config),
            metric=self.metric,
        )


RULES: Tuple[RecommendationRule, ...] = (
    RecommendationRule(
        id="rec.context.index",
        title="Add Context Index",
        summary="Create the docs context index and link it from the agents map.",
        impact=Impact.HIGH,
        effort=Effort.S,
        risk=Risk.SAFE,
        confidence=0.92,
        trigger=_has("context.missing_index", "context.missing_agents"),
        patches=_context_index_patches,
        metric=OutcomeMetric.COMPLETION_RATE,
    ),
    RecommendationRule(
        id="rec.verification.gate",
        title="Enable Verification Gate",
        summary="Set pre_completion_required and provide required verification commands.",
        impact=Impact.HIGH,
        effort=Effort.S,
        risk=Risk.MEDIUM,
        confidence=0.88,
        trigger=_has("verification.incomplete", "verification.missing_config"),
        metric=OutcomeMetric.COMPLETION_RATE,
    ),
    RecommendationRule(
        id="rec.tools.prune",
        title="Prune Redundant Tools",
        summary="Reduce overlap in grep/find-style tool clusters and remove risky commands.",
        impact=Impact.MEDIUM,
        effort=Effort.M,
        risk=Risk.MEDIUM,
        confidence=0.84,
        trigger=_tool_pressure,
        metric=OutcomeMetric.TOKEN_USAGE,
    ),
    RecommendationRule(
        id="rec.tools.retire_deprecated",
        title="Retire Deprecated Tools",
        summary="Move deprecated tools to disabled once workflows no longer depend on them.",
        impact=Impact.MEDIUM,
        effort=Effort.M,
        risk=Risk.HIGH,
        confidence=0.70,
        trigger=_has("tools.deprecated"),
    ),
    RecommendationRule(
        id="rec.continuity.scaffold",
        title="Scaffold Session Continuity",
        summary="Add initializer/coding prompts, a progress log and a feature state file.",
        impact=Impact.MEDIUM,
        effort=Effort.S,
        risk=Risk.SAFE,
        confidence=0.80,
        trigger=_continuity_gap,
        patches=_continuity_patches,
        metric=OutcomeMetric.STEP_COUNT,
    ),
    RecommendationRule(
        id="rec.context.refresh",
        title="Refresh Agent Docs",
        summary="Review and update agent-facing docs that have not changed in a long time.",
        impact=Impact.MEDIUM,
        effort=Effort.S,
        risk=Risk.MEDIUM,
        confidence=0.75,
        trigger=_has("context.stale_docs"),
    ),
    RecommendationRule(
        id="rec.quality.baseline",
        title="Establish Quality Baseline",
        summary="Add a CI workflow, a test suite and a lint configuration.",
        impact=Impact.LOW,
        effort=Effort.M,
        risk=Risk.MEDIUM,
        confidence=0.65,
        trigger=_quality_gap,
    ),
    RecommendationRule(
        id="rec.repo.scale",
        title="Document Repository Scale",
        summary="Add lightweight architecture notes to support agent understanding in small repos.",
        impact=Impact.LOW,
        effort=Effort.XS,
        risk=Risk.SAFE,
        confidence=0.60,
        trigger=_small_repo,
        patches=_architecture_patches,
    ),
)

RULES_BY_ID: Dict[str, RecommendationRule] = {rule.id: rule for rule in RULES}


def sort_key(rec: Recommendation) -> Tuple[int, int, str]:
    return (IMPACT_RANK[rec.impact], EFFORT_RANK[rec.effort], rec.id)


def sort_recommendations(recs: Iterable[Recommendation]) -> List[Recommendation]:
    """Impact descending, effort ascending, id ascending. The only ordering plans ever get."""
    return sorted(recs, key=sort_key)


def dedupe(recs: Iterable[Recommendation]) -> List[Recommendation]:
    seen: set[str] = set()
    out: List[Recommendation] = []
    for rec in recs:
        if rec.id in seen:
            continue
        seen.add(rec.id)
        out.append(rec)
    return out


def build_recommendations(ids: Sequence[str], config: Optional[HarnessConfig]) -> List[Recommendation]:
    """Materialise known ids (plan artifacts); unknown ids raise KeyError."""
    effective = config or HarnessConfig()
    return [RULES_BY_ID[i].build(effective) for i in ids]


# ------------------------------------------------------------------------------
# Trace gating
# ------------------------------------------------------------------------------


def task_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    union = sa | sb
    if not union:
        return 0.0
    return len(sa & sb) / len(union)


def relative_delta(baseline: float, current: float) -> float:
    if abs(baseline) < _EPS:
        return 0.0
    return (current - baseline) / baseline


@dataclass(frozen=True)
class _Gate:
    passed: bool
    note: str
    pair: Optional[Tuple[RevisionMetrics, RevisionMetrics]] = None
    overlap: float = 0.0


def _sample_gate(summary: TraceSummary, thresholds: OptimizationThresholds) -> _Gate:
    pair = summary.compared_revisions()
    if pair is None:
        return _Gate(False, "need traces from at least two revisions")
    baseline, current = pair
    if baseline.total < thresholds.min_traces or current.total < thresholds.min_traces:
        return _Gate(
            False,
            f"need at least {thresholds.min_traces} traces per revision "
            f"(baseline={baseline.total}, current={current.total})",
            pair,
        )
    overlap = task_overlap(baseline.tasks, current.tasks)
    if overlap < thresholds.task_overlap_threshold:
        return _Gate(
            False,
            f"task overlap {overlap:.2f} is below threshold {thresholds.task_overlap_threshold:.2f}",
            pair,
            overlap,
        )
    return _Gate(True, "", pair, overlap)


def _metric_delta(metric: OutcomeMetric, baseline: RevisionMetrics, current: RevisionMetrics) -> float:
    if metric is OutcomeMetric.COMPLETION_RATE:
        return current.completion_rate - baseline.completion_rate
    if metric is OutcomeMetric.TOKEN_USAGE:
        return relative_delta(baseline.avg_tokens, current.avg_tokens)
    return relative_delta(baseline.avg_steps, current.avg_steps)


def _signal(metric: OutcomeMetric, delta: float, thresholds: OptimizationThresholds) -> int:
    """+1 improvement, -1 regression, 0 below the magnitude gate."""
    if metric is OutcomeMetric.COMPLETION_RATE:
        limit, better = thresholds.min_uplift_abs, delta > 0
    else:
        limit, better = thresholds.min_uplift_rel, delta < 0
    if abs(delta) + _EPS < limit:
        return 0
    return 1 if better else -1


def evaluate_metrics(
    summary: TraceSummary, thresholds: OptimizationThresholds
) -> Tuple[Dict[OutcomeMetric, MetricEvidence], OptimizeDelta]:
    gate = _sample_gate(summary, thresholds)
    baseline_rev = gate.pair[0].revision if gate.pair else None
    current_rev = gate.pair[1].revision if gate.pair else None

    if not gate.passed or gate.pair is None:
        gated = {
            m: MetricEvidence(metric=m, delta=0.0, status=EvidenceStatus.INSUFFICIENT_EVIDENCE, note=gate.note)
            for m in OutcomeMetric
        }
        delta = OptimizeDelta(
            status=DeltaStatus.INSUFFICIENT_DATA,
            baseline_revision=baseline_rev,
            current_revision=current_rev,
            task_overlap=gate.overlap,
            reason=gate.note,
        )
        return gated, delta

    baseline, current = gate.pair
    evidence: Dict[OutcomeMetric, MetricEvidence] = {}
    deltas: Dict[OutcomeMetric, float] = {}
    total_signal = 0
    for metric in OutcomeMetric:
        value = _metric_delta(metric, baseline, current)
        deltas[metric] = value
        signal = _signal(metric, value, thresholds)
        total_signal += signal
        if signal > 0:
            status, note = EvidenceStatus.EVIDENCE_BACKED, f"{metric.value} improved ({value:+.3f})"
        elif signal < 0:
            status, note = EvidenceStatus.REGRESSION_WARNING, f"{metric.value} regressed ({value:+.3f})"
        else:
            status, note = EvidenceStatus.NOT_SIGNIFICANT, f"{metric.value} change {value:+.3f} is below threshold"
        evidence[metric] = MetricEvidence(metric=metric, delta=value, status=status, note=note)

    if total_signal > 0:
        status, reason = DeltaStatus.IMPROVEMENT, None
    elif total_signal < 0:
        status, reason = DeltaStatus.REGRESSION, None
    else:
        status, reason = DeltaStatus.NEUTRAL, "changes are below configured uplift thresholds"

    delta = OptimizeDelta(
        status=status,
        baseline_revision=baseline.revision,
        current_revision=current.revision,
        completion_delta=deltas[OutcomeMetric.COMPLETION_RATE],
        token_delta_rel=deltas[OutcomeMetric.TOKEN_USAGE],
        step_delta_rel=deltas[OutcomeMetric.STEP_COUNT],
        task_overlap=gate.overlap,
        reason=reason,
    )
    return evidence, delta


@dataclass(frozen=True)
class OptimizationResult:
    recommendations: List[Recommendation]
    evidence: Dict[OutcomeMetric, MetricEvidence] = field(default_factory=dict)
    delta: Optional[OptimizeDelta] = None
    warnings: List[str] = field(default_factory=list)


def _apply_evidence(
    recs: List[Recommendation], evidence: Dict[OutcomeMetric, MetricEvidence]
) -> Tuple[List[Recommendation], List[str]]:
    """Relabel without reordering; demoted recommendations are never dropped."""
    out: List[Recommendation] = []
    warnings: List[str] = []
    for rec in recs:
        item = evidence.get(rec.metric) if rec.metric is not None else None
        if item is None:
            out.append(rec)
            continue
        if item.status is EvidenceStatus.REGRESSION_WARNING:
            warnings.append(f"{rec.id}: {item.note}")
        out.append(rec.model_copy(update={"evidence": item.status, "evidence_note": item.note}))
    return out, warnings


def plan_with_evidence(
    report: HarnessReport,
    config: Optional[HarnessConfig],
    trace_summary: Optional[TraceSummary] = None,
    *,
    model: Optional[RepoModel] = None,
) -> OptimizationResult:
    effective = config or HarnessConfig()
    candidates = [rule.build(effective) for rule in RULES if rule.trigger(report, model)]
    ranked = sort_recommendations(dedupe(candidates))
    logger.debug("recommendations ranked", extra={"ids": [r.id for r in ranked]})

    if trace_summary is None:
        return OptimizationResult(recommendations=ranked)

    evidence, delta = evaluate_metrics(trace_summary, effective.optimization)
    labelled, warnings = _apply_evidence(ranked, evidence)
    for message in warnings:
        logger.warning("regression warning", extra={"detail": message})
    return OptimizationResult(
        recommendations=labelled,
        evidence=evidence,
        delta=delta,
        warnings=[*trace_summary.warnings, *warnings],
    )


def plan(
    report: HarnessReport,
    config: Optional[HarnessConfig],
    trace_summary: Optional[TraceSummary] = None,
    *,
    model: Optional[RepoModel] = None,
) -> List[Recommendation]:
    return plan_with_evidence(report, config, trace_summary, model=model).recommendations


def export_plan(recs: Iterable[Recommendation], *, now: datetime) -> PlanArtifact:
    """Plan artifact over the safe recommendations, in ranked order."""
    ids = [r.id for r in sort_recommendations(recs) if r.risk is Risk.SAFE]
    return PlanArtifact(
        version=__version__,
        generated_at=now.isoformat(),
        plan_id=derive_plan_id(ids),
        recommendations=ids,
    )
