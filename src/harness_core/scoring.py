# harness_core/scoring.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from harness_core.contracts import (
    CATEGORY_ORDER,
    Category,
    Finding,
    HarnessConfig,
    HarnessReport,
    RepoModel,
    ScoreCard,
    Severity,
    TraceSummary,
)
from harness_core.errors import (
    EXIT_BLOCKING,
    EXIT_SUCCESS,
    EXIT_WARNINGS,
    BucketPenaltyExceeded,
)
from harness_core.logging_config import get_logger
from harness_core.policy import forbidden_declared_findings, lifecycle_findings
from harness_core.recommend import plan

logger = get_logger(__name__)

_EPS = 1e-9

FRESH_DOCS_DAYS = 90
STALE_DOCS_DAYS = 180
MAX_TOOL_INVENTORY = 12
CONFIG_FILE = "harness.toml"


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class ScoreAccumulator:
    """
    Additive rule accumulator for one category.
    Bonuses add freely; penalties collect per bucket and each bucket is capped
    at ``max_penalty_per_bucket`` before it is subtracted.
    """

    category: Category
    base: float
    max_penalty_per_bucket: float
    bonuses: List[Tuple[str, float]] = field(default_factory=list)
    penalties: Dict[str, float] = field(default_factory=dict)

    def bonus(self, rule: str, amount: float, when: bool = True) -> None:
        if when:
            self.bonuses.append((rule, amount))

    def penalty(self, bucket: str, amount: float, when: bool = True) -> None:
        if when and amount > 0:
            self.penalties[bucket] = self.penalties.get(bucket, 0.0) + amount

    def capped_penalties(self) -> Dict[str, float]:
        cap = self.max_penalty_per_bucket
        capped: Dict[str, float] = {}
        for bucket, total in self.penalties.items():
            if total > cap + _EPS:
                logger.debug(
                    "penalty bucket capped",
                    extra={"category": self.category.value, "bucket": bucket, "raw": round(total, 6), "cap": cap},
                )
            capped[bucket] = min(total, cap)
        return capped

    def finalize(self) -> float:
        capped = self.capped_penalties()
        drop = sum(capped.values())
        limit = self.max_penalty_per_bucket * len(capped)
        if drop > limit + _EPS:
            raise BucketPenaltyExceeded(
                f"category {self.category.value} penalty exceeded bucket caps ({drop:.3f} > {limit:.3f})",
                details={"category": self.category.value, "buckets": sorted(capped)},
            )
        raw = self.base + sum(amount for _, amount in self.bonuses) - drop
        score = clamp_unit(raw)
        logger.debug(
            "category scored",
            extra={
                "category": self.category.value,
                "bonuses": [rule for rule, _ in self.bonuses],
                "penalties": sorted(self.penalties),
                "score": round(score, 6),
            },
        )
        return score


# ------------------------------------------------------------------------------
# Category rule tables
# ------------------------------------------------------------------------------


def _context(model: RepoModel, cap: float) -> ScoreAccumulator:
    docs = model.docs
    acc = ScoreAccumulator(Category.CONTEXT, 0.0, cap)
    acc.bonus("agents_map_with_sections", 0.35, docs.has_agents_md and docs.agents_has_section_header)
    acc.bonus("context_index", 0.20, docs.has_context_index)
    acc.bonus("architecture_doc", 0.15, docs.has_architecture_doc)
    acc.bonus("readme_links_architecture", 0.10, docs.readme_links_architecture)
    acc.bonus("fresh_docs", 0.20, docs.docs_age_days is not None and docs.docs_age_days < FRESH_DOCS_DAYS)
    acc.penalty("context.staleness", 0.15, docs.docs_age_days is not None and docs.docs_age_days > STALE_DOCS_DAYS)
    return acc


def _tools(model: RepoModel, cap: float) -> ScoreAccumulator:
    tools = model.tools
    acc = ScoreAccumulator(Category.TOOLS, 1.0, cap)
    acc.penalty("tools.inventory", 0.10, len(tools.tool_names) > MAX_TOOL_INVENTORY)
    acc.penalty("tools.inventory", 0.15, tools.has_ambiguous_duplicates)
    acc.penalty("tools.overlap", 0.05 * tools.risky_overlap_clusters)
    acc.penalty("tools.destructive", 0.20 * tools.unrestricted_destructive)
    return acc


def _continuity(model: RepoModel, cap: float) -> ScoreAccumulator:
    c = model.continuity
    acc = ScoreAccumulator(Category.CONTINUITY, 0.0, cap)
    acc.bonus("session_prompts", 0.40, c.has_initializer_prompt and c.has_coding_prompt)
    acc.bonus("progress_file", 0.25, c.has_progress_file)
    acc.bonus("feature_state", 0.20, c.has_feature_state_file)
    acc.bonus("progress_summary", 0.15, c.has_progress_summary)
    return acc


def _verification(config: Optional[HarnessConfig], cap: float) -> ScoreAccumulator:
    acc = ScoreAccumulator(Category.VERIFICATION, 0.0, cap)
    verification = config.verification if config is not None else None
    if verification is not None:
        acc.bonus("required_commands", 0.50, bool(verification.required))
        acc.bonus("pre_completion_gate", 0.30, verification.pre_completion_required)
        acc.bonus("loop_guard", 0.20, verification.loop_guard_enabled)
    return acc


def _quality(model: RepoModel, cap: float) -> ScoreAccumulator:
    q = model.quality
    acc = ScoreAccumulator(Category.REPOSITORY_QUALITY, 0.0, cap)
    acc.bonus("ci_workflow", 0.40, q.has_ci_workflow)
    acc.bonus("tests", 0.30, q.has_tests)
    acc.bonus("lint_config", 0.30, q.has_lint_config)
    return acc


# ------------------------------------------------------------------------------
# Findings
# ------------------------------------------------------------------------------


def _finding(
    finding_id: str,
    category: Category,
    title: str,
    message: str,
    severity: Severity,
    file: Optional[str] = None,
) -> Finding:
    return Finding(id=finding_id, category=category, title=title, message=message, severity=severity, file=file)


def _context_findings(model: RepoModel, config: HarnessConfig) -> List[Finding]:
    docs = model.docs
    agents_map = config.context.agents_map
    index = config.context.context_index
    out: List[Finding] = []
    if not docs.has_agents_md:
        out.append(
            _finding(
                "context.missing_agents",
                Category.CONTEXT,
                f"Missing {agents_map}",
                f"Repository is missing {agents_map}; agent legibility is reduced.",
                Severity.INFO,
                agents_map,
            )
        )
    if not docs.has_context_index:
        out.append(
            _finding(
                "context.missing_index",
                Category.CONTEXT,
                "Missing docs context index",
                f"{index} is missing, reducing navigability for agents.",
                Severity.INFO,
                index,
            )
        )
    if docs.docs_age_days is not None and docs.docs_age_days > STALE_DOCS_DAYS:
        out.append(
            _finding(
                "context.stale_docs",
                Category.CONTEXT,
                "Agent-facing docs are stale",
                f"Most recent doc commit is {docs.docs_age_days} days old (threshold {STALE_DOCS_DAYS}).",
                Severity.WARNING,
                agents_map if docs.has_agents_md else None,
            )
        )
    return out


def _tools_findings(model: RepoModel, config: Optional[HarnessConfig]) -> List[Finding]:
    tools = model.tools
    out: List[Finding] = []
    if tools.risky_overlap_clusters > 0:
        out.append(
            _finding(
                "tools.overlap",
                Category.TOOLS,
                "Overlapping tools exposed",
                f"{tools.risky_overlap_clusters} cluster(s) of interchangeable search/find tools are exposed together.",
                Severity.WARNING,
                CONFIG_FILE,
            )
        )
    if tools.unrestricted_destructive > 0:
        out.append(
            _finding(
                "tools.destructive_exposed",
                Category.TOOLS,
                "Potentially destructive tools exposed",
                "Detected unrestricted destructive commands in tool inventory.",
                Severity.BLOCKING,
                CONFIG_FILE,
            )
        )
    out.extend(lifecycle_findings(config))
    out.extend(forbidden_declared_findings(config))
    return out


def _verification_findings(config: Optional[HarnessConfig], verification_score: float) -> List[Finding]:
    if config is None:
        return [
            _finding(
                "verification.missing_config",
                Category.VERIFICATION,
                "Verification policy unavailable",
                f"Verification checks cannot be evaluated because {CONFIG_FILE} is missing.",
                Severity.INFO,
                CONFIG_FILE,
            )
        ]
    if verification_score < 0.5:
        return [
            _finding(
                "verification.incomplete",
                Category.VERIFICATION,
                "Verification policy incomplete",
                "Verification requirements are incomplete or missing pre-completion checks.",
                Severity.BLOCKING,
                CONFIG_FILE,
            )
        ]
    return []


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------


def score(model: RepoModel, config: Optional[HarnessConfig]) -> Tuple[ScoreCard, List[Finding]]:
    """
    Pure and total: absent signals yield no bonus, absent config yields defaults.
    Findings come out in category order, then rule order.
    """
    effective = config or HarnessConfig()
    cap = effective.metrics.max_penalty_per_bucket

    accumulators = {
        Category.CONTEXT: _context(model, cap),
        Category.TOOLS: _tools(model, cap),
        Category.CONTINUITY: _continuity(model, cap),
        Category.VERIFICATION: _verification(config, cap),
        Category.REPOSITORY_QUALITY: _quality(model, cap),
    }
    scores = {category: accumulators[category].finalize() for category in CATEGORY_ORDER}
    weights = dict(zip(CATEGORY_ORDER, effective.metrics.weights.as_tuple()))
    overall = sum(weights[c] * scores[c] for c in CATEGORY_ORDER)

    card = ScoreCard(
        context=scores[Category.CONTEXT],
        tools=scores[Category.TOOLS],
        continuity=scores[Category.CONTINUITY],
        verification=scores[Category.VERIFICATION],
        repository_quality=scores[Category.REPOSITORY_QUALITY],
        overall=clamp_unit(overall),
    )

    findings: List[Finding] = []
    findings.extend(_context_findings(model, effective))
    findings.extend(_tools_findings(model, config))
    findings.extend(_verification_findings(config, card.verification))
    return card, findings


def exit_code_for(findings: Iterable[Finding]) -> int:
    severities = {f.severity for f in findings}
    if Severity.BLOCKING in severities:
        return EXIT_BLOCKING
    if Severity.WARNING in severities:
        return EXIT_WARNINGS
    return EXIT_SUCCESS


def analyze(
    model: RepoModel,
    config: Optional[HarnessConfig],
    trace_summary: Optional[TraceSummary] = None,
) -> HarnessReport:
    card, findings = score(model, config)
    report = HarnessReport(score_card=card, findings=findings, config_present=config is not None)
    recommendations = plan(report, config, trace_summary, model=model)
    return report.model_copy(update={"recommendations": recommendations})
