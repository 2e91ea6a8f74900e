# harness_core/contracts.py
from __future__ import annotations

from datetime import datetime

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from harness_core._compat import Self, StrEnum

# ------------------------------------------------------------------------------
# Shared BaseModel config helpers
# ------------------------------------------------------------------------------

_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    validate_assignment=True,
    use_enum_values=False,  # keep enums as enums in Python
)

_IMMUTABLE_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    use_enum_values=False,
    frozen=True,
)

# Trace records come from external agent runners; unknown keys are tolerated.
_EXTERNAL_RECORD_CONFIG = ConfigDict(
    extra="ignore",
    use_enum_values=False,
    frozen=True,
)


def _unit_interval(value: float, name: str) -> float:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0")
    return value


def _clean_names(values: list[str], name: str) -> list[str]:
    out: list[str] = []
    for raw in values:
        item = raw.strip()
        if not item:
            raise ValueError(f"{name} entries must be non-empty tool names")
        out.append(item)
    return out


# ------------------------------------------------------------------------------
# Configuration
# ------------------------------------------------------------------------------

SUPPORTED_PROFILES = ("general", "agent")


class ProjectConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    name: str = "harness-project"
    profile: str = "general"
    language: str | None = None
    main_branch: str = "main"

    @field_validator("profile")
    @classmethod
    def _check_profile(cls, value: str) -> str:
        if value not in SUPPORTED_PROFILES:
            raise ValueError(f"unsupported project.profile: {value}")
        return value


class ContextConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    agents_map: str = "AGENTS.md"
    context_index: str = "docs/context/INDEX.md"
    doc_map_required: bool = False


class ToolBaseline(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    read: list[str] = Field(default_factory=list)
    write: list[str] = Field(default_factory=list)
    forbidden: list[str] = Field(default_factory=list)

    @field_validator("read", "write", "forbidden")
    @classmethod
    def _non_empty(cls, values: list[str], info: ValidationInfo) -> list[str]:
        return _clean_names(values, f"tools.baseline.{info.field_name}")


class ToolSpecialized(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    extra: list[str] = Field(default_factory=list)

    @field_validator("extra")
    @classmethod
    def _non_empty(cls, values: list[str]) -> list[str]:
        return _clean_names(values, "tools.specialized.extra")


class LifecycleStage(StrEnum):
    OBSERVE = "observe"
    DEPRECATED = "deprecated"
    DISABLED = "disabled"


class ToolLifecycle(BaseModel):
    """Staged removal lists, read from the ``[tools.deprecated]`` table."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    observe: list[str] = Field(default_factory=list)
    deprecated: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)

    @field_validator("observe", "deprecated", "disabled")
    @classmethod
    def _non_empty(cls, values: list[str], info: ValidationInfo) -> list[str]:
        return _clean_names(values, f"tools.deprecated.{info.field_name}")

    @model_validator(mode="after")
    def _stages_are_exclusive(self) -> Self:
        seen: dict[str, str] = {}
        for stage in LifecycleStage:
            for name in self.stage(stage):
                previous = seen.get(name)
                if previous is not None and previous != stage.value:
                    raise ValueError(
                        f"tool '{name}' appears in more than one lifecycle stage ({previous}, {stage.value})"
                    )
                seen[name] = stage.value
        return self

    def stage(self, stage: LifecycleStage) -> list[str]:
        return list(getattr(self, stage.value))


class ToolsConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    baseline: ToolBaseline = Field(default_factory=ToolBaseline)
    specialized: ToolSpecialized = Field(default_factory=ToolSpecialized)
    lifecycle: ToolLifecycle = Field(
        default_factory=ToolLifecycle,
        validation_alias=AliasChoices("deprecated", "lifecycle"),
        serialization_alias="deprecated",
    )
    aliases: dict[str, str] = Field(default_factory=dict)

    @field_validator("aliases")
    @classmethod
    def _aliases_non_empty(cls, value: dict[str, str]) -> dict[str, str]:
        out: dict[str, str] = {}
        for alias, target in value.items():
            a, t = alias.strip(), target.strip()
            if not a or not t:
                raise ValueError("tools.aliases keys and targets must be non-empty")
            out[a] = t
        return out


class VerificationConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    required: list[str] = Field(default_factory=list)
    pre_completion_required: bool = False
    loop_guard_enabled: bool = False

    @model_validator(mode="after")
    def _gate_needs_commands(self) -> Self:
        if self.pre_completion_required and not self.required:
            raise ValueError("verification.required cannot be empty when pre_completion_required = true")
        return self


class LogSampling(StrEnum):
    MILESTONES = "milestones"
    ALL = "all"
    NONE = "none"


class ContinuityConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    initializer: str = ".harness/initializer.prompt.md"
    coding_prompt: str = ".harness/coding.prompt.md"
    progress_file: str = ".harness/progress.md"
    feature_state_file: str = ".harness/feature_list.json"
    state_schema_version: int | None = None
    log_sampling: LogSampling = LogSampling.MILESTONES
    batch_interval_secs: int = Field(default=60, ge=1)
    max_log_size_kb: int = Field(default=100, ge=1)
    retained_logs: int = Field(default=3, ge=0)


class MetricWeights(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    context: float = 0.30
    tools: float = 0.25
    continuity: float = 0.20
    verification: float = 0.15
    repository_quality: float = 0.10

    @field_validator("context", "tools", "continuity", "verification", "repository_quality")
    @classmethod
    def _in_range(cls, value: float) -> float:
        return _unit_interval(value, "metrics.weights values")

    @model_validator(mode="after")
    def _sum_to_one(self) -> Self:
        total = sum(self.as_tuple())
        if abs(total - 1.0) > 0.001:
            raise ValueError(f"metrics.weights must sum to 1.0 (found {total:.3f})")
        return self

    def as_tuple(self) -> tuple[float, float, float, float, float]:
        return (self.context, self.tools, self.continuity, self.verification, self.repository_quality)


class MetricsConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    weights: MetricWeights = Field(default_factory=MetricWeights)
    max_risk_tolerance: float = 0.35
    max_penalty_per_bucket: float = 0.40

    @field_validator("max_risk_tolerance")
    @classmethod
    def _risk_range(cls, value: float) -> float:
        return _unit_interval(value, "metrics.max_risk_tolerance")

    @field_validator("max_penalty_per_bucket")
    @classmethod
    def _penalty_range(cls, value: float) -> float:
        return _unit_interval(value, "metrics.max_penalty_per_bucket")


class OptimizationThresholds(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    min_traces: int = Field(default=20, ge=1)
    min_uplift_abs: float = 0.05
    min_uplift_rel: float = 0.10
    trace_staleness_days: int = Field(default=90, ge=0)
    task_overlap_threshold: float = 0.50

    @field_validator("min_uplift_abs", "min_uplift_rel", "task_overlap_threshold")
    @classmethod
    def _in_range(cls, value: float, info: ValidationInfo) -> float:
        return _unit_interval(value, f"optimization.{info.field_name}")


class WorkflowConfig(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    max_consecutive_failures: int | None = None
    max_idle_steps: int | None = None
    max_planned_edits: int = Field(default=25, ge=1)
    replan_on_loop: bool = False


class HarnessConfig(BaseModel):
    """Validated, immutable configuration shared by every engine."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    verification: VerificationConfig | None = None
    continuity: ContinuityConfig = Field(default_factory=ContinuityConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    optimization: OptimizationThresholds = Field(default_factory=OptimizationThresholds)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)


# ------------------------------------------------------------------------------
# Command policy
# ------------------------------------------------------------------------------


class ToolStatus(StrEnum):
    ALLOWED = "allowed"
    OBSERVE = "observe"
    DEPRECATED = "deprecated"
    DISABLED = "disabled"


class RuleList(StrEnum):
    """Policy rule lists, in the strict order they are evaluated."""

    DISABLED = "tools.deprecated.disabled"
    DEPRECATED = "tools.deprecated.deprecated"
    OBSERVE = "tools.deprecated.observe"
    FORBIDDEN = "tools.baseline.forbidden"


# ------------------------------------------------------------------------------
# Repository snapshot
# ------------------------------------------------------------------------------


class DocSignals(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    has_agents_md: bool = False
    agents_has_section_header: bool = False
    has_context_index: bool = False
    has_architecture_doc: bool = False
    readme_links_architecture: bool = False
    docs_age_days: int | None = None


class ToolSignals(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    tool_names: list[str] = Field(default_factory=list)
    risky_overlap_clusters: int = 0
    unrestricted_destructive: int = 0
    has_ambiguous_duplicates: bool = False


class ContinuitySignals(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    has_initializer_prompt: bool = False
    has_coding_prompt: bool = False
    has_progress_file: bool = False
    has_feature_state_file: bool = False
    has_progress_summary: bool = False


class QualitySignals(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    has_ci_workflow: bool = False
    has_tests: bool = False
    has_lint_config: bool = False


class RepoModel(BaseModel):
    """Immutable snapshot produced once per invocation by the scanner."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    root: str
    files: list[str] = Field(default_factory=list)
    docs: DocSignals = Field(default_factory=DocSignals)
    tools: ToolSignals = Field(default_factory=ToolSignals)
    continuity: ContinuitySignals = Field(default_factory=ContinuitySignals)
    quality: QualitySignals = Field(default_factory=QualitySignals)
    verification_commands: list[str] = Field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.files)


# ------------------------------------------------------------------------------
# Scores / findings
# ------------------------------------------------------------------------------


class Category(StrEnum):
    CONTEXT = "context"
    TOOLS = "tools"
    CONTINUITY = "continuity"
    VERIFICATION = "verification"
    REPOSITORY_QUALITY = "repository_quality"


CATEGORY_ORDER: tuple[Category, ...] = tuple(Category)


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    BLOCKING = "blocking"


class ScoreCard(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    context: float = Field(ge=0.0, le=1.0)
    tools: float = Field(ge=0.0, le=1.0)
    continuity: float = Field(ge=0.0, le=1.0)
    verification: float = Field(ge=0.0, le=1.0)
    repository_quality: float = Field(ge=0.0, le=1.0)
    overall: float

    def category(self, category: Category) -> float:
        return float(getattr(self, category.value))


class Finding(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    id: str
    category: Category
    title: str
    message: str
    severity: Severity
    file: str | None = None
    line: int | None = None

    @property
    def blocking(self) -> bool:
        return self.severity is Severity.BLOCKING


# ------------------------------------------------------------------------------
# Recommendations / plans
# ------------------------------------------------------------------------------


class Impact(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Effort(StrEnum):
    XS = "xs"
    S = "s"
    M = "m"
    L = "l"


class Risk(StrEnum):
    SAFE = "safe"
    MEDIUM = "medium"
    HIGH = "high"


IMPACT_RANK: dict[Impact, int] = {Impact.HIGH: 0, Impact.MEDIUM: 1, Impact.LOW: 2}
EFFORT_RANK: dict[Effort, int] = {Effort.XS: 0, Effort.S: 1, Effort.M: 2, Effort.L: 3}


class RiskBucket(StrEnum):
    SAFE = "safe"
    MEDIUM_RISK = "medium-risk"
    HIGH_RISK = "high-risk"


class OutcomeMetric(StrEnum):
    COMPLETION_RATE = "completion_rate"
    TOKEN_USAGE = "token_usage"
    STEP_COUNT = "step_count"


class EvidenceStatus(StrEnum):
    RULE_ONLY = "rule_only"
    EVIDENCE_BACKED = "evidence_backed"
    INSUFFICIENT_EVIDENCE = "insufficient_evidence"
    NOT_SIGNIFICANT = "not_significant"
    REGRESSION_WARNING = "regression_warning"


class PatchKind(StrEnum):
    CREATE_IF_MISSING = "create_if_missing"
    ENSURE_LINE = "ensure_line"
    DELETE = "delete"


class FilePatch(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    path: str
    kind: PatchKind
    content: str = ""


class Recommendation(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    id: str
    title: str
    summary: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    impact: Impact
    effort: Effort
    risk: Risk
    patches: list[FilePatch] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)
    metric: OutcomeMetric | None = None
    evidence: EvidenceStatus = EvidenceStatus.RULE_ONLY
    evidence_note: str | None = None

    @property
    def bucket(self) -> RiskBucket:
        if self.risk is Risk.SAFE:
            return RiskBucket.SAFE
        if self.risk is Risk.MEDIUM:
            return RiskBucket.MEDIUM_RISK
        return RiskBucket.HIGH_RISK

    @property
    def requires_confirmation(self) -> bool:
        return self.risk is Risk.HIGH


class HarnessReport(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    score_card: ScoreCard
    findings: list[Finding] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    config_present: bool = True

    @property
    def overall_score(self) -> float:
        return self.score_card.overall


class PlanArtifact(BaseModel):
    """On-disk plan; untrusted input when read back by the apply engine."""

    model_config = _CONTRACT_CONFIG
    version: str
    generated_at: str
    plan_id: str | None = None
    recommendations: list[str] = Field(default_factory=list)

    @field_validator("recommendations")
    @classmethod
    def _ids_non_empty(cls, values: list[str]) -> list[str]:
        if any(not v.strip() for v in values):
            raise ValueError("plan recommendation ids must be non-empty")
        return values


# ------------------------------------------------------------------------------
# Apply
# ------------------------------------------------------------------------------


class ApplyMode(StrEnum):
    PREVIEW = "preview"
    APPLY = "apply"


class ApplyStatus(StrEnum):
    PREVIEW = "preview"
    APPLIED = "applied"
    CANCELLED = "cancelled"
    NOOP = "noop"


class ChangeAction(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class PlanSelection(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    plan_file: str | None = None
    plan_all: bool = False


class ApplyFlags(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    allow_dirty: bool = False
    yes: bool = False


class PlannedChange(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    path: str
    action: ChangeAction
    content: str | None = None
    source: str


class ChangeScope(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    create: list[str] = Field(default_factory=list)
    modify: list[str] = Field(default_factory=list)
    delete: list[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.create) + len(self.modify) + len(self.delete)


class RollbackEntry(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    path: str
    action: ChangeAction
    content_hash_before: str | None = None


class RollbackManifest(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    timestamp: str
    harness_version: str
    plan_id: str | None = None
    files: list[RollbackEntry] = Field(default_factory=list)


class ApplyResult(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    mode: ApplyMode
    status: ApplyStatus
    scope: ChangeScope
    recommendation_ids: list[str] = Field(default_factory=list)
    manifest: RollbackManifest | None = None
    manifest_path: str | None = None
    written: list[str] = Field(default_factory=list)
    promoted_tools: list[str] = Field(default_factory=list)
    reason: str | None = None


# ------------------------------------------------------------------------------
# Traces
# ------------------------------------------------------------------------------


class TraceOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class TraceRecord(BaseModel):
    model_config = _EXTERNAL_RECORD_CONFIG
    timestamp: datetime
    task_id: str = Field(min_length=1)
    revision: str = Field(min_length=1)
    outcome: TraceOutcome
    steps: int | None = Field(default=None, ge=0)
    tool_calls: int | None = Field(default=None, ge=0)
    token_est: int | None = Field(default=None, ge=0)
    wall_ms: int | None = Field(default=None, ge=0)

    @field_validator("timestamp")
    @classmethod
    def _tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("trace timestamp must carry a timezone offset")
        return value


class TraceScanStats(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    recent: int = 0
    stale: int = 0
    malformed: int = 0


class RevisionMetrics(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    revision: str
    total: int
    completion_rate: float
    avg_steps: float
    avg_tokens: float
    tasks: list[str] = Field(default_factory=list)
    latest_ts: datetime


class TraceSummary(BaseModel):
    """Read-only aggregate handed to the recommendation engine."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    trace_dir: str | None = None
    stats: TraceScanStats = Field(default_factory=TraceScanStats)
    revisions: list[RevisionMetrics] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def compared_revisions(self) -> tuple[RevisionMetrics, RevisionMetrics] | None:
        if len(self.revisions) < 2:
            return None
        ordered = sorted(self.revisions, key=lambda r: (r.latest_ts, r.revision))
        return ordered[-2], ordered[-1]


class DeltaStatus(StrEnum):
    IMPROVEMENT = "improvement"
    REGRESSION = "regression"
    NEUTRAL = "neutral"
    INSUFFICIENT_DATA = "insufficient_data"


class OptimizeDelta(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    status: DeltaStatus
    baseline_revision: str | None = None
    current_revision: str | None = None
    completion_delta: float = 0.0
    token_delta_rel: float = 0.0
    step_delta_rel: float = 0.0
    task_overlap: float = 0.0
    reason: str | None = None


class MetricEvidence(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    metric: OutcomeMetric
    delta: float
    status: EvidenceStatus
    note: str


__all__ = [
    "ApplyFlags",
    "ApplyMode",
    "ApplyResult",
    "ApplyStatus",
    "CATEGORY_ORDER",
    "Category",
    "ChangeAction",
    "ChangeScope",
    "ContextConfig",
    "ContinuityConfig",
    "ContinuitySignals",
    "DeltaStatus",
    "DocSignals",
    "EFFORT_RANK",
    "Effort",
    "EvidenceStatus",
    "FilePatch",
    "Finding",
    "HarnessConfig",
    "HarnessReport",
    "IMPACT_RANK",
    "Impact",
    "LifecycleStage",
    "LogSampling",
    "MetricEvidence",
    "MetricWeights",
    "MetricsConfig",
    "OptimizationThresholds",
    "OptimizeDelta",
    "OutcomeMetric",
    "PatchKind",
    "PlanArtifact",
    "PlanSelection",
    "PlannedChange",
    "ProjectConfig",
    "QualitySignals",
    "Recommendation",
    "RepoModel",
    "RevisionMetrics",
    "Risk",
    "RiskBucket",
    "RollbackEntry",
    "RollbackManifest",
    "RuleList",
    "SUPPORTED_PROFILES",
    "ScoreCard",
    "Severity",
    "ToolBaseline",
    "ToolLifecycle",
    "ToolSignals",
    "ToolSpecialized",
    "ToolStatus",
    "ToolsConfig",
    "TraceOutcome",
    "TraceRecord",
    "TraceScanStats",
    "TraceSummary",
    "VerificationConfig",
    "WorkflowConfig",
]
