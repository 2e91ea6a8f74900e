# harness_core/policy.py
"""
Command policy and guardrails.

Every decision is traceable to one rule: a command is normalised, its base token
is expanded through the alias map (one hop), and the expanded command is tested
against an ordered rule list. The first matching rule wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from harness_core.contracts import (
    Category,
    Finding,
    HarnessConfig,
    LifecycleStage,
    RuleList,
    Severity,
    ToolStatus,
)
from harness_core.errors import ForbiddenToolAccess, LoopGuardTriggered
from harness_core.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_FORBIDDEN: tuple[str, ...] = (
    "git push --force",
    "git reset --hard",
    "rm -rf",
    "sudo rm -rf",
)
DEFAULT_LOOP_GUARD_EDITS = 25
CONFIG_FILE = "harness.toml"

_STATUS_FOR_LIST = {
    RuleList.DISABLED: ToolStatus.DISABLED,
    RuleList.DEPRECATED: ToolStatus.DEPRECATED,
    RuleList.OBSERVE: ToolStatus.OBSERVE,
    # baseline-forbidden and disabled are the same outcome for guardrail purposes
    RuleList.FORBIDDEN: ToolStatus.DISABLED,
}


@dataclass(frozen=True)
class PolicyRule:
    rule_list: RuleList
    pattern: str

    @property
    def status(self) -> ToolStatus:
        return _STATUS_FOR_LIST[self.rule_list]


@dataclass(frozen=True)
class PolicyDecision:
    command: str
    expanded: str
    status: ToolStatus
    rule: Optional[PolicyRule] = None

    @property
    def blocked(self) -> bool:
        return self.status is ToolStatus.DISABLED


def normalize(command: str) -> str:
    return " ".join(command.split())


def expand_alias(command: str, aliases: dict[str, str]) -> str:
    """Single, non-transitive hop on the base token."""
    tokens = normalize(command).split(" ")
    if not tokens or not tokens[0]:
        return ""
    target = aliases.get(tokens[0])
    if target is None:
        return " ".join(tokens)
    return normalize(" ".join([target, *tokens[1:]]))


def _matches(command_tokens: Sequence[str], rule_tokens: Sequence[str]) -> bool:
    if not command_tokens or not rule_tokens or len(command_tokens) < len(rule_tokens):
        return False
    return all(a == b for a, b in zip(command_tokens, rule_tokens))


def rule_list(config: Optional[HarnessConfig]) -> List[PolicyRule]:
    """Ordered: disabled, deprecated, observe, then baseline forbidden (built-ins last)."""
    rules: List[PolicyRule] = []
    if config is not None:
        lifecycle = config.tools.lifecycle
        rules.extend(PolicyRule(RuleList.DISABLED, p) for p in lifecycle.disabled)
        rules.extend(PolicyRule(RuleList.DEPRECATED, p) for p in lifecycle.deprecated)
        rules.extend(PolicyRule(RuleList.OBSERVE, p) for p in lifecycle.observe)
        rules.extend(PolicyRule(RuleList.FORBIDDEN, p) for p in config.tools.baseline.forbidden)
    configured = {normalize(r.pattern) for r in rules if r.rule_list is RuleList.FORBIDDEN}
    rules.extend(PolicyRule(RuleList.FORBIDDEN, p) for p in DEFAULT_FORBIDDEN if p not in configured)
    return rules


def evaluate(command: str, config: Optional[HarnessConfig]) -> PolicyDecision:
    aliases = config.tools.aliases if config is not None else {}
    normalized = normalize(command)
    expanded = expand_alias(normalized, aliases)
    tokens = expanded.split(" ") if expanded else []
    for rule in rule_list(config):
        if _matches(tokens, normalize(rule.pattern).split(" ")):
            logger.debug(
                "policy rule matched",
                extra={"command": normalized, "expanded": expanded, "rule_list": rule.rule_list.value, "rule": rule.pattern},
            )
            return PolicyDecision(command=normalized, expanded=expanded, status=rule.status, rule=rule)
    return PolicyDecision(command=normalized, expanded=expanded, status=ToolStatus.ALLOWED)


def classify(command: str, config: Optional[HarnessConfig]) -> ToolStatus:
    return evaluate(command, config).status


# ------------------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------------------

_STAGE_FINDINGS = {
    LifecycleStage.OBSERVE: (
        "tools.observe",
        "Observed tools scheduled for deprecation",
        "Observed tools are still allowed but tracked: {names}.",
        Severity.WARNING,
    ),
    LifecycleStage.DEPRECATED: (
        "tools.deprecated",
        "Deprecated tools still enabled",
        "Deprecated tools should be migrated off active workflows: {names}.",
        Severity.BLOCKING,
    ),
    LifecycleStage.DISABLED: (
        "tools.disabled",
        "Disabled tools are configured",
        "Disabled tools are forbidden on apply and must not be used: {names}.",
        Severity.BLOCKING,
    ),
}


def lifecycle_findings(config: Optional[HarnessConfig]) -> List[Finding]:
    if config is None:
        return []
    findings: List[Finding] = []
    for stage in LifecycleStage:
        names = config.tools.lifecycle.stage(stage)
        if not names:
            continue
        finding_id, title, body, severity = _STAGE_FINDINGS[stage]
        findings.append(
            Finding(
                id=finding_id,
                category=Category.TOOLS,
                title=title,
                message=body.format(names=", ".join(names)),
                severity=severity,
                file=CONFIG_FILE,
            )
        )
    return findings


def forbidden_declared_findings(config: Optional[HarnessConfig]) -> List[Finding]:
    """A declared read/write tool that the policy itself would refuse."""
    if config is None:
        return []
    declared = [*config.tools.baseline.read, *config.tools.baseline.write, *config.tools.specialized.extra]
    blocked = [name for name in declared if classify(name, config) is ToolStatus.DISABLED]
    if not blocked:
        return []
    return [
        Finding(
            id="tools.forbidden_declared",
            category=Category.TOOLS,
            title="Forbidden tools declared in baseline",
            message=f"Declared tools classify as disabled and cannot be used: {', '.join(blocked)}.",
            severity=Severity.BLOCKING,
            file=CONFIG_FILE,
        )
    ]


def promotion_candidates(config: Optional[HarnessConfig]) -> List[str]:
    """Disabled tools not yet in the baseline forbidden list, in configuration order."""
    if config is None:
        return []
    forbidden = {normalize(p) for p in config.tools.baseline.forbidden}
    out: List[str] = []
    for name in config.tools.lifecycle.disabled:
        key = normalize(name)
        if key not in forbidden and name not in out:
            out.append(name)
    return out


def promote_disabled(config: HarnessConfig) -> HarnessConfig:
    """The configuration as it reads after promotion; disabled entries stay where they are."""
    candidates = promotion_candidates(config)
    if not candidates:
        return config
    baseline = config.tools.baseline.model_copy(
        update={"forbidden": [*config.tools.baseline.forbidden, *candidates]}
    )
    tools = config.tools.model_copy(update={"baseline": baseline})
    return config.model_copy(update={"tools": tools})


# ------------------------------------------------------------------------------
# Guardrail
# ------------------------------------------------------------------------------


def loop_guard_threshold(config: Optional[HarnessConfig]) -> int:
    if config is None:
        return DEFAULT_LOOP_GUARD_EDITS
    return config.workflow.max_planned_edits


def detect_loop(planned_edits: int, threshold: int = DEFAULT_LOOP_GUARD_EDITS) -> bool:
    return planned_edits >= threshold


def validate(commands: Iterable[str], planned_edits: int, config: Optional[HarnessConfig]) -> None:
    """Raise for the first blocked command, then for a runaway planned edit count."""
    for command in commands:
        decision = evaluate(command, config)
        if decision.blocked:
            rule = decision.rule
            raise ForbiddenToolAccess(
                decision.command,
                details={
                    "expanded": decision.expanded,
                    "rule_list": rule.rule_list.value if rule else None,
                    "rule": rule.pattern if rule else None,
                },
            )
        if decision.status is ToolStatus.DEPRECATED:
            logger.warning("deprecated tool used", extra={"command": decision.command})

    threshold = loop_guard_threshold(config)
    if detect_loop(planned_edits, threshold):
        raise LoopGuardTriggered(
            f"loop guard triggered: planned change count {planned_edits} reaches threshold {threshold}",
            details={"planned_edits": planned_edits, "threshold": threshold},
        )
