# tests/test_scoring.py
from __future__ import annotations

from collections.abc import Callable

import pytest

from harness_core.contracts import Category, HarnessConfig, RepoModel, Severity
from harness_core.errors import EXIT_BLOCKING, EXIT_SUCCESS, EXIT_WARNINGS, BucketPenaltyExceeded
from harness_core.scoring import ScoreAccumulator, analyze, exit_code_for, score


def _ids(findings: list) -> list[str]:
    return [f.id for f in findings]


def test_empty_repository_scores_every_category_at_its_base(make_model: Callable[..., RepoModel]) -> None:
    card, findings = score(make_model(), None)

    assert card.context == 0.0
    assert card.tools == 1.0
    assert card.continuity == 0.0
    assert card.verification == 0.0
    assert card.repository_quality == 0.0
    assert card.overall == pytest.approx(0.25)
    assert not any(f.blocking for f in findings)
    assert exit_code_for(findings) == EXIT_SUCCESS


def test_findings_come_out_in_category_then_rule_order(make_model: Callable[..., RepoModel]) -> None:
    model = make_model(docs={"docs_age_days": 400}, tools={"tool_names": ["grep", "rg"], "risky_overlap_clusters": 1})
    _, findings = score(model, None)

    assert _ids(findings) == [
        "context.missing_agents",
        "context.missing_index",
        "context.stale_docs",
        "tools.overlap",
        "verification.missing_config",
    ]
    assert [f.severity for f in findings] == [
        Severity.INFO,
        Severity.INFO,
        Severity.WARNING,
        Severity.WARNING,
        Severity.INFO,
    ]
    assert exit_code_for(findings) == EXIT_WARNINGS


def test_score_is_deterministic(make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]) -> None:
    model = make_model(docs={"has_agents_md": True, "docs_age_days": 10}, quality={"has_tests": True})
    config = make_config(tools={"deprecated": {"observe": ["grep"]}})

    first = score(model, config)
    second = score(model, config)

    assert first[0].model_dump_json() == second[0].model_dump_json()
    assert [f.model_dump_json() for f in first[1]] == [f.model_dump_json() for f in second[1]]


def test_context_bonuses_reach_one(make_model: Callable[..., RepoModel]) -> None:
    model = make_model(
        docs={
            "has_agents_md": True,
            "agents_has_section_header": True,
            "has_context_index": True,
            "has_architecture_doc": True,
            "readme_links_architecture": True,
            "docs_age_days": 3,
        }
    )
    card, findings = score(model, None)
    assert card.context == pytest.approx(1.0)
    assert "context.missing_agents" not in _ids(findings)


def test_stale_docs_lose_freshness_and_take_a_penalty(make_model: Callable[..., RepoModel]) -> None:
    model = make_model(docs={"has_agents_md": True, "agents_has_section_header": True, "docs_age_days": 200})
    card, _ = score(model, None)
    assert card.context == pytest.approx(0.35 - 0.15)


def test_penalty_bucket_is_capped(make_model: Callable[..., RepoModel]) -> None:
    model = make_model(tools={"tool_names": ["rg"], "risky_overlap_clusters": 20})
    card, _ = score(model, None)
    assert card.tools == pytest.approx(0.60)


def test_custom_bucket_cap_is_honoured(
    make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]
) -> None:
    model = make_model(tools={"tool_names": ["rg"], "unrestricted_destructive": 3})
    config = make_config(metrics={"max_penalty_per_bucket": 0.25})
    card, findings = score(model, config)
    assert card.tools == pytest.approx(0.75)
    assert "tools.destructive_exposed" in _ids(findings)


def test_category_scores_are_clamped_at_zero(make_model: Callable[..., RepoModel]) -> None:
    names = [f"tool{i}" for i in range(12)] + ["tool0"]
    model = make_model(
        tools={
            "tool_names": names,
            "has_ambiguous_duplicates": True,
            "risky_overlap_clusters": 10,
            "unrestricted_destructive": 5,
        }
    )
    card, _ = score(model, None)
    assert card.tools == 0.0
    assert 0.0 <= card.overall <= 1.0


def test_accumulator_never_subtracts_more_than_the_cap() -> None:
    acc = ScoreAccumulator(Category.TOOLS, 1.0, 0.40)
    for _ in range(10):
        acc.penalty("tools.overlap", 0.2)
    acc.penalty("tools.other", 0.1)

    assert acc.capped_penalties() == {"tools.overlap": 0.40, "tools.other": 0.1}
    assert acc.finalize() == pytest.approx(0.5)


def test_penalty_beyond_the_bucket_caps_is_an_internal_error(monkeypatch: pytest.MonkeyPatch) -> None:
    acc = ScoreAccumulator(Category.TOOLS, 1.0, 0.40)
    acc.penalty("tools.overlap", 0.2)
    monkeypatch.setattr(acc, "capped_penalties", lambda: {"tools.overlap": 0.9})

    with pytest.raises(BucketPenaltyExceeded, match="category tools penalty exceeded bucket caps"):
        acc.finalize()



def test_full_verification_policy_scores_one(
    make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]
) -> None:
    config = make_config(
        verification={"required": ["make test"], "pre_completion_required": True, "loop_guard_enabled": True}
    )
    card, findings = score(make_model(), config)
    assert card.verification == pytest.approx(1.0)
    assert not [f for f in findings if f.category is Category.VERIFICATION]


def test_config_without_verification_is_blocking(
    make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]
) -> None:
    _, findings = score(make_model(), make_config())
    assert "verification.incomplete" in _ids(findings)
    assert exit_code_for(findings) == EXIT_BLOCKING


def test_deprecated_tool_is_a_blocking_lint_finding(
    make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]
) -> None:
    config = make_config(
        tools={"deprecated": {"deprecated": ["grep"]}},
        verification={"required": ["make test"], "pre_completion_required": True},
    )
    _, findings = score(make_model(), config)

    deprecated = [f for f in findings if f.id == "tools.deprecated"]
    assert len(deprecated) == 1
    assert "grep" in deprecated[0].message
    assert exit_code_for(findings) == EXIT_BLOCKING


def test_observe_stage_is_only_a_warning(
    make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]
) -> None:
    config = make_config(
        tools={"deprecated": {"observe": ["grep"]}},
        verification={"required": ["make test"], "pre_completion_required": True, "loop_guard_enabled": True},
    )
    _, findings = score(make_model(docs={"has_agents_md": True, "has_context_index": True}), config)
    assert _ids(findings) == ["tools.observe"]
    assert exit_code_for(findings) == EXIT_WARNINGS


def test_weights_change_overall_only(
    make_model: Callable[..., RepoModel], make_config: Callable[..., HarnessConfig]
) -> None:
    config = make_config(
        metrics={
            "weights": {
                "context": 0.0,
                "tools": 1.0,
                "continuity": 0.0,
                "verification": 0.0,
                "repository_quality": 0.0,
            }
        }
    )
    card, _ = score(make_model(), config)
    assert card.tools == 1.0
    assert card.overall == pytest.approx(1.0)


def test_analyze_attaches_ranked_recommendations(make_model: Callable[..., RepoModel]) -> None:
    report = analyze(make_model(), None)

    assert [r.id for r in report.recommendations] == [
        "rec.context.index",
        "rec.verification.gate",
        "rec.continuity.scaffold",
        "rec.repo.scale",
        "rec.quality.baseline",
    ]
    assert report.config_present is False
    assert report.overall_score == report.score_card.overall
