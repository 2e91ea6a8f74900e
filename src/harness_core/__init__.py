"""
Harness core: repository scoring, command policy, ranked remediation and the
transactional apply engine.
"""

from harness_core._version import __version__
from harness_core.apply import apply
from harness_core.config import load_config
from harness_core.policy import classify, evaluate, validate
from harness_core.recommend import export_plan, plan, plan_with_evidence, sort_recommendations
from harness_core.scoring import analyze, score

__all__ = [
    "__version__",
    "analyze",
    "apply",
    "classify",
    "evaluate",
    "export_plan",
    "load_config",
    "plan",
    "plan_with_evidence",
    "score",
    "sort_recommendations",
    "validate",
]
