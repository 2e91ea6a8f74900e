# tests/test_package_surface.py
from __future__ import annotations

import agentharness
import harness_core


def test_distribution_namespace_reexports_core() -> None:
    assert agentharness.__version__ == harness_core.__version__
    for name in harness_core.__all__:
        assert getattr(agentharness, name) is getattr(harness_core, name)


def test_version_is_semver_like() -> None:
    major, minor, *_ = harness_core.__version__.split(".")
    assert major.isdigit() and minor.isdigit()
