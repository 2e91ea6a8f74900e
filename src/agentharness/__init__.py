"""
agent-harness distribution import namespace.

Re-exports the public surface of `harness_core`.
"""

from importlib.metadata import PackageNotFoundError, version

# src/agentharness/__init__.py
from harness_core import *  # noqa: F401,F403
from harness_core import __all__ as _core_all

try:
    from harness_core._version import __version__  # canonical
except ImportError:  # pragma: no cover - fallback for editable/local non-built environments
    try:
        __version__ = version("agent-harness")
    except PackageNotFoundError:
        __version__ = "0+unknown"

__all__ = list(_core_all)
