"""Config loading: global -> repo -> local TOML layers merged into one ``HarnessConfig``."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from harness_core._compat import tomllib
from harness_core.contracts import HarnessConfig
from harness_core.errors import ConfigInvalid
from harness_core.logging_config import get_logger

logger = get_logger(__name__)

REPO_CONFIG = Path("harness.toml")
LOCAL_CONFIG = Path(".harness/local.toml")


def global_config_path() -> Path:
    return Path.home() / ".config" / "harness" / "config.toml"


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigInvalid(f"config parse error: {path}: {exc}") from exc


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Tables merge recursively; every other value in ``override`` replaces the base value."""
    out: Dict[str, Any] = dict(base)
    for key, value in override.items():
        current = out.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            out[key] = deep_merge(current, value)
        else:
            out[key] = value
    return out


def format_validation_error(exc: ValidationError) -> str:
    parts: List[str] = []
    for err in exc.errors():
        msg = str(err.get("msg", "invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(msg if not loc or msg.startswith(loc) else f"{loc}: {msg}")
    return "; ".join(parts)


def validate_config(raw: Mapping[str, Any]) -> HarnessConfig:
    try:
        return HarnessConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigInvalid(format_validation_error(exc)) from exc


def load_config(root: Path, *, global_path: Optional[Path] = None) -> Optional[HarnessConfig]:
    """
    Returns None when the repository has no ``harness.toml``; engines then use defaults.
    Raises ConfigInvalid for malformed TOML or any failed validation rule.
    """
    repo_path = root / REPO_CONFIG
    if not repo_path.is_file():
        logger.info("no repository config found", extra={"path": str(repo_path)})
        return None

    merged: Dict[str, Any] = {}
    layers = [global_path if global_path is not None else global_config_path(), repo_path, root / LOCAL_CONFIG]
    for layer in layers:
        if layer.is_file():
            merged = deep_merge(merged, _read_toml(layer))
            logger.debug("config layer merged", extra={"path": str(layer)})
    return validate_config(merged)


# ------------------------------------------------------------------------------
# Lifecycle promotion rewrite
# ------------------------------------------------------------------------------

_TABLE_HEADER = re.compile(r"^\s*\[\s*tools\s*\.\s*baseline\s*\]\s*(#.*)?$")
_ANY_HEADER = re.compile(r"^\s*\[")
_FORBIDDEN_KEY = re.compile(r"^\s*forbidden\s*=")


def _toml_array(values: List[str]) -> str:
    return "[" + ", ".join(json.dumps(v, ensure_ascii=False) for v in values) + "]"


def _array_end(text: str, start: int) -> int:
    """Index just past the ``]`` closing the array that opens at or after ``start``."""
    depth = 0
    i = start
    quote: Optional[str] = None
    while i < len(text):
        ch = text[i]
        if quote is not None:
            if ch == "\\" and quote == '"':
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch == "#":
            nl = text.find("\n", i)
            i = len(text) if nl == -1 else nl
            continue
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise ConfigInvalid("config parse error: unterminated tools.baseline.forbidden array")


def rewrite_forbidden(text: str, forbidden: List[str]) -> str:
    """
    Return ``text`` with ``[tools.baseline] forbidden`` set to ``forbidden``.
    Only that entry changes; the result is re-parsed and refused if it does not say exactly that.
    """
    lines = text.splitlines(keepends=True)
    offsets = [0]
    for line in lines:
        offsets.append(offsets[-1] + len(line))

    header_idx = next((i for i, line in enumerate(lines) if _TABLE_HEADER.match(line)), None)
    rendered = f"forbidden = {_toml_array(forbidden)}\n"

    if header_idx is None:
        sep = "" if not text or text.endswith("\n") else "\n"
        updated = f"{text}{sep}\n[tools.baseline]\n{rendered}"
    else:
        key_idx = None
        for i in range(header_idx + 1, len(lines)):
            if _ANY_HEADER.match(lines[i]):
                break
            if _FORBIDDEN_KEY.match(lines[i]):
                key_idx = i
                break
        if key_idx is None:
            insert_at = offsets[header_idx + 1]
            if insert_at == len(text) and text and not text.endswith("\n"):
                rendered = "\n" + rendered
            updated = text[:insert_at] + rendered + text[insert_at:]
        else:
            start = offsets[key_idx]
            end = _array_end(text, text.index("=", start) + 1)
            nl = text.find("\n", end)
            tail_start = len(text) if nl == -1 else nl + 1
            trailing = text[end:tail_start].rstrip("\n")
            keep_comment = trailing.strip() if trailing.strip().startswith("#") else ""
            replacement = rendered if not keep_comment else rendered[:-1] + "  " + keep_comment + "\n"
            updated = text[:start] + replacement + text[tail_start:]

    try:
        parsed = tomllib.loads(updated)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigInvalid(f"config parse error: promotion rewrite produced invalid TOML: {exc}") from exc
    actual = parsed.get("tools", {}).get("baseline", {}).get("forbidden")
    if actual != forbidden:
        raise ConfigInvalid("config parse error: promotion rewrite could not set tools.baseline.forbidden")
    return updated


def repo_forbidden(text: str) -> List[str]:
    """The forbidden list as written in the repository file alone (no merged layers)."""
    try:
        parsed = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigInvalid(f"config parse error: {REPO_CONFIG}: {exc}") from exc
    return list(parsed.get("tools", {}).get("baseline", {}).get("forbidden", []))


# ------------------------------------------------------------------------------
# init templates
# ------------------------------------------------------------------------------

_BASE_TEMPLATE = """\
[project]
name = "{name}"
profile = "{profile}"
main_branch = "main"

[context]
agents_map = "AGENTS.md"
context_index = "docs/context/INDEX.md"

[tools.baseline]
read = ["cat", "ls", "rg", "fd", "git"]
write = ["apply_patch"]
forbidden = ["git push --force", "git reset --hard", "rm -rf"]

[verification]
required = ["make test"]
pre_completion_required = true
loop_guard_enabled = true

[metrics]
max_risk_tolerance = 0.35
max_penalty_per_bucket = 0.40
"""

_AGENT_EXTRA = """
[tools.deprecated]
observe = ["grep", "find"]

[continuity]
log_sampling = "milestones"

[optimization]
min_traces = 20
trace_staleness_days = 90
"""


def render_init_config(profile: str, name: str = "harness-project") -> str:
    text = _BASE_TEMPLATE.format(name=name, profile=profile)
    if profile == "agent":
        text += _AGENT_EXTRA
    # Never emit a template the loader would refuse.
    validate_config(tomllib.loads(text))
    return text
