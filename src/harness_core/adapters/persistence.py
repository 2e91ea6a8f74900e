# harness_core/adapters/persistence.py
from __future__ import annotations

import json
import os
import stat
import tempfile
from pathlib import Path
from typing import Any, Iterable, List, Tuple, Union

from pydantic import BaseModel, ValidationError

from harness_core.contracts import PlanArtifact, RollbackManifest
from harness_core.errors import PlanInvalid, RollbackWriteFailed

PathLike = Union[str, Path]

PLANS_DIR = Path(".harness/plans")
ROLLBACK_DIR = Path(".harness/rollback")
OPTIMIZE_DIR = Path(".harness/optimize")


def _to_jsonable(x: Any) -> Any:
    if x is None:
        return None
    if isinstance(x, BaseModel):
        return x.model_dump(mode="json", by_alias=True)
    if isinstance(x, dict):
        return {str(k): _to_jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_to_jsonable(v) for v in x]
    return x


def dumps_pretty(obj: Any) -> str:
    return json.dumps(_to_jsonable(obj), indent=2, ensure_ascii=False) + "\n"


def _temp_sibling(target: Path) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    os.close(fd)
    return Path(tmp)


def _target_mode(target: Path) -> int:
    """Mode the replaced file must end up with: the existing one, or what a plain ``open`` would create."""
    try:
        return stat.S_IMODE(target.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _write_temp(tmp: Path, target: Path, text: str) -> None:
    # mkstemp creates 0600 files; os.replace would carry that onto the target
    tmp.write_text(text, encoding="utf-8")
    os.chmod(tmp, _target_mode(target))


def write_text_atomic(path: PathLike, text: str) -> Path:
    """Write through a sibling temp file and ``os.replace`` so readers never see a partial file."""
    target = Path(path)
    tmp = _temp_sibling(target)
    try:
        _write_temp(tmp, target, text)
        os.replace(tmp, target)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    return target


def write_json_atomic(path: PathLike, obj: Any) -> Path:
    return write_text_atomic(path, dumps_pretty(obj))


# ------------------------------------------------------------------------------
# Staged multi-file writes
# ------------------------------------------------------------------------------


def stage_files(contents: Iterable[Tuple[Path, str]]) -> List[Tuple[Path, Path]]:
    """
    Write every payload to a temp file next to its target.
    Returns (tmp, target) pairs; on any failure all temps are removed and the error propagates.
    """
    staged: List[Tuple[Path, Path]] = []
    try:
        for target, text in contents:
            tmp = _temp_sibling(target)
            staged.append((tmp, target))
            _write_temp(tmp, target, text)
    except OSError:
        discard_staged(staged)
        raise
    return staged


def commit_staged(staged: Iterable[Tuple[Path, Path]]) -> List[Path]:
    written: List[Path] = []
    for tmp, target in staged:
        os.replace(tmp, target)
        written.append(target)
    return written


def discard_staged(staged: Iterable[Tuple[Path, Path]]) -> None:
    for tmp, _ in staged:
        tmp.unlink(missing_ok=True)


# ------------------------------------------------------------------------------
# Plan artifacts / rollback manifests
# ------------------------------------------------------------------------------


def write_plan(root: Path, plan: PlanArtifact, *, stamp: str) -> Path:
    return write_json_atomic(root / PLANS_DIR / f"plan-{stamp}.json", plan)


def read_plan(path: Path) -> PlanArtifact:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise PlanInvalid(f"plan file unreadable: {path} ({exc.strerror or exc})") from exc
    try:
        raw = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PlanInvalid(f"plan file unparsable: {path} (not valid UTF-8: {exc.reason})") from exc
    try:
        return PlanArtifact.model_validate_json(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "plan"
        raise PlanInvalid(f"plan file unparsable: {path} ({loc}: {first['msg']})") from exc


def write_rollback_manifest(root: Path, manifest: RollbackManifest, *, stamp: str) -> Path:
    target = root / ROLLBACK_DIR / f"{stamp}.json"
    try:
        return write_json_atomic(target, manifest)
    except OSError as exc:
        raise RollbackWriteFailed(f"rollback manifest write failed: {exc.strerror or exc}") from exc
