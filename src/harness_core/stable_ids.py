# harness_core/stable_ids.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable, Optional


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _canon(obj: Any) -> str:
    """
    Canonical JSON string (stable across runs) for hashing.
    """
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def content_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path) -> Optional[str]:
    """Hash of the file's current bytes, or None when it does not exist."""
    if not path.is_file():
        return None
    return content_sha256(path.read_bytes())


def derive_plan_id(recommendation_ids: Iterable[str]) -> str:
    """
    Deterministic plan identity over the ordered recommendation ids.
    Two exports of the same ranked plan always share a plan id.
    """
    return "plan_" + _sha256_hex(_canon({"recommendations": list(recommendation_ids)}))[:16]


def derive_finding_fingerprint(finding_id: str, file: Optional[str], line: Optional[int]) -> str:
    # Used as SARIF partialFingerprints so re-runs de-duplicate in code scanning.
    return _sha256_hex(_canon({"id": finding_id, "file": file or "", "line": line}))
