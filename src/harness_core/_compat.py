from __future__ import annotations

import sys
from datetime import datetime, timezone
from enum import Enum

from typing_extensions import Self

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover - exercised on 3.10 only
    import tomli as tomllib

UTC = timezone.utc


class StrEnum(str, Enum):  # noqa: UP042
    """Python 3.10-compatible StrEnum."""

    def __str__(self) -> str:
        return str(self.value)


def utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = ["Self", "UTC", "StrEnum", "tomllib", "utc_now"]
