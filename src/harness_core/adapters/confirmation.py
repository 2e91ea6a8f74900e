from __future__ import annotations

import sys
from typing import Callable, Protocol, TextIO

PROMPT = "Apply these changes? [y/N]: "


class ConfirmationProvider(Protocol):
    """Capability the apply engine consults at its confirmation gate."""

    interactive: bool

    def confirm(self, prompt: str) -> bool:
        """Return True only on an explicit affirmative answer."""
        ...


def is_affirmative(answer: str) -> bool:
    return answer.strip().lower() in {"y", "yes"}


class InteractiveConfirmation:
    interactive = True

    def __init__(
        self,
        reader: Callable[[], str] | None = None,
        out: TextIO | None = None,
    ) -> None:
        self._reader = reader or sys.stdin.readline
        self._out = out or sys.stdout

    def confirm(self, prompt: str) -> bool:
        self._out.write(prompt)
        self._out.flush()
        return is_affirmative(self._reader())


class NonInteractiveConfirmation:
    """Answers with the ``--yes`` flag; a script can never confirm by itself otherwise."""

    interactive = False

    def __init__(self, assume_yes: bool) -> None:
        self.assume_yes = assume_yes

    def confirm(self, prompt: str) -> bool:
        return self.assume_yes
