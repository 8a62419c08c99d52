from __future__ import annotations

import sys
from typing import TextIO


class Progress:
    """Human-readable progress lines, one per create/remove action."""

    def __init__(self, stream: TextIO | None = None, enabled: bool = True):
        self.stream = stream
        self.enabled = enabled
        self.lines: list[str] = []

    def line(self, text: str) -> None:
        self.lines.append(text)
        if self.enabled:
            print(text, file=self.stream or sys.stdout, flush=True)

    def action(self, text: str, result: str) -> None:
        self.line(f"{text} ... {result}")
