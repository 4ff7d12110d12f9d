"""Plain-text output for the policy-engine CLI."""

from __future__ import annotations

import sys
from collections.abc import Sequence
from typing import TextIO


class CLIRenderer:
    """Line-oriented renderer; ``--json`` output bypasses it.

    Writes to ``stream`` or, when none is given, to whatever ``sys.stdout`` is
    at call time.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def text(self, line: str) -> None:
        (self._stream or sys.stdout).write(f"{line}\n")

    def kv(self, key: str, value: object) -> None:
        self.text(f"{key}: {value}")

    def section(self, title: str) -> None:
        self.text(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self.text(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns under a dashed rule; prints nothing for zero rows."""

        if not rows:
            return
        grid = [list(headers), *([str(cell) for cell in row] for row in rows)]
        widths = [
            max(len(line[i]) for line in grid if i < len(line)) for i in range(len(headers))
        ]
        if title:
            self.section(title)
        rule = ["-" * width for width in widths]
        for line in (grid[0], rule, *grid[1:]):
            cells = (line[i] if i < len(line) else "" for i in range(len(widths)))
            self.text("  " + "  ".join(cell.ljust(w) for cell, w in zip(cells, widths)))


__all__ = ["CLIRenderer"]
