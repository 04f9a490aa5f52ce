"""Name-leak detection: a reply that starts speaking as someone else.

A line of the form "Name: ..." where Name belongs to another participant or
the user means the model has started writing their turn. Everything from
that line on is cut.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

SPEAKER_PREFIX_RE = re.compile(r"^\s*(.{1,50}?):\s")


def _normalise(names: Iterable[str]) -> set[str]:
    return {n.strip() for n in names if n.strip()}


def leaked_name(line: str, names: set[str]) -> str | None:
    m = SPEAKER_PREFIX_RE.match(line)
    if m and m.group(1).strip() in names:
        return m.group(1).strip()
    return None


def trim_name_leak(text: str, names: Iterable[str]) -> str:
    """`text` up to (not including) the first line that leaks a name."""
    wanted = _normalise(names)
    lines = text.split("\n")
    for i, line in enumerate(lines):
        if leaked_name(line, wanted):
            return "\n".join(lines[:i])
    return text


class NameLeakDetector:
    """Incremental version of `trim_name_leak` for streamed text.

    `check` is called with the whole text generated so far. Completed lines
    that passed are not scanned again; the unfinished last line is re-checked
    on every call because the ": " may not have arrived yet.
    """

    def __init__(self, names: Iterable[str]) -> None:
        self.names = _normalise(names)
        self._line_start = 0

    def check(self, text: str) -> str | None:
        """Trimmed text if a leak was found, else None."""
        start = self._line_start
        while True:
            end = text.find("\n", start)
            line = text[start:] if end == -1 else text[start:end]
            if leaked_name(line, self.names):
                return text[:max(start - 1, 0)]
            if end == -1:
                self._line_start = start
                return None
            start = end + 1

    def undecided(self, text: str) -> bool:
        """True while the first line of `text` could still grow into "Name: "."""
        if "\n" in text:
            return False
        head = text.lstrip()
        if head.endswith(":"):
            return head[:-1].strip() in self.names
        head = head.rstrip()
        return any(name.startswith(head) for name in self.names)
