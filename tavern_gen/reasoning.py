"""Streaming separation of reasoning ("thinking") text from visible text.

A reasoning template is a prefix/suffix marker pair, e.g. "<think>" and
"</think>". The parser is a three-state machine:

    SEARCHING_PREFIX  text is visible until the prefix appears
    IN_REASONING      text is reasoning until the suffix appears
    DONE              everything else is visible

Markers may be split across chunk boundaries, so a tail of the buffer that
could still grow into the marker being searched for is held back until the
next chunk (or the final flush) decides it.
"""

from __future__ import annotations

from enum import Enum

from tavern_gen.models import ReasoningTemplate


class ParserState(str, Enum):
    SEARCHING_PREFIX = "searching_prefix"
    IN_REASONING = "in_reasoning"
    DONE = "done"


def _partial_marker_len(text: str, marker: str) -> int:
    """Length of the longest suffix of `text` that is a proper prefix of `marker`."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class ReasoningParser:
    def __init__(self, template: ReasoningTemplate) -> None:
        self.prefix = template.prefix
        self.suffix = template.suffix
        self.state = ParserState.SEARCHING_PREFIX
        self._buffer = ""

    def feed(self, text: str) -> tuple[str, str]:
        """Consume a chunk; returns (visible, reasoning) text decided so far."""
        self._buffer += text
        visible: list[str] = []
        reasoning: list[str] = []

        while self._buffer:
            if self.state is ParserState.DONE:
                visible.append(self._buffer)
                self._buffer = ""
                break

            searching = self.state is ParserState.SEARCHING_PREFIX
            marker = self.prefix if searching else self.suffix
            out = visible if searching else reasoning

            idx = self._buffer.find(marker)
            if idx != -1:
                out.append(self._buffer[:idx])
                self._buffer = self._buffer[idx + len(marker):]
                self.state = ParserState.IN_REASONING if searching else ParserState.DONE
                continue

            keep = _partial_marker_len(self._buffer, marker)
            out.append(self._buffer[:len(self._buffer) - keep])
            self._buffer = self._buffer[len(self._buffer) - keep:]
            break

        return "".join(visible), "".join(reasoning)

    def flush(self) -> tuple[str, str]:
        """Release whatever is still held back, according to the current state."""
        rest, self._buffer = self._buffer, ""
        if self.state is ParserState.IN_REASONING:
            return "", rest
        return rest, ""


def split_reasoning(text: str, template: ReasoningTemplate) -> tuple[str, str]:
    """One-shot split of a complete (non-streamed) reply."""
    parser = ReasoningParser(template)
    visible, reasoning = parser.feed(text)
    tail_visible, tail_reasoning = parser.flush()
    return visible + tail_visible, reasoning + tail_reasoning
