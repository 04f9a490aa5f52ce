"""Token counting.

The pipeline only needs `count(text) -> int`. The real tokenizer belongs to
whichever backend is configured and is supplied by the caller; the two
counters here are local approximations usable without a backend:

    ApproxTokenizer — ceil(len / 4), the usual rule of thumb for English text
    WordTokenizer   — whitespace-separated words; exact and predictable,
                      which is what the tests rely on
"""

from __future__ import annotations

import math
from typing import Protocol

from tavern_gen.models import ApiMessage


class Tokenizer(Protocol):
    def count(self, text: str) -> int: ...


class ApproxTokenizer:
    def __init__(self, chars_per_token: float = 4.0) -> None:
        self._ratio = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._ratio)


class WordTokenizer:
    def count(self, text: str) -> int:
        return len(text.split()) if text else 0


def count_message(tokenizer: Tokenizer, message: ApiMessage) -> int:
    """Tokens for one protocol message: its text plus any tool-call arguments."""
    total = tokenizer.count(message.content or "")
    for call in message.tool_calls or []:
        total += tokenizer.count(call.function.arguments)
    return total
