"""Handlebars macro substitution for prompt text.

Every piece of text that reaches a prompt (character fields, custom prompt
blocks, lore keys and contents, history messages) goes through `process()`.

Processing is iterative, because a substituted value may itself contain
macros ("{{description}}" → "{{char}} is a knight" → "Rin is a knight"):

  1. strip comment spans  {{! … }}  and  {{!-- … --}}
  2. hide raw spans  {{{{raw}}}} … {{{{/raw}}}}  behind opaque placeholders
  3. compile and render the remaining template
  4. repeat while the output changed and still contains "{{",
     at most MAX_RECURSION times

Raw spans are restored verbatim after the last pass, so template syntax that
a user meant to show is never expanded. Values are never HTML-escaped.
"""

from __future__ import annotations

import functools
import logging
import random
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pybars

from tavern_gen.errors import TavernError
from tavern_gen.models import Participant

logger = logging.getLogger(__name__)

MAX_RECURSION = 10

_compiler = pybars.Compiler()

_COMMENT_RE = re.compile(r"\{\{!--.*?--\}\}|\{\{![^}]*\}\}", re.DOTALL)
_RAW_RE = re.compile(r"\{\{\{\{\s*raw\s*\}\}\}\}(.*?)\{\{\{\{\s*/raw\s*\}\}\}\}", re.DOTALL)
_PLACEHOLDER_RE = re.compile("\ue000(\\d+)\ue001")
# {{name}} / {{a.b}}: plain lookups, rewritten to triple-stash so values are not escaped
_SIMPLE_MUSTACHE_RE = re.compile(r"(?<!\{)\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}(?!\})")


class PromptError(TavernError):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_time(this, *args):
    return datetime.now().strftime("%H:%M")


def _helper_date(this, *args):
    return datetime.now().strftime("%Y-%m-%d")


def _helper_weekday(this, *args):
    return datetime.now().strftime("%A")


def _helper_random(this, low=None, high=None, *args):
    """{{random 1 6}} — inclusive random integer, 0 on bad arguments."""
    try:
        low, high = int(low), int(high)
    except (TypeError, ValueError):
        return "0"
    if low > high:
        low, high = high, low
    return str(random.randint(low, high))


_HELPERS: dict[str, Callable] = {
    "time": _helper_time,
    "date": _helper_date,
    "weekday": _helper_weekday,
    "random": _helper_random,
}


# ── Rendering ────────────────────────────────────────────


def _unescaped(template_str: str) -> str:
    def _sub(m: re.Match) -> str:
        if m.group(1) == "else":
            return m.group(0)
        return "{{{" + m.group(1) + "}}}"

    return _SIMPLE_MUSTACHE_RE.sub(_sub, template_str)


@functools.lru_cache(maxsize=512)
def _compile(template_str: str) -> Callable:
    return _compiler.compile(_unescaped(template_str))


def render_template(template_str: str, context: Mapping[str, Any]) -> str:
    """Compile and render one Handlebars pass with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _compile(template_str)
        return str(compiled(dict(context), helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Context ──────────────────────────────────────────────


@dataclass
class MacroContext:
    """Who is talking: the participants in context, the persona, and which
    participant `{{char}}` refers to (defaults to the first one)."""

    characters: list[Participant]
    persona: Participant
    active: Participant | None = None
    values: dict[str, Any] = field(default_factory=dict)

    def for_participant(self, participant: Participant) -> MacroContext:
        return MacroContext(self.characters, self.persona, participant, dict(self.values))


def build_context(ctx: MacroContext, overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Assemble template variables. Caller overrides win on name collision."""
    primary = ctx.active or (ctx.characters[0] if ctx.characters else None)
    variables: dict[str, Any] = {
        "user": ctx.persona.name,
        "persona": ctx.persona.description,
        "char": primary.name if primary else "Character",
        "description": primary.description if primary else "",
        "personality": primary.personality if primary else "",
        "scenario": primary.scenario if primary else "",
        "mes_example": primary.mes_example if primary else "",
        "first_mes": primary.first_mes if primary else "",
        "chars": [c.name for c in ctx.characters],
    }
    variables.update(ctx.values)
    if overrides:
        variables.update(overrides)
    return variables


# ── Processing ───────────────────────────────────────────


def _protect(text: str, literals: list[str]) -> str:
    def _stash(m: re.Match) -> str:
        literals.append(m.group(1))
        return f"\ue000{len(literals) - 1}\ue001"

    return _RAW_RE.sub(_stash, _COMMENT_RE.sub("", text))


def _restore(text: str, literals: list[str]) -> str:
    # a later pass may stash a raw span that wraps an earlier placeholder
    for _ in range(len(literals)):
        if not _PLACEHOLDER_RE.search(text):
            break
        text = _PLACEHOLDER_RE.sub(lambda m: literals[int(m.group(1))], text)
    return text


def process(
    text: str,
    ctx: MacroContext,
    overrides: Mapping[str, Any] | None = None,
) -> str:
    """Resolve macros in `text`, recursing up to MAX_RECURSION passes."""
    if not text:
        return ""
    if "{{" not in text:
        return text

    variables = build_context(ctx, overrides)
    literals: list[str] = []
    current = _protect(text, literals)

    for _ in range(MAX_RECURSION):
        if "{{" not in current:
            break
        try:
            rendered = _protect(render_template(current, variables), literals)
        except PromptError as e:
            logger.warning("macro processing stopped: %s", e)
            break
        if rendered == current:
            break
        current = rendered

    return _restore(current, literals)
