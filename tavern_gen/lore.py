"""Lore activation: which lore entries fire for a generation, and where they go.

The processor scans the most recent messages (plus optional extra sources
such as the character description) for each entry's trigger keys, then
admits activated entries in priority order until the token budget runs out.

Scanning happens in passes:

    INITIAL          the first pass over chat history
    RECURSION        activated content is appended to the scan text, so
                     entries can trigger each other (bounded by
                     max_recursion_steps; zero steps means a single pass)
    MIN_ACTIVATIONS  too few entries fired; widen the scan window by one
                     message and try again

The budget is a hard cap shared by every pass: once an entry does not fit,
nothing after it is admitted, in this pass or any later one.
"""

from __future__ import annotations

import logging
import random
import re
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum

from tavern_gen import macros
from tavern_gen.macros import MacroContext
from tavern_gen.models import (
    ChatMessage,
    LoreBook,
    LoreEntry,
    LorePosition,
    LoreSettings,
    MessageRole,
    Participant,
    SelectiveLogic,
)
from tavern_gen.tokenizer import Tokenizer

logger = logging.getLogger(__name__)

MAX_SCAN_DEPTH = 100

_REGEX_KEY_RE = re.compile(r"^/(.+)/([a-z]*)$", re.DOTALL)
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


class ScanState(str, Enum):
    INITIAL = "initial"
    RECURSION = "recursion"
    MIN_ACTIVATIONS = "min_activations"


@dataclass
class DepthInjection:
    depth: int
    role: MessageRole
    content: str


@dataclass
class ProcessedLore:
    before: str = ""
    after: str = ""
    an_before: list[str] = field(default_factory=list)
    an_after: list[str] = field(default_factory=list)
    em_before: list[str] = field(default_factory=list)
    em_after: list[str] = field(default_factory=list)
    depth_entries: dict[int, list[DepthInjection]] = field(default_factory=dict)
    outlets: dict[str, list[str]] = field(default_factory=dict)
    triggered: dict[str, list[LoreEntry]] = field(default_factory=dict)
    overflowed: bool = False
    tokens_used: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.triggered


@dataclass
class _Candidate:
    book: str
    entry: LoreEntry
    rank: tuple[int, int]  # (order, -insertion index): lower sorts first
    score: int = 0

    @property
    def uid(self) -> str:
        return f"{self.book}.{self.entry.uid}"


def match_key(haystack: str, key: str, *, case_sensitive: bool, whole_words: bool) -> bool:
    """Does `key` occur in `haystack`? `/pattern/flags` keys are regexes."""
    m = _REGEX_KEY_RE.match(key)
    if m:
        flags = 0
        for letter in m.group(2):
            flags |= _REGEX_FLAGS.get(letter, 0)
        try:
            return re.search(m.group(1), haystack, flags) is not None
        except re.error as e:
            logger.warning("invalid regex lore key %r: %s", key, e)
            return False

    if not case_sensitive:
        haystack, key = haystack.lower(), key.lower()
    if whole_words:
        return re.search(rf"(?<!\w){re.escape(key)}(?!\w)", haystack) is not None
    return key in haystack


class _ScanBuffer:
    """Text the keys are matched against: recent messages + extra sources."""

    def __init__(self, history: list[ChatMessage], settings: LoreSettings,
                 character: Participant | None, persona: Participant) -> None:
        self._messages = [m.mes for m in reversed(history)][:MAX_SCAN_DEPTH]
        self._settings = settings
        self._character = character
        self._persona = persona
        self._recurse: list[str] = []
        self.skew = 0

    @property
    def depth(self) -> int:
        return self._settings.scan_depth + self.skew

    def text_for(self, entry: LoreEntry, state: ScanState) -> str:
        scan_depth = entry.scan_depth if entry.scan_depth is not None else self._settings.scan_depth
        parts = self._messages[:max(scan_depth + self.skew, 0)]

        char = self._character
        if char is not None:
            if entry.match_character_description:
                parts.append(char.description)
            if entry.match_character_personality:
                parts.append(char.personality)
            if entry.match_scenario:
                parts.append(char.scenario)
        if entry.match_persona_description:
            parts.append(self._persona.description)

        if self._recurse and state is not ScanState.MIN_ACTIVATIONS:
            parts.extend(self._recurse)
        return "\n".join(parts)

    def add_recurse(self, text: str) -> None:
        self._recurse.append(text)


class LoreProcessor:
    """Select and place lore for one generation. Pure: reads its inputs only."""

    def __init__(
        self,
        history: list[ChatMessage],
        books: list[LoreBook],
        settings: LoreSettings,
        ctx: MacroContext,
        max_context: int,
        tokenizer: Tokenizer,
        rng: random.Random | None = None,
    ) -> None:
        self.history = history
        self.books = books
        self.settings = settings
        self.ctx = ctx
        self.max_context = max_context
        self.tokenizer = tokenizer
        self.rng = rng or random.Random()
        self.character = ctx.active or (ctx.characters[0] if ctx.characters else None)

    # -- budget / ordering ---------------------------------------------------

    def budget(self) -> int:
        budget = round(self.settings.budget_percent * self.max_context / 100) or 1
        if self.settings.budget_cap > 0:
            budget = min(budget, self.settings.budget_cap)
        return budget

    def _candidates(self) -> list[_Candidate]:
        out = []
        index = 0
        for book in self.books:
            for entry in book.entries:
                out.append(_Candidate(book.name, entry, (entry.order, -index)))
                index += 1
        out.sort(key=lambda c: c.rank)
        return out

    # -- filters ---------------------------------------------------------------

    def _passes_filters(self, entry: LoreEntry, state: ScanState) -> bool:
        if entry.disable:
            return False
        if entry.delay and len(self.history) < entry.delay:
            return False
        if state is ScanState.RECURSION and entry.exclude_recursion:
            return False
        if entry.delay_until_recursion and state is not ScanState.RECURSION:
            return False
        return self._passes_character_filter(entry)

    def _passes_character_filter(self, entry: LoreEntry) -> bool:
        if not entry.character_filter_names and not entry.character_filter_tags:
            return True
        char = self.character
        matched = False
        if char is not None:
            if char.name in entry.character_filter_names:
                matched = True
            elif entry.character_filter_tags:
                tags = {t.lower() for t in char.tags}
                matched = any(t.lower() in tags for t in entry.character_filter_tags)
        return not matched if entry.character_filter_exclude else matched

    # -- matching --------------------------------------------------------------

    def _matches(self, text: str, key: str, entry: LoreEntry) -> bool:
        key = macros.process(key, self.ctx)
        if not key:
            return False
        case_sensitive = entry.case_sensitive if entry.case_sensitive is not None else self.settings.case_sensitive
        whole_words = (
            entry.match_whole_words if entry.match_whole_words is not None else self.settings.match_whole_words
        )
        return match_key(text, key, case_sensitive=case_sensitive, whole_words=whole_words)

    def _activate(self, cand: _Candidate, buffer: _ScanBuffer, state: ScanState) -> bool:
        """Key check for one entry; sets cand.score to the number of matched keys."""
        entry = cand.entry
        if entry.constant:
            return True
        if not entry.key:
            return False
        text = buffer.text_for(entry, state)
        if not text:
            return False

        primary = sum(1 for k in entry.key if self._matches(text, k, entry))
        if not primary:
            return False
        if not entry.keysecondary:
            cand.score = primary
            return True

        secondary = sum(1 for k in entry.keysecondary if self._matches(text, k, entry))
        any_hit = secondary > 0
        all_hit = secondary == len(entry.keysecondary)
        logic = entry.selective_logic
        if logic is SelectiveLogic.AND_ANY:
            ok = any_hit
        elif logic is SelectiveLogic.AND_ALL:
            ok = all_hit
        elif logic is SelectiveLogic.NOT_ALL:
            ok = not all_hit
        else:
            ok = not any_hit
        cand.score = primary + secondary
        return ok

    # -- inclusion groups ------------------------------------------------------

    def _resolve_groups(self, cands: list[_Candidate], taken_groups: set[str]) -> list[_Candidate]:
        """Keep at most one entry per inclusion group; ungrouped entries pass."""
        grouped: dict[str, list[_Candidate]] = defaultdict(list)
        for c in cands:
            if c.entry.group:
                grouped[c.entry.group].append(c)

        winners: set[str] = set()
        for name, members in grouped.items():
            if name in taken_groups:
                continue
            overrides = [c for c in members if c.entry.group_override]
            if overrides:
                winners.add(overrides[0].uid)
                continue
            scoring = any(
                c.entry.use_group_scoring if c.entry.use_group_scoring is not None
                else self.settings.use_group_scoring
                for c in members
            )
            if scoring:
                best = max(c.score for c in members)
                members = [c for c in members if c.score == best]
            winners.add(self._weighted_pick(members).uid)

        return [c for c in cands if not c.entry.group or c.uid in winners]

    def _weighted_pick(self, members: list[_Candidate]) -> _Candidate:
        if len(members) == 1:
            return members[0]
        weights = [max(c.entry.group_weight, 0) for c in members]
        if sum(weights) <= 0:
            return members[0]
        return self.rng.choices(members, weights=weights, k=1)[0]

    # -- main loop -------------------------------------------------------------

    def process(self) -> ProcessedLore:
        settings = self.settings
        budget = self.budget()
        candidates = self._candidates()
        buffer = _ScanBuffer(self.history, settings, self.character, self.ctx.persona)

        activated: dict[str, tuple[_Candidate, str, int]] = {}
        rejected: set[str] = set()
        taken_groups: set[str] = set()
        used = 0
        overflowed = False
        recursion_steps = 0
        state = ScanState.INITIAL

        while True:
            fired = [
                c for c in candidates
                if c.uid not in activated and c.uid not in rejected
                and self._passes_filters(c.entry, state)
                and self._activate(c, buffer, state)
            ]
            fired = self._resolve_groups(fired, taken_groups)

            admitted: list[str] = []
            for cand in fired:
                if overflowed:
                    break
                entry = cand.entry
                if entry.use_probability and self.rng.random() * 100 > entry.probability:
                    rejected.add(cand.uid)
                    continue
                content = macros.process(entry.content, self.ctx)
                cost = self.tokenizer.count(content)
                if used + cost > budget:
                    overflowed = True
                    logger.debug("lore budget %d exhausted at %s (%d tokens)", budget, cand.uid, cost)
                    break
                used += cost
                activated[cand.uid] = (cand, content, cost)
                if entry.group:
                    taken_groups.add(entry.group)
                if not entry.prevent_recursion:
                    admitted.append(content)

            if overflowed:
                break

            if settings.recursive and admitted and recursion_steps < settings.max_recursion_steps:
                recursion_steps += 1
                buffer.add_recurse("\n".join(admitted))
                state = ScanState.RECURSION
                continue

            if (
                settings.min_activations > 0
                and len(activated) < settings.min_activations
                and state is not ScanState.RECURSION
            ):
                next_depth = buffer.depth + 1
                too_deep = (
                    settings.min_activations_depth_max > 0 and next_depth > settings.min_activations_depth_max
                ) or next_depth > len(self.history)
                if not too_deep:
                    buffer.skew += 1
                    state = ScanState.MIN_ACTIVATIONS
                    continue
            break

        result = self._place(sorted(activated.values(), key=lambda item: item[0].rank))
        result.overflowed = overflowed
        result.tokens_used = used
        logger.debug(
            "lore: %d entries, %d/%d tokens, overflowed=%s",
            len(activated), used, budget, overflowed,
        )
        return result

    @staticmethod
    def _place(items: list[tuple[_Candidate, str, int]]) -> ProcessedLore:
        result = ProcessedLore()
        before: list[str] = []
        after: list[str] = []
        buckets = {
            LorePosition.AN_BEFORE: result.an_before,
            LorePosition.AN_AFTER: result.an_after,
            LorePosition.EM_BEFORE: result.em_before,
            LorePosition.EM_AFTER: result.em_after,
            LorePosition.BEFORE: before,
            LorePosition.AFTER: after,
        }

        for cand, content, _ in items:
            entry = cand.entry
            result.triggered.setdefault(cand.book, []).append(entry)
            if not content:
                continue
            if entry.position is LorePosition.AT_DEPTH:
                result.depth_entries.setdefault(entry.depth, []).append(
                    DepthInjection(entry.depth, entry.role, content)
                )
            elif entry.position is LorePosition.OUTLET:
                if entry.outlet_name:
                    result.outlets.setdefault(entry.outlet_name, []).append(content)
            else:
                buckets[entry.position].append(content)

        result.before = "\n".join(before).strip()
        result.after = "\n".join(after).strip()
        return result
