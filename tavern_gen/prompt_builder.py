"""Prompt assembly: fixed prompt blocks plus a token-budgeted slice of history.

`PromptBuilder.build()` works in two phases:

1. Fixed blocks. Walk the enabled prompt definitions in order. Markers
   expand to a fixed meaning (character description, lore, persona, ...);
   other blocks render their own content. Every text goes through the macro
   engine. The `chatHistory` marker is kept as a placeholder.

2. History. With `budget = max_context - fixed tokens - max_tokens`, walk
   history from newest to oldest in units (one user message, or one
   assistant message together with its tool results) and stop at the first
   unit that does not fit. The kept units are a contiguous suffix of the
   conversation; they replace the placeholder. Lore injected "at depth d"
   is placed after the d-th newest visible message.

When lore books are in play, "fixed tokens" counts the blocks without lore
plus the full lore budget, so a smaller context never keeps more history.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable

from tavern_gen import macros
from tavern_gen.errors import ConfigurationError
from tavern_gen.lore import LoreProcessor, ProcessedLore
from tavern_gen.macros import MacroContext
from tavern_gen.models import (
    ApiMessage,
    ChatMessage,
    ChatMetadata,
    LoreBook,
    LoreSettings,
    Participant,
    PromptDefinition,
    SamplerSettings,
    TokenBreakdown,
    ToolCall,
    ToolCallFunction,
)
from tavern_gen.tokenizer import Tokenizer, count_message

logger = logging.getLogger(__name__)

HISTORY_MARKER = "chatHistory"

# marker identifier -> TokenBreakdown field it is accounted under
_BREAKDOWN_FIELDS = {
    "charDescription": "description",
    "charPersonality": "personality",
    "scenario": "scenario",
    "dialogueExamples": "examples",
    "personaDescription": "persona",
    "worldInfoBefore": "lore",
    "worldInfoAfter": "lore",
    "authorsNote": "lore",
}


class PromptBuilder:
    def __init__(
        self,
        *,
        characters: list[Participant],
        persona: Participant,
        history: list[ChatMessage],
        sampler: SamplerSettings,
        metadata: ChatMetadata | None = None,
        lore_settings: LoreSettings | None = None,
        books: list[LoreBook] | None = None,
        tokenizer: Tokenizer,
        speaker: Participant | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not characters:
            raise ConfigurationError("No participants in context")
        self.characters = characters
        self.persona = persona
        self.history = history
        self.sampler = sampler
        self.metadata = metadata or ChatMetadata()
        self.lore_settings = lore_settings or LoreSettings()
        self.books = books or []
        self.tokenizer = tokenizer
        self.speaker = speaker or characters[0]
        self.rng = rng
        self.ctx = MacroContext(characters, persona, active=speaker)
        self.processed_lore: ProcessedLore | None = None
        self.breakdown = TokenBreakdown(max_context=sampler.max_context)

    # -- helpers -------------------------------------------------------------

    def _render(self, text: str, ctx: MacroContext | None = None) -> str:
        return macros.process(text, ctx or self.ctx).strip() if text else ""

    def _per_participant(self, getter: Callable[[Participant], str]) -> str:
        """Render a character field once per participant in context."""
        if len(self.characters) == 1:
            return self._render(getter(self.characters[0]))
        parts = [self._render(getter(c), self.ctx.for_participant(c)) for c in self.characters]
        return "\n".join(p for p in parts if p)

    def _message(self, definition: PromptDefinition, content: str) -> ApiMessage:
        role = definition.role
        name = None
        if role == "user":
            name = self.persona.name
        elif role == "assistant":
            name = self.speaker.name
        return ApiMessage(role=role, content=content, name=name)

    # -- fixed blocks ----------------------------------------------------------

    def _marker(self, definition: PromptDefinition, lore: ProcessedLore) -> list[ApiMessage]:
        ident = definition.identifier
        overrides = self.metadata.prompt_overrides
        texts: list[str] = []

        if ident == "charDescription":
            texts = [self._per_participant(lambda c: c.description)]
        elif ident == "charPersonality":
            texts = [self._per_participant(lambda c: c.personality)]
        elif ident == "scenario":
            if overrides.scenario:
                texts = [self._render(overrides.scenario)]
            else:
                texts = [self._per_participant(lambda c: c.scenario)]
        elif ident == "dialogueExamples":
            examples = self._per_participant(lambda c: c.mes_example)
            # one blank line between example lines
            texts = [*lore.em_before, "\n\n".join(examples.split("\n")), *lore.em_after]
        elif ident == "worldInfoBefore":
            texts = [lore.before]
        elif ident == "worldInfoAfter":
            texts = [lore.after]
        elif ident == "personaDescription":
            texts = [self._render(self.persona.description)]
        elif ident == "authorsNote":
            note = self._render(overrides.authors_note or "")
            texts = ["\n".join(t for t in [*lore.an_before, note, *lore.an_after] if t)]
        elif ident == "jailbreak":
            texts = [self._per_participant(lambda c: c.post_history_instructions)]
        else:
            logger.warning("unknown prompt marker %r ignored", ident)

        return [self._message(definition, t) for t in texts if t]

    def _fixed_blocks(self, lore: ProcessedLore, *, account: bool = True) -> list[ApiMessage | None]:
        """Rendered blocks in order; None stands for the history placeholder."""
        enabled = [p for p in self.sampler.prompts if p.enabled]
        if not enabled:
            raise ConfigurationError("No prompt blocks are enabled")

        blocks: list[ApiMessage | None] = []
        for definition in enabled:
            if definition.marker and definition.identifier == HISTORY_MARKER:
                blocks.append(None)
                continue
            if definition.marker:
                rendered = self._marker(definition, lore)
            else:
                content = self._render(definition.content)
                rendered = [self._message(definition, content)] if content else []

            blocks.extend(rendered)
            if not account:
                continue
            section = _BREAKDOWN_FIELDS.get(definition.identifier) if definition.marker else None
            for msg in rendered:
                tokens = count_message(self.tokenizer, msg)
                self.breakdown.system_total += tokens
                if section:
                    setattr(self.breakdown, section, getattr(self.breakdown, section) + tokens)
        return blocks

    # -- history ---------------------------------------------------------------

    def _history_unit(self, msg: ChatMessage) -> list[ApiMessage]:
        """Protocol messages for one chat message; kept or dropped together."""
        content = self._render(msg.mes)
        if msg.is_user:
            return [ApiMessage(role="user", content=content, name=msg.name)]

        invocations = msg.tool_invocations()
        if not invocations:
            return [ApiMessage(role="assistant", content=content, name=msg.name)] if content else []

        calls = [
            ToolCall(
                id=inv.id,
                function=ToolCallFunction(name=inv.name, arguments=inv.parameters),
                signature=inv.signature,
            )
            for inv in invocations
        ]
        unit = [ApiMessage(role="assistant", content=content or None, name=msg.name, tool_calls=calls)]
        unit.extend(
            ApiMessage(role="tool", content=inv.result, name=inv.name, tool_call_id=inv.id)
            for inv in invocations
        )
        return unit

    def _depth_unit(self, lore: ProcessedLore, depth: int) -> list[ApiMessage]:
        return [ApiMessage(role=inj.role, content=inj.content) for inj in lore.depth_entries.get(depth, [])]

    def _history(self, lore: ProcessedLore, budget: int) -> list[ApiMessage]:
        """History units newest first within `budget`.

        Depth injections are lore; their tokens come out of the lore
        reservation, not out of `budget`.
        """
        kept: list[list[ApiMessage]] = []
        used = 0

        def fits(unit: list[ApiMessage]) -> bool:
            nonlocal used
            cost = sum(count_message(self.tokenizer, m) for m in unit)
            if used + cost > budget:
                return False
            used += cost
            kept.append(unit)
            return True

        if budget <= 0:
            return []

        kept.append(self._depth_unit(lore, 0))
        depth = 0
        for msg in reversed(self.history):
            if msg.is_system:
                continue
            if not fits(self._history_unit(msg)):
                break
            depth += 1
            kept.append(self._depth_unit(lore, depth))

        self.breakdown.chat_history = used
        return [m for unit in reversed(kept) for m in unit]

    # -- entry point -------------------------------------------------------------

    def build(self) -> list[ApiMessage]:
        processor = LoreProcessor(
            self.history, self.books, self.lore_settings, self.ctx,
            self.sampler.max_context, self.tokenizer, self.rng,
        )
        lore = processor.process()
        self.processed_lore = lore

        blocks = self._fixed_blocks(lore)
        fixed_tokens = self.breakdown.system_total
        # lore is charged at its full budget, whatever activated
        if any(book.entries for book in self.books):
            base = self._fixed_blocks(ProcessedLore(), account=False)
            reserved = sum(count_message(self.tokenizer, b) for b in base if b is not None) + processor.budget()
        else:
            reserved = fixed_tokens
        budget = self.sampler.max_context - reserved - self.sampler.max_tokens
        history = self._history(lore, budget)
        self.breakdown.lore += sum(
            self.tokenizer.count(inj.content) for injs in lore.depth_entries.values() for inj in injs
        )

        messages: list[ApiMessage] = []
        for block in blocks:
            if block is None:
                messages.extend(history)
            else:
                messages.append(block)

        self.breakdown.prompt_total = sum(count_message(self.tokenizer, m) for m in messages)
        self.breakdown.padding = max(self.sampler.max_context - self.breakdown.prompt_total, 0)
        logger.debug(
            "prompt: %d messages, %d fixed tokens, history budget %d used %d",
            len(messages), fixed_tokens, budget, self.breakdown.chat_history,
        )
        return messages
