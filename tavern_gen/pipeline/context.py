"""Per-generation context, created at the start of a generation and then discarded."""

from __future__ import annotations

from dataclasses import dataclass, field

from tavern_gen.hooks import Cancellation
from tavern_gen.models import (
    ChatMessage,
    ChatMetadata,
    ConnectionProfile,
    GenerationMode,
    Participant,
    ReasoningTemplate,
    SamplerSettings,
)
from tavern_gen.tokenizer import Tokenizer


@dataclass
class GenerationContext:
    """Everything one generation works from. `before_prompt` hooks may edit it.

    `history` is a copy of the chat's message list and `sampler` a clone of
    the effective sampler settings, so edits here never leak into the chat
    or the stored settings.
    """

    generation_id: str
    mode: GenerationMode
    characters: list[Participant]
    speaker: Participant
    persona: Participant
    metadata: ChatMetadata
    history: list[ChatMessage]
    sampler: SamplerSettings
    profile: ConnectionProfile
    tokenizer: Tokenizer
    cancel: Cancellation
    reasoning_template: ReasoningTemplate | None = None
    stop_names: set[str] = field(default_factory=set)

    @property
    def player_name(self) -> str:
        return self.persona.name or "User"

    @property
    def is_group(self) -> bool:
        return len(self.characters) > 1
