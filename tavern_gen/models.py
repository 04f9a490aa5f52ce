"""Core domain models.

Every pipeline stage operates on these types. Pydantic is used for validation
and serialisation at every data boundary: participants, chat messages and
lore books arrive from external stores as plain dicts and are validated here.

Chat messages are mutable — the orchestrator appends to them while a reply
streams in — so the text/swipe invariant is kept by the mutation helpers
(`set_text`, `append_text`, `add_swipe`) rather than by freezing the model.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

DEFAULT_TALKATIVENESS = 0.5

MessageRole = Literal["system", "user", "assistant", "tool"]


def timestamp() -> str:
    """ISO-8601 UTC timestamp used for send/generation dates."""
    return datetime.now(timezone.utc).isoformat()


class GenerationMode(str, Enum):
    NEW = "new"
    REGENERATE = "regenerate"
    CONTINUE = "continue"
    ADD_SWIPE = "add_swipe"


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

class Participant(BaseModel):
    """A character or persona snapshot, owned by the external store."""

    avatar: str
    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    mes_example: str = ""
    first_mes: str = ""
    post_history_instructions: str = ""
    talkativeness: float | None = Field(default=None, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------

class ToolInvocation(BaseModel):
    id: str
    name: str
    parameters: str = "{}"  # JSON-encoded arguments, as sent to the backend
    result: str = ""
    signature: str | None = None


class SwipeInfo(BaseModel):
    send_date: str = Field(default_factory=timestamp)
    gen_started: str | None = None
    gen_finished: str | None = None
    generation_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """One entry in a conversation.

    `mes` mirrors `swipes[swipe_id]` whenever swipes is non-empty.
    `extra` is an open side channel for extension data (reasoning,
    token_count, media, tool_invocations, trackers, …).
    """

    name: str
    is_user: bool = False
    is_system: bool = False
    mes: str = ""
    swipes: list[str] = Field(default_factory=list)
    swipe_id: int = 0
    swipe_info: list[SwipeInfo] = Field(default_factory=list)
    original_avatar: str | None = None
    send_date: str = Field(default_factory=timestamp)
    gen_started: str | None = None
    gen_finished: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_swipes(self) -> ChatMessage:
        if self.swipes:
            if not 0 <= self.swipe_id < len(self.swipes):
                raise ValueError(
                    f"swipe_id {self.swipe_id} out of range for {len(self.swipes)} swipes"
                )
            self.mes = self.swipes[self.swipe_id]
        return self

    def set_text(self, text: str) -> None:
        """Replace the active text, keeping the active swipe in sync."""
        self.mes = text
        if self.swipes:
            self.swipes[self.swipe_id] = text

    def append_text(self, delta: str) -> None:
        self.set_text(self.mes + delta)

    def add_swipe(self, text: str = "", info: SwipeInfo | None = None) -> int:
        """Append an alternate text, make it active and return its index."""
        if not self.swipes:
            self.swipes = [self.mes]
        self.swipes.append(text)
        self.swipe_id = len(self.swipes) - 1
        self.mes = text
        if info is not None:
            self.record_swipe_info(info)
        return self.swipe_id

    def record_swipe_info(self, info: SwipeInfo) -> None:
        """Store generation metadata for the active swipe."""
        while len(self.swipe_info) <= self.swipe_id:
            self.swipe_info.append(SwipeInfo(send_date=self.send_date))
        self.swipe_info[self.swipe_id] = info

    def tool_invocations(self) -> list[ToolInvocation]:
        raw = self.extra.get("tool_invocations") or []
        return [ToolInvocation.model_validate(inv) for inv in raw]


# ---------------------------------------------------------------------------
# Chat metadata
# ---------------------------------------------------------------------------

class ReplyStrategy(IntEnum):
    MANUAL = 0
    NATURAL_ORDER = 1
    LIST_ORDER = 2
    POOLED_ORDER = 3
    LLM_DECISION = 4


class HandlingMode(str, Enum):
    SWAP = "swap"
    JOIN_EXCLUDE_MUTED = "join_exclude"
    JOIN_INCLUDE_MUTED = "join_include"


class GroupMemberStatus(BaseModel):
    muted: bool = False


class GroupChatConfig(BaseModel):
    reply_strategy: ReplyStrategy = ReplyStrategy.NATURAL_ORDER
    handling_mode: HandlingMode = HandlingMode.SWAP
    allow_self_responses: bool = False
    members: dict[str, GroupMemberStatus] = Field(default_factory=dict)
    decision_prompt_template: str | None = None
    decision_context_size: int = 15
    decision_connection_profile: str | None = None

    def is_muted(self, avatar: str) -> bool:
        status = self.members.get(avatar)
        return bool(status and status.muted)


class PromptOverrides(BaseModel):
    scenario: str | None = None
    authors_note: str | None = None


class ChatMetadata(BaseModel):
    members: list[str] = Field(default_factory=list)
    connection_profile: str | None = None
    prompt_overrides: PromptOverrides = Field(default_factory=PromptOverrides)
    group: GroupChatConfig = Field(default_factory=GroupChatConfig)
    extra: dict[str, Any] = Field(default_factory=dict)


class ChatState(BaseModel):
    """A conversation: the message list plus its metadata."""

    messages: list[ChatMessage] = Field(default_factory=list)
    metadata: ChatMetadata = Field(default_factory=ChatMetadata)


# ---------------------------------------------------------------------------
# Lore
# ---------------------------------------------------------------------------

class LorePosition(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    AN_BEFORE = "an_before"
    AN_AFTER = "an_after"
    EM_BEFORE = "em_before"
    EM_AFTER = "em_after"
    AT_DEPTH = "at_depth"
    OUTLET = "outlet"


class SelectiveLogic(str, Enum):
    AND_ANY = "and_any"
    AND_ALL = "and_all"
    NOT_ALL = "not_all"
    NOT_ANY = "not_any"


class LoreEntry(BaseModel):
    uid: int
    key: list[str] = Field(default_factory=list)
    keysecondary: list[str] = Field(default_factory=list)
    selective_logic: SelectiveLogic = SelectiveLogic.AND_ANY
    comment: str = ""
    content: str = ""
    constant: bool = False
    disable: bool = False
    order: int = 100
    position: LorePosition = LorePosition.BEFORE
    depth: int = 4
    role: MessageRole = "system"
    probability: int = Field(default=100, ge=0, le=100)
    use_probability: bool = False
    scan_depth: int | None = None
    case_sensitive: bool | None = None
    match_whole_words: bool | None = None
    group: str = ""
    group_override: bool = False
    group_weight: int = 100
    use_group_scoring: bool | None = None
    exclude_recursion: bool = False
    prevent_recursion: bool = False
    delay_until_recursion: bool = False
    delay: int | None = None
    outlet_name: str = ""
    character_filter_names: list[str] = Field(default_factory=list)
    character_filter_tags: list[str] = Field(default_factory=list)
    character_filter_exclude: bool = False
    match_persona_description: bool = False
    match_character_description: bool = False
    match_character_personality: bool = False
    match_scenario: bool = False


class LoreBook(BaseModel):
    name: str
    entries: list[LoreEntry] = Field(default_factory=list)


class LoreSettings(BaseModel):
    scan_depth: int = 2
    budget_percent: int = 25
    budget_cap: int = 0
    recursive: bool = False
    max_recursion_steps: int = 0
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_group_scoring: bool = False
    min_activations: int = 0
    min_activations_depth_max: int = 0
    overflow_alert: bool = False


# ---------------------------------------------------------------------------
# Prompt / sampler / connection settings
# ---------------------------------------------------------------------------

class PromptDefinition(BaseModel):
    identifier: str
    name: str = ""
    role: MessageRole = "system"
    content: str = ""
    marker: bool = False
    enabled: bool = True


def default_prompts() -> list[PromptDefinition]:
    return [
        PromptDefinition(
            identifier="main", name="Main Prompt",
            content="Write {{char}}'s next reply in a fictional chat between {{char}} and {{user}}.",
        ),
        PromptDefinition(identifier="charDescription", name="Char Description", marker=True),
        PromptDefinition(identifier="charPersonality", name="Char Personality", marker=True),
        PromptDefinition(identifier="scenario", name="Scenario", marker=True),
        PromptDefinition(identifier="personaDescription", name="Persona Description", marker=True),
        PromptDefinition(identifier="dialogueExamples", name="Chat Examples", marker=True),
        PromptDefinition(identifier="worldInfoBefore", name="World Info (before)", marker=True),
        PromptDefinition(identifier="chatHistory", name="Chat History", marker=True),
        PromptDefinition(identifier="authorsNote", name="Author's Note", marker=True),
        PromptDefinition(identifier="worldInfoAfter", name="World Info (after)", marker=True),
        PromptDefinition(identifier="jailbreak", name="Post-History Instructions", marker=True),
    ]


class SamplerSettings(BaseModel):
    temperature: float = 1.0
    top_p: float = 1.0
    max_context: int = 4096
    max_tokens: int = 500
    stream: bool = True
    stop: list[str] = Field(default_factory=list)
    prompts: list[PromptDefinition] = Field(default_factory=default_prompts)


class ReasoningTemplate(BaseModel):
    prefix: str = Field(min_length=1)
    suffix: str = Field(min_length=1)


ProviderFormat = Literal["openai", "koboldcpp"]


class ConnectionProfile(BaseModel):
    name: str
    provider_url: str = ""
    api_key: str = ""
    provider_format: ProviderFormat = "openai"
    model: str = ""
    sampler: dict[str, Any] = Field(default_factory=dict)  # overrides on SamplerSettings
    reasoning_template: ReasoningTemplate | None = None


# ---------------------------------------------------------------------------
# Protocol-level messages and results
# ---------------------------------------------------------------------------

class ToolCallFunction(BaseModel):
    name: str
    arguments: str


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: ToolCallFunction
    signature: str | None = None


class ApiMessage(BaseModel):
    role: MessageRole
    content: str | None = ""
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


class GenerationPayload(BaseModel):
    """What is handed to a model client. Mutable: hooks may edit it."""

    messages: list[ApiMessage]
    model: str
    max_tokens: int = 500
    temperature: float = 1.0
    top_p: float = 1.0
    stop: list[str] = Field(default_factory=list)
    stream: bool = False


class StreamChunk(BaseModel):
    delta: str = ""
    reasoning: str = ""  # incremental reasoning text supplied by the backend
    images: list[str] = Field(default_factory=list)


class GenerationResponse(BaseModel):
    content: str = ""
    reasoning: str = ""
    token_count: int | None = None
    images: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------

class TokenBreakdown(BaseModel):
    system_total: int = 0
    description: int = 0
    personality: int = 0
    scenario: int = 0
    examples: int = 0
    persona: int = 0
    lore: int = 0
    chat_history: int = 0
    prompt_total: int = 0
    max_context: int = 0
    padding: int = 0


class ItemizedPrompt(BaseModel):
    generation_id: str
    message_index: int
    swipe_id: int
    model: str
    profile: str
    messages: list[ApiMessage]
    breakdown: TokenBreakdown
    lore_entries: dict[str, list[LoreEntry]] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=timestamp)


class UsageRecord(BaseModel):
    source: str = "core"
    model: str
    input_tokens: int
    output_tokens: int
    duration_ms: int
    generation_id: str | None = None
