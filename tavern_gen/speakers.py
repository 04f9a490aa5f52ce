"""Speaker resolution: who replies next in a multi-participant chat.

`determine_next_speakers` implements the deterministic and random strategies
(manual, natural order, list order, pooled order). The model-assisted
strategy needs a backend round trip and lives in `decide_speaker_via_model`.

Shared rules: muted participants are never picked, and the most recent
speaker is not picked again unless self-responses are allowed. Excluding the
last speaker never empties a non-empty eligible set.
"""

from __future__ import annotations

import logging
import random
import re

from tavern_gen import macros
from tavern_gen.errors import GenerationCancelled
from tavern_gen.hooks import Cancellation, cancellable
from tavern_gen.llm import Blocking, ModelClient
from tavern_gen.macros import MacroContext
from tavern_gen.models import (
    DEFAULT_TALKATIVENESS,
    ApiMessage,
    ChatMessage,
    GenerationPayload,
    GroupChatConfig,
    Participant,
    ReplyStrategy,
)

logger = logging.getLogger(__name__)

DEFAULT_DECISION_TEMPLATE = """You are an AI assistant orchestrating a roleplay group chat.
Your task is to determine who should speak next based on the recent conversation context.

[Active Members]
{{memberNames}}
{{user}} (The User)

[Recent Conversation]
{{recentMessages}}

[Instructions]
1. Analyze the conversation flow to decide who should reply.
2. If it is {{user}}'s turn to speak, output "{{user}}".
3. If a character should speak, output their exact name.
4. Output only the name inside a code block. Do not output anything else.

Example Response:
```
{{firstCharName}}
```"""

_CODE_BLOCK_RE = re.compile(r"```(?:\w*\n)?(.*?)```", re.DOTALL)


def get_mentions(text: str, participants: list[Participant]) -> list[Participant]:
    """Participants named in `text`, case-insensitive, in order of first mention."""
    lowered = text.lower()
    found: list[tuple[int, int, Participant]] = []
    seen: set[str] = set()
    for order, p in enumerate(participants):
        name = p.name.strip().lower()
        if not name or p.avatar in seen:
            continue
        idx = lowered.find(name)
        if idx != -1:
            seen.add(p.avatar)
            found.append((idx, order, p))
    found.sort(key=lambda item: (item[0], item[1]))
    return [p for _, _, p in found]


def _last_speaker(history: list[ChatMessage]) -> str | None:
    """Avatar of the last visible message's author; None when the user spoke last."""
    for msg in reversed(history):
        if msg.is_system:
            continue
        return None if msg.is_user else msg.original_avatar
    return None


def determine_next_speakers(
    active: list[Participant],
    config: GroupChatConfig | None,
    history: list[ChatMessage],
    rng: random.Random | None = None,
) -> list[Participant]:
    """Ordered speakers for the next turn; empty means "wait for the user"."""
    rng = rng or random.Random()
    if config is None:
        return active[:1]

    eligible = [p for p in active if not config.is_muted(p.avatar)]
    if not eligible:
        return []

    strategy = config.reply_strategy
    if strategy in (ReplyStrategy.MANUAL, ReplyStrategy.LLM_DECISION):
        return []

    if strategy is ReplyStrategy.LIST_ORDER:
        previous = next(
            (m.original_avatar for m in reversed(history) if not m.is_user and not m.is_system),
            None,
        )
        index = next((i for i, p in enumerate(eligible) if p.avatar == previous), -1)
        return [eligible[(index + 1) % len(eligible)]]

    last = _last_speaker(history)

    candidates = eligible
    if not config.allow_self_responses and last is not None:
        candidates = [p for p in eligible if p.avatar != last] or eligible

    if strategy is ReplyStrategy.POOLED_ORDER:
        spoken = _spoken_since_user(history)
        pool = [p for p in candidates if p.avatar not in spoken]
        return [rng.choice(pool or candidates)]

    # natural order
    last_msg = next((m for m in reversed(history) if not m.is_system), None)
    if last_msg is None:
        return [rng.choice(candidates)]

    mentioned = get_mentions(last_msg.mes, candidates)
    if mentioned:
        return mentioned

    talkative = [
        p for p in candidates
        if rng.random() < (p.talkativeness if p.talkativeness is not None else DEFAULT_TALKATIVENESS)
    ]
    if talkative:
        rng.shuffle(talkative)
        return talkative
    return [rng.choice(candidates)]


def _spoken_since_user(history: list[ChatMessage]) -> set[str]:
    spoken: set[str] = set()
    for msg in reversed(history):
        if msg.is_user:
            break
        if not msg.is_system and msg.original_avatar:
            spoken.add(msg.original_avatar)
    return spoken


# ---------------------------------------------------------------------------
# Model-assisted decision
# ---------------------------------------------------------------------------

def extract_decision(reply: str) -> str:
    """The first fenced block's contents, or the trimmed reply."""
    m = _CODE_BLOCK_RE.search(reply)
    return (m.group(1) if m else reply).strip()


async def decide_speaker_via_model(
    client: ModelClient,
    candidates: list[Participant],
    persona: Participant,
    history: list[ChatMessage],
    *,
    model: str = "",
    template: str | None = None,
    context_size: int = 15,
    cancel: Cancellation | None = None,
) -> Participant | None:
    """Ask the model who speaks next.

    Returns None when the model hands the turn back to the user, names
    someone unknown, or the request fails. Cancellation propagates.
    """
    if not candidates:
        return None
    cancel = cancel or Cancellation()

    recent = history[-context_size:] if context_size > 0 else []
    prompt = macros.process(
        template or DEFAULT_DECISION_TEMPLATE,
        MacroContext(candidates, persona),
        {
            "memberNames": ", ".join(p.name for p in candidates),
            "recentMessages": "\n".join(f"{m.name}: {m.mes}" for m in recent if not m.is_system),
            "firstCharName": candidates[0].name,
        },
    )
    payload = GenerationPayload(
        messages=[ApiMessage(role="system", content=prompt)],
        model=model,
        max_tokens=50,
        temperature=0.2,
        stream=False,
    )

    try:
        result = await cancellable(client.generate(payload), cancel)
        if isinstance(result, Blocking):
            reply = result.response.content
        else:
            parts = []
            iterator = aiter(result.chunks)
            try:
                while True:
                    try:
                        chunk = await cancellable(anext(iterator), cancel)
                    except StopAsyncIteration:
                        break
                    parts.append(chunk.delta)
            finally:
                await result.close()
            reply = "".join(parts)
    except GenerationCancelled:
        raise
    except Exception:
        logger.exception("speaker decision request failed")
        return None

    name = extract_decision(reply)
    lowered = name.lower()
    for p in candidates:
        if p.name.strip().lower() == lowered:
            logger.debug("model picked %s as next speaker", p.name)
            return p
    if lowered == persona.name.strip().lower():
        logger.debug("model handed the turn back to %s", persona.name)
        return None
    logger.warning("model suggested unknown speaker %r", name)
    return None
