"""Generation orchestrator — runs one generation end-to-end.

Flow of `generate(mode)`:
  1. Interpret the mode. REGENERATE on a user message becomes NEW; on a
     participant message that message is removed and its author is forced.
     CONTINUE and ADD_SWIPE need a participant message last and reuse its
     author.
  2. No forced speaker: enter *preparing* and offer scheduling to the hooks
     (`on_generation_requested`). A hook that sets `handled` owns the turn and
     calls back with forced speakers; this call then returns.
  3. Enter *generating*; resolve participants in context, build the context
     and the prompt, record the itemized prompt, build the payload.
  4. Call the model client. A Blocking result is applied in one go; a
     Streaming result is applied chunk by chunk, with reasoning separated
     and name leaks cut as the text arrives.
  5. Apply the result by mode: NEW / REGENERATE create a message (lazily,
     on the first non-blank text), CONTINUE appends to the last message,
     ADD_SWIPE adds a swipe to it.

Every await is a checkpoint: the cancellation handle is checked and the
session must still point at the chat the generation started on.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable

from tavern_gen.config import Settings
from tavern_gen.errors import (
    ConfigurationError,
    ContextSwitchedError,
    EmptyResponseError,
    GenerationCancelled,
    TavernError,
)
from tavern_gen.hooks import (
    Cancellation,
    ContextRequest,
    GenerationOutcome,
    GenerationRequest,
    HookRegistry,
    cancellable,
)
from tavern_gen.llm import Blocking, HttpLLM, ModelClient, Streaming
from tavern_gen.models import (
    ApiMessage,
    ChatMessage,
    ChatState,
    ConnectionProfile,
    GenerationMode,
    GenerationPayload,
    GenerationResponse,
    ItemizedPrompt,
    LoreBook,
    Participant,
    SamplerSettings,
    SwipeInfo,
    UsageRecord,
    timestamp,
)
from tavern_gen.pipeline.context import GenerationContext
from tavern_gen.pipeline.names import NameLeakDetector, trim_name_leak
from tavern_gen.pipeline.session import ChatSession
from tavern_gen.prompt_builder import PromptBuilder
from tavern_gen.reasoning import ReasoningParser, split_reasoning
from tavern_gen.tokenizer import Tokenizer, count_message

logger = logging.getLogger(__name__)

CONTINUE_NUDGE = "(Continue)"

ClientFactory = Callable[[ConnectionProfile], ModelClient]
BookLookup = Callable[[str], "LoreBook | None"]


class _StreamTarget:
    """The message a stream writes into.

    Nothing is written until the first non-blank text arrives (`opened`);
    blank text before that is held in `pending`.
    """

    def __init__(self, message: ChatMessage | None = None, index: int = -1) -> None:
        self.message = message
        self.index = index
        self.base = message.mes if message is not None else ""
        self.generated = ""
        self.pending = ""
        self.opened = False


class GenerationOrchestrator:
    """Drives generations for one `ChatSession`.

    Args:
        session:        The conversation session (chat, guards, queue, audit).
        characters:     Known participants; the chat's `metadata.members`
                        selects which of them are active.
        persona:        The user's persona.
        settings:       Profiles, sampler, lore settings, name-hijack policy.
        tokenizer:      Token counter used for budgets and audit.
        client_factory: Builds a model client for a connection profile.
        book_lookup:    Resolves a lore book by name (e.g. Storage.get_book).
        hooks:          Registered collaborators.
    """

    def __init__(
        self,
        session: ChatSession,
        *,
        characters: list[Participant],
        persona: Participant,
        settings: Settings,
        tokenizer: Tokenizer,
        client_factory: ClientFactory = HttpLLM.from_profile,
        book_lookup: BookLookup | None = None,
        hooks: HookRegistry | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.session = session
        self.characters = characters
        self.persona = persona
        self.settings = settings
        self.tokenizer = tokenizer
        self.client_factory = client_factory
        self.book_lookup = book_lookup
        self.hooks = hooks or HookRegistry()
        self.rng = rng or random.Random()

    # -- lookups ---------------------------------------------------------------

    def active_participants(self, chat: ChatState | None = None) -> list[Participant]:
        """Participants of the chat, in member order; all known ones if unset."""
        chat = chat or self.session.chat
        if chat is None or not chat.metadata.members:
            return list(self.characters)
        by_avatar = {c.avatar: c for c in self.characters}
        return [by_avatar[a] for a in chat.metadata.members if a in by_avatar]

    def find_participant(self, avatar: str) -> Participant | None:
        return next((c for c in self.characters if c.avatar == avatar), None)

    def profile_for(self, name: str | None = None) -> ConnectionProfile:
        profile = self.settings.profile(name)
        if profile is None:
            raise ConfigurationError(
                f"Connection profile {name or self.settings.active_profile!r} is not configured"
            )
        return profile

    def _books(self, chat: ChatState) -> list[LoreBook]:
        if self.book_lookup is None:
            return []
        names = list(dict.fromkeys([*self.settings.lore_books, *chat.metadata.extra.get("lore_books", [])]))
        books = []
        for name in names:
            book = self.book_lookup(name)
            if book is None:
                logger.warning("lore book %r not found", name)
            else:
                books.append(book)
        return books

    def _ensure_current(self, chat: ChatState) -> None:
        if self.session.chat is not chat:
            raise ContextSwitchedError("The conversation changed during generation")

    # -- public API --------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        *,
        trigger_generation: bool = True,
        generation_id: str | None = None,
    ) -> ChatMessage | None:
        """Append a user message and, by default, generate a reply to it."""
        text = text.strip()
        chat = self.session.chat
        if not text or chat is None or self.session.busy:
            return None

        message = ChatMessage(
            name=self.persona.name or "User",
            is_user=True,
            mes=text,
            swipes=[text],
            swipe_info=[SwipeInfo()],
            original_avatar=self.persona.avatar,
        )
        try:
            await self.hooks.veto("before_message_create", message, cancel=Cancellation())
        except GenerationCancelled as e:
            logger.info("user message creation vetoed: %s", e.reason)
            return None
        if self.session.chat is not chat:
            logger.warning("chat changed while creating message; message dropped")
            return None

        chat.messages.append(message)
        await self.hooks.emit("on_message_created", len(chat.messages) - 1, message)

        if trigger_generation:
            await self.generate(GenerationMode.NEW, generation_id=generation_id)
        return message

    async def abort(self) -> None:
        """Cancel every generation running in this session, nested ones included."""
        self.session.speaker_queue.clear()
        for cancel in list(self.session.cancellations):
            cancel.cancel("Generation aborted")

    async def generate(
        self,
        mode: GenerationMode = GenerationMode.NEW,
        *,
        generation_id: str | None = None,
        force_speaker: str | None = None,
    ) -> ChatMessage | None:
        """Run one generation. Returns the created/updated message, or None."""
        session = self.session
        if session.is_generating:
            logger.debug("generation already running; request dropped")
            return None
        if session.is_preparing and not force_speaker:
            logger.debug("speaker resolution in progress; request dropped")
            return None
        chat = session.chat
        if chat is None:
            logger.error("generate called without an active chat")
            return None

        mode = GenerationMode(mode)
        last = chat.messages[-1] if chat.messages else None
        if mode is GenerationMode.REGENERATE:
            if last is None or last.is_user:
                mode = GenerationMode.NEW
            else:
                force_speaker = force_speaker or last.original_avatar
                chat.messages.pop()
        elif mode in (GenerationMode.CONTINUE, GenerationMode.ADD_SWIPE):
            if last is None or last.is_user:
                logger.warning("%s needs a participant message to work on", mode.value)
                return None
            force_speaker = force_speaker or last.original_avatar

        generation_id = generation_id or uuid.uuid4().hex
        cancel = Cancellation()
        session.cancellations.add(cancel)
        session.current_generation_id = generation_id

        message: ChatMessage | None = None
        error: Exception | None = None
        cancelled = False
        started = False
        try:
            if force_speaker:
                speaker = self.find_participant(force_speaker)
            else:
                session.is_preparing = True
                try:
                    request = GenerationRequest(mode, generation_id)
                    await self.hooks.veto("on_generation_requested", request, cancel=cancel)
                    if request.handled:
                        logger.debug("generation %s handed over to a scheduler", generation_id)
                        return None
                finally:
                    session.is_preparing = False
                active = self.active_participants(chat)
                speaker = active[0] if active else None

            if speaker is None:
                raise ConfigurationError("No character is available to speak")

            session.is_generating = True
            started = True
            await self.hooks.veto("on_generation_started", generation_id, speaker, cancel=cancel)
            message = await self._run(speaker, mode, generation_id, chat, cancel)
        except GenerationCancelled as e:
            cancelled = True
            logger.info("generation %s cancelled: %s", generation_id, e.reason or "no reason")
        except TavernError as e:
            error = e
            logger.error("generation %s failed: %s", generation_id, e)
            await self.hooks.notice("error", str(e))
        except Exception as e:
            error = e
            logger.exception("generation %s failed unexpectedly", generation_id)
            await self.hooks.notice("error", f"Generation failed: {e}")
        finally:
            session.cancellations.discard(cancel)
            if started:
                session.is_generating = False
            if session.current_generation_id == generation_id:
                session.current_generation_id = None

        if started:
            await self.hooks.emit(
                "on_generation_finished",
                GenerationOutcome(
                    generation_id, mode,
                    message=None if cancelled else message,
                    error=error, cancelled=cancelled,
                ),
            )
        if cancelled:
            await self.hooks.emit("on_generation_aborted", generation_id)
            return None
        return message

    # -- one generation ------------------------------------------------------------

    def _stop_names(self, context: GenerationContext, active: list[Participant]) -> set[str]:
        """Names whose "Name:" line ends the reply, per the name-hijack policy."""
        others = {c.avatar: c for c in [*active, *context.characters] if c.avatar != context.speaker.avatar}
        group = len(others) > 0
        policy = self.settings.stop_on_name_hijack
        if policy == "none" or (policy == "group" and not group) or (policy == "single" and group):
            return set()
        names = {c.name.strip() for c in others.values()}
        names.add(context.player_name.strip())
        names.discard("")
        names.discard(context.speaker.name.strip())
        return names

    async def _build_context(
        self, speaker: Participant, mode: GenerationMode, generation_id: str,
        chat: ChatState, cancel: Cancellation,
    ) -> GenerationContext:
        profile = self.profile_for(chat.metadata.connection_profile)
        if not profile.model:
            raise ConfigurationError(f"Connection profile {profile.name!r} has no model selected")
        sampler = SamplerSettings.model_validate({**self.settings.sampler.model_dump(), **profile.sampler})

        request = ContextRequest(speaker, [speaker.model_copy(deep=True)])
        await self.hooks.emit("on_resolve_context", request)
        cancel.raise_if_cancelled()
        self._ensure_current(chat)

        history = list(chat.messages)
        if mode is GenerationMode.ADD_SWIPE:
            history.pop()

        context = GenerationContext(
            generation_id=generation_id,
            mode=mode,
            characters=request.characters or [speaker.model_copy(deep=True)],
            speaker=speaker,
            persona=self.persona,
            metadata=chat.metadata,
            history=history,
            sampler=sampler,
            profile=profile,
            tokenizer=self.tokenizer,
            cancel=cancel,
            reasoning_template=profile.reasoning_template or self.settings.reasoning_template,
        )
        context.stop_names = self._stop_names(context, self.active_participants(chat))
        stops = list(sampler.stop)
        for name in sorted(context.stop_names):
            stop = f"\n{name}:"
            if stop not in stops:
                stops.append(stop)
        sampler.stop = stops
        return context

    async def _run(
        self, speaker: Participant, mode: GenerationMode, generation_id: str,
        chat: ChatState, cancel: Cancellation,
    ) -> ChatMessage | None:
        context = await self._build_context(speaker, mode, generation_id, chat, cancel)
        await self.hooks.veto("before_prompt", context, cancel=cancel)
        self._ensure_current(chat)

        builder = PromptBuilder(
            characters=context.characters,
            persona=context.persona,
            history=context.history,
            sampler=context.sampler,
            metadata=context.metadata,
            lore_settings=self.settings.lore,
            books=self._books(chat),
            tokenizer=context.tokenizer,
            speaker=context.speaker,
            rng=self.rng,
        )
        messages = builder.build()
        lore = builder.processed_lore
        if lore is not None and lore.overflowed and self.settings.lore.overflow_alert:
            await self.hooks.notice("warning", "Lore budget exceeded; lower-priority entries were dropped")

        if self._needs_nudge(chat, messages, mode):
            messages.append(ApiMessage(role="user", content=CONTINUE_NUDGE, name=context.player_name))

        prompt_tokens = sum(count_message(context.tokenizer, m) for m in messages)
        self._record_prompt(context, chat, messages, builder, prompt_tokens)

        payload = GenerationPayload(
            messages=messages,
            model=context.profile.model,
            max_tokens=context.sampler.max_tokens,
            temperature=context.sampler.temperature,
            top_p=context.sampler.top_p,
            stop=context.sampler.stop,
            stream=context.sampler.stream,
        )
        await self.hooks.veto("before_payload", payload, cancel=cancel)
        self._ensure_current(chat)

        client = self.client_factory(context.profile)
        gen_started = timestamp()
        t0 = time.monotonic()
        result = await cancellable(client.generate(payload), cancel)
        self._ensure_current(chat)

        if isinstance(result, Blocking):
            message, output = await self._apply_response(context, chat, result.response, gen_started)
        elif isinstance(result, Streaming):
            message, output = await self._consume_stream(context, chat, result, gen_started)
        else:
            raise TypeError(f"Model client returned {type(result).__name__}")

        record = UsageRecord(
            model=context.profile.model,
            input_tokens=prompt_tokens,
            output_tokens=output,
            duration_ms=int((time.monotonic() - t0) * 1000),
            generation_id=generation_id,
        )
        self.session.usage.append(record)
        await self.hooks.emit("on_usage", record)
        return message

    def _needs_nudge(self, chat: ChatState, messages: list[ApiMessage], mode: GenerationMode) -> bool:
        """Single-character chats get a user turn if the prompt ends on the assistant."""
        if mode is GenerationMode.CONTINUE or not messages:
            return False
        last = messages[-1]
        if last.role != "assistant" or (last.content or "").strip().endswith(":"):
            return False
        return len(self.active_participants(chat)) == 1

    def _record_prompt(
        self, context: GenerationContext, chat: ChatState, messages: list[ApiMessage],
        builder: PromptBuilder, prompt_tokens: int,
    ) -> None:
        mode = context.mode
        last = chat.messages[-1] if chat.messages else None
        if mode is GenerationMode.ADD_SWIPE and last is not None:
            swipe_id = len(last.swipes) if last.swipes else 1
        elif mode is GenerationMode.CONTINUE and last is not None:
            swipe_id = last.swipe_id
        else:
            swipe_id = 0
        in_place = mode in (GenerationMode.CONTINUE, GenerationMode.ADD_SWIPE)

        breakdown = builder.breakdown.model_copy()
        breakdown.prompt_total = prompt_tokens
        breakdown.padding = context.sampler.max_context - prompt_tokens - context.sampler.max_tokens
        lore = builder.processed_lore
        self.session.itemized_prompts.append(ItemizedPrompt(
            generation_id=context.generation_id,
            message_index=len(chat.messages) - 1 if in_place else len(chat.messages),
            swipe_id=swipe_id,
            model=context.profile.model,
            profile=context.profile.name,
            messages=[m.model_copy(deep=True) for m in messages],
            breakdown=breakdown,
            lore_entries=dict(lore.triggered) if lore is not None else {},
        ))

    # -- applying results ------------------------------------------------------------

    def _swipe_info(self, context: GenerationContext, message: ChatMessage, gen_started: str,
                    reasoning: str) -> SwipeInfo:
        return SwipeInfo(
            send_date=message.send_date,
            gen_started=gen_started,
            gen_finished=message.gen_finished,
            generation_id=context.generation_id,
            extra={"reasoning": reasoning, "token_count": message.extra.get("token_count")},
        )

    def _new_message(self, context: GenerationContext, text: str, gen_started: str) -> ChatMessage:
        return ChatMessage(
            name=context.speaker.name,
            mes=text,
            swipes=[text],
            swipe_id=0,
            original_avatar=context.speaker.avatar,
            gen_started=gen_started,
            extra={"reasoning": ""},
        )

    async def _create(self, context: GenerationContext, chat: ChatState, message: ChatMessage) -> int:
        await self.hooks.veto("before_message_create", message, cancel=context.cancel)
        self._ensure_current(chat)
        chat.messages.append(message)
        index = len(chat.messages) - 1
        await self.hooks.emit("on_message_created", index, message)
        return index

    @staticmethod
    def _attach_images(message: ChatMessage, images: list[str]) -> None:
        if images:
            media = message.extra.setdefault("media", [])
            media.extend({"source": "url", "type": "image", "url": url} for url in images)

    async def _apply_response(
        self, context: GenerationContext, chat: ChatState, response: GenerationResponse, gen_started: str,
    ) -> tuple[ChatMessage, int]:
        content, reasoning = response.content, response.reasoning
        if context.reasoning_template is not None:
            content, extra_reasoning = split_reasoning(content, context.reasoning_template)
            reasoning += extra_reasoning
        if context.stop_names:
            content = trim_name_leak(content, context.stop_names)
        if not content.strip() and not reasoning.strip() and not response.images:
            raise EmptyResponseError("The model returned an empty response")

        mode = context.mode
        token_count = response.token_count
        if token_count is None:
            token_count = self.tokenizer.count(content)

        if mode in (GenerationMode.CONTINUE, GenerationMode.ADD_SWIPE):
            index = len(chat.messages) - 1
            message = chat.messages[index]
            if mode is GenerationMode.CONTINUE:
                message.append_text(content)
                message.extra["token_count"] = self.tokenizer.count(message.mes)
            else:
                message.add_swipe(content.lstrip())
                message.extra["token_count"] = token_count
            message.gen_finished = timestamp()
            if reasoning:
                message.extra["reasoning"] = reasoning
            self._attach_images(message, response.images)
            if mode is GenerationMode.ADD_SWIPE:
                message.record_swipe_info(self._swipe_info(context, message, gen_started, reasoning))
            await self.hooks.emit("on_message_updated", index, message)
            return message, token_count

        message = self._new_message(context, content.lstrip(), gen_started)
        message.gen_finished = timestamp()
        message.extra.update(reasoning=reasoning, token_count=token_count)
        self._attach_images(message, response.images)
        message.record_swipe_info(self._swipe_info(context, message, gen_started, reasoning))
        await self._create(context, chat, message)
        return message, token_count

    async def _consume_stream(
        self, context: GenerationContext, chat: ChatState, result: Streaming, gen_started: str,
    ) -> tuple[ChatMessage, int]:
        mode = context.mode
        cancel = context.cancel
        parser = ReasoningParser(context.reasoning_template) if context.reasoning_template else None
        detector = NameLeakDetector(context.stop_names) if context.stop_names else None

        if mode is GenerationMode.CONTINUE:
            target = _StreamTarget(chat.messages[-1], len(chat.messages) - 1)
        else:
            target = _StreamTarget()
        reasoning_parts: list[str] = []
        images: list[str] = []

        async def apply(visible: str, *, final: bool = False) -> bool:
            """Write visible text into the message; True once a name leak cut it.

            Until the message is opened, text is held while it is blank or while
            its first line could still become another speaker's "Name: ".
            """
            leaked = False
            if target.opened:
                if not visible:
                    return False
                target.message.append_text(visible)
                target.generated += visible
            else:
                target.pending += visible
                if not target.pending.strip():
                    return False
                text = target.pending if mode is GenerationMode.CONTINUE else target.pending.lstrip()
                if detector is not None and not final and detector.undecided(text):
                    return False
                target.pending = ""
                if detector is not None:
                    trimmed = detector.check(text)
                    if trimmed is not None:
                        leaked, text = True, trimmed
                        if not text.strip():
                            logger.info("reply opened with a name leak; nothing kept")
                            return True
                await self._open_target(context, chat, target, text, gen_started)
                target.generated = text

            if reasoning_parts:
                target.message.extra["reasoning"] = "".join(reasoning_parts)
            if detector is not None and not leaked:
                trimmed = detector.check(target.generated)
                if trimmed is not None:
                    logger.info("name leak detected; reply cut after %d chars", len(trimmed))
                    target.generated = trimmed
                    target.message.set_text(target.base + trimmed)
                    leaked = True
            await self.hooks.emit("on_message_updated", target.index, target.message)
            return leaked

        iterator = aiter(result.chunks)
        leaked = False
        try:
            while True:
                try:
                    chunk = await cancellable(anext(iterator), cancel)
                except StopAsyncIteration:
                    break
                await self.hooks.veto("on_stream_chunk", chunk, cancel=cancel)
                self._ensure_current(chat)

                visible, reasoning = chunk.delta, chunk.reasoning
                if parser is not None:
                    visible, parsed = parser.feed(visible)
                    reasoning += parsed
                if reasoning:
                    reasoning_parts.append(reasoning)
                images.extend(chunk.images)
                if await apply(visible):
                    leaked = True
                    break
        finally:
            await result.close()

        if parser is not None and not leaked:
            visible, parsed = parser.flush()
            if parsed:
                reasoning_parts.append(parsed)
            leaked = await apply(visible)
        if not leaked and not target.opened:
            await apply("", final=True)

        reasoning_text = "".join(reasoning_parts)
        if not target.opened:
            if not reasoning_text.strip() and not images:
                raise EmptyResponseError("The model returned an empty response")
            await self._open_target(context, chat, target, "", gen_started)

        message = target.message
        message.gen_finished = timestamp()
        output_tokens = self.tokenizer.count(target.generated)
        message.extra["token_count"] = (
            self.tokenizer.count(message.mes) if mode is GenerationMode.CONTINUE else output_tokens
        )
        if reasoning_text:
            message.extra["reasoning"] = reasoning_text
        self._attach_images(message, images)
        if mode is not GenerationMode.CONTINUE:
            message.record_swipe_info(self._swipe_info(context, message, gen_started, reasoning_text))
        await self.hooks.emit("on_message_updated", target.index, message)
        return message, output_tokens

    async def _open_target(
        self, context: GenerationContext, chat: ChatState, target: _StreamTarget, text: str, gen_started: str,
    ) -> None:
        """First write of a stream: create the message, add the swipe, or append."""
        self._ensure_current(chat)
        target.opened = True
        if context.mode is GenerationMode.CONTINUE:
            target.message.append_text(text)
            return
        if context.mode is GenerationMode.ADD_SWIPE:
            index = len(chat.messages) - 1
            message = chat.messages[index]
            message.add_swipe(text)
            target.message, target.index = message, index
            return
        message = self._new_message(context, text, gen_started)
        target.message = message
        target.index = await self._create(context, chat, message)
