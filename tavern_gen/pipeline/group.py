"""Group chat scheduling.

`GroupScheduler` is registered as a hook on the orchestrator. For a NEW
generation in a chat with more than one member it takes the turn over:

  1. fill the session's speaker queue (reply strategy, or a model decision)
  2. mark the request handled so the orchestrator stops there
  3. drain the queue, calling back into the orchestrator with each queued
     speaker forced

An aborted generation stops the drain and empties the queue. The scheduler
also decides which members are in the prompt context (handling mode).
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING

from tavern_gen.hooks import Cancellation, ContextRequest, GenerationHooks, GenerationRequest
from tavern_gen.models import GenerationMode, HandlingMode, ReplyStrategy
from tavern_gen.speakers import decide_speaker_via_model, determine_next_speakers

if TYPE_CHECKING:
    from tavern_gen.pipeline.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


class GroupScheduler(GenerationHooks):
    def __init__(self, orchestrator: GenerationOrchestrator, rng: random.Random | None = None) -> None:
        self.orchestrator = orchestrator
        self.rng = rng or orchestrator.rng
        self._aborted = False

    @property
    def session(self):
        return self.orchestrator.session

    def _is_group(self) -> bool:
        chat = self.session.chat
        return chat is not None and len(self.orchestrator.active_participants(chat)) > 1

    async def _fill_queue(self, cancel: Cancellation) -> None:
        orch = self.orchestrator
        chat = self.session.chat
        config = chat.metadata.group
        members = orch.active_participants(chat)

        if config.reply_strategy is ReplyStrategy.LLM_DECISION:
            eligible = [p for p in members if not config.is_muted(p.avatar)]
            profile = orch.profile_for(config.decision_connection_profile or chat.metadata.connection_profile)
            speaker = await decide_speaker_via_model(
                orch.client_factory(profile),
                eligible,
                orch.persona,
                chat.messages,
                model=profile.model,
                template=config.decision_prompt_template,
                context_size=config.decision_context_size,
                cancel=cancel,
            )
            if speaker is not None:
                self.session.speaker_queue.append(speaker.avatar)
            return

        speakers = determine_next_speakers(members, config, chat.messages, self.rng)
        self.session.speaker_queue.extend(p.avatar for p in speakers)

    async def on_generation_requested(self, request: GenerationRequest, cancel: Cancellation) -> None:
        if request.mode is not GenerationMode.NEW or not self._is_group():
            return

        self._aborted = False
        queue = self.session.speaker_queue
        if not queue:
            await self._fill_queue(cancel)
        request.handled = True
        logger.debug("group turn: queued %s", list(queue))

        while queue and not self._aborted and not cancel.cancelled:
            avatar = queue.popleft()
            await self.orchestrator.generate(GenerationMode.NEW, force_speaker=avatar)

    async def on_generation_aborted(self, generation_id: str) -> None:
        self._aborted = True
        self.session.speaker_queue.clear()

    async def on_resolve_context(self, request: ContextRequest) -> None:
        if not self._is_group():
            return
        chat = self.session.chat
        config = chat.metadata.group
        members = self.orchestrator.active_participants(chat)
        speaker = request.speaker

        if config.handling_mode is HandlingMode.SWAP:
            return
        if config.handling_mode is HandlingMode.JOIN_EXCLUDE_MUTED:
            members = [p for p in members if p.avatar == speaker.avatar or not config.is_muted(p.avatar)]
        request.characters = [p.model_copy(deep=True) for p in members]
