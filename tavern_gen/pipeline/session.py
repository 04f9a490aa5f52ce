"""Conversation session: the state one chat's generations share.

A session points at the active conversation and owns the in-flight guards,
the speaker queue filled by group scheduling, the itemized-prompt audit log,
usage records and every live cancellation handle. Separate sessions never
share state, so separate conversations can generate concurrently.
"""

from __future__ import annotations

import logging
from collections import deque

from tavern_gen.hooks import Cancellation
from tavern_gen.models import ChatState, ItemizedPrompt, UsageRecord

logger = logging.getLogger(__name__)


class ChatSession:
    def __init__(self, chat: ChatState | None = None) -> None:
        self.chat = chat
        self.is_generating = False
        self.is_preparing = False
        self.current_generation_id: str | None = None
        self.speaker_queue: deque[str] = deque()
        self.itemized_prompts: list[ItemizedPrompt] = []
        self.usage: list[UsageRecord] = []
        self.cancellations: set[Cancellation] = set()

    @property
    def busy(self) -> bool:
        return self.is_generating or self.is_preparing

    def switch_chat(self, chat: ChatState | None) -> None:
        """Point the session at another conversation.

        Running generations notice the switch at their next checkpoint and
        stop writing; the speaker queue belongs to the old chat and is dropped.
        """
        logger.debug("switching chat (busy=%s)", self.busy)
        self.chat = chat
        self.speaker_queue.clear()

    def itemized_prompt(self, generation_id: str) -> ItemizedPrompt | None:
        return next((p for p in reversed(self.itemized_prompts) if p.generation_id == generation_id), None)
