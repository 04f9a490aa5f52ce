import asyncio
import random

import pytest

from tavern_gen.config import Settings
from tavern_gen.hooks import HookRegistry
from tavern_gen.llm import Blocking, Streaming
from tavern_gen.models import (
    ChatMessage,
    ChatState,
    ConnectionProfile,
    GenerationPayload,
    GenerationResponse,
    Participant,
    StreamChunk,
    SwipeInfo,
)
from tavern_gen.pipeline import ChatSession, GenerationOrchestrator
from tavern_gen.tokenizer import WordTokenizer


class StubClient:
    """Scripted model client.

    Each script item answers one call, the last one repeats:
      str / GenerationResponse  -> Blocking
      list                      -> Streaming; items are str or StreamChunk,
                                   an asyncio.Event pauses the stream until set
    Every payload received is kept in `payloads`.
    """

    def __init__(self, *script) -> None:
        self.script = list(script) or [""]
        self.payloads: list[GenerationPayload] = []
        self.paused = asyncio.Event()

    async def generate(self, payload: GenerationPayload):
        self.payloads.append(payload)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, str):
            return Blocking(GenerationResponse(content=item))
        if isinstance(item, GenerationResponse):
            return Blocking(item)
        return Streaming(self._chunks(list(item)))

    async def _chunks(self, items):
        for item in items:
            if isinstance(item, asyncio.Event):
                self.paused.set()
                await item.wait()
            elif isinstance(item, StreamChunk):
                yield item
            else:
                yield StreamChunk(delta=item)


def user_message(text: str, name: str = "Alex") -> ChatMessage:
    return ChatMessage(name=name, is_user=True, mes=text, swipes=[text], swipe_info=[SwipeInfo()])


def char_message(participant: Participant, text: str) -> ChatMessage:
    return ChatMessage(
        name=participant.name, mes=text, swipes=[text], swipe_info=[SwipeInfo()],
        original_avatar=participant.avatar,
    )


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def rin() -> Participant:
    return Participant(
        avatar="rin.png", name="Rin",
        description="{{char}} is a wandering swordswoman.",
        personality="stoic", scenario="A roadside inn.",
        talkativeness=0.5, tags=["human"],
    )


@pytest.fixture
def kai() -> Participant:
    return Participant(
        avatar="kai.png", name="Kai",
        description="{{char}} is a fox spirit.",
        personality="playful", talkativeness=0.5, tags=["spirit"],
    )


@pytest.fixture
def persona() -> Participant:
    return Participant(avatar="alex.png", name="Alex", description="A traveling merchant.")


@pytest.fixture
def settings() -> Settings:
    return Settings(connection_profiles=[ConnectionProfile(name="default", model="test-model")])


@pytest.fixture
def chat() -> ChatState:
    return ChatState(messages=[user_message("Hello there.")])


@pytest.fixture
def session(chat: ChatState) -> ChatSession:
    return ChatSession(chat)


@pytest.fixture
def make_orchestrator(session, rin, persona, settings, tokenizer):
    """Factory: orchestrator over `session` whose client is the given StubClient."""

    def make(client: StubClient, *, characters=None, hooks=None, **kwargs) -> GenerationOrchestrator:
        return GenerationOrchestrator(
            session,
            characters=characters or [rin],
            persona=persona,
            settings=kwargs.pop("settings", settings),
            tokenizer=tokenizer,
            client_factory=lambda profile: client,
            hooks=hooks or HookRegistry(),
            rng=random.Random(7),
            **kwargs,
        )

    return make
