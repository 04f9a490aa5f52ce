"""Collaborator hooks and cooperative cancellation.

Collaborators (group scheduling, trackers, loggers, UI bridges) subclass
`GenerationHooks`, override the checkpoints they care about, and register on a
`HookRegistry`. Hooks run in registration order and are awaited one by one.

Vetoable checkpoints receive the generation's `Cancellation`; setting it
stops the generation at that point with no result. Checkpoints:

    on_generation_requested  scheduling; set request.handled to take over
    on_resolve_context       may replace the participant set in context
    on_generation_started    veto
    before_prompt            GenerationContext is mutable; veto
    before_payload           GenerationPayload is mutable; veto
    before_message_create    ChatMessage is mutable; veto
    on_stream_chunk          StreamChunk is mutable; veto
    on_message_created / on_message_updated
    on_generation_finished / on_generation_aborted
    on_usage / on_notice
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from tavern_gen.errors import GenerationCancelled
from tavern_gen.models import (
    ChatMessage,
    GenerationMode,
    GenerationPayload,
    Participant,
    StreamChunk,
    UsageRecord,
)

if TYPE_CHECKING:
    from tavern_gen.pipeline.context import GenerationContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class Cancellation:
    """A cancellation handle shared by everything working on one generation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


async def cancellable(awaitable: Awaitable[T], cancel: Cancellation) -> T:
    """Await `awaitable` unless `cancel` fires first.

    Raises GenerationCancelled as soon as the handle is set, cancelling the
    pending awaitable, so a blocked stream read or request is released.
    """
    cancel.raise_if_cancelled()
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task
    raise GenerationCancelled(cancel.reason)


# ---------------------------------------------------------------------------
# Checkpoint payloads
# ---------------------------------------------------------------------------

@dataclass
class GenerationRequest:
    """Passed to on_generation_requested while no speaker is forced."""

    mode: GenerationMode
    generation_id: str
    handled: bool = False


@dataclass
class ContextRequest:
    """Participants that will be in context; hooks may replace the list."""

    speaker: Participant
    characters: list[Participant]


@dataclass
class GenerationOutcome:
    generation_id: str
    mode: GenerationMode
    message: ChatMessage | None = None
    error: Exception | None = None
    cancelled: bool = False


# ---------------------------------------------------------------------------
# Hook interface + registry
# ---------------------------------------------------------------------------

class GenerationHooks:
    """No-op base; override what you need."""

    async def on_generation_requested(self, request: GenerationRequest, cancel: Cancellation) -> None:
        pass

    async def on_resolve_context(self, request: ContextRequest) -> None:
        pass

    async def on_generation_started(self, generation_id: str, speaker: Participant, cancel: Cancellation) -> None:
        pass

    async def before_prompt(self, context: GenerationContext, cancel: Cancellation) -> None:
        pass

    async def before_payload(self, payload: GenerationPayload, cancel: Cancellation) -> None:
        pass

    async def before_message_create(self, message: ChatMessage, cancel: Cancellation) -> None:
        pass

    async def on_stream_chunk(self, chunk: StreamChunk, cancel: Cancellation) -> None:
        pass

    async def on_message_created(self, index: int, message: ChatMessage) -> None:
        pass

    async def on_message_updated(self, index: int, message: ChatMessage) -> None:
        pass

    async def on_generation_finished(self, outcome: GenerationOutcome) -> None:
        pass

    async def on_generation_aborted(self, generation_id: str) -> None:
        pass

    async def on_usage(self, record: UsageRecord) -> None:
        pass

    async def on_notice(self, level: str, message: str) -> None:
        pass


@dataclass
class HookRegistry:
    hooks: list[GenerationHooks] = field(default_factory=list)

    def register(self, hook: GenerationHooks) -> Callable[[], None]:
        """Add a hook; returns a callable that removes it again."""
        self.hooks.append(hook)
        return lambda: self.hooks.remove(hook) if hook in self.hooks else None

    async def emit(self, checkpoint: str, *args: Any) -> None:
        for hook in list(self.hooks):
            await getattr(hook, checkpoint)(*args)

    async def veto(self, checkpoint: str, *args: Any, cancel: Cancellation) -> None:
        """Run a vetoable checkpoint; raises GenerationCancelled on veto."""
        cancel.raise_if_cancelled()
        for hook in list(self.hooks):
            await getattr(hook, checkpoint)(*args, cancel)
            if cancel.cancelled:
                logger.info("%s vetoed by %s: %s", checkpoint, type(hook).__name__, cancel.reason)
                raise GenerationCancelled(cancel.reason)

    async def notice(self, level: str, message: str) -> None:
        """Surface a user-visible message (the toast equivalent)."""
        log = logger.error if level == "error" else logger.warning if level == "warning" else logger.info
        log("notice: %s", message)
        await self.emit("on_notice", level, message)
