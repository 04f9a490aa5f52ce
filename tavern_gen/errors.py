"""Error taxonomy for the generation pipeline.

  ConfigurationError   — nothing to generate with (no speaker, no model,
                         no prompt blocks). Raised before any request.
  EmptyResponseError   — the backend answered but produced no usable text.
  ContextSwitchedError — the conversation changed under a running generation.
  LLMError             — backend/transport failures (defined in tavern_gen.llm).
  PromptError          — template failures (defined in tavern_gen.macros).

GenerationCancelled is deliberately *not* a TavernError: cancellation is a
normal outcome with its own notification path.
"""


class TavernError(Exception):
    """Base class for every error the pipeline surfaces to the user."""


class GenerationError(TavernError):
    """A generation could not produce a result."""


class ConfigurationError(GenerationError):
    """Generation cannot start with the current settings."""


class EmptyResponseError(GenerationError):
    """The backend returned neither visible text nor reasoning."""


class ContextSwitchedError(GenerationError):
    """The active conversation changed while a generation was in flight."""


class GenerationCancelled(Exception):
    """Raised at a suspension point once the cancellation handle is set."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or "Generation cancelled")
        self.reason = reason
