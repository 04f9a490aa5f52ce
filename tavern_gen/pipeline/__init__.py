"""Generation pipeline: one chat session, its orchestrator and collaborators.

  ChatSession             — the state generations in one conversation share
  GenerationOrchestrator  — runs a generation in one of four modes:
                            new, regenerate, continue, add_swipe
  GroupScheduler          — hook that picks speakers in multi-character chats
  NameLeakDetector        — cuts a reply where it starts speaking for someone else
"""

from .context import GenerationContext  # noqa: F401
from .group import GroupScheduler  # noqa: F401
from .names import NameLeakDetector, trim_name_leak  # noqa: F401
from .orchestrator import GenerationOrchestrator  # noqa: F401
from .session import ChatSession  # noqa: F401
