from __future__ import annotations

from .config import RuntimeConfig, load_runtime_config
from .dispatch import DispatchScheduler
from .engine import ChatBackend, ConversationEngine
from .router import PendingReply, RequestRouter
from .session import ConversationSession, SessionSnapshot
from .tabs import TabManager, TabSlot

__all__ = [
    "ChatBackend",
    "ConversationEngine",
    "ConversationSession",
    "DispatchScheduler",
    "PendingReply",
    "RequestRouter",
    "RuntimeConfig",
    "SessionSnapshot",
    "TabManager",
    "TabSlot",
    "load_runtime_config",
]
