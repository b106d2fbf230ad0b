"""Chat orchestration: context collection, prompt assembly, and turns."""

from .context import (
    ChatContext,
    ChatContextCollector,
    ChatContextScope,
    RetrievalContextCollector,
    RetrievedContent,
    StaticContextCollector,
    collect_contexts,
    merge_contexts,
    parse_scopes,
)
from .memory import ChatMemory, ChatPrompt, PromptUsage
from .orchestrator import ChatOrchestrator, TextDelta, TurnFailed, TurnFinished, TurnStarted

__all__ = [
    "ChatContext",
    "ChatContextCollector",
    "ChatContextScope",
    "RetrievalContextCollector",
    "RetrievedContent",
    "StaticContextCollector",
    "collect_contexts",
    "merge_contexts",
    "parse_scopes",
    "ChatMemory",
    "ChatPrompt",
    "PromptUsage",
    "ChatOrchestrator",
    "TextDelta",
    "TurnFailed",
    "TurnFinished",
    "TurnStarted",
]
