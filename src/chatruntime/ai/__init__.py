"""AI client, token accounting, and chat orchestration."""

from .client import AIClient, ClientSettings, ModelClient, ModelStreamEvent
from .tokens import ApproxByteCounter, CharacterCounter, TiktokenEncoder, build_token_counter

__all__ = [
    "AIClient",
    "ClientSettings",
    "ModelClient",
    "ModelStreamEvent",
    "ApproxByteCounter",
    "CharacterCounter",
    "TiktokenEncoder",
    "build_token_counter",
]
