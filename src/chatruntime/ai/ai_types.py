"""Shared typing contracts for the chat runtime."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable

__all__ = [
    "TokenCounterProtocol",
    "TokenEncoderProtocol",
    "ChatRole",
    "ToolCall",
    "ChatReference",
    "ChatMessage",
]


@runtime_checkable
class TokenCounterProtocol(Protocol):
    """Protocol describing token counting backends."""

    name: str

    async def count_tokens(self, text: str) -> int:
        """Return the token count for *text*."""
        ...


@runtime_checkable
class TokenEncoderProtocol(TokenCounterProtocol, Protocol):
    """Counting backends that can also materialize the token id sequence."""

    async def encode(self, text: str) -> list[int]:
        """Return the token ids for *text*."""
        ...


class ChatRole:
    """Message roles understood by the model client."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: str = ""

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True, frozen=True)
class ChatReference:
    """A piece of retrieved content the reply may cite."""

    title: str
    content: str
    uri: str = ""
    kind: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChatMessage:
    """A conversation message.

    ``token_count`` caches the cost of the message once a token accountant has
    measured it so history does not get re-encoded on every turn;
    ``token_counter`` names the backend that produced it.
    """

    role: str
    content: str = ""
    name: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    references: Sequence[ChatReference] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    token_count: int | None = None
    token_counter: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.tool_calls

    def to_openai(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        if self.tool_calls:
            payload["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        return payload
