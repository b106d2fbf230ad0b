"""Token-budgeted conversation memory and prompt assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ...services.settings import ChatConfiguration
from ..ai_types import ChatMessage, ChatReference, ChatRole, TokenCounterProtocol
from ..tokens import count_function_tokens, count_message_tokens
from .tools.types import FunctionSpec

__all__ = ["ChatMemory", "ChatPrompt", "PromptUsage", "RETRIEVED_CONTENT_SEPARATOR", "build_retrieved_content_text"]

LOGGER = logging.getLogger(__name__)

RETRIEVED_CONTENT_SEPARATOR = "=" * 32
_RETRIEVED_CONTENT_HEADER = (
    "Here are the information you know about the system and the project, "
    f"separated by {RETRIEVED_CONTENT_SEPARATOR}"
)
# Every reply is primed with <|start|>assistant<|message|>.
_REPLY_PRIMING_TOKENS = 3


def build_retrieved_content_text(references: Sequence[ChatReference]) -> str:
    """Render references as the single retrieved-content message body."""

    if not references:
        return ""
    parts = [_RETRIEVED_CONTENT_HEADER]
    for index, reference in enumerate(references):
        parts.append(f"\n\n{RETRIEVED_CONTENT_SEPARATOR}[DOCUMENT {index}]\n\n{reference.content}")
    return "".join(parts)


@dataclass(slots=True, frozen=True)
class PromptUsage:
    system_prompt: int = 0
    context_system_prompt: int = 0
    functions: int = 0
    messages: int = 0
    retrieved_content: int = 0

    @property
    def total(self) -> int:
        return (
            self.system_prompt
            + self.context_system_prompt
            + self.functions
            + self.messages
            + self.retrieved_content
            + _REPLY_PRIMING_TOKENS
        )


@dataclass(slots=True)
class ChatPrompt:
    """The assembled request: ordered messages plus the references that made it in."""

    messages: list[ChatMessage]
    references: list[ChatReference] = field(default_factory=list)
    remaining_tokens: int = 0
    usage: PromptUsage = field(default_factory=PromptUsage)


class ChatMemory:
    """Conversation history that assembles prompts within the token budget.

    The prompt is laid out as system prompt, history, retrieved content,
    context system prompt, then the newest message. The system prompt, the
    context system prompt, function schemas and the newest message are
    always paid for. History is filled newest first, so the oldest messages
    drop out first. Retrieved content gets what is left, capped at half of
    the context window, and loses its lowest-priority entries first.
    """

    def __init__(
        self,
        *,
        system_prompt: str = "",
        configuration: ChatConfiguration | None = None,
        counter: TokenCounterProtocol,
    ) -> None:
        self.system_prompt = system_prompt
        self.context_system_prompt = ""
        self.configuration = configuration or ChatConfiguration()
        self.retrieved_content: list[ChatReference] = []
        self._counter = counter
        self._history: list[ChatMessage] = []

    # ------------------------------------------------------------------
    # History mutation
    # ------------------------------------------------------------------
    @property
    def history(self) -> list[ChatMessage]:
        return list(self._history)

    @property
    def counter(self) -> TokenCounterProtocol:
        return self._counter

    def append_message(self, message: ChatMessage) -> None:
        self._history.append(message)

    def mutate_history(self, update: Callable[[list[ChatMessage]], None]) -> None:
        update(self._history)

    def remove_message(self, message_id: str) -> None:
        self._history = [message for message in self._history if message.id != message_id]

    def clear_history(self) -> None:
        self._history.clear()

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------
    async def generate_prompt(self, functions: Sequence[FunctionSpec] = ()) -> ChatPrompt:
        system_message = ChatMessage(role=ChatRole.SYSTEM, content=self.system_prompt)
        context_message = ChatMessage(role=ChatRole.USER, content=self.context_system_prompt)
        system_tokens = await count_message_tokens(self._counter, system_message) if system_message.content else 0
        context_tokens = await count_message_tokens(self._counter, context_message) if context_message.content else 0
        function_tokens = 0
        for spec in functions:
            function_tokens += await count_function_tokens(self._counter, spec.to_openai_tool())

        mandatory = system_tokens + context_tokens + function_tokens + _REPLY_PRIMING_TOKENS
        available = self.configuration.max_tokens - self.configuration.minimum_reply_tokens - mandatory

        history, new_message, message_tokens = await self._select_history(available)
        remaining = available - message_tokens
        retrieved_message, references, retrieved_tokens = await self._fit_retrieved_content(remaining)

        ordered = [system_message, *history, retrieved_message, context_message, new_message]
        messages = [message for message in ordered if not message.is_empty]
        usage = PromptUsage(
            system_prompt=system_tokens,
            context_system_prompt=context_tokens,
            functions=function_tokens,
            messages=message_tokens,
            retrieved_content=retrieved_tokens,
        )
        LOGGER.debug(
            "Prompt tokens: system=%s context=%s functions=%s messages=%s retrieved=%s total=%s",
            usage.system_prompt,
            usage.context_system_prompt,
            usage.functions,
            usage.messages,
            usage.retrieved_content,
            usage.total,
        )
        return ChatPrompt(
            messages=messages,
            references=references,
            remaining_tokens=max(0, self.configuration.max_tokens - usage.total),
            usage=usage,
        )

    async def _select_history(self, budget: int) -> tuple[list[ChatMessage], ChatMessage, int]:
        cap = self.configuration.max_message_count
        selected: list[ChatMessage] = []
        new_message: ChatMessage | None = None
        used = 0
        last_index = len(self._history) - 1
        for index in range(last_index, -1, -1):
            message = self._history[index]
            if cap > 0 and len(selected) + (new_message is not None) >= cap:
                break
            if message.is_empty:
                continue
            tokens = await count_message_tokens(self._counter, message)
            if used + tokens > budget:
                break
            used += tokens
            if index == last_index:
                new_message = message
            else:
                selected.append(message)
        selected.reverse()
        # A tool result whose requesting assistant message was cut off is rejected by the model API.
        while selected and selected[0].role == ChatRole.TOOL:
            dropped = selected.pop(0)
            used -= dropped.token_count or 0
        return selected, new_message or ChatMessage(role=ChatRole.USER, content=""), used

    async def _fit_retrieved_content(self, budget: int) -> tuple[ChatMessage, list[ChatReference], int]:
        threshold = min(budget, self.configuration.max_tokens // 2)
        candidates = [reference for reference in self.retrieved_content if reference.content]

        async def cost(count: int) -> int:
            return await count_message_tokens(self._counter, _retrieved_message(candidates[:count]))

        if threshold <= 0 or not candidates:
            return _retrieved_message([]), [], 0

        full_cost = await cost(len(candidates))
        if full_cost <= threshold:
            return _retrieved_message(candidates), candidates, full_cost

        # Largest prefix that fits; prefixes only grow in cost.
        low, high, best_cost = 0, len(candidates) - 1, 0
        while low < high:
            middle = (low + high + 1) // 2
            middle_cost = await cost(middle)
            if middle_cost <= threshold:
                low, best_cost = middle, middle_cost
            else:
                high = middle - 1
        if low == 0:
            return _retrieved_message([]), [], 0
        kept = candidates[:low]
        LOGGER.debug("Kept %s of %s retrieved documents", len(kept), len(candidates))
        return _retrieved_message(kept), kept, best_cost


def _retrieved_message(references: Sequence[ChatReference]) -> ChatMessage:
    return ChatMessage(role=ChatRole.USER, content=build_retrieved_content_text(references))
