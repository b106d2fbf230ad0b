"""Context collection: scopes, collectors, and retrieval-backed context."""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence, runtime_checkable

from ...services.settings import ChatConfiguration
from ..ai_types import ChatMessage, ChatReference
from ..memory.embeddings import EmbeddingError, EmbeddingProvider
from ..memory.vector_index import VectorIndexError
from ..memory.vector_store import TemporaryVectorStore
from .tools.types import FunctionDefinition

__all__ = [
    "ChatContextScope",
    "RetrievedContent",
    "ChatContext",
    "ChatContextCollector",
    "StaticContextCollector",
    "RetrievalContextCollector",
    "parse_scopes",
    "collect_contexts",
    "merge_contexts",
]

LOGGER = logging.getLogger(__name__)

# "@file+web  rest of the message": scope words joined by "+", ended by spaces.
_SCOPE_PREFIX = re.compile(r"@([^\W\d_]*(?:\+[^\W\d_]*)*) +(.*)", re.DOTALL)


class ChatContextScope(str, enum.Enum):
    FILE = "file"
    CODE = "code"
    SENSE = "sense"
    PROJECT = "project"
    WEB = "web"

    @classmethod
    def from_text(cls, text: str) -> "ChatContextScope | None":
        """Resolve an abbreviation (``"f"``, ``"proj"``) to the first scope it prefixes."""

        lowered = text.lower()
        for scope in cls:
            if scope.value.startswith(lowered):
                return scope
        return None


def parse_scopes(message: str) -> tuple[frozenset[ChatContextScope], str]:
    """Split a leading ``@scope+scope`` prefix off ``message``.

    Returns the recognised scopes and the remaining text. A message without a
    well-formed prefix comes back unchanged with no scopes.
    """

    match = _SCOPE_PREFIX.fullmatch(message)
    if match is None:
        return frozenset(), message
    scopes = {ChatContextScope.from_text(word) for word in match.group(1).split("+")}
    scopes.discard(None)
    return frozenset(scopes), match.group(2)  # type: ignore[arg-type]


@dataclass(slots=True, frozen=True)
class RetrievedContent:
    """A reference offered for the prompt; higher ``priority`` is kept longer."""

    document: ChatReference
    priority: int


@dataclass(slots=True)
class ChatContext:
    system_prompt: str = ""
    retrieved_content: list[RetrievedContent] = field(default_factory=list)
    functions: list[FunctionDefinition] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ChatContext":
        return cls()


@runtime_checkable
class ChatContextCollector(Protocol):
    """Produces prompt fragments and functions for one turn."""

    async def generate_context(
        self,
        history: Sequence[ChatMessage],
        scopes: frozenset[ChatContextScope],
        content: str,
        configuration: ChatConfiguration,
    ) -> ChatContext:
        ...


class StaticContextCollector:
    """Always contributes the same prompt and functions, optionally gated by scope."""

    def __init__(
        self,
        *,
        system_prompt: str = "",
        functions: Iterable[FunctionDefinition] = (),
        scopes: Iterable[ChatContextScope] = (),
    ) -> None:
        self._system_prompt = system_prompt
        self._functions = list(functions)
        self._scopes = frozenset(scopes)

    async def generate_context(self, history, scopes, content, configuration) -> ChatContext:
        if self._scopes and not (self._scopes & scopes):
            return ChatContext.empty()
        return ChatContext(system_prompt=self._system_prompt, functions=list(self._functions))


class RetrievalContextCollector:
    """Embeds the message and offers the nearest stored documents as context.

    Closer documents get higher priority. Embedding or search failures only
    cost the turn its retrieved context, so they are logged and answered with
    an empty context.
    """

    def __init__(
        self,
        store: TemporaryVectorStore | None,
        embedder: EmbeddingProvider,
        *,
        top_k: int = 8,
        scopes: Iterable[ChatContextScope] = (ChatContextScope.PROJECT,),
        system_prompt: str = "",
    ) -> None:
        self.store = store
        self._embedder = embedder
        self._top_k = max(1, int(top_k))
        self._scopes = frozenset(scopes)
        self._system_prompt = system_prompt

    async def generate_context(self, history, scopes, content, configuration) -> ChatContext:
        if self.store is None or not content.strip():
            return ChatContext.empty()
        if self._scopes and not (self._scopes & scopes):
            return ChatContext.empty()
        try:
            query = await self._embedder.embed_query(content)
            hits = await self.store.search_with_distance(query, self._top_k)
        except (EmbeddingError, VectorIndexError) as exc:
            LOGGER.warning("Retrieval skipped: %s", exc)
            return ChatContext.empty()
        retrieved: list[RetrievedContent] = []
        for rank, (document, distance) in enumerate(hits):
            metadata = dict(document.metadata)
            metadata.setdefault("distance", distance)
            reference = ChatReference(
                title=str(metadata.get("title") or metadata.get("path") or f"Document {rank + 1}"),
                content=document.page_content,
                uri=str(metadata.get("uri") or metadata.get("path") or ""),
                kind=str(metadata.get("kind") or "text"),
                metadata=metadata,
            )
            retrieved.append(RetrievedContent(document=reference, priority=len(hits) - rank))
        LOGGER.debug("Retrieved %s documents for the turn", len(retrieved))
        return ChatContext(system_prompt=self._system_prompt if retrieved else "", retrieved_content=retrieved)


async def collect_contexts(
    collectors: Sequence[ChatContextCollector],
    history: Sequence[ChatMessage],
    scopes: frozenset[ChatContextScope],
    content: str,
    configuration: ChatConfiguration,
) -> list[ChatContext]:
    """Run every collector concurrently; results keep collector order."""

    if not collectors:
        return []
    snapshot = list(history)
    return list(
        await asyncio.gather(
            *(collector.generate_context(snapshot, scopes, content, configuration) for collector in collectors)
        )
    )


def merge_contexts(contexts: Iterable[ChatContext]) -> ChatContext:
    """Combine several contexts; retrieved content ends up highest priority first."""

    prompts: list[str] = []
    retrieved: list[RetrievedContent] = []
    functions: dict[str, FunctionDefinition] = {}
    for context in contexts:
        if context.system_prompt.strip():
            prompts.append(context.system_prompt.strip())
        retrieved.extend(context.retrieved_content)
        for definition in context.functions:
            functions[definition.name] = definition
    retrieved.sort(key=lambda item: item.priority, reverse=True)
    return ChatContext(system_prompt="\n\n".join(prompts), retrieved_content=retrieved, functions=list(functions.values()))
