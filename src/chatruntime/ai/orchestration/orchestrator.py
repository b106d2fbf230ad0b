"""Main chat turn orchestration loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence, Union

from ...services.settings import ChatConfiguration, Settings
from ..ai_types import ChatMessage, ChatReference, ChatRole, ToolCall
from ..client import AIClient, ClientSettings, ModelClient
from ..memory.broadcast import BroadcastChannel, Subscription
from ..tokens import counter_from_settings
from .context import ChatContextCollector, ChatContextScope, collect_contexts, merge_contexts, parse_scopes
from .memory import ChatMemory
from .tools.engine import ExecutorConfig, FunctionCallEngine, cancelled_error
from .tools.registry import FunctionRegistry
from .tools.types import FunctionCallEvent, FunctionCallInvocation, FunctionCallProgress, FunctionDefinition

__all__ = [
    "TurnStarted",
    "TextDelta",
    "TurnFinished",
    "TurnFailed",
    "OrchestratorEvent",
    "ChatOrchestrator",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TurnStarted:
    turn_id: str
    content: str
    scopes: frozenset[ChatContextScope] = frozenset()


@dataclass(slots=True, frozen=True)
class TextDelta:
    turn_id: str
    message_id: str
    content: str


@dataclass(slots=True, frozen=True)
class TurnFinished:
    turn_id: str
    message: ChatMessage
    invocations: tuple[FunctionCallInvocation, ...] = ()


@dataclass(slots=True, frozen=True)
class TurnFailed:
    turn_id: str
    error: BaseException


OrchestratorEvent = Union[TurnStarted, TextDelta, TurnFinished, TurnFailed, FunctionCallEvent, FunctionCallProgress]


@dataclass(slots=True)
class _TurnState:
    turn_id: str
    scopes: frozenset[ChatContextScope]
    content: str
    registry: FunctionRegistry
    engine: FunctionCallEngine
    invocations: list[FunctionCallInvocation] = field(default_factory=list)


class ChatOrchestrator:
    """Runs chat turns against a model client and republishes their progress.

    One turn runs at a time. Each turn collects context from every collector
    concurrently, assembles the prompt through :class:`ChatMemory`, streams the
    completion, and executes requested functions until the model answers
    without calls or ``max_tool_iterations`` is reached. Observers receive
    every event through :meth:`subscribe`; the caller is never blocked by a
    slow subscriber.

    Example:
        orchestrator = ChatOrchestrator.from_settings(settings)
        async with orchestrator.subscribe() as events:
            reply = await orchestrator.send("@code explain this function")
    """

    def __init__(
        self,
        client: ModelClient,
        *,
        memory: ChatMemory,
        configuration: ChatConfiguration | None = None,
        registry: FunctionRegistry | None = None,
        collectors: Iterable[ChatContextCollector] = (),
        events: BroadcastChannel[Any] | None = None,
    ) -> None:
        self._client = client
        self._memory = memory
        self._configuration = configuration or memory.configuration
        self._registry = registry if registry is not None else FunctionRegistry()
        self._collectors = list(collectors)
        self._events: BroadcastChannel[Any] = events if events is not None else BroadcastChannel()
        self._turn_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        collectors: Iterable[ChatContextCollector] = (),
        registry: FunctionRegistry | None = None,
        system_prompt: str = "",
    ) -> "ChatOrchestrator":
        configuration = settings.chat_configuration()
        memory = ChatMemory(
            system_prompt=system_prompt,
            configuration=configuration,
            counter=counter_from_settings(settings),
        )
        client = AIClient(ClientSettings.from_settings(settings))
        return cls(client, memory=memory, configuration=configuration, registry=registry, collectors=collectors)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def client(self) -> ModelClient:
        return self._client

    @property
    def memory(self) -> ChatMemory:
        return self._memory

    @property
    def configuration(self) -> ChatConfiguration:
        return self._configuration

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    @property
    def events(self) -> BroadcastChannel[Any]:
        return self._events

    @property
    def is_busy(self) -> bool:
        return self._turn_lock.locked()

    def subscribe(self) -> Subscription[Any]:
        """Receive every event published from now on."""

        return self._events.subscribe()

    def register_function(self, definition: FunctionDefinition) -> FunctionDefinition:
        return self._registry.register(definition)

    def add_collector(self, collector: ChatContextCollector) -> None:
        self._collectors.append(collector)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def send(self, content: str) -> ChatMessage:
        """Run one full turn for ``content`` and return the final assistant message.

        Model and network errors propagate after a :class:`TurnFailed` event.
        Cancelling the caller cancels the model stream and any running
        function; the open invocation ends ``Failed(cancelled)``.
        """

        scopes, text = parse_scopes(content)
        async with self._turn_lock:
            turn_id = uuid.uuid4().hex
            self._events.send(TurnStarted(turn_id=turn_id, content=text, scopes=scopes))
            try:
                state = await self._prepare_turn(turn_id, scopes, text)
                message = await self._complete(state)
            except asyncio.CancelledError as exc:
                LOGGER.debug("Turn %s cancelled", turn_id)
                self._events.send(TurnFailed(turn_id=turn_id, error=exc))
                raise
            except Exception as exc:
                LOGGER.exception("Turn %s failed", turn_id)
                self._events.send(TurnFailed(turn_id=turn_id, error=exc))
                raise
            self._events.send(
                TurnFinished(turn_id=turn_id, message=message, invocations=tuple(state.invocations))
            )
            return message

    async def continue_turn(self) -> ChatMessage:
        """Resubmit the current history, e.g. after running pending calls manually."""

        async with self._turn_lock:
            turn_id = uuid.uuid4().hex
            self._events.send(TurnStarted(turn_id=turn_id, content=""))
            state = self._turn_state(turn_id, frozenset(), "", ())
            try:
                message = await self._complete(state)
            except asyncio.CancelledError as exc:
                self._events.send(TurnFailed(turn_id=turn_id, error=exc))
                raise
            except Exception as exc:
                LOGGER.exception("Turn %s failed", turn_id)
                self._events.send(TurnFailed(turn_id=turn_id, error=exc))
                raise
            self._events.send(
                TurnFinished(turn_id=turn_id, message=message, invocations=tuple(state.invocations))
            )
            return message

    async def run_function_calls(self, message: ChatMessage) -> list[FunctionCallInvocation]:
        """Execute the calls requested by ``message`` and append their tool messages."""

        engine = self._build_engine(self._registry)
        return await self._dispatch(engine, message.tool_calls)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _prepare_turn(self, turn_id: str, scopes: frozenset[ChatContextScope], text: str) -> _TurnState:
        history = self._memory.history
        self._memory.append_message(ChatMessage(role=ChatRole.USER, content=text))
        contexts = await collect_contexts(self._collectors, history, scopes, text, self._configuration)
        context = merge_contexts(contexts)
        self._memory.context_system_prompt = context.system_prompt
        self._memory.retrieved_content = [item.document for item in context.retrieved_content]
        return self._turn_state(turn_id, scopes, text, context.functions)

    def _turn_state(
        self,
        turn_id: str,
        scopes: frozenset[ChatContextScope],
        text: str,
        functions: Sequence[FunctionDefinition],
    ) -> _TurnState:
        registry = self._registry.merged_with(functions) if functions else self._registry
        return _TurnState(
            turn_id=turn_id,
            scopes=scopes,
            content=text,
            registry=registry,
            engine=self._build_engine(registry),
        )

    def _build_engine(self, registry: FunctionRegistry) -> FunctionCallEngine:
        config = ExecutorConfig(default_timeout=self._configuration.function_timeout)
        return FunctionCallEngine(registry, events=self._events, config=config)

    async def _complete(self, state: _TurnState) -> ChatMessage:
        iteration = 0
        while True:
            message = await self._stream_reply(state)
            self._memory.append_message(message)
            if not message.tool_calls:
                return message
            if not self._configuration.run_functions_automatically:
                LOGGER.debug("Leaving %s function call(s) for the caller", len(message.tool_calls))
                return message
            if iteration >= self._configuration.max_tool_iterations:
                LOGGER.warning(
                    "Stopping turn %s after %s tool iteration(s)",
                    state.turn_id,
                    self._configuration.max_tool_iterations,
                )
                return message
            iteration += 1
            state.invocations.extend(await self._dispatch(state.engine, message.tool_calls))

    async def _stream_reply(self, state: _TurnState) -> ChatMessage:
        prompt = await self._memory.generate_prompt(state.registry.specs())
        tools = state.registry.get_openai_tools()
        message_id = uuid.uuid4().hex
        chunks: list[str] = []
        calls: list[ToolCall] = []
        stream = self._client.stream_chat(
            prompt.messages,
            tools=tools or None,
            max_tokens=prompt.remaining_tokens or None,
            temperature=self._configuration.temperature,
        )
        async with contextlib.aclosing(stream):
            async for event in stream:
                if event.type == "text" and event.content:
                    chunks.append(event.content)
                    self._events.send(TextDelta(turn_id=state.turn_id, message_id=message_id, content=event.content))
                elif event.type == "tool_call" and event.tool_call is not None:
                    calls.append(_ensure_call_id(event.tool_call))
        return ChatMessage(
            role=ChatRole.ASSISTANT,
            content="".join(chunks),
            tool_calls=tuple(calls),
            references=tuple(_dedupe_references(prompt.references)),
            id=message_id,
        )

    async def _dispatch(
        self, engine: FunctionCallEngine, calls: Sequence[ToolCall]
    ) -> list[FunctionCallInvocation]:
        if not calls:
            return []
        tasks = [asyncio.ensure_future(engine.dispatch(call.name, call.arguments, call_id=call.id)) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        finally:
            # Every requested call gets a tool reply, even when the turn is cancelled.
            for call, task in zip(calls, tasks):
                if task.done() and not task.cancelled() and task.exception() is None:
                    content = task.result().bot_readable_output()
                else:
                    task.cancel()
                    content = f"Error: {cancelled_error(call.name).message}"
                self._memory.append_message(ChatMessage(role=ChatRole.TOOL, content=content, tool_call_id=call.id))


def _ensure_call_id(call: ToolCall) -> ToolCall:
    if call.id:
        return call
    return ToolCall(id=f"call_{uuid.uuid4().hex[:24]}", name=call.name, arguments=call.arguments)


def _dedupe_references(references: Sequence[ChatReference]) -> list[ChatReference]:
    seen: set[tuple[str, str]] = set()
    unique: list[ChatReference] = []
    for reference in references:
        key = (reference.uri, reference.content)
        if key in seen:
            continue
        seen.add(key)
        unique.append(reference)
    return unique
