"""Function-call engine: validates, executes, and tracks model-requested calls."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from ...ai_types import ToolCall
from ...memory.broadcast import BroadcastChannel
from .registry import FunctionRegistry
from .types import (
    Detected,
    Ended,
    Failed,
    FunctionCallError,
    FunctionCallErrorKind,
    FunctionCallEvent,
    FunctionCallInvocation,
    FunctionCallPhase,
    FunctionCallProgress,
    FunctionDefinition,
    FunctionResult,
    Processing,
)

__all__ = ["ExecutorConfig", "FunctionCallEngine", "EngineEvent", "cancelled_error", "render_result"]

LOGGER = logging.getLogger(__name__)

EngineEvent = Union[FunctionCallEvent, FunctionCallProgress]


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the function-call engine.

    Attributes:
        default_timeout: Seconds a handler may run before failing with ``timeout``; ``None`` disables.
        log_arguments: Whether to log raw arguments (may contain sensitive data).
        log_results: Whether to log result text.
    """

    default_timeout: float | None = 30.0
    log_arguments: bool = False
    log_results: bool = False


class _BadArguments(Exception):
    pass


class _HandlerTimeout(Exception):
    """A timeout raised by the handler itself rather than by the engine's limit."""


def cancelled_error(name: str) -> FunctionCallError:
    return FunctionCallError(FunctionCallErrorKind.CANCELLED, f"Call to {name} was cancelled")


def render_result(value: Any) -> str:
    """Convert a handler's return value into the text handed back to the model."""

    if isinstance(value, str):
        return value
    if isinstance(value, FunctionResult):
        return str(value.bot_readable_content)
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class FunctionCallEngine:
    """Drives each call through ``Detected -> Processing -> Ended | Failed``.

    Every transition is published on ``events`` as a
    :class:`FunctionCallEvent`; progress reported by a handler is published as
    :class:`FunctionCallProgress`. Invocations are independent and may run
    concurrently; the engine keeps no cross-invocation state.

    Example:
        engine = FunctionCallEngine()
        engine.register(definition)
        invocation = await engine.dispatch("lookup", '{"query": "asyncio"}')
    """

    def __init__(
        self,
        registry: FunctionRegistry | None = None,
        *,
        events: BroadcastChannel[EngineEvent] | None = None,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._registry = registry if registry is not None else FunctionRegistry()
        self._events: BroadcastChannel[Any] = events if events is not None else BroadcastChannel()
        self._config = config or ExecutorConfig()

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    @property
    def events(self) -> BroadcastChannel[Any]:
        return self._events

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def register(self, definition: FunctionDefinition) -> FunctionDefinition:
        """Add ``definition``; a later registration under the same name wins."""

        return self._registry.register(definition)

    async def dispatch(
        self,
        name: str,
        raw_arguments: str,
        *,
        call_id: str | None = None,
        timeout: float | None = None,
    ) -> FunctionCallInvocation:
        """Run one call to completion and return its terminal invocation.

        Failures inside the engine become ``Failed`` phases. Only task
        cancellation escapes, after the invocation is marked cancelled.
        """

        invocation = FunctionCallInvocation(name=name, arguments=raw_arguments or "")
        if call_id:
            invocation.call_id = call_id
        definition = self._registry.get(name)
        self._advance(invocation, definition, Detected())

        if definition is None:
            LOGGER.warning("Model requested unknown function %s", name)
            error = FunctionCallError(FunctionCallErrorKind.NOT_FOUND, f"Function '{name}' not found")
            self._advance(invocation, None, Failed(invocation.arguments, error))
            return invocation

        if self._config.log_arguments:
            LOGGER.debug("Dispatching %s (call_id=%s) with arguments: %s", name, invocation.call_id, raw_arguments)
        else:
            LOGGER.debug("Dispatching %s (call_id=%s)", name, invocation.call_id)

        try:
            arguments = self._decode_arguments(definition, invocation.arguments)
        except _BadArguments as exc:
            error = FunctionCallError(
                FunctionCallErrorKind.BAD_ARGUMENTS,
                f"Failed to decode arguments. {exc}",
                cause=exc.__cause__,
            )
            self._advance(invocation, definition, Failed(invocation.arguments, error))
            return invocation

        self._advance(invocation, definition, Processing(invocation.arguments))
        effective_timeout = timeout if timeout is not None else self._config.default_timeout
        start_time = time.perf_counter()
        try:
            result = await self._run(definition, invocation, arguments, effective_timeout)
        except asyncio.CancelledError:
            error = cancelled_error(name)
            self._advance(invocation, definition, Failed(invocation.arguments, error))
            raise
        except asyncio.TimeoutError as exc:
            LOGGER.warning("Function %s timed out after %.1fs", name, effective_timeout or 0.0)
            error = FunctionCallError(
                FunctionCallErrorKind.TIMEOUT,
                f"Function '{name}' timed out after {effective_timeout}s",
                cause=exc,
            )
            self._advance(invocation, definition, Failed(invocation.arguments, error))
            return invocation
        except Exception as exc:
            failure = exc.__cause__ if isinstance(exc, _HandlerTimeout) and exc.__cause__ is not None else exc
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Function %s failed after %.1fms: %s", name, duration_ms, failure)
            error = FunctionCallError(
                FunctionCallErrorKind.EXECUTION, str(failure) or type(failure).__name__, cause=failure
            )
            self._advance(invocation, definition, Failed(invocation.arguments, error))
            return invocation

        text = render_result(result)
        duration_ms = (time.perf_counter() - start_time) * 1000
        if self._config.log_results:
            LOGGER.debug("Function %s completed in %.1fms with result: %s", name, duration_ms, text)
        else:
            LOGGER.debug("Function %s completed in %.1fms", name, duration_ms)
        self._advance(invocation, definition, Ended(invocation.arguments, text))
        return invocation

    async def dispatch_many(
        self,
        calls: Sequence[ToolCall | tuple[str, str]],
        *,
        parallel: bool = False,
        timeout: float | None = None,
    ) -> list[FunctionCallInvocation]:
        """Dispatch several calls; results keep the order of ``calls``."""

        requests = [
            (call.name, call.arguments, call.id) if isinstance(call, ToolCall) else (call[0], call[1], None)
            for call in calls
        ]
        if parallel:
            return list(
                await asyncio.gather(
                    *(self.dispatch(name, args, call_id=call_id, timeout=timeout) for name, args, call_id in requests)
                )
            )
        results: list[FunctionCallInvocation] = []
        for name, args, call_id in requests:
            results.append(await self.dispatch(name, args, call_id=call_id, timeout=timeout))
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _advance(
        self,
        invocation: FunctionCallInvocation,
        definition: FunctionDefinition | None,
        phase: FunctionCallPhase,
    ) -> None:
        invocation.transition(phase)
        message = self._render(invocation.name, definition, phase)
        self._events.send(
            FunctionCallEvent(call_id=invocation.call_id, name=invocation.name, phase=phase, message=message)
        )

    @staticmethod
    def _render(name: str, definition: FunctionDefinition | None, phase: FunctionCallPhase) -> str:
        if definition is None:
            return f"Function '{name}' not found" if isinstance(phase, Failed) else f"Calling {name}"
        try:
            return definition.describe(phase)
        except Exception:  # pragma: no cover - renderer bugs must not break dispatch
            LOGGER.exception("Phase renderer for %s failed", name)
            return phase.kind.value

    def _decode_arguments(self, definition: FunctionDefinition, raw: str) -> Any:
        text = raw.strip()
        try:
            decoded = json.loads(text) if text else {}
        except json.JSONDecodeError as exc:
            raise _BadArguments(f"Invalid JSON: {exc.msg}") from exc
        if not isinstance(decoded, dict):
            raise _BadArguments("Arguments must be a JSON object")
        try:
            validator = Draft202012Validator(definition.spec.schema)
            error = best_match(validator.iter_errors(decoded))
        except SchemaError as exc:
            raise _BadArguments(f"Function schema is invalid: {exc.message}") from exc
        if error is not None:
            location = "/".join(str(part) for part in error.absolute_path)
            detail = f"{location}: {error.message}" if location else error.message
            raise _BadArguments(detail) from error
        if definition.arguments_factory is None:
            return decoded
        try:
            return definition.arguments_factory(decoded)
        except Exception as exc:
            raise _BadArguments(str(exc) or type(exc).__name__) from exc

    async def _run(
        self,
        definition: FunctionDefinition,
        invocation: FunctionCallInvocation,
        arguments: Any,
        timeout: float | None,
    ) -> Any:
        def report_progress(message: str) -> None:
            self._events.send(
                FunctionCallProgress(call_id=invocation.call_id, name=invocation.name, message=message)
            )

        if inspect.iscoroutinefunction(definition.handler):
            work = definition.handler(arguments, report_progress)
        else:
            work = self._run_sync(definition, arguments, report_progress)
        if timeout is not None and timeout > 0:
            return await asyncio.wait_for(self._guard_timeouts(work), timeout=timeout)
        return await self._guard_timeouts(work)

    @staticmethod
    async def _guard_timeouts(work: Any) -> Any:
        # Only the engine's own limit may surface as asyncio.TimeoutError.
        try:
            return await work
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise _HandlerTimeout(str(exc) or type(exc).__name__) from exc

    @staticmethod
    async def _run_sync(definition: FunctionDefinition, arguments: Any, report_progress: Any) -> Any:
        result = await asyncio.to_thread(definition.handler, arguments, report_progress)
        if inspect.isawaitable(result):
            return await result
        return result
