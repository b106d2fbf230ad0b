"""Async model client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Protocol, Sequence, runtime_checkable

import httpx
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .ai_types import ChatMessage, ToolCall
from .utils.json_merge import join_json, merge_body

__all__ = ["ClientSettings", "ModelStreamEvent", "ModelClient", "AIClient"]

LOGGER = logging.getLogger(__name__)
_RETRYABLE_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, httpx.TimeoutException)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the model client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    custom_body: str = ""
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "ClientSettings":
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers or {}),
            custom_body=settings.custom_body,
            debug_logging=settings.debug_logging,
        )


@dataclass(slots=True, frozen=True)
class ModelStreamEvent:
    """One normalized streaming event.

    ``type`` is ``"text"`` for a content delta, ``"tool_call"`` for a complete
    function call request, and ``"finish"`` once the completion ends.
    """

    type: str
    content: str | None = None
    tool_call: ToolCall | None = None
    finish_reason: str | None = None


@runtime_checkable
class ModelClient(Protocol):
    """Streams a completion for an assembled prompt."""

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        ...


class AIClient:
    """OpenAI-compatible :class:`ModelClient` with retry semantics.

    Transport failures are retried with exponential backoff as long as no
    event has been yielded for the attempt; once output reached the caller a
    failure propagates instead of replaying text.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        payload = self._build_chat_payload(messages, tools=tools, max_tokens=max_tokens, temperature=temperature)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        delivered = False

        def should_retry(exc: BaseException) -> bool:
            return not delivered and isinstance(exc, _RETRYABLE_ERRORS)

        async for attempt in self._retrying(should_retry):
            with attempt:
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for event in stream:
                        normalized = self._normalize_stream_event(event)
                        if normalized is not None:
                            delivered = True
                            yield normalized
                    completion = await stream.get_final_completion()
                for normalized in self._final_events(completion):
                    delivered = True
                    yield normalized

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self, predicate: Any) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception(predicate),
        )

    def _build_chat_payload(
        self,
        messages: Sequence[ChatMessage],
        *,
        tools: Sequence[Mapping[str, Any]] | None,
        max_tokens: int | None,
        temperature: float | None,
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [message.to_openai() for message in messages],
        }
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        extra = merge_body({}, self._settings.custom_body)
        if extra:
            # The SDK lays ``extra_body`` over the JSON it builds, so custom keys win.
            payload["extra_body"] = extra
        return payload

    def effective_body(self, payload: Mapping[str, Any]) -> bytes:
        """The JSON body the endpoint receives for ``payload``."""

        body = {key: value for key, value in payload.items() if key != "extra_body"}
        return join_json(json.dumps(body, ensure_ascii=False), self._settings.custom_body or "")

    def _normalize_stream_event(self, event: Any) -> ModelStreamEvent | None:
        if getattr(event, "type", None) == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return ModelStreamEvent(type="text", content=str(delta_text))
        return None

    def _final_events(self, completion: Any) -> List[ModelStreamEvent]:
        choices = getattr(completion, "choices", None) or []
        if not choices:
            return [ModelStreamEvent(type="finish")]
        choice = choices[0]
        message = getattr(choice, "message", None)
        events: List[ModelStreamEvent] = []
        for call in getattr(message, "tool_calls", None) or []:
            function = getattr(call, "function", None)
            if function is None:
                continue
            events.append(
                ModelStreamEvent(
                    type="tool_call",
                    tool_call=ToolCall(
                        id=str(getattr(call, "id", "") or ""),
                        name=str(getattr(function, "name", "") or ""),
                        arguments=str(getattr(function, "arguments", "") or ""),
                    ),
                )
            )
        events.append(ModelStreamEvent(type="finish", finish_reason=getattr(choice, "finish_reason", None)))
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            body = self.effective_body(payload)
        except (TypeError, ValueError):
            LOGGER.debug("Model prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Model prompt payload:\n%s", body.decode("utf-8"))

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

