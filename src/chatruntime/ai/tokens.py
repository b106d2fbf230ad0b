"""Token accounting backends.

Two families live here. Counting backends (:class:`CharacterCounter`,
:class:`ApproxByteCounter`, :class:`RemoteTokenCounter`) are cheap estimates
that only implement ``count_tokens``. The exact backend
(:class:`TiktokenEncoder`) materializes token ids from a vocabulary that is
loaded once per process through :class:`VocabularyCache`; its counts are
always ``len(encode(text))``.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import math
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import httpx
import tiktoken

from .ai_types import ChatMessage, TokenCounterProtocol

__all__ = [
    "TokenBackend",
    "TokenAccountingError",
    "VocabularyUnavailableError",
    "EncodingUnsupportedError",
    "CharacterCounter",
    "ApproxByteCounter",
    "RemoteTokenCounter",
    "TiktokenEncoder",
    "VocabularyCache",
    "TokenBudget",
    "TokenUsage",
    "build_token_counter",
    "counter_from_settings",
    "count_message_tokens",
    "count_function_tokens",
    "get_vocabulary_cache",
    "set_vocabulary_cache",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
# Every message is wrapped in <|start|>{role}\n ... <|end|>.
_MESSAGE_OVERHEAD_TOKENS = 3


class TokenBackend(str, enum.Enum):
    """Available token accounting backends."""

    CHARACTERS = "characters"
    BYTES = "bytes"
    REMOTE = "remote"
    TIKTOKEN = "tiktoken"


class TokenAccountingError(RuntimeError):
    """Base class for token accounting failures."""


class VocabularyUnavailableError(TokenAccountingError):
    """Raised when an exact backend cannot load its vocabulary."""

    def __init__(self, name: str, cause: BaseException | None = None) -> None:
        self.name = name
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Token vocabulary '{name}' could not be loaded{detail}")


class EncodingUnsupportedError(TokenAccountingError):
    """Raised when ``encode`` is requested from a counting-only backend."""


# -----------------------------------------------------------------------------
# Counting backends
# -----------------------------------------------------------------------------


class CharacterCounter:
    """Counts one token per character."""

    name = "characters"

    async def count_tokens(self, text: str) -> int:
        return self.count_sync(text)

    def count_sync(self, text: str) -> int:
        return len(text or "")

    async def encode(self, text: str) -> list[int]:
        raise EncodingUnsupportedError("Character counting does not produce token ids")


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via UTF-8 byte length."""

    name = "bytes"

    def __init__(self, *, bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self._bytes_per_token = max(1, int(bytes_per_token))

    async def count_tokens(self, text: str) -> int:
        return self.count_sync(text)

    def count_sync(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode("utf-8", errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))

    async def encode(self, text: str) -> list[int]:
        raise EncodingUnsupportedError("Byte estimates do not produce token ids")


class RemoteTokenCounter:
    """Asks a token-counting endpoint, falling back to character counts.

    The endpoint receives ``{"model": ..., "input": text}`` and must answer
    with a JSON object carrying the count under ``tokens``, ``token_count``,
    ``input_tokens`` or ``count``. Transport, HTTP, and decoding failures only
    degrade accuracy, so they are logged and answered with ``len(text)``.
    """

    name = "remote"
    _COUNT_KEYS = ("tokens", "token_count", "input_tokens", "count")

    def __init__(
        self,
        url: str,
        *,
        model: str | None = None,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not url:
            raise ValueError("url is required for RemoteTokenCounter")
        self._url = url
        self._model = model
        self._client = client
        self._owns_client = client is None
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._fallback = CharacterCounter()

    async def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        try:
            response = await self._get_client().post(
                self._url,
                json={"model": self._model, "input": text},
                headers=self._headers,
            )
            response.raise_for_status()
            return self._parse_count(response.json())
        except (httpx.HTTPError, ValueError, TypeError) as exc:
            LOGGER.warning("Remote token count failed; using character count: %s", exc)
            return self._fallback.count_sync(text)

    async def encode(self, text: str) -> list[int]:
        raise EncodingUnsupportedError("Remote token counting does not produce token ids")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _parse_count(self, payload: Any) -> int:
        if not isinstance(payload, Mapping):
            raise ValueError("token count response is not an object")
        for key in self._COUNT_KEYS:
            value = payload.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                return value
        raise ValueError(f"token count response has none of {self._COUNT_KEYS}")


# -----------------------------------------------------------------------------
# Exact backend
# -----------------------------------------------------------------------------


def _load_tiktoken_encoding(name: str) -> Any:
    return tiktoken.get_encoding(name)


class VocabularyCache:
    """Process-wide, load-once cache of tokenizer vocabularies.

    The first caller for a name claims the load; everyone else (threads or
    coroutines) waits on the same future, so concurrent first use performs one
    load. A failed load is evicted so a later call can retry.
    """

    def __init__(self, loader: Callable[[str], Any] | None = None) -> None:
        self._loader = loader or _load_tiktoken_encoding
        self._lock = threading.Lock()
        self._loads: dict[str, Future[Any]] = {}
        self.load_count = 0

    def get(self, name: str) -> Any:
        """Return the vocabulary, loading it on the calling thread if needed."""

        future, owner = self._claim(name)
        if owner:
            self._fill(name, future)
        return future.result()

    async def aget(self, name: str) -> Any:
        """Return the vocabulary, loading it on a worker thread if needed."""

        future, owner = self._claim(name)
        if owner:
            await asyncio.to_thread(self._fill, name, future)
        return await asyncio.wrap_future(future)

    def is_loaded(self, name: str) -> bool:
        with self._lock:
            future = self._loads.get(name)
        return future is not None and future.done() and future.exception() is None

    def reset(self) -> None:
        """Forget every loaded vocabulary."""

        with self._lock:
            self._loads.clear()
            self.load_count = 0

    def _claim(self, name: str) -> tuple[Future[Any], bool]:
        with self._lock:
            future = self._loads.get(name)
            if future is not None:
                return future, False
            future = Future()
            self._loads[name] = future
            return future, True

    def _fill(self, name: str, future: Future[Any]) -> None:
        try:
            vocabulary = self._loader(name)
        except Exception as exc:
            LOGGER.error("Failed to load token vocabulary %s: %s", name, exc)
            with self._lock:
                if self._loads.get(name) is future:
                    del self._loads[name]
            future.set_exception(VocabularyUnavailableError(name, exc))
            return
        with self._lock:
            self.load_count += 1
        LOGGER.debug("Loaded token vocabulary %s", name)
        future.set_result(vocabulary)


_VOCABULARIES: VocabularyCache | None = None
_VOCABULARIES_LOCK = threading.Lock()


def get_vocabulary_cache() -> VocabularyCache:
    global _VOCABULARIES
    with _VOCABULARIES_LOCK:
        if _VOCABULARIES is None:
            _VOCABULARIES = VocabularyCache()
        return _VOCABULARIES


def set_vocabulary_cache(cache: VocabularyCache | None) -> VocabularyCache:
    """Replace the process-wide cache (``None`` installs a fresh one)."""

    global _VOCABULARIES
    with _VOCABULARIES_LOCK:
        _VOCABULARIES = cache or VocabularyCache()
        return _VOCABULARIES


class TiktokenEncoder:
    """Exact token accounting backed by a ``tiktoken`` vocabulary."""

    name = "tiktoken"

    def __init__(
        self,
        encoding_name: str | None = None,
        *,
        model_name: str | None = None,
        cache: VocabularyCache | None = None,
    ) -> None:
        if not encoding_name and not model_name:
            raise ValueError("encoding_name or model_name is required for TiktokenEncoder")
        self.encoding_name = encoding_name or self._encoding_for_model(model_name or "")
        self._cache = cache

    @property
    def cache(self) -> VocabularyCache:
        return self._cache or get_vocabulary_cache()

    async def encode(self, text: str) -> list[int]:
        encoding = await self.cache.aget(self.encoding_name)
        return encoding.encode(text or "", disallowed_special=())

    def encode_sync(self, text: str) -> list[int]:
        encoding = self.cache.get(self.encoding_name)
        return encoding.encode(text or "", disallowed_special=())

    async def count_tokens(self, text: str) -> int:
        return len(await self.encode(text))

    def count_sync(self, text: str) -> int:
        return len(self.encode_sync(text))

    @staticmethod
    def _encoding_for_model(model_name: str) -> str:
        try:
            return tiktoken.encoding_name_for_model(model_name)
        except KeyError as exc:
            raise VocabularyUnavailableError(model_name, exc) from exc


def build_token_counter(
    backend: TokenBackend | str,
    *,
    encoding_name: str | None = None,
    model_name: str | None = None,
    url: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> TokenCounterProtocol:
    """Construct the counter for ``backend``."""

    kind = TokenBackend(backend)
    if kind is TokenBackend.CHARACTERS:
        return CharacterCounter()
    if kind is TokenBackend.BYTES:
        return ApproxByteCounter()
    if kind is TokenBackend.REMOTE:
        return RemoteTokenCounter(url or "", model=model_name, client=client)
    return TiktokenEncoder(encoding_name, model_name=None if encoding_name else model_name)


# -----------------------------------------------------------------------------
# Budget helpers
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token usage measured against a budget."""

    scope: str
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return self.limit - self.used

    @property
    def exceeded(self) -> bool:
        return self.used > self.limit


@dataclass(slots=True, frozen=True)
class TokenBudget:
    """Maximum token count for a prompt region.

    Exceeding the budget is reported, never raised; callers choose whether to
    truncate.
    """

    scope: str
    max_tokens: int

    def evaluate(self, used: int) -> TokenUsage:
        return TokenUsage(scope=self.scope, used=int(used), limit=self.max_tokens)

    async def measure(self, counter: TokenCounterProtocol, text: str) -> TokenUsage:
        return self.evaluate(await counter.count_tokens(text))


async def count_message_tokens(counter: TokenCounterProtocol, message: ChatMessage) -> int:
    """Return (and cache on the message) the cost of ``message`` in a prompt."""

    key = _counter_key(counter)
    if message.token_count is not None and message.token_counter == key:
        return message.token_count
    total = _MESSAGE_OVERHEAD_TOKENS + await counter.count_tokens(message.content or "")
    if message.name:
        total += 1 + await counter.count_tokens(message.name)
    for call in message.tool_calls:
        total += await counter.count_tokens(call.name)
        total += await counter.count_tokens(call.arguments)
    message.token_count = total
    message.token_counter = key
    return total


def _counter_key(counter: TokenCounterProtocol) -> str:
    encoding = getattr(counter, "encoding_name", None)
    return f"{counter.name}:{encoding}" if encoding else counter.name


async def count_function_tokens(counter: TokenCounterProtocol, schema: Mapping[str, Any]) -> int:
    """Return the cost of a function schema sent alongside the prompt."""

    return await counter.count_tokens(json.dumps(schema, sort_keys=True, ensure_ascii=False))


def counter_from_settings(settings: Any, *, client: httpx.AsyncClient | None = None) -> TokenCounterProtocol:
    """Build the counter selected by a :class:`~chatruntime.services.settings.Settings` instance."""

    backend = TokenBackend(settings.token_backend)
    if backend is TokenBackend.REMOTE and not settings.token_count_url:
        LOGGER.warning("Remote token counting selected without token_count_url; counting characters")
        return CharacterCounter()
    return build_token_counter(
        backend,
        encoding_name=settings.token_encoding or None,
        model_name=settings.model,
        url=settings.token_count_url,
        client=client,
    )
