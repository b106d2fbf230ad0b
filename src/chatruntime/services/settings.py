"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = [
    "Settings",
    "SettingsStore",
    "ChatConfiguration",
    "TOKEN_BACKEND_CHOICES",
    "INDEX_METRIC_CHOICES",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".chatruntime"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATRUNTIME_API_KEY": "api_key",
    "CHATRUNTIME_BASE_URL": "base_url",
    "CHATRUNTIME_MODEL": "model",
    "CHATRUNTIME_ORGANIZATION": "organization",
    "CHATRUNTIME_TOKEN_BACKEND": "token_backend",
    "CHATRUNTIME_TOKEN_ENCODING": "token_encoding",
    "CHATRUNTIME_TOKEN_COUNT_URL": "token_count_url",
    "CHATRUNTIME_EMBEDDING_MODEL": "embedding_model",
    "CHATRUNTIME_STORAGE_DIR": "storage_dir",
    "CHATRUNTIME_CUSTOM_BODY": "custom_body",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATRUNTIME_DEBUG_LOGGING": "debug_logging",
    "CHATRUNTIME_RUN_FUNCTIONS_AUTOMATICALLY": "run_functions_automatically",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATRUNTIME_MAX_TOKENS": "max_tokens",
    "CHATRUNTIME_MINIMUM_REPLY_TOKENS": "minimum_reply_tokens",
    "CHATRUNTIME_MAX_TOOL_ITERATIONS": "max_tool_iterations",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATRUNTIME_REQUEST_TIMEOUT": "request_timeout",
    "CHATRUNTIME_TEMPERATURE": "temperature",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
TOKEN_BACKEND_CHOICES: tuple[str, ...] = ("characters", "bytes", "remote", "tiktoken")
INDEX_METRIC_CHOICES: tuple[str, ...] = ("l2", "ip")


@dataclass(slots=True, frozen=True)
class ChatConfiguration:
    """The slice of settings a single conversation consults while running.

    Attributes:
        model: Model identifier passed to the model client.
        max_tokens: Context window size of the model.
        minimum_reply_tokens: Tokens always left free for the reply.
        max_message_count: Cap on history messages sent, ``0`` for no cap.
        max_tool_iterations: Follow-up completions allowed per turn.
        run_functions_automatically: Execute model-requested calls without asking.
        temperature: Sampling temperature.
        function_timeout: Seconds before a running function is failed, ``None`` to wait forever.
    """

    model: str = "gpt-4o-mini"
    max_tokens: int = 16_000
    minimum_reply_tokens: int = 1_000
    max_message_count: int = 0
    max_tool_iterations: int = 8
    run_functions_automatically: bool = True
    temperature: float = 0.2
    function_timeout: float | None = 30.0

    @property
    def prompt_budget(self) -> int:
        return max(0, self.max_tokens - self.minimum_reply_tokens)


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tokens: int = 16_000
    minimum_reply_tokens: int = 1_000
    max_message_count: int = 0
    max_tool_iterations: int = 8
    run_functions_automatically: bool = True
    function_timeout: float | None = 30.0
    token_backend: str = "tiktoken"
    token_encoding: str = "cl100k_base"
    token_count_url: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    index_metric: str = "ip"
    index_connectivity: int = 16
    index_expansion_add: int = 128
    index_expansion_search: int = 64
    retrieval_top_k: int = 8
    storage_dir: str | None = None
    custom_body: str = ""
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    log_dir: str | None = None

    def chat_configuration(self) -> ChatConfiguration:
        """Return the conversation-level configuration derived from these settings."""

        return ChatConfiguration(
            model=self.model,
            max_tokens=max(1, int(self.max_tokens)),
            minimum_reply_tokens=max(0, int(self.minimum_reply_tokens)),
            max_message_count=max(0, int(self.max_message_count)),
            max_tool_iterations=max(1, min(int(self.max_tool_iterations or 1), 50)),
            run_functions_automatically=bool(self.run_functions_automatically),
            temperature=float(self.temperature),
            function_timeout=self.function_timeout,
        )

    def resolved_storage_dir(self) -> Path:
        """Directory holding persisted vector indexes."""

        return Path(self.storage_dir).expanduser() if self.storage_dir else _SETTINGS_DIR / "indexes"


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if payload.get("version") != _SETTINGS_VERSION:
                LOGGER.debug("Settings file %s has version %s", self._path, payload.get("version"))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        settings = self._apply_env_overrides(settings)
        return _validated(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes.

        The API key is never written; hosts keep it in their credential store
        and pass it back through ``overrides`` or ``CHATRUNTIME_API_KEY``.
        """

        data = asdict(settings)
        data.pop("api_key", None)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str,
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _validated(settings: Settings) -> Settings:
    backend = (settings.token_backend or "").strip().lower()
    if backend not in TOKEN_BACKEND_CHOICES:
        LOGGER.warning("Unknown token backend %r; using 'characters'", settings.token_backend)
        backend = "characters"
    metric = (settings.index_metric or "").strip().lower()
    if metric not in INDEX_METRIC_CHOICES:
        LOGGER.warning("Unknown index metric %r; using 'ip'", settings.index_metric)
        metric = "ip"
    return replace(settings, token_backend=backend, index_metric=metric)
