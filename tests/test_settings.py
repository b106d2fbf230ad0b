"""Tests for settings persistence and overrides."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from chatruntime.services.settings import Settings, SettingsStore
from chatruntime.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("CHATRUNTIME_"):
            monkeypatch.delenv(name, raising=False)


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()


def test_save_round_trip_omits_api_key(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.save(Settings(api_key="secret", model="local", max_tokens=8_000, custom_body='{"seed": 3}'))

    payload = json.loads(store.path.read_text(encoding="utf-8"))
    loaded = store.load()

    assert "api_key" not in payload
    assert payload["version"] == 1
    assert loaded.api_key == ""
    assert (loaded.model, loaded.max_tokens, loaded.custom_body) == ("local", 8_000, '{"seed": 3}')


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "m", "theme": "dark"}), encoding="utf-8")

    assert SettingsStore(path).load().model == "m"


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_corrupt_file_falls_back_to_defaults(tmp_path: Path, content: str) -> None:
    path = tmp_path / "settings.json"
    path.write_text(content, encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_environment_overrides_win(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATRUNTIME_API_KEY", "env-key")
    monkeypatch.setenv("CHATRUNTIME_MAX_TOKENS", "32000")
    monkeypatch.setenv("CHATRUNTIME_TEMPERATURE", "0.7")
    monkeypatch.setenv("CHATRUNTIME_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("CHATRUNTIME_MAX_TOOL_ITERATIONS", "many")

    settings = SettingsStore(tmp_path / "settings.json").load(overrides={"model": "runtime-model"})

    assert settings.api_key == "env-key"
    assert settings.max_tokens == 32_000
    assert settings.temperature == pytest.approx(0.7)
    assert settings.debug_logging is True
    assert settings.max_tool_iterations == Settings().max_tool_iterations
    assert settings.model == "runtime-model"


def test_invalid_choices_are_normalized(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load(
        overrides={"token_backend": "Abacus", "index_metric": "cosine"}
    )

    assert settings.token_backend == "characters"
    assert settings.index_metric == "ip"


def test_chat_configuration_is_clamped() -> None:
    configuration = Settings(max_tool_iterations=500, minimum_reply_tokens=-5, max_tokens=1_000).chat_configuration()

    assert configuration.max_tool_iterations == 50
    assert configuration.minimum_reply_tokens == 0
    assert configuration.prompt_budget == 1_000


def test_setup_logging_writes_to_configured_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    root = logging.getLogger()
    previous_handlers, previous_level = list(root.handlers), root.level
    try:
        path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False)
        logging.getLogger("chatruntime.tests").debug("hello log")
        for handler in root.handlers:
            handler.flush()

        assert path == tmp_path / "chatruntime.log"
        assert logging_utils.get_log_path() == path
        assert "hello log" in path.read_text(encoding="utf-8")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging_utils.setup_logging(log_dir=tmp_path / "other") == path
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = previous_handlers
        root.setLevel(previous_level)
