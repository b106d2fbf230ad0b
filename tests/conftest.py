"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from chatruntime.ai.tokens import CharacterCounter, VocabularyCache, set_vocabulary_cache
from chatruntime.services.settings import ChatConfiguration


@pytest.fixture
def counter() -> CharacterCounter:
    return CharacterCounter()


@pytest.fixture
def configuration() -> ChatConfiguration:
    return ChatConfiguration(max_tokens=2_000, minimum_reply_tokens=100, function_timeout=2.0)


@pytest.fixture(autouse=True)
def _isolated_vocabularies():
    """Give every test a fresh process-wide vocabulary cache."""

    set_vocabulary_cache(VocabularyCache(loader=_refuse_download))
    yield
    set_vocabulary_cache(None)


def _refuse_download(name: str):
    raise RuntimeError(f"vocabulary {name} is not available in tests")
