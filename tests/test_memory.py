"""Tests for token-budgeted prompt assembly."""

from __future__ import annotations

import json

import pytest

from chatruntime.ai.ai_types import ChatMessage, ChatReference, ChatRole, ToolCall
from chatruntime.ai.orchestration.memory import (
    RETRIEVED_CONTENT_SEPARATOR,
    ChatMemory,
    build_retrieved_content_text,
)
from chatruntime.ai.orchestration.tools.types import FunctionSpec
from chatruntime.ai.tokens import CharacterCounter, count_message_tokens
from chatruntime.services.settings import ChatConfiguration


def _memory(**overrides) -> ChatMemory:
    system_prompt = overrides.pop("system_prompt", "")
    return ChatMemory(
        system_prompt=system_prompt,
        configuration=ChatConfiguration(**overrides),
        counter=CharacterCounter(),
    )


def _user(content: str) -> ChatMessage:
    return ChatMessage(role=ChatRole.USER, content=content)


def test_retrieved_content_text_layout() -> None:
    text = build_retrieved_content_text(
        [ChatReference(title="a", content="first"), ChatReference(title="b", content="second")]
    )

    assert text == (
        "Here are the information you know about the system and the project, "
        f"separated by {RETRIEVED_CONTENT_SEPARATOR}"
        f"\n\n{RETRIEVED_CONTENT_SEPARATOR}[DOCUMENT 0]\n\nfirst"
        f"\n\n{RETRIEVED_CONTENT_SEPARATOR}[DOCUMENT 1]\n\nsecond"
    )
    assert RETRIEVED_CONTENT_SEPARATOR == "=" * 32
    assert build_retrieved_content_text([]) == ""


@pytest.mark.asyncio
async def test_history_drops_oldest_messages_first() -> None:
    memory = _memory(system_prompt="sys", max_tokens=200, minimum_reply_tokens=20)
    for index in range(20):
        memory.append_message(_user(f"message {index:02d}"))

    prompt = await memory.generate_prompt()

    assert prompt.messages[0].role == ChatRole.SYSTEM
    assert [message.content for message in prompt.messages[1:]] == [f"message {index:02d}" for index in range(7, 20)]
    assert prompt.usage.messages == 13 * 13
    assert prompt.usage.total <= 200 - 20
    assert prompt.remaining_tokens == 200 - prompt.usage.total


@pytest.mark.asyncio
async def test_message_count_cap_includes_new_message() -> None:
    memory = _memory(max_message_count=3)
    for index in range(5):
        memory.append_message(_user(f"m{index}"))

    prompt = await memory.generate_prompt()

    assert [message.content for message in prompt.messages] == ["m2", "m3", "m4"]


@pytest.mark.asyncio
async def test_orphaned_tool_results_are_not_sent() -> None:
    memory = _memory(max_message_count=2)
    memory.append_message(_user("question"))
    memory.append_message(
        ChatMessage(role=ChatRole.ASSISTANT, tool_calls=(ToolCall(id="call_1", name="grep", arguments="{}"),))
    )
    memory.append_message(ChatMessage(role=ChatRole.TOOL, content="result", tool_call_id="call_1"))
    memory.append_message(_user("next"))

    prompt = await memory.generate_prompt()

    assert [message.content for message in prompt.messages] == ["next"]
    assert prompt.usage.messages == 3 + len("next")


@pytest.mark.asyncio
async def test_retrieved_content_is_cut_to_half_the_window() -> None:
    references = [ChatReference(title=f"doc {index}", content="r" * 100) for index in range(3)]
    memory = _memory(max_tokens=1_000, minimum_reply_tokens=0)
    memory.context_system_prompt = "ctx"
    memory.retrieved_content = references
    memory.append_message(_user("hi"))

    prompt = await memory.generate_prompt()

    assert prompt.references == references[:2]
    assert [message.role for message in prompt.messages] == [ChatRole.USER] * 3
    assert prompt.messages[0].content == build_retrieved_content_text(references[:2])
    assert [message.content for message in prompt.messages[1:]] == ["ctx", "hi"]
    expected = await count_message_tokens(CharacterCounter(), _user(build_retrieved_content_text(references[:2])))
    assert prompt.usage.retrieved_content == expected
    assert expected <= 1_000 // 2


@pytest.mark.asyncio
async def test_retrieved_content_dropped_when_nothing_fits() -> None:
    memory = _memory(max_tokens=100, minimum_reply_tokens=0)
    memory.retrieved_content = [ChatReference(title="big", content="r" * 500)]
    memory.append_message(_user("hi"))

    prompt = await memory.generate_prompt()

    assert prompt.references == []
    assert [message.content for message in prompt.messages] == ["hi"]
    assert prompt.usage.retrieved_content == 0


@pytest.mark.asyncio
async def test_prompt_order_and_empty_messages() -> None:
    memory = _memory(system_prompt="system")
    memory.context_system_prompt = "context"
    memory.retrieved_content = [ChatReference(title="doc", content="retrieved")]
    memory.append_message(_user("old"))
    memory.append_message(ChatMessage(role=ChatRole.ASSISTANT, content=""))
    memory.append_message(_user("new"))

    prompt = await memory.generate_prompt()

    contents = [message.content for message in prompt.messages]
    assert contents[0] == "system"
    assert contents[1] == "old"
    assert contents[2].endswith("retrieved")
    assert contents[3:] == ["context", "new"]


@pytest.mark.asyncio
async def test_function_schemas_are_mandatory_tokens() -> None:
    spec = FunctionSpec(name="grep", description="Search files")
    memory = _memory()
    memory.append_message(_user("hi"))

    prompt = await memory.generate_prompt([spec])

    assert prompt.usage.functions == len(json.dumps(spec.to_openai_tool(), sort_keys=True))


def test_history_mutation_helpers() -> None:
    memory = _memory()
    first, second = _user("a"), _user("b")
    memory.append_message(first)
    memory.append_message(second)

    memory.remove_message(first.id)
    assert memory.history == [second]

    memory.mutate_history(lambda history: history.append(_user("c")))
    assert [message.content for message in memory.history] == ["b", "c"]

    memory.history.clear()
    assert len(memory.history) == 2
    memory.clear_history()
    assert memory.history == []
