"""Tests for JSON body merging."""

from __future__ import annotations

import json

from chatruntime.ai.utils.json_merge import join_json, merge_body


def test_overlay_keys_win_and_unique_keys_survive() -> None:
    merged = json.loads(join_json('{"model": "a", "stream": true}', '{"model": "b", "seed": 7}'))

    assert merged == {"model": "b", "stream": True, "seed": 7}


def test_non_object_overlay_returns_base_unchanged() -> None:
    base = b'{"model": "a"}'

    assert join_json(base, "[1, 2]") == base
    assert join_json(base, "not json") == base


def test_non_object_base_is_returned_as_is() -> None:
    assert join_json("[1]", '{"a": 1}') == b"[1]"


def test_merge_is_shallow() -> None:
    merged = json.loads(join_json('{"options": {"a": 1, "b": 2}}', '{"options": {"a": 3}}'))

    assert merged == {"options": {"a": 3}}


def test_merge_body_ignores_blank_and_invalid_custom_body() -> None:
    body = {"model": "gpt"}

    assert merge_body(body, "") == body
    assert merge_body(body, "   ") == body
    assert merge_body(body, "oops") == body
    assert merge_body(body, '{"top_k": 4}') == {"model": "gpt", "top_k": 4}
