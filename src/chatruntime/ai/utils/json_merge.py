"""Helpers for merging user-supplied JSON into outgoing request bodies."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

__all__ = ["join_json", "merge_body"]

LOGGER = logging.getLogger(__name__)


def _as_object(payload: bytes | str | Mapping[str, Any]) -> dict[str, Any] | None:
    if isinstance(payload, Mapping):
        return dict(payload)
    try:
        decoded = json.loads(payload)
    except (TypeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def join_json(base: bytes | str, overlay: bytes | str) -> bytes:
    """Return ``base`` with the top-level keys of ``overlay`` laid over it.

    Keys present on both sides take the overlay's value and keys unique to
    either side are kept. If either side is not a JSON object the base payload
    is returned unchanged.
    """

    original = base.encode("utf-8") if isinstance(base, str) else bytes(base)
    first = _as_object(base)
    second = _as_object(overlay)
    if first is None or second is None:
        LOGGER.debug("Skipping JSON merge; one side is not a JSON object")
        return original
    first.update(second)
    return json.dumps(first, ensure_ascii=False).encode("utf-8")


def merge_body(body: Mapping[str, Any], custom_body: str | None) -> dict[str, Any]:
    """Overlay ``custom_body`` (a JSON object string) onto a request body mapping."""

    merged = dict(body)
    if not custom_body or not custom_body.strip():
        return merged
    extra = _as_object(custom_body)
    if extra is None:
        LOGGER.warning("Ignoring custom request body; it is not a JSON object")
        return merged
    merged.update(extra)
    return merged
