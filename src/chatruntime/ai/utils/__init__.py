"""Helpers shared by the AI layer."""

from .json_merge import join_json, merge_body

__all__ = ["join_json", "merge_body"]
