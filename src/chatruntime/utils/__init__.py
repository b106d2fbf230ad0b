"""Shared utilities: logging setup and file fingerprinting."""

from .file_io import ChangeDetector, FileSignature, compute_fingerprint, compute_text_digest
from .logging import configure_from_settings, get_log_path, setup_logging

__all__ = [
    "ChangeDetector",
    "FileSignature",
    "compute_fingerprint",
    "compute_text_digest",
    "setup_logging",
    "configure_from_settings",
    "get_log_path",
]
