"""File fingerprinting and change detection helpers."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "CHUNK_SIZE",
    "FileSignature",
    "ChangeDetector",
    "compute_fingerprint",
    "compute_text_digest",
]

LOGGER = logging.getLogger(__name__)

# Files are hashed in fixed-size chunks so large sources never sit fully in memory.
CHUNK_SIZE = 64 * 1024


@dataclass(slots=True, frozen=True)
class FileSignature:
    """Represents a file fingerprint for change detection."""

    path: Path
    digest: str


def compute_fingerprint(path: Path | str, *, chunk_size: int = CHUNK_SIZE) -> str:
    """Return the SHA-256 hex digest of ``path``, streamed in ``chunk_size`` blocks.

    Raises ``OSError`` when the file cannot be read.
    """

    hasher = hashlib.sha256()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(chunk_size), b""):
            hasher.update(block)
    return hasher.hexdigest()


def compute_text_digest(text: str) -> str:
    """Return a SHA-256 digest for the provided text."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class ChangeDetector:
    """Tracks the fingerprint of one file and reports when its bytes change.

    A file that cannot be read while checking is reported as unchanged.
    Callers that need a hard guarantee (security-sensitive invalidation)
    must not rely on it.

    ``refresh_on_check`` selects the policy for the stored fingerprint. When
    ``False`` (the default) :meth:`check_changed` is a pure comparison and the
    baseline only moves through :meth:`refresh`. When ``True`` every detected
    change becomes the new baseline, so each edit is reported once.
    """

    def __init__(self, signature: FileSignature, *, refresh_on_check: bool = False) -> None:
        self._signature = signature
        self.refresh_on_check = refresh_on_check

    @classmethod
    async def create(cls, path: Path | str, *, refresh_on_check: bool = False) -> "ChangeDetector":
        """Fingerprint ``path`` and return a detector tracking it.

        Unlike :meth:`check_changed`, the initial read propagates ``OSError``.
        """

        target = Path(path)
        digest = await asyncio.to_thread(compute_fingerprint, target)
        return cls(FileSignature(path=target, digest=digest), refresh_on_check=refresh_on_check)

    @property
    def path(self) -> Path:
        return self._signature.path

    @property
    def fingerprint(self) -> str:
        return self._signature.digest

    async def check_changed(self) -> bool:
        """Return ``True`` if the file's bytes differ from the stored fingerprint."""

        digest = await self._read_digest()
        if digest is None:
            return False
        changed = digest != self._signature.digest
        if changed and self.refresh_on_check:
            self._signature = FileSignature(path=self._signature.path, digest=digest)
        return changed

    async def refresh(self) -> bool:
        """Re-read the file and store its fingerprint; ``False`` if it was unreadable."""

        digest = await self._read_digest()
        if digest is None:
            return False
        self._signature = FileSignature(path=self._signature.path, digest=digest)
        return True

    async def _read_digest(self) -> str | None:
        try:
            return await asyncio.to_thread(compute_fingerprint, self._signature.path)
        except OSError as exc:
            LOGGER.debug("Unable to fingerprint %s: %s", self._signature.path, exc)
            return None
