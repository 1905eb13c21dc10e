"""Best-effort local persistence of anonymous transcripts.

Anonymous visitors of a public notebook have no server-side history, so their
transcript lives in a local key/value store with one JSON document per
notebook and visitor. Keys are ``chat-history-public-{notebook_id}``; each
visitor gets a store of their own through ``for_visitor`` so that two visitors
of one notebook never see each other's transcript.

Persistence is best-effort: write failures are logged and swallowed, and a
missing or corrupt document loads as an empty transcript.
"""

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from tempfile import mkstemp

from .core import Message

logger = logging.getLogger(__name__)

KEY_PREFIX = "chat-history-public-"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def storage_key(notebook_id: str) -> str:
    return f"{KEY_PREFIX}{notebook_id}"


class LocalSessionStore:
    """File-backed store for anonymous transcripts, keyed per notebook."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def for_visitor(self, visitor_id: str) -> "LocalSessionStore":
        """Return the store namespaced to one anonymous visitor."""
        if not visitor_id:
            raise ValueError("visitor_id is required")
        return LocalSessionStore(self.base_path / _safe_name(visitor_id))

    def save(self, notebook_id: str, messages: list[Message]) -> None:
        """Overwrite the stored transcript for a notebook."""
        path = self._path_for(notebook_id)
        try:
            payload = json.dumps([m.to_dict() for m in messages], ensure_ascii=False)
            _atomic_write_text(path, payload)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Error saving local transcript %s: %s", storage_key(notebook_id), e)

    def load(self, notebook_id: str) -> list[Message]:
        """Return the stored transcript, or an empty list if absent or corrupt."""
        path = self._path_for(notebook_id)
        if not path.exists():
            return []

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Error loading local transcript %s: %s", storage_key(notebook_id), e)
            return []

        if not isinstance(data, list):
            logger.warning("Local transcript %s is not a list, ignoring", storage_key(notebook_id))
            return []

        try:
            return [Message.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Local transcript %s is corrupt: %s", storage_key(notebook_id), e)
            return []

    def clear(self, notebook_id: str) -> None:
        """Remove the stored transcript for a notebook."""
        try:
            self._path_for(notebook_id).unlink(missing_ok=True)
        except OSError as e:
            logger.error("Error clearing local transcript %s: %s", storage_key(notebook_id), e)

    def keys(self) -> list[str]:
        """Return the storage keys currently present."""
        if not self.base_path.is_dir():
            return []
        return sorted(p.stem for p in self.base_path.glob(f"{KEY_PREFIX}*.json"))

    def _path_for(self, notebook_id: str) -> Path:
        if not notebook_id:
            raise ValueError("notebook_id is required")
        return self.base_path / f"{_safe_name(storage_key(notebook_id))}.json"


def _safe_name(name: str) -> str:
    safe = _UNSAFE_CHARS.sub("_", name)
    if safe.startswith("."):
        safe = "_" + safe[1:]
    if safe != name:
        # Keep sanitized names from colliding
        safe = f"{safe}-{hashlib.sha1(name.encode('utf-8')).hexdigest()[:8]}"
    return safe


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = mkstemp(suffix=path.suffix, prefix=path.name + ".tmp", dir=path.parent)
    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
