"""In-memory transcript reconciliation.

A MessageReconciler owns the transcript of one session key. Messages reach it
from three places: the initial history fetch (remote store or local store),
push events for inserted rows, and synchronous completion responses. Every
candidate goes through the same checks before it lands:

1. sentinel workflow noise is dropped;
2. a message whose id is already present is dropped;
3. a human message equal to an outstanding placeholder replaces it in place;
4. a human message equal to a persisted one with a nearby numeric id is a
   double delivery and is dropped;
5. anything else is appended.

Nothing here knows where a message came from. Push filtering and the choice of
persistence target belong to the session facade.
"""

import enum
import logging
import time
from typing import Optional

from .config import DEFAULT_DUPLICATE_WINDOW
from .core import (
    AI,
    HUMAN,
    PLACEHOLDER_PREFIX,
    Content,
    Message,
    MessageId,
)
from .errors import MalformedPayloadError
from .normalizer import SourceLookup, is_sentinel, transform_row

logger = logging.getLogger(__name__)

UNREADABLE_MESSAGE = "Sorry, this message could not be displayed."


class TranscriptState(enum.Enum):
    EMPTY = "empty"
    LOADED = "loaded"


class MergeResult(enum.Enum):
    APPENDED = "appended"
    REPLACED = "replaced"
    DUPLICATE = "duplicate"
    FILTERED = "filtered"


class MessageReconciler:
    """Owns one session's ordered, duplicate-free transcript."""

    def __init__(self, session_id: str, duplicate_window: int = DEFAULT_DUPLICATE_WINDOW):
        self.session_id = session_id
        self.duplicate_window = duplicate_window
        self.state = TranscriptState.EMPTY
        self.awaiting_response = False
        self._messages: list[Message] = []
        self._last_local_id = 0

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def pending(self) -> list[Message]:
        """Placeholders not yet superseded."""
        return [m for m in self._messages if m.is_placeholder]

    def __len__(self) -> int:
        return len(self._messages)

    def load(self, messages: list[Message]) -> None:
        """Replace the transcript with an initial batch and mark it loaded."""
        self._messages = []
        self.awaiting_response = False
        for message in messages:
            self.merge(message, batch=True)
        self.state = TranscriptState.LOADED

    def load_rows(self, rows: list, lookup: SourceLookup) -> None:
        """Like ``load``, for raw history rows."""
        self._messages = []
        self.awaiting_response = False
        for row in rows:
            self.ingest(row, lookup, batch=True)
        self.state = TranscriptState.LOADED

    def ingest(self, row: dict, lookup: SourceLookup, batch: bool = False) -> MergeResult:
        """Transform a history row and merge it.

        A row that cannot be transformed is replaced by a visible error
        message so the rest of the transcript still renders.
        """
        try:
            message = transform_row(row, lookup)
        except MalformedPayloadError as e:
            logger.warning("Replacing unreadable message in %s: %s", self.session_id, e)
            message = self._error_message(row)
        return self.merge(message, batch=batch)

    def merge(self, candidate: Message, batch: bool = False) -> MergeResult:
        """Apply the dedup rules to a candidate and place it if it survives.

        Rows of one initial batch come from a single ordered log, so only the
        id check applies to them; equal questions asked twice stay.
        """
        if is_sentinel(candidate.content):
            logger.debug("Dropping system message %s in %s", candidate.id, self.session_id)
            return MergeResult.FILTERED

        if any(m.id == candidate.id for m in self._messages):
            logger.debug("Dropping duplicate id %s in %s", candidate.id, self.session_id)
            return MergeResult.DUPLICATE

        if not batch and candidate.role == HUMAN and isinstance(candidate.content, str) and candidate.content:
            result = self._merge_human(candidate)
            if result is not None:
                return result

        self._messages.append(candidate)
        return self._placed(candidate, MergeResult.APPENDED)

    def _merge_human(self, candidate: Message) -> Optional[MergeResult]:
        same_text = [
            (index, existing) for index, existing in enumerate(self._messages)
            if existing.role == HUMAN and existing.content == candidate.content
        ]

        # A persisted copy supersedes the oldest matching placeholder
        if not candidate.is_placeholder:
            for index, existing in same_text:
                if existing.is_placeholder:
                    self._messages[index] = candidate
                    return self._placed(candidate, MergeResult.REPLACED)

        for _, existing in same_text:
            if existing.is_placeholder != candidate.is_placeholder:
                logger.debug("Placeholder %s already persisted in %s", candidate.id, self.session_id)
                return MergeResult.DUPLICATE
            if not existing.is_placeholder and self._ids_close(existing.id, candidate.id):
                logger.debug("Dropping double delivery %s in %s", candidate.id, self.session_id)
                return MergeResult.DUPLICATE

        return None

    def add_placeholder(self, text: str) -> Message:
        """Append a provisional human message for text the user just sent."""
        placeholder = Message(
            id=f"{PLACEHOLDER_PREFIX}{self.next_local_id()}",
            session_id=self.session_id,
            role=HUMAN,
            content=text,
        )
        self._messages.append(placeholder)
        self.state = TranscriptState.LOADED
        self.awaiting_response = True
        return placeholder

    def add_local(self, role: str, content: Content) -> Optional[Message]:
        """Merge a locally synthesized message under a fresh id.

        Returns the message, or None if the merge rules dropped it.
        """
        message = Message(
            id=self.next_local_id(),
            session_id=self.session_id,
            role=role,
            content=content,
        )
        result = self.merge(message)
        if result in (MergeResult.APPENDED, MergeResult.REPLACED):
            return message
        return None

    def discard(self, message_id: MessageId) -> bool:
        """Remove a message, used to roll back a failed send."""
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                del self._messages[index]
                if message.is_placeholder:
                    self.awaiting_response = False
                return True
        return False

    def clear(self) -> None:
        self._messages = []
        self.awaiting_response = False
        self.state = TranscriptState.EMPTY

    def next_local_id(self) -> int:
        """Return a timestamp-derived id, strictly increasing per reconciler."""
        now_ms = int(time.time() * 1000)
        self._last_local_id = max(now_ms, self._last_local_id + 1)
        return self._last_local_id

    def _placed(self, message: Message, result: MergeResult) -> MergeResult:
        self.state = TranscriptState.LOADED
        # The wait ends with the answer or with the placeholder being persisted
        if message.role == AI or (result is MergeResult.REPLACED and not self.pending):
            self.awaiting_response = False
        return result

    def _ids_close(self, a: MessageId, b: MessageId) -> bool:
        if isinstance(a, bool) or isinstance(b, bool):
            return False
        if not isinstance(a, int) or not isinstance(b, int):
            return False
        return abs(a - b) < self.duplicate_window

    def _error_message(self, row) -> Message:
        row_id = row.get("id") if isinstance(row, dict) else None
        return Message(
            id=row_id if row_id is not None else self.next_local_id(),
            session_id=self.session_id,
            role=AI,
            content=UNREADABLE_MESSAGE,
        )
