"""Chat session facade.

A ChatSession binds one notebook to one identity. Authenticated users keep
their history in the remote store under ``{notebook_id}_{user_id}``; their
answers come back as pushed rows. Anonymous visitors of a public notebook keep
their history in the local store; their answers come back in the completion
response because nothing is written remotely for them.

Anonymous visitors are told apart by an explicit visitor id, which scopes their
local store.

ChatService caches sessions per (notebook, user, public, visitor), drops them
when idle or over capacity, and is what the HTTP layer talks to.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

from .config import (
    DEFAULT_DUPLICATE_WINDOW,
    DEFAULT_MAX_SESSIONS,
    DEFAULT_SESSION_TTL,
    Settings,
)
from .core import AI, Message, MessageId, session_key
from .errors import (
    ChatAccessError,
    MalformedPayloadError,
    SendInProgressError,
    TransportError,
)
from .local_store import LocalSessionStore
from .normalizer import (
    SourceLookup,
    extract_ai_response,
    is_empty_payload,
    is_sentinel,
)
from .provider import (
    CompletionClient,
    CompletionRequest,
    HistoryStore,
    SourceCatalog,
    Subscription,
)
from .reconciler import UNREADABLE_MESSAGE, MergeResult, MessageReconciler

logger = logging.getLogger(__name__)

NO_RESPONSE_MESSAGE = "Sorry, the assistant did not return an answer. Please try again."
UNFINISHED_MESSAGE = (
    "The assistant acknowledged the question before it finished answering. "
    "Please try again in a moment."
)

_PLACED = (MergeResult.APPENDED, MergeResult.REPLACED)


class ChatSession:
    """Transcript access for one notebook and one (possibly anonymous) user."""

    def __init__(
        self,
        notebook_id: str,
        *,
        history: HistoryStore,
        sources: SourceCatalog,
        completions: CompletionClient,
        local_store: LocalSessionStore,
        user_id: Optional[str] = None,
        is_public: bool = False,
        visitor_id: Optional[str] = None,
        duplicate_window: int = DEFAULT_DUPLICATE_WINDOW,
    ):
        if not notebook_id:
            raise ValueError("notebook_id is required")
        self.notebook_id = notebook_id
        self.user_id = user_id or None
        self.is_public = is_public
        self.visitor_id = visitor_id or None
        self.history = history
        self.sources = sources
        self.completions = completions
        if self.is_anonymous and self.visitor_id:
            local_store = local_store.for_visitor(self.visitor_id)
        self.local_store = local_store
        self.session_id = session_key(notebook_id, self.user_id)
        self.reconciler = MessageReconciler(self.session_id, duplicate_window)
        self._subscription: Optional[Subscription] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def messages(self) -> list[Message]:
        return self.reconciler.messages

    @property
    def awaiting_response(self) -> bool:
        return self.reconciler.awaiting_response

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def get_transcript(self) -> list[Message]:
        """Load the transcript from its backing store.

        Anonymous visitors read only the local store. A failed remote fetch
        returns an empty list and leaves the in-memory transcript alone.
        """
        if self.is_anonymous:
            if not self.is_public:
                return []
            self.reconciler.load(self.local_store.load(self.notebook_id))
            return self.reconciler.messages

        try:
            rows = await self.history.fetch(self.session_id)
        except TransportError as e:
            logger.error("Error fetching chat history for %s: %s", self.session_id, e)
            return []

        lookup = await self._source_lookup() if rows else SourceLookup()
        self.reconciler.load_rows(rows, lookup)
        return self.reconciler.messages

    async def send(self, text: str) -> Optional[Message]:
        """Send a question.

        Returns the answer for anonymous sessions. Authenticated sessions get
        their answer by push, so None is returned. On a failed call the
        placeholder is rolled back and the TransportError re-raised.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text must not be empty")
        if self.is_anonymous and not self.is_public:
            raise ChatAccessError(f"Notebook {self.notebook_id} is not public")
        if self.reconciler.awaiting_response:
            raise SendInProgressError(f"Still waiting for an answer in {self.session_id}")

        placeholder = self.reconciler.add_placeholder(text)
        self._persist()

        request = CompletionRequest(
            session_id=self.notebook_id,
            message=text,
            user_id=self.user_id,
            save_to_db=not self.is_anonymous,
        )
        try:
            response = await self.completions.complete(request)
            if not response.success:
                raise TransportError(f"Completion failed for {self.session_id}")
        except TransportError:
            self.reconciler.discard(placeholder.id)
            self._persist()
            raise

        if not self.is_anonymous:
            return None

        reply = await self._accept_response(response.payload)
        self._persist()
        return reply

    async def clear(self) -> None:
        """Delete the transcript from its backing store and from memory."""
        if self.is_anonymous:
            self.local_store.clear(self.notebook_id)
        else:
            await self.history.delete(self.session_id)
        self.reconciler.clear()

    async def handle_push(self, row: dict) -> MergeResult:
        """Merge a row pushed by the history store."""
        if self.is_anonymous and not self.is_public:
            logger.debug("Ignoring push for closed notebook %s", self.notebook_id)
            return MergeResult.FILTERED
        if not isinstance(row, dict) or row.get("session_id") != self.session_id:
            # Anonymous sessions listen on the bare notebook id only
            logger.debug("Ignoring push for another session in %s", self.session_id)
            return MergeResult.FILTERED

        lookup = await self._source_lookup()
        result = self.reconciler.ingest(row, lookup)
        if result in _PLACED:
            self._persist()
        return result

    async def subscribe(self) -> None:
        if self._subscription is not None:
            return
        if self.is_anonymous:
            # Nothing is written remotely for anonymous sessions
            return
        self._subscription = await self.history.subscribe(self.session_id, self._on_push)

    async def unsubscribe(self) -> None:
        if self._subscription is None:
            return
        subscription, self._subscription = self._subscription, None
        await subscription.close()

    async def __aenter__(self) -> "ChatSession":
        await self.subscribe()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unsubscribe()

    # ── Private helpers ──────────────────────────────────────────────

    async def _on_push(self, row: dict) -> None:
        try:
            await self.handle_push(row)
        except Exception as e:
            logger.error("Error processing pushed message for %s: %s", self.session_id, e)

    async def _accept_response(self, payload) -> Optional[Message]:
        if is_empty_payload(payload):
            logger.warning("Completion for %s returned no data", self.session_id)
            return self.reconciler.add_local(AI, NO_RESPONSE_MESSAGE)

        try:
            extracted = extract_ai_response(payload)
        except MalformedPayloadError as e:
            logger.error("Error transforming completion response for %s: %s", self.session_id, e)
            return self.reconciler.add_local(AI, UNREADABLE_MESSAGE)

        if is_sentinel(extracted.get("content")):
            logger.warning("Completion for %s returned a workflow acknowledgement only", self.session_id)
            return self.reconciler.add_local(AI, UNFINISHED_MESSAGE)

        lookup = await self._source_lookup()
        row = {
            "id": self.reconciler.next_local_id(),
            "session_id": self.session_id,
            "message": {**extracted, "type": AI},
        }
        result = self.reconciler.ingest(row, lookup)
        if result not in _PLACED:
            logger.warning("Completion for %s produced no displayable answer", self.session_id)
            return self.reconciler.add_local(AI, NO_RESPONSE_MESSAGE)
        return self._find(row["id"])

    async def _source_lookup(self) -> SourceLookup:
        try:
            rows = await self.sources.list_sources(self.notebook_id)
        except TransportError as e:
            logger.error("Error fetching sources for %s: %s", self.notebook_id, e)
            rows = []
        return SourceLookup.from_rows(rows)

    def _persist(self) -> None:
        if self.is_anonymous and self.is_public:
            self.local_store.save(self.notebook_id, self.reconciler.messages)

    def _find(self, message_id: MessageId) -> Optional[Message]:
        for message in self.reconciler.messages:
            if message.id == message_id:
                return message
        return None


class ChatService:
    """Creates and caches ChatSessions over one set of collaborators.

    The cache is an LRU bounded by ``max_sessions``; sessions idle for longer
    than ``session_ttl`` seconds are dropped on the next ``open``. Dropping a
    session closes its push subscription.
    """

    def __init__(
        self,
        history: HistoryStore,
        sources: SourceCatalog,
        completions: CompletionClient,
        local_store: LocalSessionStore,
        settings: Optional[Settings] = None,
        time_func: Optional[Callable[[], float]] = None,
    ):
        self.history = history
        self.sources = sources
        self.completions = completions
        self.local_store = local_store
        self.duplicate_window = settings.duplicate_window if settings else DEFAULT_DUPLICATE_WINDOW
        self.max_sessions = max(1, settings.max_sessions) if settings else DEFAULT_MAX_SESSIONS
        self.session_ttl = settings.session_ttl if settings else DEFAULT_SESSION_TTL
        self._time_func = time_func or time.monotonic
        self._sessions: OrderedDict[tuple, ChatSession] = OrderedDict()
        self._last_used: dict[tuple, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def open(
        self,
        notebook_id: str,
        *,
        user_id: Optional[str] = None,
        is_public: bool = False,
        visitor_id: Optional[str] = None,
    ) -> ChatSession:
        """Return the session for this notebook and identity, subscribing on first use.

        Anonymous visitors of a public notebook must bring a visitor id.
        """
        user_id = user_id or None
        if user_id is None and is_public and not visitor_id:
            raise ValueError("visitor_id is required for anonymous sessions")
        key = (notebook_id, user_id, bool(is_public), None if user_id else (visitor_id or None))

        now = self._time_func()
        await self._evict_idle(now)

        session = self._sessions.get(key)
        if session is not None:
            self._sessions.move_to_end(key)
            self._last_used[key] = now
            return session

        session = ChatSession(
            notebook_id,
            history=self.history,
            sources=self.sources,
            completions=self.completions,
            local_store=self.local_store,
            user_id=user_id,
            is_public=is_public,
            visitor_id=visitor_id,
            duplicate_window=self.duplicate_window,
        )
        try:
            await session.subscribe()
        except TransportError as e:
            logger.error("Realtime subscription error for %s: %s", session.session_id, e)
        self._sessions[key] = session
        self._last_used[key] = now

        while len(self._sessions) > self.max_sessions:
            oldest, _ = next(iter(self._sessions.items()))
            await self._drop(oldest)
        return session

    async def get_transcript(
        self,
        notebook_id: str,
        is_public: bool = False,
        user_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
    ) -> list[Message]:
        session = await self.open(notebook_id, user_id=user_id, is_public=is_public, visitor_id=visitor_id)
        return await session.get_transcript()

    async def send(
        self,
        notebook_id: str,
        text: str,
        is_public: bool = False,
        user_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
    ) -> Optional[Message]:
        session = await self.open(notebook_id, user_id=user_id, is_public=is_public, visitor_id=visitor_id)
        return await session.send(text)

    async def clear(
        self,
        notebook_id: str,
        is_public: bool = False,
        user_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
    ) -> None:
        session = await self.open(notebook_id, user_id=user_id, is_public=is_public, visitor_id=visitor_id)
        await session.clear()

    async def close(self) -> None:
        """Tear down every push subscription."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._last_used.clear()
        for session in sessions:
            await session.unsubscribe()

    async def _evict_idle(self, now: float) -> None:
        if self.session_ttl <= 0:
            return
        expired = [key for key, used in self._last_used.items() if now - used > self.session_ttl]
        for key in expired:
            await self._drop(key)

    async def _drop(self, key: tuple) -> None:
        session = self._sessions.pop(key, None)
        self._last_used.pop(key, None)
        if session is not None:
            logger.debug("Dropping cached session %s", session.session_id)
            await session.unsubscribe()
