"""In-process backends.

Used when no remote backend is configured and by the test suite. The scripted
completion client behaves like the real workflow: with ``save_to_db`` it writes
the question and the answer to the history store (which pushes them to
subscribers) under ``{notebook_id}_{user_id}``; without it, it only returns the
answer.
"""

import copy
import json
import logging
from typing import Callable, Optional

from ..core import AI, HUMAN, session_key
from ..errors import TransportError
from ..provider import (
    CompletionClient,
    CompletionRequest,
    CompletionResponse,
    HistoryStore,
    PushHandler,
    SourceCatalog,
    Subscription,
)

logger = logging.getLogger(__name__)


class MemoryHistoryStore(HistoryStore):
    """History rows kept in a list, with synchronous push to subscribers."""

    name = "memory"

    def __init__(self):
        self._rows: list[dict] = []
        self._next_id = 1
        self._handlers: dict[str, list[PushHandler]] = {}

    async def fetch(self, session_id: str) -> list[dict]:
        rows = [r for r in self._rows if r["session_id"] == session_id]
        rows.sort(key=lambda r: r["id"])
        return copy.deepcopy(rows)

    async def insert(self, session_id: str, message: dict) -> dict:
        row = {"id": self._next_id, "session_id": session_id, "message": copy.deepcopy(message)}
        self._next_id += 1
        self._rows.append(row)

        for handler in list(self._handlers.get(session_id, [])):
            try:
                await handler(copy.deepcopy(row))
            except Exception as e:
                logger.error("Push handler failed for %s: %s", session_id, e)

        return copy.deepcopy(row)

    async def delete(self, session_id: str) -> int:
        before = len(self._rows)
        self._rows = [r for r in self._rows if r["session_id"] != session_id]
        return before - len(self._rows)

    async def subscribe(self, session_id: str, handler: PushHandler) -> Subscription:
        self._handlers.setdefault(session_id, []).append(handler)
        return _MemorySubscription(self, session_id, handler)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._handlers.get(session_id, []))

    def _unsubscribe(self, session_id: str, handler: PushHandler) -> None:
        handlers = self._handlers.get(session_id, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(session_id, None)


class _MemorySubscription(Subscription):
    def __init__(self, store: MemoryHistoryStore, session_id: str, handler: PushHandler):
        self._store = store
        self._session_id = session_id
        self._handler = handler

    async def close(self) -> None:
        self._store._unsubscribe(self._session_id, self._handler)


class StaticSourceCatalog(SourceCatalog):
    """Sources registered up front, per notebook."""

    def __init__(self, sources: Optional[dict[str, list[dict]]] = None):
        self._sources = {k: list(v) for k, v in (sources or {}).items()}

    def add_source(self, notebook_id: str, source_id: str, title: str, source_type: str = "pdf") -> None:
        self._sources.setdefault(notebook_id, []).append(
            {"id": source_id, "title": title, "type": source_type}
        )

    async def list_sources(self, notebook_id: str) -> list[dict]:
        return [dict(s) for s in self._sources.get(notebook_id, [])]


def echo_responder(text: str) -> dict:
    return {"output": [{"text": f"You asked: {text}"}]}


class ScriptedCompletionClient(CompletionClient):
    """A stand-in for the completion workflow.

    ``responder`` maps the question to the workflow's answer payload.
    """

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        responder: Callable[[str], object] = echo_responder,
    ):
        self.history = history
        self.responder = responder
        self.requests: list[CompletionRequest] = []
        self.fail_with: Optional[str] = None

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if self.fail_with:
            raise TransportError(self.fail_with)

        answer = self.responder(request.message)

        if request.save_to_db and self.history is not None:
            key = session_key(request.session_id, request.user_id)
            await self.history.insert(key, {"type": HUMAN, "content": request.message})
            content = answer if isinstance(answer, str) else json.dumps(answer)
            await self.history.insert(key, {"type": AI, "content": content})

        return CompletionResponse({"success": True, "data": answer})
