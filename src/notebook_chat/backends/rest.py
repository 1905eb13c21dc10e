"""HTTP backends for a hosted history table, sources table and workflow function.

The history and sources tables are read through a PostgREST-style API
(``/rest/v1/<table>`` with ``column=eq.value`` filters); the completion
workflow is invoked through ``/functions/v1/send-chat-message``.

Push delivery polls the history table for rows with an id greater than the
last one seen. The baseline id is taken when the subscription is created, so
only rows inserted afterwards are delivered.
"""

import asyncio
import contextlib
import logging
from typing import Any, Optional

import httpx

from ..config import Settings
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

HISTORY_TABLE = "n8n_chat_histories"
SOURCES_TABLE = "sources"
COMPLETION_FUNCTION = "send-chat-message"


def create_client(settings: Settings) -> httpx.AsyncClient:
    """Return an AsyncClient authenticated against the configured backend."""
    headers = {}
    if settings.api_key:
        headers["apikey"] = settings.api_key
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return httpx.AsyncClient(
        base_url=settings.backend_url or "",
        headers=headers,
        timeout=settings.http_timeout,
    )


async def _request_json(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Any:
    try:
        resp = await client.request(method, url, **kwargs)
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise TransportError(
            f"{method} {url} failed: {e.response.status_code} {e.response.text[:200]}"
        ) from e
    except httpx.HTTPError as e:
        raise TransportError(f"{method} {url} failed: {e}") from e

    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise TransportError(f"{method} {url} returned invalid JSON") from e


class RestHistoryStore(HistoryStore):
    """History rows stored in a remote table."""

    name = "rest"

    def __init__(self, client: httpx.AsyncClient, poll_interval: float = 2.0):
        self.client = client
        self.poll_interval = poll_interval

    async def fetch(self, session_id: str) -> list[dict]:
        return await self.fetch_after(session_id, None)

    async def fetch_after(self, session_id: str, last_id: Optional[int]) -> list[dict]:
        """Return rows for a session with an id greater than ``last_id``."""
        params = {"select": "*", "session_id": f"eq.{session_id}", "order": "id.asc"}
        if last_id is not None:
            params["id"] = f"gt.{last_id}"
        rows = await _request_json(self.client, "GET", f"/rest/v1/{HISTORY_TABLE}", params=params)
        return rows if isinstance(rows, list) else []

    async def insert(self, session_id: str, message: dict) -> dict:
        rows = await _request_json(
            self.client,
            "POST",
            f"/rest/v1/{HISTORY_TABLE}",
            json={"session_id": session_id, "message": message},
            headers={"Prefer": "return=representation"},
        )
        if not isinstance(rows, list) or not rows:
            raise TransportError("Insert returned no row")
        return rows[0]

    async def delete(self, session_id: str) -> int:
        rows = await _request_json(
            self.client,
            "DELETE",
            f"/rest/v1/{HISTORY_TABLE}",
            params={"session_id": f"eq.{session_id}"},
            headers={"Prefer": "return=representation"},
        )
        return len(rows) if isinstance(rows, list) else 0

    async def subscribe(self, session_id: str, handler: PushHandler) -> Subscription:
        rows = await self.fetch(session_id)
        ids = [r["id"] for r in rows if isinstance(r, dict) and isinstance(r.get("id"), int)]
        last_id = max(ids, default=None)
        subscription = _PollingSubscription(self, session_id, handler, last_id)
        subscription.start()
        return subscription

    async def aclose(self) -> None:
        await self.client.aclose()


class _PollingSubscription(Subscription):
    def __init__(self, store: RestHistoryStore, session_id: str, handler: PushHandler, last_id: Optional[int]):
        self._store = store
        self._session_id = session_id
        self._handler = handler
        self.last_id = last_id
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def poll_once(self) -> int:
        """Deliver rows inserted since the last poll and return how many."""
        rows = await self._store.fetch_after(self._session_id, self.last_id)
        delivered = 0
        for row in rows:
            row_id = row.get("id") if isinstance(row, dict) else None
            if not isinstance(row_id, int) or isinstance(row_id, bool):
                logger.warning("Skipping malformed row for %s: %r", self._session_id, row)
                continue
            self.last_id = row_id if self.last_id is None else max(self.last_id, row_id)
            delivered += 1
            try:
                await self._handler(row)
            except Exception as e:
                logger.error("Push handler failed for %s: %s", self._session_id, e)
        return delivered

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._store.poll_interval)
            try:
                await self.poll_once()
            except TransportError as e:
                logger.warning("Polling %s failed: %s", self._session_id, e)
            except Exception:
                logger.exception("Unexpected error polling %s", self._session_id)

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None


class RestSourceCatalog(SourceCatalog):
    """Notebook sources read from the remote sources table."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def list_sources(self, notebook_id: str) -> list[dict]:
        rows = await _request_json(
            self.client,
            "GET",
            f"/rest/v1/{SOURCES_TABLE}",
            params={"select": "id,title,type", "notebook_id": f"eq.{notebook_id}"},
        )
        return rows if isinstance(rows, list) else []


class HttpCompletionClient(CompletionClient):
    """Invokes the completion workflow function over HTTP."""

    def __init__(self, client: httpx.AsyncClient, function: str = COMPLETION_FUNCTION):
        self.client = client
        self.function = function

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        body = await _request_json(
            self.client,
            "POST",
            f"/functions/v1/{self.function}",
            json=request.to_dict(),
        )
        return CompletionResponse(body)
