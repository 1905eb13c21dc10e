"""FastAPI web server for notebook-chat."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel

from .backends import Backends, create_backends
from .config import load_settings
from .core import new_visitor_id
from .errors import ChatAccessError, SendInProgressError, TransportError
from .export import transcript_to_json, transcript_to_markdown
from .local_store import LocalSessionStore
from .session import ChatService, ChatSession

logger = logging.getLogger(__name__)

# Service cache (populated on first request)
_service: ChatService | None = None
_backends: Backends | None = None


def _get_service() -> ChatService:
    """Lazily build and cache the chat service from the environment."""
    global _service, _backends
    if _service is None:
        settings = load_settings()
        _backends = create_backends(settings)
        _service = ChatService(
            history=_backends.history,
            sources=_backends.sources,
            completions=_backends.completions,
            local_store=LocalSessionStore(settings.local_store_path),
            settings=settings,
        )
        logger.info("Chat service ready (history backend: %s)", _backends.history.name)
    return _service


async def _shutdown() -> None:
    global _service, _backends
    if _service is not None:
        await _service.close()
    if _backends is not None:
        await _backends.aclose()
    _service = None
    _backends = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await _shutdown()


app = FastAPI(title="notebook-chat", version="0.1.0", lifespan=lifespan)


class SendBody(BaseModel):
    text: str


VISITOR_HEADER = "X-Browser-Id"


async def _open_session(
    notebook_id: str,
    public: bool,
    user_id: str | None,
    browser_id: str | None,
    response: Response,
) -> ChatSession:
    """Open the caller's session; anonymous callers without an id get a new one."""
    if not user_id and public and not browser_id:
        browser_id = new_visitor_id()
        logger.debug("Assigned visitor id %s for notebook %s", browser_id, notebook_id)
    if not user_id and browser_id:
        response.headers[VISITOR_HEADER] = browser_id
    return await _get_service().open(
        notebook_id, user_id=user_id, is_public=public, visitor_id=browser_id
    )


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/notebooks/{notebook_id}/messages")
async def get_messages(
    notebook_id: str,
    response: Response,
    public: bool = Query(False, description="Notebook is publicly shared"),
    user_id: str | None = Header(None, alias="X-User-Id"),
    browser_id: str | None = Header(None, alias=VISITOR_HEADER),
):
    """Return the transcript for the caller."""
    session = await _open_session(notebook_id, public, user_id, browser_id, response)
    messages = await session.get_transcript()
    return {
        "session_id": session.session_id,
        "messages": [m.to_dict() for m in messages],
    }


@app.post("/api/notebooks/{notebook_id}/messages")
async def send_message(
    notebook_id: str,
    body: SendBody,
    response: Response,
    public: bool = Query(False, description="Notebook is publicly shared"),
    user_id: str | None = Header(None, alias="X-User-Id"),
    browser_id: str | None = Header(None, alias=VISITOR_HEADER),
):
    """Send a question; anonymous callers get the answer in the response."""
    session = await _open_session(notebook_id, public, user_id, browser_id, response)

    try:
        reply = await session.send(body.text)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ChatAccessError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SendInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        logger.error("Failed to send message for %s: %s", session.session_id, e)
        raise HTTPException(status_code=502, detail="Message not sent, please retry")

    return {
        "session_id": session.session_id,
        "reply": reply.to_dict() if reply else None,
        "messages": [m.to_dict() for m in session.messages],
    }


@app.delete("/api/notebooks/{notebook_id}/messages")
async def clear_messages(
    notebook_id: str,
    response: Response,
    public: bool = Query(False, description="Notebook is publicly shared"),
    user_id: str | None = Header(None, alias="X-User-Id"),
    browser_id: str | None = Header(None, alias=VISITOR_HEADER),
):
    """Delete the caller's transcript."""
    session = await _open_session(notebook_id, public, user_id, browser_id, response)

    try:
        await session.clear()
    except TransportError as e:
        logger.error("Failed to clear chat history for %s: %s", session.session_id, e)
        raise HTTPException(status_code=502, detail="Failed to clear chat history")

    return {"session_id": session.session_id, "cleared": True}


@app.post("/api/notebooks/{notebook_id}/push")
async def push_row(
    notebook_id: str,
    row: dict,
    response: Response,
    public: bool = Query(False, description="Notebook is publicly shared"),
    user_id: str | None = Header(None, alias="X-User-Id"),
    browser_id: str | None = Header(None, alias=VISITOR_HEADER),
):
    """Accept an inserted history row delivered by webhook."""
    session = await _open_session(notebook_id, public, user_id, browser_id, response)
    result = await session.handle_push(row)
    return {"session_id": session.session_id, "result": result.value}


@app.get("/api/notebooks/{notebook_id}/export")
async def export_transcript(
    notebook_id: str,
    response: Response,
    format: str = Query("md", description="Export format: md or json"),
    public: bool = Query(False, description="Notebook is publicly shared"),
    user_id: str | None = Header(None, alias="X-User-Id"),
    browser_id: str | None = Header(None, alias=VISITOR_HEADER),
):
    """Export the caller's transcript as Markdown or JSON."""
    session = await _open_session(notebook_id, public, user_id, browser_id, response)
    messages = await session.get_transcript()

    safe_name = "".join(c if c.isalnum() or c in "-_" else "" for c in notebook_id)[:50] or "chat"
    headers = {}
    if VISITOR_HEADER in response.headers:
        headers[VISITOR_HEADER] = response.headers[VISITOR_HEADER]

    if format == "json":
        content = transcript_to_json(notebook_id, messages)
        headers["Content-Disposition"] = f'attachment; filename="{safe_name}.json"'
        return Response(content=content, media_type="application/json", headers=headers)
    else:
        content = transcript_to_markdown(notebook_id, messages)
        headers["Content-Disposition"] = f'attachment; filename="{safe_name}.md"'
        return Response(content=content, media_type="text/markdown", headers=headers)
