"""Normalize chat-completion payloads and history rows into Messages.

The completion workflow is not under our control and its answers arrive in
several shapes:

- a raw string
- ``{"message": {"type": "ai", "content": ...}}``
- ``{"output": [{"text": ..., "citations": [...]}, ...]}``
- an object exposing ``text``, ``content``, ``response`` or ``answer``
- an array wrapping any of the above
- canonical ``{"segments": [...], "citations": [...]}``

History rows store ``{"type", "content"}`` objects where AI content is often a
JSON-encoded ``{"output": [...]}`` string. Output items become segments; an
item's citations share one sequence number which the segment points at.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .core import (
    AI,
    EMPTY_CONTENT,
    HUMAN,
    Citation,
    Content,
    Message,
    Segment,
    StructuredContent,
    content_fingerprint,
    structured_from_dict,
)
from .errors import MalformedPayloadError

logger = logging.getLogger(__name__)

SENTINEL_PHRASES = ("workflow was started",)

UNKNOWN_SOURCE_TITLE = "Unknown Source"
DEFAULT_SOURCE_TYPE = "pdf"

SCALAR_FIELDS = ("text", "content", "response", "answer")

NO_MATCH = object()


@dataclass(frozen=True)
class SourceInfo:
    title: str
    type: str


class SourceLookup:
    """Resolves a source id to its title and type for citation display."""

    def __init__(self, sources: Optional[dict[str, SourceInfo]] = None):
        self._sources = dict(sources or {})

    @classmethod
    def from_rows(cls, rows: list[dict]) -> "SourceLookup":
        """Build a lookup from ``{id, title, type}`` source rows."""
        sources = {}
        for row in rows or []:
            if not isinstance(row, dict) or not row.get("id"):
                continue
            sources[str(row["id"])] = SourceInfo(
                title=row.get("title") or UNKNOWN_SOURCE_TITLE,
                type=row.get("type") or DEFAULT_SOURCE_TYPE,
            )
        return cls(sources)

    def resolve(self, source_id: str) -> Optional[SourceInfo]:
        return self._sources.get(source_id)

    def __len__(self) -> int:
        return len(self._sources)


def is_sentinel(content: Any) -> bool:
    """Return True if content is workflow noise rather than an answer."""
    if content is None:
        return False
    if isinstance(content, (str, StructuredContent)):
        text = content_fingerprint(content)
    else:
        text = json.dumps(content, ensure_ascii=False, default=str)
    text = text.lower()
    return any(phrase in text for phrase in SENTINEL_PHRASES)


def is_empty_payload(payload: Any) -> bool:
    if payload is None:
        return True
    if isinstance(payload, (str, dict, list)):
        return len(payload) == 0
    return False


# ── Extraction strategies ────────────────────────────────────────
#
# Each strategy returns an AI message dict ({"type": "ai", "content": ...})
# or NO_MATCH. They run in order and the first match wins. New payload shapes
# get a new strategy rather than a change to an existing one.


def _typed_ai_message(data: Any) -> Any:
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, dict) and message.get("type") == AI:
            return message
    return NO_MATCH


def _output_array(data: Any) -> Any:
    if isinstance(data, dict) and isinstance(data.get("output"), list):
        return {"type": AI, "content": {"output": data["output"]}}
    return NO_MATCH


def _scalar_field(data: Any) -> Any:
    if isinstance(data, dict):
        for key in SCALAR_FIELDS:
            value = data.get(key)
            if value:
                return {"type": AI, "content": value}
    return NO_MATCH


def _message_string(data: Any) -> Any:
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, str) and message:
            return {"type": AI, "content": message}
    return NO_MATCH


def _array_wrapped(data: Any) -> Any:
    if not isinstance(data, list) or not data:
        return NO_MATCH
    first = data[0]
    if isinstance(first, dict):
        if first.get("output"):
            return {"type": AI, "content": {"output": first["output"]}}
        # A bare list of output items keeps its citations
        if first.get("text") and "citations" not in first:
            return {"type": AI, "content": first["text"]}
    if isinstance(first, str):
        return {"type": AI, "content": first}
    return {"type": AI, "content": {"output": data}}


def _raw_string(data: Any) -> Any:
    if isinstance(data, str):
        return {"type": AI, "content": data}
    return NO_MATCH


def _opaque_object(data: Any) -> Any:
    if isinstance(data, dict) and "type" in data and "content" in data:
        return data
    return NO_MATCH


EXTRACTION_STRATEGIES: list[Callable[[Any], Any]] = [
    _typed_ai_message,
    _output_array,
    _scalar_field,
    _message_string,
    _array_wrapped,
    _raw_string,
    _opaque_object,
]


def extract_ai_response(payload: Any) -> dict:
    """Pull the AI message out of a completion payload.

    Raises MalformedPayloadError when no strategy recognizes the payload.
    """
    for strategy in EXTRACTION_STRATEGIES:
        result = strategy(payload)
        if result is not NO_MATCH:
            return result
    raise MalformedPayloadError(
        f"Unrecognized completion payload: {type(payload).__name__}"
    )


# ── Content normalization ────────────────────────────────────────


def normalize_content(content: Any, lookup: SourceLookup) -> Content:
    """Turn raw message content into a string or StructuredContent.

    JSON-encoded strings are decoded when they hold a known structure and
    kept verbatim otherwise.
    """
    if isinstance(content, StructuredContent):
        return content

    if isinstance(content, str):
        parsed = _parse_json(content)
        if parsed is NO_MATCH:
            return content or EMPTY_CONTENT
        structured = _structure(parsed, lookup)
        if structured is NO_MATCH:
            return content
        return structured

    if content is None:
        return EMPTY_CONTENT

    structured = _structure(content, lookup)
    if structured is NO_MATCH:
        return json.dumps(content, ensure_ascii=False, default=str)
    return structured


def build_from_output(items: list, lookup: SourceLookup) -> StructuredContent:
    """Convert ``output`` items into segments and numbered citations."""
    segments = []
    citations = []
    next_citation_id = 1

    for item in items:
        if isinstance(item, str):
            segments.append(Segment(text=item))
            continue
        if not isinstance(item, dict):
            raise MalformedPayloadError(
                f"Unsupported output item: {type(item).__name__}"
            )

        text = item.get("text")
        if not isinstance(text, str):
            text = "" if text is None else str(text)

        raw_citations = item.get("citations")
        if not isinstance(raw_citations, list):
            raw_citations = []
        raw_citations = [c for c in raw_citations if isinstance(c, dict)]

        if not raw_citations:
            segments.append(Segment(text=text))
            continue

        segments.append(Segment(text=text, citation_id=next_citation_id))
        for raw in raw_citations:
            citations.append(_expand_citation(raw, next_citation_id, lookup))
        next_citation_id += 1

    return StructuredContent(segments=segments, citations=citations)


def _expand_citation(raw: dict, citation_id: int, lookup: SourceLookup) -> Citation:
    source_id = str(raw.get("chunk_source_id") or raw.get("source_id") or "")
    info = lookup.resolve(source_id)
    lines_from = raw.get("chunk_lines_from")
    lines_to = raw.get("chunk_lines_to")

    excerpt = None
    if lines_from is not None and lines_to is not None:
        excerpt = f"Lines {lines_from}-{lines_to}"

    return Citation(
        citation_id=citation_id,
        source_id=source_id,
        source_title=info.title if info else UNKNOWN_SOURCE_TITLE,
        source_type=info.type if info else DEFAULT_SOURCE_TYPE,
        page_number=raw.get("page_number"),
        chunk_index=raw.get("chunk_index"),
        chunk_lines_from=lines_from,
        chunk_lines_to=lines_to,
        excerpt=excerpt,
    )


def _structure(data: Any, lookup: SourceLookup) -> Any:
    if isinstance(data, dict):
        if isinstance(data.get("output"), list):
            return build_from_output(data["output"], lookup)
        if isinstance(data.get("segments"), list):
            return _canonical(data)
    elif isinstance(data, list) and data and all(isinstance(i, dict) for i in data):
        return build_from_output(data, lookup)
    return NO_MATCH


def _canonical(data: dict) -> StructuredContent:
    try:
        structured = structured_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"Invalid structured content: {e}") from e

    dangling = structured.dangling_refs()
    if dangling:
        raise MalformedPayloadError(f"Segments reference unknown citations: {dangling}")
    return structured


def _parse_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return NO_MATCH
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return NO_MATCH


# ── History rows ─────────────────────────────────────────────────


def transform_row(row: Any, lookup: SourceLookup) -> Message:
    """Convert a history row into a Message.

    Raises MalformedPayloadError for rows that cannot be interpreted.
    """
    if not isinstance(row, dict) or row.get("id") is None:
        raise MalformedPayloadError("History row has no id")

    row_id = row["id"]
    session_id = str(row.get("session_id") or "")
    raw = row.get("message")

    if isinstance(raw, str):
        return Message(id=row_id, session_id=session_id, role=HUMAN, content=raw or EMPTY_CONTENT)

    if raw is None:
        logger.warning("Message %s has no payload, using fallback", row_id)
        return Message(id=row_id, session_id=session_id, role=HUMAN, content=EMPTY_CONTENT)

    if not isinstance(raw, dict) or "type" not in raw or "content" not in raw:
        keys = sorted(raw) if isinstance(raw, dict) else type(raw).__name__
        raise MalformedPayloadError(f"Unable to parse message {row_id}: {keys}")

    role = HUMAN if raw["type"] == HUMAN else AI
    content = raw["content"]
    if role == HUMAN and isinstance(content, str):
        content = content or EMPTY_CONTENT
    else:
        content = normalize_content(content, lookup)

    return Message(
        id=row_id,
        session_id=session_id,
        role=role,
        content=content,
        additional_kwargs=raw.get("additional_kwargs"),
        response_metadata=raw.get("response_metadata"),
        tool_calls=raw.get("tool_calls"),
        invalid_tool_calls=raw.get("invalid_tool_calls"),
    )
