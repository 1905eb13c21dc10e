"""Core data models for notebook-chat."""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union

HUMAN = "human"
AI = "ai"

PLACEHOLDER_PREFIX = "temp-"
VISITOR_PREFIX = "guest_"
EMPTY_CONTENT = "Empty message"


@dataclass
class Segment:
    """A run of answer text, optionally pointing at a citation group."""

    text: str
    citation_id: Optional[int] = None


@dataclass
class Citation:
    """A reference from a segment to an excerpt of a notebook source."""

    citation_id: int  # local to the message, shared by one segment's citations
    source_id: str
    source_title: str = "Unknown Source"
    source_type: str = "pdf"
    page_number: Optional[int] = None
    chunk_index: Optional[int] = None
    chunk_lines_from: Optional[int] = None
    chunk_lines_to: Optional[int] = None
    excerpt: Optional[str] = None


@dataclass
class StructuredContent:
    """An AI answer split into segments with their citations."""

    segments: list[Segment] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)

    def dangling_refs(self) -> list[int]:
        """Return segment citation ids that have no matching citation."""
        known = {c.citation_id for c in self.citations}
        return [
            s.citation_id for s in self.segments
            if s.citation_id is not None and s.citation_id not in known
        ]

    def to_dict(self) -> dict:
        return {
            "segments": [_compact(vars(s)) for s in self.segments],
            "citations": [_compact(vars(c)) for c in self.citations],
        }


Content = Union[str, StructuredContent]
MessageId = Union[int, str]


@dataclass
class Message:
    """A single transcript entry."""

    id: MessageId  # row id, "temp-..." placeholder id, or synthesized int
    session_id: str
    role: str  # "human" | "ai"
    content: Content = EMPTY_CONTENT
    additional_kwargs: Optional[dict] = None
    response_metadata: Optional[dict] = None
    tool_calls: Optional[list] = None
    invalid_tool_calls: Optional[list] = None

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_id(self.id)

    def to_dict(self) -> dict:
        """Return the row-shaped dict used for storage and the HTTP API."""
        content = self.content
        if isinstance(content, StructuredContent):
            content = content.to_dict()
        message: dict[str, Any] = {"type": self.role, "content": content}
        for key in ("additional_kwargs", "response_metadata", "tool_calls", "invalid_tool_calls"):
            value = getattr(self, key)
            if value is not None:
                message[key] = value
        return {"id": self.id, "session_id": self.session_id, "message": message}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Rebuild a message written by ``to_dict``.

        Raises ValueError/TypeError/KeyError on data that was not.
        """
        message = data["message"]
        role = message["type"]
        if role not in (HUMAN, AI):
            raise ValueError(f"Unknown message type: {role!r}")
        content = message.get("content")
        if isinstance(content, dict):
            content = structured_from_dict(content)
        elif not isinstance(content, str):
            raise TypeError(f"Unsupported content type: {type(content).__name__}")
        return cls(
            id=data["id"],
            session_id=str(data.get("session_id", "")),
            role=role,
            content=content or EMPTY_CONTENT,
            additional_kwargs=message.get("additional_kwargs"),
            response_metadata=message.get("response_metadata"),
            tool_calls=message.get("tool_calls"),
            invalid_tool_calls=message.get("invalid_tool_calls"),
        )


def structured_from_dict(data: dict) -> StructuredContent:
    """Build StructuredContent from its canonical ``{segments, citations}`` dict."""
    segments = [
        Segment(text=str(s.get("text", "")), citation_id=s.get("citation_id"))
        for s in data.get("segments") or []
        if isinstance(s, dict)
    ]
    citations = []
    for c in data.get("citations") or []:
        if not isinstance(c, dict):
            continue
        citations.append(Citation(
            citation_id=c["citation_id"],
            source_id=str(c.get("source_id", "")),
            source_title=c.get("source_title") or "Unknown Source",
            source_type=c.get("source_type") or "pdf",
            page_number=c.get("page_number"),
            chunk_index=c.get("chunk_index"),
            chunk_lines_from=c.get("chunk_lines_from"),
            chunk_lines_to=c.get("chunk_lines_to"),
            excerpt=c.get("excerpt"),
        ))
    return StructuredContent(segments=segments, citations=citations)


def session_key(notebook_id: str, user_id: Optional[str] = None) -> str:
    """Return the history session id for a notebook and optional user."""
    if user_id:
        return f"{notebook_id}_{user_id}"
    return notebook_id


def new_visitor_id() -> str:
    """Return a fresh id for an anonymous visitor."""
    return f"{VISITOR_PREFIX}{uuid.uuid4()}"


def is_placeholder_id(message_id: MessageId) -> bool:
    return str(message_id).startswith(PLACEHOLDER_PREFIX)


def content_fingerprint(content: Content) -> str:
    """Return a string form of content suitable for substring checks."""
    if isinstance(content, StructuredContent):
        return json.dumps(content.to_dict(), ensure_ascii=False)
    return content


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}
