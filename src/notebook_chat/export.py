"""Export transcripts to Markdown and JSON formats."""

import json

from .core import HUMAN, Message, StructuredContent

ROLE_LABELS = {HUMAN: "You", "ai": "Assistant"}


def transcript_to_markdown(notebook_id: str, messages: list[Message]) -> str:
    """Export a transcript as clean Markdown.

    Cited segments get a ``[n]`` marker and each message lists its sources.
    """
    lines = [f"# Chat for notebook {notebook_id}", ""]
    lines.append(f"**Messages:** {len(messages)}")
    lines.extend(["", "---", ""])

    for msg in messages:
        lines.append(f"## {ROLE_LABELS.get(msg.role, msg.role.capitalize())}")
        lines.append("")
        if isinstance(msg.content, StructuredContent):
            lines.append(_render_structured(msg.content))
        else:
            lines.append(msg.content)
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def transcript_to_json(notebook_id: str, messages: list[Message]) -> str:
    """Export a transcript as structured JSON."""
    data = {
        "notebook_id": notebook_id,
        "message_count": len(messages),
        "messages": [msg.to_dict() for msg in messages],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def _render_structured(content: StructuredContent) -> str:
    text = "".join(
        f"{s.text} [{s.citation_id}]" if s.citation_id is not None else s.text
        for s in content.segments
    )
    if not content.citations:
        return text

    lines = [text, "", "**Sources:**", ""]
    for c in content.citations:
        label = f"- [{c.citation_id}] {c.source_title}"
        if c.excerpt:
            label += f" ({c.excerpt})"
        elif c.page_number is not None:
            label += f" (page {c.page_number})"
        lines.append(label)
    return "\n".join(lines)
