"""Shared test fixtures for notebook-chat."""

import json

import pytest

from notebook_chat.backends.memory import (
    MemoryHistoryStore,
    ScriptedCompletionClient,
    StaticSourceCatalog,
)
from notebook_chat.local_store import LocalSessionStore
from notebook_chat.session import ChatService, ChatSession

NOTEBOOK_ID = "nb-geo"
USER_ID = "user-1"


def geo_answer(text: str) -> dict:
    """Workflow answer with one cited segment and one plain segment."""
    return {
        "output": [
            {
                "text": "Paris is the capital.",
                "citations": [
                    {"chunk_index": 0, "chunk_source_id": "s1", "chunk_lines_from": 1, "chunk_lines_to": 3},
                ],
            },
            {"text": " It lies on the Seine."},
        ]
    }


@pytest.fixture
def history():
    return MemoryHistoryStore()


@pytest.fixture
def sources():
    catalog = StaticSourceCatalog()
    catalog.add_source(NOTEBOOK_ID, "s1", "Geo.pdf", "pdf")
    catalog.add_source(NOTEBOOK_ID, "s2", "Rivers", "website")
    return catalog


@pytest.fixture
def completions(history):
    return ScriptedCompletionClient(history, responder=geo_answer)


@pytest.fixture
def local_store(tmp_path):
    return LocalSessionStore(tmp_path / "local-store")


@pytest.fixture
def make_session(history, sources, completions, local_store):
    """Factory for ChatSessions over the shared in-memory collaborators."""

    def _make(user_id=None, is_public=False, notebook_id=NOTEBOOK_ID, visitor_id=None):
        return ChatSession(
            notebook_id,
            history=history,
            sources=sources,
            completions=completions,
            local_store=local_store,
            user_id=user_id,
            is_public=is_public,
            visitor_id=visitor_id,
        )

    return _make


@pytest.fixture
def service(history, sources, completions, local_store):
    return ChatService(history, sources, completions, local_store)


@pytest.fixture
def stored_rows():
    """Rows as the completion workflow writes them to the history table."""
    key = f"{NOTEBOOK_ID}_{USER_ID}"
    return [
        {"id": 101, "session_id": key, "message": {"type": "human", "content": "What is the capital of France?"}},
        {
            "id": 102,
            "session_id": key,
            "message": {
                "type": "ai",
                "content": json.dumps(geo_answer("")),
                "additional_kwargs": {},
                "response_metadata": {},
                "tool_calls": [],
                "invalid_tool_calls": [],
            },
        },
        {"id": 103, "session_id": key, "message": {"type": "human", "content": "And Germany?"}},
        {"id": 104, "session_id": key, "message": {"type": "ai", "content": "Berlin."}},
    ]
