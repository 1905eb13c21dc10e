"""Abstract collaborators the chat session depends on."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

PushHandler = Callable[[dict], Awaitable[None]]


class Subscription(ABC):
    """A live push subscription; ``close`` stops delivery."""

    @abstractmethod
    async def close(self) -> None:
        ...


class HistoryStore(ABC):
    """Remote, ordered log of chat rows keyed by session id.

    Rows look like ``{"id": int, "session_id": str, "message": {...}}``.
    Implementations raise TransportError when the store cannot be reached.
    """

    name: str  # "memory", "rest"

    @abstractmethod
    async def fetch(self, session_id: str) -> list[dict]:
        """Return all rows for a session, ordered by ascending id."""
        ...

    @abstractmethod
    async def insert(self, session_id: str, message: dict) -> dict:
        """Append a message and return the stored row."""
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> int:
        """Delete all rows for a session and return how many were removed."""
        ...

    @abstractmethod
    async def subscribe(self, session_id: str, handler: PushHandler) -> Subscription:
        """Deliver every row inserted for ``session_id`` to ``handler``."""
        ...

    async def aclose(self) -> None:
        """Release any network resources."""


class SourceCatalog(ABC):
    """Lists a notebook's sources so citations can show titles."""

    @abstractmethod
    async def list_sources(self, notebook_id: str) -> list[dict]:
        """Return ``{"id", "title", "type"}`` rows for a notebook."""
        ...

    async def aclose(self) -> None:
        """Release any network resources."""


@dataclass
class CompletionRequest:
    session_id: str  # the notebook id; the workflow composes its own key
    message: str
    user_id: Optional[str] = None
    save_to_db: bool = False

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "message": self.message,
            "user_id": self.user_id,
            "save_to_db": self.save_to_db,
        }


@dataclass
class CompletionResponse:
    body: Any  # JSON returned by the completion function, usually {success, data}

    @property
    def success(self) -> bool:
        if isinstance(self.body, dict):
            return bool(self.body.get("success", True))
        return True

    @property
    def payload(self) -> Any:
        """The workflow output, unwrapped from ``data`` when present."""
        if isinstance(self.body, dict) and "data" in self.body:
            return self.body["data"]
        return self.body


class CompletionClient(ABC):
    """Calls the upstream chat-completion workflow."""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send a message; raise TransportError if the call fails."""
        ...

    async def aclose(self) -> None:
        """Release any network resources."""
