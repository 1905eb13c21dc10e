"""Pick the configured backends and provide them as one bundle."""

import logging
from dataclasses import dataclass

from ..config import Settings
from ..provider import CompletionClient, HistoryStore, SourceCatalog
from .memory import MemoryHistoryStore, ScriptedCompletionClient, StaticSourceCatalog
from .rest import HttpCompletionClient, RestHistoryStore, RestSourceCatalog, create_client

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    history: HistoryStore
    sources: SourceCatalog
    completions: CompletionClient

    async def aclose(self) -> None:
        await self.completions.aclose()
        await self.sources.aclose()
        await self.history.aclose()


def create_backends(settings: Settings) -> Backends:
    """Return REST backends when a backend URL is configured, else in-memory ones."""
    if settings.backend_url:
        client = create_client(settings)
        logger.info("Using REST backend at %s", settings.backend_url)
        return Backends(
            history=RestHistoryStore(client, poll_interval=settings.poll_interval),
            sources=RestSourceCatalog(client),
            completions=HttpCompletionClient(client),
        )

    logger.info("No backend URL configured, using in-memory backend")
    history = MemoryHistoryStore()
    return Backends(
        history=history,
        sources=StaticSourceCatalog(),
        completions=ScriptedCompletionClient(history),
    )
