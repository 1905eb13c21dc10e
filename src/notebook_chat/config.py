"""Environment-driven settings and platform-aware paths."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_DUPLICATE_WINDOW = 5000
DEFAULT_HTTP_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_SESSIONS = 256
DEFAULT_SESSION_TTL = 1800.0


@dataclass
class Settings:
    """Runtime configuration for the chat subsystem."""

    local_store_path: Path
    backend_url: Optional[str] = None  # None selects the in-memory backend
    api_key: str = ""
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    duplicate_window: int = DEFAULT_DUPLICATE_WINDOW
    max_sessions: int = DEFAULT_MAX_SESSIONS
    session_ttl: float = DEFAULT_SESSION_TTL  # idle seconds before a cached session is dropped
    log_level: str = "INFO"


def get_local_store_path() -> Path:
    """Return the directory holding anonymous transcripts."""
    env = os.environ.get("NOTEBOOK_CHAT_LOCAL_STORE")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "notebook-chat" / "local-store"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "notebook-chat" / "local-store"
    else:  # Linux
        return Path.home() / ".local" / "share" / "notebook-chat" / "local-store"


def load_settings() -> Settings:
    """Build Settings from NOTEBOOK_CHAT_* environment variables."""
    return Settings(
        local_store_path=get_local_store_path(),
        backend_url=os.environ.get("NOTEBOOK_CHAT_BACKEND_URL") or None,
        api_key=os.environ.get("NOTEBOOK_CHAT_API_KEY", ""),
        http_timeout=_env_float("NOTEBOOK_CHAT_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        poll_interval=_env_float("NOTEBOOK_CHAT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        duplicate_window=int(_env_float("NOTEBOOK_CHAT_DUPLICATE_WINDOW", DEFAULT_DUPLICATE_WINDOW)),
        max_sessions=int(_env_float("NOTEBOOK_CHAT_MAX_SESSIONS", DEFAULT_MAX_SESSIONS)),
        session_ttl=_env_float("NOTEBOOK_CHAT_SESSION_TTL", DEFAULT_SESSION_TTL),
        log_level=os.environ.get("NOTEBOOK_CHAT_LOG_LEVEL", "INFO").upper(),
    )


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
