"""Chat transcript synchronization for notebook workspaces."""

__version__ = "0.1.0"
