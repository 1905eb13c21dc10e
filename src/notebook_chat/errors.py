"""Exceptions raised by notebook-chat."""


class ChatError(Exception):
    """Base class for chat subsystem errors."""


class TransportError(ChatError):
    """The history store or the completion service could not be reached,
    answered with a non-2xx status, or reported ``success: false``."""


class MalformedPayloadError(ChatError):
    """A stored or returned payload could not be turned into a message."""


class ChatAccessError(ChatError):
    """The caller may not chat in this notebook."""


class SendInProgressError(ChatError):
    """A message is already waiting for its answer in this session."""
