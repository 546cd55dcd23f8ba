"""Chat exception hierarchy."""


class ChatError(Exception):
    """Base exception for chat errors."""
    pass


class MalformedEventError(ChatError):
    """Raised when an inbound frame is not valid JSON or not a known event."""
    pass


class PersistenceError(ChatError):
    """Raised when a chat write to the store fails."""
    pass