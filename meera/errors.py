"""Exception types raised by the chat path."""


class MeeraError(Exception):
    """Base class for errors raised by this package."""


class EmptyMessageError(MeeraError, ValueError):
    """Message is empty after trimming; rejected before any network call."""

    def __init__(self):
        super().__init__("Message cannot be empty.")


class ChatRequestError(MeeraError):
    """The remote chat call failed (network, HTTP status, or malformed body)."""

    def __init__(self, message: str, provider: str = "", status_code: int = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderNotFoundError(MeeraError, ValueError):
    """Requested chat provider is not registered."""
