class FeedError(Exception):
    """Base class for every error raised by the feed engine."""


class ConfigurationError(FeedError):
    """A required endpoint or key is missing. Never retried."""


class TransportError(FeedError):
    """Non-2xx response, network failure or a fault reported by a source."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RPCError(FeedError):
    """The JSON-RPC node answered with an error object (e.g. a revert)."""

    def __init__(self, message: str, code: int = 0):
        super().__init__(message)
        self.code = code


class DecodeError(FeedError):
    pass


class FetchCancelled(FeedError):
    """Raised to the waiter of a fetch that a newer fetch for the same key superseded."""
