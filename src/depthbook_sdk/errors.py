"""Exceptions raised by the depthbook SDK."""


class DepthBookError(Exception):
    """Base exception for depthbook SDK errors."""
    pass


class RateLimitError(DepthBookError):
    """Raised when API rate limit is exceeded."""
    pass


class AccessDeniedError(DepthBookError):
    """Raised when the API rejects credentials or lacks permissions."""
    pass


class HttpApiError(DepthBookError):
    """Raised when a REST call fails or returns an error body."""
    pass


class SubscriptionError(DepthBookError):
    """Raised when the venue rejects a subscribe or unsubscribe request."""
    pass


class DuplicateSubscriptionError(DepthBookError):
    """Raised when a stream key is already subscribed or being subscribed."""
    pass


class PendingRequestError(DepthBookError):
    """Raised when another request for the same stream key is still in flight ("repeat")."""
    pass


class ConnectionDropped(DepthBookError, ConnectionError):
    """Raised when the socket is not connected or drops before a reply arrives."""
    pass


class RequestTimeout(DepthBookError, TimeoutError):
    """Raised when a correlated request gets no reply within its timeout."""
    pass


class SubscriptionTimeout(DepthBookError, TimeoutError):
    """Raised by subscribe/unsubscribe when an explicit timeout was given and the attempt failed."""
    pass
