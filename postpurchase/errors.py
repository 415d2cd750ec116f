"""Exception classes for the post-purchase service."""


class PostPurchaseError(Exception):
    """Base exception; ``status_code`` is the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PostPurchaseError):
    """Raised when a request is missing required fields or is malformed (400)."""
    status_code = 400


class AuthError(PostPurchaseError):
    """Raised when the cron shared secret is missing or wrong (401)."""
    status_code = 401


class UpstreamError(PostPurchaseError):
    """Raised when Apple's endpoint fails or returns something unparseable (500).

    The queue processor turns it into a retry instead.
    """
    status_code = 500


class InternalError(PostPurchaseError):
    """Raised on datastore failures or misconfiguration (500)."""
    status_code = 500
