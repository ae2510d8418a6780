"""EventRelay middleware modules."""

from eventrelay.middleware.logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
