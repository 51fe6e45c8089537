"""
Middleware Package
==================

FastAPI middleware for security headers and request logging.
"""

from .request_log import RequestLogMiddleware
from .security import SecurityHeadersMiddleware

__all__ = [
    "RequestLogMiddleware",
    "SecurityHeadersMiddleware",
]
