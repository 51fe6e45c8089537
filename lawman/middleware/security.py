"""
Security Headers Middleware
===========================

Headers for a JSON-only API that hands out session tokens:
- responses are never framed, sniffed or cached (`/api/*` carries tokens
  and case data, so `Cache-Control: no-store`)
- HSTS once the request arrived over HTTPS (directly or via the proxy)
- optional redirect of plain HTTP when ENFORCE_HTTPS is set
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from ..config import get_settings

API_CSP = "default-src 'none'; frame-ancestors 'none'"

NO_STORE_PREFIX = "/api/"


def _is_https(request: Request) -> bool:
    return request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        settings = get_settings()
        https = _is_https(request)

        if settings.enforce_https and not https:
            return RedirectResponse(str(request.url.replace(scheme="https")), status_code=301)

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = API_CSP
        if request.url.path.startswith(NO_STORE_PREFIX):
            response.headers["Cache-Control"] = "no-store"
        if https:
            response.headers["Strict-Transport-Security"] = f"max-age={settings.hsts_max_age}; includeSubDomains"

        return response
