"""
HTTP middleware for the subtap service.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_DOCS_PREFIXES = ("/docs", "/redoc", "/openapi")

_DOCS_CSP = (
    "default-src 'self' 'unsafe-inline'; "
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "img-src 'self' https://fastapi.tiangolo.com; "
    "connect-src 'self' https://cdn.jsdelivr.net"
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all HTTP responses.

    Adds nosniff, frame denial and a content security policy everywhere (a
    looser policy for the Swagger UI pages), HSTS on HTTPS only, and
    ``Cache-Control: no-store`` on API responses.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"

        path = request.url.path
        if path.startswith(_DOCS_PREFIXES):
            response.headers["Content-Security-Policy"] = _DOCS_CSP
        else:
            response.headers["Content-Security-Policy"] = "default-src 'self'"

        if path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"

        # HSTS only if using HTTPS (avoid browser warnings on HTTP)
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response
