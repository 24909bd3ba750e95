"""
FastAPI application for subtap.

Hosts one instrumented page (agent, capture cache and session controller)
and exposes it over HTTP: relay captures from external agents, pull cached
subtitles in SRT, plain text or JSON, drive navigation and downloads, and
inspect the cache and session state.
"""

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any

import yt_dlp
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from structlog.contextvars import bind_contextvars, clear_contextvars

# Rate limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from subtap import __version__
from subtap.agent import extract_metadata, is_subtitle_bearing
from subtap.errors import (
    CacheInvalidated,
    CaptureTimeout,
    DownloadFailed,
    ExtractionFailed,
    NoSubtitlesAvailable,
    ParseFailure,
    SubtapError,
)
from subtap.models import CapturedMessage, InterceptedPayload
from subtap.normalizer import format_timestamp, merge_adjacent, parse_payload, render
from subtap.page import extract_available_tracks
from subtap.runtime import Runtime, create_runtime
from subtap.session import describe
from subtap.utils import build_filename, extract_video_id, sanitize_for_log

# Configure logging with request ID context
import structlog

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger()

# Request ID context variable
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

SERVICE_NAME = "subtap"


def get_remote_address_proxied(request: Request) -> str:
    """Get client address, considering X-Forwarded-For header."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# Initialize rate limiter with proxy support
limiter = Limiter(key_func=get_remote_address_proxied)
rate_limit_exception_handler = _rate_limit_exceeded_handler

# Track app startup time for uptime calculation
_app_start_time = time.time()

# Simple in-memory rate limiting tracker (for conditional rate limiting)
_rate_limit_tracker: defaultdict[str, list[float]] = defaultdict(list)
_rate_limit_lock = asyncio.Lock()
_MAX_TRACKED_IPS = 10000  # Prevent memory leak from unbounded growth


async def _check_rate_limit(ip: str, max_requests: int, window_seconds: int = 60) -> bool:
    """
    Check if the IP has exceeded the rate limit.

    Args:
        ip: Client IP address
        max_requests: Maximum requests allowed
        window_seconds: Time window in seconds

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    async with _rate_limit_lock:
        now = time.time()
        _rate_limit_tracker[ip] = [t for t in _rate_limit_tracker[ip] if now - t < window_seconds]
        if len(_rate_limit_tracker[ip]) >= max_requests:
            return False
        _rate_limit_tracker[ip].append(now)

        if len(_rate_limit_tracker) > _MAX_TRACKED_IPS:
            inactive_ips = [
                tracked_ip for tracked_ip, timestamps in _rate_limit_tracker.items()
                if all(now - t > window_seconds for t in timestamps)
            ]
            # Remove up to 10% of inactive IPs
            for inactive_ip in inactive_ips[:max(1, _MAX_TRACKED_IPS // 10)]:
                del _rate_limit_tracker[inactive_ip]

        return True


async def _enforce_rate_limit(request: Request, multiplier: int = 1) -> None:
    from subtap.config import settings

    if not settings.rate_limit_enabled:
        return
    limit = settings.rate_limit_per_minute * multiplier
    if not await _check_rate_limit(get_remote_address_proxied(request), limit):
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Maximum {limit} requests per minute.",
        )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ============================================================================
# Lifespan Context Manager
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the page runtime on startup, tear it down on shutdown."""
    from subtap.config import settings

    logger.info("=" * 60)
    logger.info("subtap starting")
    logger.info("=" * 60)
    logger.info("Capture cache:")
    logger.info(f"  - TTL: {settings.cache_ttl}s")
    logger.info(f"  - Capture wait: {settings.capture_wait_ms}ms")
    logger.info("Session:")
    logger.info(f"  - Settle delay: {settings.settle_delay}s")
    logger.info(f"  - Preferred language: {settings.preferred_language} (fallback {settings.fallback_language})")
    logger.info(f"  - Preferred format: {settings.preferred_format}")
    logger.info(f"  - Download dir: {settings.download_dir or '<system temp>'}")
    logger.info("Security features:")
    logger.info(f"  - Rate Limiting: {'enabled' if settings.rate_limit_enabled else 'disabled'}")
    logger.info(f"  - Rate Limit: {settings.rate_limit_per_minute}/minute")
    logger.info(f"  - Security Headers: {'enabled' if settings.enable_security_headers else 'disabled'}")
    logger.info("=" * 60)

    runtime = create_runtime(settings)
    await runtime.start()
    app.state.runtime = runtime

    yield

    try:
        await runtime.aclose()
    except Exception as e:
        logger.error(f"Error during runtime shutdown: {e}")
        raise


app = FastAPI(
    title="subtap",
    description="Capture the subtitle data a video page loads and export it as SRT or plain text",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ============================================================================
# Middleware Configuration
# ============================================================================


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID for tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request_id_var.set(request_id)

        # Clear and bind context vars for structured logging
        clear_contextvars()
        bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def configure_middleware():
    """Configure middleware based on settings."""
    from fastapi.middleware.cors import CORSMiddleware

    from subtap.config import settings
    from subtap.middleware import SecurityHeadersMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info("CORS middleware enabled")

    app.add_middleware(RequestIdMiddleware)
    logger.info("Request ID middleware enabled")

    if settings.enable_security_headers:
        app.add_middleware(SecurityHeadersMiddleware)
        logger.info("Security headers middleware enabled")

    if settings.rate_limit_enabled:
        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
        logger.info(f"Rate limiting enabled: {settings.rate_limit_per_minute} requests/minute")


# Configure middleware on import
configure_middleware()


# ============================================================================
# Pydantic Models
# ============================================================================


class OutputFormat(str, Enum):
    """Supported output formats for subtitles."""

    srt = "srt"
    txt = "txt"
    json = "json"


class SubtitleEntryModel(BaseModel):
    """A single subtitle entry with timing and text."""

    start: float = Field(..., description="Start time in seconds")
    end: float = Field(..., description="End time in seconds")
    start_timestamp: str = Field(..., description="Start timestamp (HH:MM:SS,mmm)")
    end_timestamp: str = Field(..., description="End timestamp (HH:MM:SS,mmm)")
    text: str = Field(..., description="The subtitle text content")


class SubtitleResponse(BaseModel):
    """Response model for subtitle data in JSON format."""

    video_id: str = Field(..., description="YouTube video ID")
    language: str = Field(..., description="Language code of the capture")
    encoding_format: str = Field(..., description="Upstream encoding of the capture (json3, srv3, ...)")
    captured_at: int = Field(..., description="Capture time in epoch milliseconds")
    subtitle_count: int = Field(..., description="Number of subtitle entries")
    subtitles: list[SubtitleEntryModel] = Field(..., description="List of subtitle entries")

    model_config = {
        "json_schema_extra": {
            "example": {
                "video_id": "dQw4w9WgXcQ",
                "language": "en",
                "encoding_format": "json3",
                "captured_at": 1700000000000,
                "subtitle_count": 1,
                "subtitles": [
                    {
                        "start": 0.0,
                        "end": 3.5,
                        "start_timestamp": "00:00:00,000",
                        "end_timestamp": "00:00:03,500",
                        "text": "Hello world",
                    },
                ],
            }
        }
    }


class CaptureRequest(BaseModel):
    """A subtitle response observed by an agent running outside this service."""

    source_url: str = Field(..., max_length=4000, description="URL of the intercepted request")
    raw_content: str = Field(..., description="Response body as text")
    video_id: str | None = Field(None, description="Overrides the 'v' query parameter")
    language_code: str | None = Field(None, description="Overrides the 'lang' query parameter")
    encoding_format: str | None = Field(None, description="Overrides the 'fmt' query parameter")


class CaptureResponse(BaseModel):
    key: str = Field(..., description="Cache key the capture is stored under")
    video_id: str
    language_code: str
    encoding_format: str
    size: int = Field(..., description="Body length in characters")


class TrackInfo(BaseModel):
    language_code: str
    name: str
    auto_generated: bool


class SessionResponse(BaseModel):
    """Current session of the hosted page."""

    url: str = Field(..., description="Current page location")
    video_id: str | None = Field(None, description="Video of the current session")
    ui_state: str = Field(..., description="Download button state")
    message: str | None = Field(None, description="Message shown with a success or error state")
    agent_ready: bool = Field(..., description="Whether the interception agent has signalled readiness")
    capture_count: int = Field(0, description="Captures relayed by the agent since startup")
    tracks: list[TrackInfo] = Field(default_factory=list, description="Tracks advertised by the page")


class NavigateRequest(BaseModel):
    url: str = Field(..., max_length=500, description="New page location (a watch URL)")
    player_response: dict[str, Any] | None = Field(
        None, description="Embedded player metadata; extracted with yt-dlp when omitted"
    )
    settle: bool = Field(True, description="Wait for the decision gate before responding")


class DownloadResponse(BaseModel):
    filename: str
    language: str
    auto_generated: bool
    source: str = Field(..., description="cache, wait or fetch")
    entry_count: int
    message: str
    location: str | None = None


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: str | None = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Response model for enhanced health check."""

    status: str = Field(..., description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: float = Field(..., description="Current Unix timestamp")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    cache: dict = Field(default_factory=dict, description="Capture cache statistics")
    session: dict = Field(default_factory=dict, description="Session state")
    rate_limiting: dict = Field(default_factory=dict, description="Rate limiting status")


# ============================================================================
# Exception Handlers
# ============================================================================

_ERROR_STATUS: dict[type[SubtapError], tuple[int, str]] = {
    NoSubtitlesAvailable: (404, "no_subtitles"),
    CaptureTimeout: (404, "capture_timeout"),
    CacheInvalidated: (409, "cache_invalidated"),
    ParseFailure: (422, "parse_failure"),
    ExtractionFailed: (502, "extraction_failed"),
    DownloadFailed: (500, "download_failed"),
}


def _error_response(status_code: int, error: str, message: str, detail: str | None = None) -> Response:
    error_response = ErrorResponse(error=error, message=message, detail=detail)
    return Response(
        content=error_response.model_dump_json(),
        status_code=status_code,
        media_type="application/json",
    )


@app.exception_handler(SubtapError)
async def subtap_error_handler(request: Request, exc: SubtapError):
    """Map each error kind to a status code; the body carries the user-facing message."""
    status_code, error = next(
        (value for kind, value in _ERROR_STATUS.items() if isinstance(exc, kind)),
        (500, "internal_error"),
    )
    if status_code >= 500:
        logger.error(f"{error}: {exc.message}")
    else:
        logger.info(f"{error}: {exc.message}")
    return _error_response(status_code, error, exc.user_message, detail=exc.message)


@app.exception_handler(yt_dlp.utils.DownloadError)
async def download_error_handler(request: Request, exc: yt_dlp.utils.DownloadError):
    """
    Handle yt-dlp failures while building a page's player metadata.

    Returns:
        503 Service Unavailable for HTTP Error 429
        502 Bad Gateway for other extraction errors
    """
    error_msg = str(exc)

    if "HTTP Error 429" in error_msg:
        logger.warning(f"Rate limit detected (429): {error_msg}")
        return _error_response(503, "rate_limit_exceeded", "Upstream Rate Limit Detected. Please retry later.")

    logger.error(f"Player metadata extraction failed: {error_msg}")
    return _error_response(502, "extraction_failed", "Failed to load the video page", detail=error_msg[:200])


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors with detailed feedback.

    Includes specific field and error information to help developers
    understand what went wrong with their request.
    """
    errors = exc.errors()
    logger.warning(f"Validation error: {errors}")

    error_details = []
    for error in errors:
        loc = " -> ".join(str(x) for x in error["loc"])
        error_details.append(f"{loc}: {error['msg']}")

    return _error_response(400, "validation_error", "Invalid request parameters", detail="; ".join(error_details))


# ============================================================================
# API Endpoints
# ============================================================================


@app.post(
    "/api/v1/captures",
    response_model=CaptureResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse, "description": "Not a subtitle request, or empty body"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
    },
    summary="Relay a captured subtitle response",
)
async def relay_capture(request: Request, capture: CaptureRequest) -> CaptureResponse:
    """
    Relay a subtitle response captured by an external agent.

    The payload travels the same channel as the hosted agent's captures, so
    it wakes any download waiting on its key.

    **Example:**
    ```bash
    curl -X POST "http://localhost:8000/api/v1/captures" \\
      -H "Content-Type: application/json" \\
      -d '{"source_url": "https://www.youtube.com/api/timedtext?v=dQw4w9WgXcQ&lang=en&fmt=json3", "raw_content": "{...}"}'
    ```
    """
    await _enforce_rate_limit(request)

    if not is_subtitle_bearing(capture.source_url):
        logger.warning(f"Rejected capture from non-subtitle URL: {sanitize_for_log(capture.source_url[:200])}")
        raise HTTPException(status_code=400, detail="URL does not look like a subtitle request")
    if not capture.raw_content:
        raise HTTPException(status_code=400, detail="Empty response body")

    metadata = extract_metadata(capture.source_url)
    payload = InterceptedPayload(
        source_url=capture.source_url,
        raw_content=capture.raw_content,
        video_id=capture.video_id or metadata.video_id,
        language_code=capture.language_code or metadata.language_code,
        encoding_format=capture.encoding_format or metadata.encoding_format,
    )

    runtime = get_runtime(request)
    runtime.page.channel.post(
        CapturedMessage(payload=payload).model_dump(mode="json"),
        source=runtime.page.origin,
    )
    # Let the channel deliver before answering
    await asyncio.sleep(0)

    return CaptureResponse(
        key=payload.cache_key,
        video_id=payload.video_id,
        language_code=payload.language_code,
        encoding_format=payload.encoding_format,
        size=len(payload.raw_content),
    )


@app.get(
    "/api/v1/subtitles",
    response_model=None,
    responses={
        200: {"description": "Subtitles returned"},
        400: {"model": ErrorResponse, "description": "Invalid parameters"},
        404: {"model": ErrorResponse, "description": "Nothing captured for the video/language"},
        422: {"model": ErrorResponse, "description": "Captured payload could not be parsed"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
    },
    summary="Get captured subtitles for a video",
)
async def get_subtitles(
    request: Request,
    video_id: str = Query(..., max_length=500, description="Video ID or watch URL"),
    lang: str | None = Query(None, max_length=20, description="Language code; any cached language when omitted"),
    format: OutputFormat = Query(OutputFormat.srt, description="Output format: srt, txt or json"),
    wait_ms: int = Query(0, ge=0, le=30000, description="Wait this long for an in-flight capture"),
    merge: bool = Query(False, description="Merge entries separated by at most 100ms"),
) -> SubtitleResponse | PlainTextResponse:
    """
    Return a captured payload converted to the requested format.

    With ``wait_ms`` the request waits for a capture of the key to arrive
    (requires ``lang``, or uses the preferred language).

    **Example Usage:**
    ```bash
    curl "http://localhost:8000/api/v1/subtitles?video_id=dQw4w9WgXcQ&lang=en&format=srt"
    curl "http://localhost:8000/api/v1/subtitles?video_id=dQw4w9WgXcQ&lang=en&format=json&wait_ms=2000"
    ```
    """
    from subtap.config import settings

    await _enforce_rate_limit(request)

    resolved_id = extract_video_id(video_id)
    if resolved_id is None:
        logger.warning(f"Invalid video id provided: {sanitize_for_log(video_id)}")
        raise HTTPException(status_code=400, detail="Invalid video id or URL")

    cache = get_runtime(request).cache
    payload = cache.lookup(resolved_id, lang)
    if payload is None and wait_ms > 0:
        payload = await cache.wait_for(resolved_id, lang or settings.preferred_language, wait_ms)
    if payload is None:
        suffix = f" in language {lang}" if lang else ""
        raise HTTPException(status_code=404, detail=f"No captured subtitles for {resolved_id}{suffix}")

    entries = parse_payload(payload.raw_content, payload.encoding_format)
    if not entries:
        raise ParseFailure(f"Capture {payload.cache_key} has no usable subtitle entries")
    if merge:
        entries = merge_adjacent(entries)

    if format == OutputFormat.json:
        return SubtitleResponse(
            video_id=payload.video_id,
            language=payload.language_code,
            encoding_format=payload.encoding_format,
            captured_at=payload.captured_at,
            subtitle_count=len(entries),
            subtitles=[
                SubtitleEntryModel(
                    start=entry.start,
                    end=entry.end,
                    start_timestamp=format_timestamp(entry.start),
                    end_timestamp=format_timestamp(entry.end),
                    text=entry.text,
                )
                for entry in entries
            ],
        )

    filename = build_filename(
        f"YouTube Video {resolved_id}",
        format.value,
        payload.language_code,
        default_language=settings.default_language,
        max_length=settings.filename_max_length,
    )
    media_type = "application/x-subrip" if format == OutputFormat.srt else "text/plain"
    return PlainTextResponse(
        content=render(entries, format.value),
        media_type=f"{media_type}; charset=utf-8",
        headers={
            "X-Video-ID": payload.video_id,
            "X-Language": payload.language_code,
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )


@app.get("/api/v1/cache/stats", summary="Capture cache statistics")
async def cache_stats(request: Request) -> dict:
    """Size, pending waiters, TTL and hit rate of the capture cache."""
    return get_runtime(request).cache.get_stats()


@app.delete("/api/v1/cache", summary="Flush the capture cache")
async def flush_cache(request: Request) -> dict:
    """Drop every capture and reject pending waits, as a navigation does."""
    cache = get_runtime(request).cache
    removed = len(cache)
    cache.invalidate_all()
    return {"removed": removed}


def _session_response(runtime: Runtime) -> SessionResponse:
    try:
        tracks = extract_available_tracks(runtime.page.player_response)
    except Exception as e:
        logger.warning(f"Could not read tracks from player metadata: {e}")
        tracks = []
    state = describe(runtime.controller)
    return SessionResponse(
        url=runtime.page.url,
        video_id=state["video_id"],
        ui_state=state["ui_state"],
        message=state["message"],
        agent_ready=state["agent_ready"],
        capture_count=runtime.agent.capture_count,
        tracks=[
            TrackInfo(language_code=t.language_code, name=t.name, auto_generated=t.is_auto_generated)
            for t in tracks
        ],
    )


@app.get("/api/v1/session", response_model=SessionResponse, summary="Current session state")
async def get_session(request: Request) -> SessionResponse:
    return _session_response(get_runtime(request))


@app.post(
    "/api/v1/session/navigate",
    response_model=SessionResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Not a watch URL"},
        502: {"model": ErrorResponse, "description": "Player metadata could not be extracted"},
    },
    summary="Navigate the hosted page to a video",
)
async def navigate(request: Request, body: NavigateRequest) -> SessionResponse:
    """
    Move the hosted page to a new location.

    Flushes the capture cache, removes the download button and, once the
    page has settled, offers the download again if the new video advertises
    any subtitle track. Without ``player_response`` the metadata is
    extracted with yt-dlp.
    """
    await _enforce_rate_limit(request)

    runtime = get_runtime(request)
    player_response = body.player_response
    if player_response is None:
        if extract_video_id(body.url) is None:
            raise HTTPException(status_code=400, detail="Invalid YouTube URL")
        logger.info(f"Loading player metadata for {sanitize_for_log(body.url)}")
        # yt-dlp is blocking
        player_response = await run_in_threadpool(runtime.loader.load, body.url)

    await runtime.navigate(body.url, player_response, settle=body.settle)
    return _session_response(runtime)


@app.post(
    "/api/v1/session/download",
    response_model=DownloadResponse,
    responses={
        404: {"model": ErrorResponse, "description": "The video has no subtitles"},
        409: {"model": ErrorResponse, "description": "Download button is not ready"},
        502: {"model": ErrorResponse, "description": "Subtitles could not be obtained"},
    },
    summary="Click the download button",
)
async def download(request: Request) -> DownloadResponse:
    """
    Click the hosted page's download button and wait for the outcome.

    The file is written by the service's save collaborator (``download_dir``).
    """
    await _enforce_rate_limit(request)

    controller = get_runtime(request).controller
    task = controller.click()
    if task is None:
        raise HTTPException(
            status_code=409,
            detail=f"Download is not available in state '{controller.session.ui_state.value}'",
        )

    outcome = await task
    if outcome is None:
        raise controller.last_error or ExtractionFailed()

    return DownloadResponse(
        filename=outcome.filename,
        language=outcome.language,
        auto_generated=outcome.is_auto_generated,
        source=outcome.source,
        entry_count=outcome.entry_count,
        message=outcome.message,
        location=outcome.location,
    )


@app.get("/", summary="Simple health check")
async def root() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "healthy", "service": SERVICE_NAME, "version": __version__}


@app.get("/health", response_model=HealthResponse, summary="Enhanced health check")
async def health(request: Request) -> HealthResponse:
    """
    Enhanced health check with service metrics.

    Status is degraded until the interception agent has signalled readiness.
    """
    from subtap.config import settings

    runtime = get_runtime(request)
    session = describe(runtime.controller)

    return HealthResponse(
        status="healthy" if session["agent_ready"] else "degraded",
        service=SERVICE_NAME,
        version=__version__,
        timestamp=time.time(),
        uptime_seconds=time.time() - _app_start_time,
        cache=runtime.cache.get_stats(),
        session=session,
        rate_limiting={
            "enabled": settings.rate_limit_enabled,
            "per_minute": settings.rate_limit_per_minute,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
