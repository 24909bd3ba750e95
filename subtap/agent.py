"""
Interception agent.

Runs inside the host page's context. It wraps the page's two network APIs so
that every response still reaches the page unmodified, recognizes the
requests that fetch subtitle data, and relays their bodies across the
context boundary as ``captured`` messages. Readiness is announced twice
because the receiver's listener may not be attached yet the first time.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlsplit

import httpx

from subtap.channel import Envelope
from subtap.config import Settings
from subtap.models import (
    UNKNOWN,
    CapturedMessage,
    InterceptedPayload,
    ReadyMessage,
    StatusMessage,
    StatusRequestMessage,
    parse_message,
)
from subtap.page import HostPage, PageRequest

logger = logging.getLogger(__name__)

# Closed allowlist. Changing it changes what the agent captures.
SUBTITLE_MARKERS: tuple[str, ...] = (
    "/api/timedtext",
    "/youtubei/v1/player",
    "fmt=json3",
    "fmt=srv3",
    "fmt=srv1",
)

OBSERVED_MARKER = "__subtap_observed__"

Fetch = Callable[..., Awaitable[httpx.Response]]


def is_subtitle_bearing(url: Any) -> bool:
    """True iff the URL contains one of the subtitle markers."""
    if not url or not isinstance(url, str):
        return False
    return any(marker in url for marker in SUBTITLE_MARKERS)


@dataclass(frozen=True)
class CaptureMetadata:
    video_id: str = UNKNOWN
    language_code: str = UNKNOWN
    encoding_format: str = UNKNOWN


def extract_metadata(url: Any) -> CaptureMetadata:
    """
    Read video id, language and format from the URL's query string.

    Never raises: anything unparseable falls back to the "unknown" sentinel.
    """
    try:
        params = parse_qs(urlsplit(str(url)).query)
    except (TypeError, ValueError) as e:
        logger.debug(f"Could not parse capture URL: {e}")
        return CaptureMetadata()

    def first(*names: str) -> str:
        for name in names:
            values = params.get(name)
            if values and values[0]:
                return values[0]
        return UNKNOWN

    return CaptureMetadata(
        video_id=first("v"),
        language_code=first("lang", "tlang"),
        encoding_format=first("fmt"),
    )


def _resource_url(resource: Any) -> str:
    if isinstance(resource, httpx.Request):
        return str(resource.url)
    return str(resource)


def is_observed(target: Any) -> bool:
    return bool(getattr(target, OBSERVED_MARKER, False))


class NetworkObserver:
    """
    Wraps network primitives so recognized responses are reported.

    ``wrap_fetch`` and ``wrap_request_class`` are idempotent: wrapping an
    already-wrapped primitive returns it unchanged, so duplicate injection
    never duplicates captures.

    Args:
        on_capture: Called with every non-empty recognized payload
    """

    def __init__(self, on_capture: Callable[[InterceptedPayload], None]):
        self._on_capture = on_capture

    def wrap_fetch(self, original: Fetch) -> Fetch:
        if is_observed(original):
            return original

        observer = self

        @functools.wraps(original)
        async def observed_fetch(resource, *args, **kwargs):
            response = await original(resource, *args, **kwargs)
            url = _resource_url(resource)
            if is_subtitle_bearing(url) and response.is_success:
                try:
                    # httpx keeps the bytes, the page can still read the body
                    await response.aread()
                    observer._emit(url, response.text)
                except Exception:
                    logger.exception(f"Error processing intercepted response for {url}")
            return response

        setattr(observed_fetch, OBSERVED_MARKER, True)
        return observed_fetch

    def wrap_request_class(self, request_cls: type[PageRequest]) -> type[PageRequest]:
        if is_observed(request_cls):
            return request_cls

        observer = self

        class ObservedRequest(request_cls):
            def open(self, method, url, *args, **kwargs):
                self._subtap_url = str(url)
                return super().open(method, url, *args, **kwargs)

            async def send(self, body=None):
                url = getattr(self, "_subtap_url", None)
                if url and is_subtitle_bearing(url):
                    self.add_event_listener("load", observer._on_request_load)
                return await super().send(body)

        ObservedRequest.__name__ = request_cls.__name__
        ObservedRequest.__qualname__ = request_cls.__qualname__
        setattr(ObservedRequest, OBSERVED_MARKER, True)
        return ObservedRequest

    def _on_request_load(self, request: PageRequest) -> None:
        if request.status == 200:
            self._emit(request._subtap_url, request.response_text)

    def _emit(self, url: str, content: str) -> None:
        if not content:
            # The provider sometimes answers 200 with an empty body
            logger.info(f"Subtitle request returned empty data: {url}")
            return

        metadata = extract_metadata(url)
        payload = InterceptedPayload(
            source_url=url,
            raw_content=content,
            video_id=metadata.video_id,
            language_code=metadata.language_code,
            encoding_format=metadata.encoding_format,
        )
        logger.info(f"Intercepted subtitle response {payload.cache_key} ({len(content)} chars)")
        self._on_capture(payload)


class InterceptionAgent:
    """
    Installs the observer into a page and runs the readiness handshake.

    Args:
        page: Page to instrument
        settings: Provides ``ready_resend_delay``
    """

    def __init__(self, page: HostPage, settings: Settings | None = None):
        self._page = page
        self._settings = settings or Settings()
        self._observer = NetworkObserver(self._relay)
        self._resend_handle: asyncio.TimerHandle | None = None
        self._capture_count = 0

    @property
    def capture_count(self) -> int:
        return self._capture_count

    def install(self) -> None:
        """
        Patch the page's network APIs and announce readiness.

        Safe to call repeatedly: the wrappers are not stacked, but every call
        re-announces readiness, which receivers treat idempotently.
        """
        window = self._page.window
        window.fetch = self._observer.wrap_fetch(window.fetch)
        window.Request = self._observer.wrap_request_class(window.Request)
        self._page.channel.add_listener(self._on_message)
        logger.info(f"Interception agent installed in {self._page.origin}")

        self._send_ready()
        if self._resend_handle is not None:
            self._resend_handle.cancel()
        self._resend_handle = asyncio.get_running_loop().call_later(
            self._settings.ready_resend_delay, self._send_ready
        )

    def cancel_timers(self) -> None:
        if self._resend_handle is not None:
            self._resend_handle.cancel()
            self._resend_handle = None

    def _post(self, message) -> None:
        self._page.channel.post(message.model_dump(mode="json"), source=self._page.origin)

    def _send_ready(self) -> None:
        logger.debug("Sending ready signal")
        self._post(ReadyMessage())

    def _relay(self, payload: InterceptedPayload) -> None:
        self._capture_count += 1
        self._post(CapturedMessage(payload=payload))

    def _on_message(self, envelope: Envelope) -> None:
        if envelope.source != self._page.origin:
            return
        if isinstance(parse_message(envelope.data), StatusRequestMessage):
            self._post(StatusMessage(
                active=True,
                intercepted=self._capture_count > 0,
                capture_count=self._capture_count,
            ))
