"""
Host page model and page-metadata helpers.

HostPage stands in for the third-party watch page the interception agent is
injected into. It owns a location, the page-embedded player metadata (the
``ytInitialPlayerResponse`` document) and a ``window`` namespace exposing
two network APIs backed by an httpx client:

- ``window.fetch(resource, **kwargs)``: async fetch entry point
- ``window.Request``: lower-level open/send/load request API, modelled on
  XMLHttpRequest

Both attributes are plain and replaceable, which is what the agent patches.
"""

import logging
import uuid
from collections import defaultdict
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import yt_dlp

from subtap.channel import MessageChannel
from subtap.models import TrackDescriptor

logger = logging.getLogger(__name__)

UrlListener = Callable[[str], None]


class PageRequest:
    """
    XMLHttpRequest-style request bound to a page's HTTP client.

    Usage mirrors the browser API: ``open`` then ``add_event_listener("load",
    ...)`` then ``await send()``. Load listeners receive the request object
    and read ``status`` and ``response_text`` from it.
    """

    client: httpx.AsyncClient

    def __init__(self):
        self.method: str | None = None
        self.url: str | None = None
        self.status = 0
        self.response_text = ""
        self._listeners: dict[str, list[Callable[["PageRequest"], None]]] = defaultdict(list)

    def open(self, method: str, url: str) -> None:
        self.method = method.upper()
        self.url = str(url)

    def add_event_listener(self, event: str, callback: Callable[["PageRequest"], None]) -> None:
        self._listeners[event].append(callback)

    async def send(self, body: bytes | str | None = None) -> None:
        if self.method is None or self.url is None:
            raise RuntimeError("send() called before open()")

        try:
            response = await self.client.request(self.method, self.url, content=body)
        except httpx.HTTPError:
            self._dispatch("error")
            raise

        self.status = response.status_code
        self.response_text = response.text
        self._dispatch("load")

    def _dispatch(self, event: str) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(self)
            except Exception:
                logger.exception(f"Request {event} listener raised")


class PageWindow:
    """The page's global namespace: the patchable network surface."""

    def __init__(self, fetch: Callable[..., Any], request_cls: type[PageRequest]):
        self.fetch = fetch
        self.Request = request_cls


class HostPage:
    """
    A single-page-application watch page.

    Args:
        url: Initial location
        player_response: Page-embedded player metadata for the initial video
        client: HTTP client the page's network APIs use
        channel: Message channel shared with the isolated context
        origin: Identity stamped on messages this page posts
    """

    def __init__(
        self,
        url: str = "about:blank",
        player_response: dict[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
        channel: MessageChannel | None = None,
        origin: str | None = None,
    ):
        self.origin = origin or f"page-{uuid.uuid4().hex[:12]}"
        self.channel = channel or MessageChannel()
        self.player_response = player_response
        self._url = url
        self._client = client or httpx.AsyncClient(follow_redirects=True, timeout=30.0)
        self._url_listeners: list[UrlListener] = []

        request_cls = type("PageRequest", (PageRequest,), {"client": self._client})
        self.window = PageWindow(fetch=self._native_fetch, request_cls=request_cls)

    @property
    def url(self) -> str:
        return self._url

    async def _native_fetch(self, resource: str | httpx.URL | httpx.Request, **kwargs) -> httpx.Response:
        if isinstance(resource, httpx.Request):
            return await self._client.send(resource)
        method = kwargs.pop("method", "GET")
        return await self._client.request(method, str(resource), **kwargs)

    def add_url_listener(self, listener: UrlListener) -> None:
        if listener not in self._url_listeners:
            self._url_listeners.append(listener)

    def remove_url_listener(self, listener: UrlListener) -> None:
        if listener in self._url_listeners:
            self._url_listeners.remove(listener)

    def navigate(self, url: str, player_response: dict[str, Any] | None = None) -> None:
        """Client-side navigation: swap location and embedded data, then notify."""
        self._url = url
        self.player_response = player_response
        for listener in list(self._url_listeners):
            listener(url)

    async def load_captions(self, language_code: str | None = None) -> httpx.Response | None:
        """
        Request a caption track through the page's own fetch, as the player does.

        Returns:
            The response, or None when the page has no tracks or the request failed
        """
        tracks = extract_available_tracks(self.player_response)
        if not tracks:
            return None

        track = next((t for t in tracks if t.language_code == language_code), tracks[0])
        try:
            return await self.window.fetch(with_query(track.fetch_url, fmt="json3"))
        except httpx.HTTPError as e:
            logger.warning(f"Player caption request failed for {track.language_code}: {e}")
            return None

    async def aclose(self) -> None:
        await self._client.aclose()


def with_query(url: str, **params: str) -> str:
    """Return ``url`` with the given query parameters set (replacing existing ones)."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


# ============================================================================
# Player metadata
# ============================================================================


def _text_of(value: Any) -> str:
    """Read a YouTube formatted string ({"simpleText"} or {"runs": [...]})."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        if "simpleText" in value:
            return str(value["simpleText"])
        return "".join(str(run.get("text", "")) for run in value.get("runs", []) if isinstance(run, dict))
    return ""


def extract_available_tracks(player_response: dict[str, Any] | None) -> list[TrackDescriptor]:
    """
    List the caption tracks advertised in the player metadata.

    Reads ``captions.playerCaptionsTracklistRenderer.captionTracks``. Tracks
    without a URL are skipped. A missing section means no tracks; a document
    of the wrong shape raises, and callers treat that as "no tracks".
    """
    if player_response is None:
        return []

    renderer = (player_response.get("captions") or {}).get("playerCaptionsTracklistRenderer") or {}
    tracks = []
    for track in renderer.get("captionTracks") or []:
        fetch_url = track.get("baseUrl")
        if not fetch_url:
            continue
        tracks.append(TrackDescriptor(
            language_code=track.get("languageCode") or "unknown",
            is_auto_generated=(track.get("kind") or "").lower() == "asr",
            fetch_url=fetch_url,
            name=_text_of(track.get("name")),
        ))
    return tracks


def extract_video_details(player_response: dict[str, Any] | None) -> dict[str, str]:
    """Title and description from ``videoDetails``; empty strings when absent."""
    details = (player_response or {}).get("videoDetails") or {}
    return {
        "video_id": str(details.get("videoId") or ""),
        "title": str(details.get("title") or ""),
        "description": str(details.get("shortDescription") or ""),
    }


class YtDlpPageLoader:
    """
    Build player metadata for a watch URL with yt-dlp.

    Used by the service when the caller navigates without supplying the page's
    embedded data. yt-dlp is blocking; call ``load`` from a worker thread.
    """

    def __init__(self, timeout: float = 30.0):
        self._timeout = timeout

    def _build_ydl_options(self) -> dict:
        return {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": self._timeout,
            "logger": logger,
        }

    def load(self, url: str) -> dict[str, Any]:
        """
        Extract a ``ytInitialPlayerResponse``-shaped document.

        Raises:
            yt_dlp.utils.DownloadError: If extraction fails
        """
        with yt_dlp.YoutubeDL(self._build_ydl_options()) as ydl:
            info = ydl.extract_info(url, download=False)
        return self.to_player_response(info or {})

    @staticmethod
    def to_player_response(info: dict[str, Any]) -> dict[str, Any]:
        caption_tracks = []
        sources = ((info.get("subtitles") or {}, ""), (info.get("automatic_captions") or {}, "asr"))
        for subtitles, kind in sources:
            for lang_code, formats in subtitles.items():
                if not isinstance(formats, list):
                    continue
                # Prefer the json3 rendition, any timedtext URL will do otherwise
                chosen = next((f for f in formats if f.get("ext") == "json3"), formats[0] if formats else None)
                if not chosen or not chosen.get("url"):
                    continue
                caption_tracks.append({
                    "baseUrl": chosen["url"],
                    "languageCode": lang_code,
                    "kind": kind,
                    "name": {"simpleText": chosen.get("name") or lang_code},
                })

        return {
            "videoDetails": {
                "videoId": info.get("id", ""),
                "title": info.get("title", ""),
                "shortDescription": info.get("description") or "",
            },
            "captions": {"playerCaptionsTracklistRenderer": {"captionTracks": caption_tracks}},
        }
