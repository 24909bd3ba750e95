"""
Decision gate and session controller.

Runs in the isolated context next to the capture cache. It owns the
per-navigation session, decides whether the download action is offered at
all, drives the button state machine from handshake and cache events, and
orchestrates a download: cached capture first, then a short wait for an
in-flight capture, then a direct fetch of a track chosen from the page's
player metadata.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import httpx
from pydantic import ValidationError

from subtap.button import ABSENT, DISABLED, ButtonEvent, ButtonStatus, UiState, accepts_clicks, transition
from subtap.cache import CaptureCache
from subtap.channel import Envelope
from subtap.collaborators import (
    ButtonView,
    DownloadCollaborator,
    NullButtonView,
    PreferenceCollaborator,
    TrackFetcher,
)
from subtap.config import Settings
from subtap.errors import (
    CacheInvalidated,
    CaptureTimeout,
    DownloadFailed,
    ExtractionFailed,
    NoSubtitlesAvailable,
    SubtapError,
)
from subtap.models import (
    CapturedMessage,
    InterceptedPayload,
    ReadyMessage,
    StatusMessage,
    StatusRequestMessage,
    TrackDescriptor,
    UserPreferences,
    parse_message,
)
from subtap.normalizer import SubtitleEntry, parse_payload, render
from subtap.page import HostPage, extract_available_tracks, extract_video_details
from subtap.utils import build_filename, extract_video_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """State of one video visit. Replaced, never mutated."""

    video_id: str | None
    button: ButtonStatus = ABSENT

    @property
    def ui_state(self) -> UiState:
        return self.button.state


@dataclass(frozen=True)
class DownloadOutcome:
    filename: str
    language: str
    is_auto_generated: bool
    source: str  # "cache", "wait" or "fetch"
    entry_count: int
    message: str
    location: str | None = None


def _same_language(code: str, wanted: str) -> bool:
    return code.split("-")[0].lower() == wanted.split("-")[0].lower()


def select_track(
    tracks: list[TrackDescriptor],
    preferred_language: str,
    fallback_language: str | None = None,
) -> TrackDescriptor | None:
    """
    Pick a track: preferred language, then fallback language, then anything.

    Within a language an exact code beats a regional variant of the same
    base language, and manual tracks beat auto-generated ones.
    """
    if not tracks:
        return None

    for language in filter(None, (preferred_language, fallback_language)):
        for matches in (
            [t for t in tracks if t.language_code == language],
            [t for t in tracks if _same_language(t.language_code, language)],
        ):
            if matches:
                return next((t for t in matches if not t.is_auto_generated), matches[0])

    return next((t for t in tracks if not t.is_auto_generated), tracks[0])


def _track_identity(url: str) -> tuple[str, str, tuple[tuple[str, str], ...]]:
    # The player may re-request a track in another format
    parts = urlsplit(url)
    query = tuple(sorted((k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "fmt"))
    return parts.netloc, parts.path, query


def track_for_capture(payload: InterceptedPayload, tracks: list[TrackDescriptor]) -> TrackDescriptor | None:
    """
    Find the advertised track a capture came from.

    Matches on the request URL first (ignoring ``fmt``), then on language,
    preferring a manual track.
    """
    identity = _track_identity(payload.source_url)
    for track in tracks:
        if _track_identity(track.fetch_url) == identity:
            return track

    same = [t for t in tracks if t.language_code == payload.language_code]
    return next((t for t in same if not t.is_auto_generated), same[0] if same else None)


def _is_auto_capture(payload: InterceptedPayload, tracks: list[TrackDescriptor]) -> bool:
    if dict(parse_qsl(urlsplit(payload.source_url).query)).get("kind") == "asr":
        return True
    track = track_for_capture(payload, tracks)
    return track is not None and track.is_auto_generated


class SessionController:
    """
    Owns the session of one host page.

    Args:
        page: The page whose location and player metadata are watched
        cache: Capture cache fed from the page's channel
        downloader: Save collaborator
        preferences: Preference collaborator; missing values get defaults
        fetcher: Direct track fetcher for the on-demand path
        view: Renders the button; state is tracked here either way
        settings: Delays and preference defaults
    """

    def __init__(
        self,
        page: HostPage,
        cache: CaptureCache,
        downloader: DownloadCollaborator,
        preferences: PreferenceCollaborator,
        fetcher: TrackFetcher,
        view: ButtonView | None = None,
        settings: Settings | None = None,
    ):
        self._page = page
        self._cache = cache
        self._downloader = downloader
        self._preferences = preferences
        self._fetcher = fetcher
        self._view = view or NullButtonView()
        self._settings = settings or Settings()

        self._session = Session(video_id=None)
        self._agent_ready = False
        self._gate_task: asyncio.Task | None = None
        self._download_task: asyncio.Task | None = None
        self._revert_handle: asyncio.TimerHandle | None = None

        self.agent_status: StatusMessage | None = None
        self.last_outcome: DownloadOutcome | None = None
        self.last_error: SubtapError | None = None

    # ------------------------------------------------------------------ state

    @property
    def session(self) -> Session:
        return self._session

    @property
    def agent_ready(self) -> bool:
        return self._agent_ready

    def _set_button(self, status: ButtonStatus) -> None:
        if status == self._session.button:
            return
        self._session = replace(self._session, button=status)
        if status.state is UiState.absent:
            self._view.remove()
        else:
            self._view.render(status)

    def _apply(self, event: ButtonEvent, message: str | None = None) -> None:
        self._set_button(transition(self._session.button, event, message))

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        """Attach to the page's channel and location, then open the first session."""
        self._page.channel.add_listener(self._on_message)
        self._page.add_url_listener(self._on_url_change)
        self._on_url_change(self._page.url)

    def stop(self) -> None:
        self._page.channel.remove_listener(self._on_message)
        self._page.remove_url_listener(self._on_url_change)
        self._cancel_pending()
        self._set_button(ABSENT)

    def _cancel_pending(self) -> None:
        for task in (self._gate_task, self._download_task):
            if task is not None and not task.done():
                task.cancel()
        self._gate_task = None
        self._download_task = None
        if self._revert_handle is not None:
            self._revert_handle.cancel()
            self._revert_handle = None

    async def settled(self) -> None:
        """
        Wait for the scheduled decision gate to finish.

        A gate replaced by a newer navigation is not an error for the caller;
        the wait moves on to the gate that replaced it.
        """
        while self._gate_task is not None:
            task = self._gate_task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled() and self._gate_task is not task:
                    continue
                raise
            if self._gate_task is task:
                return

    # -------------------------------------------------------------- messages

    def _on_message(self, envelope: Envelope) -> None:
        if envelope.source != self._page.origin:
            return

        message = parse_message(envelope.data)
        if isinstance(message, ReadyMessage):
            self._on_agent_ready()
        elif isinstance(message, CapturedMessage):
            self._cache.record_capture(message.payload)
        elif isinstance(message, StatusMessage):
            logger.debug(f"Agent status: intercepted={message.intercepted} captures={message.capture_count}")
            self.agent_status = message

    def _on_agent_ready(self) -> None:
        if not self._agent_ready:
            logger.info("Interception agent is ready")
            self._agent_ready = True
        self._apply(ButtonEvent.agent_ready)

    def request_agent_status(self) -> None:
        self._page.channel.post(StatusRequestMessage().model_dump(mode="json"), source=self._page.origin)

    # ------------------------------------------------------------- navigation

    def _on_url_change(self, url: str) -> None:
        video_id = extract_video_id(url)
        if video_id == self._session.video_id:
            return

        logger.info(f"Video changed: {self._session.video_id} -> {video_id}")
        self._cache.invalidate_all()
        self._cancel_pending()
        self._set_button(ABSENT)
        self._session = Session(video_id=video_id)

        if video_id is not None:
            self._gate_task = asyncio.get_running_loop().create_task(self._gate_after_settle(video_id))

    async def _gate_after_settle(self, video_id: str) -> None:
        # Let the host page finish its own re-render first
        await asyncio.sleep(self._settings.settle_delay)
        if self._session.video_id == video_id:
            self.run_decision_gate()

    def run_decision_gate(self) -> bool:
        """
        Offer the download action only if the page advertises a subtitle track.

        Fails closed: when inspection raises, no action is offered.

        Returns:
            True if the button was injected
        """
        try:
            tracks = extract_available_tracks(self._page.player_response)
        except Exception as e:
            logger.warning(f"Player metadata inspection failed for {self._session.video_id}: {e}")
            return False

        if not tracks:
            logger.info(f"No subtitle tracks for {self._session.video_id}, not offering a download")
            return False

        status = DISABLED
        if self._agent_ready:
            status = transition(status, ButtonEvent.agent_ready)
        self._set_button(status)
        logger.info(f"Download button injected for {self._session.video_id} ({len(tracks)} track(s))")
        return True

    # -------------------------------------------------------------- downloads

    def click(self) -> asyncio.Task | None:
        """
        User asked for a download.

        Ignored unless the button is ready; clicks are never queued.

        Returns:
            The task running the download, or None if the click was ignored
        """
        if not accepts_clicks(self._session.button):
            logger.debug(f"Click ignored in state {self._session.ui_state.value}")
            return None

        self._apply(ButtonEvent.click)
        self._download_task = asyncio.get_running_loop().create_task(self._run_download())
        return self._download_task

    async def _run_download(self) -> DownloadOutcome | None:
        try:
            outcome = await self.download()
        except NoSubtitlesAvailable as e:
            # Terminal outcome, not a fault
            logger.info(f"No subtitles available for {self._session.video_id}")
            self._finish(ButtonEvent.failed, e.message, error=e)
            return None
        except SubtapError as e:
            logger.error(f"Download failed for {self._session.video_id}: {e}")
            self._finish(ButtonEvent.failed, e.message, error=e)
            return None
        except Exception:
            logger.exception(f"Unexpected error downloading subtitles for {self._session.video_id}")
            error = ExtractionFailed()
            self._finish(ButtonEvent.failed, error.message, error=error)
            return None

        self.last_outcome = outcome
        self._finish(ButtonEvent.succeeded, outcome.message)
        return outcome

    def _finish(self, event: ButtonEvent, message: str, error: SubtapError | None = None) -> None:
        self.last_error = error
        self._apply(event, message)
        delay = self._settings.success_revert_delay if event is ButtonEvent.succeeded else self._settings.error_revert_delay
        if self._revert_handle is not None:
            self._revert_handle.cancel()
        self._revert_handle = asyncio.get_running_loop().call_later(delay, self._apply, ButtonEvent.revert)

    def resolve_preferences(self) -> UserPreferences:
        """Collaborator preferences over the controller's defaults."""
        defaults = {
            "preferred_language": self._settings.preferred_language,
            "preferred_format": self._settings.preferred_format,
            "include_description": self._settings.include_description,
            "auto_download": self._settings.auto_download,
        }
        try:
            stored = dict(self._preferences.get_preferences() or {})
        except Exception as e:
            logger.warning(f"Could not read preferences, using defaults: {e}")
            stored = {}

        merged = {**defaults, **{k: v for k, v in stored.items() if k in defaults and v is not None}}
        try:
            return UserPreferences.model_validate(merged)
        except ValidationError as e:
            logger.warning(f"Invalid stored preferences, using defaults: {e.error_count()} error(s)")
            return UserPreferences.model_validate(defaults)

    def _page_tracks(self) -> list[TrackDescriptor]:
        try:
            return extract_available_tracks(self._page.player_response)
        except Exception as e:
            logger.warning(f"Player metadata inspection failed: {e}")
            return []

    def _video_details(self) -> dict[str, str]:
        try:
            return extract_video_details(self._page.player_response)
        except AttributeError:
            return {"video_id": "", "title": "", "description": ""}

    async def _from_cache(self, video_id: str, language: str) -> tuple[InterceptedPayload, list[SubtitleEntry], str] | None:
        payload = self._cache.lookup(video_id, language) or self._cache.lookup(video_id)
        if payload is not None:
            entries = parse_payload(payload.raw_content, payload.encoding_format)
            if entries:
                return payload, entries, "cache"
            logger.warning(f"Cached capture {payload.cache_key} has no usable entries")
            return None

        if self._settings.capture_wait_ms <= 0:
            return None
        try:
            payload = await self._cache.wait_for(video_id, language, self._settings.capture_wait_ms)
        except CaptureTimeout:
            return None
        except CacheInvalidated:
            raise ExtractionFailed("The page navigated away before subtitles arrived.") from None

        entries = parse_payload(payload.raw_content, payload.encoding_format)
        return (payload, entries, "wait") if entries else None

    async def _fetch_on_demand(self, prefs: UserPreferences) -> tuple[TrackDescriptor, list[SubtitleEntry]]:
        tracks = self._page_tracks()
        track = select_track(tracks, prefs.preferred_language, self._settings.fallback_language)
        if track is None:
            raise NoSubtitlesAvailable()

        logger.info(f"Fetching {track.language_code} track directly (auto={track.is_auto_generated})")
        try:
            content = await self._fetcher.fetch(track.fetch_url)
        except httpx.HTTPError as e:
            logger.warning(f"Direct track fetch failed: {e}")
            raise ExtractionFailed() from e

        entries = parse_payload(content)
        if not entries:
            raise ExtractionFailed()
        return track, entries

    async def download(self) -> DownloadOutcome:
        """
        Produce and save the subtitle file for the current video.

        Raises:
            NoSubtitlesAvailable: The video has no track at all
            ExtractionFailed: Cache, wait and direct fetch all came up empty
            DownloadFailed: The save collaborator refused the file
        """
        video_id = self._session.video_id
        if not video_id:
            raise ExtractionFailed("No video is open.")

        prefs = self.resolve_preferences()
        cached = await self._from_cache(video_id, prefs.preferred_language)
        if cached is not None:
            payload, entries, source = cached
            language = payload.language_code
            is_auto = _is_auto_capture(payload, self._page_tracks())
        else:
            track, entries = await self._fetch_on_demand(prefs)
            language, is_auto, source = track.language_code, track.is_auto_generated, "fetch"

        content = render(entries, prefs.preferred_format)
        details = self._video_details()
        if prefs.include_description and details["description"]:
            content = f"{details['description']}\n\n--- SUBTITLES ---\n\n{content}"

        filename = build_filename(
            details["title"] or f"YouTube Video {video_id}",
            prefs.preferred_format,
            language,
            default_language=self._settings.default_language,
            max_length=self._settings.filename_max_length,
        )

        try:
            result = self._downloader.request_save(filename, content)
        except Exception as e:
            logger.error(f"Save collaborator raised: {e}")
            raise DownloadFailed(f"Saving the subtitle file failed: {e}") from e
        if not result.ok:
            raise DownloadFailed(f"Saving the subtitle file failed: {result.error or 'unknown error'}")

        language_info = f" ({language})" if language not in (self._settings.default_language, prefs.preferred_language) else ""
        auto_info = " (Auto-generated)" if is_auto else ""
        logger.info(f"Saved {filename} from {source} ({len(entries)} entries)")
        return DownloadOutcome(
            filename=filename,
            language=language,
            is_auto_generated=is_auto,
            source=source,
            entry_count=len(entries),
            message=f"Subtitles downloaded successfully{language_info}{auto_info}!",
            location=result.location,
        )


def describe(controller: SessionController) -> dict[str, Any]:
    """Snapshot of a controller for status endpoints."""
    session = controller.session
    return {
        "video_id": session.video_id,
        "ui_state": session.ui_state.value,
        "message": session.button.message,
        "agent_ready": controller.agent_ready,
    }
