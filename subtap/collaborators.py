"""
Interfaces the core consumes, plus the minimal adapters the service uses.

The core only depends on the Protocols. Saving files, storing preferences
and drawing the button belong to the embedding application.
"""

import asyncio
import logging
import random
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

import httpx

from subtap.button import ButtonStatus
from subtap.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveResult:
    """Outcome of a save request: ok, or an error message from the collaborator."""

    ok: bool
    error: str | None = None
    location: str | None = None


class DownloadCollaborator(Protocol):
    def request_save(self, filename: str, content: str) -> SaveResult: ...


class PreferenceCollaborator(Protocol):
    def get_preferences(self) -> Mapping[str, Any]: ...


class TrackFetcher(Protocol):
    async def fetch(self, url: str) -> str: ...


class ButtonView(Protocol):
    def render(self, status: ButtonStatus) -> None: ...
    def remove(self) -> None: ...


class NullButtonView:
    """View that draws nothing; state is still tracked by the controller."""

    def render(self, status: ButtonStatus) -> None:
        logger.debug(f"Button -> {status.state.value}")

    def remove(self) -> None:
        logger.debug("Button removed")


class DirectorySaver:
    """
    Save collaborator writing files into a directory.

    Args:
        directory: Target directory; defaults to <tmp>/subtap
    """

    def __init__(self, directory: str | None = None):
        self._directory = Path(directory) if directory else Path(tempfile.gettempdir()) / "subtap"

    def request_save(self, filename: str, content: str) -> SaveResult:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            target = self._directory / Path(filename).name
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save {filename}: {e}")
            return SaveResult(ok=False, error=str(e))
        logger.info(f"Saved {target} ({len(content)} chars)")
        return SaveResult(ok=True, location=str(target))


class SettingsPreferences:
    """Preferences taken from settings; nothing is persisted."""

    def __init__(self, config: Settings | None = None, **overrides: Any):
        self._config = config or Settings()
        self._overrides = overrides

    def get_preferences(self) -> Mapping[str, Any]:
        return {
            "preferred_language": self._config.preferred_language,
            "preferred_format": self._config.preferred_format,
            "include_description": self._config.include_description,
            "auto_download": self._config.auto_download,
            **self._overrides,
        }


class HttpTrackFetcher:
    """
    Direct fetch of a caption track URL, outside the page's patched APIs.

    Retries transient failures (429/5xx, timeouts, connection errors) with
    exponential backoff and jitter.
    """

    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 0.5  # Base delay in seconds
    RETRY_BACKOFF_MAX = 4  # Maximum delay in seconds
    RETRY_JITTER = 0.5  # Jitter factor to avoid thundering herd

    TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

    def __init__(self, config: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or Settings()
        # Sent per request; the client may be shared with the page
        self._headers = {
            "Accept": "application/json,application/xml,text/xml,*/*",
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": "https://www.youtube.com/",
            "User-Agent": self.config.user_agent,
        }
        self._client = client or httpx.AsyncClient(timeout=self.config.request_timeout, follow_redirects=True)

    def _is_transient_error(self, error: Exception) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in self.TRANSIENT_STATUS_CODES
        return isinstance(error, (httpx.TimeoutException, httpx.NetworkError))

    def _calculate_retry_delay(self, attempt: int) -> float:
        base_delay = min(self.RETRY_BACKOFF_BASE * (2 ** attempt), self.RETRY_BACKOFF_MAX)
        return base_delay + random.uniform(0, self.RETRY_JITTER)

    async def fetch(self, url: str) -> str:
        """
        Fetch a track body.

        Raises:
            httpx.HTTPError: After the last attempt, or on a non-transient error
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                response = await self._client.get(url, headers=self._headers)
                response.raise_for_status()
                if not response.text:
                    logger.warning(f"Track request returned empty content: {url[:120]}")
                return response.text
            except httpx.HTTPError as e:
                if attempt < self.MAX_RETRIES - 1 and self._is_transient_error(e):
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Transient error on attempt {attempt + 1}: {e}. Retrying in {delay:.2f}s...")
                    await asyncio.sleep(delay)
                    continue
                raise

        raise RuntimeError("unreachable: retry loop exited without result")

    async def aclose(self) -> None:
        await self._client.aclose()
