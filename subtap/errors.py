"""
Error taxonomy for subtap.

Network- and parse-level failures are converted into one of these kinds
before they cross a component boundary, so callers (and users) never see a
raw transport error.
"""


class SubtapError(Exception):
    """Base class for every error the core raises on purpose."""

    user_message = "Something went wrong while fetching subtitles."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class ParseFailure(SubtapError):
    """Malformed upstream payload. Recovered locally as an empty result."""

    user_message = "The subtitle payload could not be parsed."


class NoSubtitlesAvailable(SubtapError):
    """The video has no subtitle track at all. Terminal, not retryable."""

    user_message = "This video has no available subtitles (neither manual nor auto-generated)."


class CaptureTimeout(SubtapError):
    """A wait on a cache key exceeded its deadline."""

    user_message = "Timed out waiting for the subtitle request to be intercepted."

    def __init__(self, key: str, timeout_ms: int):
        super().__init__(f"No capture for {key} within {timeout_ms}ms")
        self.key = key
        self.timeout_ms = timeout_ms


class CacheInvalidated(SubtapError):
    """A pending wait was cancelled because the page moved to another video."""

    user_message = "The page navigated to another video."


class ExtractionFailed(SubtapError):
    """On-demand fetch or track selection failed after the cache missed."""

    user_message = "Failed to download subtitles. Please try again."


class DownloadFailed(SubtapError):
    """The save collaborator reported a failure."""

    user_message = "Saving the subtitle file failed."
