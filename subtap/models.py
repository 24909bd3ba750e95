"""
Pydantic models shared by both execution contexts.

The cross-context messages form a tagged union on ``kind``. Everything that
crosses the channel is plain JSON-compatible data, validated on receipt.
"""

import logging
import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


def now_ms() -> int:
    """Wall-clock milliseconds, as stamped on captures by the page context."""
    return int(time.time() * 1000)


class InterceptedPayload(BaseModel):
    """One recognized subtitle response, captured exactly once."""

    model_config = ConfigDict(frozen=True)

    source_url: str = Field(..., description="URL of the intercepted request")
    raw_content: str = Field(..., description="Response body as text")
    video_id: str = Field(default=UNKNOWN, description="Value of the 'v' query parameter")
    language_code: str = Field(default=UNKNOWN, description="Value of 'lang' (or 'tlang')")
    encoding_format: str = Field(default=UNKNOWN, description="Value of 'fmt' (json3, srv3, ...)")
    captured_at: int = Field(default_factory=now_ms, description="Capture time in epoch milliseconds")

    @property
    def cache_key(self) -> str:
        return make_key(self.video_id, self.language_code)


def make_key(video_id: str, language_code: str) -> str:
    """Composite cache key for a (video, language) pair."""
    return f"{video_id}_{language_code}"


class TrackDescriptor(BaseModel):
    """A subtitle track advertised by the page's player metadata."""

    model_config = ConfigDict(frozen=True)

    language_code: str
    is_auto_generated: bool = False
    fetch_url: str
    name: str = ""


class UserPreferences(BaseModel):
    """Download preferences. Defaults are filled in by the session controller."""

    preferred_language: str
    preferred_format: Literal["srt", "txt"]
    include_description: bool = False
    auto_download: bool = True


# ============================================================================
# Cross-context messages
# ============================================================================


class ReadyMessage(BaseModel):
    kind: Literal["ready"] = "ready"
    timestamp: int = Field(default_factory=now_ms)


class CapturedMessage(BaseModel):
    kind: Literal["captured"] = "captured"
    payload: InterceptedPayload


class StatusRequestMessage(BaseModel):
    kind: Literal["status_request"] = "status_request"


class StatusMessage(BaseModel):
    kind: Literal["status"] = "status"
    active: bool
    intercepted: bool
    capture_count: int = 0
    timestamp: int = Field(default_factory=now_ms)


ChannelMessage = Annotated[
    ReadyMessage | CapturedMessage | StatusRequestMessage | StatusMessage,
    Field(discriminator="kind"),
]

_message_adapter: TypeAdapter[ChannelMessage] = TypeAdapter(ChannelMessage)

KNOWN_KINDS = frozenset({"ready", "captured", "status_request", "status"})


def parse_message(data: Any) -> ChannelMessage | None:
    """
    Validate raw channel data into a message model.

    Unknown kinds and malformed messages are no-ops for the receiver, so
    they come back as None instead of raising.
    """
    if not isinstance(data, dict) or data.get("kind") not in KNOWN_KINDS:
        return None
    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning(f"Dropping malformed {data.get('kind')!r} message: {e.error_count()} error(s)")
        return None
