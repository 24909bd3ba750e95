"""
Configuration module for subtap.

Uses pydantic-settings to load configuration from environment variables.
Timing constants for the handshake, the session controller and the capture
cache can be tuned at runtime without code changes.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Settings are read from SUBTAP_-prefixed variables (e.g. SUBTAP_CACHE_TTL).
    The server options use their unprefixed aliases (HOST, PORT, LOG_LEVEL).

    Environment Variables:
        HOST: Server host (default: 0.0.0.0)
        PORT: Server port (default: 8000)
        LOG_LEVEL: Logging level (default: info)
        SUBTAP_CACHE_TTL: Lifetime of an intercepted payload in seconds (default: 300)
        SUBTAP_CAPTURE_WAIT_MS: How long a download waits for an in-flight capture
            before falling back to the on-demand fetch (default: 1500)
        SUBTAP_READY_RESEND_DELAY: Delay before the second readiness signal (default: 0.5)
        SUBTAP_SETTLE_DELAY: Delay after a navigation before the decision gate runs,
            letting the host page finish its own re-render (default: 1.0)
        SUBTAP_SUCCESS_REVERT_DELAY / SUBTAP_ERROR_REVERT_DELAY: Auto-revert delays of the
            button state machine (defaults: 2.0 / 3.0)
        SUBTAP_PREFERRED_LANGUAGE / SUBTAP_FALLBACK_LANGUAGE: Track selection policy
        SUBTAP_PREFERRED_FORMAT: "srt" or "txt"
        SUBTAP_DOWNLOAD_DIR: Directory used by the service's save collaborator
    """

    # ========== Server Configuration ==========

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # ========== Capture Cache ==========

    # Intercepted payloads are one-shot; anything older than this is stale
    cache_ttl: float = 300.0

    # 0 disables waiting for an in-flight capture during a download
    capture_wait_ms: int = 1500

    # ========== Handshake & Session ==========

    ready_resend_delay: float = 0.5
    settle_delay: float = 1.0
    success_revert_delay: float = 2.0
    error_revert_delay: float = 3.0

    # ========== Preference Defaults ==========

    preferred_language: str = "zh-Hans"
    fallback_language: str = "en"
    preferred_format: str = "srt"
    include_description: bool = False
    auto_download: bool = True

    # ========== Filenames ==========

    # Language suffix is omitted from filenames for this language
    default_language: str = "en"
    filename_max_length: int = 100

    # ========== On-demand Fetch ==========

    request_timeout: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # ========== Service ==========

    # Directory for saved subtitle files (system temp dir when unset)
    download_dir: str | None = None

    # Let the hosted page request its default caption track after navigation,
    # the way the real player does when captions are switched on
    player_autoload_captions: bool = True

    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 30
    enable_security_headers: bool = True

    model_config = SettingsConfigDict(
        env_prefix="SUBTAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


# Global settings instance - loaded at startup with environment variables
settings = Settings()
