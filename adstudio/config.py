"""Configuration management for the production orchestrator.

This module provides centralized configuration loading from environment variables.
Getters read the environment on every call so tests can monkeypatch freely;
load_settings() collects them into an immutable OrchestratorSettings snapshot.

Environment Variables:
    GEMINI_API_KEY: API key for the generation service (read at call time)
    GEMINI_BASE_URL: REST root of the generation service
    POLL_INTERVAL_SECONDS: Fixed interval between polls of a running operation
    MAX_POLL_ATTEMPTS: Hard ceiling on polls per operation handle
    TRANSIENT_BACKOFF_*, QUOTA_BACKOFF_*: Retry curves per failure class

Usage:
    from adstudio.config import load_settings

    settings = load_settings()
    print(settings.poll_interval_seconds)
"""

import os
from dataclasses import dataclass

from adstudio.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_VIDEO_MODEL = "veo-3.1-fast-generate-preview"
DEFAULT_EXTEND_VIDEO_MODEL = "veo-3.1-generate-preview"
DEFAULT_VOICE_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_BRIEF_MODEL = "gemini-3-flash-preview"

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_POLL_ATTEMPTS = 90


def _read_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("invalid_config_value", variable=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def _read_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", variable=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def get_api_key() -> str | None:
    """Get the generation service API key from environment.

    Called on every remote request (never cached) so a key rotated by the
    credential-refresh collaborator is picked up by the next call.

    Returns:
        Stripped API key, or None if not set or blank.
    """
    key = (os.getenv("GEMINI_API_KEY") or "").strip()
    return key or None


def get_base_url() -> str:
    """Get the generation service REST root (default: public v1beta endpoint)."""
    return os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL).rstrip("/")


def get_poll_interval_seconds() -> float:
    """Get fixed poll interval in seconds.

    Environment Variable:
        POLL_INTERVAL_SECONDS: Interval between polls (default: 10)

    Returns:
        Interval in seconds, clamped between 1 and 120.
    """
    return _read_float("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, 1.0, 120.0)


def get_max_poll_attempts() -> int:
    """Get the per-handle poll ceiling (default: 90, i.e. 15 minutes at 10s)."""
    return _read_int("MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS, 1, 10_000)


def get_max_requests_per_second() -> float:
    """Get client-side request rate limit toward the generation service."""
    return _read_float("GEMINI_MAX_REQUESTS_PER_SECOND", 5.0, 0.1, 100.0)


@dataclass(frozen=True)
class BackoffSettings:
    """Raw retry curve parameters for one failure class."""

    base_delay_seconds: float
    multiplier: float
    max_attempts: int


def get_transient_backoff() -> BackoffSettings:
    """Get retry curve for transient failures (overloaded, 503/504, deadline)."""
    return BackoffSettings(
        base_delay_seconds=_read_float("TRANSIENT_BACKOFF_BASE_SECONDS", 5.0, 0.0, 3600.0),
        multiplier=_read_float("TRANSIENT_BACKOFF_MULTIPLIER", 1.5, 1.0, 10.0),
        max_attempts=_read_int("TRANSIENT_BACKOFF_MAX_ATTEMPTS", 10, 0, 100),
    )


def get_quota_backoff() -> BackoffSettings:
    """Get retry curve for quota failures (429 / RESOURCE_EXHAUSTED).

    Longer base delay and fewer attempts than the transient curve.
    """
    return BackoffSettings(
        base_delay_seconds=_read_float("QUOTA_BACKOFF_BASE_SECONDS", 30.0, 0.0, 3600.0),
        multiplier=_read_float("QUOTA_BACKOFF_MULTIPLIER", 2.0, 1.0, 10.0),
        max_attempts=_read_int("QUOTA_BACKOFF_MAX_ATTEMPTS", 5, 0, 100),
    )


def get_backoff_max_delay_seconds() -> float:
    """Get the cap applied to any single backoff delay (default: 600)."""
    return _read_float("BACKOFF_MAX_DELAY_SECONDS", 600.0, 1.0, 86_400.0)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Snapshot of every orchestrator setting.

    The API key is deliberately absent: it is read fresh per remote call.
    """

    base_url: str
    video_model: str
    extend_video_model: str
    voice_model: str
    brief_model: str
    poll_interval_seconds: float
    max_poll_attempts: int
    transient_backoff: BackoffSettings
    quota_backoff: BackoffSettings
    backoff_max_delay_seconds: float
    max_requests_per_second: float


def load_settings() -> OrchestratorSettings:
    """Build OrchestratorSettings from the current environment."""
    return OrchestratorSettings(
        base_url=get_base_url(),
        video_model=os.getenv("VIDEO_MODEL", DEFAULT_VIDEO_MODEL),
        extend_video_model=os.getenv("EXTEND_VIDEO_MODEL", DEFAULT_EXTEND_VIDEO_MODEL),
        voice_model=os.getenv("VOICE_MODEL", DEFAULT_VOICE_MODEL),
        brief_model=os.getenv("BRIEF_MODEL", DEFAULT_BRIEF_MODEL),
        poll_interval_seconds=get_poll_interval_seconds(),
        max_poll_attempts=get_max_poll_attempts(),
        transient_backoff=get_transient_backoff(),
        quota_backoff=get_quota_backoff(),
        backoff_max_delay_seconds=get_backoff_max_delay_seconds(),
        max_requests_per_second=get_max_requests_per_second(),
    )
