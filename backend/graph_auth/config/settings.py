"""
Environment settings for the Graph credential service.

All values are read from environment variables once, at service
construction time. Required values raise ValueError when missing.

Usage:
    from graph_auth.config.settings import OAuthSettings

    settings = OAuthSettings.from_env()
"""

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_GRAPH_API_VERSION = "v19.0"
DEFAULT_GRAPH_API_BASE_URL = "https://graph.facebook.com"
DEFAULT_DIALOG_BASE_URL = "https://www.facebook.com"

# Provider default lifetime of a long-lived token (60 days)
DEFAULT_LONG_LIVED_TTL_SECONDS = 60 * 24 * 60 * 60

# OAuth state expiration (10 minutes)
DEFAULT_STATE_TTL_SECONDS = 600

# Reserved and used authorization codes are remembered for a day
DEFAULT_CODE_RETENTION_SECONDS = 24 * 60 * 60

DEFAULT_CALLBACK_TIMEOUT_SECONDS = 60.0

REPLAY_BACKENDS = ("memory", "database")

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def _env_bool(name: str, default: Optional[bool]) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class OAuthSettings:
    """Configuration for the OAuth flow, Graph client and rotation loop."""

    app_id: str
    app_secret: str = field(repr=False)
    redirect_uri: str
    environment: str = "development"
    graph_api_version: str = DEFAULT_GRAPH_API_VERSION
    graph_api_base_url: str = DEFAULT_GRAPH_API_BASE_URL
    dialog_base_url: str = DEFAULT_DIALOG_BASE_URL
    strict_state: bool = True
    state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS
    code_retention_seconds: int = DEFAULT_CODE_RETENTION_SECONDS
    callback_timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS
    http_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    default_long_lived_ttl_seconds: int = DEFAULT_LONG_LIVED_TTL_SECONDS
    rotation_threshold_days: int = 7
    rotation_interval_seconds: int = 3600
    replay_backend: str = "database"

    def __post_init__(self):
        if not self.app_id:
            raise ValueError("FB_APP_ID environment variable is required")
        if not self.app_secret:
            raise ValueError("FB_APP_SECRET environment variable is required")
        if not self.redirect_uri:
            raise ValueError("FB_REDIRECT_URI environment variable is required")
        if self.replay_backend not in REPLAY_BACKENDS:
            raise ValueError(
                f"REPLAY_GUARD_BACKEND must be one of {REPLAY_BACKENDS}, "
                f"got {self.replay_backend!r}"
            )
        if self.max_retries < 0:
            raise ValueError("GRAPH_MAX_RETRIES must be >= 0")
        if self.rotation_threshold_days < 0:
            raise ValueError("ROTATION_THRESHOLD_DAYS must be >= 0")
        if self.code_retention_seconds < self.state_ttl_seconds:
            raise ValueError("OAUTH_CODE_RETENTION_SECONDS must be >= OAUTH_STATE_TTL_SECONDS")
        if self.callback_timeout_seconds <= 0:
            raise ValueError("OAUTH_CALLBACK_TIMEOUT_SECONDS must be > 0")

    @classmethod
    def from_env(cls) -> "OAuthSettings":
        """
        Build settings from environment variables.

        State validation is strict unless OAUTH_STRICT_STATE is explicitly
        false, which is refused in production.
        """
        environment = os.getenv("ENV", "development")
        strict_state = _env_bool("OAUTH_STRICT_STATE", None)
        if strict_state is None:
            strict_state = True
        if not strict_state and environment == "production":
            raise ValueError("OAUTH_STRICT_STATE cannot be disabled in production")

        return cls(
            app_id=os.getenv("FB_APP_ID", ""),
            app_secret=os.getenv("FB_APP_SECRET", ""),
            redirect_uri=os.getenv("FB_REDIRECT_URI", ""),
            environment=environment,
            graph_api_version=os.getenv("GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION),
            graph_api_base_url=os.getenv("GRAPH_API_BASE_URL", DEFAULT_GRAPH_API_BASE_URL),
            dialog_base_url=os.getenv("FB_DIALOG_BASE_URL", DEFAULT_DIALOG_BASE_URL),
            strict_state=strict_state,
            state_ttl_seconds=_env_int("OAUTH_STATE_TTL_SECONDS", DEFAULT_STATE_TTL_SECONDS),
            code_retention_seconds=_env_int(
                "OAUTH_CODE_RETENTION_SECONDS", DEFAULT_CODE_RETENTION_SECONDS
            ),
            callback_timeout_seconds=_env_float(
                "OAUTH_CALLBACK_TIMEOUT_SECONDS", DEFAULT_CALLBACK_TIMEOUT_SECONDS
            ),
            http_timeout_seconds=_env_float("GRAPH_HTTP_TIMEOUT_SECONDS", 30.0),
            max_retries=_env_int("GRAPH_MAX_RETRIES", 3),
            retry_initial_delay=_env_float("GRAPH_RETRY_INITIAL_DELAY", 1.0),
            retry_max_delay=_env_float("GRAPH_RETRY_MAX_DELAY", 30.0),
            default_long_lived_ttl_seconds=_env_int(
                "DEFAULT_LONG_LIVED_TTL_SECONDS", DEFAULT_LONG_LIVED_TTL_SECONDS
            ),
            rotation_threshold_days=_env_int("ROTATION_THRESHOLD_DAYS", 7),
            rotation_interval_seconds=_env_int("ROTATION_INTERVAL_SECONDS", 3600),
            replay_backend=os.getenv("REPLAY_GUARD_BACKEND", "database").lower(),
        )
