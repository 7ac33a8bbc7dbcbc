"""Service configuration via environment variables (``WEBSEC_*``)."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"

DEFAULT_SESSION_SECRET = "CHANGE-ME-IN-PRODUCTION"


class Settings(BaseSettings):
    # ── CSRF token protocol ──
    token_path: str = "/csrf/token"
    csrf_header_name: str = "X-CSRF-TOKEN"       # request header carrying the token
    csrf_parameter_name: str = "_csrf"           # discouraged query parameter alternative
    csrf_enabled: bool = True                    # global switch, independent of the policy tree

    # ── CORS ──
    cors_enabled: bool = True

    # ── Session (token repository) ──
    session_secret: str = DEFAULT_SESSION_SECRET
    session_cookie: str = "websec_session"
    session_max_age: int = Field(default=14 * 24 * 3600, ge=0)

    # ── Token service client ──
    accept_legacy_ok: bool = False               # also treat HTTP 200 as a successful token fetch

    # Logging
    log_format: str = "text"  # "json" for JSON-lines output
    log_level: str = "INFO"   # DEBUG, INFO, WARNING, ERROR

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8920, ge=0, le=65535)

    # Dev mode
    allow_default_secret: bool = False

    model_config = {"env_prefix": "WEBSEC_", "env_file": str(_ENV_FILE)}


settings = Settings()

# ── Startup validation ─────────────────────────────────────────

def validate_settings(current: Settings | None = None) -> None:
    """Raise on dangerous default values."""
    current = current or settings
    if current.session_secret in (DEFAULT_SESSION_SECRET, ""):
        if not current.allow_default_secret:
            raise RuntimeError(
                "CRITICAL: WEBSEC_SESSION_SECRET is not configured. "
                "Set the WEBSEC_SESSION_SECRET environment variable before starting the server. "
                "Set WEBSEC_ALLOW_DEFAULT_SECRET=1 only for local development."
            )
    if not current.token_path.startswith("/"):
        raise RuntimeError(
            f"WEBSEC_TOKEN_PATH must be an absolute path, got {current.token_path!r}."
        )
