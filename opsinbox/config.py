from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse
import os

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when the environment holds an invalid or missing setting."""
    pass


@dataclass
class Config:
    port: int
    frontend_redirect_url: str | None
    cors_origins: list[str]
    token_encryption_key: str | None
    db_path: Path
    token_path: Path
    google_client_id: str | None
    google_client_secret: str | None
    google_redirect_uri: str | None
    log_level: str
    claude_model: str
    ai_triage_timeout: int
    triage_cache_ttl: int


def _positive_int(name: str, default: str, issues: list[str]) -> int:
    raw = os.getenv(name) or default
    try:
        value = int(raw)
    except ValueError:
        issues.append(f"{name}: must be a positive integer")
        return int(default)
    if value <= 0:
        issues.append(f"{name}: must be a positive integer")
    return value


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def load_config() -> Config:
    """Load configuration from environment variables with defaults."""
    load_dotenv()
    issues: list[str] = []

    frontend_redirect_url = _optional("FRONTEND_REDIRECT_URL")
    if frontend_redirect_url:
        parsed = urlparse(frontend_redirect_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            issues.append("FRONTEND_REDIRECT_URL: must be a valid URL")

    cfg = Config(
        port=_positive_int("PORT", "3000", issues),
        frontend_redirect_url=frontend_redirect_url,
        cors_origins=[o.strip() for o in os.getenv("CORS_ORIGIN", "").split(",") if o.strip()],
        token_encryption_key=_optional("TOKEN_ENCRYPTION_KEY"),
        db_path=Path(os.getenv("DB_PATH") or "data/opsinbox.db").resolve(),
        token_path=Path(os.getenv("TOKEN_PATH") or "data/token.json").resolve(),
        google_client_id=_optional("GOOGLE_CLIENT_ID"),
        google_client_secret=_optional("GOOGLE_CLIENT_SECRET"),
        google_redirect_uri=_optional("GOOGLE_REDIRECT_URI"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        claude_model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5-20250929"),
        ai_triage_timeout=_positive_int("AI_TRIAGE_TIMEOUT", "30", issues),
        triage_cache_ttl=_positive_int("TRIAGE_CACHE_TTL", "30", issues),
    )
    if issues:
        raise ConfigError(f"Invalid environment configuration: {'; '.join(issues)}")
    return cfg
