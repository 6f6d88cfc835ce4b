"""Configuration for the MCP chess server."""
import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# OAuth
MCP_SCOPE = "mcp:tools"
AUTHORIZATION_CODE_TTL_SECONDS = 5 * 60
ACCESS_TOKEN_TTL_SECONDS = 60 * 60

# MCP protocol
PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "mcp-chess"
SERVER_VERSION = "0.1.0"

DEFAULT_CORS_ORIGINS = "https://claude.ai,https://chatgpt.com,https://chat.openai.com"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(part.strip() for part in (value or "").split(",") if part.strip())


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 3000
    secret_key: str = "dev-secret-key-change-in-production"
    database_path: str = "mcp_chess.db"
    public_url: Optional[str] = None
    app_url: Optional[str] = None
    allowed_client_ids: Tuple[str, ...] = ()
    default_challenge_method: str = "plain"
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: _split_csv(DEFAULT_CORS_ORIGINS))
    debug: bool = False
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    ably_api_key: Optional[str] = None
    reminder_api_key: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: Optional[str] = None
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    smtp_secure: Optional[bool] = None
    smtp_from: str = "no-reply@localhost"


def load_settings(overrides: Optional[Mapping[str, object]] = None) -> Settings:
    """Build settings from the environment, then apply explicit overrides."""
    smtp_secure = os.getenv("SMTP_SECURE")
    settings = Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3000")),
        secret_key=os.getenv("SECRET_KEY", "dev-secret-key-change-in-production"),
        database_path=os.getenv("DATABASE_PATH", "mcp_chess.db"),
        public_url=os.getenv("MCP_PUBLIC_URL") or None,
        app_url=os.getenv("APP_URL") or None,
        allowed_client_ids=_split_csv(os.getenv("MCP_OAUTH_ALLOWED_CLIENT_IDS")),
        default_challenge_method=os.getenv("MCP_OAUTH_DEFAULT_CHALLENGE_METHOD", "plain").strip(),
        cors_origins=_split_csv(os.getenv("MCP_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)),
        debug=_flag(os.getenv("MCP_DEBUG")),
        google_client_id=os.getenv("GOOGLE_ID") or None,
        google_client_secret=os.getenv("GOOGLE_SECRET") or None,
        ably_api_key=os.getenv("ABLY_API_KEY") or None,
        reminder_api_key=os.getenv("REMINDER_API_KEY") or None,
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=os.getenv("SMTP_PORT") or None,
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_pass=os.getenv("SMTP_PASS") or None,
        smtp_secure=_flag(smtp_secure) if smtp_secure else None,
        smtp_from=os.getenv("SMTP_FROM", "no-reply@localhost"),
    )
    if overrides:
        settings = replace(settings, **overrides)
    return settings
