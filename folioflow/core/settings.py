"""
Runtime Settings

Everything configurable comes from the environment and is read once:
- Database location (SQLite path or Postgres DSN)
- Phone normalization defaults
- Outbound transport and object store credentials
- Notification fan-out pacing and actor exclusion policy
- Session expiry for multi-turn capture
"""

import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


@dataclass
class Settings:
    """Process-wide configuration."""
    db_path: str = "folioflow.db"
    database_url: str = ""
    db_fallback_sqlite: bool = True

    # Country code assumed for bare 10-digit national numbers
    default_country_code: str = "52"

    # Outbound WhatsApp transport (Twilio REST API)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"

    # Object store for quotes and project attachments
    s3_bucket: str = ""
    aws_region: str = ""

    # Notification fan-out
    notify_exclude_actor: bool = True
    notify_chunk_size: int = 10
    notify_chunk_delay_seconds: float = 1.0

    # Multi-turn capture
    session_ttl_seconds: int = 900

    api_key: Optional[str] = None

    def __post_init__(self):
        if self.notify_chunk_size < 1:
            raise ValueError("notify_chunk_size must be >= 1")
        if self.notify_chunk_delay_seconds < 0:
            raise ValueError("notify_chunk_delay_seconds must be >= 0")

    @property
    def transport_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def object_store_configured(self) -> bool:
        return bool(self.s3_bucket and self.aws_region)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Never expose secrets
        for secret in ("twilio_auth_token", "api_key", "database_url"):
            if data.get(secret):
                data[secret] = "***"
        return data

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("FOLIOFLOW_DB_PATH", "folioflow.db"),
            database_url=os.getenv("DATABASE_URL", ""),
            db_fallback_sqlite=_env_bool("FOLIOFLOW_DB_FALLBACK_SQLITE", True),
            default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "52").strip().lstrip("+"),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_from_number=os.getenv("TWILIO_WHATSAPP_NUMBER", ""),
            twilio_api_base=os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
            s3_bucket=os.getenv("S3_BUCKET", ""),
            aws_region=os.getenv("AWS_REGION", ""),
            notify_exclude_actor=_env_bool("NOTIFY_EXCLUDE_ACTOR", True),
            notify_chunk_size=_env_int("NOTIFY_CHUNK_SIZE", 10),
            notify_chunk_delay_seconds=_env_float("NOTIFY_CHUNK_DELAY_SECONDS", 1.0),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 900),
            api_key=os.getenv("API_KEY") or None,
        )


_SETTINGS: Optional[Settings] = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _SETTINGS
    _SETTINGS = None
