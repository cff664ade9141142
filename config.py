from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from errors import ConfigurationError

DEFAULT_DB_PATH = Path(__file__).resolve().parent / "data" / "picshelf.db"
DEFAULT_KDF_SALT = "picshelf.session.v1"
MIN_KDF_ITERATIONS = 100_000
MIN_SECRET_LENGTH = 32


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def _kdf_iterations() -> int:
    raw = os.getenv("SESSION_KDF_ITERATIONS")
    if not raw:
        return MIN_KDF_ITERATIONS
    try:
        iterations = int(raw)
    except ValueError as exc:
        raise ConfigurationError("SESSION_KDF_ITERATIONS must be an integer") from exc
    if iterations < MIN_KDF_ITERATIONS:
        raise ConfigurationError(
            f"SESSION_KDF_ITERATIONS must be at least {MIN_KDF_ITERATIONS}"
        )
    return iterations


@dataclass(frozen=True)
class Settings:
    session_secret: Optional[str]
    session_kdf_salt: str
    session_kdf_iterations: int
    db_path: Path
    blob_backend: str
    b2_key_id: Optional[str]
    b2_app_key: Optional[str]
    b2_bucket_name: Optional[str]
    app_url: Optional[str]
    public_url: Optional[str]
    owner_email: Optional[str]
    github_client_id: Optional[str]
    github_client_secret: Optional[str]
    secure_cookies: bool
    log_level: str

    def require_session_secret(self) -> str:
        """Return the session secret or fail loudly; there is no fallback."""
        if not self.session_secret:
            raise ConfigurationError(
                "SESSION_SECRET (or NEXTAUTH_SECRET) environment variable is required"
            )
        if len(self.session_secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"SESSION_SECRET must be at least {MIN_SECRET_LENGTH} characters long"
            )
        return self.session_secret

    def public_base_url(self) -> str:
        """Base URL images are served from, without a trailing slash."""
        base = self.public_url or self.app_url
        if base:
            return base.rstrip("/")
        if self.b2_bucket_name:
            return f"https://f000.backblazeb2.com/file/{self.b2_bucket_name}"
        return ""


def load_settings() -> Settings:
    """Read settings from the process environment (and a local .env file)."""
    load_dotenv()
    db_path = _env_str("PICSHELF_DB_PATH")
    return Settings(
        session_secret=_env_str("SESSION_SECRET") or _env_str("NEXTAUTH_SECRET"),
        session_kdf_salt=_env_str("SESSION_KDF_SALT") or DEFAULT_KDF_SALT,
        session_kdf_iterations=_kdf_iterations(),
        db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
        blob_backend=(_env_str("BLOB_BACKEND") or "b2").lower(),
        b2_key_id=_env_str("KEY_ID"),
        b2_app_key=_env_str("APP_KEY"),
        b2_bucket_name=_env_str("BUCKET_NAME"),
        app_url=_env_str("APP_URL"),
        public_url=_env_str("PUBLIC_URL"),
        owner_email=_env_str("OWNER_EMAIL"),
        github_client_id=_env_str("GITHUB_CLIENT_ID"),
        github_client_secret=_env_str("GITHUB_CLIENT_SECRET"),
        secure_cookies=_env_flag("ROBYN_SECURE_COOKIES", True),
        log_level=(_env_str("LOG_LEVEL") or "INFO").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
