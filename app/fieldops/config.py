import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    role_catalog_path: str
    invitation_ttl_days: int
    invite_base_url: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///fieldops.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        role_catalog_path=_getenv("ROLE_CATALOG_PATH", ""),
        invitation_ttl_days=_getenv_int("INVITATION_TTL_DAYS", 7),
        invite_base_url=_getenv("INVITE_BASE_URL", "http://localhost:8080"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "ROLE_CATALOG_PATH": s.role_catalog_path or None,
        "INVITATION_TTL_DAYS": s.invitation_ttl_days,
        "INVITE_BASE_URL": s.invite_base_url.rstrip("/"),
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "JSON_SORT_KEYS": False,
    }
