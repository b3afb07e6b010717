import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    modules_backend: str
    modules_table: str
    supabase_url: str
    supabase_service_role_key: str
    supabase_timeout_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///modhub.db"),
        modules_backend=_getenv("MODULES_BACKEND", "sql").lower(),
        modules_table=_getenv("MODULES_TABLE", "modules"),
        supabase_url=_getenv("SUPABASE_URL", ""),
        supabase_service_role_key=_getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        supabase_timeout_seconds=_getenv_int("SUPABASE_TIMEOUT_SECONDS", 30),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "MODULES_BACKEND": s.modules_backend,
        "MODULES_TABLE": s.modules_table,
        "SUPABASE_URL": s.supabase_url,
        "SUPABASE_SERVICE_ROLE_KEY": s.supabase_service_role_key,
        "SUPABASE_TIMEOUT_SECONDS": s.supabase_timeout_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
    }
