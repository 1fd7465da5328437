"""Runtime configuration for the to-do lists app.

Settings are read from environment variables so deployments can toggle
behaviour without code changes. Call ``get_settings()`` to take a snapshot;
the web app keeps its snapshot on ``app.state.settings``.
"""
import os

from pydantic import BaseModel


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# Fallback key so local runs and tests work without extra setup. Startup
# refuses this value when login is required.
INSECURE_SECRET_KEY = "CHANGE_ME_IN_ENV_FOR_TESTS"


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./todo_lists.db"
    # The default list is always shown and can never be deleted.
    default_list_name: str = "Personal"
    # When False, anonymous visitors share a single unowned scope.
    require_login: bool = False
    secret_key: str = INSECURE_SECRET_KEY
    session_expire_minutes: int = 60 * 24 * 7
    access_token_expire_minutes: int = 60 * 24
    csrf_token_expire_minutes: int = 60
    # Leave off for plain-HTTP dev/test so clients keep the cookies.
    cookie_secure: bool = False
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./todo_lists.db'),
        default_list_name=os.getenv('DEFAULT_LIST_NAME', 'Personal') or 'Personal',
        require_login=_trueish(os.getenv('REQUIRE_LOGIN', '0')),
        secret_key=os.getenv('SECRET_KEY', INSECURE_SECRET_KEY),
        session_expire_minutes=_int_env('SESSION_EXPIRE_MINUTES', 60 * 24 * 7),
        access_token_expire_minutes=_int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24),
        csrf_token_expire_minutes=_int_env('CSRF_TOKEN_EXPIRE_MINUTES', 60),
        cookie_secure=_trueish(os.getenv('COOKIE_SECURE', '0')),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
