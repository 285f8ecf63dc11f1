from __future__ import annotations

import os
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Studio365"
    ENV: str = "dev"
    DATABASE_URL: str | None = None
    REDIS_URL: str | None = None
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"  # Used to build the OAuth redirect URI
    CORS_ALLOW_ORIGINS: list[str] = ["*"]
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    HSTS_SECONDS: int = 31_536_000
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "plain"
    SENTRY_DSN: str | None = None

    # Session tokens issued by the auth backend (HS256, claims: sub, studio_id, role)
    JWT_SECRET: str = "change_me"

    # Master key for secrets at rest: 64 hex chars (32 bytes). Generate with
    # `python scripts/generate_encryption_key.py` or `openssl rand -hex 32`.
    ENCRYPTION_KEY_M365: str | None = None

    # OAuth transaction state (signed, httpOnly cookie)
    OAUTH_STATE_SECRET: str = "change_me_oauth_state"
    OAUTH_STATE_TTL_SECONDS: int = 600
    OAUTH_STATE_COOKIE_NAME: str = "m365_state"

    # Microsoft identity platform / Graph
    M365_AUTHORITY_HOST: str = "https://login.microsoftonline.com"
    M365_GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    M365_GRAPH_RESOURCE: str = "https://graph.microsoft.com"
    M365_DELEGATED_SCOPES: list[str] = [
        "openid",
        "profile",
        "offline_access",
        "User.Read",
        "Calendars.ReadWrite",
        "Mail.Send",
        "OnlineMeetings.ReadWrite",
    ]
    M365_USE_PKCE: bool = True
    M365_HTTP_TIMEOUT_SECONDS: float = 10.0
    M365_TOKEN_SAFETY_MARGIN_SECONDS: int = 300
    M365_REDIRECT_PATH: str = "/m365/callback"
    M365_STATUS_PAGE: str = "http://localhost:3000/impostazioni/microsoft365"

    # Passphrase vault (password-protected client-side secrets)
    VAULT_PBKDF2_ITERATIONS: int = 100_000
    VAULT_AUTO_LOCK_SECONDS: int = 15 * 60

    @property
    def m365_redirect_uri(self) -> str:
        return f"{self.BACKEND_URL.rstrip('/')}{self.M365_REDIRECT_PATH}"

    @model_validator(mode="after")
    def _validate_required_fields(self) -> BaseAppSettings:
        # Convert Heroku's postgres:// URL to postgresql://
        if self.DATABASE_URL and self.DATABASE_URL.startswith("postgres://"):
            self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql://", 1)

        required_in_prod = (
            "DATABASE_URL",
            "JWT_SECRET",
            "OAUTH_STATE_SECRET",
            "ENCRYPTION_KEY_M365",
        )
        if self.ENV.lower() == "prod":
            missing = [name for name in required_in_prod if not getattr(self, name)]
            default_violations: list[str] = []
            if self.JWT_SECRET == "change_me":
                default_violations.append("JWT_SECRET uses default placeholder")
            if self.OAUTH_STATE_SECRET == "change_me_oauth_state":
                default_violations.append("OAUTH_STATE_SECRET uses default placeholder")
            if missing:
                raise ValueError(f"Missing required production settings: {', '.join(missing)}")
            if default_violations:
                raise ValueError("Insecure default secrets in production: " + ", ".join(default_violations))
        return self


class DevSettings(BaseAppSettings):
    ENV: str = "dev"
    DATABASE_URL: str = "sqlite:///./storage/dev.db"


class TestSettings(BaseAppSettings):
    ENV: str = "test"
    DATABASE_URL: str = "sqlite:///:memory:"
    BACKEND_URL: str = "http://testserver"


class ProdSettings(BaseAppSettings):
    ENV: str = "prod"
    CORS_ALLOW_CREDENTIALS: bool = True
    LOG_FORMAT: str = "json"


_ENV_TO_SETTINGS: dict[str, type[BaseAppSettings]] = {
    "dev": DevSettings,
    "development": DevSettings,
    "test": TestSettings,
    "testing": TestSettings,
    "prod": ProdSettings,
    "production": ProdSettings,
}


@lru_cache
def get_settings() -> BaseAppSettings:
    env_name = os.getenv("APP_ENV") or os.getenv("ENV") or "dev"
    env = env_name.lower()
    settings_cls = _ENV_TO_SETTINGS.get(env, DevSettings)
    return settings_cls()


settings = get_settings()
