import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database configuration
    # Async driver URL, e.g. postgresql+asyncpg://... in production.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./simleague.db")
    AUTO_CREATE_TABLES: bool = os.getenv("AUTO_CREATE_TABLES", "true").lower() == "true"

    # Redis configuration
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Celery configuration (finalize hook only)
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

    # Participant identity (bearer JWT issued by the identity provider)
    AUTH_JWT_SECRET: str = os.getenv("AUTH_JWT_SECRET", "change-me-auth-secret-at-least-32-bytes")
    AUTH_JWT_AUDIENCE: str = os.getenv("AUTH_JWT_AUDIENCE", "")
    # Legacy compatibility: accept a bare x-user-id header when no bearer token is sent
    ALLOW_LEGACY_USER_HEADER: bool = os.getenv("ALLOW_LEGACY_USER_HEADER", "false").lower() == "true"

    # Admin access
    ADMIN_EMAIL_ALLOWLIST: str = os.getenv("ADMIN_EMAIL_ALLOWLIST", "")
    ADMIN_JWT_SECRET: str = os.getenv("ADMIN_JWT_SECRET", "change-me-admin-link-secret-32-bytes")
    ADMIN_LINK_TTL_SECONDS: int = int(os.getenv("ADMIN_LINK_TTL_SECONDS", "900"))

    # Event / run policy
    EVENT_INITIAL_STATE: str = os.getenv("EVENT_INITIAL_STATE", "active")  # active | draft
    DEFAULT_EVENT_DURATION_MINUTES: int = int(os.getenv("DEFAULT_EVENT_DURATION_MINUTES", "60"))
    ONE_OPEN_RUN_PER_USER: bool = os.getenv("ONE_OPEN_RUN_PER_USER", "false").lower() == "true"
    LEADERBOARD_MAX_LIMIT: int = int(os.getenv("LEADERBOARD_MAX_LIMIT", "50"))

    # Comma-separated origins of the participant site and the simulator
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    class Config:
        # Let BaseSettings read from project .env if present (local dev).
        env_file = ".env"

    def admin_allowlist(self) -> frozenset[str]:
        """Parse ADMIN_EMAIL_ALLOWLIST into a lowercase, read-only set."""
        return frozenset(
            entry.strip().lower()
            for entry in self.ADMIN_EMAIL_ALLOWLIST.split(",")
            if entry.strip()
        )


settings = Settings()
