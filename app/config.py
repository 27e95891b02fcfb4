from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AliasChoices, AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="CoachFlow Chat API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=True, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_user: str = Field(default="coachflow", validation_alias=AliasChoices("DB_USER", "database_user"))
    database_password: str = Field(default="coachflow", validation_alias=AliasChoices("DB_PASSWORD", "database_password"))
    database_host: str = Field(default="db", validation_alias=AliasChoices("DB_HOST", "database_host"))
    database_port: int = Field(default=3306, validation_alias=AliasChoices("DB_PORT", "database_port"))
    database_name: str = Field(default="coachflow", validation_alias=AliasChoices("DB_NAME", "database_name"))

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    realtime_token_secret: str = Field(
        default="changeme-realtime",
        env="REALTIME_TOKEN_SECRET",
        description="Shared secret used to sign custom realtime sign-in tokens",
    )
    realtime_token_ttl_seconds: int = Field(
        default=3600, env="REALTIME_TOKEN_TTL_SECONDS", description="Lifetime of custom tokens"
    )
    chat_token_roles: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["trainee", "trainer"],
        env="CHAT_TOKEN_ROLES",
        description="Roles allowed to obtain a realtime chat token",
    )
    realtime_backend: str = Field(
        default="memory",
        env="REALTIME_BACKEND",
        description="Document store backend: 'memory' or 'redis'",
    )
    realtime_redis_url: str | None = Field(default=None, env="REALTIME_REDIS_URL")
    realtime_redis_prefix: str = Field(default="coachflow", env="REALTIME_REDIS_PREFIX")
    realtime_update_retries: int = Field(
        default=10,
        env="REALTIME_UPDATE_RETRIES",
        description="Optimistic retries for a conflicting field update",
    )

    api_base_url: str = Field(
        default="http://localhost:8000", env="API_BASE_URL", description="Base URL of the chat backend API"
    )
    chat_token_path: str = Field(default="/api/chat/token", env="CHAT_TOKEN_PATH")
    chat_users_path: str = Field(default="/api/chat/users", env="CHAT_USERS_PATH")
    http_timeout_seconds: float = Field(default=10.0, env="HTTP_TIMEOUT_SECONDS")

    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")
    chat_read_batch_size: int = Field(
        default=20,
        env="CHAT_READ_BATCH_SIZE",
        description="Number of read receipts written concurrently",
    )
    media_root: Path = Field(default=Path("uploads"), env="MEDIA_ROOT")
    media_base_url: str = Field(default="/media/chat", env="MEDIA_BASE_URL")
    max_upload_size: int = Field(
        default=10 * 1024 * 1024, env="MAX_UPLOAD_SIZE", description="Maximum upload size in bytes"
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", "chat_token_roles", mode="before")
    @classmethod
    def split_comma_separated(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("realtime_backend")
    @classmethod
    def normalize_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"memory", "redis"}:
            raise ValueError("REALTIME_BACKEND must be 'memory' or 'redis'")
        return normalized

    @field_validator("media_root", mode="before")
    @classmethod
    def resolve_media_root(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.resolve()
        return Path(value).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()
