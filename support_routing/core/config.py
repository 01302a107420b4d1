from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "local"
    api_port: int = 8000

    postgres_host: str = "127.0.0.1"
    postgres_port: int = 5432
    postgres_db: str = "support_routing"
    postgres_user: str = "routing_user"
    postgres_password: str = "routing_password"
    database_url_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL_OVERRIDE", "DATABASE_URL"),
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_auto_create: bool = False
    db_seed_demo_directory: bool = False

    log_level: str = "INFO"
    log_json: bool = False

    sweeper_enabled: bool = True
    sweeper_interval_seconds: float = Field(default=30.0, gt=0)
    root_escalation_timeout_minutes: int = Field(default=10, ge=1)
    fallback_department_slug: str = "administrativo"
    routing_suggestion_timeout_minutes: int = Field(default=2, ge=1)
    agent_heartbeat_timeout_seconds: int = Field(default=120, ge=1)
    serializable_max_attempts: int = Field(default=5, ge=1)

    cors_allowed_origins_raw: str = "http://127.0.0.1:5173,http://localhost:5173"
    trusted_hosts_raw: str = "127.0.0.1,localhost"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cors_allowed_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allowed_origins_raw.split(",")
            if origin.strip()
        ]

    @property
    def trusted_hosts(self) -> list[str]:
        return [
            host.strip() for host in self.trusted_hosts_raw.split(",") if host.strip()
        ]

    def validate_production_settings(self) -> None:
        if self.app_env.lower() != "production":
            return

        if not self.cors_allowed_origins:
            raise ValueError(
                "CORS_ALLOWED_ORIGINS_RAW must define explicit origins in production."
            )
        if "*" in self.cors_allowed_origins:
            raise ValueError("Wildcard CORS origin is not allowed in production.")
        if not self.trusted_hosts:
            raise ValueError(
                "TRUSTED_HOSTS_RAW must define explicit hosts in production."
            )
        if "*" in self.trusted_hosts:
            raise ValueError("Wildcard trusted host is not allowed in production.")
        if self.db_auto_create:
            raise ValueError(
                "DB_AUTO_CREATE must be disabled in production; run migrations instead."
            )


@lru_cache
def get_settings() -> Settings:
    return Settings()
