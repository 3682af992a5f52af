from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    database_url: str = Field(default="sqlite:///./mealroute.db", alias="DATABASE_URL")
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    allowed_origins: str = Field(default="http://localhost:5173", alias="ALLOWED_ORIGINS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    planner_base_url: str | None = Field(default=None, alias="PLANNER_BASE_URL")
    planner_api_key: str | None = Field(default=None, alias="PLANNER_API_KEY")
    planner_timeout_seconds: int = Field(default=30, ge=1, alias="PLANNER_TIMEOUT_SECONDS")
    planner_max_attempts: int = Field(default=3, ge=1, le=10, alias="PLANNER_MAX_ATTEMPTS")

    feature_google_traffic: bool = Field(default=False, alias="FEATURE_GOOGLE_TRAFFIC")
    google_routes_api_key: str | None = Field(default=None, alias="GOOGLE_ROUTES_API_KEY")
    google_maps_api_key: str | None = Field(default=None, alias="GOOGLE_MAPS_API_KEY")
    google_routing_preference: str = Field(default="TRAFFIC_AWARE", alias="GOOGLE_ROUTING_PREFERENCE")
    google_cache_ttl_seconds: int = Field(default=300, alias="GOOGLE_CACHE_TTL_SECONDS")
    google_timeout_seconds: int = Field(default=20, alias="GOOGLE_TIMEOUT_SECONDS")
    google_rate_limit_qps: float = Field(default=5.0, alias="GOOGLE_RATE_LIMIT_QPS")

    traffic_reoptimize_threshold: float = Field(default=1.5, gt=1.0, alias="TRAFFIC_REOPTIMIZE_THRESHOLD")
    stop_comment_max_chars: int = Field(default=500, ge=1, alias="STOP_COMMENT_MAX_CHARS")

    @field_validator(
        "planner_base_url",
        "planner_api_key",
        "google_routes_api_key",
        "google_maps_api_key",
        mode="before",
    )
    @classmethod
    def _normalize_optional_secret(cls, value: object) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("database_url", "log_level", mode="before")
    @classmethod
    def _normalize_required_strings(cls, value: object) -> str:
        return str(value or "").strip()

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.allowed_origins.split(",") if item.strip()]

    @property
    def resolved_google_routes_api_key(self) -> str | None:
        key = self.google_routes_api_key or self.google_maps_api_key
        if key is None:
            return None
        cleaned = str(key).strip()
        return cleaned or None

    @property
    def resolved_google_routing_preference(self) -> str:
        return str(self.google_routing_preference or "TRAFFIC_AWARE").upper()

    @property
    def resolved_log_level(self) -> str:
        return str(self.log_level or "INFO").upper()

    @property
    def is_production_mode(self) -> bool:
        return str(self.app_env or "").strip().lower() in {"prod", "production"}

    @model_validator(mode="after")
    def _validate_required_production_settings(self) -> "Settings":
        if not self.is_production_mode:
            return self

        missing: list[str] = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        elif self.database_url.startswith("sqlite"):
            raise ValueError("DATABASE_URL must not use sqlite in production.")

        if not self.planner_base_url:
            missing.append("PLANNER_BASE_URL")

        if missing:
            joined = ", ".join(sorted(set(missing)))
            raise ValueError(f"Missing required production settings: {joined}")

        if self.feature_google_traffic and not self.resolved_google_routes_api_key:
            raise ValueError("GOOGLE_ROUTES_API_KEY (or GOOGLE_MAPS_API_KEY) is required when FEATURE_GOOGLE_TRAFFIC=true.")

        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
