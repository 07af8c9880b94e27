import json
from typing import List, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Stock Ledger Backend"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./stockledger.db"
    database_echo: bool = False
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)
    sqlite_busy_timeout_seconds: int = Field(default=30, ge=1, le=600)

    # STOCK LEDGER
    stock_lock_timeout_seconds: float = Field(default=5.0, gt=0, le=300)
    stock_max_retries: int = Field(default=5, ge=0, le=50)
    stock_retry_backoff_seconds: float = Field(default=0.01, ge=0, le=5)
    stock_retry_backoff_max_seconds: float = Field(default=0.25, ge=0, le=30)
    stock_movements_default_limit: int = Field(default=100, ge=1, le=1000)
    stock_movements_max_limit: int = Field(default=500, ge=1, le=5000)
    stock_bulk_max_items: int = Field(default=200, ge=1, le=5000)
    stock_strict_reservations: bool = False

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("cors_origin_regex", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_stock_limits(self) -> "Settings":
        if self.stock_movements_default_limit > self.stock_movements_max_limit:
            raise ValueError("STOCK_MOVEMENTS_DEFAULT_LIMIT cannot exceed STOCK_MOVEMENTS_MAX_LIMIT")
        if self.stock_retry_backoff_seconds > self.stock_retry_backoff_max_seconds:
            raise ValueError("STOCK_RETRY_BACKOFF_SECONDS cannot exceed STOCK_RETRY_BACKOFF_MAX_SECONDS")
        return self

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")
        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
