"""Application configuration and settings management."""

from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CELLMATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Bicitaxi Cell Matching API"
    api_prefix: str = "/api"
    log_level: str = Field(default="INFO", description="Root log level for the service.")
    storage_backend: Literal["memory", "supabase"] = Field(
        default="memory",
        description="Where presence and request records live.",
    )
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Grid and timing policy. Every cooperating deployment must agree on these.
    cell_step_seconds: int = Field(
        default=30,
        ge=1,
        le=3600,
        description="Side of a geo-cell in arc-seconds (30\" is roughly 0.0083 degrees).",
    )
    presence_stale_seconds: float = Field(default=60.0, gt=0.0)
    presence_ttl_seconds: float = Field(default=86400.0, gt=0.0)
    heartbeat_interval_seconds: float = Field(default=20.0, gt=0.0)
    count_refresh_seconds: float = Field(default=30.0, gt=0.0)
    request_fresh_seconds: float = Field(default=180.0, gt=0.0)
    requests_refresh_seconds: float = Field(default=10.0, gt=0.0)
    expansion_wait_seconds: float = Field(default=20.0, ge=0.0)
    relocate_threshold_degrees: float = Field(default=0.001, ge=0.0)
    request_abandon_seconds: float = Field(default=900.0, gt=0.0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0.0)
    sweeper_enabled: bool = Field(default=True, description="Run the stale-request sweeper on startup.")

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    @field_validator("cell_step_seconds")
    @classmethod
    def _step_divides_degree(cls, value: int) -> int:
        if 3600 % value != 0:
            raise ValueError("cell_step_seconds must divide 3600 evenly")
        return value

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()


settings = Settings()
