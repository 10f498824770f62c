"""Application configuration and settings management."""

from pathlib import Path
from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Crew Dispatch Engine API"
    api_prefix: str = "/api"
    data_root: Path = Field(default=Path("data"), description="Root directory for the local schedule cache.")

    depot_address: str = Field(
        default="2550 TN-109, Lebanon, TN 37090",
        description="Home office every crew route starts and ends at.",
    )
    depot_latitude: float = Field(default=36.2081, description="Fallback depot latitude when geocoding fails.")
    depot_longitude: float = Field(default=-86.2911, description="Fallback depot longitude when geocoding fails.")

    day_start_hour: float = Field(default=8.5, ge=0.0, le=24.0)
    day_end_hour: float = Field(default=18.0, ge=0.0, le=24.0)
    slot_interval_hours: float = Field(default=0.5, gt=0.0)

    undo_depth: int = Field(default=30, ge=1)
    autosave_debounce_seconds: float = Field(default=1.5, ge=0.0)

    matrix_max_points_per_request: int = Field(default=25, ge=2)
    matrix_max_parallel_requests: int = Field(default=4, ge=1)
    two_opt_max_passes: int = Field(default=50, ge=0)
    fallback_speed_kmh: float = Field(default=40.0, gt=0.0)

    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM routing service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "driving-hgv"] = Field(
        default="driving",
        description="OSRM profile to use when computing travel times.",
    )
    osrm_max_retries: int = Field(default=3, ge=0)
    osrm_backoff_seconds: float = Field(default=1.0, ge=0.0)
    osrm_timeout_seconds: float = Field(default=30.0, gt=0.0)

    geocoder_url: str = Field(
        default="https://nominatim.openstreetmap.org/search",
        description="Forward geocoding endpoint (Nominatim compatible).",
    )
    geocoder_user_agent: str = Field(default="crew-dispatch-engine/0.1 (dispatch geocoding)")
    geocoder_timeout_seconds: float = Field(default=5.0, gt=0.0)
    geocoder_country_suffix: str = Field(
        default=", USA",
        description="Suffix appended when the depot address does not resolve on its own.",
    )

    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    @property
    def day_length_hours(self) -> float:
        return self.day_end_hour - self.day_start_hour

    @field_validator("data_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

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
