from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_out_dir() -> str:
    if _running_in_docker():
        return "/app/out"
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" (docker compose) and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    default_region: str = Field(default="GLOBAL", alias="DEFAULT_REGION")

    # Provider cache (durable key-value store under OUT_DIR/cache unless overridden)
    cache_backend: str = Field(default="file", alias="CACHE_BACKEND")
    cache_dir: str = Field(default="", alias="CACHE_DIR")
    cache_key_prefix: str = Field(default="navfeed_provider", alias="CACHE_KEY_PREFIX")
    cache_quota_bytes: int = Field(default=50 * 1024 * 1024, ge=1024, alias="CACHE_QUOTA_BYTES")
    cache_ttl_map_tiles_s: int = Field(default=7 * 24 * 3600, ge=1, alias="CACHE_TTL_MAP_TILES_S")
    cache_ttl_traffic_s: int = Field(default=5 * 60, ge=1, alias="CACHE_TTL_TRAFFIC_S")
    cache_ttl_radar_s: int = Field(default=24 * 3600, ge=1, alias="CACHE_TTL_RADAR_S")
    cache_ttl_weather_s: int = Field(default=30 * 60, ge=1, alias="CACHE_TTL_WEATHER_S")
    cache_purge_interval_s: int = Field(default=3600, ge=1, alias="CACHE_PURGE_INTERVAL_S")
    cache_purge_max_age_s: int = Field(default=24 * 3600, ge=1, alias="CACHE_PURGE_MAX_AGE_S")

    # Circuit breaker + retry policy (one breaker per provider name)
    breaker_failure_threshold: int = Field(default=3, ge=1, le=100, alias="BREAKER_FAILURE_THRESHOLD")
    breaker_cooldown_ms: int = Field(default=30_000, ge=0, alias="BREAKER_COOLDOWN_MS")
    provider_max_attempts: int = Field(default=3, ge=1, le=20, alias="PROVIDER_MAX_ATTEMPTS")
    provider_attempt_timeout_ms: int = Field(default=5_000, ge=1, alias="PROVIDER_ATTEMPT_TIMEOUT_MS")
    provider_backoff_initial_ms: int = Field(default=500, ge=0, alias="PROVIDER_BACKOFF_INITIAL_MS")
    provider_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0, alias="PROVIDER_BACKOFF_MULTIPLIER")
    provider_backoff_max_ms: int = Field(default=5_000, ge=0, alias="PROVIDER_BACKOFF_MAX_MS")
    provider_http_timeout_s: float = Field(default=5.0, ge=0.5, le=120.0, alias="PROVIDER_HTTP_TIMEOUT_S")
    radar_http_timeout_s: float = Field(default=10.0, ge=0.5, le=120.0, alias="RADAR_HTTP_TIMEOUT_S")

    # Traffic fusion loop
    fusion_interval_good_s: float = Field(default=60.0, gt=0.0, alias="FUSION_INTERVAL_GOOD_S")
    fusion_interval_weak_s: float = Field(default=180.0, gt=0.0, alias="FUSION_INTERVAL_WEAK_S")
    fusion_prediction_window_s: int = Field(default=30 * 60, ge=60, alias="FUSION_PREDICTION_WINDOW_S")
    fusion_incident_radius_m: float = Field(default=500.0, gt=0.0, alias="FUSION_INCIDENT_RADIUS_M")
    fusion_persist_snapshot: bool = Field(default=True, alias="FUSION_PERSIST_SNAPSHOT")

    # Network quality probe
    network_probe_url: str = Field(default="", alias="NETWORK_PROBE_URL")
    network_probe_timeout_ms: int = Field(default=3_000, ge=100, alias="NETWORK_PROBE_TIMEOUT_MS")
    network_weak_threshold_ms: int = Field(default=2_000, ge=1, alias="NETWORK_WEAK_THRESHOLD_MS")
    network_probe_interval_s: float = Field(default=30.0, gt=0.0, alias="NETWORK_PROBE_INTERVAL_S")

    # Provider credentials (absence disables that provider)
    mapbox_token: str = Field(default="", alias="MAPBOX_TOKEN")
    maptiler_token: str = Field(default="", alias="MAPTILER_TOKEN")
    here_api_key: str = Field(default="", alias="HERE_API_KEY")
    tomtom_api_key: str = Field(default="", alias="TOMTOM_API_KEY")
    openweather_api_key: str = Field(default="", alias="OPENWEATHER_API_KEY")

    @model_validator(mode="after")
    def _normalise(self) -> "Settings":
        if self.provider_backoff_max_ms < self.provider_backoff_initial_ms:
            self.provider_backoff_max_ms = self.provider_backoff_initial_ms
        if self.fusion_interval_weak_s < self.fusion_interval_good_s:
            self.fusion_interval_weak_s = self.fusion_interval_good_s
        backend = str(self.cache_backend or "file").strip().lower()
        self.cache_backend = backend if backend in {"file", "memory"} else "file"
        self.default_region = str(self.default_region or "GLOBAL").strip().upper() or "GLOBAL"
        return self

    def resolved_cache_dir(self) -> Path:
        if self.cache_dir.strip():
            return Path(self.cache_dir)
        return Path(self.out_dir) / "cache"

    def cache_ttls_ms(self) -> dict[str, int]:
        return {
            "map_tiles": self.cache_ttl_map_tiles_s * 1000,
            "traffic": self.cache_ttl_traffic_s * 1000,
            "radar": self.cache_ttl_radar_s * 1000,
            "weather": self.cache_ttl_weather_s * 1000,
        }


settings = Settings()
