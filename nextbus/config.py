# nextbus/config.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- Agency ---
    TIMEZONE: str = "America/Los_Angeles"

    # --- Live ETA feed (GTFS-RT TripUpdates) ---
    TRIP_UPDATES_PB_URL: str | None = None
    TRIP_UPDATES_JSON_URL: str | None = None
    HTTP_TIMEOUT: float = 7.0
    LIVE_HORIZON_MINUTES: int = 30
    LIVE_TIMEOUT_S: float = 4.0
    LIVE_FEED_TTL_S: int = 20

    # --- Reconciliation ---
    RECONCILE_WORKERS: int = 8
    REQUEST_DEADLINE_S: float = 10.0

    # --- Spatial index ---
    GEOHASH_PRECISION: int = 12
    FINE_RADIUS_M: int = 2000
    FINE_PREFIX_LEN: int = 5
    COARSE_PREFIX_LEN: int = 3
    DEFAULT_RADIUS_M: int = 500
    STOP_LOOKUP_WORKERS: int = 8

    # --- Cache / store ---
    REDIS_URL: str | None = None
    CACHE_TTL_S: int | None = None
    STORE_PATH: str | None = "app_data/store.json"

    # --- GTFS static ---
    GTFS_URL: str | None = None
    GTFS_RAW_DIR: str = "app_data/gtfs"
    GTFS_ENCODING: str = "utf-8"
    ROUTE_ID_MAP: dict[str, str] | None = None
    ROUTE_ID_MAP_CSV: str | None = None
    STOP_ID_MAP_CSV: str | None = None

    # --- Jobs ---
    ENABLE_SCHEDULE_REBUILD_JOB: bool = False
    SCHEDULE_REBUILD_CRON_HOUR: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


settings = Settings()
