# config.py – Centralized configuration with validation
from __future__ import annotations
import os
from dataclasses import dataclass, field


def _getenv_bool(key: str, default: bool = False) -> bool:
    """Helper to parse boolean environment variables consistently."""
    value = os.getenv(key, str(default)).lower()
    return value in ("1", "true", "yes", "y", "on")


def _getenv_int(key: str, default: int) -> int:
    """Helper to parse integer environment variables with validation."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: {os.getenv(key)}")


def _getenv_float(key: str, default: float) -> float:
    """Helper to parse float environment variables with validation."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: {os.getenv(key)}")


def _getenv_first(*keys: str, default: str = "") -> str:
    for key in keys:
        value = os.getenv(key)
        if value:
            return value.strip()
    return default


@dataclass(frozen=True)
class LineConfig:
    """LINE Messaging API credentials and transport settings."""
    channel_access_token: str = _getenv_first("LINE_CHANNEL_ACCESS_TOKEN", "CHANNEL_ACCESS_TOKEN")
    channel_secret: str = _getenv_first("LINE_CHANNEL_SECRET", "CHANNEL_SECRET")
    api_base: str = os.getenv("LINE_API_BASE", "https://api.line.me")
    data_api_base: str = os.getenv("LINE_DATA_API_BASE", "https://api-data.line.me")
    http_timeout: float = _getenv_float("LINE_HTTP_TIMEOUT", 10)
    max_attempts: int = _getenv_int("LINE_MAX_ATTEMPTS", 3)

    @property
    def is_configured(self) -> bool:
        return bool(self.channel_access_token and self.channel_secret)


@dataclass(frozen=True)
class GeofenceConfig:
    """Danger zone, alert cooldown and idle tracking settings."""
    # Static zone (also the fallback when the dynamic lookup fails)
    zone_lat: float = _getenv_float("DANGER_ZONE_LAT", 25.01845)
    zone_lng: float = _getenv_float("DANGER_ZONE_LNG", 121.54274)
    zone_radius_m: float = _getenv_float("DANGER_ZONE_RADIUS_M", 5.0)

    cooldown_seconds: float = _getenv_float("ALERT_COOLDOWN_SECONDS", 60)

    # Zones derived from past field reports
    dynamic_zones_enabled: bool = _getenv_bool("DYNAMIC_ZONES_ENABLED")
    dynamic_radius_m: float = _getenv_float("DYNAMIC_ZONE_RADIUS_M", 50.0)
    history_window_days: int = _getenv_int("ZONE_HISTORY_WINDOW_DAYS", 30)  # 0 = all history

    # Idle eviction
    idle_seconds: float = _getenv_float("TRACKING_IDLE_SECONDS", 600)
    sweep_interval_seconds: float = _getenv_float("SWEEP_INTERVAL_SECONDS", 60)

    # Any non-command chat message enables tracking
    auto_enable_tracking: bool = _getenv_bool("AUTO_ENABLE_TRACKING", True)

    # Circuit breaker around the zone history lookup
    cb_failure_threshold: int = _getenv_int("ZONE_CB_FAILURES", 3)
    cb_recovery_timeout_sec: float = _getenv_float("ZONE_CB_TIMEOUT_SEC", 60)

    def __post_init__(self):
        if self.zone_radius_m <= 0:
            raise ValueError("DANGER_ZONE_RADIUS_M must be > 0")
        if self.dynamic_radius_m <= 0:
            raise ValueError("DYNAMIC_ZONE_RADIUS_M must be > 0")
        if self.cooldown_seconds < 0:
            raise ValueError("ALERT_COOLDOWN_SECONDS must be >= 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("SWEEP_INTERVAL_SECONDS must be > 0")
        if self.history_window_days < 0:
            raise ValueError("ZONE_HISTORY_WINDOW_DAYS must be >= 0")


@dataclass(frozen=True)
class ReportConfig:
    """Field report storage, packaging and delivery."""
    storage_root: str = os.getenv("REPORT_STORAGE_ROOT", "data/reports")
    archive_root: str = os.getenv("REPORT_ARCHIVE_ROOT", "data/archives")
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")

    delivery_webhook_url: str = os.getenv("DELIVERY_WEBHOOK_URL", "")
    delivery_webhook_timeout: float = _getenv_float("DELIVERY_WEBHOOK_TIMEOUT", 10)

    # Abandoned sessions are kept until completion unless this is on
    session_idle_eviction: bool = _getenv_bool("REPORT_SESSION_IDLE_EVICTION")
    session_idle_seconds: float = _getenv_float("REPORT_SESSION_IDLE_SECONDS", 1800)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""
    url: str = os.getenv("DATABASE_URL", "")
    pool_min_size: int = _getenv_int("DB_POOL_MIN_SIZE", 1)
    pool_max_size: int = _getenv_int("DB_POOL_MAX_SIZE", 5)

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class ApplicationConfig:
    """Main application configuration."""
    env: str = os.getenv("ENV", "development")
    port: int = _getenv_int("PORT", 10000)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    # JSON logs; defaults on in production
    structured_logging: bool = _getenv_bool(
        "STRUCTURED_LOGGING", os.getenv("ENV", "development").lower() == "production")


@dataclass(frozen=True)
class Config:
    """Master configuration object."""
    line: LineConfig = field(default_factory=LineConfig)
    geofence: GeofenceConfig = field(default_factory=GeofenceConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    app: ApplicationConfig = field(default_factory=ApplicationConfig)

    def validate(self, require_credentials: bool = False):
        """Validate the complete configuration.

        Credentials are only demanded when the server actually starts;
        importing the modules (tests, scripts) must not need them.
        """
        if self.geofence.dynamic_zones_enabled and not self.database.is_configured:
            raise ValueError("DATABASE_URL must be set when DYNAMIC_ZONES_ENABLED=true")
        if require_credentials and not self.line.is_configured:
            raise ValueError("Missing LINE_CHANNEL_ACCESS_TOKEN / LINE_CHANNEL_SECRET")

        self.geofence.__post_init__()


# Global config instance
CONFIG = Config()
