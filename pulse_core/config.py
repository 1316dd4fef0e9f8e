from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Any, Optional, List, Literal
import json
import logging
from dotenv import load_dotenv

from .exceptions import ConfigurationError

# Explicitly load .env file to ensure environment variables are available
load_dotenv()

logger = logging.getLogger(__name__)

# Cache lifetime tiers (seconds). Casualty trackers update several times a day,
# agency datasets hourly at best, economic indicators daily or slower.
TTL_TIERS: Dict[str, int] = {
    "realtime": 5 * 60,
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
}


class RateLimitPolicy(BaseModel):
    """Per-source admission ceilings and failure backoff parameters"""
    model_config = ConfigDict(frozen=True)

    max_per_minute: int = Field(gt=0)
    max_per_hour: int = Field(gt=0)
    max_concurrent: int = Field(gt=0)
    base_backoff_s: float = Field(default=1.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_s: float = Field(default=60.0, gt=0)


class SourceDescriptor(BaseModel):
    """Static description of one upstream source.

    Only ``enabled`` may change after startup, and only through the
    SourceRegistry (operator toggle or auto-disable).
    """
    id: str
    name: str
    base_url: str
    enabled: bool = True
    priority: int = Field(ge=1)
    cache_ttl_s: float = Field(gt=0)
    max_retries: int = Field(default=2, ge=0)
    rate_limit: RateLimitPolicy


DEFAULT_SOURCES: Dict[str, Dict[str, Any]] = {
    "tech4palestine": {
        "name": "Tech for Palestine",
        "base_url": "https://data.techforpalestine.org/api",
        "priority": 1,
        "cache_ttl_s": TTL_TIERS["realtime"],
        "max_retries": 3,
        "rate_limit": {"max_per_minute": 60, "max_per_hour": 1000, "max_concurrent": 5,
                       "base_backoff_s": 1.0, "backoff_multiplier": 2.0, "max_backoff_s": 60.0},
    },
    "goodshepherd": {
        "name": "Good Shepherd Collective",
        "base_url": "https://goodshepherdcollective.org/data",
        "priority": 2,
        "cache_ttl_s": TTL_TIERS["hourly"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 30, "max_per_hour": 500, "max_concurrent": 3,
                       "base_backoff_s": 2.0, "backoff_multiplier": 2.0, "max_backoff_s": 120.0},
    },
    "un_ocha": {
        "name": "UN OCHA Humanitarian Data Exchange",
        "base_url": "https://data.humdata.org",
        "priority": 2,
        "cache_ttl_s": TTL_TIERS["hourly"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 20, "max_per_hour": 300, "max_concurrent": 2,
                       "base_backoff_s": 3.0, "backoff_multiplier": 2.0, "max_backoff_s": 180.0},
    },
    "world_bank": {
        "name": "World Bank Open Data",
        "base_url": "https://api.worldbank.org/v2",
        "priority": 3,
        "cache_ttl_s": TTL_TIERS["daily"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 30, "max_per_hour": 500, "max_concurrent": 3,
                       "base_backoff_s": 2.0, "backoff_multiplier": 2.0, "max_backoff_s": 120.0},
    },
    "wfp": {
        "name": "World Food Programme price monitoring",
        "base_url": "https://data.humdata.org",
        "priority": 4,
        "cache_ttl_s": TTL_TIERS["daily"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 20, "max_per_hour": 300, "max_concurrent": 2,
                       "base_backoff_s": 3.0, "backoff_multiplier": 2.0, "max_backoff_s": 180.0},
    },
    "btselem": {
        "name": "B'Tselem statistics",
        "base_url": "https://statistics.btselem.org",
        "enabled": False,
        "priority": 7,
        "cache_ttl_s": TTL_TIERS["hourly"],
        "max_retries": 1,
        "rate_limit": {"max_per_minute": 10, "max_per_hour": 100, "max_concurrent": 1,
                       "base_backoff_s": 5.0, "backoff_multiplier": 2.0, "max_backoff_s": 300.0},
    },
    "who": {
        "name": "World Health Organization",
        "base_url": "https://ghoapi.azureedge.net/api",
        "enabled": False,
        "priority": 4,
        "cache_ttl_s": TTL_TIERS["daily"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 20, "max_per_hour": 300, "max_concurrent": 2},
    },
    "unrwa": {
        "name": "UNRWA situation reports",
        "base_url": "https://www.unrwa.org",
        "enabled": False,
        "priority": 5,
        "cache_ttl_s": TTL_TIERS["daily"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 20, "max_per_hour": 300, "max_concurrent": 2},
    },
    "pcbs": {
        "name": "Palestinian Central Bureau of Statistics",
        "base_url": "https://www.pcbs.gov.ps",
        "enabled": False,
        "priority": 6,
        "cache_ttl_s": TTL_TIERS["daily"],
        "max_retries": 2,
        "rate_limit": {"max_per_minute": 15, "max_per_hour": 200, "max_concurrent": 2,
                       "base_backoff_s": 4.0, "backoff_multiplier": 2.0, "max_backoff_s": 240.0},
    },
}


class QualityWeights(BaseModel):
    """Relative weights of the three quality components; normalised on use"""
    reliability: float = Field(default=0.5, ge=0)
    recency: float = Field(default=0.2, ge=0)
    completeness: float = Field(default=0.3, ge=0)
    recency_horizon_s: float = Field(default=7 * 24 * 60 * 60, gt=0)

    def normalised(self) -> Dict[str, float]:
        total = self.reliability + self.recency + self.completeness
        if total <= 0:
            return {"reliability": 1 / 3, "recency": 1 / 3, "completeness": 1 / 3}
        return {
            "reliability": self.reliability / total,
            "recency": self.recency / total,
            "completeness": self.completeness / total,
        }


class PerformanceThresholds(BaseModel):
    max_avg_ms: float = 5000.0
    max_p95_ms: float = 10000.0
    min_success_rate: float = 0.95
    degradation_factor: float = 2.0
    window_s: float = 3600.0
    degradation_window_s: float = 300.0
    min_samples: int = 5
    retention_s: float = 24 * 60 * 60
    max_samples: int = 10000


class Settings(BaseSettings):
    APP_ENV: Literal["production", "development"] = Field(
        default="development",
        description="Application environment: production enables fail-fast checks"
    )
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    LOG_FORMAT: Literal["json", "text", ""] = Field(default="", description="Force log format; empty auto-detects")

    # Network
    HTTP_TIMEOUT_SECONDS: float = Field(default=12.0, gt=0, description="Hard timeout for every outbound call")
    USER_AGENT: str = Field(default="pulse-data-core/0.1", description="User-Agent sent to upstream sources")

    # Rate limiting and retries
    MAX_RATE_LIMIT_WAIT_SECONDS: float = Field(default=30.0, ge=0, description="Longest admission wait before failing fast")
    RATE_LIMIT_QUEUE_LIMIT: int = Field(default=50, gt=0, description="Queued requests per source before failing fast")
    RETRY_JITTER_RATIO: float = Field(default=0.1, ge=0, le=1, description="Random extra fraction added to retry delays")

    # Refresh scheduling
    AUTO_REFRESH_ENABLED: bool = Field(default=True, description="Start the periodic refresh timer on startup")
    REFRESH_INTERVAL_SECONDS: float = Field(default=300.0, gt=0, description="Periodic refresh interval")
    REFRESH_ON_FOCUS: bool = Field(default=True, description="Refresh when a client reports focus")
    REFRESH_ON_RECONNECT: bool = Field(default=True, description="Refresh when connectivity returns")
    REFRESH_ON_STARTUP: bool = Field(default=True, description="Run one refresh as soon as the service starts")

    # Persistence
    STORE_BACKEND: Literal["memory", "redis"] = Field(default="memory", description="Blob store backend")
    REDIS_URL: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    STORE_KEY_PREFIX: str = Field(default="pulse", description="Namespace for persisted keys")
    SNAPSHOT_HISTORY_LIMIT: int = Field(default=5, ge=1, description="Snapshot versions kept in the store")
    CACHE_MAX_ENTRIES: int = Field(default=512, gt=0, description="Maximum in-memory response cache entries")

    # Source health
    AUTO_DISABLE_AFTER_FAILURES: int = Field(default=0, ge=0, description="Disable a source after N consecutive failed fetches (0 = never)")
    SOURCE_OVERRIDES: str = Field(default="", description="JSON object patching source descriptors by id")

    # Data quality
    QUALITY_RELIABILITY_WEIGHT: float = Field(default=0.5, ge=0)
    QUALITY_RECENCY_WEIGHT: float = Field(default=0.2, ge=0)
    QUALITY_COMPLETENESS_WEIGHT: float = Field(default=0.3, ge=0)
    QUALITY_RECENCY_HORIZON_SECONDS: float = Field(default=7 * 24 * 60 * 60, gt=0)

    # Performance tracking
    PERF_MAX_AVG_MS: float = Field(default=5000.0, gt=0)
    PERF_MAX_P95_MS: float = Field(default=10000.0, gt=0)
    PERF_MIN_SUCCESS_RATE: float = Field(default=0.95, ge=0, le=1)
    PERF_DEGRADATION_FACTOR: float = Field(default=2.0, gt=1)
    PERF_WINDOW_SECONDS: float = Field(default=3600.0, gt=0, description="Rolling window for threshold alerts")
    PERF_DEGRADATION_WINDOW_SECONDS: float = Field(default=300.0, gt=0)
    PERF_MIN_SAMPLES: int = Field(default=5, ge=1)
    PERF_RETENTION_SECONDS: float = Field(default=24 * 60 * 60, gt=0)
    PERF_MAX_SAMPLES: int = Field(default=10000, gt=0)

    # Server settings
    HOST: str = Field(default="0.0.0.0", description="Server host")
    PORT: int = Field(default=8002, description="Port for the Uvicorn server")
    CORS_ORIGINS: str = Field(default="http://localhost:5173,http://localhost:3000", description="Comma-separated list of allowed CORS origins")
    MANUAL_REFRESH_RATE_LIMIT: str = Field(default="6/minute", description="slowapi limit for POST /refresh")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra="ignore"
    )

    @field_validator('AUTO_REFRESH_ENABLED', 'REFRESH_ON_FOCUS', 'REFRESH_ON_RECONNECT',
                     'REFRESH_ON_STARTUP', mode='before')
    @classmethod
    def parse_boolean(cls, v):
        """Handle string boolean values from environment variables."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ('true', '1', 'yes', 'on', 't', 'y')
        return bool(v)

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def quality_weights(self) -> QualityWeights:
        return QualityWeights(
            reliability=self.QUALITY_RELIABILITY_WEIGHT,
            recency=self.QUALITY_RECENCY_WEIGHT,
            completeness=self.QUALITY_COMPLETENESS_WEIGHT,
            recency_horizon_s=self.QUALITY_RECENCY_HORIZON_SECONDS,
        )

    @property
    def performance_thresholds(self) -> PerformanceThresholds:
        return PerformanceThresholds(
            max_avg_ms=self.PERF_MAX_AVG_MS,
            max_p95_ms=self.PERF_MAX_P95_MS,
            min_success_rate=self.PERF_MIN_SUCCESS_RATE,
            degradation_factor=self.PERF_DEGRADATION_FACTOR,
            window_s=self.PERF_WINDOW_SECONDS,
            degradation_window_s=self.PERF_DEGRADATION_WINDOW_SECONDS,
            min_samples=self.PERF_MIN_SAMPLES,
            retention_s=self.PERF_RETENTION_SECONDS,
            max_samples=self.PERF_MAX_SAMPLES,
        )


def build_source_descriptors(settings: Settings) -> Dict[str, SourceDescriptor]:
    """Build the source registry from the static defaults plus SOURCE_OVERRIDES.

    Overrides are a JSON object keyed by source id; nested ``rate_limit``
    values are merged field by field.
    """
    raw: Dict[str, Dict[str, Any]] = {sid: dict(conf) for sid, conf in DEFAULT_SOURCES.items()}

    overrides_text = settings.SOURCE_OVERRIDES.strip()
    if overrides_text:
        try:
            overrides = json.loads(overrides_text)
        except json.JSONDecodeError as e:
            raise ConfigurationError("SOURCE_OVERRIDES", f"invalid JSON: {e}") from e
        if not isinstance(overrides, dict):
            raise ConfigurationError("SOURCE_OVERRIDES", "must be a JSON object keyed by source id")

        for source_id, patch in overrides.items():
            if source_id not in raw:
                raise ConfigurationError("SOURCE_OVERRIDES", f"unknown source '{source_id}'", source_id=source_id)
            if not isinstance(patch, dict):
                raise ConfigurationError("SOURCE_OVERRIDES", f"override for '{source_id}' must be an object", source_id=source_id)
            merged = dict(raw[source_id])
            for key, value in patch.items():
                if key == "rate_limit" and isinstance(value, dict):
                    merged["rate_limit"] = {**merged.get("rate_limit", {}), **value}
                else:
                    merged[key] = value
            raw[source_id] = merged

    descriptors: Dict[str, SourceDescriptor] = {}
    for source_id, conf in raw.items():
        try:
            descriptors[source_id] = SourceDescriptor(id=source_id, **conf)
        except ValidationError as e:
            raise ConfigurationError(f"sources.{source_id}", str(e), source_id=source_id) from e
    return descriptors


def validate_environment_configuration(settings: Settings) -> None:
    """Validate settings that pydantic cannot check field by field."""
    warnings = []

    if settings.STORE_BACKEND == "memory" and settings.APP_ENV == "production":
        warnings.append("STORE_BACKEND=memory in production: snapshots will not survive restarts")

    if settings.MAX_RATE_LIMIT_WAIT_SECONDS > settings.REFRESH_INTERVAL_SECONDS:
        warnings.append(
            f"MAX_RATE_LIMIT_WAIT_SECONDS ({settings.MAX_RATE_LIMIT_WAIT_SECONDS}) exceeds "
            f"REFRESH_INTERVAL_SECONDS ({settings.REFRESH_INTERVAL_SECONDS})"
        )

    weights = settings.quality_weights
    if weights.reliability + weights.recency + weights.completeness <= 0:
        raise ConfigurationError("QUALITY_*_WEIGHT", "at least one quality weight must be positive")

    descriptors = build_source_descriptors(settings)
    enabled = [sid for sid, desc in descriptors.items() if desc.enabled]
    if not enabled:
        warnings.append("No sources enabled; every refresh will publish an unavailable snapshot")

    for warning in warnings:
        logger.warning(warning)

    logger.info(
        "Configuration summary",
        extra={
            "event": "config_validated",
            "app_env": settings.APP_ENV,
            "store_backend": settings.STORE_BACKEND,
            "enabled_sources": enabled,
            "refresh_interval_s": settings.REFRESH_INTERVAL_SECONDS,
            "warnings": len(warnings),
        }
    )


def get_settings() -> Settings:
    """Load settings and validate them, raising ConfigurationError on problems."""
    try:
        settings = Settings()
    except ValidationError as e:
        raise ConfigurationError("settings", str(e)) from e

    validate_environment_configuration(settings)
    return settings
