from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import RateLimitPolicy

DEFAULT_CATEGORY = "api"


class PolicySettings(BaseModel):
    """Per-category rate limit thresholds as read from configuration."""

    max_requests: int = Field(ge=1)
    window_seconds: int = Field(ge=1)
    warn_at: int = Field(ge=1)
    escalation_threshold: int = Field(default=3, ge=1)
    escalation_factor: float = Field(default=10.0, gt=1)
    max_penalty_seconds: int = Field(default=86400, ge=1)
    adaptive: bool = False
    burst_window_seconds: Optional[int] = Field(default=None, ge=1)
    max_burst_requests: Optional[int] = Field(default=None, ge=1)
    whitelist: List[str] = Field(default_factory=list, description="Client keys never limited")
    blacklist: List[str] = Field(default_factory=list, description="Client keys always denied")
    blacklist_block_seconds: int = Field(default=86400, ge=1)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "PolicySettings":
        if self.warn_at > self.max_requests:
            raise ValueError("warn_at must not exceed max_requests")
        if self.max_penalty_seconds <= self.window_seconds:
            raise ValueError("max_penalty_seconds must exceed window_seconds")
        if (self.burst_window_seconds is None) != (self.max_burst_requests is None):
            raise ValueError("burst_window_seconds and max_burst_requests must be set together")
        if self.burst_window_seconds is not None and self.burst_window_seconds >= self.window_seconds:
            raise ValueError("burst_window_seconds must be shorter than window_seconds")
        return self

    def to_policy(self, category: str) -> RateLimitPolicy:
        values = self.model_dump()
        values["whitelist"] = frozenset(self.whitelist)
        values["blacklist"] = frozenset(self.blacklist)
        return RateLimitPolicy(category=category, **values)


def _default_policies() -> Dict[str, PolicySettings]:
    return {
        "contact-form": PolicySettings(
            max_requests=3, window_seconds=3600, warn_at=2,
            burst_window_seconds=10, max_burst_requests=2,
        ),
        "api": PolicySettings(
            max_requests=100, window_seconds=900, warn_at=80,
            escalation_threshold=5, escalation_factor=4, adaptive=True,
            burst_window_seconds=5, max_burst_requests=20,
        ),
        "auth": PolicySettings(
            max_requests=5, window_seconds=900, warn_at=3,
            burst_window_seconds=30, max_burst_requests=3,
        ),
        "upload": PolicySettings(
            max_requests=10, window_seconds=3600, warn_at=8, escalation_factor=4,
            burst_window_seconds=60, max_burst_requests=3,
        ),
        "admin": PolicySettings(
            max_requests=60, window_seconds=60, warn_at=45,
            escalation_threshold=5, max_penalty_seconds=3600,
        ),
    }


def _default_routes() -> Dict[str, str]:
    return {
        "/contact": "contact-form",
        "/api/auth": "auth",
        "/api/upload": "upload",
        "/api/admin": "admin",
        "/api": "api",
    }


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False, extra="ignore", populate_by_name=True, env_file=".env"
    )

    app_name: str = Field(default="Abuse Guard", alias="APP_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    database_url: Optional[str] = Field(
        default=None,
        alias="DATABASE_URL",
        description="SQLAlchemy URL for the security event table; in-memory store when unset",
    )

    admin_api_token: Optional[str] = Field(default=None, alias="ADMIN_API_TOKEN")
    jwt_secret: Optional[str] = Field(default=None, alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    event_log_timeout_seconds: float = Field(default=2.0, gt=0, alias="EVENT_LOG_TIMEOUT_SECONDS")
    event_query_limit_cap: int = Field(default=100, ge=1, alias="EVENT_QUERY_LIMIT_CAP")

    idle_ttl_seconds: int = Field(default=86400, ge=1, alias="RATE_LIMIT_IDLE_TTL_SECONDS")
    max_tracked_records: int = Field(default=10000, ge=1, alias="RATE_LIMIT_MAX_RECORDS")
    eviction_interval_seconds: float = Field(default=300, gt=0, alias="RATE_LIMIT_EVICTION_INTERVAL_SECONDS")
    trusted_proxy_hops: int = Field(
        default=0,
        ge=0,
        alias="TRUSTED_PROXY_HOPS",
        description="Reverse proxies in front of the service; forwarding headers are ignored when 0",
    )

    rate_limit_policies: Dict[str, PolicySettings] = Field(
        default_factory=_default_policies, alias="RATE_LIMIT_POLICIES"
    )
    route_categories: Dict[str, str] = Field(
        default_factory=_default_routes, alias="RATE_LIMIT_ROUTE_CATEGORIES"
    )

    enable_prometheus_metrics: bool = Field(default=True, alias="ENABLE_PROMETHEUS_METRICS")

    def policies(self) -> Dict[str, RateLimitPolicy]:
        return {name: cfg.to_policy(name) for name, cfg in self.rate_limit_policies.items()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
