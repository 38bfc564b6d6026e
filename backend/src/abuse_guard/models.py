"""
Domain models for the Abuse Guard backend.

These are internal models representing core entities. They are not Pydantic models and
are intended for use within the rate limiting engine and the security event stores.

Note:
- Public interfaces are provided via Pydantic schemas in schemas.py.
- These models are lightweight dataclasses to keep logic separate from validation.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


HISTORY_HOUR = 3600


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecuritySeverity(str, Enum):
    """Severity levels for persisted security events."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    """Known kinds of noteworthy security conditions."""
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CSRF_VALIDATION_FAILED = "CSRF_VALIDATION_FAILED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    BOT_DETECTED = "BOT_DETECTED"
    XSS_ATTEMPT = "XSS_ATTEMPT"
    SQL_INJECTION_ATTEMPT = "SQL_INJECTION_ATTEMPT"
    INVALID_INPUT = "INVALID_INPUT"


class AdmissionState(str, Enum):
    """Per (client, category) admission state."""
    OK = "OK"
    WARNED = "WARNED"
    BLOCKED = "BLOCKED"
    PENALIZED = "PENALIZED"


class DenyReason(str, Enum):
    RATE_LIMIT = "rate_limit"
    PENALTY_BLOCK = "penalty_block"
    BURST_PROTECTION = "burst_protection"
    BLACKLISTED = "blacklisted"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Thresholds and durations applied to one endpoint category."""
    category: str
    max_requests: int
    window_seconds: int
    warn_at: int
    escalation_threshold: int = 3
    escalation_factor: float = 10.0
    max_penalty_seconds: int = 86400
    # Tighten max_requests when the system load factor or the client's risk rises
    adaptive: bool = False
    # Short secondary window; both set or neither
    burst_window_seconds: Optional[int] = None
    max_burst_requests: Optional[int] = None
    whitelist: FrozenSet[str] = frozenset()
    blacklist: FrozenSet[str] = frozenset()
    blacklist_block_seconds: int = 86400

    @property
    def burst_enabled(self) -> bool:
        return bool(self.burst_window_seconds and self.max_burst_requests)

    def effective_limit(self, load: float = 0.0, risk: float = 0.0) -> int:
        if not self.adaptive:
            return self.max_requests
        load = max(0.0, min(1.0, load))
        risk = max(0.0, min(1.0, risk))
        return max(1, int(self.max_requests * (1 - 0.5 * risk) * (1 - 0.3 * load)))

    def history_horizon(self) -> int:
        """Seconds of request timestamps a record must keep."""
        return max(self.window_seconds, self.burst_window_seconds or 0, HISTORY_HOUR)

    def penalty_seconds(self, violations: int) -> int:
        """Penalty length once violations reach the escalation threshold."""
        steps = max(1, violations - self.escalation_threshold + 1)
        return int(min(self.window_seconds * self.escalation_factor ** steps, self.max_penalty_seconds))


@dataclass
class RateLimitRecord:
    """Admission state for a single (client key, category) pair."""
    client_key: str
    category: str
    window_start: float
    last_seen: float
    count: int = 0
    violations: int = 0
    penalty_until: Optional[float] = None
    blocked_in_window: bool = False
    state: AdmissionState = AdmissionState.OK
    first_seen: Optional[float] = None
    # Timestamps of admitted requests within the policy history horizon
    history: List[float] = field(default_factory=list)
    suspicious: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["state"] = self.state.value
        return out


@dataclass
class SecurityEventInput:
    """Payload accepted by the security event stores."""
    type: SecurityEventType
    message: str
    severity: SecuritySeverity = SecuritySeverity.MEDIUM
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    client_id: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class SecurityEvent:
    """Represents a persisted security event."""
    id: str
    type: SecurityEventType
    severity: SecuritySeverity
    message: str
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None


@dataclass
class RequestContext:
    """Request attributes attached to notifications; never used for the decision."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None


@dataclass
class AdmissionDecision:
    """Outcome of a single admission check."""
    allowed: bool
    remaining: int
    state: AdmissionState
    count: int
    limit: int
    retry_after_seconds: Optional[int] = None
    reason: Optional[DenyReason] = None
    # True when the record store failed and the request was let through
    degraded: bool = False
    whitelisted: bool = False
    client_risk: float = 0.0
    # Event the caller should persist; the engine itself does no I/O
    notification: Optional[SecurityEventInput] = None

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to return to an end user."""
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "retryAfterSeconds": self.retry_after_seconds,
            "reason": self.reason.value if self.reason else None,
        }


@dataclass
class TopClient:
    client: str  # redacted key
    category: str
    requests: int
    blocked: bool


@dataclass
class AnalyticsSnapshot:
    """Point-in-time summary over the engine's records."""
    generated_at: float
    tracked_records: int
    active_clients: int
    blocked_clients: int
    state_counts: Dict[str, int]
    load_factor: float
    total_checks: int
    denied_checks: int
    avg_requests_per_client: float = 0.0
    suspicious_clients: int = 0
    suspicious_activities: int = 0
    top_clients: List[TopClient] = field(default_factory=list)
    # Admission checks by UTC hour of day (24) and weekday, Sunday first (7)
    trends: Dict[str, List[int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
