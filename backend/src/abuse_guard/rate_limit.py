"""
Rate limiting engine and middleware.

This module provides the admission-control engine and a Starlette/FastAPI middleware
that applies it to incoming requests.

Design highlights:
- Per (client key, category) RateLimitRecord held in an injectable RecordStore.
- Each check runs under a lock shard chosen by client key, so the read, the
  transition and the write of one client's record are atomic with respect to each
  other while different clients proceed in parallel.
- The state machine itself lives in admission.py as pure functions.
- The engine never performs I/O. Transitions into BLOCKED/PENALIZED attach a
  SecurityEventInput to the decision for the caller to persist.
- Store failures fail open: the request is allowed, the decision is flagged degraded
  and a CRITICAL notification is attached.
- Per-category whitelists and blacklists are consulted before any record is touched.
  They are seeded from the policies and can be changed at runtime by operators.
- Every check scores the client's recent behaviour; scores above the suspicion
  threshold flag the record and tighten adaptive limits.

Note:
- InMemoryRecordStore is only correct for a single process. Multi-instance deployments
  need an external atomic store behind the RecordStore interface, or must accept
  approximate enforcement (each instance enforces its own counters).
"""

from __future__ import annotations

import asyncio
import threading
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .admission import advance, new_record
from .fingerprint import client_address, redact_client_key
from .models import (
    AdmissionDecision,
    AdmissionState,
    DenyReason,
    RateLimitPolicy,
    RateLimitRecord,
    RequestContext,
    SecuritySeverity,
)
from .security_events import rate_limit_exceeded_event, suspicious_activity_event
from .threat_intel import SUSPICION_THRESHOLD, behaviour_score

if TYPE_CHECKING:
    from .analytics import AnalyticsAggregator
    from .services import AbuseProtectionService

logger = structlog.get_logger(__name__)

RecordKey = Tuple[str, str]

DEFAULT_SHARDS = 64
EVICTION_TARGET_RATIO = 0.8


class RecordStore(ABC):
    """Interface for the (client key, category) -> RateLimitRecord map."""

    @abstractmethod
    def get(self, key: RecordKey) -> Optional[RateLimitRecord]:
        """Return the record for key, or None."""

    @abstractmethod
    def set(self, key: RecordKey, record: RateLimitRecord) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def delete(self, key: RecordKey) -> bool:
        """Remove one record; True if it existed."""

    @abstractmethod
    def delete_client(self, client_key: str) -> int:
        """Remove every category record of a client; returns how many were removed."""

    @abstractmethod
    def items(self) -> List[Tuple[RecordKey, RateLimitRecord]]:
        """Snapshot of all entries."""

    @abstractmethod
    def size(self) -> int:
        """Number of tracked records."""


class InMemoryRecordStore(RecordStore):
    """Dictionary backed store for single-process deployments."""

    def __init__(self) -> None:
        self._records: Dict[RecordKey, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: RecordKey) -> Optional[RateLimitRecord]:
        return self._records.get(key)

    def set(self, key: RecordKey, record: RateLimitRecord) -> None:
        with self._lock:
            self._records[key] = record

    def delete(self, key: RecordKey) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def delete_client(self, client_key: str) -> int:
        with self._lock:
            keys = [k for k in self._records if k[0] == client_key]
            for k in keys:
                del self._records[k]
            return len(keys)

    def items(self) -> List[Tuple[RecordKey, RateLimitRecord]]:
        with self._lock:
            return list(self._records.items())

    def size(self) -> int:
        return len(self._records)


class RateLimitEngine:
    """
    Core engine for admission control.

    Responsibilities:
    - Resolve the policy for an endpoint category.
    - Apply the admission state machine to the client's record atomically.
    - Bound memory through idle eviction and a record cap.
    - Expose read-only copies of records for operators.
    """

    def __init__(
        self,
        policies: Mapping[str, RateLimitPolicy],
        store: Optional[RecordStore] = None,
        default_category: str = "api",
        idle_ttl_seconds: float = 86400,
        max_records: int = 10000,
        clock: Callable[[], float] = time.time,
        shards: int = DEFAULT_SHARDS,
    ) -> None:
        if not policies:
            raise ValueError("at least one rate limit policy is required")
        self._policies: Dict[str, RateLimitPolicy] = dict(policies)
        self._default_category = default_category if default_category in self._policies else next(iter(self._policies))
        self._store = store if store is not None else InMemoryRecordStore()
        self._idle_ttl = idle_ttl_seconds
        self._max_records = max_records
        self._clock = clock
        self._locks = [threading.Lock() for _ in range(max(1, shards))]
        self._stats_lock = threading.Lock()
        self._load = 0.0
        self._lists_lock = threading.Lock()
        self._whitelist: Dict[str, Set[str]] = {c: set(p.whitelist) for c, p in self._policies.items()}
        self._blacklist: Dict[str, Set[str]] = {c: set(p.blacklist) for c, p in self._policies.items()}
        self.total_checks = 0
        self.denied_checks = 0
        self.suspicious_activities = 0
        # Checks by UTC hour of day and by weekday, Sunday first
        self.hourly_checks = [0] * 24
        self.daily_checks = [0] * 7

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def policies(self) -> Dict[str, RateLimitPolicy]:
        return dict(self._policies)

    @property
    def idle_ttl_seconds(self) -> float:
        return self._idle_ttl

    @property
    def system_load(self) -> float:
        return self._load

    def now(self) -> float:
        return self._clock()

    def _lock_for(self, client_key: str) -> threading.Lock:
        return self._locks[zlib.crc32(client_key.encode("utf-8")) % len(self._locks)]

    # PUBLIC_INTERFACE
    def policy_for(self, category: str) -> RateLimitPolicy:
        """Policy for a category; unknown categories use the default category's policy."""
        policy = self._policies.get(category)
        if policy is None:
            base = self._policies[self._default_category]
            policy = replace(base, category=category)
        return policy

    # PUBLIC_INTERFACE
    def set_system_load(self, load: float) -> None:
        """Load factor (0..1) consulted by adaptive policies."""
        self._load = max(0.0, min(1.0, float(load)))

    def _count(self, allowed: bool, now: float) -> None:
        moment = datetime.fromtimestamp(now, timezone.utc)
        with self._stats_lock:
            self.total_checks += 1
            if not allowed:
                self.denied_checks += 1
            self.hourly_checks[moment.hour] += 1
            self.daily_checks[(moment.weekday() + 1) % 7] += 1

    def trends(self) -> Dict[str, List[int]]:
        """Admission checks by UTC hour of day and by weekday (Sunday first)."""
        with self._stats_lock:
            return {"hourly": list(self.hourly_checks), "daily": list(self.daily_checks)}

    # PUBLIC_INTERFACE
    def allow_client(self, client_key: str, category: str) -> None:
        """Whitelist client_key for category; removes it from that blacklist."""
        with self._lists_lock:
            self._blacklist.get(category, set()).discard(client_key)
            self._whitelist.setdefault(category, set()).add(client_key)
        logger.info("rate_limit.client_whitelisted", client=redact_client_key(client_key), category=category)

    # PUBLIC_INTERFACE
    def deny_client(self, client_key: str, category: str) -> None:
        """Blacklist client_key for category; removes it from that whitelist."""
        with self._lists_lock:
            self._whitelist.get(category, set()).discard(client_key)
            self._blacklist.setdefault(category, set()).add(client_key)
        logger.warning("rate_limit.client_blacklisted", client=redact_client_key(client_key), category=category)

    # PUBLIC_INTERFACE
    def unlist_client(self, client_key: str, category: Optional[str] = None) -> int:
        """Drop client_key from the lists of one category, or of all; returns entries removed."""
        removed = 0
        with self._lists_lock:
            for lists in (self._whitelist, self._blacklist):
                for name, members in lists.items():
                    if category is not None and name != category:
                        continue
                    if client_key in members:
                        members.discard(client_key)
                        removed += 1
        logger.info(
            "rate_limit.client_unlisted",
            client=redact_client_key(client_key),
            category=category,
            removed=removed,
        )
        return removed

    def list_status(self, client_key: str, category: str) -> Optional[str]:
        """Which list, if any, holds client_key for category."""
        with self._lists_lock:
            if client_key in self._whitelist.get(category, ()):
                return "whitelist"
            if client_key in self._blacklist.get(category, ()):
                return "blacklist"
        return None

    # PUBLIC_INTERFACE
    def check_admission(
        self,
        client_key: str,
        category: str,
        context: Optional[RequestContext] = None,
    ) -> AdmissionDecision:
        """
        Decide whether one request from client_key to category is admitted.

        Never raises. The returned decision may carry a notification describing a
        transition into BLOCKED or PENALIZED, or a fail-open event.
        """
        ctx = context or RequestContext()
        policy = self.policy_for(category)
        key = (client_key, category)
        now = self.now()

        listed = self.list_status(client_key, category)
        if listed == "whitelist":
            self._count(True, now)
            return AdmissionDecision(
                allowed=True,
                remaining=policy.max_requests,
                state=AdmissionState.OK,
                count=0,
                limit=policy.max_requests,
                whitelisted=True,
            )
        if listed == "blacklist":
            self._count(False, now)
            logger.debug("rate_limit.blacklisted", client=redact_client_key(client_key), category=category)
            return AdmissionDecision(
                allowed=False,
                remaining=0,
                state=AdmissionState.BLOCKED,
                count=0,
                limit=policy.max_requests,
                retry_after_seconds=policy.blacklist_block_seconds,
                reason=DenyReason.BLACKLISTED,
            )

        try:
            with self._lock_for(client_key):
                record = self._store.get(key)
                is_new = record is None
                if is_new:
                    record = new_record(client_key, category, now)
                risk = behaviour_score(record.history, now, ctx.user_agent, record.violations)
                transition = advance(record, policy, now, self._load, risk)
                flagged = risk > SUSPICION_THRESHOLD
                if flagged:
                    transition.record.suspicious = True
                self._store.set(key, transition.record)
        except Exception as exc:
            return self._fail_open(client_key, category, policy, ctx, exc, now)

        if is_new:
            # Eviction trouble must not turn a real decision into a degraded one
            try:
                self._enforce_capacity(now)
            except Exception as exc:
                logger.error("rate_limit.capacity_eviction_failed", error=str(exc) or exc.__class__.__name__)

        decision = transition.decision
        self._count(decision.allowed, now)

        if flagged:
            with self._stats_lock:
                self.suspicious_activities += 1
            logger.info(
                "rate_limit.suspicious_client",
                client=redact_client_key(client_key),
                category=category,
                risk=round(risk, 2),
            )

        if transition.entered in (AdmissionState.BLOCKED, AdmissionState.PENALIZED):
            rec = transition.record
            logger.warning(
                "rate_limit.blocked" if transition.entered == AdmissionState.BLOCKED else "rate_limit.penalized",
                client=redact_client_key(client_key),
                category=category,
                count=rec.count,
                violations=rec.violations,
                retry_after=decision.retry_after_seconds,
            )
            decision.notification = rate_limit_exceeded_event(
                client_key,
                ctx.path,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                method=ctx.method,
                retry_after=decision.retry_after_seconds,
                reason=decision.reason.value if decision.reason else None,
                category=category,
                severity=(
                    SecuritySeverity.HIGH
                    if transition.entered == AdmissionState.PENALIZED
                    else SecuritySeverity.MEDIUM
                ),
            )
        return decision

    def _fail_open(
        self,
        client_key: str,
        category: str,
        policy: RateLimitPolicy,
        ctx: RequestContext,
        exc: Exception,
        now: float,
    ) -> AdmissionDecision:
        logger.critical(
            "rate_limit.store_failure",
            client=redact_client_key(client_key),
            category=category,
            error=str(exc) or exc.__class__.__name__,
        )
        self._count(True, now)
        return AdmissionDecision(
            allowed=True,
            remaining=0,
            state=AdmissionState.OK,
            count=0,
            limit=policy.max_requests,
            degraded=True,
            notification=suspicious_activity_event(
                client_key,
                "Rate limiter store unavailable; request admitted without enforcement",
                severity=SecuritySeverity.CRITICAL,
                details={"category": category, "error": exc.__class__.__name__},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                path=ctx.path,
                method=ctx.method,
            ),
        )

    # PUBLIC_INTERFACE
    def get_client_info(self, client_key: str) -> Dict[str, RateLimitRecord]:
        """Copies of every category record held for client_key."""
        return {
            category: replace(record, history=list(record.history))
            for (key, category), record in self._store.items()
            if key == client_key
        }

    # PUBLIC_INTERFACE
    def clear_client(self, client_key: str) -> int:
        """Forget all state for client_key; idempotent."""
        with self._lock_for(client_key):
            removed = self._store.delete_client(client_key)
        logger.info("rate_limit.client_cleared", client=redact_client_key(client_key), records=removed)
        return removed

    def _is_idle(self, record: RateLimitRecord, now: float) -> bool:
        if record.penalty_until is not None and record.penalty_until > now:
            return False
        return now - record.last_seen > self._idle_ttl

    # PUBLIC_INTERFACE
    def evict_idle(self, now: Optional[float] = None) -> int:
        """
        Drop records not seen within the idle TTL. Records under an active penalty are kept.
        A client evicted here and seen again starts from a fresh OK record.
        """
        now = self.now() if now is None else now
        removed = 0
        for key, record in self._store.items():
            if not self._is_idle(record, now):
                continue
            with self._lock_for(key[0]):
                current = self._store.get(key)
                if current is not None and self._is_idle(current, now):
                    self._store.delete(key)
                    removed += 1
        if removed:
            logger.debug("rate_limit.evicted_idle", removed=removed, remaining=self._store.size())
        return removed

    def _enforce_capacity(self, now: float) -> None:
        if self._store.size() <= self._max_records:
            return
        self.evict_idle(now)
        overflow = self._store.size() - int(self._max_records * EVICTION_TARGET_RATIO)
        if overflow <= 0:
            return
        candidates = sorted(
            (
                (record.last_seen, key)
                for key, record in self._store.items()
                if record.penalty_until is None or record.penalty_until <= now
            ),
        )
        for _, key in candidates[:overflow]:
            with self._lock_for(key[0]):
                self._store.delete(key)
        logger.warning("rate_limit.capacity_eviction", removed=min(overflow, len(candidates)))

    def iter_records(self) -> Iterator[Tuple[RecordKey, RateLimitRecord]]:
        """Read-only iteration for analytics; yields copies."""
        for key, record in self._store.items():
            yield key, replace(record, history=list(record.history))

    # PUBLIC_INTERFACE
    async def run_eviction_loop(
        self,
        interval_seconds: float,
        aggregator: Optional["AnalyticsAggregator"] = None,
    ) -> None:
        """Periodically evict idle records and refresh the load factor until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.evict_idle()
                if aggregator is not None:
                    self.set_system_load(aggregator.snapshot().load_factor)
            except Exception as exc:
                logger.error("rate_limit.eviction_failed", error=str(exc))


def _retry_message(reason: Optional[DenyReason]) -> str:
    if reason == DenyReason.PENALTY_BLOCK:
        return "Temporarily blocked due to repeated violations. Please try again later."
    if reason == DenyReason.BURST_PROTECTION:
        return "Too many requests in a short period. Please slow down."
    if reason == DenyReason.BLACKLISTED:
        return "Access from this client is restricted."
    return "Too many requests. Please try again later."


class AbuseGuardMiddleware(BaseHTTPMiddleware):
    """
    Starlette middleware applying admission control to categorised routes.

    PUBLIC_INTERFACE
    """

    def __init__(
        self,
        app,
        service: "AbuseProtectionService",
        route_categories: Mapping[str, str],
        trusted_proxy_hops: int = 0,
    ) -> None:
        """
        Initialize the middleware with the protection service and a path prefix to
        category map. Longer prefixes win. Forwarding headers are only honoured when
        trusted_proxy_hops is positive.
        """
        super().__init__(app)
        self._service = service
        self._trusted_proxy_hops = trusted_proxy_hops
        self._routes = sorted(route_categories.items(), key=lambda item: len(item[0]), reverse=True)

    def category_for(self, path: str) -> Optional[str]:
        for prefix, category in self._routes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return category
        return None

    async def dispatch(self, request: Request, call_next) -> Response:
        """
        Intercept a request and enforce the category limit.

        Returns a generic 429 JSONResponse when the request is denied; otherwise
        forwards to the next handler. No thresholds or client keys are exposed.
        """
        category = self.category_for(request.url.path)
        if category is None or request.method == "OPTIONS":
            return await call_next(request)

        address = client_address(
            request.headers,
            request.client.host if request.client else None,
            trusted_hops=self._trusted_proxy_hops,
        )
        decision = await self._service.protect(
            address,
            request.headers.get("user-agent"),
            category,
            path=request.url.path,
            method=request.method,
        )
        if decision.allowed:
            return await call_next(request)

        headers = {}
        if decision.retry_after_seconds:
            headers["Retry-After"] = str(decision.retry_after_seconds)
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": {
                    "code": "RATE_LIMITED",
                    "message": _retry_message(decision.reason),
                    "retryAfter": decision.retry_after_seconds,
                },
            },
            headers=headers,
        )
