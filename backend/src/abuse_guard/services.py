"""
Abuse Protection Service.

Provides the flow request handlers use:
- Derives the anonymous client key from address and user agent.
- Asks the rate limiting engine for an admission decision.
- Persists the engine's notifications (rate limit trips, fail-open incidents) and bot
  signals through the security event logger, in the background.
- Scans submitted fields for attack payloads and records malicious input events.

Event writes are dispatched as detached tasks; the caller never waits on the audit
store.
"""

from __future__ import annotations

from typing import Mapping, Optional

import structlog

from .fingerprint import derive_client_key
from .models import AdmissionDecision, RequestContext, SecurityEventInput
from .rate_limit import RateLimitEngine
from .security_events import SecurityEventLogger, bot_detected_event, malicious_input_event
from .threat_intel import InputThreat, classify_input, detect_automation

logger = structlog.get_logger(__name__)


class AbuseProtectionService:
    """Coordinates identity, admission and audit for a single request."""

    def __init__(self, engine: RateLimitEngine, events: SecurityEventLogger) -> None:
        self._engine = engine
        self._events = events

    @property
    def engine(self) -> RateLimitEngine:
        return self._engine

    @property
    def events(self) -> SecurityEventLogger:
        return self._events

    def _emit(self, event: SecurityEventInput) -> None:
        self._events.dispatch(event)

    # PUBLIC_INTERFACE
    async def protect(
        self,
        address: Optional[str],
        user_agent: Optional[str],
        category: str,
        path: Optional[str] = None,
        method: Optional[str] = None,
        client_key: Optional[str] = None,
    ) -> AdmissionDecision:
        """
        Admission check for one request.

        Returns the engine's decision unchanged; side effects are limited to scheduling
        security event writes.
        """
        key = client_key or derive_client_key(address, user_agent)
        ctx = RequestContext(ip_address=address, user_agent=user_agent, path=path, method=method)
        decision = self._engine.check_admission(key, category, ctx)

        if decision.notification is not None:
            self._emit(decision.notification)

        # First request of a window is enough to flag automation once per window
        if decision.allowed and decision.count == 1:
            reason = detect_automation(user_agent)
            if reason:
                self._emit(
                    bot_detected_event(
                        key, path, reason, ip_address=address, user_agent=user_agent, method=method
                    )
                )
        return decision

    # PUBLIC_INTERFACE
    async def inspect_submission(
        self,
        fields: Mapping[str, Optional[str]],
        address: Optional[str],
        user_agent: Optional[str],
        path: Optional[str] = None,
        method: Optional[str] = "POST",
    ) -> Optional[InputThreat]:
        """Scan submitted fields; the first threat found is logged and returned."""
        for name, value in fields.items():
            threat = classify_input(value, field=name)
            if threat is None:
                continue
            key = derive_client_key(address, user_agent)
            logger.warning("protection.malicious_input", field=name, input_type=threat.input_type)
            self._emit(
                malicious_input_event(
                    key,
                    path,
                    threat.input_type,
                    captured_input=threat.sample,
                    ip_address=address,
                    user_agent=user_agent,
                    method=method,
                )
            )
            return threat
        return None
