"""
Security event logging.

SecurityEventLogger is the boundary between request handling and the security event
repository:
- Writes run on a worker thread and are bounded by a timeout.
- A failed or timed out write is logged and reported as None; it never raises into
  the caller, so audit logging cannot break the request path.
- dispatch() schedules a write as a detached task for fire-and-forget use.

The builder functions below fix the type/severity/details taxonomy for each kind of
event so callers do not repeat those decisions.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

import structlog

from .fingerprint import redact_client_key
from .models import (
    SecurityEvent,
    SecurityEventInput,
    SecurityEventType,
    SecuritySeverity,
)
from .storage import SecurityEventRepository

logger = structlog.get_logger(__name__)

MAX_CAPTURED_INPUT = 500
DEFAULT_QUERY_LIMIT = 100

_MALICIOUS_INPUT_TYPES = {
    "XSS": SecurityEventType.XSS_ATTEMPT,
    "SQL_INJECTION": SecurityEventType.SQL_INJECTION_ATTEMPT,
}


# PUBLIC_INTERFACE
def rate_limit_exceeded_event(
    client_id: str,
    path: Optional[str],
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    method: Optional[str] = "POST",
    retry_after: Optional[int] = None,
    reason: Optional[str] = None,
    category: Optional[str] = None,
    severity: SecuritySeverity = SecuritySeverity.MEDIUM,
) -> SecurityEventInput:
    """Event for a client crossing a rate limit or entering a penalty block."""
    return SecurityEventInput(
        type=SecurityEventType.RATE_LIMIT_EXCEEDED,
        severity=severity,
        message=f"Rate limit exceeded for {path or category or 'unknown path'}",
        details={"path": path, "category": category, "retryAfter": retry_after, "reason": reason},
        client_id=client_id,
        ip_address=ip_address,
        user_agent=user_agent,
        path=path,
        method=method,
    )


# PUBLIC_INTERFACE
def csrf_failure_event(
    client_id: str,
    path: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    method: Optional[str] = "POST",
) -> SecurityEventInput:
    return SecurityEventInput(
        type=SecurityEventType.CSRF_VALIDATION_FAILED,
        severity=SecuritySeverity.HIGH,
        message=f"CSRF validation failed for {path}",
        details={"path": path},
        client_id=client_id,
        ip_address=ip_address,
        user_agent=user_agent,
        path=path,
        method=method,
    )


# PUBLIC_INTERFACE
def suspicious_activity_event(
    client_id: Optional[str],
    message: str,
    *,
    severity: SecuritySeverity = SecuritySeverity.HIGH,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    path: Optional[str] = None,
    method: Optional[str] = None,
) -> SecurityEventInput:
    return SecurityEventInput(
        type=SecurityEventType.SUSPICIOUS_ACTIVITY,
        severity=severity,
        message=message,
        details=dict(details or {}),
        client_id=client_id,
        ip_address=ip_address,
        user_agent=user_agent,
        path=path,
        method=method,
    )


# PUBLIC_INTERFACE
def bot_detected_event(
    client_id: str,
    path: Optional[str],
    reason: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    method: Optional[str] = "POST",
) -> SecurityEventInput:
    return SecurityEventInput(
        type=SecurityEventType.BOT_DETECTED,
        severity=SecuritySeverity.MEDIUM,
        message=f"Bot detected: {reason}",
        details={"path": path, "reason": reason},
        client_id=client_id,
        ip_address=ip_address,
        user_agent=user_agent,
        path=path,
        method=method,
    )


# PUBLIC_INTERFACE
def malicious_input_event(
    client_id: str,
    path: Optional[str],
    input_type: str,
    *,
    captured_input: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    method: Optional[str] = "POST",
) -> SecurityEventInput:
    """
    Event for input that looks like an attack.

    input_type is "XSS", "SQL_INJECTION" or anything else (logged as INVALID_INPUT).
    The captured input is cut to MAX_CAPTURED_INPUT characters before storage.
    """
    input_type = (input_type or "OTHER").upper()
    event_type = _MALICIOUS_INPUT_TYPES.get(input_type, SecurityEventType.INVALID_INPUT)
    return SecurityEventInput(
        type=event_type,
        severity=SecuritySeverity.HIGH,
        message=f"Potential {input_type} attempt detected",
        details={
            "path": path,
            "inputType": input_type,
            "sanitizedInput": captured_input[:MAX_CAPTURED_INPUT] if captured_input else None,
        },
        client_id=client_id,
        ip_address=ip_address,
        user_agent=user_agent,
        path=path,
        method=method,
    )


class SecurityEventLogger:
    """Non-blocking front end over a SecurityEventRepository."""

    def __init__(
        self,
        repository: SecurityEventRepository,
        timeout_seconds: float = 2.0,
        query_limit_cap: int = DEFAULT_QUERY_LIMIT,
    ) -> None:
        self._repository = repository
        self._timeout = timeout_seconds
        self._query_limit_cap = query_limit_cap
        self._pending: Set[asyncio.Task] = set()

    @property
    def repository(self) -> SecurityEventRepository:
        return self._repository

    async def _call(self, fn, *args):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._timeout)

    # PUBLIC_INTERFACE
    async def log_event(self, event: SecurityEventInput) -> Optional[str]:
        """Persist an event; returns its id, or None on any failure. Never raises."""
        try:
            record = await self._call(self._repository.add, event)
        except asyncio.TimeoutError:
            logger.error(
                "security_event.log_timeout",
                type=getattr(event, "type", None),
                timeout_seconds=self._timeout,
            )
            return None
        except Exception as exc:
            logger.error(
                "security_event.log_failed",
                type=getattr(event, "type", None),
                error=str(exc) or exc.__class__.__name__,
            )
            return None

        logger.info(
            "security_event.logged",
            event_id=record.id,
            type=record.type.value,
            severity=record.severity.value,
            client=redact_client_key(record.client_id),
        )
        return record.id

    # PUBLIC_INTERFACE
    def dispatch(self, event: SecurityEventInput) -> asyncio.Task:
        """Schedule log_event in the background; requires a running event loop."""
        task = asyncio.get_running_loop().create_task(self.log_event(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    # PUBLIC_INTERFACE
    async def drain(self) -> None:
        """Wait for all dispatched writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # PUBLIC_INTERFACE
    async def log_rate_limit_exceeded(self, client_id: str, path: Optional[str], **kwargs) -> Optional[str]:
        return await self.log_event(rate_limit_exceeded_event(client_id, path, **kwargs))

    # PUBLIC_INTERFACE
    async def log_csrf_failure(self, client_id: str, path: str, **kwargs) -> Optional[str]:
        return await self.log_event(csrf_failure_event(client_id, path, **kwargs))

    # PUBLIC_INTERFACE
    async def log_suspicious_activity(self, client_id: Optional[str], message: str, **kwargs) -> Optional[str]:
        return await self.log_event(suspicious_activity_event(client_id, message, **kwargs))

    # PUBLIC_INTERFACE
    async def log_bot_detected(self, client_id: str, path: Optional[str], reason: str, **kwargs) -> Optional[str]:
        return await self.log_event(bot_detected_event(client_id, path, reason, **kwargs))

    # PUBLIC_INTERFACE
    async def log_malicious_input(
        self, client_id: str, path: Optional[str], input_type: str, **kwargs
    ) -> Optional[str]:
        return await self.log_event(malicious_input_event(client_id, path, input_type, **kwargs))

    # PUBLIC_INTERFACE
    async def query_recent(
        self,
        limit: Optional[int] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[SecuritySeverity] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[SecurityEvent]:
        """
        Newest-first events; limit defaults to and is capped at the configured cap.
        An unreachable repository yields an empty list.
        """
        cap = self._query_limit_cap
        limit = cap if limit is None or limit <= 0 else min(limit, cap)
        try:
            return await self._call(self._repository.list_recent, limit, event_type, severity, acknowledged)
        except Exception as exc:
            logger.error("security_event.query_failed", error=str(exc) or exc.__class__.__name__)
            return []

    # PUBLIC_INTERFACE
    async def acknowledge(self, event_id: str, acknowledged_by: str) -> bool:
        """Acknowledge an event; False when it does not exist or the update fails."""
        try:
            record = await self._call(self._repository.acknowledge, event_id, acknowledged_by)
        except Exception as exc:
            logger.error(
                "security_event.acknowledge_failed",
                event_id=event_id,
                error=str(exc) or exc.__class__.__name__,
            )
            return False
        if record is None:
            logger.warning("security_event.acknowledge_missing", event_id=event_id)
            return False
        logger.info("security_event.acknowledged", event_id=event_id, acknowledged_by=acknowledged_by)
        return True
