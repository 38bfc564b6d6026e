"""
Security event repositories.

These repositories provide a minimal abstraction layer over the security event table so
that the in-memory store used in development and tests can be swapped for the
SQLAlchemy-backed store in db.py without changing the rest of the code.

Repositories are synchronous and may raise; SecurityEventLogger is the boundary that
runs them off the request path and converts failures into None/False.
"""

from __future__ import annotations

import secrets
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from .models import (
    SecurityEvent,
    SecurityEventInput,
    SecurityEventType,
    SecuritySeverity,
    utcnow,
)


def _gen_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


class SecurityEventRepository(ABC):
    """Interface describing persistence of security events."""

    @abstractmethod
    def add(self, payload: SecurityEventInput) -> SecurityEvent:
        """Persist a new event and return the stored record."""

    @abstractmethod
    def list_recent(
        self,
        limit: int,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[SecuritySeverity] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[SecurityEvent]:
        """Return at most `limit` events, newest first."""

    @abstractmethod
    def acknowledge(
        self, event_id: str, acknowledged_by: str, at: Optional[datetime] = None
    ) -> Optional[SecurityEvent]:
        """Mark an event acknowledged; None when the event does not exist."""


class InMemorySecurityEventRepository(SecurityEventRepository):
    """In-memory security event store."""

    def __init__(self) -> None:
        self._by_id: Dict[str, SecurityEvent] = {}
        self._lock = threading.Lock()

    # PUBLIC_INTERFACE
    def add(self, payload: SecurityEventInput) -> SecurityEvent:
        """Add an event from payload."""
        rec = SecurityEvent(
            id=_gen_id("sev"),
            type=SecurityEventType(payload.type),
            severity=SecuritySeverity(payload.severity or SecuritySeverity.MEDIUM),
            message=payload.message,
            created_at=utcnow(),
            details=dict(payload.details or {}),
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
            path=payload.path,
            method=payload.method,
            client_id=payload.client_id,
            session_id=payload.session_id,
        )
        with self._lock:
            self._by_id[rec.id] = rec
        return rec

    # PUBLIC_INTERFACE
    def list_recent(
        self,
        limit: int,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[SecuritySeverity] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[SecurityEvent]:
        """List events with optional filters, newest first."""
        with self._lock:
            # newest insertion first so equal timestamps keep arrival order
            vals = list(reversed(self._by_id.values()))
        if event_type is not None:
            vals = [v for v in vals if v.type == event_type]
        if severity is not None:
            vals = [v for v in vals if v.severity == severity]
        if acknowledged is not None:
            vals = [v for v in vals if v.acknowledged == acknowledged]
        return sorted(vals, key=lambda e: e.created_at, reverse=True)[:limit]

    # PUBLIC_INTERFACE
    def acknowledge(
        self, event_id: str, acknowledged_by: str, at: Optional[datetime] = None
    ) -> Optional[SecurityEvent]:
        """Acknowledge an event; repeat calls keep the first acknowledgement."""
        with self._lock:
            rec = self._by_id.get(event_id)
            if not rec:
                return None
            if not rec.acknowledged:
                rec.acknowledged = True
                rec.acknowledged_at = at or utcnow()
                rec.acknowledged_by = acknowledged_by
            return rec
