"""
Administrative gateway.

Authenticated facade over the rate limiting engine, the analytics aggregator and the
security event logger. Every operation takes the principal produced by authenticate();
a missing principal yields the same UNAUTHORIZED error for every operation, so callers
cannot learn whether a client or event exists without a valid credential.

Client keys are always redacted in returned payloads.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from .admission import effective_state
from .analytics import AnalyticsAggregator
from .auth import (
    PERM_ANALYTICS_READ,
    PERM_EVENTS_MANAGE,
    PERM_EVENTS_READ,
    PERM_RATE_LIMIT_MANAGE,
    AdminPrincipal,
    CredentialValidator,
    bearer_token,
)
from .fingerprint import redact_client_key
from .models import SecurityEvent, SecurityEventType, SecuritySeverity
from .rate_limit import RateLimitEngine
from .security_events import SecurityEventLogger

logger = structlog.get_logger(__name__)


class AdminError(Exception):
    """Structured failure on the admin surface, rendered as {success: false, error: {...}}."""

    def __init__(self, code: str, message: str, status_code: int = 400, **details: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


def _unauthorized() -> AdminError:
    return AdminError("UNAUTHORIZED", "Valid operator credentials are required", 401)


class AdminGateway:
    """Operator operations; credential validation is delegated to a CredentialValidator."""

    def __init__(
        self,
        engine: RateLimitEngine,
        aggregator: AnalyticsAggregator,
        events: SecurityEventLogger,
        validator: Optional[CredentialValidator],
    ) -> None:
        self._engine = engine
        self._aggregator = aggregator
        self._events = events
        self._validator = validator

    # PUBLIC_INTERFACE
    def authenticate(self, authorization: Optional[str]) -> AdminPrincipal:
        """Resolve an Authorization header into a principal or raise UNAUTHORIZED."""
        token = bearer_token(authorization)
        if token is None or self._validator is None:
            raise _unauthorized()
        principal = self._validator.validate(token)
        if principal is None:
            raise _unauthorized()
        return principal

    def _require(self, principal: Optional[AdminPrincipal], permission: str) -> AdminPrincipal:
        if principal is None:
            raise _unauthorized()
        if not principal.has_permission(permission):
            raise AdminError(
                "INSUFFICIENT_PERMISSIONS",
                f"{permission} permission required",
                403,
                requiredPermission=permission,
            )
        return principal

    # PUBLIC_INTERFACE
    def get_analytics(self, principal: Optional[AdminPrincipal]) -> Dict[str, Any]:
        self._require(principal, PERM_ANALYTICS_READ)
        return self._aggregator.snapshot().to_dict()

    # PUBLIC_INTERFACE
    def export_metrics(self, principal: Optional[AdminPrincipal]) -> Dict[str, Any]:
        self._require(principal, PERM_ANALYTICS_READ)
        return self._aggregator.export_metrics()

    # PUBLIC_INTERFACE
    def get_client_info(self, principal: Optional[AdminPrincipal], client_key: Optional[str]) -> Dict[str, Any]:
        """Per-category records for a client, keyed by category; the key itself is redacted."""
        self._require(principal, PERM_ANALYTICS_READ)
        if not client_key:
            raise AdminError("MISSING_CLIENT_ID", "Client ID is required for client-specific data", 400)
        now = self._engine.now()
        info: Dict[str, Any] = {}
        for category, record in self._engine.get_client_info(client_key).items():
            payload = record.to_dict()
            payload.pop("client_key", None)
            payload["recentRequests"] = len(payload.pop("history", ()))
            payload["state"] = effective_state(record, self._engine.policy_for(category), now).value
            payload["listed"] = self._engine.list_status(client_key, category)
            info[category] = payload
        return {"clientId": redact_client_key(client_key), "info": info or None}

    # PUBLIC_INTERFACE
    def clear_client(self, principal: Optional[AdminPrincipal], client_key: Optional[str]) -> Dict[str, Any]:
        principal = self._require(principal, PERM_RATE_LIMIT_MANAGE)
        if not client_key:
            raise AdminError("MISSING_CLIENT_ID", "Client ID is required to clear rate limits", 400)
        self._engine.clear_client(client_key)
        redacted = redact_client_key(client_key)
        logger.info("admin.client_cleared", client=redacted, cleared_by=principal.subject)
        return {
            "message": f"Rate limit cleared for client {redacted}",
            "clearedBy": principal.subject,
        }

    # PUBLIC_INTERFACE
    def update_client_list(
        self,
        principal: Optional[AdminPrincipal],
        action: str,
        client_key: Optional[str],
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Whitelist, blacklist or unlist a client. whitelist and blacklist need a category;
        unlist without one removes the client from every category's lists.
        """
        principal = self._require(principal, PERM_RATE_LIMIT_MANAGE)
        if not client_key:
            raise AdminError("MISSING_CLIENT_ID", "Client ID is required to update access lists", 400)
        if action != "unlist" and not category:
            raise AdminError("MISSING_CATEGORY", "Category is required for whitelist and blacklist", 400)
        if action == "whitelist":
            self._engine.allow_client(client_key, category)
        elif action == "blacklist":
            self._engine.deny_client(client_key, category)
        else:
            self._engine.unlist_client(client_key, category)
        redacted = redact_client_key(client_key)
        logger.info(
            "admin.client_list_updated",
            client=redacted,
            action=action,
            category=category,
            updated_by=principal.subject,
        )
        return {
            "message": f"Client {redacted} {action}ed" + (f" for {category}" if category else ""),
            "category": category,
            "updatedBy": principal.subject,
        }

    # PUBLIC_INTERFACE
    async def list_security_events(
        self,
        principal: Optional[AdminPrincipal],
        limit: Optional[int] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[SecuritySeverity] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[SecurityEvent]:
        self._require(principal, PERM_EVENTS_READ)
        return await self._events.query_recent(
            limit=limit, event_type=event_type, severity=severity, acknowledged=acknowledged
        )

    # PUBLIC_INTERFACE
    async def acknowledge_event(self, principal: Optional[AdminPrincipal], event_id: str) -> bool:
        principal = self._require(principal, PERM_EVENTS_MANAGE)
        return await self._events.acknowledge(event_id, principal.subject)
