"""
Pydantic schemas for Abuse Guard.

These schemas define the public API interfaces for requests and responses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import SecurityEvent, SecurityEventType, SecuritySeverity


# PUBLIC_INTERFACE
class HealthResponse(BaseModel):
    """Health check response."""
    message: str = Field(..., description="Service health message.")


# PUBLIC_INTERFACE
class AdminActionRequest(BaseModel):
    """Body of POST /api/admin/rate-limit-analytics."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Optional[str] = Field(None, description="Administrative action: clear, whitelist, blacklist or unlist.")
    client_id: Optional[str] = Field(None, alias="clientId", description="Client key to act upon.")
    category: Optional[str] = Field(None, description="Endpoint category for access list actions.")


# PUBLIC_INTERFACE
class SecurityEventResponse(BaseModel):
    """Security event payload."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Event id.")
    type: SecurityEventType = Field(..., description="Event type.")
    severity: SecuritySeverity = Field(..., description="Event severity.")
    message: str = Field(..., description="Human readable message.")
    details: Dict[str, Any] = Field(default_factory=dict, description="Structured details.")
    ip_address: Optional[str] = Field(None, alias="ipAddress", description="Source IP address.")
    user_agent: Optional[str] = Field(None, alias="userAgent", description="Source user agent.")
    path: Optional[str] = Field(None, description="Request path.")
    method: Optional[str] = Field(None, description="HTTP method.")
    client_id: Optional[str] = Field(None, alias="clientId", description="Redacted client key.")
    session_id: Optional[str] = Field(None, alias="sessionId", description="Session id if known.")
    created_at: datetime = Field(..., alias="createdAt", description="Creation timestamp (UTC).")
    acknowledged: bool = Field(..., description="If acknowledged.")
    acknowledged_at: Optional[datetime] = Field(None, alias="acknowledgedAt", description="When acknowledged.")
    acknowledged_by: Optional[str] = Field(None, alias="acknowledgedBy", description="Who acknowledged.")

    @classmethod
    def from_event(cls, event: SecurityEvent, client_id: Optional[str]) -> "SecurityEventResponse":
        return cls(
            id=event.id,
            type=event.type,
            severity=event.severity,
            message=event.message,
            details=event.details,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            path=event.path,
            method=event.method,
            client_id=client_id,
            session_id=event.session_id,
            created_at=event.created_at,
            acknowledged=event.acknowledged,
            acknowledged_at=event.acknowledged_at,
            acknowledged_by=event.acknowledged_by,
        )
