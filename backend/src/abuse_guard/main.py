from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog
from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .admin import AdminError, AdminGateway
from .analytics import AnalyticsAggregator, render_prometheus
from .auth import ChainedValidator, CredentialValidator, JWTValidator, StaticTokenValidator
from .config import DEFAULT_CATEGORY, Settings, get_settings
from .db import SqlAlchemySecurityEventRepository
from .fingerprint import redact_client_key
from .logging_config import configure_logging
from .models import SecurityEventType, SecuritySeverity, utcnow
from .rate_limit import AbuseGuardMiddleware, RateLimitEngine
from .schemas import AdminActionRequest, HealthResponse, SecurityEventResponse
from .security_events import SecurityEventLogger
from .services import AbuseProtectionService
from .storage import InMemorySecurityEventRepository, SecurityEventRepository

logger = structlog.get_logger(__name__)

ANALYTICS_PATH = "/api/admin/rate-limit-analytics"
EVENTS_PATH = "/api/admin/security-events"

GET_ACTIONS = ["analytics", "metrics", "client"]
POST_ACTIONS = ["clear", "whitelist", "blacklist", "unlist"]

openapi_tags = [
    {"name": "health", "description": "Service health and info."},
    {"name": "admin", "description": "Rate limit analytics and client management."},
    {"name": "security_events", "description": "Security event audit trail."},
    {"name": "metrics", "description": "Prometheus scrape endpoint."},
]

CAPABILITIES: Dict[str, Any] = {
    "success": True,
    "service": "Rate Limit Analytics API",
    "version": "2.0.0",
    "authentication": {
        "primary": "JWT Bearer token (recommended)",
        "fallback": "Static operator token",
        "header": "Authorization: Bearer <token>",
    },
    "endpoints": {
        "GET ?action=analytics": {
            "description": "Get rate limit analytics",
            "permissions": ["analytics:read"],
            "authenticated": True,
        },
        "GET ?action=metrics": {
            "description": "Export rate limit metrics with system load",
            "permissions": ["analytics:read"],
            "authenticated": True,
        },
        "GET ?action=client&clientId=<id>": {
            "description": "Get specific client rate limit info",
            "permissions": ["analytics:read"],
            "authenticated": True,
        },
        'POST {action: "clear", clientId: "<id>"}': {
            "description": "Clear rate limits for specific client",
            "permissions": ["rate-limit:manage"],
            "authenticated": True,
        },
        'POST {action: "whitelist" | "blacklist" | "unlist", clientId: "<id>", category: "<name>"}': {
            "description": "Manage per-category access lists for a client",
            "permissions": ["rate-limit:manage"],
            "authenticated": True,
        },
        "DELETE ?clientId=<id>": {
            "description": "Clear rate limits for specific client",
            "permissions": ["rate-limit:manage"],
            "authenticated": True,
        },
    },
    "permissions": {
        "analytics:read": "View rate limiting analytics and metrics",
        "rate-limit:manage": "Clear rate limits and manage restrictions",
        "security-events:read": "List security events",
        "security-events:manage": "Acknowledge security events",
    },
}


@dataclass
class Components:
    settings: Settings
    engine: RateLimitEngine
    aggregator: AnalyticsAggregator
    events: SecurityEventLogger
    service: AbuseProtectionService
    gateway: AdminGateway


def _build_validator(settings: Settings) -> Optional[CredentialValidator]:
    validators: List[CredentialValidator] = []
    if settings.jwt_secret:
        validators.append(JWTValidator(settings.jwt_secret, settings.jwt_algorithm))
    if settings.admin_api_token:
        validators.append(StaticTokenValidator(settings.admin_api_token))
    if not validators:
        logger.warning("admin.no_credentials_configured")
        return None
    return ChainedValidator(validators)


# PUBLIC_INTERFACE
def build_components(
    settings: Settings,
    repository: Optional[SecurityEventRepository] = None,
    clock: Callable[[], float] = time.time,
    validator: Optional[CredentialValidator] = None,
) -> Components:
    """Wire the engine, aggregator, event logger, protection service and gateway."""
    if repository is None:
        if settings.database_url:
            repository = SqlAlchemySecurityEventRepository.from_url(settings.database_url)
        else:
            repository = InMemorySecurityEventRepository()

    engine = RateLimitEngine(
        settings.policies(),
        default_category=DEFAULT_CATEGORY,
        idle_ttl_seconds=settings.idle_ttl_seconds,
        max_records=settings.max_tracked_records,
        clock=clock,
    )
    aggregator = AnalyticsAggregator(engine)
    events = SecurityEventLogger(
        repository,
        timeout_seconds=settings.event_log_timeout_seconds,
        query_limit_cap=settings.event_query_limit_cap,
    )
    service = AbuseProtectionService(engine, events)
    gateway = AdminGateway(engine, aggregator, events, validator or _build_validator(settings))
    return Components(settings, engine, aggregator, events, service, gateway)


def _timestamp() -> str:
    return utcnow().isoformat()


def _success(data: Any, **meta: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, "timestamp": _timestamp(), **meta}


def _error(code: str, message: str, status_code: int, **details: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message, "timestamp": _timestamp(), **details},
        },
    )


# PUBLIC_INTERFACE
def create_app(
    settings: Optional[Settings] = None,
    components: Optional[Components] = None,
) -> FastAPI:
    """Build the FastAPI application; tests pass prebuilt components."""
    settings = settings or (components.settings if components else get_settings())
    configure_logging(settings.log_level, settings.log_json)
    guard = components or build_components(settings)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        evictor = asyncio.create_task(
            guard.engine.run_eviction_loop(settings.eviction_interval_seconds, guard.aggregator)
        )
        logger.info("app.started", policies=sorted(guard.engine.policies))
        try:
            yield
        finally:
            evictor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await evictor
            await guard.events.drain()
            logger.info("app.stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Abuse prevention backend: client fingerprinting, admission control and security audit trail.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.guard = guard

    app.add_middleware(
        AbuseGuardMiddleware,
        service=guard.service,
        route_categories=settings.route_categories,
        trusted_proxy_hops=settings.trusted_proxy_hops,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AdminError)
    async def _admin_error(request: Request, exc: AdminError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("admin.request_failed", code=exc.code, path=request.url.path)
        return _error(exc.code, exc.message, exc.status_code, **exc.details)

    gateway = guard.gateway

    # PUBLIC_INTERFACE
    @app.get("/", response_model=HealthResponse, summary="Health check", tags=["health"])
    def health_check():
        """
        Health Check
        Returns a simple message indicating the service is running.
        """
        return {"message": "Healthy"}

    # PUBLIC_INTERFACE
    @app.get(
        ANALYTICS_PATH,
        summary="Rate limit analytics",
        description="Analytics snapshot, metrics export or a single client's records.",
        tags=["admin"],
    )
    def get_rate_limit_analytics(
        action: str = Query(default="analytics", description="analytics | metrics | client"),
        client_id: Optional[str] = Query(default=None, alias="clientId", description="Client key."),
        authorization: Optional[str] = Header(default=None),
    ):
        """
        Read-only operator views.

        Parameters:
        - action: which view to return
        - clientId: required when action=client

        Returns the success envelope, or a structured error.
        """
        principal = gateway.authenticate(authorization)
        if action == "analytics":
            return _success({"analytics": gateway.get_analytics(principal), "timestamp": _timestamp()})
        if action == "metrics":
            return _success(gateway.export_metrics(principal))
        if action == "client":
            data = gateway.get_client_info(principal, client_id)
            data["timestamp"] = _timestamp()
            return _success(data)
        raise AdminError(
            "INVALID_ACTION",
            "Valid actions: " + ", ".join(GET_ACTIONS),
            400,
            availableActions=GET_ACTIONS,
        )

    # PUBLIC_INTERFACE
    @app.post(ANALYTICS_PATH, summary="Rate limit management", tags=["admin"])
    async def post_rate_limit_action(request: Request, authorization: Optional[str] = Header(default=None)):
        """
        Execute an administrative action; body is {"action": "clear", "clientId": "<id>"}.
        List actions (whitelist, blacklist, unlist) also take a "category".
        """
        principal = gateway.authenticate(authorization)
        try:
            body = AdminActionRequest.model_validate(await request.json())
        except (ValueError, ValidationError):
            raise AdminError("INVALID_ACTION", "Request body must be a JSON object", 400, availableActions=POST_ACTIONS)
        if body.action not in POST_ACTIONS:
            raise AdminError(
                "INVALID_ACTION",
                "Valid actions: " + ", ".join(POST_ACTIONS),
                400,
                availableActions=POST_ACTIONS,
            )
        if body.action == "clear":
            result = gateway.clear_client(principal, body.client_id)
        else:
            result = gateway.update_client_list(principal, body.action, body.client_id, body.category)
        result["action"] = body.action
        return _success(result)

    # PUBLIC_INTERFACE
    @app.delete(ANALYTICS_PATH, summary="Clear client rate limits", tags=["admin"])
    def delete_rate_limit(
        client_id: Optional[str] = Query(default=None, alias="clientId", description="Client key."),
        authorization: Optional[str] = Header(default=None),
    ):
        """
        Clear all rate limit state for a client.
        """
        principal = gateway.authenticate(authorization)
        result = gateway.clear_client(principal, client_id)
        result["method"] = "DELETE"
        return _success(result)

    # PUBLIC_INTERFACE
    @app.options(ANALYTICS_PATH, summary="Capabilities", tags=["admin"])
    def rate_limit_capabilities():
        """
        Static capability document describing the admin surface.
        """
        return CAPABILITIES

    # PUBLIC_INTERFACE
    @app.get(
        EVENTS_PATH,
        summary="List security events",
        description="Recent security events, newest first, with optional filters.",
        tags=["security_events"],
    )
    async def list_security_events(
        limit: Optional[int] = Query(default=None, ge=1, description="Maximum events to return."),
        event_type: Optional[SecurityEventType] = Query(default=None, alias="type", description="Filter by event type."),
        severity: Optional[SecuritySeverity] = Query(default=None, description="Filter by severity."),
        acknowledged: Optional[bool] = Query(default=None, description="Filter by acknowledgment."),
        authorization: Optional[str] = Header(default=None),
    ):
        """
        List security events.

        Client keys in the response are redacted.
        """
        principal = gateway.authenticate(authorization)
        events = await gateway.list_security_events(
            principal, limit=limit, event_type=event_type, severity=severity, acknowledged=acknowledged
        )
        items = [
            SecurityEventResponse.from_event(e, redact_client_key(e.client_id) or None).model_dump(
                mode="json", by_alias=True
            )
            for e in events
        ]
        return _success({"events": items, "count": len(items)})

    # PUBLIC_INTERFACE
    @app.post(f"{EVENTS_PATH}/{{event_id}}/ack", summary="Acknowledge security event", tags=["security_events"])
    async def acknowledge_security_event(event_id: str, authorization: Optional[str] = Header(default=None)):
        """
        Acknowledge a security event. Unknown ids return EVENT_NOT_FOUND.
        """
        principal = gateway.authenticate(authorization)
        if not await gateway.acknowledge_event(principal, event_id):
            raise AdminError("EVENT_NOT_FOUND", "Security event not found or could not be updated", 404)
        return _success({"eventId": event_id, "acknowledged": True, "acknowledgedBy": principal.subject})

    if settings.enable_prometheus_metrics:
        # PUBLIC_INTERFACE
        @app.get("/metrics", tags=["metrics"], include_in_schema=False)
        def prometheus_metrics():
            """Prometheus text exposition of rate limit gauges."""
            return Response(
                content=render_prometheus(guard.aggregator),
                media_type="text/plain; version=0.0.4; charset=utf-8",
            )

    return app
