"""SQLAlchemy persistence for security events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    SecurityEvent,
    SecurityEventInput,
    SecurityEventType,
    SecuritySeverity,
    utcnow,
)
from .storage import SecurityEventRepository, _gen_id


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""


class SecurityEventModel(Base):
    """Append-only audit row for a security event."""

    __tablename__ = "security_events"
    __table_args__ = (
        Index("ix_security_events_created_at", "created_at"),
        Index("ix_security_events_type_severity", "type", "severity"),
        Index("ix_security_events_client_id", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[SecurityEventType] = mapped_column(
        Enum(SecurityEventType, name="security_event_type"), nullable=False
    )
    severity: Mapped[SecuritySeverity] = mapped_column(
        Enum(SecuritySeverity, name="security_severity"),
        nullable=False,
        default=SecuritySeverity.MEDIUM,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    path: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def to_domain(self) -> SecurityEvent:
        return SecurityEvent(
            id=self.id,
            type=self.type,
            severity=self.severity,
            message=self.message,
            created_at=self.created_at,
            details=dict(self.details or {}),
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            path=self.path,
            method=self.method,
            client_id=self.client_id,
            session_id=self.session_id,
            acknowledged=self.acknowledged,
            acknowledged_at=self.acknowledged_at,
            acknowledged_by=self.acknowledged_by,
        )


# PUBLIC_INTERFACE
def build_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


# PUBLIC_INTERFACE
def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


class SqlAlchemySecurityEventRepository(SecurityEventRepository):
    """Persists security events through a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAlchemySecurityEventRepository":
        engine = build_engine(database_url)
        init_db(engine)
        return cls(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))

    def add(self, payload: SecurityEventInput) -> SecurityEvent:
        model = SecurityEventModel(
            id=_gen_id("sev"),
            type=SecurityEventType(payload.type),
            severity=SecuritySeverity(payload.severity or SecuritySeverity.MEDIUM),
            message=payload.message,
            details=dict(payload.details) if payload.details else None,
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
            path=payload.path,
            method=payload.method,
            client_id=payload.client_id,
            session_id=payload.session_id,
            created_at=utcnow(),
            acknowledged=False,
        )
        with self._session_factory() as session:
            session.add(model)
            session.commit()
            return model.to_domain()

    def list_recent(
        self,
        limit: int,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[SecuritySeverity] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[SecurityEvent]:
        stmt = select(SecurityEventModel)
        if event_type is not None:
            stmt = stmt.where(SecurityEventModel.type == event_type)
        if severity is not None:
            stmt = stmt.where(SecurityEventModel.severity == severity)
        if acknowledged is not None:
            stmt = stmt.where(SecurityEventModel.acknowledged == acknowledged)
        stmt = stmt.order_by(SecurityEventModel.created_at.desc()).limit(limit)
        with self._session_factory() as session:
            return [row.to_domain() for row in session.scalars(stmt)]

    def acknowledge(
        self, event_id: str, acknowledged_by: str, at: Optional[datetime] = None
    ) -> Optional[SecurityEvent]:
        with self._session_factory() as session:
            model = session.get(SecurityEventModel, event_id)
            if model is None:
                return None
            if not model.acknowledged:
                model.acknowledged = True
                model.acknowledged_at = at or utcnow()
                model.acknowledged_by = acknowledged_by
                session.commit()
            return model.to_domain()
