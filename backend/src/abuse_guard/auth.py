"""
Operator credential validation for the admin surface.

Validators turn a bearer token into an AdminPrincipal or None. Any failure, whatever
its cause, is reported as None so callers can only produce a uniform "unauthorized".
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional, Protocol

from jose import JWTError, jwt

PERM_ANALYTICS_READ = "analytics:read"
PERM_RATE_LIMIT_MANAGE = "rate-limit:manage"
PERM_EVENTS_READ = "security-events:read"
PERM_EVENTS_MANAGE = "security-events:manage"

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    {PERM_ANALYTICS_READ, PERM_RATE_LIMIT_MANAGE, PERM_EVENTS_READ, PERM_EVENTS_MANAGE}
)


@dataclass(frozen=True)
class AdminPrincipal:
    subject: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    # Authenticated with the static token rather than a signed JWT
    legacy: bool = False

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


class CredentialValidator(Protocol):
    def validate(self, token: str) -> Optional[AdminPrincipal]:
        ...


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class StaticTokenValidator:
    """Single shared operator token, compared in constant time."""

    def __init__(self, token: str, subject: str = "static-admin") -> None:
        if not token:
            raise ValueError("static admin token must not be empty")
        self._token = token
        self._subject = subject

    def validate(self, token: str) -> Optional[AdminPrincipal]:
        if token and secrets.compare_digest(token.encode(), self._token.encode()):
            return AdminPrincipal(subject=self._subject, permissions=ALL_PERMISSIONS, legacy=True)
        return None


class JWTValidator:
    """HS256 (by default) JWTs carrying `sub`, `role` and `permissions` claims."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm

    def issue(self, subject: str, permissions: Iterable[str], role: str = "admin", expires_in: int = 3600) -> str:
        claims = {
            "sub": subject,
            "role": role,
            "permissions": sorted(permissions),
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def validate(self, token: str) -> Optional[AdminPrincipal]:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError:
            return None
        if payload.get("role") != "admin" or not payload.get("sub"):
            return None
        perms = payload.get("permissions") or []
        if not isinstance(perms, list):
            return None
        return AdminPrincipal(subject=str(payload["sub"]), permissions=frozenset(str(p) for p in perms))


class ChainedValidator:
    """Tries validators in order; first principal wins."""

    def __init__(self, validators: Iterable[CredentialValidator]) -> None:
        self._validators = list(validators)

    def validate(self, token: str) -> Optional[AdminPrincipal]:
        for validator in self._validators:
            principal = validator.validate(token)
            if principal is not None:
                return principal
        return None
