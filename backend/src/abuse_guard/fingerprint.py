"""
Anonymous client identification.

A client key is a truncated SHA-256 digest of the network address and user agent.
It is deterministic (no salt) so repeat clients are recognised across restarts, and
it cannot be reversed to the original inputs. It is an anti-abuse signal only, not an
authentication boundary.

Requests whose address could not be determined all hash to the same "unknown" bucket.
Forwarding headers such as x-forwarded-for are only trusted when the deployment
declares how many reverse proxies sit in front of the service.
"""

from __future__ import annotations

import hashlib
from typing import Mapping, Optional

UNKNOWN = "unknown"
KEY_BYTES = 16
REDACTED_PREFIX = 12

_ADDRESS_HEADERS = ("x-real-ip", "cf-connecting-ip")


def _normalise(value: Optional[str]) -> str:
    value = (value or "").strip()
    return value or UNKNOWN


# PUBLIC_INTERFACE
def derive_client_key(address: Optional[str], user_agent: Optional[str]) -> str:
    """Return the 32 hex char client key for an (address, user agent) pair."""
    addr = _normalise(address)
    # Length prefix keeps ("a|b", "c") and ("a", "b|c") apart
    material = f"{len(addr)}:{addr}|{_normalise(user_agent)}"
    digest = hashlib.sha256(material.encode("utf-8", errors="replace")).digest()
    return digest[:KEY_BYTES].hex()


# PUBLIC_INTERFACE
def client_address(headers: Mapping[str, str], peer: Optional[str] = None, trusted_hops: int = 0) -> str:
    """
    Resolve the originating address of a request.

    With trusted_hops == 0 the forwarding headers are ignored, since any client can set
    them, and the socket peer is used. Behind N trusted proxies the address is the Nth
    x-forwarded-for entry from the right (the one the outermost trusted proxy saw),
    then x-real-ip and cf-connecting-ip, then the peer. Falls back to "unknown".
    """
    if trusted_hops <= 0:
        return _normalise(peer)
    xff = headers.get("x-forwarded-for")
    if xff:
        hops = [hop.strip() for hop in xff.split(",") if hop.strip()]
        if hops:
            return hops[-trusted_hops] if len(hops) >= trusted_hops else hops[0]
    for name in _ADDRESS_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return _normalise(peer)


# PUBLIC_INTERFACE
def redact_client_key(client_key: Optional[str]) -> str:
    """Truncate a key for display or logs; never echo the full key."""
    if not client_key:
        return ""
    return client_key[:REDACTED_PREFIX] + "..."
