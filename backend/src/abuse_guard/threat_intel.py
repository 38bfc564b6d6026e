"""
Threat Heuristics (Static Patterns)

Lightweight, static signals used by the protection service:
- Submitted text that looks like XSS or SQL injection, or carries path traversal /
  SSRF payloads.
- User-Agent heuristics (HTTP client libraries, crawlers, missing or very short UA).
- A behaviour score over a client's recent request times, used to flag suspicious
  clients and tighten adaptive limits.

No external dependencies or network calls. A match only produces a security event; it
never changes the admission decision by itself.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional, Sequence

_JS_INJECTION = re.compile(r"(?i)<\s*script|<\s*iframe|onerror\s*=|onload\s*=|javascript:|<\s*svg[^>]*on\w+\s*=")
_SQLI_PATTERN = re.compile(
    r"(?i)(\bUNION\b\s+(ALL\s+)?\bSELECT\b|\bDROP\s+TABLE\b|\bINSERT\s+INTO\b|\bDELETE\s+FROM\b"
    r"|'\s*(OR|AND)\s+'?\d+'?\s*=\s*'?\d+|\bOR\b\s+1\s*=\s*1|;\s*--|'\s*--|/\*.*\*/)"
)
_PATH_TRAVERSAL = re.compile(r"(\.\./|\.\.\\)")
_SSRF_HINT = re.compile(r"(?i)(metadata\.google|latest/meta-data|169\.254\.169\.254)")
_AUTOMATION_UA = re.compile(
    r"(?i)\b(bot|crawler|spider|scraper|curl|wget|python-requests|python-urllib|httpclient"
    r"|aiohttp|libwww|okhttp|java|go-http-client|headless|phantomjs|nikto|sqlmap)\b"
)

MIN_UA_LENGTH = 20


@dataclass
class InputThreat:
    input_type: str  # "XSS" | "SQL_INJECTION" | "OTHER"
    indicator: str
    field: Optional[str] = None
    sample: str = ""


# PUBLIC_INTERFACE
def classify_input(text: Optional[str], field: Optional[str] = None) -> Optional[InputThreat]:
    """Return the first attack pattern found in text, XSS before SQL injection."""
    if not text:
        return None
    if _JS_INJECTION.search(text):
        return InputThreat("XSS", "js_injection", field, text)
    if _SQLI_PATTERN.search(text):
        return InputThreat("SQL_INJECTION", "sqli_pattern", field, text)
    if _PATH_TRAVERSAL.search(text):
        return InputThreat("OTHER", "path_traversal", field, text)
    if _SSRF_HINT.search(text):
        return InputThreat("OTHER", "ssrf_hint", field, text)
    return None


# PUBLIC_INTERFACE
def detect_automation(user_agent: Optional[str]) -> Optional[str]:
    """Reason string when the user agent looks automated, else None."""
    ua = (user_agent or "").strip()
    if not ua:
        return "missing_user_agent"
    match = _AUTOMATION_UA.search(ua)
    if match:
        return f"automation_user_agent:{match.group(1).lower()}"
    if len(ua) < MIN_UA_LENGTH:
        return "short_user_agent"
    return None


SUSPICION_THRESHOLD = 0.7
RAPID_WINDOW_SECONDS = 10
RAPID_MIN_REQUESTS = 5
HOURLY_VOLUME_LIMIT = 50


# PUBLIC_INTERFACE
def behaviour_score(
    timestamps: Sequence[float],
    now: float,
    user_agent: Optional[str] = None,
    violations: int = 0,
) -> float:
    """
    Suspicion score in [0, 1] for a client. Contributions:

    - five or more requests in the last 10 s with near-uniform spacing: +0.4
    - the same requests averaging under one second apart: +0.3
    - automation user agent: +0.2; missing or short user agent: +0.1
    - more than two violations: +0.2
    - more than 50 requests in the last hour: +0.3
    """
    score = 0.0

    recent = sorted(t for t in timestamps if t > now - RAPID_WINDOW_SECONDS)
    if len(recent) >= RAPID_MIN_REQUESTS:
        intervals = [b - a for a, b in zip(recent, recent[1:])]
        mean = sum(intervals) / len(intervals)
        spread = math.sqrt(sum((i - mean) ** 2 for i in intervals) / len(intervals))
        if spread < mean * 0.1:
            score += 0.4
        if mean < 1.0:
            score += 0.3

    ua = (user_agent or "").strip()
    if ua and _AUTOMATION_UA.search(ua):
        score += 0.2
    if len(ua) < MIN_UA_LENGTH:
        score += 0.1

    if violations > 2:
        score += 0.2

    if sum(1 for t in timestamps if t > now - 3600) > HOURLY_VOLUME_LIMIT:
        score += 0.3

    return min(score, 1.0)
