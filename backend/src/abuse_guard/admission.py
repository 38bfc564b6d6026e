"""
Admission state machine.

Pure functions over RateLimitRecord: given a record, its category policy, the current
time, the system load factor and the client risk score, compute the next record and
the admission decision. Nothing here touches shared state or performs I/O, so every
transition can be unit tested with a plain float clock.

States:
- OK: count below the warning threshold.
- WARNED: warning threshold <= count <= hard limit.
- BLOCKED: hard limit exceeded in the current window; retry when the window ends.
- PENALIZED: the client was blocked in `escalation_threshold` consecutive windows;
  denied until penalty_until, which is a multiple of the window length.

Each window without a block decays the violation count by one.

Policies with a burst window also deny a request when the client already made
max_burst_requests admitted requests inside that short window. Burst denials are
neither counted nor recorded as violations.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional

from .models import (
    AdmissionDecision,
    AdmissionState,
    DenyReason,
    RateLimitPolicy,
    RateLimitRecord,
)


@dataclass
class Transition:
    record: RateLimitRecord
    decision: AdmissionDecision
    # State the record moved into, when it differs from the previous one
    entered: Optional[AdmissionState] = None


def _ceil_seconds(value: float) -> int:
    return max(1, int(math.ceil(value)))


# PUBLIC_INTERFACE
def new_record(client_key: str, category: str, now: float) -> RateLimitRecord:
    """Fresh OK record for a client seen for the first time."""
    return RateLimitRecord(
        client_key=client_key,
        category=category,
        window_start=now,
        last_seen=now,
        first_seen=now,
    )


def _roll_window(record: RateLimitRecord, policy: RateLimitPolicy, now: float) -> None:
    elapsed = now - record.window_start
    if elapsed < policy.window_seconds:
        return
    windows = int(elapsed // policy.window_seconds)
    clean_windows = windows - (1 if record.blocked_in_window else 0)
    record.violations = max(0, record.violations - clean_windows)
    record.count = 0
    record.window_start = now
    record.blocked_in_window = False
    record.state = AdmissionState.OK


# PUBLIC_INTERFACE
def effective_state(record: RateLimitRecord, policy: RateLimitPolicy, now: float) -> AdmissionState:
    """State of a record as observed at `now`, without mutating it."""
    if record.penalty_until is not None:
        return AdmissionState.PENALIZED if now < record.penalty_until else AdmissionState.OK
    if now - record.window_start >= policy.window_seconds:
        return AdmissionState.OK
    return record.state


def _trim_history(record: RateLimitRecord, policy: RateLimitPolicy, now: float) -> None:
    horizon = now - policy.history_horizon()
    record.history = [t for t in record.history if t > horizon]


def _burst_retry(record: RateLimitRecord, policy: RateLimitPolicy, now: float) -> Optional[int]:
    """Seconds until the burst window frees a slot, or None when the request fits."""
    if not policy.burst_enabled:
        return None
    window_floor = now - policy.burst_window_seconds
    recent = [t for t in record.history if t > window_floor]
    if len(recent) < policy.max_burst_requests:
        return None
    return _ceil_seconds(min(recent) + policy.burst_window_seconds - now)


# PUBLIC_INTERFACE
def advance(
    record: RateLimitRecord,
    policy: RateLimitPolicy,
    now: float,
    load: float = 0.0,
    risk: float = 0.0,
) -> Transition:
    """Apply one admission check to `record` and return the resulting transition."""
    rec = replace(record, history=list(record.history))
    rec.last_seen = now
    limit = policy.effective_limit(load, risk)

    if rec.penalty_until is not None:
        if now < rec.penalty_until:
            decision = AdmissionDecision(
                allowed=False,
                remaining=0,
                state=AdmissionState.PENALIZED,
                count=rec.count,
                limit=limit,
                retry_after_seconds=_ceil_seconds(rec.penalty_until - now),
                reason=DenyReason.PENALTY_BLOCK,
                client_risk=risk,
            )
            return Transition(rec, decision)
        rec.penalty_until = None
        rec.violations = 0
        rec.count = 0
        rec.window_start = now
        rec.blocked_in_window = False
        rec.state = AdmissionState.OK

    _trim_history(rec, policy, now)
    _roll_window(rec, policy, now)
    previous = rec.state

    burst_retry = _burst_retry(rec, policy, now)
    if burst_retry is not None:
        # Not counted against the window and not a violation
        decision = AdmissionDecision(
            allowed=False,
            remaining=max(0, limit - rec.count),
            state=rec.state,
            count=rec.count,
            limit=limit,
            retry_after_seconds=burst_retry,
            reason=DenyReason.BURST_PROTECTION,
            client_risk=risk,
        )
        return Transition(rec, decision)

    rec.count += 1

    if rec.count > limit:
        newly_blocked = not rec.blocked_in_window
        if newly_blocked:
            rec.blocked_in_window = True
            rec.violations += 1
            if rec.violations >= policy.escalation_threshold:
                rec.penalty_until = now + policy.penalty_seconds(rec.violations)

        if rec.penalty_until is not None:
            rec.state = AdmissionState.PENALIZED
            reason = DenyReason.PENALTY_BLOCK
            retry_after = _ceil_seconds(rec.penalty_until - now)
        else:
            rec.state = AdmissionState.BLOCKED
            reason = DenyReason.RATE_LIMIT
            retry_after = _ceil_seconds(rec.window_start + policy.window_seconds - now)

        decision = AdmissionDecision(
            allowed=False,
            remaining=0,
            state=rec.state,
            count=rec.count,
            limit=limit,
            retry_after_seconds=retry_after,
            reason=reason,
            client_risk=risk,
        )
        entered = rec.state if newly_blocked else None
    else:
        rec.history.append(now)
        rec.state = AdmissionState.WARNED if rec.count >= policy.warn_at else AdmissionState.OK
        decision = AdmissionDecision(
            allowed=True,
            remaining=max(0, limit - rec.count),
            state=rec.state,
            count=rec.count,
            limit=limit,
            client_risk=risk,
        )
        entered = rec.state if rec.state != previous else None

    return Transition(rec, decision, entered)
