from hypothesis import given
from hypothesis import strategies as st

from abuse_guard.admission import advance, effective_state, new_record
from abuse_guard.models import AdmissionState, DenyReason, RateLimitPolicy

POLICY = RateLimitPolicy(
    category="contact-form",
    max_requests=5,
    window_seconds=3600,
    warn_at=4,
    escalation_threshold=3,
    escalation_factor=10,
    max_penalty_seconds=7 * 86400,
)
T0 = 1_000_000.0


def _run(record, n, now, policy=POLICY):
    transitions = []
    for _ in range(n):
        t = advance(record, policy, now)
        record = t.record
        transitions.append(t)
    return record, transitions


def test_requests_up_to_limit_are_allowed_then_blocked():
    record, ts = _run(new_record("k", "contact-form", T0), 6, T0 + 10)
    assert [t.decision.allowed for t in ts] == [True] * 5 + [False]
    assert [t.decision.remaining for t in ts[:5]] == [4, 3, 2, 1, 0]
    denied = ts[-1].decision
    assert denied.reason == DenyReason.RATE_LIMIT
    assert denied.state == AdmissionState.BLOCKED
    assert 0 < denied.retry_after_seconds <= POLICY.window_seconds
    assert record.violations == 1


def test_warning_state_from_warn_threshold():
    _, ts = _run(new_record("k", "contact-form", T0), 5, T0)
    assert [t.decision.state for t in ts] == [
        AdmissionState.OK,
        AdmissionState.OK,
        AdmissionState.OK,
        AdmissionState.WARNED,
        AdmissionState.WARNED,
    ]
    assert ts[3].entered == AdmissionState.WARNED
    assert ts[4].entered is None


def test_block_is_reported_once_per_window():
    _, ts = _run(new_record("k", "contact-form", T0), 8, T0)
    entered = [t.entered for t in ts[5:]]
    assert entered == [AdmissionState.BLOCKED, None, None]


def test_new_window_resets_count():
    record, _ = _run(new_record("k", "contact-form", T0), 6, T0)
    t = advance(record, POLICY, T0 + POLICY.window_seconds)
    assert t.decision.allowed
    assert t.decision.count == 1
    assert t.record.state == AdmissionState.OK


def test_consecutive_blocked_windows_escalate_to_penalty():
    record = new_record("k", "contact-form", T0)
    now = T0
    decisions = []
    for _ in range(POLICY.escalation_threshold):
        record, ts = _run(record, 6, now)
        decisions.append(ts[-1])
        now += POLICY.window_seconds

    assert [t.entered for t in decisions] == [
        AdmissionState.BLOCKED,
        AdmissionState.BLOCKED,
        AdmissionState.PENALIZED,
    ]
    final = decisions[-1].decision
    assert final.reason == DenyReason.PENALTY_BLOCK
    assert final.retry_after_seconds > POLICY.window_seconds
    assert record.penalty_until is not None


def test_penalty_requests_are_denied_without_counting():
    record = new_record("k", "contact-form", T0)
    now = T0
    for _ in range(3):
        record, _ = _run(record, 6, now)
        now += POLICY.window_seconds
    count = record.count
    penalty_until = record.penalty_until

    t = advance(record, POLICY, now)
    assert not t.decision.allowed
    assert t.decision.reason == DenyReason.PENALTY_BLOCK
    assert t.record.count == count
    assert t.record.penalty_until == penalty_until
    assert t.entered is None


def test_expired_penalty_starts_fresh():
    record = new_record("k", "contact-form", T0)
    now = T0
    for _ in range(3):
        record, _ = _run(record, 6, now)
        now += POLICY.window_seconds
    t = advance(record, POLICY, record.penalty_until + 1)
    assert t.decision.allowed
    assert t.record.violations == 0
    assert t.record.penalty_until is None
    assert t.decision.count == 1


def test_violations_decay_after_clean_windows():
    record = new_record("k", "contact-form", T0)
    record, _ = _run(record, 6, T0)
    record, _ = _run(record, 6, T0 + 3600)
    assert record.violations == 2
    # blocked window, then two quiet ones
    t = advance(record, POLICY, T0 + 4 * 3600)
    assert t.record.violations == 0
    t = advance(record, POLICY, T0 + 3 * 3600)
    assert t.record.violations == 1


def test_penalty_length_grows_and_is_capped():
    assert POLICY.penalty_seconds(3) == 36000
    assert POLICY.penalty_seconds(4) == 360000
    assert POLICY.penalty_seconds(10) == POLICY.max_penalty_seconds


def test_effective_state_does_not_mutate():
    record, _ = _run(new_record("k", "contact-form", T0), 6, T0)
    assert effective_state(record, POLICY, T0 + 1) == AdmissionState.BLOCKED
    assert effective_state(record, POLICY, T0 + POLICY.window_seconds) == AdmissionState.OK
    assert record.state == AdmissionState.BLOCKED
    assert record.count == 6


def test_advance_leaves_input_record_untouched():
    record = new_record("k", "contact-form", T0)
    advance(record, POLICY, T0)
    assert record.count == 0


def test_adaptive_limit_tightens_under_load():
    policy = RateLimitPolicy(category="api", max_requests=100, window_seconds=900, warn_at=80, adaptive=True)
    assert policy.effective_limit(0.0) == 100
    assert policy.effective_limit(1.0) == 70
    assert RateLimitPolicy(category="x", max_requests=100, window_seconds=1, warn_at=1).effective_limit(1.0) == 100
    t = advance(new_record("k", "api", T0), policy, T0, load=1.0)
    assert t.decision.limit == 70


@given(st.lists(st.floats(min_value=0, max_value=3 * 3600, allow_nan=False), min_size=1, max_size=60))
def test_never_more_than_limit_allowed_per_window(offsets):
    record = new_record("k", "contact-form", T0)
    allowed_by_window = {}
    for offset in sorted(offsets):
        now = T0 + offset
        t = advance(record, POLICY, now)
        record = t.record
        if t.decision.allowed:
            allowed_by_window.setdefault(record.window_start, 0)
            allowed_by_window[record.window_start] += 1
    assert all(n <= POLICY.max_requests for n in allowed_by_window.values())


BURST = RateLimitPolicy(
    category="contact-form",
    max_requests=5,
    window_seconds=3600,
    warn_at=4,
    burst_window_seconds=10,
    max_burst_requests=2,
)


def test_burst_window_denies_without_counting():
    record, ts = _run(new_record("k", "contact-form", T0), 3, T0, policy=BURST)
    assert [t.decision.allowed for t in ts] == [True, True, False]
    denied = ts[-1].decision
    assert denied.reason == DenyReason.BURST_PROTECTION
    assert denied.retry_after_seconds == 10
    assert denied.remaining == 3
    assert ts[-1].entered is None
    assert record.count == 2
    assert record.violations == 0
    assert record.history == [T0, T0]


def test_burst_retry_tracks_oldest_request_in_window():
    record = advance(new_record("k", "contact-form", T0), BURST, T0).record
    record = advance(record, BURST, T0 + 4).record
    denied = advance(record, BURST, T0 + 6).decision
    assert denied.reason == DenyReason.BURST_PROTECTION
    assert denied.retry_after_seconds == 4
    # once the first request leaves the burst window a slot opens again
    assert advance(record, BURST, T0 + 10.5).decision.allowed


def test_window_limit_still_applies_with_burst_protection():
    record = new_record("k", "contact-form", T0)
    decisions = []
    for i in range(6):
        t = advance(record, BURST, T0 + i * 11)
        record = t.record
        decisions.append(t.decision)
    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[-1].reason == DenyReason.RATE_LIMIT


def test_history_is_trimmed_to_horizon():
    record = new_record("k", "contact-form", T0)
    record.history = [T0 - 2 * 3600, T0 - 10]
    t = advance(record, POLICY, T0)
    assert t.record.history == [T0 - 10, T0]
    assert record.history == [T0 - 2 * 3600, T0 - 10]


def test_client_risk_tightens_adaptive_limit():
    policy = RateLimitPolicy(category="api", max_requests=100, window_seconds=900, warn_at=80, adaptive=True)
    assert policy.effective_limit(0.0, risk=1.0) == 50
    assert policy.effective_limit(1.0, risk=1.0) == 35
    assert policy.effective_limit(0.0, risk=5.0) == 50
    t = advance(new_record("k", "api", T0), policy, T0, risk=0.8)
    assert t.decision.limit == 60
    assert t.decision.client_risk == 0.8
    # non-adaptive policies ignore risk
    assert POLICY.effective_limit(1.0, risk=1.0) == POLICY.max_requests


@given(st.lists(st.floats(min_value=0, max_value=600, allow_nan=False), min_size=1, max_size=60))
def test_never_more_than_burst_allowed_in_burst_window(offsets):
    record = new_record("k", "contact-form", T0)
    admitted = []
    for offset in sorted(offsets):
        t = advance(record, BURST, T0 + offset)
        record = t.record
        if t.decision.allowed:
            admitted.append(T0 + offset)
    for start in admitted:
        inside = [a for a in admitted if start <= a < start + BURST.burst_window_seconds]
        assert len(inside) <= BURST.max_burst_requests
