import asyncio
import contextlib
from concurrent.futures import ThreadPoolExecutor

import pytest

from abuse_guard.models import (
    AdmissionState,
    DenyReason,
    RequestContext,
    SecurityEventType,
    SecuritySeverity,
)
from abuse_guard.models import RateLimitPolicy
from abuse_guard.rate_limit import InMemoryRecordStore, RateLimitEngine

from conftest import CONTACT

CTX = RequestContext(ip_address="203.0.113.5", user_agent="test-agent", path="/contact", method="POST")


class BrokenStore(InMemoryRecordStore):
    def get(self, key):
        raise ConnectionError("store unreachable")


class EvictionFailingStore(InMemoryRecordStore):
    """Reads and writes work; sizing for capacity eviction does not."""

    def size(self):
        raise RuntimeError("size unavailable")


def _hit(engine, key, n, category=CONTACT):
    return [engine.check_admission(key, category, CTX) for _ in range(n)]


def test_block_attaches_medium_notification(engine):
    decisions = _hit(engine, "client-a", 6)
    assert all(d.notification is None for d in decisions[:5])
    note = decisions[-1].notification
    assert note.type == SecurityEventType.RATE_LIMIT_EXCEEDED
    assert note.severity == SecuritySeverity.MEDIUM
    assert note.client_id == "client-a"
    assert note.ip_address == "203.0.113.5"
    assert note.details["category"] == CONTACT
    assert note.details["reason"] == DenyReason.RATE_LIMIT.value


def test_repeat_denials_in_same_window_do_not_renotify(engine):
    decisions = _hit(engine, "client-a", 9)
    notified = [d for d in decisions if d.notification is not None]
    assert len(notified) == 1
    assert engine.denied_checks == 4
    assert engine.total_checks == 9


def test_penalty_notification_is_high(engine, clock, contact_policy):
    last = None
    for _ in range(contact_policy.escalation_threshold):
        last = _hit(engine, "client-a", 6)[-1]
        clock.advance(contact_policy.window_seconds)
    assert last.state == AdmissionState.PENALIZED
    assert last.notification.severity == SecuritySeverity.HIGH
    assert last.retry_after_seconds > contact_policy.window_seconds

    during = engine.check_admission("client-a", CONTACT, CTX)
    assert not during.allowed
    assert during.reason == DenyReason.PENALTY_BLOCK
    assert during.notification is None


def test_clear_client_lifts_penalty(engine, clock, contact_policy):
    for _ in range(contact_policy.escalation_threshold):
        _hit(engine, "client-a", 6)
        clock.advance(contact_policy.window_seconds)
    _hit(engine, "client-a", 1, category="api")

    assert engine.clear_client("client-a") == 2
    assert engine.get_client_info("client-a") == {}
    decision = engine.check_admission("client-a", CONTACT, CTX)
    assert decision.allowed
    assert decision.count == 1
    assert engine.clear_client("nobody") == 0


def test_categories_are_tracked_independently(engine):
    _hit(engine, "client-a", 6)
    assert engine.check_admission("client-a", "api", CTX).allowed
    assert not engine.check_admission("client-a", CONTACT, CTX).allowed
    assert engine.check_admission("client-b", CONTACT, CTX).allowed


def test_unknown_category_uses_default_policy(engine):
    policy = engine.policy_for("reports")
    assert policy.category == "reports"
    assert policy.max_requests == engine.policy_for("api").max_requests
    assert engine.check_admission("client-a", "reports", CTX).limit == 100


def test_client_info_returns_copies(engine):
    _hit(engine, "client-a", 2)
    info = engine.get_client_info("client-a")
    info[CONTACT].count = 999
    assert engine.get_client_info("client-a")[CONTACT].count == 2


def test_evict_idle_keeps_penalized_records(engine, clock, contact_policy):
    for _ in range(contact_policy.escalation_threshold):
        _hit(engine, "penalized", 6)
        clock.advance(contact_policy.window_seconds)
    _hit(engine, "idle", 1)

    clock.advance(engine.idle_ttl_seconds + 1)
    assert engine.evict_idle() == 1
    assert engine.get_client_info("idle") == {}
    assert CONTACT in engine.get_client_info("penalized")


def test_evicted_client_starts_fresh(engine, clock):
    _hit(engine, "client-a", 6)
    clock.advance(engine.idle_ttl_seconds + 1)
    engine.evict_idle()
    decision = engine.check_admission("client-a", CONTACT, CTX)
    assert decision.allowed
    assert decision.count == 1


def test_record_cap_evicts_least_recently_seen(policies, clock):
    engine = RateLimitEngine(policies, max_records=10, clock=clock)
    for i in range(11):
        engine.check_admission(f"client-{i}", CONTACT, CTX)
        clock.advance(1)
    assert engine.store.size() == 8
    assert engine.get_client_info("client-0") == {}
    assert engine.get_client_info("client-10") != {}


def test_store_failure_fails_open(policies, clock):
    engine = RateLimitEngine(policies, store=BrokenStore(), clock=clock)
    decision = engine.check_admission("client-a", CONTACT, CTX)
    assert decision.allowed
    assert decision.degraded
    assert decision.notification.type == SecurityEventType.SUSPICIOUS_ACTIVITY
    assert decision.notification.severity == SecuritySeverity.CRITICAL
    assert decision.notification.details["error"] == "ConnectionError"


def test_engine_requires_policies():
    with pytest.raises(ValueError):
        RateLimitEngine({})


def test_system_load_is_clamped(engine):
    engine.set_system_load(3)
    assert engine.system_load == 1.0
    engine.set_system_load(-1)
    assert engine.system_load == 0.0


def test_concurrent_checks_do_not_lose_updates(engine):
    limit = engine.policy_for("api").max_requests

    def burst(_):
        return [engine.check_admission("shared", "api").allowed for _ in range(25)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = [allowed for chunk in pool.map(burst, range(8)) for allowed in chunk]

    assert sum(results) == limit
    assert engine.get_client_info("shared")["api"].count == 200


@pytest.mark.asyncio
async def test_eviction_loop_runs_until_cancelled(engine, clock):
    _hit(engine, "client-a", 1)
    clock.advance(engine.idle_ttl_seconds + 1)
    task = asyncio.create_task(engine.run_eviction_loop(0.01))
    for _ in range(100):
        if engine.store.size() == 0:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    assert engine.store.size() == 0


def test_capacity_eviction_failure_keeps_real_decision(policies, clock):
    engine = RateLimitEngine(policies, store=EvictionFailingStore(), clock=clock)
    decisions = _hit(engine, "client-a", 6)
    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert not any(d.degraded for d in decisions)
    assert decisions[0].notification is None
    assert decisions[-1].notification.type == SecurityEventType.RATE_LIMIT_EXCEEDED


def test_runtime_whitelist_skips_limits(engine):
    engine.allow_client("trusted", CONTACT)
    decisions = _hit(engine, "trusted", 10)
    assert all(d.allowed and d.whitelisted for d in decisions)
    assert engine.get_client_info("trusted") == {}
    assert engine.total_checks == 10
    # the whitelist is per category
    assert not engine.check_admission("trusted", "api", CTX).whitelisted


def test_runtime_blacklist_denies(engine):
    engine.deny_client("abuser", CONTACT)
    decision = engine.check_admission("abuser", CONTACT, CTX)
    assert not decision.allowed
    assert decision.reason == DenyReason.BLACKLISTED
    assert decision.retry_after_seconds == 86400
    assert engine.denied_checks == 1
    assert engine.check_admission("abuser", "api", CTX).allowed

    assert engine.unlist_client("abuser") == 1
    assert engine.check_admission("abuser", CONTACT, CTX).allowed
    assert engine.unlist_client("abuser") == 0


def test_lists_move_clients_between_them(engine):
    engine.deny_client("c", CONTACT)
    engine.allow_client("c", CONTACT)
    assert engine.list_status("c", CONTACT) == "whitelist"
    engine.deny_client("c", CONTACT)
    assert engine.list_status("c", CONTACT) == "blacklist"
    assert engine.unlist_client("c", "api") == 0
    assert engine.list_status("c", CONTACT) == "blacklist"


def test_lists_seeded_from_policy(clock):
    policy = RateLimitPolicy(
        category=CONTACT,
        max_requests=1,
        window_seconds=60,
        warn_at=1,
        whitelist=frozenset({"partner"}),
        blacklist=frozenset({"known-bad"}),
        blacklist_block_seconds=600,
    )
    engine = RateLimitEngine({CONTACT: policy}, clock=clock)
    assert all(d.allowed for d in _hit(engine, "partner", 3))
    denied = engine.check_admission("known-bad", CONTACT, CTX)
    assert denied.reason == DenyReason.BLACKLISTED
    assert denied.retry_after_seconds == 600


def test_burst_protection_through_engine(clock):
    policy = RateLimitPolicy(
        category=CONTACT,
        max_requests=5,
        window_seconds=3600,
        warn_at=4,
        burst_window_seconds=10,
        max_burst_requests=2,
    )
    engine = RateLimitEngine({CONTACT: policy}, clock=clock)
    decisions = _hit(engine, "client-a", 3)
    assert decisions[-1].reason == DenyReason.BURST_PROTECTION
    assert decisions[-1].notification is None
    assert engine.denied_checks == 1
    clock.advance(11)
    assert engine.check_admission("client-a", CONTACT, CTX).allowed
    assert engine.get_client_info("client-a")[CONTACT].count == 3


def test_uniform_rapid_client_is_flagged_suspicious(engine, clock):
    decisions = []
    for _ in range(6):
        decisions.append(engine.check_admission("metronome", "api", CTX))
        clock.advance(0.5)
    assert engine.suspicious_activities == 1
    assert decisions[-1].client_risk == pytest.approx(0.8)
    assert decisions[0].client_risk == pytest.approx(0.1)
    assert engine.get_client_info("metronome")["api"].suspicious
    assert len(engine.get_client_info("metronome")["api"].history) == 6


def test_slow_client_is_not_flagged(engine, clock):
    for _ in range(6):
        engine.check_admission("human", "api", CTX)
        clock.advance(30)
    assert engine.suspicious_activities == 0
    assert not engine.get_client_info("human")["api"].suspicious


def test_trends_bucket_checks_by_utc_hour_and_weekday(engine, clock):
    # 1_700_000_000 is Tuesday 2023-11-14 22:13:20 UTC
    _hit(engine, "client-a", 3)
    clock.advance(3 * 3600)
    _hit(engine, "client-a", 1)
    trends = engine.trends()
    assert len(trends["hourly"]) == 24
    assert len(trends["daily"]) == 7
    assert trends["hourly"][22] == 3
    assert trends["hourly"][1] == 1
    assert trends["daily"][2] == 3
    assert trends["daily"][3] == 1
    assert sum(trends["hourly"]) == engine.total_checks == 4
