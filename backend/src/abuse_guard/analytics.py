"""
Rate limit analytics.

AnalyticsAggregator holds no state. Every call walks the engine's records once and
derives counts from the state each record is in at that moment, so reading never
resets or alters a counter. A BLOCKED record whose window has ended, or a PENALIZED
record whose penalty expired, counts as OK.

The cumulative counters (checks, suspicious activities, hourly and daily trends) are
read from the engine.

RateLimitCollector exposes the same numbers as Prometheus gauges.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from .admission import effective_state
from .fingerprint import redact_client_key
from .models import AdmissionState, AnalyticsSnapshot, TopClient
from .rate_limit import RateLimitEngine

TOP_CLIENTS = 10
_DENYING_STATES = (AdmissionState.BLOCKED, AdmissionState.PENALIZED)


def _empty_counts() -> Dict[str, int]:
    return {state.value: 0 for state in AdmissionState}


class AnalyticsAggregator:
    """Point-in-time summaries over RateLimitEngine state."""

    def __init__(self, engine: RateLimitEngine) -> None:
        self._engine = engine

    def _observe(self, now: float):
        """Yield (client_key, category, effective state, requests in current window, suspicious)."""
        for (client_key, category), record in self._engine.iter_records():
            policy = self._engine.policy_for(category)
            in_window = record.count if now - record.window_start < policy.window_seconds else 0
            yield client_key, category, effective_state(record, policy, now), in_window, record.suspicious

    # PUBLIC_INTERFACE
    def snapshot(self) -> AnalyticsSnapshot:
        """Counts by state, distinct clients, the load factor and request trends."""
        counts = _empty_counts()
        clients = set()
        blocked = set()
        suspicious = set()
        requests = 0
        top: List[TopClient] = []
        now = self._engine.now()

        for client_key, category, state, in_window, flagged in self._observe(now):
            counts[state.value] += 1
            clients.add(client_key)
            requests += in_window
            if flagged:
                suspicious.add(client_key)
            if state in _DENYING_STATES:
                blocked.add(client_key)
            top.append(
                TopClient(
                    client=redact_client_key(client_key),
                    category=category,
                    requests=in_window,
                    blocked=state in _DENYING_STATES,
                )
            )

        tracked = sum(counts.values())
        not_ok = tracked - counts[AdmissionState.OK.value]
        top.sort(key=lambda c: c.requests, reverse=True)
        return AnalyticsSnapshot(
            generated_at=now,
            tracked_records=tracked,
            active_clients=len(clients),
            blocked_clients=len(blocked),
            state_counts=counts,
            load_factor=(not_ok / tracked) if tracked else 0.0,
            total_checks=self._engine.total_checks,
            denied_checks=self._engine.denied_checks,
            avg_requests_per_client=(requests / tracked) if tracked else 0.0,
            suspicious_clients=len(suspicious),
            suspicious_activities=self._engine.suspicious_activities,
            top_clients=top[:TOP_CLIENTS],
            trends=self._engine.trends(),
        )

    def _category_breakdown(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for category, policy in self._engine.policies.items():
            out[category] = {
                "tracked": 0,
                "states": _empty_counts(),
                "requestsInWindow": 0,
                "policy": {
                    "maxRequests": policy.max_requests,
                    "windowSeconds": policy.window_seconds,
                    "warnAt": policy.warn_at,
                    "escalationThreshold": policy.escalation_threshold,
                    "escalationFactor": policy.escalation_factor,
                    "adaptive": policy.adaptive,
                    "burstWindowSeconds": policy.burst_window_seconds,
                    "maxBurstRequests": policy.max_burst_requests,
                },
            }
        for _, category, state, in_window, _flagged in self._observe(self._engine.now()):
            entry = out.setdefault(
                category,
                {"tracked": 0, "states": _empty_counts(), "requestsInWindow": 0, "policy": None},
            )
            entry["tracked"] += 1
            entry["states"][state.value] += 1
            entry["requestsInWindow"] += in_window
        return out

    # PUBLIC_INTERFACE
    def export_metrics(self) -> Dict[str, Any]:
        """Snapshot plus per-category breakdown, for monitoring systems."""
        snap = self.snapshot()
        return {
            "timestamp": snap.generated_at,
            "metrics": snap.to_dict(),
            "systemLoad": snap.load_factor,
            "appliedLoad": self._engine.system_load,
            "activeClients": snap.active_clients,
            "categories": self._category_breakdown(),
        }


class RateLimitCollector:
    """Custom Prometheus collector reading the aggregator at scrape time."""

    def __init__(self, aggregator: AnalyticsAggregator) -> None:
        self._aggregator = aggregator

    def collect(self) -> Iterable:
        metrics = self._aggregator.export_metrics()
        snap = metrics["metrics"]

        yield GaugeMetricFamily(
            "abuse_guard_active_clients", "Distinct clients with tracked records", value=snap["active_clients"]
        )
        yield GaugeMetricFamily(
            "abuse_guard_blocked_clients", "Clients currently blocked or penalized", value=snap["blocked_clients"]
        )
        yield GaugeMetricFamily(
            "abuse_guard_load_factor", "Fraction of tracked records not in OK state", value=snap["load_factor"]
        )
        yield GaugeMetricFamily(
            "abuse_guard_suspicious_clients", "Clients flagged as suspicious", value=snap["suspicious_clients"]
        )
        checks = CounterMetricFamily("abuse_guard_admission_checks", "Admission checks by outcome", labels=["outcome"])
        checks.add_metric(["allowed"], snap["total_checks"] - snap["denied_checks"])
        checks.add_metric(["denied"], snap["denied_checks"])
        yield checks
        yield CounterMetricFamily(
            "abuse_guard_suspicious_activities",
            "Admission checks scored above the suspicion threshold",
            value=snap["suspicious_activities"],
        )

        records = GaugeMetricFamily(
            "abuse_guard_records", "Tracked records by category and state", labels=["category", "state"]
        )
        for category, entry in metrics["categories"].items():
            for state, count in entry["states"].items():
                records.add_metric([category, state], count)
        yield records


# PUBLIC_INTERFACE
def render_prometheus(aggregator: AnalyticsAggregator) -> bytes:
    """Prometheus text exposition of the current analytics."""
    registry = CollectorRegistry()
    registry.register(RateLimitCollector(aggregator))
    return generate_latest(registry)
