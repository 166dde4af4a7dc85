from __future__ import annotations

from datetime import datetime, timezone

import pytest

from oi_tracker.data.providers import MockGateway
from oi_tracker.data.source_registry import DataSourceRegistry

NOW = datetime(2026, 3, 9, 5, 0, tzinfo=timezone.utc)


def _registry() -> DataSourceRegistry:
    reg = DataSourceRegistry(now=lambda: NOW)
    reg.register(MockGateway(name="backup"), priority=2)
    reg.register(MockGateway(name="primary"), priority=1)
    reg.register(MockGateway(name="spare"), priority=3, active=False)
    return reg


def test_active_sources_follow_priority_and_skip_inactive() -> None:
    reg = _registry()
    assert [g.name for g in reg.get_active_sources()] == ["primary", "backup"]
    assert [h.name for h in reg.metrics()] == ["primary", "backup", "spare"]


def test_equal_priority_keeps_registration_order() -> None:
    reg = DataSourceRegistry()
    reg.register(MockGateway(name="a"), priority=1)
    reg.register(MockGateway(name="b"), priority=1)
    assert [g.name for g in reg.get_active_sources()] == ["a", "b"]


def test_register_rejects_duplicates_and_bad_priority() -> None:
    reg = _registry()
    with pytest.raises(ValueError, match="already registered"):
        reg.register(MockGateway(name="primary"), priority=4)
    with pytest.raises(ValueError, match="priority"):
        reg.register(MockGateway(name="zero"), priority=0)
    with pytest.raises(KeyError):
        reg.health("missing")


def test_record_outcome_tracks_counts_and_mean_latency() -> None:
    reg = _registry()
    reg.record_outcome("primary", success=True, latency_ms=100.0)
    reg.record_outcome("primary", success=False, latency_ms=9_000.0)
    health = reg.record_outcome("primary", success=True, latency_ms=300.0)

    assert health.total_requests == 3
    assert health.successful_requests == 2
    assert health.failed_requests == 1
    assert health.avg_response_time_ms == pytest.approx(200.0)
    assert health.success_rate == pytest.approx(200.0 / 3)
    assert health.last_success == NOW
    assert health.last_failure == NOW


def test_failures_never_reorder_sources() -> None:
    reg = _registry()
    for _ in range(5):
        reg.record_outcome("primary", success=False, latency_ms=10.0)
    reg.record_outcome("backup", success=True, latency_ms=10.0)

    assert [g.name for g in reg.get_active_sources()] == ["primary", "backup"]


def test_switch_primary_leaves_only_the_named_source_active() -> None:
    reg = _registry()
    reg.switch_primary("backup")

    assert [g.name for g in reg.get_active_sources()] == ["backup"]
    assert reg.health("backup").priority == 2

    reg.set_active("primary", True)
    assert [g.name for g in reg.get_active_sources()] == ["primary", "backup"]
