from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import threading
from typing import Callable

from oi_tracker.data.providers.base import ProviderGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataSourceHealth:
    name: str
    priority: int
    is_active: bool = True
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    avg_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return self.successful_requests / self.total_requests * 100.0


class _SourceEntry:
    def __init__(self, gateway: ProviderGateway, health: DataSourceHealth, order: int) -> None:
        self.gateway = gateway
        self.health = health
        self.order = order
        self.lock = threading.Lock()


class DataSourceRegistry:
    """Priority-ordered gateways with live health.

    Priority is static configuration (1 is tried first); health never reorders sources.
    """

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._entries: dict[str, _SourceEntry] = {}
        self._register_lock = threading.Lock()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def register(self, gateway: ProviderGateway, *, priority: int, active: bool = True) -> None:
        if priority < 1:
            raise ValueError("priority must be >= 1")
        with self._register_lock:
            if gateway.name in self._entries:
                raise ValueError(f"data source already registered: {gateway.name}")
            health = DataSourceHealth(name=gateway.name, priority=int(priority), is_active=bool(active))
            self._entries[gateway.name] = _SourceEntry(gateway, health, order=len(self._entries))

    def _entry(self, name: str) -> _SourceEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise KeyError(f"unknown data source: {name}")
        return entry

    def get(self, name: str) -> ProviderGateway:
        return self._entry(name).gateway

    def names(self) -> list[str]:
        return list(self._entries)

    def get_active_sources(self) -> list[ProviderGateway]:
        entries = [e for e in list(self._entries.values()) if e.health.is_active]
        entries.sort(key=lambda e: (e.health.priority, e.order))
        return [e.gateway for e in entries]

    def record_outcome(self, name: str, *, success: bool, latency_ms: float) -> DataSourceHealth:
        entry = self._entry(name)
        now = self._now()
        with entry.lock:
            h = entry.health
            if success:
                ok = h.successful_requests + 1
                avg = h.avg_response_time_ms + (float(latency_ms) - h.avg_response_time_ms) / ok
                entry.health = replace(
                    h,
                    total_requests=h.total_requests + 1,
                    successful_requests=ok,
                    last_success=now,
                    avg_response_time_ms=avg,
                )
            else:
                entry.health = replace(
                    h,
                    total_requests=h.total_requests + 1,
                    failed_requests=h.failed_requests + 1,
                    last_failure=now,
                )
            return entry.health

    def set_active(self, name: str, active: bool) -> None:
        entry = self._entry(name)
        with entry.lock:
            if entry.health.is_active != bool(active):
                logger.info("data source %s %s", name, "activated" if active else "deactivated")
            entry.health = replace(entry.health, is_active=bool(active))

    def switch_primary(self, name: str) -> None:
        """Make `name` the only active source. Its configured priority is unchanged."""
        self._entry(name)
        for other in self.names():
            self.set_active(other, other == name)

    def health(self, name: str) -> DataSourceHealth:
        return self._entry(name).health

    def metrics(self) -> list[DataSourceHealth]:
        entries = sorted(self._entries.values(), key=lambda e: (e.health.priority, e.order))
        return [e.health for e in entries]
