from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime, timezone
import logging
import time
from typing import Callable

from oi_tracker.data.market_calendar import SessionCalendar
from oi_tracker.data.market_types import AuthError, MalformedPayloadError, MarketSnapshot
from oi_tracker.data.providers.base import DEFAULT_CALL_TIMEOUT_SECONDS, ProviderGateway, normalize_option_chain
from oi_tracker.data.source_registry import DataSourceRegistry

logger = logging.getLogger(__name__)


class SnapshotAcquirer:
    """Fetch one market snapshot per symbol, falling back through sources in priority order.

    Returns None when every active source fails; callers skip the symbol for that cycle.
    """

    def __init__(
        self,
        registry: DataSourceRegistry,
        *,
        calendar: SessionCalendar | None = None,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._calendar = calendar or SessionCalendar.from_config()
        self._call_timeout_seconds = float(call_timeout_seconds)
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def registry(self) -> DataSourceRegistry:
        return self._registry

    def acquire(self, symbol: str, *, expiry: date | None = None) -> MarketSnapshot | None:
        sym = symbol.strip().upper()
        now = self._now()
        target_expiry = expiry or self._calendar.next_expiry(now)

        sources = self._registry.get_active_sources()
        if not sources:
            logger.warning("%s: no active data sources", sym)
            return None

        for gateway in sources:
            started = time.perf_counter()
            try:
                snapshot = self._attempt(gateway, sym, target_expiry, timestamp=now, started=started)
            except Exception as exc:  # noqa: BLE001
                latency_ms = (time.perf_counter() - started) * 1000.0
                self._registry.record_outcome(gateway.name, success=False, latency_ms=latency_ms)
                if isinstance(exc, AuthError) and gateway.is_unauthenticated:
                    self._registry.set_active(gateway.name, False)
                logger.warning("%s %s: %s failed after %.0fms: %s", sym, target_expiry, gateway.name, latency_ms, exc)
                continue

            self._registry.record_outcome(gateway.name, success=True, latency_ms=snapshot.latency_ms)
            logger.info(
                "%s %s: %d strikes from %s in %.0fms",
                sym,
                target_expiry,
                len(snapshot.chain),
                gateway.name,
                snapshot.latency_ms,
            )
            return snapshot

        logger.warning("%s: all %d data sources failed; skipping this cycle", sym, len(sources))
        return None

    def _attempt(
        self,
        gateway: ProviderGateway,
        symbol: str,
        expiry: date,
        *,
        timestamp: datetime,
        started: float,
    ) -> MarketSnapshot:
        quote = gateway.get_quote(symbol, timeout_seconds=self._call_timeout_seconds)
        if quote.last_price <= 0:
            raise MalformedPayloadError(f"{gateway.name}: non-positive last price for {symbol}")
        raw_chain = gateway.get_option_chain_raw(symbol, expiry, timeout_seconds=self._call_timeout_seconds)
        chain = normalize_option_chain(raw_chain, source=gateway.name)
        if not chain:
            raise MalformedPayloadError(f"{gateway.name}: empty option chain for {symbol} {expiry}")

        latency_ms = (time.perf_counter() - started) * 1000.0
        return MarketSnapshot(
            symbol=symbol,
            timestamp=timestamp,
            current_price=float(quote.last_price),
            previous_price=float(quote.close) if quote.close > 0 else float(quote.last_price),
            chain=tuple(chain),
            data_source=gateway.name,
            latency_ms=latency_ms,
            expiry=expiry,
            raw={"quote": asdict(quote), "option_chain": raw_chain},
        )
