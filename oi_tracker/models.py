from __future__ import annotations

from datetime import time
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

GatewayKind = Literal["angel_one", "dhan", "mock", "simulated"]


class ProviderCredentials(BaseModel):
    """Already-decrypted broker credentials handed in by the credential store."""

    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    api_key: str = ""
    api_secret: str = ""
    pin: str = ""
    totp_seed: str = ""
    access_token: str = ""


class PatternThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Directional buildups / covering
    oi_buildup_threshold: float = Field(default=10_000, gt=0)
    oi_change_threshold: float = Field(default=5_000, gt=0)
    premium_change_threshold: float = Field(default=5.0, gt=0)
    volume_threshold: float = Field(default=10_000, gt=0)
    buildup_weights: tuple[float, float, float] = (0.4, 0.3, 0.3)
    cover_weights: tuple[float, float, float] = (0.4, 0.4, 0.2)

    # Gamma concentration
    gamma_window_pct: float = Field(default=0.05, gt=0, le=1.0)
    gamma_oi_floor: float = Field(default=100_000, ge=0)
    gamma_oi_saturation: float = Field(default=500_000, gt=0)

    # Volatility spike
    premium_spike_threshold: float = Field(default=15.0, gt=0)
    iv_elevated_threshold: float = Field(default=25.0, gt=0)

    # Unusual activity
    unusual_volume_oi_ratio: float = Field(default=0.5, gt=0)
    unusual_volume_multiplier: float = Field(default=2.0, gt=0)
    unusual_confidence_cap: float = Field(default=0.9, ge=0, le=1.0)

    # Support / resistance
    sr_proximity_pct: float = Field(default=0.02, gt=0, le=1.0)
    sr_oi_floor: float = Field(default=50_000, ge=0)
    sr_oi_saturation: float = Field(default=100_000, gt=0)
    sr_confidence_cap: float = Field(default=0.85, ge=0, le=1.0)

    # Momentum confirmation
    momentum_price_change_pct: float = Field(default=2.0, gt=0)
    momentum_saturation_pct: float = Field(default=5.0, gt=0)
    momentum_confidence_cap: float = Field(default=0.9, ge=0, le=1.0)

    # Max pain
    max_pain_distance_pct: float = Field(default=0.02, ge=0)
    max_pain_confidence_scale: float = Field(default=10.0, gt=0)
    max_pain_confidence_cap: float = Field(default=0.8, ge=0, le=1.0)

    # Scoring
    confidence_cap: float = Field(default=0.95, ge=0, le=0.95)
    strength_high: float = Field(default=0.8, ge=0, le=1.0)
    strength_medium: float = Field(default=0.6, ge=0, le=1.0)
    approaching_fraction: float = Field(default=0.8, gt=0, le=1.0)
    signal_validity_hours: float = Field(default=4.0, gt=0)

    @model_validator(mode="after")
    def _validate_strength_bands(self) -> "PatternThresholds":
        if self.strength_medium > self.strength_high:
            raise ValueError("strength_medium must be <= strength_high")
        return self


class SourceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    kind: GatewayKind
    priority: int = Field(ge=1)
    active: bool = True
    min_interval_ms: int = Field(default=2000, ge=0)
    seed: int | None = None


class StorageConfig(BaseModel):
    duckdb_path: Path = Path("data/warehouse/oi_tracker.duckdb")
    archive_root: Path = Path("data/archive")


class PollingConfig(BaseModel):
    interval_seconds: float = Field(default=60.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    call_timeout_seconds: float = Field(default=10.0, gt=0)


class SessionConfig(BaseModel):
    timezone: str = "Asia/Kolkata"
    open: time = time(9, 15)
    close: time = time(15, 30)
    eod_cutoff: time = time(15, 45)
    weekdays: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])

    @model_validator(mode="after")
    def _validate_hours(self) -> "SessionConfig":
        if self.open >= self.close:
            raise ValueError("session.open must be before session.close")
        if self.eod_cutoff < self.close:
            raise ValueError("session.eod_cutoff must not be before session.close")
        return self


class ReconciliationConfig(BaseModel):
    weekday: int = Field(default=5, ge=0, le=6)
    run_at: time = time(6, 0)


class DeltaConfig(BaseModel):
    significance_floor: int = Field(default=0, ge=0)
    large_delta_threshold: int = Field(default=1000, ge=0)


class TrackerConfig(BaseModel):
    schema_version: int = 1
    symbols: list[str] = Field(default_factory=lambda: ["NIFTY", "BANKNIFTY", "FINNIFTY"])
    storage: StorageConfig = Field(default_factory=StorageConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    deltas: DeltaConfig = Field(default_factory=DeltaConfig)
    sources: list[SourceConfig] = Field(default_factory=list)
    patterns: PatternThresholds = Field(default_factory=PatternThresholds)

    @model_validator(mode="after")
    def _validate_sources(self) -> "TrackerConfig":
        names = [s.name for s in self.sources]
        if len(names) != len(set(names)):
            raise ValueError("sources contain duplicate 'name' values")
        self.symbols = [s.strip().upper() for s in self.symbols if s.strip()]
        return self
