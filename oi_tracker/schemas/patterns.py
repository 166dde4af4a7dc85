from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import Field

from oi_tracker.schemas.common import ArtifactBase


class PatternType(str, Enum):
    CALL_LONG_BUILDUP = "CALL_LONG_BUILDUP"
    PUT_LONG_BUILDUP = "PUT_LONG_BUILDUP"
    CALL_SHORT_COVER = "CALL_SHORT_COVER"
    PUT_SHORT_COVER = "PUT_SHORT_COVER"
    GAMMA_SQUEEZE = "GAMMA_SQUEEZE"
    VOLATILITY_SPIKE = "VOLATILITY_SPIKE"
    UNUSUAL_ACTIVITY = "UNUSUAL_ACTIVITY"
    SUPPORT_RESISTANCE = "SUPPORT_RESISTANCE"
    MOMENTUM_SHIFT = "MOMENTUM_SHIFT"
    MAX_PAIN = "MAX_PAIN"


Direction = Literal["BULLISH", "BEARISH", "NEUTRAL"]
Strength = Literal["HIGH", "MEDIUM", "LOW"]
IndicatorStatus = Literal["TRIGGERED", "APPROACHING", "NORMAL"]


class PatternIndicator(ArtifactBase):
    name: str
    value: float
    threshold: float
    status: IndicatorStatus


class PatternSignal(ArtifactBase):
    id: str
    timestamp: datetime
    valid_until: datetime
    underlying: str
    strike: float
    type: PatternType
    direction: Direction
    description: str
    confidence: float = Field(ge=0.0, le=0.95)
    strength: Strength
    timeframe: str = "intraday"
    indicators: list[PatternIndicator] = Field(default_factory=list)
