from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import math
from typing import Callable, Sequence

import pandas as pd

from oi_tracker.analysis.chain_metrics import chain_to_frame, compute_max_pain, find_atm_strike
from oi_tracker.data.market_types import StrikePair
from oi_tracker.models import PatternThresholds
from oi_tracker.schemas.patterns import Direction, PatternIndicator, PatternSignal, PatternType


@dataclass(frozen=True)
class PatternContext:
    underlying: str
    current_price: float
    previous_price: float
    implied_volatility: float | None = None
    timeframe: str = "intraday"
    as_of: datetime | None = None


@dataclass
class _Draft:
    type: PatternType
    strike: float
    direction: Direction
    description: str
    confidence: float
    indicators: list[PatternIndicator] = field(default_factory=list)


def _finite(value: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0


def _ratio(num: float, den: float) -> float:
    den = _finite(den)
    if den == 0:
        return 0.0
    return _finite(num) / den


class PatternEngine:
    """Rule-based option-chain analyzers producing scored, ranked signals.

    `analyze` is pure: the same chain, context and thresholds give the same signals.
    """

    def __init__(self, thresholds: PatternThresholds | None = None) -> None:
        self.thresholds = thresholds or PatternThresholds()

    def analyze(
        self,
        chain: pd.DataFrame | Sequence[StrikePair] | Sequence[dict],
        context: PatternContext,
    ) -> list[PatternSignal]:
        df = chain_to_frame(chain)
        if df.empty:
            return []
        price = _finite(context.current_price)
        atm = find_atm_strike(df["strike"], price)

        analyzers: tuple[Callable[[pd.DataFrame, PatternContext, float], list[_Draft]], ...] = (
            self._long_buildup,
            self._short_covering,
            self._gamma_concentration,
            self._volatility_spike,
            self._unusual_activity,
            self._support_resistance,
            self._momentum_confirmation,
            self._max_pain,
        )
        drafts: list[_Draft] = []
        for analyzer in analyzers:
            drafts.extend(analyzer(df, context, atm))

        as_of = context.as_of or datetime.now(timezone.utc)
        signals = [self._finalize(d, context, as_of) for d in drafts]
        signals.sort(key=lambda s: s.confidence, reverse=True)
        return signals

    # -- scoring helpers --------------------------------------------------

    def clamp_confidence(self, value: float) -> float:
        return min(max(_finite(value), 0.0), self.thresholds.confidence_cap)

    def strength_for(self, confidence: float) -> str:
        if confidence > self.thresholds.strength_high:
            return "HIGH"
        if confidence > self.thresholds.strength_medium:
            return "MEDIUM"
        return "LOW"

    def _indicator(self, name: str, value: float, threshold: float) -> PatternIndicator:
        value = _finite(value)
        if value >= threshold:
            status = "TRIGGERED"
        elif value >= threshold * self.thresholds.approaching_fraction:
            status = "APPROACHING"
        else:
            status = "NORMAL"
        return PatternIndicator(name=name, value=value, threshold=float(threshold), status=status)

    @staticmethod
    def _weighted(values: Sequence[float], limits: Sequence[float], weights: Sequence[float]) -> float:
        total = 0.0
        for value, limit, weight in zip(values, limits, weights):
            total += weight * min(1.0, max(0.0, _ratio(value, limit)))
        return total

    def _finalize(self, draft: _Draft, context: PatternContext, as_of: datetime) -> PatternSignal:
        confidence = self.clamp_confidence(draft.confidence)
        stamp = int(as_of.timestamp() * 1000)
        return PatternSignal(
            id=f"{draft.type.value.lower()}_{context.underlying}_{draft.strike:g}_{stamp}",
            timestamp=as_of,
            valid_until=as_of + timedelta(hours=self.thresholds.signal_validity_hours),
            underlying=context.underlying,
            strike=float(draft.strike),
            type=draft.type,
            direction=draft.direction,
            description=draft.description,
            confidence=confidence,
            strength=self.strength_for(confidence),
            timeframe=context.timeframe,
            indicators=draft.indicators,
        )

    # -- analyzers --------------------------------------------------------

    def _long_buildup(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        out: list[_Draft] = []
        sides = (
            ("call", PatternType.CALL_LONG_BUILDUP, "BULLISH", df["strike"] >= atm),
            ("put", PatternType.PUT_LONG_BUILDUP, "BEARISH", df["strike"] <= atm),
        )
        for side, kind, direction, on_side in sides:
            mask = on_side & (df[f"{side}_oi_change"] > t.oi_buildup_threshold) & (df[f"{side}_ltp_change"] > 0)
            for row in df[mask].itertuples(index=False):
                oi_change = getattr(row, f"{side}_oi_change")
                premium = getattr(row, f"{side}_ltp_change")
                volume = getattr(row, f"{side}_volume")
                out.append(
                    _Draft(
                        type=kind,
                        strike=row.strike,
                        direction=direction,
                        description=(
                            f"{side.title()} long buildup at {row.strike:g}: OI +{oi_change:,.0f}, "
                            f"premium +{premium:.2f}"
                        ),
                        confidence=self._weighted(
                            (oi_change, premium, volume),
                            (t.oi_buildup_threshold, t.premium_change_threshold, t.volume_threshold),
                            t.buildup_weights,
                        ),
                        indicators=[
                            self._indicator("OI Change", oi_change, t.oi_buildup_threshold),
                            self._indicator("Premium Change", premium, t.premium_change_threshold),
                            self._indicator("Volume", volume, t.volume_threshold),
                        ],
                    )
                )
        return out

    def _short_covering(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        out: list[_Draft] = []
        for side, kind, direction in (
            ("call", PatternType.CALL_SHORT_COVER, "BULLISH"),
            ("put", PatternType.PUT_SHORT_COVER, "BEARISH"),
        ):
            mask = (
                (df[f"{side}_oi_change"] < -t.oi_change_threshold)
                & (df[f"{side}_ltp_change"] > t.premium_change_threshold)
                & (df[f"{side}_volume"] > t.volume_threshold)
            )
            for row in df[mask].itertuples(index=False):
                unwound = abs(getattr(row, f"{side}_oi_change"))
                premium = getattr(row, f"{side}_ltp_change")
                volume = getattr(row, f"{side}_volume")
                out.append(
                    _Draft(
                        type=kind,
                        strike=row.strike,
                        direction=direction,
                        description=(
                            f"{side.title()} short covering at {row.strike:g}: OI -{unwound:,.0f}, "
                            f"premium +{premium:.2f}"
                        ),
                        confidence=self._weighted(
                            (unwound, premium, volume),
                            (t.oi_change_threshold, t.premium_change_threshold, t.volume_threshold),
                            t.cover_weights,
                        ),
                        indicators=[
                            self._indicator("OI Unwound", unwound, t.oi_change_threshold),
                            self._indicator("Premium Change", premium, t.premium_change_threshold),
                            self._indicator("Volume", volume, t.volume_threshold),
                        ],
                    )
                )
        return out

    def _gamma_concentration(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        if atm <= 0:
            return []
        near = df[(df["strike"] - atm).abs() / atm <= t.gamma_window_pct]
        call_oi = float(near["call_oi"].sum())
        put_oi = float(near["put_oi"].sum())
        total = call_oi + put_oi
        if total <= t.gamma_oi_floor:
            return []
        if call_oi > put_oi:
            direction: Direction = "BULLISH"
        elif put_oi > call_oi:
            direction = "BEARISH"
        else:
            direction = "NEUTRAL"
        return [
            _Draft(
                type=PatternType.GAMMA_SQUEEZE,
                strike=atm,
                direction=direction,
                description=(
                    f"OI concentrated within {t.gamma_window_pct:.0%} of ATM {atm:g}: "
                    f"{total:,.0f} contracts (calls {call_oi:,.0f}, puts {put_oi:,.0f})"
                ),
                confidence=min(0.95, total / t.gamma_oi_saturation),
                indicators=[
                    self._indicator("Near-ATM OI", total, t.gamma_oi_floor),
                    self._indicator("Put/Call OI", _ratio(put_oi, call_oi), 1.0),
                ],
            )
        ]

    def _volatility_spike(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        avg_call = float(df["call_ltp_change"].abs().mean())
        avg_put = float(df["put_ltp_change"].abs().mean())
        intensity = max(_finite(avg_call), _finite(avg_put))
        if intensity <= t.premium_spike_threshold:
            return []
        indicators = [
            self._indicator("Avg Call Premium Change", avg_call, t.premium_spike_threshold),
            self._indicator("Avg Put Premium Change", avg_put, t.premium_spike_threshold),
        ]
        if context.implied_volatility is not None:
            indicators.append(
                self._indicator("Implied Volatility", context.implied_volatility, t.iv_elevated_threshold)
            )
        return [
            _Draft(
                type=PatternType.VOLATILITY_SPIKE,
                strike=atm,
                direction="NEUTRAL",
                description=f"Premiums moving {intensity:.2f} on average across the chain",
                confidence=min(0.95, intensity / (t.premium_spike_threshold * 2)),
                indicators=indicators,
            )
        ]

    def _unusual_activity(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        volume = df["call_volume"] + df["put_volume"]
        oi = df["call_oi"] + df["put_oi"]
        ratio = (volume / oi.where(oi > 0)).fillna(0.0)
        floor = t.volume_threshold * t.unusual_volume_multiplier
        mask = (ratio > t.unusual_volume_oi_ratio) & (volume > floor)
        out: list[_Draft] = []
        for idx in df.index[mask]:
            row = df.loc[idx]
            r = float(ratio.loc[idx])
            out.append(
                _Draft(
                    type=PatternType.UNUSUAL_ACTIVITY,
                    strike=float(row["strike"]),
                    direction="BULLISH" if row["call_volume"] > row["put_volume"] else "BEARISH",
                    description=f"Unusual activity at {row['strike']:g}: volume/OI {r:.2f}",
                    confidence=min(t.unusual_confidence_cap, r),
                    indicators=[
                        self._indicator("Volume/OI", r, t.unusual_volume_oi_ratio),
                        self._indicator("Volume", float(volume.loc[idx]), floor),
                    ],
                )
            )
        return out

    def _support_resistance(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        price = _finite(context.current_price)
        if price <= 0:
            return []
        total = df["call_oi"] + df["put_oi"]
        near = ((df["strike"] - price).abs() / price <= t.sr_proximity_pct) & (total > t.sr_oi_floor)
        support = near & (df["strike"] < price) & (df["put_oi"] > df["call_oi"])
        resistance = near & (df["strike"] > price) & (df["call_oi"] > df["put_oi"])
        out: list[_Draft] = []
        for mask, label, direction in ((support, "Support", "BULLISH"), (resistance, "Resistance", "BEARISH")):
            for idx in df.index[mask]:
                strike = float(df.at[idx, "strike"])
                oi = float(total.loc[idx])
                out.append(
                    _Draft(
                        type=PatternType.SUPPORT_RESISTANCE,
                        strike=strike,
                        direction=direction,
                        description=f"{label} at {strike:g} with {oi:,.0f} contracts open",
                        confidence=min(t.sr_confidence_cap, oi / t.sr_oi_saturation),
                        indicators=[
                            self._indicator("Total OI", oi, t.sr_oi_floor),
                            self._indicator("Distance %", abs(strike - price) / price * 100, t.sr_proximity_pct * 100),
                        ],
                    )
                )
        return out

    def _momentum_confirmation(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        change_pct = _ratio(_finite(context.current_price) - _finite(context.previous_price), context.previous_price) * 100
        if abs(change_pct) <= t.momentum_price_change_pct:
            return []
        net_flow = float(df["call_oi_change"].sum() - df["put_oi_change"].sum())
        if net_flow == 0:
            return []
        price_direction = "BULLISH" if change_pct > 0 else "BEARISH"
        flow_direction = "BULLISH" if net_flow > 0 else "BEARISH"
        if price_direction != flow_direction:
            return []
        return [
            _Draft(
                type=PatternType.MOMENTUM_SHIFT,
                strike=atm,
                direction=price_direction,
                description=f"Price {change_pct:+.2f}% confirmed by net OI flow {net_flow:+,.0f}",
                confidence=min(t.momentum_confidence_cap, abs(change_pct) / t.momentum_saturation_pct),
                indicators=[
                    self._indicator("Price Change %", abs(change_pct), t.momentum_price_change_pct),
                    self._indicator("Net OI Flow", abs(net_flow), t.oi_change_threshold),
                ],
            )
        ]

    def _max_pain(self, df: pd.DataFrame, context: PatternContext, atm: float) -> list[_Draft]:
        t = self.thresholds
        price = _finite(context.current_price)
        max_pain = compute_max_pain(df)
        if max_pain is None or price <= 0:
            return []
        distance = abs(price - max_pain) / price
        if distance <= t.max_pain_distance_pct:
            return []
        return [
            _Draft(
                type=PatternType.MAX_PAIN,
                strike=max_pain,
                direction="BEARISH" if price > max_pain else "BULLISH",
                description=f"Price {price:g} is {distance:.1%} from max pain {max_pain:g}",
                confidence=min(t.max_pain_confidence_cap, distance * t.max_pain_confidence_scale),
                indicators=[self._indicator("Distance %", distance * 100, t.max_pain_distance_pct * 100)],
            )
        ]


def analyze(
    chain: pd.DataFrame | Sequence[StrikePair] | Sequence[dict],
    context: PatternContext,
    thresholds: PatternThresholds | None = None,
) -> list[PatternSignal]:
    return PatternEngine(thresholds).analyze(chain, context)
