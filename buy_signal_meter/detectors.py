from __future__ import annotations

import math
from typing import List

from .indicators import IndicatorSet
from .models import (
    ACCUMULATION,
    BAND_BREAK,
    V_REVERSAL,
    CandleSeries,
    Evidence,
    Signal,
)

# Accumulation: volume surge on a flat tape
ACC_MIN_VOLUME_CHANGE = 30.0
ACC_MIN_STABILITY = 70.0

# V-reversal: oscillator pivot inside the oversold zone
VR_OVERSOLD = 30.0

# Band break: a close within 1% under the lower band still counts as recovering
BB_RECOVERY_RATIO = 0.99


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def clamp_strength(x: float) -> int:
    return max(0, min(100, round_half_up(x)))


def detect_accumulation(series: CandleSeries, indicators: IndicatorSet) -> Signal:
    """Volume up >= 30% over its 5-bar mean while price stays flat (stability >= 70)."""
    series.require(1, "accumulation detector")
    vol_chg = indicators.volume_change.latest()
    stability = indicators.price_stability.latest()
    if vol_chg is None or stability is None:
        return Signal.not_detected(ACCUMULATION, "Volume/stability still warming up")

    evidence = [
        Evidence("volume_change_pct", vol_chg),
        Evidence("price_stability", stability),
    ]
    if vol_chg < ACC_MIN_VOLUME_CHANGE or stability < ACC_MIN_STABILITY:
        return Signal.not_detected(
            ACCUMULATION,
            f"No accumulation: volume {vol_chg:+.1f}%, stability {stability:.1f}",
            evidence,
        )

    # 30% -> 0, 100% -> 50 ; 70 -> 0, 100 -> 50
    volume_score = min(50.0, (vol_chg - ACC_MIN_VOLUME_CHANGE) * (50.0 / 70.0))
    stability_score = min(50.0, (stability - ACC_MIN_STABILITY) * (50.0 / 30.0))
    evidence.append(Evidence("volume_score", volume_score))
    evidence.append(Evidence("stability_score", stability_score))
    return Signal(
        type=ACCUMULATION,
        detected=True,
        strength=clamp_strength(volume_score + stability_score),
        message=f"Volume up {vol_chg:.1f}% with price stability {stability:.1f}",
        evidence=tuple(evidence),
    )


def detect_v_reversal(series: CandleSeries, indicators: IndicatorSet) -> Signal:
    """RSI bottoms at t-1 in oversold territory while the MACD histogram turns up."""
    series.require(3, "v_reversal detector")
    rsi = indicators.rsi
    hist = indicators.macd.histogram
    r_before = rsi.previous(2)
    r_pivot = rsi.previous(1)
    r_now = rsi.latest()
    h_prev = hist.previous(1)
    h_now = hist.latest()
    if None in (r_before, r_pivot, r_now, h_prev, h_now):
        return Signal.not_detected(V_REVERSAL, "RSI/MACD still warming up")

    evidence = [
        Evidence("rsi", r_pivot, details=f"{r_before:.1f} -> {r_pivot:.1f} -> {r_now:.1f}"),
        Evidence("macd_histogram_delta", h_now - h_prev, details=f"{h_prev:.6g} -> {h_now:.6g}"),
    ]
    bottomed = r_before > r_pivot < r_now
    oversold = r_pivot <= VR_OVERSOLD
    improving = h_prev < h_now
    if not (bottomed and oversold and improving):
        reasons = []
        if not bottomed:
            reasons.append("no RSI trough")
        if not oversold:
            reasons.append(f"RSI {r_pivot:.1f} above {VR_OVERSOLD:.0f}")
        if not improving:
            reasons.append("MACD histogram not rising")
        return Signal.not_detected(V_REVERSAL, "No V-reversal: " + ", ".join(reasons), evidence)

    # deeper oversold scores higher (30 -> 30, 0 -> 60); histogram slope adds up to 40
    rsi_score = min(60.0, 30.0 + (VR_OVERSOLD - r_pivot))
    macd_score = min(40.0, max(0.0, (h_now - h_prev) * 1000.0))
    evidence.append(Evidence("rsi_score", rsi_score))
    evidence.append(Evidence("macd_score", macd_score))
    return Signal(
        type=V_REVERSAL,
        detected=True,
        strength=clamp_strength(rsi_score + macd_score),
        message=f"RSI recovered {r_pivot:.1f} -> {r_now:.1f}, MACD histogram improving",
        evidence=tuple(evidence),
    )


def detect_band_break(series: CandleSeries, indicators: IndicatorSet) -> Signal:
    """Low pierced the lower band at t-1 or t and the close at t is back near/above it."""
    series.require(2, "band_break detector")
    lower_now = indicators.bands.lower.latest()
    lower_prev = indicators.bands.lower.previous(1)
    if lower_now is None:
        return Signal.not_detected(BAND_BREAK, "Bands still warming up")
    if lower_now <= 0:
        return Signal.not_detected(BAND_BREAK, f"Lower band not positive ({lower_now:.6g})")

    cur = series.latest()
    prev = series.previous(1)
    current_broke = cur.low < lower_now
    prev_broke = lower_prev is not None and lower_prev > 0 and prev.low < lower_prev
    close_ratio = cur.close / lower_now
    recovering = cur.close > lower_now or close_ratio > BB_RECOVERY_RATIO

    evidence = [
        Evidence("lower_band", lower_now),
        Evidence("low", cur.low),
        Evidence("close_to_lower_ratio", close_ratio),
    ]
    if lower_prev is not None:
        evidence.append(Evidence("prev_lower_band", lower_prev, details=f"prev low {prev.low:.6g}"))

    if not ((current_broke or prev_broke) and recovering):
        why = "no lower-band breach" if not (current_broke or prev_broke) else "close not recovering"
        return Signal.not_detected(BAND_BREAK, f"No band break: {why}", evidence)

    # 0..5% breach -> 0..30 points, current bar preferred
    if current_broke:
        breakthrough_score = min(30.0, (1.0 - cur.low / lower_now) * 600.0)
    else:
        breakthrough_score = min(30.0, (1.0 - prev.low / lower_prev) * 600.0)

    if cur.close > lower_now:
        # 0..5% above the band -> 30..70 points
        recovery_score = 30.0 + min(40.0, (close_ratio - 1.0) * 800.0)
    else:
        recovery_score = min(25.0, close_ratio * 100.0 - 75.0)

    evidence.append(Evidence("breakthrough_score", breakthrough_score, details="current" if current_broke else "previous"))
    evidence.append(Evidence("recovery_score", recovery_score))
    return Signal(
        type=BAND_BREAK,
        detected=True,
        strength=clamp_strength(breakthrough_score + recovery_score),
        message="Price broke below the lower volatility band and is recovering",
        evidence=tuple(evidence),
    )


def detect_all(series: CandleSeries, indicators: IndicatorSet) -> List[Signal]:
    return [
        detect_accumulation(series, indicators),
        detect_v_reversal(series, indicators),
        detect_band_break(series, indicators),
    ]
