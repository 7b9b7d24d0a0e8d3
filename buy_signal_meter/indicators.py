from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence
import math

from .config import IndicatorConfig
from .errors import InsufficientHistory
from .models import CandleSeries, IndicatorLine


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def rma_next(prev: Optional[float], x: float, length: int) -> float:
    """Wilder's RMA (the smoothing behind RSI)."""
    if length <= 1:
        return x
    if prev is None:
        return x
    alpha = 1.0 / float(length)
    return prev + alpha * (x - prev)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def pstdev(values: Sequence[float]) -> float:
    """Population standard deviation (divides by N)."""
    n = len(values)
    if n == 0:
        return 0.0
    mean = sum(values) / n
    return math.sqrt(sum((v - mean) ** 2 for v in values) / n)


def _check_period(period: int, name: str) -> None:
    if int(period) <= 0:
        raise ValueError(f"{name} period must be positive, got {period}")


@dataclass(frozen=True)
class BollingerBands:
    upper: IndicatorLine
    middle: IndicatorLine
    lower: IndicatorLine


@dataclass(frozen=True)
class MacdResult:
    line: IndicatorLine
    signal: IndicatorLine
    histogram: IndicatorLine


@dataclass(frozen=True)
class IndicatorSet:
    bands: BollingerBands
    rsi: IndicatorLine
    macd: MacdResult
    volume_change: IndicatorLine
    price_stability: IndicatorLine


def bollinger_bands(closes: Sequence[float], period: int = 20, mult: float = 2.0) -> BollingerBands:
    _check_period(period, "bollinger")
    n = len(closes)
    if n < period:
        raise InsufficientHistory("bollinger_bands", period, n)

    upper: List[Optional[float]] = [None] * n
    middle: List[Optional[float]] = [None] * n
    lower: List[Optional[float]] = [None] * n
    for i in range(period - 1, n):
        window = closes[i - period + 1:i + 1]
        mid = sum(window) / period
        dev = pstdev(window)
        middle[i] = mid
        upper[i] = mid + mult * dev
        lower[i] = mid - mult * dev
    return BollingerBands(
        upper=IndicatorLine("bb_upper", upper),
        middle=IndicatorLine("bb_middle", middle),
        lower=IndicatorLine("bb_lower", lower),
    )


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return max(0.0, min(100.0, 100.0 - (100.0 / (1.0 + rs))))


def rsi(closes: Sequence[float], period: int = 14) -> IndicatorLine:
    _check_period(period, "rsi")
    n = len(closes)
    if n < period + 1:
        raise InsufficientHistory("rsi", period + 1, n)

    out: List[Optional[float]] = [None] * n
    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        ch = closes[i] - closes[i - 1]
        if ch >= 0:
            gains += ch
        else:
            losses -= ch
    avg_gain = gains / period
    avg_loss = losses / period
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, n):
        ch = closes[i] - closes[i - 1]
        avg_gain = rma_next(avg_gain, max(ch, 0.0), period)
        avg_loss = rma_next(avg_loss, max(-ch, 0.0), period)
        out[i] = _rsi_value(avg_gain, avg_loss)
    return IndicatorLine("rsi", out)


def _ema_line(values: Sequence[Optional[float]], length: int) -> List[Optional[float]]:
    """EMA over the defined tail of `values`, seeded with the SMA of its first `length` inputs."""
    out: List[Optional[float]] = [None] * len(values)
    start = next((i for i, v in enumerate(values) if v is not None), None)
    if start is None or len(values) - start < length:
        return out
    seed_idx = start + length - 1
    prev = sum(values[start:seed_idx + 1]) / float(length)
    out[seed_idx] = prev
    for i in range(seed_idx + 1, len(values)):
        prev = ema_next(prev, values[i], length)
        out[i] = prev
    return out


def macd(closes: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MacdResult:
    _check_period(fast, "macd fast")
    _check_period(slow, "macd slow")
    _check_period(signal, "macd signal")
    if fast >= slow:
        raise ValueError(f"macd fast period ({fast}) must be shorter than slow ({slow})")
    n = len(closes)
    if n < slow + signal:
        raise InsufficientHistory("macd", slow + signal, n)

    fast_ema = _ema_line(closes, fast)
    slow_ema = _ema_line(closes, slow)
    line: List[Optional[float]] = [
        (f - s) if (f is not None and s is not None) else None for f, s in zip(fast_ema, slow_ema)
    ]
    sig = _ema_line(line, signal)
    hist: List[Optional[float]] = [
        (m - s) if (m is not None and s is not None) else None for m, s in zip(line, sig)
    ]
    return MacdResult(
        line=IndicatorLine("macd_line", line),
        signal=IndicatorLine("macd_signal", sig),
        histogram=IndicatorLine("macd_histogram", hist),
    )


def volume_change(volumes: Sequence[float], period: int = 5) -> IndicatorLine:
    """Latest volume against the mean of the `period` volumes before it, in percent."""
    _check_period(period, "volume_change")
    n = len(volumes)
    if n < period + 1:
        raise InsufficientHistory("volume_change", period + 1, n)

    out: List[Optional[float]] = [None] * n
    for i in range(period, n):
        avg_prev = sum(volumes[i - period:i]) / period
        if avg_prev <= 0:
            continue
        out[i] = (volumes[i] / avg_prev - 1.0) * 100.0
    return IndicatorLine("volume_change", out)


def price_stability(closes: Sequence[float], period: int = 5) -> IndicatorLine:
    """100 for a perfectly flat window, falling with the window's relative range (floored at 0)."""
    _check_period(period, "price_stability")
    n = len(closes)
    if n < period:
        raise InsufficientHistory("price_stability", period, n)

    out: List[Optional[float]] = [None] * n
    for i in range(period - 1, n):
        window = closes[i - period + 1:i + 1]
        avg = sum(window) / period
        if avg <= 0:
            continue
        volatility = (max(window) - min(window)) / avg
        out[i] = max(0.0, 100.0 - volatility * 100.0)
    return IndicatorLine("price_stability", out)


def compute_indicators(series: CandleSeries, params: Optional[IndicatorConfig] = None) -> IndicatorSet:
    p = params or IndicatorConfig()
    closes = series.closes
    return IndicatorSet(
        bands=bollinger_bands(closes, p.bb_period, p.bb_mult),
        rsi=rsi(closes, p.rsi_period),
        macd=macd(closes, p.macd_fast, p.macd_slow, p.macd_signal),
        volume_change=volume_change(series.volumes, p.volume_period),
        price_stability=price_stability(closes, p.stability_period),
    )
