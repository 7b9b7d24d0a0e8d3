from __future__ import annotations

import math

from buy_signal_meter.engine import SignalEngine
from buy_signal_meter.models import Candle, CandleSeries
from buy_signal_meter.scoring import buy_score_level


def base_candles(n: int = 100, price: float = 0.02134):
    """Gently oscillating hourly candles."""
    out = []
    last = price
    for i in range(n):
        o = last
        c = o * (1.0 + 0.002 * math.sin(i / 3.0))
        out.append(Candle(i * 3_600_000, o, max(o, c) * 1.001, min(o, c) * 0.999, c, 1_000_000 + (i % 5) * 20_000))
        last = c
    return out


def band_break_scenario():
    """Two sharp down bars then a rebound, ending one bar after the flush."""
    candles = base_candles()
    tail = candles[-3:]
    c0 = tail[0]
    drop1 = Candle(c0.timestamp_ms, c0.open, c0.open, c0.open * 0.95, c0.open * 0.96, c0.volume * 1.5)
    c1 = tail[1]
    drop2 = Candle(c1.timestamp_ms, drop1.close, drop1.close, drop1.close * 0.93, drop1.close * 0.95, c1.volume * 2)
    c2 = tail[2]
    rebound = Candle(c2.timestamp_ms, drop2.close, drop2.close * 1.03, drop2.close * 0.99, drop2.close * 1.025, c2.volume)
    return candles[:-3] + [drop1, drop2, rebound]


def accumulation_scenario():
    """Flat tape with a volume spike on the last bar."""
    candles = base_candles()
    flat = [Candle(c.timestamp_ms, 0.02, 0.02002, 0.01998, 0.02, 1_000_000) for c in candles[-10:]]
    last = flat[-1]
    flat[-1] = Candle(last.timestamp_ms, 0.02, 0.02002, 0.01998, 0.02, 2_500_000)
    return candles[:-10] + flat


def run_case(name: str, engine: SignalEngine, candles):
    series = CandleSeries("1h", candles)
    _, signals, score = engine.evaluate_series(series)
    print(f"{name}: buy_score={score} ({buy_score_level(score)})")
    for s in signals:
        print(f"  {'+' if s.detected else '-'} {s.type:<12} {s.strength:>3} {s.message}")


def main():
    engine = SignalEngine(source=None)
    run_case("baseline", engine, base_candles())
    run_case("band_break", engine, band_break_scenario())
    run_case("accumulation", engine, accumulation_scenario())


if __name__ == "__main__":
    main()
