import asyncio
import math

import pytest

from buy_signal_meter.cache import CACHE_TTL_S, EMPTY, FRESH, STALE, EvaluationCache
from buy_signal_meter.engine import SignalEngine
from buy_signal_meter.errors import DataUnavailable, InsufficientHistory, InvalidTimeframe
from buy_signal_meter.models import SIGNAL_TYPES, Candle, CandleSeries
from buy_signal_meter.scoring import calculate_total_buy_score


def _candles(n: int):
    out = []
    for i in range(n):
        close = 100.0 + 5.0 * math.sin(i / 4.0) + 0.1 * i
        out.append(Candle(
            timestamp_ms=i * 3_600_000,
            open=close - 0.2,
            high=close + 0.5,
            low=close - 0.5,
            close=close,
            volume=1000.0 + (i % 7) * 50.0,
        ))
    return out


class FakeClock:
    def __init__(self, t: float = 1_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, s: float) -> None:
        self.t += s


class FakeSource:
    def __init__(self, n: int = 100, delay_s: float = 0.0):
        self.candles = _candles(n)
        self.delay_s = delay_s
        self.calls = []
        self.fail = False

    async def fetch_candles(self, timeframe: str, limit: int) -> CandleSeries:
        self.calls.append((timeframe, limit))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail:
            raise DataUnavailable("exchange down")
        return CandleSeries(timeframe, self.candles[-limit:])


def _engine(source=None, clock=None):
    source = source or FakeSource()
    clock = clock or FakeClock()
    return SignalEngine(source, cache=EvaluationCache(clock=clock)), source, clock


def test_ttl_table():
    cache = EvaluationCache()
    assert cache.ttl("1m") == 30
    assert cache.ttl("3m") == cache.ttl("5m") == 60
    assert cache.ttl("10m") == cache.ttl("15m") == 120
    assert cache.ttl("30m") == 300
    assert cache.ttl("1h") == 600
    assert cache.ttl("4h") == 1800
    assert cache.ttl("1d") == 3600
    assert set(CACHE_TTL_S) == set(["1m", "3m", "5m", "10m", "15m", "30m", "1h", "4h", "1d"])


def test_evaluate_shape():
    engine, source, _ = _engine()
    ev = asyncio.run(engine.evaluate("1h"))
    assert ev.timeframe == "1h"
    assert len(ev.series) == 100
    assert [s.type for s in ev.signals] == list(SIGNAL_TYPES)
    assert ev.buy_score == calculate_total_buy_score(ev.signals)
    assert 0 <= ev.buy_score <= 100
    assert len(ev.indicators.rsi) == len(ev.series)
    assert len(ev.indicators.bands.lower) == len(ev.series)
    assert ev.stale is False
    assert source.calls == [("1h", 100)]


def test_fresh_hits_do_not_refetch_and_expiry_refetches_once():
    engine, source, clock = _engine()

    async def _run():
        first = await engine.evaluate("1h")
        clock.advance(300)
        second = await engine.evaluate("1h")
        assert second is first
        clock.advance(299)
        assert engine.cache.state("1h") == FRESH
        third = await engine.evaluate("1h")
        assert third is first
        assert len(source.calls) == 1

        clock.advance(1)  # 600s after compute
        assert engine.cache.state("1h") == STALE
        fourth = await engine.evaluate("1h")
        assert fourth is not first
        assert len(source.calls) == 2
        fifth = await engine.evaluate("1h")
        assert fifth is fourth
        assert len(source.calls) == 2

    asyncio.run(_run())


def test_timeframes_are_cached_independently():
    engine, source, clock = _engine()

    async def _run():
        await engine.evaluate("1m")
        await engine.evaluate("1d")
        clock.advance(31)
        await engine.evaluate("1m")
        await engine.evaluate("1d")

    asyncio.run(_run())
    assert [tf for tf, _ in source.calls] == ["1m", "1d", "1m"]


def test_invalidate_forces_recompute():
    engine, source, _ = _engine()

    async def _run():
        await engine.evaluate("15m")
        engine.invalidate("15m")
        assert engine.cache.state("15m") == STALE
        await engine.evaluate("15m")

    asyncio.run(_run())
    assert len(source.calls) == 2


def test_invalidate_during_recompute_is_not_lost():
    engine, source, _ = _engine(source=FakeSource(delay_s=0.05))

    async def _run():
        await engine.evaluate("1h")
        engine.invalidate("1h")
        first = asyncio.ensure_future(engine.evaluate("1h"))
        await asyncio.sleep(0.01)  # first recompute is mid-fetch
        engine.invalidate("1h")
        second = await engine.evaluate("1h")
        await first
        assert second is not first.result()
        assert engine.cache.get("1h") is second
        assert engine.cache.state("1h") == FRESH

    asyncio.run(_run())
    assert len(source.calls) == 3


def test_engine_survives_a_new_event_loop_per_burst():
    engine, source, clock = _engine(source=FakeSource(delay_s=0.01))

    async def _burst():
        return await asyncio.gather(*[engine.evaluate("4h") for _ in range(3)])

    first = asyncio.run(_burst())
    clock.advance(1800)
    second = asyncio.run(_burst())
    assert len(source.calls) == 2
    assert all(r is first[0] for r in first)
    assert all(r is second[0] for r in second)
    assert second[0] is not first[0]


def test_fetch_failure_falls_back_to_last_good_entry():
    engine, source, clock = _engine()

    async def _run():
        good = await engine.evaluate("5m")
        clock.advance(61)
        source.fail = True
        fallback = await engine.evaluate("5m")
        assert fallback.stale is True
        assert "exchange down" in fallback.fallback_reason
        assert fallback.buy_score == good.buy_score
        assert fallback.series is good.series
        # stored entry untouched
        assert engine.cache.get("5m") is good
        assert good.stale is False

        source.fail = False
        recovered = await engine.evaluate("5m")
        assert recovered.stale is False
        assert engine.cache.get("5m") is recovered

    asyncio.run(_run())


def test_fetch_failure_without_entry_raises():
    engine, source, _ = _engine()
    source.fail = True
    with pytest.raises(DataUnavailable):
        asyncio.run(engine.evaluate("1h"))
    assert engine.cache.state("1h") == EMPTY


def test_invalid_timeframe_fails_before_fetch():
    engine, source, _ = _engine()
    with pytest.raises(InvalidTimeframe):
        asyncio.run(engine.evaluate("2h"))
    assert source.calls == []


def test_short_history_raises():
    engine, _, _ = _engine(source=FakeSource(n=34))
    with pytest.raises(InsufficientHistory):
        asyncio.run(engine.evaluate("1h"))


def test_concurrent_evaluations_share_one_fetch():
    engine, source, _ = _engine(source=FakeSource(delay_s=0.01))

    async def _run():
        return await asyncio.gather(*[engine.evaluate("4h") for _ in range(5)])

    results = asyncio.run(_run())
    assert len(source.calls) == 1
    assert all(r is results[0] for r in results)


def test_cache_states_without_engine():
    clock = FakeClock()
    cache = EvaluationCache(clock=clock, ttl_s={"1h": 10})
    assert cache.state("1h") == EMPTY
    assert cache.fresh("1h") is None

    engine, _, _ = _engine(clock=clock)
    ev = asyncio.run(engine.evaluate("1h"))
    cache.put("1h", ev)
    assert cache.state("1h") == FRESH
    clock.advance(10)
    assert cache.state("1h") == STALE
    assert cache.get("1h") is ev
