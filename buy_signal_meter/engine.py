from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from .cache import EvaluationCache
from .config import IndicatorConfig
from .detectors import detect_all
from .errors import DataUnavailable, InsufficientHistory
from .indicators import IndicatorSet, compute_indicators
from .models import CandleSeries, Signal, validate_timeframe
from .scoring import calculate_total_buy_score

log = logging.getLogger("engine")


class CandleSource(Protocol):
    async def fetch_candles(self, timeframe: str, limit: int) -> CandleSeries:
        ...


@dataclass(frozen=True)
class Evaluation:
    timeframe: str
    series: CandleSeries
    indicators: IndicatorSet
    signals: Tuple[Signal, ...]
    buy_score: int
    computed_at: float
    stale: bool = False  # True when served as a fallback after a failed recompute
    fallback_reason: Optional[str] = None

    @property
    def detected(self) -> Tuple[Signal, ...]:
        return tuple(s for s in self.signals if s.detected)


class SignalEngine:
    def __init__(
        self,
        source: CandleSource,
        *,
        cache: Optional[EvaluationCache] = None,
        indicator_config: Optional[IndicatorConfig] = None,
        candle_limit: int = 100,
    ):
        self.source = source
        self.cache = cache or EvaluationCache()
        self.indicator_config = indicator_config or IndicatorConfig()
        self.candle_limit = int(candle_limit)

    def evaluate_series(self, series: CandleSeries) -> Tuple[IndicatorSet, Tuple[Signal, ...], int]:
        """Indicators -> detectors -> score over an already fetched series."""
        indicators = compute_indicators(series, self.indicator_config)
        signals = tuple(detect_all(series, indicators))
        return indicators, signals, calculate_total_buy_score(signals)

    async def evaluate(self, timeframe: str) -> Evaluation:
        tf = validate_timeframe(timeframe)
        cached = self.cache.fresh(tf)
        if cached is not None:
            return cached

        async with self.cache.lock_for(tf):
            # another caller may have refreshed the entry while we waited
            cached = self.cache.fresh(tf)
            if cached is not None:
                return cached

            generation = self.cache.generation(tf)
            try:
                evaluation = await self._compute(tf)
            except (DataUnavailable, InsufficientHistory) as e:
                last = self.cache.get(tf)
                if last is None:
                    log.warning("evaluate_failed tf=%s err=%s fallback=none", tf, e)
                    raise
                log.warning(
                    "evaluate_failed tf=%s err=%s fallback_age=%.0fs",
                    tf,
                    e,
                    self.cache.now() - last.computed_at,
                )
                return dataclasses.replace(last, stale=True, fallback_reason=str(e))

            self.cache.put(tf, evaluation, generation)
            return evaluation

    def invalidate(self, timeframe: str) -> None:
        self.cache.invalidate(timeframe)

    async def _compute(self, tf: str) -> Evaluation:
        series = await self.source.fetch_candles(tf, self.candle_limit)
        if series.timeframe != tf:
            raise DataUnavailable(f"source returned {series.timeframe} candles for {tf}")
        indicators, signals, buy_score = self.evaluate_series(series)
        log.info(
            "evaluate_done tf=%s candles=%d score=%d detected=%s",
            tf,
            len(series),
            buy_score,
            ",".join(f"{s.type}:{s.strength}" for s in signals if s.detected) or "-",
        )
        return Evaluation(
            timeframe=tf,
            series=series,
            indicators=indicators,
            signals=signals,
            buy_score=buy_score,
            computed_at=self.cache.now(),
        )
