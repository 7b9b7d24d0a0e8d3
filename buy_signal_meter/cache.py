from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, Optional, Set, Tuple

from .models import TIMEFRAMES, validate_timeframe

if TYPE_CHECKING:
    from .engine import Evaluation

log = logging.getLogger("cache")

# Shorter timeframes age faster.
CACHE_TTL_S: Dict[str, float] = {
    "1m": 30,
    "3m": 60,
    "5m": 60,
    "10m": 120,
    "15m": 120,
    "30m": 300,
    "1h": 600,
    "4h": 1800,
    "1d": 3600,
}

EMPTY = "EMPTY"
FRESH = "FRESH"
STALE = "STALE"


class EvaluationCache:
    """Last evaluation per timeframe with a timeframe-dependent TTL.

    Stale entries are kept so they can be served as a fallback when a
    recompute fails. `lock_for()` hands out one asyncio.Lock per timeframe
    so at most one recompute per key is in flight.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, ttl_s: Optional[Dict[str, float]] = None):
        self.clock = clock
        self.ttl_s: Dict[str, float] = dict(CACHE_TTL_S)
        if ttl_s:
            for tf, ttl in ttl_s.items():
                self.ttl_s[validate_timeframe(tf)] = float(ttl)
        missing = [tf for tf in TIMEFRAMES if tf not in self.ttl_s]
        if missing:
            raise ValueError(f"no TTL for timeframes: {missing}")
        self._entries: Dict[str, "Evaluation"] = {}
        self._invalidated: Set[str] = set()
        self._generation: Dict[str, int] = {}
        self._locks: Dict[str, Tuple[asyncio.AbstractEventLoop, asyncio.Lock]] = {}

    def now(self) -> float:
        return float(self.clock())

    def ttl(self, timeframe: str) -> float:
        return self.ttl_s[validate_timeframe(timeframe)]

    def state(self, timeframe: str) -> str:
        tf = validate_timeframe(timeframe)
        entry = self._entries.get(tf)
        if entry is None:
            return EMPTY
        if tf in self._invalidated:
            return STALE
        if self.now() >= entry.computed_at + self.ttl_s[tf]:
            return STALE
        return FRESH

    def get(self, timeframe: str) -> Optional["Evaluation"]:
        """Last stored entry regardless of freshness."""
        return self._entries.get(validate_timeframe(timeframe))

    def fresh(self, timeframe: str) -> Optional["Evaluation"]:
        tf = validate_timeframe(timeframe)
        if self.state(tf) != FRESH:
            return None
        return self._entries[tf]

    def generation(self, timeframe: str) -> int:
        """Bumped by every invalidate(); read it before fetching and hand it to put()."""
        return self._generation.get(validate_timeframe(timeframe), 0)

    def put(self, timeframe: str, evaluation: "Evaluation", generation: Optional[int] = None) -> None:
        tf = validate_timeframe(timeframe)
        self._entries[tf] = evaluation
        # an invalidate() that landed while this entry was being computed still holds
        if generation is None or generation == self._generation.get(tf, 0):
            self._invalidated.discard(tf)
        else:
            log.debug("cache_put_outdated tf=%s generation=%d current=%d", tf, generation, self._generation[tf])
        log.debug("cache_put tf=%s computed_at=%.3f ttl=%.0fs", tf, evaluation.computed_at, self.ttl_s[tf])

    def invalidate(self, timeframe: str) -> None:
        tf = validate_timeframe(timeframe)
        self._generation[tf] = self._generation.get(tf, 0) + 1
        self._invalidated.add(tf)
        log.debug("cache_invalidate tf=%s generation=%d", tf, self._generation[tf])

    def lock_for(self, timeframe: str) -> asyncio.Lock:
        """Per-timeframe lock for the running event loop.

        asyncio locks are bound to one loop, so a host that drives the cache
        from a new loop (e.g. one asyncio.run per request) gets a new lock.
        """
        tf = validate_timeframe(timeframe)
        loop = asyncio.get_running_loop()
        held = self._locks.get(tf)
        if held is None or held[0] is not loop:
            held = (loop, asyncio.Lock())
            self._locks[tf] = held
        return held[1]
