from __future__ import annotations

from typing import Optional, Sequence

from .detectors import round_half_up
from .models import CandleSeries, Signal

MAX_STRENGTH = 100

STRONG_BUY_SCORE = 70


def calculate_total_buy_score(signals: Sequence[Signal]) -> int:
    """Detected strengths as a share of the N*100 ceiling, 0..100.

    One signal at full strength out of three gives 33; all three at full
    strength give 100. Undetected signals still count toward the ceiling.
    """
    if not signals:
        return 0
    total_strength = sum(s.strength for s in signals if s.detected)
    max_possible = MAX_STRENGTH * len(signals)
    return max(0, min(100, round_half_up(total_strength / max_possible * 100.0)))


def buy_score_level(score: int) -> str:
    if score < 30:
        return "low"
    if score < 50:
        return "caution"
    if score < STRONG_BUY_SCORE:
        return "moderate"
    return "strong"


def entry_reference(
    series: CandleSeries,
    score: int,
    *,
    threshold: int = STRONG_BUY_SCORE,
    discount: float = 0.01,
) -> Optional[float]:
    """Suggested limit entry just under the latest close, offered only for strong scores."""
    if score < threshold or len(series) == 0:
        return None
    return series.latest().close * (1.0 - discount)
