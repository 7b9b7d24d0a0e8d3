from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import InsufficientHistory, InvalidTimeframe

TIMEFRAMES: Tuple[str, ...] = ("1m", "3m", "5m", "10m", "15m", "30m", "1h", "4h", "1d")

ACCUMULATION = "ACCUMULATION"
V_REVERSAL = "V_REVERSAL"
BAND_BREAK = "BAND_BREAK"
SIGNAL_TYPES: Tuple[str, ...] = (ACCUMULATION, V_REVERSAL, BAND_BREAK)


def validate_timeframe(tf: str) -> str:
    norm = (tf or "").strip() if isinstance(tf, str) else ""
    # "1H" / "1D" are accepted, "1M" is not (month vs minute)
    if norm[-1:] in ("H", "D"):
        norm = norm[:-1] + norm[-1].lower()
    if norm not in TIMEFRAMES:
        raise InvalidTimeframe(tf)
    return norm


@dataclass(frozen=True)
class Candle:
    timestamp_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float


class CandleSeries:
    """Immutable, strictly time-ordered candles for one timeframe."""

    def __init__(self, timeframe: str, candles: Iterable[Candle]):
        self.timeframe = validate_timeframe(timeframe)
        self._candles: Tuple[Candle, ...] = tuple(candles)
        for prev, cur in zip(self._candles, self._candles[1:]):
            if cur.timestamp_ms <= prev.timestamp_ms:
                raise ValueError(
                    f"candles must be strictly ascending: {prev.timestamp_ms} then {cur.timestamp_ms}"
                )
        self.timestamps = tuple(c.timestamp_ms for c in self._candles)
        self.opens = tuple(c.open for c in self._candles)
        self.highs = tuple(c.high for c in self._candles)
        self.lows = tuple(c.low for c in self._candles)
        self.closes = tuple(c.close for c in self._candles)
        self.volumes = tuple(c.volume for c in self._candles)

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._candles)

    def __getitem__(self, idx: int) -> Candle:
        return self._candles[idx]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CandleSeries):
            return NotImplemented
        return self.timeframe == other.timeframe and self._candles == other._candles

    def __repr__(self) -> str:
        return f"CandleSeries(timeframe={self.timeframe!r}, candles={len(self._candles)})"

    def require(self, n: int, what: str) -> None:
        if len(self._candles) < n:
            raise InsufficientHistory(what, n, len(self._candles))

    def latest(self) -> Candle:
        return self.previous(0)

    def previous(self, n: int) -> Candle:
        """Candle `n` steps before the latest one (0 = latest)."""
        self.require(n + 1, "candle look-back")
        return self._candles[-1 - n]


class IndicatorLine:
    """Indicator values aligned to their source series; None marks warm-up (absent)."""

    __slots__ = ("name", "values")

    def __init__(self, name: str, values: Sequence[Optional[float]]):
        self.name = name
        self.values: Tuple[Optional[float], ...] = tuple(values)

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[Optional[float]]:
        return iter(self.values)

    def __getitem__(self, idx: int) -> Optional[float]:
        return self.values[idx]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IndicatorLine):
            return NotImplemented
        return self.name == other.name and self.values == other.values

    def __repr__(self) -> str:
        return f"IndicatorLine({self.name!r}, len={len(self.values)}, defined={len(self.defined())})"

    def latest(self) -> Optional[float]:
        return self.previous(0)

    def previous(self, n: int) -> Optional[float]:
        if n < 0 or n >= len(self.values):
            raise InsufficientHistory(f"{self.name} look-back", n + 1, len(self.values))
        return self.values[-1 - n]

    def defined(self) -> List[float]:
        return [v for v in self.values if v is not None]

    @property
    def first_defined_index(self) -> Optional[int]:
        for i, v in enumerate(self.values):
            if v is not None:
                return i
        return None


@dataclass(frozen=True)
class Evidence:
    name: str
    value: float
    details: Optional[str] = None


@dataclass(frozen=True)
class Signal:
    type: str  # ACCUMULATION | V_REVERSAL | BAND_BREAK
    detected: bool
    strength: int  # 0..100, always 0 when not detected
    message: str
    evidence: Tuple[Evidence, ...] = ()

    @classmethod
    def not_detected(cls, type_: str, message: str, evidence: Sequence[Evidence] = ()) -> "Signal":
        return cls(type=type_, detected=False, strength=0, message=message, evidence=tuple(evidence))
