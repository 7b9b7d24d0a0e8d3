from __future__ import annotations


class EngineError(Exception):
    """Base class for failures surfaced by the signal engine."""


class InsufficientHistory(EngineError):
    def __init__(self, what: str, required: int, available: int):
        self.what = what
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"{what} needs at least {self.required} values, got {self.available}")


class DataUnavailable(EngineError):
    """Upstream candle fetch failed."""


class InvalidTimeframe(EngineError, ValueError):
    def __init__(self, timeframe: object):
        self.timeframe = timeframe
        super().__init__(f"Unsupported timeframe: {timeframe!r}")
