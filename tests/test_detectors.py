import pytest

from buy_signal_meter.detectors import (
    clamp_strength,
    detect_accumulation,
    detect_all,
    detect_band_break,
    detect_v_reversal,
    round_half_up,
)
from buy_signal_meter.errors import InsufficientHistory
from buy_signal_meter.indicators import BollingerBands, IndicatorSet, MacdResult
from buy_signal_meter.models import (
    ACCUMULATION,
    BAND_BREAK,
    SIGNAL_TYPES,
    V_REVERSAL,
    Candle,
    CandleSeries,
    IndicatorLine,
)


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    return Candle(timestamp_ms=idx * 3_600_000, open=o, high=h, low=l, close=c, volume=v)


def _series(*candles: Candle) -> CandleSeries:
    return CandleSeries("1h", candles)


def _flat(n: int) -> CandleSeries:
    return _series(*[_c(i, 10, 10, 10, 10) for i in range(n)])


def _indicators(n: int, *, vol=None, stab=None, rsi=None, hist=None, lower=None) -> IndicatorSet:
    """Indicator set whose lines end with the given tail values (absent before them)."""

    def line(name, tail):
        tail = list(tail or [])
        return IndicatorLine(name, [None] * (n - len(tail)) + tail)

    return IndicatorSet(
        bands=BollingerBands(
            upper=line("bb_upper", None),
            middle=line("bb_middle", None),
            lower=line("bb_lower", lower),
        ),
        rsi=line("rsi", rsi),
        macd=MacdResult(
            line=line("macd_line", None),
            signal=line("macd_signal", None),
            histogram=line("macd_histogram", hist),
        ),
        volume_change=line("volume_change", vol),
        price_stability=line("price_stability", stab),
    )


def test_round_half_up_and_clamp():
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(39.2857) == 39
    assert clamp_strength(-4.0) == 0
    assert clamp_strength(130.0) == 100


def test_accumulation_reference_example():
    sig = detect_accumulation(_flat(6), _indicators(6, vol=[50.0], stab=[85.0]))
    assert sig.type == ACCUMULATION
    assert sig.detected is True
    # round(14.29 + 25)
    assert sig.strength == 39
    names = [e.name for e in sig.evidence]
    assert "volume_change_pct" in names and "price_stability" in names


def test_accumulation_saturates_at_100():
    sig = detect_accumulation(_flat(6), _indicators(6, vol=[250.0], stab=[100.0]))
    assert sig.detected is True
    assert sig.strength == 100


@pytest.mark.parametrize("vol,stab", [(29.9, 90.0), (60.0, 69.9), (10.0, 10.0)])
def test_accumulation_thresholds(vol, stab):
    sig = detect_accumulation(_flat(6), _indicators(6, vol=[vol], stab=[stab]))
    assert sig.detected is False
    assert sig.strength == 0


def test_accumulation_absent_values_do_not_detect():
    sig = detect_accumulation(_flat(3), _indicators(3))
    assert sig.detected is False
    assert sig.strength == 0


def test_accumulation_empty_series_raises():
    with pytest.raises(InsufficientHistory):
        detect_accumulation(CandleSeries("1h", []), _indicators(0))


def test_v_reversal_detected():
    ind = _indicators(3, rsi=[28.0, 20.0, 25.0], hist=[-0.01, -0.005])
    sig = detect_v_reversal(_flat(3), ind)
    assert sig.type == V_REVERSAL
    assert sig.detected is True
    # rsi_score 40 + macd_score 5
    assert sig.strength == 45


def test_v_reversal_caps():
    ind = _indicators(3, rsi=[15.0, 0.0, 5.0], hist=[0.0, 1.0])
    sig = detect_v_reversal(_flat(3), ind)
    assert sig.strength == 100


def test_v_reversal_pivot_exactly_at_oversold_line():
    ind = _indicators(3, rsi=[35.0, 30.0, 31.0], hist=[-0.002, -0.001])
    sig = detect_v_reversal(_flat(3), ind)
    assert sig.detected is True
    assert sig.strength == 31


@pytest.mark.parametrize(
    "rsi,hist",
    [
        ([40.0, 35.0, 38.0], [-0.01, -0.005]),  # not oversold
        ([20.0, 22.0, 25.0], [-0.01, -0.005]),  # no trough
        ([28.0, 20.0, 25.0], [-0.005, -0.01]),  # histogram falling
        ([28.0, 20.0, 25.0], [-0.005, -0.005]),  # histogram flat
    ],
)
def test_v_reversal_not_detected(rsi, hist):
    sig = detect_v_reversal(_flat(3), _indicators(3, rsi=rsi, hist=hist))
    assert sig.detected is False
    assert sig.strength == 0


def test_v_reversal_absent_rsi_does_not_detect():
    sig = detect_v_reversal(_flat(3), _indicators(3, rsi=[20.0, 25.0], hist=[-0.01, -0.005]))
    assert sig.detected is False


def test_v_reversal_short_series_raises():
    with pytest.raises(InsufficientHistory):
        detect_v_reversal(_flat(2), _indicators(2, rsi=[20.0, 25.0], hist=[-0.01, -0.005]))


def test_band_break_reference_example():
    # 3% breach, close 1% above the band
    series = _series(_c(0, 101, 102, 100.5, 101), _c(1, 100, 102, 97.0, 101.0))
    sig = detect_band_break(series, _indicators(2, lower=[100.0, 100.0]))
    assert sig.type == BAND_BREAK
    assert sig.detected is True
    # breakthrough 18 + recovery 38
    assert sig.strength == 56


def test_band_break_previous_bar_breach():
    series = _series(_c(0, 101, 102, 98.0, 100.2), _c(1, 100.2, 101, 100.5, 100.5))
    sig = detect_band_break(series, _indicators(2, lower=[100.0, 100.0]))
    assert sig.detected is True
    # breakthrough 12 (previous bar) + recovery 34
    assert sig.strength == 46
    detail = {e.name: e.details for e in sig.evidence}
    assert detail["breakthrough_score"] == "previous"


def test_band_break_close_still_below_band_within_tolerance():
    series = _series(_c(0, 101, 102, 100.5, 101), _c(1, 100, 100, 97.0, 99.2))
    sig = detect_band_break(series, _indicators(2, lower=[100.0, 100.0]))
    assert sig.detected is True
    # 18 + (99.2 - 75)
    assert sig.strength == 42


def test_band_break_close_too_far_below():
    series = _series(_c(0, 101, 102, 100.5, 101), _c(1, 100, 100, 97.0, 98.0))
    sig = detect_band_break(series, _indicators(2, lower=[100.0, 100.0]))
    assert sig.detected is False
    assert sig.strength == 0


def test_band_break_without_breach():
    series = _series(_c(0, 101, 102, 100.5, 101), _c(1, 101, 102, 100.1, 101.5))
    sig = detect_band_break(series, _indicators(2, lower=[100.0, 100.0]))
    assert sig.detected is False


def test_band_break_absent_band():
    series = _series(_c(0, 101, 102, 90, 101), _c(1, 100, 102, 90, 101))
    sig = detect_band_break(series, _indicators(2))
    assert sig.detected is False
    assert sig.strength == 0


def test_band_break_short_series_raises():
    with pytest.raises(InsufficientHistory):
        detect_band_break(_flat(1), _indicators(1, lower=[10.0]))


def test_detect_all_reports_every_type_in_order():
    signals = detect_all(_flat(3), _indicators(3))
    assert [s.type for s in signals] == list(SIGNAL_TYPES)
    assert all(not s.detected and s.strength == 0 for s in signals)
