from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from .engine import Evaluation
from .models import Signal
from .scoring import buy_score_level, entry_reference

SIGNAL_TITLES = {
    "ACCUMULATION": "Accumulation phase",
    "V_REVERSAL": "V-shaped reversal",
    "BAND_BREAK": "Lower band break",
}


def _fmt_ms(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:.8g}"


def _parse_mode(cfg) -> str:
    return (getattr(cfg, "parse_mode", "HTML") or "HTML").upper()


def format_signal_alert(evaluation: Evaluation, signal: Signal, symbol: str, cfg) -> str:
    """Telegram alert for one detected signal."""
    pm = _parse_mode(cfg)
    latest = evaluation.series.latest()
    title = SIGNAL_TITLES.get(signal.type, signal.type)
    pipe = "\\|" if pm == "MARKDOWNV2" else "|"

    lines = [
        f"{_bold(symbol, pm)}  {pipe}  {_bold(evaluation.timeframe, pm)}",
        f"{_bold(title, pm)} {_escape_text(f'(strength {signal.strength}/100)', pm)}",
        "",
        _escape_text(signal.message, pm),
        _escape_text(f"Candle (UTC): {_fmt_ms(latest.timestamp_ms)} | Close: {_fmt_price(latest.close)}", pm),
        _escape_text(
            f"Buy score: {evaluation.buy_score}/100 ({buy_score_level(evaluation.buy_score)})",
            pm,
        ),
    ]

    entry = entry_reference(evaluation.series, evaluation.buy_score)
    if entry is not None:
        lines.append(_escape_text(f"Entry reference: {_fmt_price(entry)} (close -1%)", pm))

    footer = (getattr(cfg, "footer", "") or "").strip()
    if footer:
        lines.append("")
        lines.append(_escape_text(footer, pm))

    return "\n".join(lines)


def format_summary(evaluation: Evaluation, symbol: str) -> str:
    """Plain-text snapshot used by the CLI."""
    latest = evaluation.series.latest()
    head = f"{symbol} {evaluation.timeframe} close={_fmt_price(latest.close)} @ {_fmt_ms(latest.timestamp_ms)} UTC"
    score = f"buy_score={evaluation.buy_score} ({buy_score_level(evaluation.buy_score)})"
    if evaluation.stale:
        score += f" STALE: {evaluation.fallback_reason}"
    lines = [head, score]
    for s in evaluation.signals:
        mark = "+" if s.detected else "-"
        lines.append(f"  {mark} {s.type:<12} {s.strength:>3}  {s.message}")
    return "\n".join(lines)
