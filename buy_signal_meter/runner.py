from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Tuple

from .config import Config
from .engine import CandleSource, Evaluation, SignalEngine
from .errors import EngineError
from .formatters import format_signal_alert
from .models import Signal
from .notifier.telegram import TelegramNotifier
from .providers.mexc import MexcProvider

log = logging.getLogger("runner")


class MeterRunner:
    def __init__(self, cfg: Config, *, source: Optional[CandleSource] = None, engine: Optional[SignalEngine] = None):
        self.cfg = cfg
        if source is None:
            source = MexcProvider(
                symbol=cfg.provider.symbol,
                rest_timeout_s=cfg.provider.rest_timeout_s,
                rest_max_retries=cfg.provider.rest_max_retries,
                rest_backoff_s=cfg.provider.rest_backoff_s,
            )
        self.source = source
        self.engine = engine or SignalEngine(
            source,
            indicator_config=cfg.indicators,
            candle_limit=cfg.provider.candle_limit,
        )
        self.tg = TelegramNotifier(
            token=cfg.telegram.token if cfg.telegram.enabled else "",
            chat_ids=cfg.telegram.chat_ids or [],
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )
        # latest alerted key per (timeframe, signal type); older candles drop out
        self._dedupe: Dict[Tuple[str, str], str] = {}
        self._metrics = {
            "alerts_sent_total": 0,
            "alerts_deduped_total": 0,
            "evaluate_failed_total": 0,
        }

    async def close(self) -> None:
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()

    async def run_once(self) -> Dict[str, Evaluation]:
        """Evaluate every configured timeframe; failures are logged and skipped."""
        out: Dict[str, Evaluation] = {}
        for tf in self.cfg.monitor.timeframes:
            try:
                evaluation = await self.engine.evaluate(tf)
            except EngineError as e:
                self._metrics["evaluate_failed_total"] += 1
                log.warning("evaluate_skipped tf=%s err=%s", tf, e)
                continue
            out[tf] = evaluation
            await self._handle_evaluation(evaluation)
        return out

    async def run_forever(self) -> None:
        tfs = list(self.cfg.monitor.timeframes or [])
        if not tfs:
            raise ValueError("No timeframes configured.")
        interval = max(1, int(self.cfg.monitor.poll_interval_s))
        log.info("monitor_start symbol=%s timeframes=%s poll=%ss", self.cfg.provider.symbol, tfs, interval)
        if self.tg.enabled():
            await self.tg.send(f"✅ {self.cfg.app.name}: monitoring {self.cfg.provider.symbol} on {', '.join(tfs)}.")
        while True:
            await self.run_once()
            await asyncio.sleep(interval)

    def _dedupe_key(self, evaluation: Evaluation, sig: Signal) -> str:
        return f"{evaluation.timeframe}:{sig.type}:{evaluation.series.latest().timestamp_ms}"

    def _should_alert(self, evaluation: Evaluation, sig: Signal) -> bool:
        alerts = self.cfg.alerts
        if not alerts.enabled or not sig.detected:
            return False
        if sig.strength < int(alerts.min_strength):
            return False
        return evaluation.buy_score >= int(alerts.min_buy_score)

    async def _handle_evaluation(self, evaluation: Evaluation) -> None:
        if evaluation.stale:
            # never alert on a fallback; the data behind it was already seen
            log.info("evaluation_stale tf=%s reason=%s", evaluation.timeframe, evaluation.fallback_reason)
            return
        for sig in evaluation.signals:
            if self._should_alert(evaluation, sig):
                await self._handle_signal(evaluation, sig)

    async def _handle_signal(self, evaluation: Evaluation, sig: Signal) -> None:
        dedupe_key = self._dedupe_key(evaluation, sig)
        slot = (evaluation.timeframe, sig.type)
        if self.cfg.alerts.dedupe and self._dedupe.get(slot) == dedupe_key:
            self._metrics["alerts_deduped_total"] += 1
            log.debug("signal_deduped key=%s", dedupe_key)
            return
        self._dedupe[slot] = dedupe_key
        self._metrics["alerts_sent_total"] += 1

        log.info(
            "signal %s %s %s strength=%d buy_score=%d candle_ts=%s alerts_total=%d",
            self.cfg.provider.symbol,
            evaluation.timeframe,
            sig.type,
            sig.strength,
            evaluation.buy_score,
            evaluation.series.latest().timestamp_ms,
            self._metrics["alerts_sent_total"],
        )

        if not self.tg.enabled():
            return
        msg = format_signal_alert(evaluation, sig, self.cfg.provider.symbol, self.cfg.alerts)
        await self.tg.send(msg, parse_mode=self.cfg.alerts.parse_mode)
