from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

import aiohttp

from ..errors import DataUnavailable
from ..models import Candle, CandleSeries, validate_timeframe

log = logging.getLogger("mexc")

REST_BASE = "https://api.mexc.com"
KLINES_PATH = "/api/v3/klines"

# MEXC spot has no 3m/10m buckets; the next coarser one is used instead.
INTERVALS: Dict[str, str] = {
    "1m": "1m",
    "3m": "5m",
    "5m": "5m",
    "10m": "15m",
    "15m": "15m",
    "30m": "30m",
    "1h": "60m",
    "4h": "4h",
    "1d": "1d",
}


def mexc_interval(timeframe: str) -> str:
    return INTERVALS[validate_timeframe(timeframe)]


def parse_klines(timeframe: str, rows: object) -> CandleSeries:
    """[open_time, open, high, low, close, volume, close_time, ...] rows -> CandleSeries."""
    if not isinstance(rows, list):
        raise DataUnavailable(f"unexpected klines payload: {str(rows)[:200]}")
    by_ts: Dict[int, Candle] = {}
    try:
        for row in rows:
            c = Candle(
                timestamp_ms=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            by_ts[c.timestamp_ms] = c
    except (TypeError, ValueError, IndexError, KeyError) as e:
        raise DataUnavailable(f"malformed kline row: {e}") from e
    if len(by_ts) != len(rows):
        log.debug("klines_dedup tf=%s rows=%d unique=%d", timeframe, len(rows), len(by_ts))
    return CandleSeries(timeframe, [by_ts[ts] for ts in sorted(by_ts)])


class MexcProvider:
    def __init__(
        self,
        symbol: str = "OKMUSDT",
        *,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 10,
    ):
        self.symbol = symbol.upper()
        self.rest_timeout_s = rest_timeout_s

        # REST robustness
        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def fetch_candles(self, timeframe: str, limit: int) -> CandleSeries:
        tf = validate_timeframe(timeframe)
        url = REST_BASE + KLINES_PATH
        params = {"symbol": self.symbol, "interval": mexc_interval(tf), "limit": int(limit)}

        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data: List[list] = []
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    # Rate-limit / ban signals
                    if resp.status in (418, 429):
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s symbol=%s tf=%s sleep=%.1fs body=%s",
                            resp.status,
                            self.symbol,
                            tf,
                            sleep_s,
                            txt[:200],
                        )
                        last_err = RuntimeError(f"rate limited: {resp.status}")
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise DataUnavailable(f"MEXC klines failed: {resp.status} {txt[:500]}")

                    # Some proxies return a wrong content-type; be tolerant.
                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d symbol=%s tf=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    self.symbol,
                    tf,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise DataUnavailable(f"MEXC klines unavailable symbol={self.symbol} tf={tf}: {last_err!r}") from last_err

        return parse_klines(tf, data)
