from __future__ import annotations

import argparse
import asyncio
import logging

from .config import load_config
from .formatters import format_summary
from .runner import MeterRunner


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Buy Signal Meter - buy score and signal alerts")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--once", action="store_true", help="Evaluate every timeframe once, print and exit")
    args = p.parse_args(argv)

    cfg = load_config(args.config)
    _setup_logging(cfg.app.log_level)

    runner = MeterRunner(cfg)

    async def _run() -> None:
        try:
            if args.once:
                results = await runner.run_once()
                for tf in cfg.monitor.timeframes:
                    if tf in results:
                        print(format_summary(results[tf], cfg.provider.symbol))
                    else:
                        print(f"{cfg.provider.symbol} {tf} could not be evaluated")
            else:
                await runner.run_forever()
        finally:
            # Close shared REST session cleanly.
            await runner.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
