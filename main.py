#!/usr/bin/env python3
"""
main.py — Run the implied volatility surface pipeline.

Usage:
    python main.py                                        # synthetic SPY (default)
    python main.py --ticker SPY --ticker QQQ              # several underlyings at once
    python main.py --source live --ticker QQQ --persist   # live data, saved to data/surfaces
"""

import argparse
import asyncio
import sys
import time
from datetime import datetime, timezone

import numpy as np

from volsurf import config
from volsurf.cache import QuoteCache
from volsurf.data_feed import ConstantRateProvider, SyntheticQuoteSource, YFinanceQuoteSource
from volsurf.logging_config import configure_logging
from volsurf.persistence import FileSystemBackend, SurfaceCache
from volsurf.pipeline import SurfaceService
from volsurf.rate_limiter import RateLimiter
from volsurf.visualization import render_surface


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Build implied volatility surfaces.")
    p.add_argument("--source", choices=["live", "synthetic"], default="synthetic")
    p.add_argument("--ticker", action="append", default=None,
                   help="underlying symbol, repeat for several (default: %s)" % config.TICKER)
    p.add_argument("--spot", type=float, default=602.0, help="spot for synthetic quotes")
    p.add_argument("--rate", type=float, default=None, help="risk-free rate (default: %s)" % config.RISK_FREE_RATE)
    p.add_argument("--smooth", type=float, default=None)
    p.add_argument("--no-html", action="store_true")
    p.add_argument("--persist", action="store_true", help="write surfaces to data/surfaces")
    p.add_argument("--log-level", default=None)
    return p.parse_args(argv)


def make_service(args) -> SurfaceService:
    rate = config.RISK_FREE_RATE if args.rate is None else args.rate
    limiter = RateLimiter()
    if args.source == "live":
        source = YFinanceQuoteSource(limiter=limiter)
    else:
        source = SyntheticQuoteSource(spot=args.spot, risk_free_rate=rate)

    surface_cache = SurfaceCache(
        backend=FileSystemBackend() if args.persist else None,
        persist_on_build=args.persist,
    )
    return SurfaceService(
        source=source,
        rate_provider=ConstantRateProvider(rate),
        limiter=limiter,
        quote_cache=QuoteCache(),
        surface_cache=surface_cache,
    )


def print_statistics(surface) -> None:
    stats = surface.statistics()
    print(f"       Spot: ${surface.spot:.2f}")
    print(f"       Data points: {stats['n_points']}")
    print(f"       Expiries: {stats['n_expiries']}")
    if stats["n_points"]:
        print(f"       Strike range: ${stats['strike_range'][0]:.0f} - ${stats['strike_range'][1]:.0f}")
        print(f"       IV range: {stats['iv_range'][0]:.1%} - {stats['iv_range'][1]:.1%}")
    if not np.isnan(stats.get("atm_iv_mean", np.nan)):
        print(f"       ATM IV (mean): {stats['atm_iv_mean']:.1%}")
    if not np.isnan(stats.get("skew_25d_proxy", np.nan)):
        print(f"       Skew (90% - 110%): {stats['skew_25d_proxy']:.1%}")


async def run(args) -> int:
    tickers = [t.upper() for t in (args.ticker or [config.TICKER])]
    service = make_service(args)
    as_of = datetime.now(timezone.utc)

    print(f"\n{'='*60}")
    print(f"  Implied Volatility Surface Builder")
    print(f"  Source: {args.source}  |  Tickers: {', '.join(tickers)}")
    print(f"{'='*60}\n")

    # step 1+2: quotes and surfaces, one task per ticker
    print("[1/3] Fetching quotes and solving implied vols...")
    results = await service.build_many(tickers, as_of)

    failed = 0
    for ticker, res in results.items():
        print(f"\n  {ticker}")
        if isinstance(res, BaseException):
            failed += 1
            print(f"       ERROR: {type(res).__name__}: {res}")
            continue
        print_statistics(res)

    # step 3: charts
    print("\n[2/3] Generating charts...")
    for ticker, res in results.items():
        if isinstance(res, BaseException):
            continue
        if len(res.expirations) < 2:
            print(f"       {ticker}: not enough expiries to draw a surface, skipped")
            continue
        for path in render_surface(res, html=not args.no_html, smooth_sigma=args.smooth):
            print(f"       -> {path}")
    if args.no_html:
        print("       (HTML skipped, --no-html flag)")

    print("\n[3/3] Saving point data...")
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    for ticker, res in results.items():
        if isinstance(res, BaseException):
            continue
        csv_path = config.DATA_DIR / f"{ticker.lower()}_iv_data.csv"
        res.to_frame().to_csv(csv_path, index=False)
        print(f"       -> data/{csv_path.name}")
    if args.persist:
        print(f"       Surfaces persisted to {config.SURFACE_STORE_DIR}")

    return 1 if failed == len(results) else 0


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level, force=args.log_level is not None)

    t0 = time.time()
    status = asyncio.run(run(args))
    elapsed = time.time() - t0
    print(f"\n  Done in {elapsed:.1f}s. Charts are in output/\n")
    sys.exit(status)


if __name__ == "__main__":
    main()
