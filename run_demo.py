#!/usr/bin/env python3
"""
Multi-Asset Regime Engine - Demo Runner

Runs the complete market analysis pipeline for a ticker universe:
    Stage 1: Sequential batch fetch with retry, gap repair and validation
    Stage 2: Cross-asset correlation matrix
    Stage 3: Turbulence-based regime detection
    Stage 4: Data integrity audit
    Stage 5: Historical stress tests (optional, needs --weights)

EXECUTION
    python run_demo.py
    python run_demo.py --tickers SPY TLT GLD VNQ --start 2023-01-01
    python run_demo.py --provider yahoo --method diagonal
    python run_demo.py --weights SPY=0.6 TLT=0.4 --capital 250000

PROVIDERS
    polygon   Polygon.io REST API (POLYGON_API_KEY)
    proxy     Backend function holding the credentials (--proxy-url)
    yahoo     Yahoo Finance via yfinance (no key required)

OUTPUT ARTIFACTS
    outputs/
        regime_analysis.json    Batch, correlation, regime and audit (--json)

Version: 1.0.0
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import replace
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from regime_engine.config import DEFAULT_SETTINGS, EngineSettings, TurbulenceMethod
from regime_engine.pipeline import AnalysisOutput, EngineContext, MarketAnalysisPipeline
from regime_engine.stress_testing import StressTestResult
from regime_engine.transports import (
    MarketDataTransport,
    PolygonTransport,
    ProxyTransport,
    YahooTransport,
)


# =============================================================================
# CONSTANTS
# =============================================================================

VERSION: str = "1.0.0"
DEFAULT_TICKERS: List[str] = ["SPY", "TLT", "GLD", "VNQ", "DBC"]
DEFAULT_LOOKBACK_DAYS: int = 365
DEFAULT_CAPITAL: float = 100_000.0

OUTPUT_DIR = Path("outputs")


# =============================================================================
# DISPLAY COMPONENTS
# =============================================================================

BANNER = r'''
╔═══════════════════════════════════════════════════════════════════════════════╗
║                                                                               ║
║              MULTI-ASSET MARKET DATA & REGIME DETECTION ENGINE                ║
║                                                                               ║
║              Turbulence Index  •  Correlation  •  Stress Testing              ║
║                                                                               ║
╚═══════════════════════════════════════════════════════════════════════════════╝
'''


def print_section_header(title: str, char: str = "═") -> None:
    """Print a formatted section header."""
    width = 79
    print()
    print(char * width)
    print(f"  {title}")
    print(char * width)
    print()


def print_subsection(title: str) -> None:
    """Print a subsection divider."""
    print()
    print(f"  {'─' * 75}")
    print(f"  {title}")
    print(f"  {'─' * 75}")


def format_money(value: float) -> str:
    return f"${value:,.0f}"


def print_progress(message: str, pct: float) -> None:
    print(f"  [{pct:5.1f}%] {message}")


# =============================================================================
# ARGUMENT HELPERS
# =============================================================================

def parse_weights(pairs: Sequence[str]) -> Dict[str, float]:
    """Parse ``TICKER=WEIGHT`` pairs into an allocation map."""
    weights: Dict[str, float] = {}
    for pair in pairs:
        ticker, sep, value = pair.partition("=")
        if not sep or not ticker:
            raise argparse.ArgumentTypeError(f"Expected TICKER=WEIGHT, got '{pair}'")
        try:
            weights[ticker.upper()] = float(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid weight for {ticker}: '{value}'")

    total = sum(weights.values())
    if total <= 0:
        raise argparse.ArgumentTypeError("Weights must sum to a positive number")
    return {t: w / total for t, w in weights.items()}


def build_transport(
    args: argparse.Namespace,
    settings: EngineSettings = DEFAULT_SETTINGS
) -> MarketDataTransport:
    timeout = settings.fetch.request_timeout
    if args.provider == "polygon":
        return PolygonTransport(api_key=args.api_key, timeout=timeout)
    if args.provider == "proxy":
        if not args.proxy_url:
            raise SystemExit("--proxy-url is required for the proxy provider")
        return ProxyTransport(
            args.proxy_url, auth_token=os.environ.get("PROXY_AUTH_TOKEN"), timeout=timeout
        )
    return YahooTransport(timeout=int(timeout))


# =============================================================================
# REPORT
# =============================================================================

def print_batch(output: AnalysisOutput) -> None:
    print_subsection("DATA ACQUISITION")
    print(f"  {'Ticker':<8} {'Status':<8} {'Bars':>6} {'Quality':<8} {'Source':<8} Detail")
    for d in output.batch.diagnostics:
        status = "OK" if d.success else "FAILED"
        quality = d.data_quality.value if d.data_quality else "-"
        source = d.source.value if d.source else "-"
        detail = d.error or ""
        if d.success:
            asset = output.batch.assets[d.ticker]
            detail = f"vol {asset.volatility * 100:.1f}%"
        print(f"  {d.ticker:<8} {status:<8} {d.bar_count:>6} {quality:<8} {source:<8} {detail}")


def print_correlation(output: AnalysisOutput) -> None:
    print_subsection("CORRELATION MATRIX")
    corr = output.correlation
    if corr.is_empty:
        print("  Not enough assets for a correlation matrix")
        return

    print("  " + " " * 8 + "".join(f"{t:>8}" for t in corr.tickers))
    for i, t in enumerate(corr.tickers):
        print(f"  {t:<8}" + "".join(f"{v:>8.2f}" for v in corr.matrix[i]))
    if not corr.validation.is_valid:
        for issue in corr.validation.issues:
            print(f"  ! {issue}")


def print_regime(output: AnalysisOutput) -> None:
    print_subsection("MARKET REGIME")
    regime = output.regime
    current = regime.current
    if current is None:
        print("  Insufficient data for regime detection")
        return

    print(f"  Method:             {regime.method.value}")
    print(f"  Common days:        {regime.trading_days} (lookback {regime.lookback})")
    print(f"  Current regime:     {current.regime.value.upper()} as of {current.date}")
    print(f"  Turbulence index:   {current.turbulence_index:.2f}")
    print(f"  Fractal dimension:  {current.fractal_dimension:.3f}")
    print(f"  Basket volatility:  {current.volatility:.2f}%")

    counts = regime.regime_counts()
    total = len(regime.signals)
    print()
    for label, count in counts.items():
        bar = "█" * int(40 * count / total) if total else ""
        print(f"  {label.value:<9} {count:>4}  {bar}")


def print_audit(output: AnalysisOutput) -> None:
    print_subsection("INTEGRITY AUDIT")
    audit = output.audit
    print(f"  Status:  {audit.status.value.upper()}")
    print(f"  {audit.summary}")
    for ticker_audit in audit.ticker_audits:
        for issue in ticker_audit.issues:
            print(f"  - {ticker_audit.ticker}: {issue}")


def print_stress_results(results: Sequence[StressTestResult], capital: float) -> None:
    print_section_header("STRESS TESTS")
    print(f"  Invested capital: {format_money(capital)}")
    for r in results:
        print_subsection(f"{r.period.name} ({r.period.start_date} to {r.period.end_date})")
        print(f"  Portfolio drawdown: {r.portfolio_drawdown:.2f}%   "
              f"(market {r.period.market_drawdown:.1f}%)")
        print(f"  Portfolio return:   {r.portfolio_return:.2f}%")
        print(f"  Dollar loss:        {format_money(r.dollar_loss)}")
        recovery = f"{r.recovery_days} days" if r.recovery_days is not None else "n/a"
        print(f"  Market recovery:    {recovery}")
        for ticker, stats in r.asset_breakdown.items():
            print(f"    {ticker:<8} dd {stats['drawdown']:>7.2f}%   ret {stats['return']:>7.2f}%")


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for the demo runner.

    Returns
    -------
    int
        Exit code (0 for success, 1 for failure)
    """
    start_time = time.time()
    today = date.today()

    parser = argparse.ArgumentParser(
        description="Multi-Asset Regime Engine - Demo Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_demo.py
  python run_demo.py --tickers SPY TLT GLD VNQ --start 2023-01-01
  python run_demo.py --provider yahoo --method diagonal
  python run_demo.py --weights SPY=0.6 TLT=0.4 --capital 250000
        """
    )

    parser.add_argument(
        "--tickers", "-t",
        nargs="+",
        default=DEFAULT_TICKERS,
        help=f"Ticker universe (default: {' '.join(DEFAULT_TICKERS)})"
    )
    parser.add_argument(
        "--start", "-s",
        type=str,
        default=(today - timedelta(days=DEFAULT_LOOKBACK_DAYS)).isoformat(),
        help="Start date YYYY-MM-DD (default: one year ago)"
    )
    parser.add_argument(
        "--end", "-e",
        type=str,
        default=today.isoformat(),
        help="End date YYYY-MM-DD (default: today)"
    )
    parser.add_argument(
        "--lookback", "-l",
        type=int,
        default=DEFAULT_SETTINGS.regime.lookback_days,
        help=f"Regime lookback window in trading days (default: "
             f"{DEFAULT_SETTINGS.regime.lookback_days})"
    )
    parser.add_argument(
        "--method", "-m",
        choices=[m.value for m in TurbulenceMethod],
        default=DEFAULT_SETTINGS.regime.method.value,
        help="Turbulence method (default: covariance)"
    )
    parser.add_argument(
        "--provider", "-p",
        choices=["polygon", "proxy", "yahoo"],
        default="polygon",
        help="Market data provider (default: polygon)"
    )
    parser.add_argument("--api-key", type=str, default=None, help="Polygon API key")
    parser.add_argument("--proxy-url", type=str, default=None, help="Backend function URL")
    parser.add_argument(
        "--weights", "-w",
        nargs="+",
        default=None,
        metavar="TICKER=WEIGHT",
        help="Allocation for stress tests (normalised to sum to 1)"
    )
    parser.add_argument(
        "--capital", "-c",
        type=float,
        default=DEFAULT_CAPITAL,
        help=f"Invested capital for stress tests (default: {DEFAULT_CAPITAL:,.0f})"
    )
    parser.add_argument(
        "--horizon",
        type=float,
        default=None,
        help="Investment horizon in years; enables the liquidity check"
    )
    parser.add_argument("--json", action="store_true", help="Write outputs/regime_analysis.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="  %(asctime)s │ %(levelname)s │ %(message)s",
        datefmt="%H:%M:%S"
    )
    logger = logging.getLogger(__name__)

    try:
        weights = parse_weights(args.weights) if args.weights else None
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    tickers = [t.upper() for t in args.tickers]
    settings = replace(
        DEFAULT_SETTINGS,
        regime=replace(
            DEFAULT_SETTINGS.regime,
            lookback_days=args.lookback,
            method=TurbulenceMethod(args.method),
        ),
    )

    print(BANNER)
    print(f"  Tickers:           {', '.join(tickers)}")
    print(f"  Analysis Period:   {args.start} to {args.end}")
    print(f"  Provider:          {args.provider}")
    print(f"  Regime Lookback:   {args.lookback} days ({args.method})")
    print(f"  Version:           {VERSION}")

    context = EngineContext.create(build_transport(args, settings), settings=settings)

    # ==========================================================================
    # ANALYSIS PIPELINE
    # ==========================================================================

    print_section_header("MARKET ANALYSIS PIPELINE")

    try:
        output = MarketAnalysisPipeline(context).run(
            tickers, args.start, args.end, on_progress=print_progress
        )
    except Exception as e:
        logger.error(f"Pipeline failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1

    print_batch(output)
    print_correlation(output)
    print_regime(output)
    print_audit(output)

    if not output.batch.assets:
        logger.error("No ticker could be fetched - nothing to analyse")
        return 1

    # ==========================================================================
    # STRESS TESTS
    # ==========================================================================

    if weights:
        results = context.stress.run_all_stress_tests(weights, args.capital, today)
        print_stress_results(results, args.capital)

        if args.horizon is not None:
            print_subsection(f"LIQUIDITY CHECK ({args.horizon:g}-year horizon)")
            for risk in context.stress.check_liquidity_risks(
                list(weights), args.horizon, today=today
            ):
                flag = "RISK" if risk.is_liquidity_risk else "ok"
                print(f"  {risk.ticker:<8} {flag:<5} {risk.reason}")

    # ==========================================================================
    # EXPORT
    # ==========================================================================

    if args.json:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        json_path = OUTPUT_DIR / "regime_analysis.json"
        with open(json_path, "w") as f:
            json.dump(output.to_dict(), f, indent=2, default=str)
        logger.info(f"Generated: {json_path}")

    total_time = time.time() - start_time
    print()
    print("=" * 79)
    print(f"  Completed in {total_time:.1f}s  │  status: {output.audit.status.value}")
    print("=" * 79)

    return 0


if __name__ == "__main__":
    sys.exit(main())
