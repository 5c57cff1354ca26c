"""Command line entry point for the DEX trading bot."""
from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

from dexbot.src.trading.decision_engine import (
    BotSettings,
    ConfigurationError,
    DecisionEngineError,
    DexConnection,
    TickReport,
    TickScheduler,
    build_arbitrage_evaluator,
    build_orchestrator,
    fetch_balances,
    load_settings,
    simulate_strategies,
)
from dexbot.src.trading.decision_engine.config import ARB_MODES, TICK_MODES, describe, parse_path
from dexbot.src.trading.decision_engine.models import decimal_to_str, to_decimal
from dexbot.src.trading.decision_engine.simulation import load_price_csv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Runtime defaults
# ---------------------------------------------------------------------------
# Adjust here to change the runner behaviour without editing the invocation.
# Environment variables override the YAML config; CLI flags override both.
DEFAULT_CONFIG_PATH: Optional[str] = None
LOG_LEVEL_DEFAULT = "INFO"
SIM_SAMPLES_DEFAULT = 24
SIM_SAMPLE_INTERVAL_DEFAULT = 0.3
SIM_VARIATION_BPS_DEFAULT = 120.0
SIM_ARB_AMOUNTS_DEFAULT = "0.01,0.05,0.10"


def settings_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map explicitly supplied CLI flags onto settings attribute paths."""

    return {
        "dry_run": args.dry_run,
        "tick_mode": args.tick_mode,
        "ledger_path": args.ledger_path,
        "state_path": args.state_path,
        "base_url": args.base_url,
        "signals.seed": args.seed,
        "arbitrage.path": parse_path(args.arb_path) if args.arb_path else None,
        "arbitrage.mode": args.arb_mode,
    }


def format_report(report: TickReport) -> str:
    parts = [
        f"price={decimal_to_str(report.price) if report.price is not None else 'n/a'}",
        f"ema={decimal_to_str(report.ema) if report.ema is not None else 'n/a'}",
    ]
    if report.arbitrage is not None:
        parts.append(f"arb={float(report.arbitrage.profit_bps):.2f}bps")
    if report.signal is not None:
        parts.append(f"{report.signal_name}={report.signal.action.value}")
    parts.append(f"trades={len(report.outcomes)}")
    for outcome in report.outcomes:
        parts.append(f"[{outcome.intent.describe()}: {outcome.confirmed_via}]")
    if report.errors:
        parts.append(f"errors={len(report.errors)}")
    return " ".join(parts)


def log_balance_snapshot(exchange: DexConnection, settings: BotSettings) -> None:
    try:
        balances = fetch_balances(exchange, settings.wallet or "")
    except DecisionEngineError as exc:
        logger.warning("Startup balance snapshot unavailable: %s", exc)
        return
    summary = ", ".join(
        f"{symbol}={decimal_to_str(quantity)}" for symbol, quantity in sorted(balances.items())
    )
    logger.info("Balances: %s", summary or "none")


async def run_simulation(
    args: argparse.Namespace, settings: BotSettings, exchange: DexConnection
) -> None:
    prices = load_price_csv(args.prices_csv) if args.prices_csv else None
    amounts = [to_decimal(part) for part in args.sim_arb_amounts.split(",") if part.strip()]
    result = await asyncio.to_thread(
        simulate_strategies,
        exchange,
        base_token=settings.token_key(settings.base_token),
        stable_token=settings.token_key(settings.stable_token),
        ema_alpha=float(settings.signals.ema_alpha),
        momentum_threshold=settings.signals.momentum_threshold,
        mean_reversion_threshold=settings.signals.mean_reversion_threshold,
        arbitrage_path=settings.arbitrage_path_keys if settings.arbitrage.enabled else None,
        arbitrage_evaluator=build_arbitrage_evaluator(settings, exchange),
        arbitrage_amounts=amounts,
        prices=prices,
        samples=args.samples,
        sample_interval=args.sample_interval,
        variation_bps=args.variation_bps,
    )
    logger.info(
        "Simulation finished (%s series, %d points): price=%.6f ema=%.6f",
        result.source,
        len(result.prices),
        result.price,
        result.last_ema,
    )


async def run_from_args(args: argparse.Namespace) -> None:
    try:
        settings = load_settings(
            args.config,
            overrides=settings_overrides(args),
            require_wallet=not args.simulate,
            env_file=args.env_file,
        )
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}")

    logger.info("Starting with %s", describe(settings))
    exchange = DexConnection(
        settings.base_url,
        wallet=settings.wallet,
        signing_key=settings.signing_key,
    )
    try:
        if args.simulate:
            await run_simulation(args, settings, exchange)
            return

        orchestrator = build_orchestrator(settings, exchange)
        await asyncio.to_thread(log_balance_snapshot, exchange, settings)

        if args.once:
            report = await asyncio.to_thread(orchestrator.run_tick)
            logger.info("Tick: %s", format_report(report))
            return

        def _tick() -> TickReport:
            report = orchestrator.run_tick()
            logger.info("Tick: %s", format_report(report))
            return report

        scheduler = TickScheduler(
            _tick,
            interval_seconds=settings.interval_seconds,
            jitter_seconds=settings.jitter_seconds,
        )
        scheduler.install_signal_handlers()
        logger.info(
            "Running every %.1f min (+/- %.0fs jitter)",
            settings.interval_minutes,
            settings.jitter_seconds,
        )
        await scheduler.run(max_ticks=args.max_ticks)
    finally:
        exchange.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the DEX trading bot: gated sells, arbitrage and signal trades.",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Optional path to a YAML settings file.",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="dotenv file with WALLET_ADDRESS, PRIVATE_KEY and friends. Defaults to the nearest .env.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit.",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Quote-only simulation of every strategy; never trades or reads balances.",
    )
    parser.add_argument(
        "--prices-csv",
        default=None,
        help="Replay prices from a CSV with a 'price' column instead of sampling quotes (simulation only).",
    )
    parser.add_argument(
        "--samples",
        type=int,
        default=SIM_SAMPLES_DEFAULT,
        help="Number of spot quotes sampled in simulation mode.",
    )
    parser.add_argument(
        "--sample-interval",
        type=float,
        default=SIM_SAMPLE_INTERVAL_DEFAULT,
        help="Seconds between simulation samples.",
    )
    parser.add_argument(
        "--variation-bps",
        type=float,
        default=SIM_VARIATION_BPS_DEFAULT,
        help="Step size of the synthetic random walk used when quotes are flat.",
    )
    parser.add_argument(
        "--sim-arb-amounts",
        default=SIM_ARB_AMOUNTS_DEFAULT,
        help="Comma separated start amounts for the arbitrage simulation.",
    )
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Plan trades without submitting them. Defaults to DRY_RUN or true.",
    )
    parser.add_argument(
        "--tick-mode",
        choices=TICK_MODES,
        default=None,
        help="'exclusive' ends a tick after the first stage that trades; 'independent' runs every stage.",
    )
    parser.add_argument("--arb-path", default=None, help="Arbitrage path such as USDC-GALA-WETH-USDC.")
    parser.add_argument(
        "--arb-mode",
        choices=ARB_MODES,
        default=None,
        help="'triangular' walks a 4-asset loop; 'fee_tier' round-trips A-B-A across two fee tiers.",
    )
    parser.add_argument("--ledger-path", default=None, help="Position ledger JSON file.")
    parser.add_argument("--state-path", default=None, help="Price history JSON file.")
    parser.add_argument("--base-url", default=None, help="Base URL of the DEX gateway.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the signal picker.")
    parser.add_argument(
        "--max-ticks",
        type=int,
        default=None,
        help="Stop the loop after this many ticks.",
    )
    parser.add_argument(
        "--log-level",
        default=LOG_LEVEL_DEFAULT,
        help="Configure the logging level (e.g. DEBUG, INFO).",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    default_level = getattr(logging, LOG_LEVEL_DEFAULT.upper(), logging.INFO)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), default_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_from_args(args))
    except KeyboardInterrupt:  # pragma: no cover - outer signal handler
        logger.info("Interrupted by user. Goodbye!")


if __name__ == "__main__":  # pragma: no cover - script entry point
    main()
