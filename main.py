"""
Dojo Risk Core - Command Line Entry Point

Position sizing, drawdown tiers, circuit breakers and strategy lifecycle
for a systematic trading platform.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Size a trade: entry, stop, risk amount, account balance
    python main.py --size 100 95 500 10000 --target 110

    # Show the drawdown tier for a drawdown percentage
    python main.py --tier -12 --portfolio default

    # Portfolio health check (re-derives the account status)
    python main.py --status --portfolio <portfolio id>

    # Show every version of a strategy
    python main.py --lineage <strategy id>

    # Lock a portfolio and block all of its strategies
    python main.py --emergency-stop "broker outage" --portfolio <portfolio id>
"""

import argparse
import asyncio
import sys
from decimal import Decimal
from typing import Dict

import structlog

from dojo_risk.core.config import (RiskProfileLoader, core_config,
                                   risk_limits_config, risk_profile_config)
from dojo_risk.core.engine import RiskEngine
from dojo_risk.core.errors import RiskCoreError
from dojo_risk.risk.calculations import calculate_position_size
from dojo_risk.risk.tiers import calculate_position_size_adjustment, get_action_for_drawdown
from dojo_risk.storage.database import Database
from dojo_risk.strategies.lifecycle import StrategyLifecycleManager
from dojo_risk.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = core_config.validate_configuration()
    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "environment": core_config.system.environment,
        "database_url": core_config.database.database_url,
        "risk_profile_file": core_config.risk_profiles.risk_profile_file or "(built-in defaults)",
    }


def print_sizing(entry: str, stop: str, risk: str, balance: str, target: str = None):
    result = calculate_position_size(entry, stop, risk, balance, target)
    print("\n" + "=" * 60)
    print("           POSITION SIZE")
    print("=" * 60)
    print(f"   Quantity:       {result.quantity}")
    print(f"   Position size:  {result.position_size_usd}")
    print(f"   Risk amount:    {result.risk_amount}")
    print(f"   Risk percent:   {result.risk_percent}%")
    if result.risk_reward_ratio is not None:
        print(f"   Reward : risk:  {result.risk_reward_ratio}")
    print("=" * 60)


def print_tier(drawdown: str, portfolio_id: str):
    loader = RiskProfileLoader.from_config(risk_profile_config, risk_limits_config)
    actions = loader.get_profile(portfolio_id).drawdown_actions
    tier = get_action_for_drawdown(drawdown, actions)

    print(f"\nDrawdown {drawdown}%:")
    if tier is None:
        print("   No tier reached - full size")
        return
    print(f"   Tier:        {tier.action.value} (threshold {tier.threshold}%)")
    print(f"   Multiplier:  {calculate_position_size_adjustment(Decimal('1'), drawdown, actions)}")


async def run_with_database(args) -> None:
    db = Database()
    await db.initialize()
    try:
        if args.status:
            engine = RiskEngine(db)
            metrics = await engine.check_portfolio_health(args.portfolio)
            print("\n" + "=" * 60)
            print("           PORTFOLIO STATUS")
            print("=" * 60)
            print(f"   Account status:  {metrics.account_status.value.upper()}")
            print(f"   Drawdown:        {metrics.current_drawdown}%")
            print(f"   Balance / peak:  {metrics.current_balance} / {metrics.peak_balance}")
            print(f"   Open positions:  {metrics.open_positions}")
            print(f"   Active breakers: {len(metrics.active_breakers)}")
            for event in metrics.active_breakers:
                print(f"     - [{event.level.value}] {event.reason}")
            print("=" * 60)

        elif args.lineage:
            manager = StrategyLifecycleManager(db)
            lineage = await manager.get_strategy_lineage(args.lineage)
            print(f"\nLineage of {lineage.root.name} ({lineage.total_versions} versions):")
            for version in lineage.versions:
                strategy = version.strategy
                print(
                    f"   {strategy.name} [{strategy.status.value}] "
                    f"open={version.open_positions} closed={version.closed_positions} "
                    f"net_pnl={version.net_pnl}"
                )

        elif args.emergency_stop:
            engine = RiskEngine(db)
            result = await engine.emergency_stop(args.portfolio, args.emergency_stop)
            print(f"\n🚨 {result.reason}")
            print(f"   Strategies blocked: {result.strategies_blocked}")
            print(f"   Open positions:     {result.open_positions}")
    finally:
        await db.close()


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Dojo Risk Core - position sizing, drawdown tiers and strategy lifecycle"
    )

    # Actions
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--size",
        nargs=4,
        metavar=("ENTRY", "STOP", "RISK", "BALANCE"),
        help="Calculate a position size",
    )
    parser.add_argument("--target", help="Target price for the reward:risk ratio")
    parser.add_argument("--tier", metavar="DRAWDOWN", help="Show the tier for a drawdown %% (<= 0)")
    parser.add_argument(
        "--status", action="store_true", help="Run a portfolio health check"
    )
    parser.add_argument("--lineage", metavar="STRATEGY_ID", help="Show a strategy's versions")
    parser.add_argument(
        "--emergency-stop",
        metavar="REASON",
        help="Lock the portfolio and block all strategies (USE WITH CAUTION)",
    )
    parser.add_argument(
        "--portfolio", default="default", help="Portfolio id (default: default)"
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()

    if args.check:
        config_check = check_configuration()
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nEnvironment: {config_check['environment']}")
        print(f"Database: {config_check['database_url']}")
        print(f"Risk profiles: {config_check['risk_profile_file']}")
        print("\n" + "=" * 60)
        return

    try:
        if args.init_db:
            print("\n📦 Initializing database...")
            db = Database()
            await db.initialize()
            print("✓ Database initialized successfully")
            await db.close()
            return

        if args.size:
            print_sizing(*args.size, target=args.target)
            return

        if args.tier is not None:
            print_tier(args.tier, args.portfolio)
            return

        if args.status or args.lineage or args.emergency_stop:
            await run_with_database(args)
            return

        parser.print_help()

    except RiskCoreError as e:
        logger.error("cli.error", **e.to_dict())
        print(f"\n✗ {e.message}")
        sys.exit(1)


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
