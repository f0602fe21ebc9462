#!/usr/bin/env python3
"""
LEVER - Risk Engine CLI

Scenario runner for the LEVER leverage engine. This is a PURE SHELL - it only:
- Builds an engine on a manual clock
- Drives it through keeper cycles and trader actions
- Prints results

NO business logic lives here. All operations go through lever.engine.

Usage:
  python lever_cli.py markets                     # List market spec files
  python lever_cli.py markets --file example      # Show the markets in a spec file
  python lever_cli.py demo                        # Open, mark, accrue and close a long
  python lever_cli.py demo --scenario liquidation # Price shock, liquidation, bad debt waterfall
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from decimal import Decimal

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lever.config.config import get_config
from lever.config.markets import MarketSpec, list_market_files, load_market_specs
from lever.core.errors import LeverError
from lever.core.types import LiquidationResult, Side
from lever.engine import RiskEngine
from lever.keeper import Keeper
from lever.utils.clock import ManualClock
from lever.utils.logger import setup_logger

console = Console()

OWNER = "admin"
KEEPER = "keeper"
LP = "lp"


def build_engine(clock: ManualClock, insurance: Decimal, liquidity: Decimal) -> RiskEngine:
    engine = RiskEngine(
        OWNER,
        get_config().engine,
        clock,
        keepers=[KEEPER],
        liquidators=[KEEPER],
        insurance_balance=insurance,
    )
    engine.pool.deposit(LP, liquidity)
    return engine


def print_position(engine: RiskEngine, trader: str, market_id: int, title: str) -> None:
    position = engine.get_position(trader, market_id)
    if position is None:
        console.print(f"[dim]{trader} has no position on market {market_id}[/]")
        return
    health = engine.get_position_health(trader, market_id)
    liq_price = engine.get_liquidation_price(trader, market_id)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Side", position.side.value)
    table.add_row("Size", f"{position.notional:,.2f}")
    table.add_row("Entry", f"{position.entry_price:.4f}")
    table.add_row("PI", f"{health.mark_price:.4f}")
    table.add_row("Collateral", f"{position.collateral:,.4f}")
    table.add_row("Unrealized PnL", f"{health.unrealized_pnl:,.4f}")
    table.add_row("Pending borrow", f"{health.pending_borrow_fee:,.6f}")
    table.add_row("Pending funding", f"{health.pending_funding:,.6f}")
    table.add_row("Equity", f"{health.equity:,.4f}")
    table.add_row("Liq. threshold", f"{health.liquidation_threshold:,.4f}")
    table.add_row("Liq. price", f"{liq_price:.4f}" if liq_price is not None else "-")
    status = "[red]LIQUIDATABLE[/]" if health.liquidatable else "[green]healthy[/]"
    table.add_row("Status", status)
    console.print(Panel(table, title=f"[bold]{title}[/]", border_style="blue"))


def print_liquidation(result: LiquidationResult) -> None:
    table = Table(title=f"Liquidation of {result.trader} ({result.stage.value})")
    table.add_column("Item", style="cyan")
    table.add_column("Amount", justify="right")
    for label, value in (
        ("Size closed", result.size_closed),
        ("Realized PnL", result.realized_pnl),
        ("Penalty", result.penalty),
        ("Liquidator reward", result.liquidator_reward),
        ("Protocol fee", result.protocol_fee),
        ("Pool recovery", result.pool_recovery),
        ("Bad debt", result.bad_debt),
        ("Insurance covered", result.insurance_covered),
        ("ADL covered", result.adl_covered),
        ("Socialized", result.socialized_loss),
    ):
        table.add_row(label, f"{value:,.4f}")
    console.print(table)
    for event in result.adl_events:
        console.print(f"  [yellow]ADL[/] {event.trader}: reduced {event.size_reduced:,.2f} "
                      f"haircut {event.haircut:,.4f} (score {event.score:.4f})")


def print_pool(engine: RiskEngine, as_json: bool) -> None:
    state = engine.pool.to_dict()
    state["insurance_balance"] = str(engine.insurance.balance)
    if as_json:
        console.print_json(json.dumps(state))
        return
    table = Table(title="Capital pool")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in state.items():
        table.add_row(key, value)
    console.print(table)


def run_markets(args: argparse.Namespace) -> int:
    if not args.file:
        files = list_market_files()
        console.print("[bold]Market spec files:[/] " + (", ".join(files) if files else "[dim]none[/]"))
        return 0

    table = Table(title=f"Markets in '{args.file}'")
    for column in ("ID", "Name", "PI", "Max OI", "Resolves", "Overrides"):
        table.add_column(column)
    for spec in load_market_specs(args.file):
        table.add_row(
            str(spec.market_id),
            spec.name,
            f"{spec.initial_price:.2f}",
            f"{spec.max_oi:,.0f}",
            spec.resolution_time.strftime("%Y-%m-%d") if spec.resolution_time else "-",
            ", ".join(f"{k}={v}" for k, v in spec.overrides.items()) or "-",
        )
    console.print(table)
    return 0


def run_trade_scenario(engine: RiskEngine, clock: ManualClock, keeper: Keeper) -> None:
    """Open a long, drift the feed up over a day of keeper cycles, close."""
    engine.create_market(OWNER, MarketSpec(0, "Demo market", Decimal("0.50"), Decimal("1000000")))

    trade = engine.open_position("alice", 0, Side.LONG, Decimal("10000"), Decimal("1500"))
    console.print(f"[green]Opened[/] alice long 10,000 @ {trade.execution_price:.4f}")
    print_position(engine, "alice", 0, "After open")

    raw = Decimal("0.50")
    for _ in range(24):
        clock.advance(hours=1)
        raw = min(raw + Decimal("0.005"), Decimal("0.62"))
        report = keeper.run_cycle([(0, raw, Decimal("20"), Decimal("50000"))])
        console.print(f"[dim]{clock().strftime('%H:%M')} PI={engine.get_mark_price(0):.4f} {report.summary()}[/]")

    print_position(engine, "alice", 0, "After 24 keeper cycles")

    result = engine.close_position("alice", 0)
    console.print(f"[green]Closed[/] @ {result.execution_price:.4f}: realized {result.realized_pnl:,.4f}, "
                  f"payout {result.payout:,.4f}")


def run_liquidation_scenario(engine: RiskEngine, clock: ManualClock, keeper: Keeper) -> None:
    """Two opposing traders, a price shock, and the liquidation waterfall."""
    engine.create_market(OWNER, MarketSpec(0, "Demo market", Decimal("0.50"), Decimal("1000000")))

    engine.open_position("alice", 0, Side.LONG, Decimal("20000"), Decimal("2400"))
    engine.open_position("bob", 0, Side.SHORT, Decimal("5000"), Decimal("1000"))
    print_position(engine, "alice", 0, "alice before the shock")

    clock.advance(seconds=60)
    engine.force_set_price(OWNER, 0, Decimal("0.36"))
    console.print("[bold red]Price shock:[/] PI forced to 0.36")
    print_position(engine, "alice", 0, "alice after the shock")

    report = keeper.run_cycle()
    for liquidation in report.liquidations:
        print_liquidation(liquidation)
    if report.errors:
        for market_id, error in report.errors.items():
            console.print(f"[red]market {market_id}: {error}[/]")

    print_position(engine, "bob", 0, "bob after the waterfall")


def run_demo(args: argparse.Namespace) -> int:
    clock = ManualClock(datetime.now(timezone.utc))
    engine = build_engine(clock, Decimal(args.insurance), Decimal(args.liquidity))
    keeper = Keeper(engine, KEEPER, liquidate=True)

    console.print(Panel(f"Scenario: [bold]{args.scenario}[/]", title="[bold]LEVER[/]", border_style="blue"))
    if args.scenario == "liquidation":
        run_liquidation_scenario(engine, clock, keeper)
    else:
        run_trade_scenario(engine, clock, keeper)

    print_pool(engine, args.json_output)
    return 0


def parse_cli_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="LEVER - prediction market leverage risk engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python lever_cli.py markets --file example
  python lever_cli.py demo --scenario liquidation --insurance 100
        """
    )
    parser.add_argument("--log-level", default="WARNING", help="Console log level (default: WARNING)")
    parser.add_argument("--log-to-file", action="store_true", help="Also write dated log files under logs/")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    markets_parser = subparsers.add_parser("markets", help="List market spec files or show one")
    markets_parser.add_argument("--file", help="Market spec file stem or path")

    demo_parser = subparsers.add_parser("demo", help="Run a scenario on a manual clock")
    demo_parser.add_argument("--scenario", choices=["trade", "liquidation"], default="trade")
    demo_parser.add_argument("--liquidity", default="1000000", help="LP deposit (default: 1000000)")
    demo_parser.add_argument("--insurance", default="0", help="Initial insurance fund (default: 0)")
    demo_parser.add_argument("--json", action="store_true", dest="json_output", help="Print pool state as JSON")

    return parser.parse_args()


def main():
    args = parse_cli_args()
    setup_logger(log_level=args.log_level, log_to_file=args.log_to_file)

    handlers = {"markets": run_markets, "demo": run_demo}
    handler = handlers.get(args.command)
    if handler is None:
        console.print("[yellow]No command given. Try --help.[/]")
        sys.exit(2)

    try:
        sys.exit(handler(args))
    except (LeverError, ValueError, FileNotFoundError) as e:
        console.print(f"\n[bold red]Error:[/] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
