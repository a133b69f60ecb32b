"""
CLI entrypoint for the liquidity protection engine.

Provides commands for config inspection, persisted status, the event
audit trail, tick math, and a paper simulation.
"""
import json
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
import yaml

from liquidity_guard.config.config import load_config
from liquidity_guard.exceptions import LiquidityGuardError
from liquidity_guard.monitoring.logger import get_logger, setup_logging
from liquidity_guard.oracle.tick_math import get_sqrt_ratio_at_tick, tick_to_price
from liquidity_guard.storage.db import init_db

app = typer.Typer(
    name="liquidity-guard",
    help="Liquidity protection engine for an AMM-backed pool",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path]):
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


@app.command(name="show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Print the validated configuration."""
    config = _load(config_path)
    typer.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False))


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Display the persisted guard state.

    Shows accounts, active positions, TWAP cache and emergency switches.
    """
    config = _load(config_path)
    from liquidity_guard.storage.repository import StateRepository

    snapshot = StateRepository(init_db(config.storage.database_url)).load_state()
    if snapshot is None:
        typer.echo("No saved guard state.")
        return

    typer.echo("Guard Status")
    typer.echo("=" * 50)
    typer.echo(f"Environment:      {config.environment}")
    state = snapshot.emergency
    if state.emergency_mode:
        typer.secho(f"Emergency mode:   ON ({state.emergency_reason})", fg=typer.colors.RED, bold=True)
    else:
        typer.echo("Emergency mode:   off")
    if state.circuit_breaker_triggered:
        typer.secho(f"Circuit breaker:  TRIGGERED ({state.circuit_breaker_reason})", fg=typer.colors.YELLOW)
    else:
        typer.echo("Circuit breaker:  off")
    typer.echo(f"Accumulated fees: {snapshot.accumulated_fees}")
    if snapshot.pending_fees > 0:
        typer.echo(f"Pending fees:     {snapshot.pending_fees}")
    if snapshot.twap_cache:
        typer.echo(f"TWAP cache:       {snapshot.twap_cache.price:.8f} @ {snapshot.twap_cache.updated_at}")

    typer.echo(f"\nAccounts ({len(snapshot.accounts)})")
    typer.echo("-" * 50)
    for record in snapshot.accounts:
        flag = " [whitelisted]" if record.whitelisted else ""
        typer.echo(f"  {record.account:<20} principal {record.principal}{flag}")

    typer.echo(f"\nActive Positions ({len(snapshot.positions)})")
    typer.echo("-" * 50)
    for position in snapshot.positions:
        typer.echo(
            f"  #{position.position_id} [{position.tick_lower}, {position.tick_upper}) "
            f"liquidity {position.liquidity} ({position.state.value})"
        )


@app.command()
def events(
    limit: int = typer.Option(20, "--limit", help="Number of events to show"),
    event_type: Optional[str] = typer.Option(None, "--type", help="Filter by event type"),
    subject: Optional[str] = typer.Option(None, "--subject", help="Filter by account or position id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Show the most recent audit events."""
    config = _load(config_path)
    from liquidity_guard.storage.repository import get_recent_events

    rows = get_recent_events(init_db(config.storage.database_url), limit=limit, event_type=event_type, subject=subject)
    if not rows:
        typer.echo("No events recorded yet.")
        return
    for row in rows:
        typer.echo(f"{row['timestamp']:>12} {row['type']:<30} {row['subject']:<16} {json.dumps(row['details'])}")


@app.command(name="tick-price")
def tick_price(
    tick: int = typer.Argument(..., help="Pool tick"),
):
    """Print sqrt price (Q64.96) and price for a tick."""
    try:
        sqrt_price = get_sqrt_ratio_at_tick(tick)
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo(f"tick:           {tick}")
    typer.echo(f"sqrt_price_x96: {sqrt_price}")
    typer.echo(f"price:          {tick_to_price(tick):.18f}")


@app.command()
def simulate(
    depositors: int = typer.Option(3, "--depositors", help="Number of simulated depositors"),
    deposit: str = typer.Option("1000", "--deposit", help="Deposit per depositor"),
    weeks: int = typer.Option(3, "--weeks", help="Weeks to advance before withdrawing"),
    withdraw: str = typer.Option("40", "--withdraw", help="Withdrawal per depositor"),
    inject: str = typer.Option("500", "--inject", help="Liquidity injected into the AMM"),
    persist: bool = typer.Option(False, "--persist", help="Save final state and events to the configured database"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Run a paper scenario against the simulated AMM.

    Example:
        liquidity-guard simulate --depositors 5 --weeks 4 --withdraw 50
    """
    config = _load(config_path)
    from liquidity_guard.paper.paper_guard import PAPER_ADMIN, build_paper_environment

    db = None
    recorder = None
    if persist:
        from liquidity_guard.storage.repository import make_event_recorder

        db = init_db(config.storage.database_url)
        recorder = make_event_recorder(db)

    env = build_paper_environment(config, event_recorder=recorder)
    guard = env.guard
    deposit_amount = Decimal(deposit)
    accounts = [f"depositor-{i + 1}" for i in range(depositors)]

    for account in accounts:
        env.fund(account, deposit_amount)
        guard.deposit(account, deposit_amount)
    typer.echo(f"Deposited {deposit_amount} for {depositors} accounts")

    env.clock.advance(hours=1)
    try:
        change = guard.inject_liquidity(PAPER_ADMIN, Decimal(inject))
        typer.echo(f"Injected {inject}: position #{change.position_id} ({change.action.value})")
    except LiquidityGuardError as e:
        typer.secho(f"Injection rejected: {e}", fg=typer.colors.YELLOW)

    env.clock.advance(weeks=weeks)
    for account in accounts:
        try:
            receipt = guard.withdraw(account, Decimal(withdraw))
            typer.secho(
                f"{account}: withdrew {receipt.amount}, fee {receipt.fee}, net {receipt.net_amount} "
                f"(price source {receipt.price_source})",
                fg=typer.colors.GREEN,
            )
        except LiquidityGuardError as e:
            typer.secho(f"{account}: rejected {e}", fg=typer.colors.RED)

    status_view = guard.get_status()
    typer.echo("\n" + "=" * 50)
    for key, value in status_view.items():
        typer.echo(f"{key:<28} {value}")

    if db is not None:
        from liquidity_guard.storage.repository import StateRepository

        StateRepository(db).save_state(guard.export_state(), now=env.clock.time())
        typer.echo(f"State saved to {config.storage.database_url}")


if __name__ == "__main__":
    app()
