"""
Commission Quote Tool — preview what a pricing configuration pays.

Validates a commission configuration (from a JSON file, inline JSON, or an
operation type in the store), prints its tiers, and resolves the commission
for each ``--amount`` given. Configuration errors are reported the same way
the desk reports them when an administrator saves an operation type.

Usage:
    python -m agency_desk.cli.quote --config pricing.json --amount 30000 --amount 80000
    python -m agency_desk.cli.quote --json '{"type": "percentage", "rate": 1.5}' --amount 12345
    python -m agency_desk.cli.quote --op-type depot_orange --amount 50000
"""

from __future__ import annotations

import argparse
import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Sequence

from rich.console import Console
from rich.table import Table

from agency_desk.config import settings
from agency_desk.domain.errors import DeskError
from agency_desk.domain.schema import TieredCommission, parse_commission_config
from agency_desk.pricing.engine import describe_commission, resolve_commission

console = Console()


def _tier_table(config: TieredCommission) -> Table:
    table = Table(show_lines=True)
    table.add_column("From", style="cyan", justify="right")
    table.add_column("To", style="cyan", justify="right")
    table.add_column("Commission", style="green", justify="right")
    for tier in config.tiers:
        commission = tier.commission if tier.is_percentage else str(tier.value)
        table.add_row(str(tier.from_), "∞" if tier.to is None else str(tier.to), str(commission))
    return table


def run_quote(
    payload: Any,
    amounts: Sequence[Decimal],
    decimals: int = 0,
    out: Console | None = None,
) -> bool:
    """
    Validate a configuration and quote each amount.

    Args:
        payload: Raw commission configuration (dict, JSON-decoded).
        amounts: Principal amounts to quote.
        decimals: Currency minor-unit digits.
        out: Console to print to (defaults to stdout).

    Returns:
        True if the configuration is valid and every amount resolved.
    """
    out = out or console
    out.print("\n[bold blue]═══ Commission Quote ═══[/bold blue]")

    try:
        config = parse_commission_config(payload)
    except DeskError as exc:
        out.print("[bold red]✗ INVALID CONFIGURATION[/bold red]")
        out.print(f"  Reason: {exc.message}")
        return False

    out.print(f"  Configuration: [bold]{describe_commission(config)}[/bold]")
    if isinstance(config, TieredCommission):
        out.print(_tier_table(config))

    ok = True
    if amounts:
        table = Table()
        table.add_column("Principal", style="cyan", justify="right")
        table.add_column("Commission", justify="right")
        for amount in amounts:
            try:
                commission = resolve_commission(config, amount, decimals)
            except DeskError as exc:
                ok = False
                table.add_row(str(amount), f"[red]{exc.code}: {exc.message}[/red]")
            else:
                table.add_row(str(amount), f"[green]{commission}[/green]")
        out.print(table)

    out.print("[bold blue]═══ Quote Complete ═══[/bold blue]\n")
    return ok


def _amount(text: str) -> Decimal:
    try:
        return Decimal(text)
    except ArithmeticError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None


def _load_payload(args: argparse.Namespace) -> Any:
    if args.json is not None:
        return json.loads(args.json)
    if args.config is not None:
        return json.loads(Path(args.config).read_text(encoding="utf-8"))

    from agency_desk.store.service import SqlItemStore

    store = SqlItemStore(args.database_url or settings.database_url)
    try:
        op_type = store.get_operation_type(args.op_type)
    finally:
        store.dispose()
    if op_type is None:
        raise SystemExit(f"Operation type {args.op_type} not found")
    return op_type.commission_config


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Agency Desk commission quote tool")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--config", help="Path to a JSON commission configuration")
    source.add_argument("--json", help="Inline JSON commission configuration")
    source.add_argument("--op-type", help="Operation type id to read from the store")
    parser.add_argument(
        "--amount", "-a",
        action="append",
        type=_amount,
        default=[],
        help="Principal amount to quote (repeatable)",
    )
    parser.add_argument(
        "--decimals",
        type=int,
        default=None,
        help="Currency minor-unit digits (defaults to .env settings)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Store connection string for --op-type (defaults to .env settings)",
    )
    args = parser.parse_args(argv)

    decimals = settings.currency_decimals if args.decimals is None else args.decimals
    ok = run_quote(_load_payload(args), args.amount, decimals=decimals)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
