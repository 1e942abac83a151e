"""Command-line entry points for the cattle ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line strings into the command objects consumed by the business layer,
and printing read-only reports. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, csv_import, data_manager, fields, log, reporting
from .constants import CostCategory, RangeKey
from .periods import DateRange, resolve_range


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands whose successful run must be persisted.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cattle-cli",
        description="Command-line tools for the Cattle Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Act as this user instead of [Session] UserID from config.ini.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as purchases and sales."""
    specs = {
        "buy": register_buy_command(subparsers),
        "sell": register_sell_command(subparsers),
        "add-cost": register_add_cost_command(subparsers),
        "delete-transaction": register_delete_transaction_command(subparsers),
        "delete-cost": register_delete_cost_command(subparsers),
        "import-csv": register_import_csv_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "batches": register_batches_command(subparsers),
        "metrics": register_metrics_command(subparsers),
        "series": register_series_command(subparsers),
        "report": register_report_command(subparsers),
        "costs": register_costs_command(subparsers),
        "margin": register_margin_command(subparsers),
        "log": register_log_command(subparsers),
        "pool": register_pool_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--range",
        dest="range_key",
        choices=[member.value for member in RangeKey],
        default=RangeKey.LAST_30.value,
        help="Named period ending today (default: last30).",
    )
    parser.add_argument("--start", default=None, help="Explicit range start (YYYY-MM-DD); requires --end.")
    parser.add_argument("--end", default=None, help="Explicit range end (YYYY-MM-DD); requires --start.")


def register_buy_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``buy``."""
    name = "buy"
    help_text = "Record a cattle purchase, opening a new batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--price-per-head", required=True)
        parser.add_argument("--date", dest="occurred_on", default=None)
        parser.add_argument("--breed", default=None)
        parser.add_argument("--weight", dest="average_weight_kg", default=None, help="Average weight in kg.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_buy, mutates=True)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Record a cattle sale drawn from one or more batches."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--allocation",
            dest="allocations",
            action="append",
            required=True,
            metavar="BATCH_ID:QUANTITY",
            help="Batch to sell from; repeat for several batches.",
        )
        parser.add_argument("--total-price", required=True)
        parser.add_argument("--deduction", dest="input_cost_deduction", default="0")
        parser.add_argument("--date", dest="occurred_on", default=None)
        parser.add_argument("--breed", default=None)
        parser.add_argument("--weight", dest="average_weight_kg", default=None, help="Average weight in kg.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell, mutates=True)


def register_add_cost_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-cost``."""
    name = "add-cost"
    help_text = "Record an operating expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--category",
            choices=[member.value for member in CostCategory],
            required=True,
        )
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", dest="occurred_on", default=None)
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_cost, mutates=True)


def register_delete_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-transaction``."""
    name = "delete-transaction"
    help_text = "Delete a purchase or sale; a sale takes its allocations with it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_delete_transaction,
        mutates=True,
    )


def register_delete_cost_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-cost``."""
    name = "delete-cost"
    help_text = "Delete an input cost."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cost-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_cost, mutates=True)


def register_import_csv_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import-csv``."""
    name = "import-csv"
    help_text = "Import debits from a bank statement CSV as input costs."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file", dest="csv_file", type=Path, required=True)
        parser.add_argument(
            "--category",
            choices=[member.value for member in CostCategory],
            default=CostCategory.OTHER.value,
            help="Category assigned to every imported row (default: Other).",
        )
        parser.add_argument(
            "--row",
            dest="rows",
            action="append",
            type=int,
            default=None,
            help="CSV line number to import; repeat to pick several. Imports every debit when omitted.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_csv, mutates=True)


def register_batches_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``batches``."""
    name = "batches"
    help_text = "Display purchase batches and their remaining head."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="show_all", action="store_true", help="Include sold-out batches.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_batches_report)


def register_metrics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``metrics``."""
    name = "metrics"
    help_text = "Display headcount, revenue, costs and PnL for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_metrics_report)


def register_series_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``series``."""
    name = "series"
    help_text = "Display daily sales, costs and cumulative PnL for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_series_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display the monthly purchases, sales and costs summary."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_monthly_report)


def register_costs_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``costs``."""
    name = "costs"
    help_text = "Display input costs with totals per category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_costs_report)


def register_margin_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``margin``."""
    name = "margin"
    help_text = "Display cost basis and gross margin of one sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_margin_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_pool_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pool``."""
    name = "pool"
    help_text = "Display input costs not yet deducted against a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pool_report)


def load_runtime_context(
    config_path: Optional[Path] = None,
    user_id: Optional[str] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path, user_id=user_id)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_buy(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        quantity=fields.parse_quantity(args.quantity),
        price_per_head=fields.parse_money(args.price_per_head, field="price_per_head"),
        occurred_on=fields.parse_optional_date(args.occurred_on),
        breed=args.breed,
        average_weight_kg=fields.parse_optional_money(args.average_weight_kg, field="average_weight_kg"),
        notes=args.notes,
    )


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        allocations=tuple(
            fields.parse_allocation(raw, field=f"allocations[{index}]")
            for index, raw in enumerate(args.allocations)
        ),
        total_sale_price=fields.parse_money(args.total_price, field="total_sale_price"),
        input_cost_deduction=fields.parse_money(args.input_cost_deduction, field="input_cost_deduction"),
        occurred_on=fields.parse_optional_date(args.occurred_on),
        breed=args.breed,
        average_weight_kg=fields.parse_optional_money(args.average_weight_kg, field="average_weight_kg"),
        notes=args.notes,
    )


def translate_add_cost(args: argparse.Namespace) -> core_logic.InputCostCommand:
    """Translate CLI args into an input cost command object."""
    return core_logic.InputCostCommand(
        category=CostCategory(args.category),
        amount=fields.parse_money(args.amount),
        occurred_on=fields.parse_optional_date(args.occurred_on),
        description=args.description,
    )


def resolve_date_range(args: argparse.Namespace, *, today: Optional[date] = None) -> DateRange:
    """Turn ``--range`` or ``--start``/``--end`` into a :class:`DateRange`."""
    start_raw = getattr(args, "start", None)
    end_raw = getattr(args, "end", None)
    if start_raw or end_raw:
        if not (start_raw and end_raw):
            raise core_logic.FieldValidationError("range", "--start and --end must be given together")
        return DateRange(
            fields.parse_date(start_raw, field="start"),
            fields.parse_date(end_raw, field="end"),
        )
    return resolve_range(args.range_key, today or date.today())


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


def run_buy(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    command = translate_buy(args)
    transaction = core_logic.record_purchase(context, command)
    print(f"Recorded purchase {transaction.transaction_id}: {transaction.quantity} head, total {_money(transaction.total_amount)}")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sell(args)
    recorded = core_logic.record_sale(context, command)
    sale = recorded.transaction
    print(
        f"Recorded sale {sale.transaction_id}: {sale.quantity} head at "
        f"{_money(sale.price_per_head)} per head, total {_money(sale.total_amount)}"
    )
    for allocation in recorded.allocations:
        print(f"  {allocation.purchase_transaction_id}: {allocation.quantity} head @ {_money(allocation.cost_per_head)}")
    return 0


def run_add_cost(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the input cost workflow via the BLL."""
    command = translate_add_cost(args)
    cost = core_logic.record_input_cost(context, command)
    print(f"Recorded input cost {cost.cost_id}: {cost.category} {_money(cost.amount)}")
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_transaction(context, args.transaction_id)
    print(f"Deleted transaction {args.transaction_id}")
    return 0


def run_delete_cost(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_input_cost(context, args.cost_id)
    print(f"Deleted input cost {args.cost_id}")
    return 0


def run_import_csv(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Parse a statement, select the requested rows and commit them."""
    candidates = csv_import.read_bank_statement(args.csv_file)
    csv_import.select_candidates(
        candidates,
        row_numbers=args.rows,
        category=CostCategory(args.category),
    )
    rows = csv_import.commit_import(context, candidates)
    print(f"Imported {len(rows)} input cost(s) from {args.csv_file}")
    return 0


def run_batches_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the batch availability report."""
    batches = core_logic.list_available_batches(context)
    if not getattr(args, "show_all", False):
        batches = core_logic.selectable_batches(batches)
    for batch in batches:
        print(
            f"{batch.batch_id}  {batch.purchase_date}  {batch.breed or '-'}  "
            f"{batch.remaining_quantity}/{batch.purchased_quantity} head  @ {_money(batch.price_per_head)}"
        )
    return 0


def run_metrics_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard metrics report."""
    date_range = resolve_date_range(args)
    metrics = reporting.calculate_dashboard(context, date_range)
    print(f"Period:            {date_range.start} .. {date_range.end}")
    print(f"Net headcount:     {metrics.net_headcount}")
    print(f"Sales revenue:     {_money(metrics.sales_revenue)}")
    print(f"Input costs:       {_money(metrics.input_cost_total)}")
    print(f"Cost deductions:   {_money(metrics.input_cost_deductions)}")
    print(f"PnL:               {_money(metrics.pnl)}")
    return 0


def run_series_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the daily series report."""
    series = reporting.calculate_daily_series(context, resolve_date_range(args))
    for point in series:
        print(
            f"{point.day}  sales {_money(point.sales)}  inputs {_money(point.inputs)}  "
            f"deductions {_money(point.deductions)}  cumulative {_money(point.cumulative_pnl)}"
        )
    return 0


def run_monthly_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the monthly summary report."""
    for row in reporting.calculate_monthly_summary(context):
        print(
            f"{row.month}  purchases {_money(row.purchases)}  sales {_money(row.sales)}  "
            f"costs {_money(row.costs)}  pnl {_money(row.pnl)}"
        )
    return 0


def run_costs_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the input cost listing and category breakdown."""
    costs = core_logic.list_input_costs(context)
    for cost in costs:
        print(f"{cost.cost_id}  {cost.occurred_on}  {cost.category:<14} {_money(cost.amount):>12}  {cost.description or ''}")
    breakdown = reporting.summarize_costs_by_category(costs)
    for category, total in sorted(breakdown.totals.items()):
        print(f"{category:<14} {_money(total):>12}")
    print(f"{'Total':<14} {_money(breakdown.total):>12}")
    return 0


def run_margin_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = reporting.calculate_sale_summary(context, args.transaction_id)
    print(f"Sale {summary.sale_transaction_id}: {summary.quantity} head")
    print(f"Sale price:   {_money(summary.total_amount)}")
    print(f"Cost basis:   {_money(summary.cost_basis)}")
    print(f"Deduction:    {_money(summary.input_cost_deduction)}")
    print(f"Gross margin: {_money(summary.gross_margin)}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction log report."""
    for row in core_logic.list_transactions(context):
        print(
            f"{row.transaction_id}  {row.occurred_on}  {row.transaction_type:<4}  "
            f"{row.quantity:>5} head  {_money(row.total_amount):>12}  {row.notes or ''}"
        )
    return 0


def run_pool_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    pool = core_logic.calculate_unaccounted_input_cost(context)
    print(f"Unaccounted input cost: {_money(pool)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.AuthorizationError):
        log.error("%s", error)
        return 4
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.LedgerStoreError):
        log.error("%s", error)
        return 5
    if isinstance(error, (core_logic.BusinessRuleViolation, ValueError)):
        log.error("%s", error)
        return 2
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "user", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
