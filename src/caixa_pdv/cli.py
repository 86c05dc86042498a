"""Command-line entry points for the Caixa PDV register.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing read-only reports. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import DiscountType, PaymentMethod, ProductCategory
from .engine import to_money
from .pricing import make_discount


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``persist`` is ``False`` for commands that flush the outbox themselves.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    persist: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="caixa-cli",
        description="Command-line register for the Caixa PDV store workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
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
    """Declare mutating CLI commands such as sales and drawer transitions."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "start-day": register_start_day_command(subparsers),
        "end-day": register_end_day_command(subparsers),
        "withdraw": register_withdraw_command(subparsers),
        "sync": register_sync_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "report": register_report_command(subparsers),
        "sales": register_sales_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(raw: str) -> Tuple[str, int]:
    """Parse a ``PRODUCT_ID=QTY`` cart argument; a bare id means one unit."""
    product_id, sep, quantity = raw.partition("=")
    product_id = product_id.strip()
    if not product_id:
        raise argparse.ArgumentTypeError(f"Invalid item {raw!r}: expected PRODUCT_ID=QTY")
    if not sep:
        return product_id, 1
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in {raw!r}") from exc


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--stock", type=int, required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument(
            "--category",
            choices=[member.value for member in ProductCategory],
            default=ProductCategory.FOOD.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit the name, stock, price or category of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--stock", type=int, default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--category", choices=[member.value for member in ProductCategory], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Ring up a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            metavar="PRODUCT_ID=QTY",
            help="Cart line; repeat for several products.",
        )
        parser.add_argument(
            "--payment",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--discount-type", choices=[member.value for member in DiscountType], default=None)
        parser.add_argument("--discount-value", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_start_day_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``start-day``."""
    name = "start-day"
    help_text = "Open the cash drawer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        seed = parser.add_mutually_exclusive_group(required=True)
        seed.add_argument("--amount", default=None, help="Opening cash counted into the drawer.")
        seed.add_argument(
            "--use-previous",
            action="store_true",
            help="Reuse the previous day's closing balance.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_start_day)


def register_end_day_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``end-day``."""
    name = "end-day"
    help_text = "Close the cash drawer and archive today's report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_end_day)


def register_withdraw_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``withdraw``."""
    name = "withdraw"
    help_text = "Record a cash withdrawal (sangria)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--date", default=None, help="Day key YYYY-MM-DD (defaults to today).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_withdraw)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Retry pending writes to the store workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--retry-exhausted",
            action="store_true",
            help="Also retry writes that already reached the attempt limit.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync, persist=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", choices=[member.value for member in ProductCategory], default=None)
        parser.add_argument("--in-stock", action="store_true", help="Hide products without stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display the financial report of a day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="Day key YYYY-MM-DD (defaults to today).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_day_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List the sales of a day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="Day key YYYY-MM-DD (defaults to today).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


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


def translate_add_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    """Translate CLI args into a product registration command."""
    return core_logic.ProductCommand(
        name=args.name,
        stock=args.stock,
        price=to_money(args.price),
        category=ProductCategory(args.category),
    )


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the changed product fields."""
    changes: Dict[str, Any] = {}
    if args.name is not None:
        changes["name"] = args.name
    if args.stock is not None:
        changes["stock"] = args.stock
    if args.price is not None:
        changes["price"] = to_money(args.price)
    if args.category is not None:
        changes["category"] = ProductCategory(args.category)
    if not changes:
        raise ValueError("Nothing to update: pass at least one of --name, --stock, --price, --category")
    return changes


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        items=tuple(args.items),
        payment_method=PaymentMethod(args.payment),
        discount=make_discount(args.discount_type, args.discount_value),
    )


def translate_start_day(args: argparse.Namespace) -> core_logic.StartDayCommand:
    """Translate CLI args into a start-day command object."""
    amount = to_money(args.amount) if args.amount is not None else None
    return core_logic.StartDayCommand(amount=amount, use_previous=bool(args.use_previous))


def translate_withdraw(args: argparse.Namespace) -> core_logic.WithdrawalCommand:
    """Translate CLI args into a withdrawal command object."""
    return core_logic.WithdrawalCommand(
        amount=to_money(args.amount),
        reason=args.reason,
        day_key=args.date,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"Registered {product.name} ({product.product_id})")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.edit_product(context, args.product_id, **translate_update_product(args))
    print(f"Updated {product.name}: stock={product.stock} price={product.price} category={product.category.value}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sale(args))
    print(
        f"Sale {sale.sale_id}: subtotal={sale.subtotal} discount={sale.discount_amount} "
        f"total={sale.total} ({sale.payment_method.value})"
    )
    return 0


def run_start_day(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the start-of-day workflow via the BLL."""
    opening = core_logic.open_drawer(context, translate_start_day(args))
    print(f"Drawer opened with {opening}")
    return 0


def run_end_day(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the end-of-day workflow via the BLL."""
    report = core_logic.close_drawer(context)
    print(f"Drawer closed for {report.date}: opening={report.opening_cash} closing={report.closing_cash}")
    return 0


def run_withdraw(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the withdrawal workflow via the BLL."""
    withdrawal = core_logic.record_cash_withdrawal(context, translate_withdraw(args))
    print(f"Withdrawal {withdrawal.withdrawal_id}: {withdrawal.amount} ({withdrawal.reason})")
    return 0


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Flush the outbox, optionally retrying parked entries."""
    result = core_logic.sync_outbox(context, retry_exhausted=bool(args.retry_exhausted))
    status = core_logic.outbox_status(context)
    print(
        f"Delivered {result.delivered}, failed {result.failed}; "
        f"{status['pending']} pending, {status['exhausted']} parked"
    )
    return 0 if result.clean else 1


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the product list with stock levels."""
    category = ProductCategory(args.category) if args.category else None
    products = core_logic.list_products(context, category=category, in_stock_only=bool(args.in_stock))
    for product in products:
        print(f"{product.product_id}  {product.name:<30} {product.category.value:<6} {product.stock:>5}  {product.price}")
    return 0


def run_day_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the financial summary of a day."""
    summary = core_logic.day_summary(context, args.date)
    totals = summary.totals
    lines = [
        f"Report for {summary.date}",
        f"  Sales:            {totals.sale_count}",
        f"  Total sales:      {totals.total_sales}",
        f"  Cash sales:       {totals.cash_sales}",
        f"  Pix sales:        {totals.pix_sales}",
        f"  Discounts:        {totals.total_discounts}",
        f"  Opening cash:     {summary.opening_cash}",
        f"  Expected closing: {summary.expected_closing_cash}",
        f"  Withdrawals:      {summary.total_withdrawals}",
        f"  Available cash:   {summary.available_cash}",
    ]
    if summary.recorded_closing_cash is not None:
        lines.append(f"  Closing cash:     {summary.recorded_closing_cash}")
    if summary.report is not None:
        for withdrawal in summary.report.withdrawals:
            lines.append(f"    - {withdrawal.amount} {withdrawal.reason}")
    print("\n".join(lines))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sales of a day."""
    for sale in core_logic.sales_for_day(context, args.date):
        items = ", ".join(f"{item.quantity}x {item.product_name}" for item in sale.items)
        print(f"{sale.timestamp:%H:%M}  {sale.payment_method.value:<4} {sale.total:>9}  {items}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.BusinessRuleViolation, ValueError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_state(context: core_logic.RuntimeContext) -> None:
    """Save the local cache and flush the outbox after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].persist:
            persist_state(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
