"""Command-line entry points for stockroom.

All orchestration here is argparse wiring and translation of arguments into
calls on :class:`~stockroom.core_logic.TransactionService` and
:class:`~stockroom.product_store.ProductStore`. Keeping the CLI thin means the
same parser configuration can be reused by tests and scripts.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .exceptions import BusinessRuleViolation, InvalidQuantityError
from .product_store import describe_products
from .transactions import RENTAL, SALE


KIND_CHOICES = (SALE.name, RENTAL.name)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockroom",
        description="Record sales and rentals against the Stockroom workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest one above the working directory).",
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
    """Declare commands that change the workbook."""
    specs = {
        "new-sale": register_new_sale_command(subparsers),
        "new-rental": register_new_rental_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "close": register_close_command(subparsers),
        "delete": register_delete_command(subparsers),
        "return-item": register_return_item_command(subparsers),
        "mark-returned": register_return_status_command(subparsers, "mark-returned", returned=True),
        "unmark-returned": register_return_status_command(subparsers, "unmark-returned", returned=False),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "show": register_show_command(subparsers),
        "list": register_list_command(subparsers),
        "stock": register_stock_command(subparsers),
        "penalty": register_penalty_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_transaction_arguments(parser: argparse.ArgumentParser, *, with_kind: bool = True) -> None:
    if with_kind:
        parser.add_argument("--kind", choices=KIND_CHOICES, required=True)
    parser.add_argument("--transaction-id", type=int, required=True)


def register_new_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-sale``."""
    name = "new-sale"
    help_text = "Open a new, empty sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_sale)


def register_new_rental_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-rental``."""
    name = "new-rental"
    help_text = "Open a new, empty rental with a due date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        due = parser.add_mutually_exclusive_group()
        due.add_argument("--due-date", type=date.fromisoformat, default=None)
        due.add_argument("--days", type=int, default=None, help="Loan period in days.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_rental)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add a product to an open sale or rental, consuming stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_transaction_arguments(parser)
        parser.add_argument("--item-code", type=int, required=True)
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_close_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``close``."""
    name = "close"
    help_text = "Close a sale or rental and store its total."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_transaction_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a sale or rental and its line items (stock is not restored)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_transaction_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_return_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return-item``."""
    name = "return-item"
    help_text = "Put rented units of a product back in stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-code", type=int, required=True)
        parser.add_argument("--quantity", default="1")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return_item)


def register_return_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    *,
    returned: bool,
) -> CommandSpec:
    """Register ``mark-returned`` or ``unmark-returned``."""
    help_text = "Flag a rental as returned." if returned else "Flag a rental as still waiting for its items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_transaction_arguments(parser, with_kind=False)
        parser.set_defaults(command=name, returned=returned)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return_status)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Print one sale or rental."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_transaction_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show, mutates=False)


def register_list_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``list``."""
    name = "list"
    help_text = "Print every sale or rental, optionally filtered by status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=KIND_CHOICES, required=True)
        parser.add_argument("--status", choices=("all", "open", "closed"), default="all")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list, mutates=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-code", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_penalty_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``penalty``."""
    name = "penalty"
    help_text = "Compute the overdue fee of a rental on a given day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_transaction_arguments(parser, with_kind=False)
        parser.add_argument("--on", dest="on", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_penalty, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the nearest ``config.ini`` above the working
    directory is used.
    """
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


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into ``add_line_item`` keyword arguments."""
    try:
        quantity = Decimal(args.quantity)
    except InvalidOperation as exc:
        raise InvalidQuantityError(f"Invalid quantity: {args.quantity!r}", quantity=args.quantity) from exc
    return {
        "item_code": args.item_code,
        "quantity": quantity,
    }


def translate_new_rental(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into ``new_transaction`` keyword arguments for a rental."""
    created_on = args.date
    due_date = args.due_date
    if due_date is None and args.days is not None:
        if args.days < 0:
            raise BusinessRuleViolation("Rental period must not be negative")
        due_date = core_logic.resolve_date(created_on) + timedelta(days=args.days)
    return {"created_on": created_on, "due_date": due_date}


def run_new_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = context.sales.new_transaction(args.date)
    print(sale)
    return 0


def run_new_rental(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rental = context.rentals.new_transaction(**translate_new_rental(args))
    print(rental)
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    service = context.service_for(args.kind)
    transaction = service.get(args.transaction_id)
    service.add_line_item(transaction, **translate_add_item(args))
    print(transaction)
    return 0


def run_close(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    service = context.service_for(args.kind)
    total = service.close(service.get(args.transaction_id))
    print(f"{args.kind.capitalize()} {args.transaction_id} closed with total {total}")
    return 0


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    service = context.service_for(args.kind)
    service.delete(service.get(args.transaction_id))
    print(f"{args.kind.capitalize()} {args.transaction_id} deleted")
    return 0


def run_return_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = context.rentals.return_line_item(args.item_code, args.quantity)
    print(*describe_products([product]))
    return 0


def run_return_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rental = context.rentals.get(args.transaction_id)
    if args.returned:
        context.rentals.mark_returned(rental)
    else:
        context.rentals.unmark_returned(rental)
    print(rental)
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(context.service_for(args.kind).get(args.transaction_id))
    return 0


def run_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    service = context.service_for(args.kind)
    predicates = {
        "all": lambda transaction: True,
        "open": lambda transaction: transaction.is_open,
        "closed": lambda transaction: not transaction.is_open,
    }
    for transaction in service.filter(predicates[args.status]):
        print(transaction)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.item_code is not None:
        products = [context.products.get_by_code(args.item_code)]
    else:
        products = context.products.iter_products()
    for line in describe_products(products):
        print(line)
    return 0


def run_penalty(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rental = context.rentals.get(args.transaction_id)
    print(f"Penalty fee: {context.rentals.penalty(rental, args.on)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
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
        spec = command_table.get(args.command)
        if exit_code == 0 and (spec is None or spec.mutates):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
