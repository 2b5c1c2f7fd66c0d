"""Command-line entry points for SmartStock.

All orchestration in this module is limited to argparse wiring, resolving the
acting user, and translating command-line arguments into the command objects
consumed by the business layer. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, reports
from .constants import Classification, Permission, TransactionType, UserRole, Workshop
from .permissions import require_permission

PASSWORD_ENV_VAR = "SMARTSTOCK_PASSWORD"
MAX_ATTEMPTS = 3

WORKSHOP_CHOICES = [member.value for member in Workshop]
CLASSIFICATION_CHOICES = [member.value for member in Classification]

Executor = Callable[[core_logic.RuntimeContext, data_manager.UserRow, argparse.Namespace], int]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Executor


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="smartstock",
        description="Command-line tools for the SmartStock workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--username",
        default=None,
        help="Account to act as (defaults to [Defaults] DefaultUser).",
    )
    parser.add_argument(
        "--password",
        default=None,
        help=f"Password for --username (defaults to ${PASSWORD_ENV_VAR}).",
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
    """Declare mutating CLI commands such as receipts and transfers."""
    specs = {
        "save-material": register_save_material_command(subparsers),
        "delete-material": register_delete_material_command(subparsers),
        "receipt": register_receipt_command(subparsers),
        "transfer": register_transfer_command(subparsers),
        "delete-transaction": register_delete_transaction_command(subparsers),
        "save-budget": register_save_budget_command(subparsers),
        "delete-budget": register_delete_budget_command(subparsers),
        "add-user": register_add_user_command(subparsers),
        "toggle-user": register_toggle_user_command(subparsers),
        "delete-user": register_delete_user_command(subparsers),
        "change-password": register_change_password_command(subparsers),
        "clear-logs": register_clear_logs_command(subparsers),
        "backup": register_backup_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and exports."""
    specs = {
        "summary": register_summary_command(subparsers),
        "stock": register_stock_command(subparsers),
        "history": register_history_command(subparsers),
        "budgets": register_budgets_command(subparsers),
        "activity": register_activity_command(subparsers),
        "export-inventory": register_export_inventory_command(subparsers),
        "export-history": register_export_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def decimal_argument(raw: str) -> Decimal:
    """argparse ``type`` that parses a decimal quantity."""
    try:
        return Decimal(raw.strip())
    except (InvalidOperation, AttributeError) as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {raw!r}") from exc


def _split_pair(raw: str) -> tuple[str, Decimal]:
    key, separator, value = raw.rpartition("=")
    if not separator or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected KEY=QUANTITY, got {raw!r}")
    return key.strip(), decimal_argument(value)


def receipt_line_argument(raw: str) -> core_logic.ReceiptLine:
    """argparse ``type`` for ``MATERIAL_ID=QUANTITY`` receipt lines."""
    material_id, quantity = _split_pair(raw)
    return core_logic.ReceiptLine(material_id=material_id, quantity=quantity)


def budget_item_argument(raw: str) -> data_manager.BudgetItem:
    """argparse ``type`` for ``MATERIAL_NAME=ESTIMATE`` budget items."""
    material_name, estimate = _split_pair(raw)
    return data_manager.BudgetItem(material_id=None, material_name=material_name, estimated_qty=estimate)


def _add_workshop_argument(parser: argparse.ArgumentParser, flag: str = "--workshop", **kwargs) -> None:
    parser.add_argument(flag, choices=WORKSHOP_CHOICES, type=str.upper, **kwargs)


# ---------------------------------------------------------------------------
# Write command registration
# ---------------------------------------------------------------------------


def register_save_material_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``save-material``."""
    name = "save-material"
    help_text = "Create a material, or edit one when --material-id is given."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--material-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--unit", required=True)
        _add_workshop_argument(parser, required=True)
        parser.add_argument("--classification", choices=CLASSIFICATION_CHOICES, default=Classification.MAIN.value)
        parser.add_argument("--origin", default="")
        parser.add_argument("--quantity", type=decimal_argument, default=Decimal("0"))
        parser.add_argument("--min-threshold", type=decimal_argument, default=Decimal("0"))
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_save_material)


def register_delete_material_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-material``."""
    name = "delete-material"
    help_text = "Delete a material row."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--material-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_material)


def register_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receipt``."""
    name = "receipt"
    help_text = "Record an IN or OUT receipt."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--type",
            dest="transaction_type",
            choices=[TransactionType.IN.value, TransactionType.OUT.value],
            type=str.upper,
            required=True,
        )
        _add_workshop_argument(parser, required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=receipt_line_argument,
            required=True,
            help="MATERIAL_ID=QUANTITY; repeat for each line.",
        )
        parser.add_argument("--order-code", type=str.upper, default=None)
        parser.add_argument("--receipt-id", default=None)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receipt)


def register_transfer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Move materials from one workshop to another."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_workshop_argument(parser, "--from", dest="source_workshop", required=True)
        _add_workshop_argument(parser, "--to", dest="target_workshop", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=receipt_line_argument,
            required=True,
            help="MATERIAL_ID=QUANTITY; repeat for each line.",
        )
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer)


def register_delete_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-transaction``."""
    name = "delete-transaction"
    help_text = "Delete a transaction and revert its stock movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_transaction)


def register_save_budget_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``save-budget``."""
    name = "save-budget"
    help_text = "Create an order budget, or edit one when --budget-id is given."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--budget-id", default=None)
        parser.add_argument("--order-code", type=str.upper, required=True)
        _add_workshop_argument(parser, required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=budget_item_argument,
            required=True,
            help="MATERIAL_NAME=ESTIMATE; repeat for each material.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_save_budget)


def register_delete_budget_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-budget``."""
    name = "delete-budget"
    help_text = "Delete the budget of an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-code", type=str.upper, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_budget)


def register_add_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-user``."""
    name = "add-user"
    help_text = "Create a user account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--login", required=True, help="Username of the new account.")
        parser.add_argument("--full-name", required=True)
        parser.add_argument("--initial-password", required=True)
        parser.add_argument(
            "--role",
            choices=[member.value for member in UserRole],
            type=str.upper,
            default=UserRole.STAFF.value,
        )
        parser.add_argument("--email", default=None)
        parser.add_argument(
            "--permission",
            dest="permissions",
            action="append",
            choices=[member.value for member in Permission],
            default=None,
            help="Explicit permission; repeat to grant several (defaults to the role bundle).",
        )
        parser.add_argument("--inactive", action="store_true", help="Create the account deactivated.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user)


def register_toggle_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``toggle-user``."""
    name = "toggle-user"
    help_text = "Activate or deactivate a user account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        state = parser.add_mutually_exclusive_group(required=True)
        state.add_argument("--activate", dest="is_active", action="store_true")
        state.add_argument("--deactivate", dest="is_active", action="store_false")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_toggle_user)


def register_delete_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-user``."""
    name = "delete-user"
    help_text = "Delete a user account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_user)


def register_change_password_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``change-password``."""
    name = "change-password"
    help_text = "Change the acting user's password."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--new-password", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_change_password)


def register_clear_logs_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear-logs``."""
    name = "clear-logs"
    help_text = "Remove every activity log entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear_logs)


def register_backup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Write a timestamped copy of the workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--directory", type=Path, default=Path("backups"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backup)


# ---------------------------------------------------------------------------
# Read command registration
# ---------------------------------------------------------------------------


def _add_material_filters(parser: argparse.ArgumentParser) -> None:
    _add_workshop_argument(parser, default=None)
    parser.add_argument("--classification", choices=CLASSIFICATION_CHOICES, default=None)
    parser.add_argument("--search", default=None)


def _add_history_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--type",
        dest="transaction_type",
        choices=[member.value for member in TransactionType],
        type=str.upper,
        default=None,
    )
    _add_workshop_argument(parser, default=None)
    parser.add_argument("--start-date", default=None, help="Inclusive ISO date (YYYY-MM-DD).")
    parser.add_argument("--end-date", default=None, help="Inclusive ISO date (YYYY-MM-DD).")
    parser.add_argument("--order-code", type=str.upper, default=None)
    parser.add_argument("--search", default=None)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display dashboard totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_material_filters(parser)
        parser.add_argument("--low-only", action="store_true", help="Only rows at or below their threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the transaction history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_history_filters(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_budgets_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``budgets``."""
    name = "budgets"
    help_text = "List order budgets, or show one order's issued quantities."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-code", type=str.upper, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_budgets_report)


def register_activity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``activity``."""
    name = "activity"
    help_text = "Display the activity log, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=50)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_activity_report)


def register_export_inventory_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-inventory``."""
    name = "export-inventory"
    help_text = "Export the material list to an .xlsx file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        _add_material_filters(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_inventory)


def register_export_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-history``."""
    name = "export-history"
    help_text = "Export transactions grouped by receipt to an .xlsx file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        _add_history_filters(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_history)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def authenticate_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> data_manager.UserRow:
    """Log in as the account named on the command line or in the config."""
    username = getattr(args, "username", None) or context.settings.default_user
    password = getattr(args, "password", None) or os.environ.get(PASSWORD_ENV_VAR)
    if not password:
        raise core_logic.AuthenticationError(
            f"No password given for '{username}'; use --password or ${PASSWORD_ENV_VAR}"
        )
    return core_logic.authenticate(context, username, password)


def dispatch_command(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, actor, args)


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_save_material(args: argparse.Namespace) -> core_logic.MaterialCommand:
    """Translate CLI args into a material command object."""
    return core_logic.MaterialCommand(
        material_id=args.material_id,
        name=args.name,
        unit=args.unit,
        workshop=args.workshop,
        classification=args.classification,
        origin=args.origin,
        quantity=args.quantity,
        min_threshold=args.min_threshold,
        note=args.note,
    )


def translate_receipt(args: argparse.Namespace) -> core_logic.ReceiptCommand:
    """Translate CLI args into an IN/OUT receipt command object."""
    return core_logic.ReceiptCommand(
        transaction_type=TransactionType(args.transaction_type),
        workshop=args.workshop,
        lines=list(args.items),
        receipt_id=args.receipt_id,
        order_code=args.order_code,
        note=args.note,
    )


def translate_transfer(args: argparse.Namespace) -> core_logic.ReceiptCommand:
    """Translate CLI args into a transfer receipt command object."""
    return core_logic.ReceiptCommand(
        transaction_type=TransactionType.TRANSFER,
        workshop=args.source_workshop,
        target_workshop=args.target_workshop,
        lines=list(args.items),
        note=args.note,
    )


def translate_save_budget(args: argparse.Namespace) -> core_logic.BudgetCommand:
    """Translate CLI args into a budget command object."""
    return core_logic.BudgetCommand(
        budget_id=args.budget_id,
        order_code=args.order_code,
        workshop=args.workshop,
        items=list(args.items),
    )


def translate_add_user(args: argparse.Namespace) -> core_logic.UserCommand:
    """Translate CLI args into a user command object."""
    return core_logic.UserCommand(
        username=args.login,
        full_name=args.full_name,
        password=args.initial_password,
        role=args.role,
        email=args.email,
        permissions=args.permissions,
        is_active=not getattr(args, "inactive", False),
    )


def _history_filters(args: argparse.Namespace) -> Dict[str, Optional[str]]:
    return {
        "transaction_type": args.transaction_type,
        "workshop": args.workshop,
        "start_date": args.start_date,
        "end_date": args.end_date,
        "order_code": args.order_code,
        "search": args.search,
    }


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _quantity(value: Decimal) -> str:
    return f"{value:.2f}"


def run_save_material(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the material create/edit workflow in the BLL."""
    material = core_logic.save_material(context, actor, translate_save_material(args))
    print(f"Saved material {material.material_id} ({material.name} @ {material.workshop})")
    return 0


def run_delete_material(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the material deletion workflow in the BLL."""
    core_logic.delete_material(context, actor, args.material_id)
    print(f"Deleted material {args.material_id}")
    return 0


def _print_receipt(result: core_logic.ReceiptResult) -> None:
    print(f"Receipt {result.receipt_id} ({result.transaction_type.value})")
    for row in result.transactions:
        print(f"  {row.material_id}  {row.material_name}  {_quantity(row.quantity)}")


def run_receipt(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the IN/OUT receipt workflow via the BLL."""
    result = core_logic.process_receipt(context, actor, translate_receipt(args))
    _print_receipt(result)
    return 0


def run_transfer(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the transfer workflow via the BLL."""
    result = core_logic.process_receipt(context, actor, translate_transfer(args))
    _print_receipt(result)
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the reversal workflow via the BLL."""
    updated = core_logic.delete_transaction(context, actor, args.transaction_id)
    print(f"Deleted transaction {args.transaction_id}")
    for material in updated:
        print(f"  {material.material_id}  {material.name}  now {_quantity(material.quantity)}")
    return 0


def run_save_budget(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the budget create/edit workflow via the BLL."""
    budget = core_logic.save_budget(context, actor, translate_save_budget(args))
    print(f"Saved budget {budget.budget_id} for order {budget.order_code}")
    return 0


def run_delete_budget(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the budget deletion workflow via the BLL."""
    core_logic.delete_budget(context, actor, args.order_code)
    print(f"Deleted budget for order {args.order_code}")
    return 0


def run_add_user(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the user creation workflow via the BLL."""
    user = core_logic.create_user(context, actor, translate_add_user(args))
    print(f"Created user {user.username} ({user.user_id})")
    return 0


def run_toggle_user(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the activate/deactivate workflow via the BLL."""
    user = core_logic.set_user_active(context, actor, args.user_id, args.is_active)
    print(f"User {user.username} is now {'active' if user.is_active else 'inactive'}")
    return 0


def run_delete_user(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the user deletion workflow via the BLL."""
    user = core_logic.delete_user(context, actor, args.user_id)
    print(f"Deleted user {user.username}")
    return 0


def run_change_password(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the password change workflow via the BLL."""
    current = getattr(args, "password", None) or os.environ.get(PASSWORD_ENV_VAR, "")
    core_logic.change_password(context, actor, current, args.new_password)
    print(f"Password updated for {actor.username}")
    return 0


def run_clear_logs(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the activity log clearing workflow via the BLL."""
    removed = core_logic.clear_activity_logs(context, actor)
    print(f"Removed {removed} activity log entries")
    return 0


def run_backup(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the backup workflow."""
    destination = reports.backup_workbook(context, actor, args.directory)
    print(f"Backup written to {destination}")
    return 0


def run_summary_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the dashboard summary workflow."""
    require_permission(actor, Permission.VIEW_DASHBOARD)
    summary = core_logic.summarize_inventory(context)
    print(f"Materials: {summary.total_items} ({summary.main_items} main)")
    print(f"Low stock: {len(summary.low_stock)}")
    print(f"Transactions: {summary.transaction_count}")
    print(f"Today IN: {_quantity(summary.today_in)}  OUT: {_quantity(summary.today_out)}")
    for workshop, totals in summary.by_workshop.items():
        print(f"  {workshop}: {totals['items']} item(s), {_quantity(totals['quantity'])} total")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    require_permission(actor, Permission.VIEW_INVENTORY)
    materials = core_logic.list_materials(
        context,
        workshop=args.workshop,
        classification=args.classification,
        search=args.search,
    )
    if getattr(args, "low_only", False):
        materials = [material for material in materials if material.quantity <= material.min_threshold]
    for material in materials:
        flag = " LOW" if material.quantity <= material.min_threshold else ""
        print(
            f"{material.material_id}  {material.name}  {material.origin or '-'}  "
            f"{_quantity(material.quantity)} {material.unit}  [{material.workshop}]{flag}"
        )
    return 0


def run_history_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the transaction history workflow."""
    require_permission(actor, Permission.VIEW_HISTORY)
    transactions: List[data_manager.TransactionRow] = core_logic.list_transactions(context, **_history_filters(args))
    for row in transactions:
        target = f" -> {row.target_workshop}" if row.target_workshop else ""
        order = f"  order {row.order_code}" if row.order_code else ""
        print(
            f"{row.date}  {row.receipt_id}  {row.transaction_type}  {row.workshop}{target}  "
            f"{row.material_name}  {_quantity(row.quantity)}{order}  ({row.transaction_id})"
        )
    return 0


def run_budgets_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the budget reporting workflow."""
    require_permission(actor, Permission.VIEW_ORDERS)
    if args.order_code:
        for line in core_logic.budget_status(context, args.order_code):
            flag = " OVER" if line.is_over else ""
            print(
                f"{line.material_name}  issued {_quantity(line.issued)} / {_quantity(line.estimated)}  "
                f"remaining {_quantity(line.remaining)}{flag}"
            )
        return 0
    for budget in core_logic.list_budgets(context):
        print(f"{budget.order_code}  [{budget.workshop}]  {len(budget.items)} item(s)  ({budget.budget_id})")
    return 0


def run_activity_report(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the activity log reporting workflow."""
    entries = core_logic.list_activity_logs(context, actor)
    for entry in entries[: max(args.limit, 0)]:
        print(f"{entry.timestamp}  {entry.username}  {entry.entity_type}  {entry.action}")
    return 0


def run_export_inventory(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the inventory export workflow."""
    destination = reports.export_inventory(
        context,
        actor,
        args.output,
        workshop=args.workshop,
        classification=args.classification,
        search=args.search,
    )
    print(f"Inventory exported to {destination}")
    return 0


def run_export_history(context: core_logic.RuntimeContext, actor: data_manager.UserRow, args: argparse.Namespace) -> int:
    """Execute the history export workflow."""
    destination = reports.export_history(context, actor, args.output, **_history_filters(args))
    print(f"History exported to {destination}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.PersistenceError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    A command whose save is refused because another process changed the
    workbook is replayed on a freshly loaded workbook, up to
    ``MAX_ATTEMPTS`` times in total.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            context = load_runtime_context(getattr(args, "config", None))
            actor = authenticate_actor(context, args)
            exit_code = dispatch_command(context, actor, args, command_table)
            if exit_code == 0:
                persist_workbook(context)
            return exit_code
        except core_logic.StaleWorkbookError as error:
            if attempt == MAX_ATTEMPTS:
                return handle_cli_error(error)
            log.warning("Workbook changed on disk; retrying command (attempt %d of %d)", attempt + 1, MAX_ATTEMPTS)
        except Exception as error:  # pragma: no cover - centralised error handler tested separately
            return handle_cli_error(error)
    return 1  # pragma: no cover - loop always returns
