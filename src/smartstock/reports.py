"""Spreadsheet exports and workbook backups.

Exports are plain data workbooks with a bold header row; they are written
with ``openpyxl`` like the master workbook itself.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import Permission
from .core_logic import RuntimeContext, list_materials, list_transactions
from .permissions import require_permission

INVENTORY_COLUMNS: Sequence[str] = (
    "Material ID",
    "Name",
    "Classification",
    "Unit",
    "Quantity",
    "Min Threshold",
    "Workshop",
    "Origin",
    "Last Updated",
    "Note",
)

HISTORY_COLUMNS: Sequence[str] = (
    "Material ID",
    "Material",
    "Unit",
    "Quantity",
    "Order Code",
    "Target Workshop",
    "User",
    "Note",
)


def _write_header(worksheet, columns: Sequence[str], row: int, font: Font) -> None:
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=row, column=column_index, value=column_name)
        cell.font = font


def _prepare_destination(destination: Path) -> Path:
    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)
    return destination


def write_inventory(materials: Iterable[data_manager.MaterialRow], destination: Path) -> Path:
    """Write one row per material to a fresh workbook at ``destination``."""

    destination = _prepare_destination(destination)
    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = "Inventory"
    _write_header(worksheet, INVENTORY_COLUMNS, 1, Font(bold=True))

    count = 0
    for material in materials:
        worksheet.append(
            [
                material.material_id,
                material.name,
                material.classification,
                material.unit,
                float(material.quantity),
                float(material.min_threshold),
                material.workshop,
                material.origin,
                material.last_updated,
                material.note,
            ]
        )
        count += 1

    workbook.save(destination)
    log.info("Exported %d material(s) to '%s'", count, destination)
    return destination


def group_by_receipt(
    transactions: Iterable[data_manager.TransactionRow],
) -> "OrderedDict[str, List[data_manager.TransactionRow]]":
    """Group transactions by receipt id, preserving first-seen order."""

    groups: "OrderedDict[str, List[data_manager.TransactionRow]]" = OrderedDict()
    for transaction in transactions:
        groups.setdefault(transaction.receipt_id, []).append(transaction)
    return groups


def write_history(
    transactions: Iterable[data_manager.TransactionRow],
    materials: Iterable[data_manager.MaterialRow],
    destination: Path,
) -> Path:
    """Write transactions grouped under one block per receipt.

    Each block starts with the receipt id, date, workshop and type, followed
    by a header row and one row per line item. Blocks are separated by an
    empty row.
    """

    destination = _prepare_destination(destination)
    units: Dict[str, str] = {material.material_id: material.unit for material in materials}
    bold_font = Font(bold=True)

    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = "History"

    row = 1
    groups = group_by_receipt(transactions)
    for receipt_id, lines in groups.items():
        first = lines[0]
        worksheet.cell(row=row, column=1, value=f"Receipt: {receipt_id}").font = bold_font
        worksheet.cell(row=row, column=2, value=f"Date: {first.date}")
        worksheet.cell(row=row, column=3, value=f"Workshop: {first.workshop}")
        worksheet.cell(row=row, column=4, value=f"Type: {first.transaction_type}")
        row += 1
        _write_header(worksheet, HISTORY_COLUMNS, row, bold_font)
        row += 1
        for line in lines:
            values = [
                line.material_id,
                line.material_name,
                units.get(line.material_id, ""),
                float(line.quantity),
                line.order_code,
                line.target_workshop,
                line.user,
                line.note,
            ]
            for column_index, value in enumerate(values, start=1):
                worksheet.cell(row=row, column=column_index, value=value)
            row += 1
        row += 1

    workbook.save(destination)
    log.info("Exported %d receipt(s) to '%s'", len(groups), destination)
    return destination


def export_inventory(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    destination: Path,
    *,
    workshop: Optional[str] = None,
    classification: Optional[str] = None,
    search: Optional[str] = None,
) -> Path:
    """Export the (optionally filtered) material list.

    Raises:
        PermissionDenied: If ``actor`` may not export data.
    """

    require_permission(actor, Permission.EXPORT_DATA)
    materials = list_materials(context, workshop=workshop, classification=classification, search=search)
    return write_inventory(materials, destination)


def export_history(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    destination: Path,
    **filters: Optional[str],
) -> Path:
    """Export transactions grouped by receipt.

    ``filters`` are forwarded to :func:`smartstock.core_logic.list_transactions`.

    Raises:
        PermissionDenied: If ``actor`` may not export data.
    """

    require_permission(actor, Permission.EXPORT_DATA)
    transactions = list_transactions(context, **filters)
    return write_history(transactions, list_materials(context), destination)


def backup_workbook(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    directory: Path,
    *,
    when: Optional[datetime] = None,
) -> Path:
    """Save a timestamped copy of the in-memory workbook into ``directory``.

    Raises:
        PermissionDenied: If ``actor`` may not manage settings.
        OSError: If the copy cannot be written.
    """

    require_permission(actor, Permission.MANAGE_SETTINGS)
    when = when or datetime.now(UTC)
    destination = Path(directory).expanduser().resolve() / f"SmartStock_Backup_{when.strftime('%Y%m%d_%H%M%S')}.xlsx"
    with context._lock:
        data_manager.save_workbook(context.workbook, destination=destination)
    log.info("User '%s' backed up the workbook to '%s'", actor.username, destination)
    return destination
