"""Data access layer for SmartStock.

This module provides low-level helpers that read from and write to the
SmartStock workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and upserting, appending, or
   deleting individual rows. Each sheet plays the role of one resource of the
   persistence API (read-all, save, delete).
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, FrozenSet, Iterable, Iterator, Optional, Sequence, Tuple, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import MissingBudgetPolicy, SheetName, Workshop


CONFIG_FILE_NAME = "config.ini"
MATERIALS_SHEET = SheetName.MATERIALS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
BUDGETS_SHEET = SheetName.BUDGETS.value
USERS_SHEET = SheetName.USERS.value
ACTIVITY_LOG_SHEET = SheetName.ACTIVITY_LOG.value

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    default_user: str
    default_workshop: str = Workshop.OG.value
    missing_budget_policy: MissingBudgetPolicy = MissingBudgetPolicy.ALLOW


@dataclass(frozen=True)
class MaterialRow:
    """In-memory view of a row from the ``Materials`` sheet."""

    material_id: str
    name: str
    classification: str
    unit: str
    quantity: Decimal
    min_threshold: Decimal
    last_updated: str
    workshop: str
    origin: str
    note: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    receipt_id: str
    material_id: str
    material_name: str
    transaction_type: str
    quantity: Decimal
    date: str
    user: str
    workshop: str
    target_workshop: Optional[str] = None
    order_code: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class BudgetItem:
    """One estimated material line of an order budget."""

    material_id: Optional[str]
    material_name: str
    estimated_qty: Decimal


@dataclass(frozen=True)
class BudgetRow:
    """In-memory view of a row from the ``Budgets`` sheet."""

    budget_id: str
    order_code: str
    workshop: str
    items: Tuple[BudgetItem, ...]
    created_at: str
    last_updated: Optional[str] = None


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: str
    username: str
    password_hash: str
    full_name: str
    email: Optional[str]
    role: str
    permissions: FrozenSet[str]
    is_active: bool
    created_at: str
    last_login: Optional[str] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class ActivityLogRow:
    """In-memory view of a row from the ``ActivityLog`` sheet."""

    log_id: str
    user_id: str
    username: str
    action: str
    entity_type: str
    entity_id: Optional[str]
    details: str
    timestamp: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults] DefaultUser`` are mandatory. The default
    workshop and the ``[Budget] MissingBudgetPolicy`` fall back to ``OG`` and
    ``allow``. Relative ``DataFile`` entries are anchored to ``base_path`` (or
    the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If the default workshop or budget policy is unknown.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_workshop = parser.get("Defaults", "DefaultWorkshop", fallback=Workshop.OG.value).strip().upper()
    Workshop(default_workshop)
    policy_raw = parser.get("Budget", "MissingBudgetPolicy", fallback=MissingBudgetPolicy.ALLOW.value)
    missing_budget_policy = MissingBudgetPolicy(policy_raw.strip().lower())

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        default_user=default_user,
        default_workshop=default_workshop,
        missing_budget_policy=missing_budget_policy,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the SmartStock workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def workbook_fingerprint(data_file: Path) -> Optional[int]:
    """Return the on-disk modification stamp of ``data_file``.

    The stamp lets callers detect that another process saved the workbook
    after it was loaded. ``None`` is returned when the file does not exist.
    """

    try:
        return Path(data_file).expanduser().resolve().stat().st_mtime_ns
    except FileNotFoundError:
        return None


def _iter_sheet(workbook: Workbook, sheet_name: str, deserialize: Callable[[Sequence[object]], RowT]) -> Iterator[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def iter_materials(workbook: Workbook) -> Iterable[MaterialRow]:
    """Iterate over material records stored on the ``Materials`` worksheet.

    The header row and fully empty rows are skipped; every other row is
    converted through :func:`deserialize_material`.
    """

    return _iter_sheet(workbook, MATERIALS_SHEET, deserialize_material)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet."""

    return _iter_sheet(workbook, TRANSACTIONS_SHEET, deserialize_transaction)


def iter_budgets(workbook: Workbook) -> Iterable[BudgetRow]:
    """Stream order budgets, decoding each row's JSON item list."""

    return _iter_sheet(workbook, BUDGETS_SHEET, deserialize_budget)


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Stream user accounts from the ``Users`` worksheet."""

    return _iter_sheet(workbook, USERS_SHEET, deserialize_user)


def iter_activity_logs(workbook: Workbook) -> Iterable[ActivityLogRow]:
    """Stream audit entries in the order they were appended."""

    return _iter_sheet(workbook, ACTIVITY_LOG_SHEET, deserialize_activity_log)


def _upsert_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, values: Sequence[object]) -> bool:
    """Overwrite the row whose key matches, or append a new one.

    Returns:
        bool: ``True`` when a new row was appended.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    sheet = workbook[sheet_name]
    if row_index is None:
        sheet.append(list(values))
        return True

    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index, value=value)
    return False


def _delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> bool:
    """Remove the row whose key matches; returns ``False`` when none did."""

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return False
    workbook[sheet_name].delete_rows(row_index, 1)
    return True


def upsert_material(workbook: Workbook, record: MaterialRow) -> bool:
    """Save a material row, inserting it when its id is new.

    Args:
        workbook (Workbook): Workbook whose materials sheet should be modified.
        record (MaterialRow): Material state to persist.

    Returns:
        bool: ``True`` if the material was appended, ``False`` if an existing
            row was overwritten in place.
    """

    return _upsert_row(workbook, MATERIALS_SHEET, "MaterialID", record.material_id, serialize_material(record))


def upsert_budget(workbook: Workbook, record: BudgetRow) -> bool:
    """Save a budget row, inserting it when its id is new."""

    return _upsert_row(workbook, BUDGETS_SHEET, "BudgetID", record.budget_id, serialize_budget(record))


def upsert_user(workbook: Workbook, record: UserRow) -> bool:
    """Save a user row, inserting it when its id is new."""

    return _upsert_row(workbook, USERS_SHEET, "UserID", record.user_id, serialize_user(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet.

    Transactions are immutable, so there is no update counterpart; the only
    other write is :func:`delete_transaction`.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def append_activity_log(workbook: Workbook, record: ActivityLogRow) -> None:
    """Append an audit entry to the ``ActivityLog`` worksheet."""

    workbook[ACTIVITY_LOG_SHEET].append(serialize_activity_log(record))


def delete_material(workbook: Workbook, material_id: str) -> bool:
    """Delete a material row by id."""

    return _delete_row(workbook, MATERIALS_SHEET, "MaterialID", material_id)


def delete_transaction(workbook: Workbook, transaction_id: str) -> bool:
    """Delete a transaction row by id."""

    return _delete_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)


def delete_budget(workbook: Workbook, budget_id: str) -> bool:
    """Delete a budget row by id."""

    return _delete_row(workbook, BUDGETS_SHEET, "BudgetID", budget_id)


def delete_user(workbook: Workbook, user_id: str) -> bool:
    """Delete a user row by id."""

    return _delete_row(workbook, USERS_SHEET, "UserID", user_id)


def clear_sheet(workbook: Workbook, sheet_name: str) -> int:
    """Remove every data row of ``sheet_name`` while keeping its header.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[sheet_name]
    removed = max(sheet.max_row - 1, 0)
    if removed:
        sheet.delete_rows(2, removed)
    return removed


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the key column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_material(record: MaterialRow) -> list[object]:
    """Convert a material dataclass into the ``Materials`` column order."""

    return [
        record.material_id,
        record.name,
        record.classification,
        record.unit,
        record.quantity,
        record.min_threshold,
        record.last_updated,
        record.workshop,
        record.origin,
        record.note,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.receipt_id,
        record.material_id,
        record.material_name,
        record.transaction_type,
        record.quantity,
        record.date,
        record.user,
        record.workshop,
        record.target_workshop,
        record.order_code,
        record.note,
    ]


def serialize_budget(record: BudgetRow) -> list[object]:
    """Convert a budget dataclass into the ``Budgets`` column order.

    Budget items are stored as a JSON array in a single cell so a budget
    stays one row regardless of how many materials it estimates.
    """

    items = [
        {
            "material_id": item.material_id,
            "material_name": item.material_name,
            "estimated_qty": str(item.estimated_qty),
        }
        for item in record.items
    ]
    return [
        record.budget_id,
        record.order_code,
        record.workshop,
        json.dumps(items, ensure_ascii=False),
        record.created_at,
        record.last_updated,
    ]


def serialize_user(record: UserRow) -> list[object]:
    """Convert a user dataclass into the ``Users`` column order."""

    return [
        record.user_id,
        record.username,
        record.password_hash,
        record.full_name,
        record.email,
        record.role,
        ",".join(sorted(record.permissions)),
        record.is_active,
        record.created_at,
        record.last_login,
        record.created_by,
    ]


def serialize_activity_log(record: ActivityLogRow) -> list[object]:
    """Convert an audit entry into the ``ActivityLog`` column order."""

    return [
        record.log_id,
        record.user_id,
        record.username,
        record.action,
        record.entity_type,
        record.entity_id,
        record.details,
        record.timestamp,
    ]


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row[:width])
    values.extend([None] * (width - len(values)))
    return values


def _to_decimal(raw: Any, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        log.warning("Unparseable numeric cell value %r; using %s", raw, default)
        return Decimal(default)


def _to_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw)
    return text if text != "" else None


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def deserialize_material(raw_row: Sequence[object]) -> MaterialRow:
    """Convert a raw ``Materials`` row into a :class:`MaterialRow`.

    Numeric columns become :class:`~decimal.Decimal` values and identifier or
    text columns are coerced to ``str`` so Excel's number guessing cannot leak
    into the domain layer.
    """

    (
        material_id,
        name,
        classification,
        unit,
        quantity_raw,
        min_threshold_raw,
        last_updated,
        workshop,
        origin,
        note,
    ) = _pad(raw_row, 10)

    return MaterialRow(
        material_id=str(material_id),
        name=_to_text(name) or "",
        classification=_to_text(classification) or "",
        unit=_to_text(unit) or "",
        quantity=_to_decimal(quantity_raw),
        min_threshold=_to_decimal(min_threshold_raw),
        last_updated=_to_text(last_updated) or "",
        workshop=_to_text(workshop) or "",
        origin=_to_text(origin) or "",
        note=_to_text(note),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a :class:`TransactionRow`."""

    (
        transaction_id,
        receipt_id,
        material_id,
        material_name,
        transaction_type,
        quantity_raw,
        date_raw,
        user,
        workshop,
        target_workshop,
        order_code,
        note,
    ) = _pad(raw_row, 12)

    return TransactionRow(
        transaction_id=str(transaction_id),
        receipt_id=_to_text(receipt_id) or "",
        material_id=_to_text(material_id) or "",
        material_name=_to_text(material_name) or "",
        transaction_type=_to_text(transaction_type) or "",
        quantity=_to_decimal(quantity_raw),
        date=(_to_text(date_raw) or "")[:10],
        user=_to_text(user) or "",
        workshop=_to_text(workshop) or "",
        target_workshop=_to_text(target_workshop),
        order_code=_to_text(order_code),
        note=_to_text(note),
    )


def deserialize_budget(raw_row: Sequence[object]) -> BudgetRow:
    """Convert a raw ``Budgets`` row into a :class:`BudgetRow`.

    An empty ``Items`` cell, or one that is not a JSON list of objects, yields
    a budget without items rather than failing the whole sheet scan.
    """

    budget_id, order_code, workshop, items_raw, created_at, last_updated = _pad(raw_row, 6)

    items: list[BudgetItem] = []
    if items_raw:
        try:
            decoded = json.loads(str(items_raw))
        except json.JSONDecodeError:
            decoded = None
        if not isinstance(decoded, list) or not all(isinstance(entry, dict) for entry in decoded):
            log.warning("Budget '%s' has malformed items; treating as empty", budget_id)
            decoded = []
        for entry in decoded:
            items.append(
                BudgetItem(
                    material_id=entry.get("material_id"),
                    material_name=str(entry.get("material_name", "")),
                    estimated_qty=_to_decimal(entry.get("estimated_qty")),
                )
            )

    return BudgetRow(
        budget_id=str(budget_id),
        order_code=_to_text(order_code) or "",
        workshop=_to_text(workshop) or "",
        items=tuple(items),
        created_at=_to_text(created_at) or "",
        last_updated=_to_text(last_updated),
    )


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    """Convert a raw ``Users`` row into a :class:`UserRow`.

    Permissions are stored comma separated; blanks are dropped.
    """

    (
        user_id,
        username,
        password_hash,
        full_name,
        email,
        role,
        permissions_raw,
        is_active,
        created_at,
        last_login,
        created_by,
    ) = _pad(raw_row, 11)

    permissions = frozenset(
        part.strip() for part in str(permissions_raw or "").split(",") if part.strip()
    )
    return UserRow(
        user_id=str(user_id),
        username=_to_text(username) or "",
        password_hash=_to_text(password_hash) or "",
        full_name=_to_text(full_name) or "",
        email=_to_text(email),
        role=_to_text(role) or "",
        permissions=permissions,
        is_active=_to_bool(is_active),
        created_at=_to_text(created_at) or "",
        last_login=_to_text(last_login),
        created_by=_to_text(created_by),
    )


def deserialize_activity_log(raw_row: Sequence[object]) -> ActivityLogRow:
    """Convert a raw ``ActivityLog`` row into an :class:`ActivityLogRow`."""

    log_id, user_id, username, action, entity_type, entity_id, details, timestamp = _pad(raw_row, 8)
    return ActivityLogRow(
        log_id=str(log_id),
        user_id=_to_text(user_id) or "",
        username=_to_text(username) or "",
        action=_to_text(action) or "",
        entity_type=_to_text(entity_type) or "",
        entity_id=_to_text(entity_id),
        details=_to_text(details) or "",
        timestamp=_to_text(timestamp) or "",
    )
