"""Business logic layer for SmartStock.

This module contains the rules that decide how receipts mutate stock across
workshops, how transactions are reversed, how budgets and accounts are
maintained, and what gets written to the activity log. It consumes the Data
Access Layer (DAL) for all I/O.

Every mutating operation follows the same shape: check the actor's
permission, take the context write lock, stage the change against a snapshot,
commit the staged rows to the workbook, and append one audit entry. Domain
checks all run while staging, so a rejected operation never reaches the
workbook.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .budget import BudgetLineStatus, check_budget, find_budget, normalize_order_code, summarize_budget
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    Classification,
    EntityType,
    MissingBudgetPolicy,
    Permission,
    TransactionType,
    UserRole,
    Workshop,
)
# Errors are re-exported so presentation code only needs this module.
from .errors import (  # noqa: F401
    AuthenticationError,
    BudgetExceeded,
    BusinessRuleViolation,
    InsufficientStock,
    MissingReferenceError,
    MissingSourceMaterial,
    PermissionDenied,
    PersistenceError,
    StaleWorkbookError,
    ValidationError,
)
from .identifiers import next_material_id, next_receipt_id
from .ledger import StockLedger, round_quantity
from .permissions import default_permissions, require_permission
from .security import hash_password, verify_password


_record_sequence = itertools.count()


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``_lock`` serialises every mutation made through this context; ``_sync``
    remembers the workbook's on-disk stamp so saves can detect writes made by
    another process.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _sync: Dict[str, Optional[int]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ReceiptLine:
    """One material and quantity of a receipt."""

    material_id: str
    quantity: Decimal


@dataclass(frozen=True)
class ReceiptCommand:
    """User intent for an IN, OUT, or TRANSFER receipt.

    ``workshop`` is the receiving workshop for IN, the issuing workshop for
    OUT, and the source workshop for TRANSFER. ``target_workshop`` is only
    used by TRANSFER.
    """

    transaction_type: TransactionType
    workshop: str
    lines: Sequence[ReceiptLine]
    target_workshop: Optional[str] = None
    receipt_id: Optional[str] = None
    order_code: Optional[str] = None
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReceiptResult:
    """Outcome of a planned or committed receipt."""

    receipt_id: str
    transaction_type: TransactionType
    transactions: Tuple[data_manager.TransactionRow, ...]
    materials: Tuple[data_manager.MaterialRow, ...]


@dataclass(frozen=True)
class MaterialCommand:
    """User intent for creating or editing a material row."""

    name: str
    unit: str
    workshop: str
    classification: str = Classification.MAIN.value
    origin: str = ""
    quantity: Decimal = Decimal("0")
    min_threshold: Decimal = Decimal("0")
    note: Optional[str] = None
    material_id: Optional[str] = None


@dataclass(frozen=True)
class BudgetCommand:
    """User intent for creating or editing an order budget."""

    order_code: str
    workshop: str
    items: Sequence[data_manager.BudgetItem]
    budget_id: Optional[str] = None


@dataclass(frozen=True)
class UserCommand:
    """User intent for creating or editing an account.

    ``permissions=None`` means "the role's default bundle" on creation and
    "leave unchanged" on update. ``password=None`` keeps the stored hash on
    update.
    """

    username: str
    full_name: str
    role: str = UserRole.STAFF.value
    password: Optional[str] = None
    email: Optional[str] = None
    permissions: Optional[Iterable[str]] = None
    is_active: bool = True
    user_id: Optional[str] = None


@dataclass(frozen=True)
class InventorySummary:
    """Dashboard figures derived from materials and transactions."""

    total_items: int
    main_items: int
    low_stock: Tuple[data_manager.MaterialRow, ...]
    transaction_count: int
    today_in: Decimal
    today_out: Decimal
    by_workshop: Dict[str, Dict[str, Any]]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_bucket(
    context: RuntimeContext,
    name: str,
    loader: Callable[[Workbook], Iterable[Any]],
    key: Callable[[Any], str],
) -> Dict[str, Any]:
    """Populate a cache bucket with ``all`` rows and a ``by_id`` lookup."""

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        rows = list(loader(context.workbook))
        bucket["all"] = rows
        bucket["by_id"] = {key(row): row for row in rows}
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _ensure_materials_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "materials", data_manager.iter_materials, lambda row: row.material_id)


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "transactions", data_manager.iter_transactions, lambda row: row.transaction_id)


def _ensure_budgets_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "budgets", data_manager.iter_budgets, lambda row: row.budget_id)


def _ensure_users_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _ensure_bucket(context, "users", data_manager.iter_users, lambda row: row.user_id)
    if "by_username" not in bucket:
        bucket["by_username"] = {row.username.lower(): row for row in bucket["all"]}
    return bucket


def _ensure_activity_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "activity_logs", data_manager.iter_activity_logs, lambda row: row.log_id)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for orchestration functions, with the
            workbook's on-disk stamp recorded for stale-write detection.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    context = RuntimeContext(settings=settings, workbook=workbook)
    context._sync["fingerprint"] = data_manager.workbook_fingerprint(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_materials(
    context: RuntimeContext,
    *,
    workshop: Optional[str] = None,
    classification: Optional[str] = None,
    search: Optional[str] = None,
) -> List[data_manager.MaterialRow]:
    """Return cached material rows, optionally filtered.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        workshop (str | None): Only rows stocked at this workshop.
        classification (str | None): Only rows with this classification.
        search (str | None): Case-insensitive substring matched against the
            name, id, and origin.

    Returns:
        list[data_manager.MaterialRow]: Matching rows in sheet order.
    """
    rows = _ensure_materials_cache(context)["all"]
    term = (search or "").strip().lower()
    return [
        row
        for row in rows
        if (workshop is None or row.workshop == workshop)
        and (classification is None or row.classification == classification)
        and (
            not term
            or term in row.name.lower()
            or term in row.material_id.lower()
            or term in row.origin.lower()
        )
    ]


def list_transactions(
    context: RuntimeContext,
    *,
    transaction_type: Optional[Union[TransactionType, str]] = None,
    workshop: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    order_code: Optional[str] = None,
    search: Optional[str] = None,
) -> List[data_manager.TransactionRow]:
    """Return cached transactions, optionally filtered.

    Date bounds are inclusive ISO dates. ``order_code`` and ``search`` are
    case-insensitive substring matches; ``search`` looks at the material name,
    receipt id, and order code.
    """
    rows = _ensure_transactions_cache(context)["all"]
    type_value = TransactionType(transaction_type).value if transaction_type is not None else None
    order_term = (order_code or "").strip().lower()
    term = (search or "").strip().lower()
    return [
        row
        for row in rows
        if (type_value is None or row.transaction_type == type_value)
        and (workshop is None or row.workshop == workshop)
        and (not start_date or row.date >= start_date)
        and (not end_date or row.date <= end_date)
        and (not order_term or order_term in (row.order_code or "").lower())
        and (
            not term
            or term in row.material_name.lower()
            or term in row.receipt_id.lower()
            or term in (row.order_code or "").lower()
        )
    ]


def list_budgets(context: RuntimeContext, *, workshop: Optional[str] = None) -> List[data_manager.BudgetRow]:
    """Return cached order budgets, optionally limited to one workshop."""
    rows = _ensure_budgets_cache(context)["all"]
    return [row for row in rows if workshop is None or row.workshop == workshop]


def list_users(context: RuntimeContext, *, include_inactive: bool = True) -> List[data_manager.UserRow]:
    """Return cached user accounts."""
    rows = _ensure_users_cache(context)["all"]
    return [row for row in rows if include_inactive or row.is_active]


def list_activity_logs(context: RuntimeContext, actor: data_manager.UserRow) -> List[data_manager.ActivityLogRow]:
    """Return the audit trail newest first.

    Raises:
        PermissionDenied: If ``actor`` may not view the activity log.
    """
    require_permission(actor, Permission.VIEW_ACTIVITY_LOG)
    rows = _ensure_activity_cache(context)["all"]
    return sorted(rows, key=lambda row: row.timestamp, reverse=True)


def get_material(context: RuntimeContext, material_id: str) -> data_manager.MaterialRow:
    """Resolve a material by id or raise :class:`MissingReferenceError`."""
    try:
        return _ensure_materials_cache(context)["by_id"][material_id]
    except KeyError as exc:
        log.warning("Material lookup failed for id '%s'", material_id)
        raise MissingReferenceError(f"Unknown material id: {material_id}") from exc


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction by id or raise :class:`MissingReferenceError`."""
    try:
        return _ensure_transactions_cache(context)["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


def get_budget(context: RuntimeContext, order_code: str) -> data_manager.BudgetRow:
    """Resolve a budget by order code or raise :class:`MissingReferenceError`."""
    budget = find_budget(order_code, _ensure_budgets_cache(context)["all"])
    if budget is None:
        log.warning("Budget lookup failed for order '%s'", order_code)
        raise MissingReferenceError(f"Unknown order code: {order_code}")
    return budget


def get_user(context: RuntimeContext, user_id: str) -> data_manager.UserRow:
    """Resolve a user by id or raise :class:`MissingReferenceError`."""
    try:
        return _ensure_users_cache(context)["by_id"][user_id]
    except KeyError as exc:
        log.warning("User lookup failed for id '%s'", user_id)
        raise MissingReferenceError(f"Unknown user id: {user_id}") from exc


def find_user_by_username(context: RuntimeContext, username: str) -> Optional[data_manager.UserRow]:
    """Return the account whose username matches case-insensitively."""
    return _ensure_users_cache(context)["by_username"].get(username.strip().lower())


def budget_status(context: RuntimeContext, order_code: str) -> List[BudgetLineStatus]:
    """Report issued versus estimated quantities for an order's budget."""
    budget = get_budget(context, order_code)
    return summarize_budget(budget, _ensure_transactions_cache(context)["all"])


def summarize_inventory(context: RuntimeContext, *, today: Optional[str] = None) -> InventorySummary:
    """Compute dashboard figures from the cached materials and transactions.

    Low-stock rows are those at or below their reorder threshold. ``today``
    defaults to the current UTC date and selects which IN/OUT quantities are
    reported as today's movements.
    """
    materials = _ensure_materials_cache(context)["all"]
    transactions = _ensure_transactions_cache(context)["all"]
    today = today or _resolve_timestamp(None).date().isoformat()

    by_workshop: Dict[str, Dict[str, Any]] = {
        workshop.value: {"items": 0, "quantity": Decimal("0")} for workshop in Workshop
    }
    for material in materials:
        totals = by_workshop.setdefault(material.workshop, {"items": 0, "quantity": Decimal("0")})
        totals["items"] += 1
        totals["quantity"] += material.quantity

    todays = [transaction for transaction in transactions if transaction.date == today]
    summary = InventorySummary(
        total_items=len(materials),
        main_items=sum(1 for material in materials if material.classification == Classification.MAIN.value),
        low_stock=tuple(material for material in materials if material.quantity <= material.min_threshold),
        transaction_count=len(transactions),
        today_in=sum(
            (t.quantity for t in todays if t.transaction_type == TransactionType.IN.value), Decimal("0")
        ),
        today_out=sum(
            (t.quantity for t in todays if t.transaction_type == TransactionType.OUT.value), Decimal("0")
        ),
        by_workshop=by_workshop,
    )
    log.debug(
        "Calculated inventory summary: %d items, %d low stock",
        summary.total_items,
        len(summary.low_stock),
    )
    return summary


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


def _coerce_workshop(value: Optional[str], *, field_name: str = "workshop") -> str:
    try:
        return Workshop((value or "").strip().upper()).value
    except ValueError as exc:
        log.error("Unknown %s '%s'", field_name, value)
        raise ValidationError(f"Unknown {field_name}: {value!r}") from exc


def _coerce_transaction_type(value: Union[TransactionType, str]) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        log.error("Unsupported transaction type provided: %s", value)
        raise ValidationError(f"Unsupported transaction type: {value!r}") from exc


def _actor_name(actor: data_manager.UserRow) -> str:
    return actor.full_name or actor.username


def _source_material(ledger: StockLedger, material_id: str, workshop: str) -> data_manager.MaterialRow:
    if material_id not in ledger:
        log.warning("Receipt references unknown material id '%s'", material_id)
        raise MissingSourceMaterial(material_id, workshop)
    return ledger.get(material_id)


def _validate_receipt(command: ReceiptCommand) -> Tuple[TransactionType, str, Optional[str]]:
    transaction_type = _coerce_transaction_type(command.transaction_type)
    workshop = _coerce_workshop(command.workshop)
    if not command.lines:
        log.error("Receipt rejected: no line items selected")
        raise ValidationError("A receipt needs at least one line item")
    for line in command.lines:
        require_positive_quantity(line.quantity)

    target_workshop: Optional[str] = None
    if transaction_type is TransactionType.TRANSFER:
        target_workshop = _coerce_workshop(command.target_workshop, field_name="target workshop")
        if target_workshop == workshop:
            log.error("Transfer rejected: source and target are both %s", workshop)
            raise ValidationError("Transfer target must differ from the source workshop")
    return transaction_type, workshop, target_workshop


def plan_receipt(
    command: ReceiptCommand,
    *,
    actor_name: str,
    materials: Iterable[data_manager.MaterialRow],
    transactions: Iterable[data_manager.TransactionRow],
    budgets: Iterable[data_manager.BudgetRow],
    missing_budget_policy: MissingBudgetPolicy = MissingBudgetPolicy.ALLOW,
    timestamp: Optional[datetime] = None,
) -> ReceiptResult:
    """Stage a receipt against snapshots without touching any storage.

    The receipt is validated, budget-checked (OUT with an order code), given a
    receipt id, and then applied line by line to a :class:`StockLedger` built
    from ``materials``. Any failure aborts the whole receipt; since the ledger
    is a private working copy, nothing applied to earlier lines survives.

    Args:
        command (ReceiptCommand): Receipt to stage.
        actor_name (str): Display name stamped on each transaction.
        materials: Current material rows.
        transactions: Transaction history, used for receipt numbering and
            issued-quantity totals.
        budgets: Registered order budgets.
        missing_budget_policy (MissingBudgetPolicy): Treatment of OUT receipts
            whose order code has no budget.
        timestamp (datetime | None): Moment of the receipt; falls back to
            ``command.timestamp`` and then the current UTC time.

    Returns:
        ReceiptResult: The receipt id, new transactions in line order, and
            every material row created or changed.

    Raises:
        ValidationError: If the command is malformed.
        BudgetExceeded: If any OUT line would overspend the order budget.
        MissingSourceMaterial: If a line references an unknown material or a
            material absent from the issuing workshop.
        InsufficientStock: If an OUT or TRANSFER line exceeds the stock held.
    """
    transaction_type, workshop, target_workshop = _validate_receipt(command)
    history = list(transactions)
    ledger = StockLedger(materials)
    moment = _resolve_timestamp(timestamp or command.timestamp)
    today = moment.date().isoformat()
    order_code = normalize_order_code(command.order_code) or None

    if transaction_type is TransactionType.OUT and order_code:
        proposed = [
            (_source_material(ledger, line.material_id, workshop).name, round_quantity(line.quantity))
            for line in command.lines
        ]
        violations = check_budget(
            order_code,
            proposed,
            history,
            budgets,
            missing_budget_policy=missing_budget_policy,
        )
        if violations:
            raise BudgetExceeded(order_code, violations)

    receipt_id = (command.receipt_id or "").strip() or next_receipt_id(
        transaction_type, workshop, history, when=moment.date()
    )

    new_transactions: List[data_manager.TransactionRow] = []
    for index, line in enumerate(command.lines):
        quantity = round_quantity(line.quantity)
        source = _source_material(ledger, line.material_id, workshop)

        if transaction_type is TransactionType.TRANSFER:
            issuing = source if source.workshop == workshop else ledger.find(source.name, source.origin, workshop)
            if issuing is None:
                log.warning("Transfer source '%s' is not stocked at %s", source.name, workshop)
                raise MissingSourceMaterial(source.name, workshop)
            referenced = ledger.apply_delta(issuing.material_id, -quantity, today=today)
            receiving = ledger.locate_or_create(referenced, target_workshop, transaction_type, today=today)
            ledger.apply_delta(receiving.material_id, quantity, today=today)
        else:
            destination = ledger.locate_or_create(source, workshop, transaction_type, today=today)
            delta = quantity if transaction_type is TransactionType.IN else -quantity
            referenced = ledger.apply_delta(destination.material_id, delta, today=today)

        new_transactions.append(
            data_manager.TransactionRow(
                transaction_id=generate_record_id(prefix="T", when=moment, sequence=index),
                receipt_id=receipt_id,
                material_id=referenced.material_id,
                material_name=referenced.name,
                transaction_type=transaction_type.value,
                quantity=quantity,
                date=today,
                user=actor_name,
                workshop=workshop,
                target_workshop=target_workshop,
                order_code=order_code,
                note=command.note,
            )
        )

    return ReceiptResult(
        receipt_id=receipt_id,
        transaction_type=transaction_type,
        transactions=tuple(new_transactions),
        materials=tuple(ledger.touched()),
    )


def _commit(context: RuntimeContext, label: str, writes: Sequence[Callable[[Workbook], Any]], *buckets: str) -> None:
    """Apply staged writes to the workbook.

    Raises:
        PersistenceError: If any write fails. Writes applied before the
            failure stay in the workbook.
    """
    try:
        for write in writes:
            write(context.workbook)
    except (KeyError, ValueError, TypeError, OSError) as exc:
        log.error("Failed to write %s to the workbook: %s", label, exc)
        raise PersistenceError(f"Failed to persist {label}: {exc}") from exc
    finally:
        _invalidate_cache(context, *buckets)


def process_receipt(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: ReceiptCommand,
) -> ReceiptResult:
    """Validate, stage, commit, and audit a receipt.

    IN and OUT receipts need ``CREATE_RECEIPT``; transfers need
    ``TRANSFER_MATERIALS``. Planning and commit run under the context write
    lock so the generated receipt and material codes cannot be claimed twice.

    Returns:
        ReceiptResult: The committed receipt.

    Raises:
        PermissionDenied: If ``actor`` lacks the required permission.
        PersistenceError: If the staged rows cannot be written.
        BusinessRuleViolation: Any rejection raised by :func:`plan_receipt`.
    """
    transaction_type = _coerce_transaction_type(command.transaction_type)
    permission = (
        Permission.TRANSFER_MATERIALS if transaction_type is TransactionType.TRANSFER else Permission.CREATE_RECEIPT
    )
    require_permission(actor, permission)

    with context._lock:
        result = plan_receipt(
            command,
            actor_name=_actor_name(actor),
            materials=list_materials(context),
            transactions=list_transactions(context),
            budgets=list_budgets(context),
            missing_budget_policy=context.settings.missing_budget_policy,
        )
        writes: List[Callable[[Workbook], Any]] = [
            partial(data_manager.upsert_material, record=material) for material in result.materials
        ]
        writes.extend(partial(data_manager.append_transaction, record=row) for row in result.transactions)
        _commit(context, f"receipt {result.receipt_id}", writes, "materials", "transactions")

        log.info(
            "Recorded %s receipt '%s' with %d line(s)",
            result.transaction_type.value,
            result.receipt_id,
            len(result.transactions),
        )
        if transaction_type is TransactionType.TRANSFER:
            action = (
                f"Transferred {len(result.transactions)} material(s) "
                f"from {command.workshop.upper()} to {(command.target_workshop or '').upper()}"
            )
        else:
            action = f"Created {result.transaction_type.value} receipt {result.receipt_id}"
        details = "; ".join(f"{row.material_name} x {row.quantity}" for row in result.transactions)
        log_activity(context, actor, action, EntityType.TRANSACTION, entity_id=result.receipt_id, details=details)
    return result


# ---------------------------------------------------------------------------
# Reversal
# ---------------------------------------------------------------------------


def reverse_transaction(
    transaction: data_manager.TransactionRow,
    materials: Iterable[data_manager.MaterialRow],
    *,
    today: str,
) -> List[data_manager.MaterialRow]:
    """Compute the material rows that undo ``transaction``.

    IN reversals subtract from the referenced row, OUT reversals add back to
    it. TRANSFER reversals add to the source workshop's row and subtract from
    the target workshop's row, each located by name; a side whose row no
    longer exists is skipped.

    Returns:
        list[data_manager.MaterialRow]: Updated rows; empty when nothing
            matched.

    Raises:
        InsufficientStock: If undoing would leave a row negative.
    """
    ledger = StockLedger(materials)
    transaction_type = _coerce_transaction_type(transaction.transaction_type)
    quantity = transaction.quantity

    if transaction_type is TransactionType.TRANSFER:
        source: Optional[data_manager.MaterialRow] = None
        if transaction.material_id in ledger and ledger.get(transaction.material_id).workshop == transaction.workshop:
            source = ledger.get(transaction.material_id)
        else:
            source = ledger.find_by_name(transaction.material_name, transaction.workshop)

        target: Optional[data_manager.MaterialRow] = None
        if transaction.target_workshop:
            if source is not None:
                target = ledger.find(source.name, source.origin, transaction.target_workshop)
            if target is None:
                target = ledger.find_by_name(transaction.material_name, transaction.target_workshop)

        if target is not None:
            ledger.apply_delta(target.material_id, -quantity, today=today)
        else:
            log.warning(
                "Transfer reversal for '%s': no row at target workshop %s",
                transaction.transaction_id,
                transaction.target_workshop,
            )
        if source is not None:
            ledger.apply_delta(source.material_id, quantity, today=today)
        else:
            log.warning(
                "Transfer reversal for '%s': no row at source workshop %s",
                transaction.transaction_id,
                transaction.workshop,
            )
        return ledger.touched()

    if transaction.material_id not in ledger:
        log.warning(
            "Reversal for '%s' skipped: material '%s' no longer exists",
            transaction.transaction_id,
            transaction.material_id,
        )
        return []
    delta = -quantity if transaction_type is TransactionType.IN else quantity
    ledger.apply_delta(transaction.material_id, delta, today=today)
    return ledger.touched()


def delete_transaction(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    transaction_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> List[data_manager.MaterialRow]:
    """Delete a transaction and revert the stock it moved.

    Budgets are left alone: issued totals are recomputed from the remaining
    transactions on the next check.

    Returns:
        list[data_manager.MaterialRow]: Material rows changed by the reversal.

    Raises:
        PermissionDenied: If ``actor`` may not delete transactions.
        MissingReferenceError: If ``transaction_id`` is unknown.
        InsufficientStock: If the reversal would leave a row negative.
    """
    require_permission(actor, Permission.DELETE_TRANSACTION)
    today = _resolve_timestamp(timestamp).date().isoformat()

    with context._lock:
        transaction = get_transaction(context, transaction_id)
        updated = reverse_transaction(transaction, list_materials(context), today=today)
        writes: List[Callable[[Workbook], Any]] = [
            partial(data_manager.upsert_material, record=material) for material in updated
        ]
        writes.append(partial(data_manager.delete_transaction, transaction_id=transaction_id))
        _commit(context, f"deletion of transaction {transaction_id}", writes, "materials", "transactions")

        log.info(
            "Deleted %s transaction '%s' of receipt '%s' (%d material row(s) reverted)",
            transaction.transaction_type,
            transaction_id,
            transaction.receipt_id,
            len(updated),
        )
        log_activity(
            context,
            actor,
            f"Deleted transaction {transaction_id} of receipt {transaction.receipt_id}",
            EntityType.TRANSACTION,
            entity_id=transaction_id,
            details=f"{transaction.transaction_type} {transaction.material_name} x {transaction.quantity}",
        )
    return updated


# ---------------------------------------------------------------------------
# Materials
# ---------------------------------------------------------------------------


def save_material(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: MaterialCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.MaterialRow:
    """Create a material or edit an existing one.

    New materials receive the next ``VT/{workshop}/`` code. A workshop may hold
    only one row per ``(name, origin)`` pair.

    Raises:
        PermissionDenied: If ``actor`` may not manage materials.
        ValidationError: If the name or unit is blank, a quantity is negative,
            the classification is unknown, or the identity is already taken.
        MissingReferenceError: When editing an unknown material id.
    """
    require_permission(actor, Permission.MANAGE_MATERIALS)
    name = command.name.strip()
    unit = command.unit.strip()
    if not name or not unit:
        log.error("Material rejected: name and unit are required")
        raise ValidationError("Material name and unit are required")
    workshop = _coerce_workshop(command.workshop)
    try:
        classification = Classification(command.classification).value
    except ValueError as exc:
        raise ValidationError(f"Unknown classification: {command.classification!r}") from exc
    quantity = round_quantity(command.quantity)
    min_threshold = round_quantity(command.min_threshold)
    if quantity < 0 or min_threshold < 0:
        log.error("Material rejected: negative quantity or threshold")
        raise ValidationError("Quantity and threshold must be zero or positive")
    origin = command.origin.strip()
    today = _resolve_timestamp(timestamp).date().isoformat()

    with context._lock:
        materials = list_materials(context)
        clash = StockLedger(
            material for material in materials if material.material_id != command.material_id
        ).find(name, origin, workshop)
        if clash is not None:
            log.error("Material '%s' (%s) already exists at %s as '%s'", name, origin, workshop, clash.material_id)
            raise ValidationError(f"Material '{name}' from '{origin}' already exists at {workshop}")

        if command.material_id:
            existing = get_material(context, command.material_id)
            record = replace(
                existing,
                name=name,
                classification=classification,
                unit=unit,
                quantity=quantity,
                min_threshold=min_threshold,
                last_updated=today,
                workshop=workshop,
                origin=origin,
                note=command.note,
            )
            action = f"Updated material {record.material_id}"
        else:
            record = data_manager.MaterialRow(
                material_id=next_material_id(workshop, materials),
                name=name,
                classification=classification,
                unit=unit,
                quantity=quantity,
                min_threshold=min_threshold,
                last_updated=today,
                workshop=workshop,
                origin=origin,
                note=command.note,
            )
            action = f"Created material {record.material_id}"

        _commit(
            context,
            f"material {record.material_id}",
            [partial(data_manager.upsert_material, record=record)],
            "materials",
        )
        log.info("%s ('%s' at %s)", action, record.name, record.workshop)
        log_activity(context, actor, action, EntityType.MATERIAL, entity_id=record.material_id, details=record.name)
    return record


def delete_material(context: RuntimeContext, actor: data_manager.UserRow, material_id: str) -> data_manager.MaterialRow:
    """Remove a material row.

    Raises:
        PermissionDenied: If ``actor`` may not manage materials.
        MissingReferenceError: If ``material_id`` is unknown.
    """
    require_permission(actor, Permission.MANAGE_MATERIALS)
    with context._lock:
        material = get_material(context, material_id)
        _commit(
            context,
            f"deletion of material {material_id}",
            [partial(data_manager.delete_material, material_id=material_id)],
            "materials",
        )
        log.info("Deleted material '%s' ('%s' at %s)", material_id, material.name, material.workshop)
        log_activity(
            context,
            actor,
            f"Deleted material {material_id}",
            EntityType.MATERIAL,
            entity_id=material_id,
            details=material.name,
        )
    return material


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


def _validate_budget_items(items: Sequence[data_manager.BudgetItem]) -> Tuple[data_manager.BudgetItem, ...]:
    seen: set[str] = set()
    cleaned: List[data_manager.BudgetItem] = []
    for item in items:
        name = item.material_name.strip()
        if not name:
            raise ValidationError("Budget items need a material name")
        if name in seen:
            raise ValidationError(f"Material '{name}' appears twice in the budget")
        require_positive_quantity(item.estimated_qty)
        seen.add(name)
        cleaned.append(replace(item, material_name=name, estimated_qty=round_quantity(item.estimated_qty)))
    return tuple(cleaned)


def save_budget(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: BudgetCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.BudgetRow:
    """Create an order budget or edit an existing one.

    Order codes are upper-cased and must be unique across budgets.

    Raises:
        PermissionDenied: If ``actor`` may not manage budgets.
        ValidationError: If the order code is blank or taken, or an item is
            malformed.
        MissingReferenceError: When editing an unknown budget id.
    """
    require_permission(actor, Permission.MANAGE_BUDGETS)
    order_code = normalize_order_code(command.order_code)
    if not order_code:
        log.error("Budget rejected: order code is required")
        raise ValidationError("Order code is required")
    workshop = _coerce_workshop(command.workshop)
    items = _validate_budget_items(command.items)
    moment = _resolve_timestamp(timestamp)
    today = moment.date().isoformat()

    with context._lock:
        bucket = _ensure_budgets_cache(context)
        clash = find_budget(order_code, bucket["all"])
        if clash is not None and clash.budget_id != command.budget_id:
            log.error("Budget rejected: order code '%s' already used by '%s'", order_code, clash.budget_id)
            raise ValidationError(f"Order code {order_code} already has a budget")

        if command.budget_id:
            existing = bucket["by_id"].get(command.budget_id)
            if existing is None:
                raise MissingReferenceError(f"Unknown budget id: {command.budget_id}")
            record = replace(existing, order_code=order_code, workshop=workshop, items=items, last_updated=today)
            action = f"Updated budget {order_code}"
        else:
            record = data_manager.BudgetRow(
                budget_id=generate_record_id(prefix="DT", when=moment),
                order_code=order_code,
                workshop=workshop,
                items=items,
                created_at=today,
                last_updated=today,
            )
            action = f"Created budget {order_code}"

        _commit(context, f"budget {order_code}", [partial(data_manager.upsert_budget, record=record)], "budgets")
        log.info("%s with %d item(s)", action, len(record.items))
        log_activity(context, actor, action, EntityType.BUDGET, entity_id=record.budget_id)
    return record


def delete_budget(context: RuntimeContext, actor: data_manager.UserRow, order_code: str) -> data_manager.BudgetRow:
    """Remove the budget registered for ``order_code``."""
    require_permission(actor, Permission.MANAGE_BUDGETS)
    with context._lock:
        budget = get_budget(context, order_code)
        _commit(
            context,
            f"deletion of budget {order_code}",
            [partial(data_manager.delete_budget, budget_id=budget.budget_id)],
            "budgets",
        )
        log.info("Deleted budget '%s' for order '%s'", budget.budget_id, order_code)
        log_activity(context, actor, f"Deleted budget {order_code}", EntityType.BUDGET, entity_id=budget.budget_id)
    return budget


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _coerce_role(value: str) -> str:
    try:
        return UserRole((value or "").strip().upper()).value
    except ValueError as exc:
        raise ValidationError(f"Unknown role: {value!r}") from exc


def _coerce_permissions(values: Iterable[str]) -> frozenset[str]:
    try:
        return frozenset(Permission(value).value for value in values)
    except ValueError as exc:
        raise ValidationError(f"Unknown permission: {exc}") from exc


def _ensure_username_available(context: RuntimeContext, username: str, *, user_id: Optional[str]) -> None:
    existing = find_user_by_username(context, username)
    if existing is not None and existing.user_id != user_id:
        log.error("Username '%s' is already taken", username)
        raise ValidationError(f"Username '{username}' is already taken")


def authenticate(
    context: RuntimeContext,
    username: str,
    password: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.UserRow:
    """Verify credentials and stamp the account's last login.

    Usernames match case-insensitively. Deactivated accounts cannot log in.

    Raises:
        AuthenticationError: If the credentials do not match an active
            account.
    """
    with context._lock:
        user = find_user_by_username(context, username)
        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            log.warning("Failed login attempt for '%s'", username)
            raise AuthenticationError("Invalid credentials or deactivated account")

        updated = replace(user, last_login=_resolve_timestamp(timestamp).isoformat())
        _commit(context, f"login of {user.username}", [partial(data_manager.upsert_user, record=updated)], "users")
        log.info("User '%s' logged in", updated.username)
        log_activity(context, updated, "Logged in", EntityType.SYSTEM, details="Login succeeded")
    return updated


def create_user(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: UserCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.UserRow:
    """Register a new account.

    Raises:
        PermissionDenied: If ``actor`` may not manage users.
        ValidationError: If a required field is blank, the username is taken,
            or the role or a permission is unknown.
    """
    require_permission(actor, Permission.MANAGE_USERS)
    username = command.username.strip()
    full_name = command.full_name.strip()
    if not username or not full_name or not command.password:
        log.error("User rejected: username, full name, and password are required")
        raise ValidationError("Username, full name, and password are required")
    role = _coerce_role(command.role)
    permissions = (
        _coerce_permissions(command.permissions) if command.permissions is not None else default_permissions(role)
    )
    moment = _resolve_timestamp(timestamp)

    with context._lock:
        _ensure_username_available(context, username, user_id=None)
        record = data_manager.UserRow(
            user_id=generate_record_id(prefix="U", when=moment),
            username=username,
            password_hash=hash_password(command.password),
            full_name=full_name,
            email=command.email,
            role=role,
            permissions=permissions,
            is_active=command.is_active,
            created_at=moment.date().isoformat(),
            last_login=None,
            created_by=actor.user_id,
        )
        _commit(context, f"user {username}", [partial(data_manager.upsert_user, record=record)], "users")
        log.info("Created %s user '%s'", role, username)
        log_activity(context, actor, f"Created user {username}", EntityType.USER, entity_id=record.user_id)
    return record


def update_user(context: RuntimeContext, actor: data_manager.UserRow, command: UserCommand) -> data_manager.UserRow:
    """Edit an existing account identified by ``command.user_id``.

    Raises:
        PermissionDenied: If ``actor`` may not manage users.
        ValidationError: If the username is taken, or the actor tries to
            deactivate themselves.
        MissingReferenceError: If ``command.user_id`` is unknown.
    """
    require_permission(actor, Permission.MANAGE_USERS)
    if not command.user_id:
        raise ValidationError("user_id is required to update an account")
    username = command.username.strip()
    full_name = command.full_name.strip()
    if not username or not full_name:
        raise ValidationError("Username and full name are required")
    role = _coerce_role(command.role)
    if command.user_id == actor.user_id and not command.is_active:
        log.error("User '%s' attempted to deactivate themselves", actor.username)
        raise ValidationError("You cannot deactivate your own account")

    with context._lock:
        existing = get_user(context, command.user_id)
        _ensure_username_available(context, username, user_id=existing.user_id)
        record = replace(
            existing,
            username=username,
            full_name=full_name,
            email=command.email,
            role=role,
            permissions=(
                _coerce_permissions(command.permissions) if command.permissions is not None else existing.permissions
            ),
            is_active=command.is_active,
            password_hash=hash_password(command.password) if command.password else existing.password_hash,
        )
        _commit(context, f"user {username}", [partial(data_manager.upsert_user, record=record)], "users")
        log.info("Updated user '%s'", username)
        log_activity(context, actor, f"Updated user {username}", EntityType.USER, entity_id=record.user_id)
    return record


def set_user_active(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    user_id: str,
    is_active: bool,
) -> data_manager.UserRow:
    """Activate or deactivate an account other than the actor's own."""
    require_permission(actor, Permission.MANAGE_USERS)
    if user_id == actor.user_id:
        log.error("User '%s' attempted to change their own active flag", actor.username)
        raise ValidationError("You cannot deactivate your own account")

    with context._lock:
        record = replace(get_user(context, user_id), is_active=is_active)
        _commit(context, f"user {record.username}", [partial(data_manager.upsert_user, record=record)], "users")
        verb = "Activated" if is_active else "Deactivated"
        log.info("%s user '%s'", verb, record.username)
        log_activity(context, actor, f"{verb} user {record.username}", EntityType.USER, entity_id=user_id)
    return record


def delete_user(context: RuntimeContext, actor: data_manager.UserRow, user_id: str) -> data_manager.UserRow:
    """Hard-delete an account other than the actor's own."""
    require_permission(actor, Permission.MANAGE_USERS)
    if user_id == actor.user_id:
        log.error("User '%s' attempted to delete themselves", actor.username)
        raise ValidationError("You cannot delete your own account")

    with context._lock:
        user = get_user(context, user_id)
        _commit(
            context,
            f"deletion of user {user.username}",
            [partial(data_manager.delete_user, user_id=user_id)],
            "users",
        )
        log.info("Deleted user '%s'", user.username)
        log_activity(context, actor, f"Deleted user {user.username}", EntityType.USER, entity_id=user_id)
    return user


def change_password(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    current_password: str,
    new_password: str,
) -> data_manager.UserRow:
    """Let an account holder replace their own password.

    Raises:
        AuthenticationError: If ``current_password`` is wrong.
        ValidationError: If ``new_password`` is empty.
    """
    with context._lock:
        user = get_user(context, actor.user_id)
        if not verify_password(current_password, user.password_hash):
            log.warning("Password change for '%s' rejected: wrong current password", user.username)
            raise AuthenticationError("Current password is incorrect")
        record = replace(user, password_hash=hash_password(new_password))
        _commit(context, f"user {user.username}", [partial(data_manager.upsert_user, record=record)], "users")
        log.info("User '%s' changed their password", user.username)
        log_activity(context, record, "Updated account password", EntityType.USER, entity_id=user.user_id)
    return record


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


def log_activity(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    action: str,
    entity_type: EntityType,
    *,
    entity_id: Optional[str] = None,
    details: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ActivityLogRow:
    """Append one entry to the audit trail.

    ``details`` defaults to ``action``. Entries are never edited afterwards.
    """
    moment = _resolve_timestamp(timestamp)
    entry = data_manager.ActivityLogRow(
        log_id=generate_record_id(prefix="LOG", when=moment),
        user_id=actor.user_id,
        username=actor.username,
        action=action,
        entity_type=EntityType(entity_type).value,
        entity_id=entity_id,
        details=details or action,
        timestamp=moment.isoformat(),
    )
    _commit(
        context,
        f"activity entry {entry.log_id}",
        [partial(data_manager.append_activity_log, record=entry)],
        "activity_logs",
    )
    return entry


def clear_activity_logs(context: RuntimeContext, actor: data_manager.UserRow) -> int:
    """Remove every audit entry, then record that the log was cleared.

    Returns:
        int: Number of entries removed.

    Raises:
        PermissionDenied: If ``actor`` may not manage settings.
    """
    require_permission(actor, Permission.MANAGE_SETTINGS)
    with context._lock:
        try:
            removed = data_manager.clear_sheet(context.workbook, data_manager.ACTIVITY_LOG_SHEET)
        finally:
            _invalidate_cache(context, "activity_logs")
        log.info("User '%s' cleared %d activity log entries", actor.username, removed)
        log_activity(context, actor, f"Cleared {removed} activity log entries", EntityType.SYSTEM)
    return removed


# ---------------------------------------------------------------------------
# Helpers and persistence
# ---------------------------------------------------------------------------


def generate_record_id(*, prefix: str, when: Optional[datetime] = None, sequence: Optional[int] = None) -> str:
    """Generate a sortable record identifier from a UTC timestamp.

    Args:
        prefix (str): Designator prepended to the identifier (``T`` for
            transactions, ``DT`` for budgets, ``U`` for users, ``LOG`` for
            audit entries).
        when (datetime | None): Timestamp encoded in the identifier. Defaults
            to the current UTC time.
        sequence (int | None): Disambiguator for records sharing a timestamp,
            such as the lines of one receipt. A process-wide counter is used
            when omitted.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{nnn}``.
    """
    when = when or _resolve_timestamp(None)
    if sequence is None:
        sequence = next(_record_sequence)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{sequence % 1000:03d}"


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero, negative, or rounds to zero
            at two decimal places.
    """
    if quantity is None or round_quantity(Decimal(quantity)) <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file.

    The save is refused when the file changed on disk since the context
    loaded or last saved it; reload with :func:`refresh_context` and redo the
    operation in that case.

    Raises:
        StaleWorkbookError: If another writer saved the workbook meanwhile.
        PersistenceError: If the file cannot be written.
    """
    data_file = context.settings.data_file
    with context._lock:
        expected = context._sync.get("fingerprint")
        current = data_manager.workbook_fingerprint(data_file)
        if expected is not None and current is not None and current != expected:
            log.error("Workbook '%s' changed on disk since it was loaded", data_file)
            raise StaleWorkbookError(f"Workbook changed on disk since it was loaded: {data_file}")

        try:
            data_manager.save_workbook(context.workbook, destination=data_file)
        except OSError as exc:
            log.error("Failed to save workbook '%s': %s", data_file, exc)
            raise PersistenceError(f"Failed to save workbook {data_file}: {exc}") from exc
        context._sync["fingerprint"] = data_manager.workbook_fingerprint(data_file)
    log.info("Persisted workbook '%s'", data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache, and a new lock.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    refreshed = RuntimeContext(settings=context.settings, workbook=workbook)
    refreshed._sync["fingerprint"] = data_manager.workbook_fingerprint(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return refreshed
