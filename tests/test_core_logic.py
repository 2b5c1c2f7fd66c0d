"""Unit tests verifying the business logic layer with a mocked data access layer."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from smartstock import constants, core_logic, data_manager, security
from smartstock.budget import ViolationKind
from smartstock.constants import TransactionType, UserRole


MOMENT = datetime(2026, 3, 14, 8, 0, tzinfo=UTC)

_WRITERS = (
    "upsert_material",
    "upsert_budget",
    "upsert_user",
    "append_transaction",
    "append_activity_log",
    "delete_material",
    "delete_transaction",
    "delete_budget",
    "delete_user",
)


@pytest.fixture
def dal(monkeypatch):
    """Replace every sheet reader and writer with in-memory fakes."""

    state = SimpleNamespace(materials=[], transactions=[], budgets=[], users=[], activity=[])
    readers = {
        "iter_materials": lambda wb: list(state.materials),
        "iter_transactions": lambda wb: list(state.transactions),
        "iter_budgets": lambda wb: list(state.budgets),
        "iter_users": lambda wb: list(state.users),
        "iter_activity_logs": lambda wb: list(state.activity),
    }
    for name, reader in readers.items():
        monkeypatch.setattr(data_manager, name, Mock(name=name, side_effect=reader))

    state.writes = {name: Mock(name=name) for name in _WRITERS}
    for name, writer in state.writes.items():
        monkeypatch.setattr(data_manager, name, writer)
    return state


@pytest.fixture
def admin(make_user):
    return make_user(user_id="U-ADMIN", username="admin", role=UserRole.ADMIN)


@pytest.fixture
def staff(make_user):
    return make_user(user_id="U-STAFF", username="staff", role=UserRole.STAFF)


def _records(writer: Mock) -> list:
    return [call.kwargs["record"] for call in writer.call_args_list]


def _plan(command, *, materials=(), transactions=(), budgets=(), policy=constants.MissingBudgetPolicy.ALLOW):
    return core_logic.plan_receipt(
        command,
        actor_name="Tester",
        materials=materials,
        transactions=transactions,
        budgets=budgets,
        missing_budget_policy=policy,
        timestamp=MOMENT,
    )


def _receipt(transaction_type, workshop, *lines, **kwargs):
    return core_logic.ReceiptCommand(
        transaction_type=transaction_type,
        workshop=workshop,
        lines=[core_logic.ReceiptLine(material_id, Decimal(quantity)) for material_id, quantity in lines],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path, settings):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=settings)
    open_workbook = Mock(return_value=workbook)
    fingerprint = Mock(return_value=1234)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)
    monkeypatch.setattr(data_manager, "workbook_fingerprint", fingerprint)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is settings
    assert context.workbook is workbook
    assert context._sync["fingerprint"] == 1234
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = core_logic.RuntimeContext(
        settings=replace(context.settings, schema_version="0.9"),
        workbook=context.workbook,
    )
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_list_materials_filters_and_reuses_cache(dal, context, make_material):
    """Filters should combine and the sheet should only be read once."""

    dal.materials = [
        make_material(),
        make_material("VT/OG/00002", name="Cát vàng", origin="Sông Lô"),
        make_material("VT/CK/00001", workshop="CK"),
    ]

    assert [m.material_id for m in core_logic.list_materials(context, workshop="OG")] == ["VT/OG/00001", "VT/OG/00002"]
    assert [m.material_id for m in core_logic.list_materials(context, search="sông")] == ["VT/OG/00002"]
    assert len(core_logic.list_materials(context)) == 3
    data_manager.iter_materials.assert_called_once_with(context.workbook)


def test_list_transactions_filters_by_date_and_type(dal, context, make_transaction):
    """Date bounds are inclusive and type filters accept enum members."""

    dal.transactions = [
        make_transaction("T1", date="2026-03-01"),
        make_transaction("T2", date="2026-03-10", transaction_type=TransactionType.IN),
        make_transaction("T3", date="2026-03-20"),
    ]

    result = core_logic.list_transactions(
        context,
        transaction_type=TransactionType.OUT,
        start_date="2026-03-01",
        end_date="2026-03-19",
    )
    assert [t.transaction_id for t in result] == ["T1"]


def test_get_material_unknown_id_raises(dal, context):
    """Unknown ids should raise MissingReferenceError."""

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_material(context, "VT/OG/99999")


# ---------------------------------------------------------------------------
# Receipt planning
# ---------------------------------------------------------------------------


def test_plan_in_receipt_adds_stock(make_material):
    """IN 100 on top of 150 should leave 250 and one transaction."""

    result = _plan(_receipt(TransactionType.IN, "OG", ("VT/OG/00001", "100")), materials=[make_material()])

    assert result.receipt_id == "PNK/OG/26/00001"
    assert [m.quantity for m in result.materials] == [Decimal("250.00")]
    [transaction] = result.transactions
    assert transaction.transaction_id == "T20260314080000000000000"
    assert transaction.material_id == "VT/OG/00001"
    assert transaction.quantity == Decimal("100.00")
    assert transaction.date == "2026-03-14"
    assert transaction.user == "Tester"
    assert transaction.target_workshop is None


def test_plan_in_receipt_into_other_workshop_creates_row(make_material):
    """Receiving a material a workshop does not stock yet should clone it."""

    result = _plan(_receipt(TransactionType.IN, "CK", ("VT/OG/00001", "12.345")), materials=[make_material()])

    [created] = result.materials
    assert created.material_id == "VT/CK/00001"
    assert created.workshop == "CK"
    assert created.quantity == Decimal("12.35")
    assert result.transactions[0].material_id == "VT/CK/00001"
    assert result.receipt_id == "PNK/CK/26/00001"


def test_plan_out_receipt_over_stock_fails(make_material):
    """OUT beyond the stock on hand should raise InsufficientStock."""

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        _plan(_receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "300")), materials=[make_material(quantity="250")])

    assert excinfo.value.available == Decimal("250")
    assert excinfo.value.requested == Decimal("300.00")


def test_plan_out_receipt_requires_stock_in_workshop(make_material):
    """OUT from a workshop lacking the material should raise MissingSourceMaterial."""

    with pytest.raises(core_logic.MissingSourceMaterial):
        _plan(_receipt(TransactionType.OUT, "NT", ("VT/OG/00001", "1")), materials=[make_material()])


def test_plan_receipt_unknown_material_fails(make_material):
    """Unknown material ids are reported as missing source material."""

    with pytest.raises(core_logic.MissingSourceMaterial):
        _plan(_receipt(TransactionType.IN, "OG", ("VT/OG/09999", "1")), materials=[make_material()])


@pytest.mark.parametrize("quantity", ["0", "-5", "0.001"])
def test_plan_receipt_rejects_non_positive_quantity(make_material, quantity):
    """Quantities that are not strictly positive after rounding are invalid."""

    with pytest.raises(core_logic.ValidationError):
        _plan(_receipt(TransactionType.IN, "OG", ("VT/OG/00001", quantity)), materials=[make_material()])


def test_plan_receipt_requires_lines():
    """Receipts without lines are invalid."""

    with pytest.raises(core_logic.ValidationError):
        _plan(_receipt(TransactionType.IN, "OG"))


def test_plan_out_receipt_respects_budget(make_material, make_transaction):
    """DH01 allows 80; with 60 issued, 25 more is rejected and 20 is fine."""

    budget = data_manager.BudgetRow(
        budget_id="DT1",
        order_code="DH01",
        workshop="OG",
        items=(data_manager.BudgetItem("VT/OG/00001", "Xi măng", Decimal("80")),),
        created_at="2026-03-01",
    )
    history = [make_transaction("T1", quantity="60", order_code="DH01")]
    materials = [make_material()]

    with pytest.raises(core_logic.BudgetExceeded) as excinfo:
        _plan(
            _receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "25"), order_code="DH01"),
            materials=materials,
            transactions=history,
            budgets=[budget],
        )
    assert [v.kind for v in excinfo.value.violations] == [ViolationKind.OVER_BUDGET]

    result = _plan(
        _receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "20"), order_code="DH01"),
        materials=materials,
        transactions=history,
        budgets=[budget],
    )
    assert result.materials[0].quantity == Decimal("130.00")
    assert result.transactions[0].order_code == "DH01"
    assert result.receipt_id == "PXK/OG/26/00001"


def test_plan_out_receipt_normalizes_order_code(make_material, make_transaction):
    """A lower-case order code is checked against the upper-case budget and stored upper-case."""

    budget = data_manager.BudgetRow(
        budget_id="DT1",
        order_code="DH01",
        workshop="OG",
        items=(data_manager.BudgetItem("VT/OG/00001", "Xi măng", Decimal("80")),),
        created_at="2026-03-01",
    )
    materials = [make_material()]

    with pytest.raises(core_logic.BudgetExceeded):
        _plan(
            _receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "100"), order_code="dh01"),
            materials=materials,
            budgets=[budget],
        )

    result = _plan(
        _receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "20"), order_code=" dh01 "),
        materials=materials,
        transactions=[make_transaction("T1", quantity="60", order_code="DH01")],
        budgets=[budget],
    )
    assert result.transactions[0].order_code == "DH01"


def test_plan_out_receipt_blocks_missing_budget_when_configured(make_material):
    """With the BLOCK policy an order without a budget is rejected."""

    command = _receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "1"), order_code="DH77")

    assert _plan(command, materials=[make_material()]).transactions
    with pytest.raises(core_logic.BudgetExceeded):
        _plan(command, materials=[make_material()], policy=constants.MissingBudgetPolicy.BLOCK)


def test_plan_transfer_conserves_quantity(make_material):
    """TRANSFER 50 from OG to CK should move exactly 50 units."""

    result = _plan(
        _receipt(TransactionType.TRANSFER, "OG", ("VT/OG/00001", "50"), target_workshop="CK"),
        materials=[make_material(quantity="250")],
    )

    by_id = {m.material_id: m for m in result.materials}
    assert by_id["VT/OG/00001"].quantity == Decimal("200.00")
    assert by_id["VT/CK/00001"].quantity == Decimal("50.00")
    assert by_id["VT/CK/00001"].origin == "Hà Tiên"
    [transaction] = result.transactions
    assert transaction.material_id == "VT/OG/00001"
    assert (transaction.workshop, transaction.target_workshop) == ("OG", "CK")
    assert result.receipt_id == "PDC/OG/26/00001"


def test_plan_transfer_rejects_same_workshop(make_material):
    """A transfer needs two distinct workshops."""

    with pytest.raises(core_logic.ValidationError):
        _plan(
            _receipt(TransactionType.TRANSFER, "OG", ("VT/OG/00001", "1"), target_workshop="OG"),
            materials=[make_material()],
        )


def test_plan_receipt_keeps_explicit_receipt_id(make_material):
    """A caller-supplied receipt id should be used verbatim."""

    result = _plan(
        _receipt(TransactionType.IN, "OG", ("VT/OG/00001", "1"), receipt_id="PNK/OG/26/00042"),
        materials=[make_material()],
    )
    assert result.receipt_id == "PNK/OG/26/00042"


# ---------------------------------------------------------------------------
# Receipt processing
# ---------------------------------------------------------------------------


def test_process_receipt_commits_rows_and_audits(dal, context, admin, make_material):
    """A successful receipt should upsert materials, append transactions, and log once."""

    dal.materials = [make_material()]
    result = core_logic.process_receipt(context, admin, _receipt(TransactionType.IN, "OG", ("VT/OG/00001", "100")))

    assert _records(dal.writes["upsert_material"]) == list(result.materials)
    assert _records(dal.writes["append_transaction"]) == list(result.transactions)
    [entry] = _records(dal.writes["append_activity_log"])
    assert entry.entity_type == constants.EntityType.TRANSACTION.value
    assert entry.entity_id == result.receipt_id
    assert result.transactions[0].user == admin.full_name


def test_process_receipt_invalidates_caches(dal, context, admin, make_material):
    """Caches should be rebuilt from the sheet after a commit."""

    dal.materials = [make_material()]
    core_logic.list_materials(context)
    core_logic.process_receipt(context, admin, _receipt(TransactionType.IN, "OG", ("VT/OG/00001", "1")))
    core_logic.list_materials(context)

    assert data_manager.iter_materials.call_count == 2


def test_process_receipt_failure_writes_nothing(dal, context, admin, make_material):
    """A rejected line anywhere in the receipt must leave the workbook untouched."""

    dal.materials = [make_material(), make_material("VT/OG/00002", name="Cát", quantity="5")]
    command = _receipt(TransactionType.OUT, "OG", ("VT/OG/00001", "10"), ("VT/OG/00002", "6"))

    with pytest.raises(core_logic.InsufficientStock):
        core_logic.process_receipt(context, admin, command)

    for writer in dal.writes.values():
        writer.assert_not_called()


def test_process_transfer_requires_transfer_permission(dal, context, staff, make_material):
    """STAFF may create receipts but not transfers."""

    dal.materials = [make_material()]
    with pytest.raises(core_logic.PermissionDenied):
        core_logic.process_receipt(
            context,
            staff,
            _receipt(TransactionType.TRANSFER, "OG", ("VT/OG/00001", "1"), target_workshop="CK"),
        )
    dal.writes["upsert_material"].assert_not_called()


def test_process_receipt_wraps_write_failures(dal, context, admin, make_material):
    """Workbook write failures should surface as PersistenceError."""

    dal.materials = [make_material()]
    dal.writes["append_transaction"].side_effect = KeyError("Transactions")

    with pytest.raises(core_logic.PersistenceError):
        core_logic.process_receipt(context, admin, _receipt(TransactionType.IN, "OG", ("VT/OG/00001", "1")))


# ---------------------------------------------------------------------------
# Reversal
# ---------------------------------------------------------------------------


def test_reverse_in_and_out(make_material, make_transaction):
    """IN reversals subtract and OUT reversals add back."""

    materials = [make_material(quantity="250")]

    [after_in] = core_logic.reverse_transaction(
        make_transaction(transaction_type=TransactionType.IN, quantity="100"), materials, today="2026-03-15"
    )
    [after_out] = core_logic.reverse_transaction(
        make_transaction(transaction_type=TransactionType.OUT, quantity="100"), materials, today="2026-03-15"
    )

    assert after_in.quantity == Decimal("150.00")
    assert after_out.quantity == Decimal("350.00")
    assert after_in.last_updated == "2026-03-15"


def test_reverse_transfer_moves_stock_back(make_material, make_transaction):
    """Reversing a transfer should restore both workshops."""

    materials = [make_material(quantity="200"), make_material("VT/CK/00001", workshop="CK", quantity="50")]
    transaction = make_transaction(
        transaction_type=TransactionType.TRANSFER,
        quantity="50",
        target_workshop="CK",
    )

    updated = {m.material_id: m.quantity for m in core_logic.reverse_transaction(transaction, materials, today="2026-03-15")}

    assert updated == {"VT/OG/00001": Decimal("250.00"), "VT/CK/00001": Decimal("0.00")}


def test_reverse_transfer_fails_when_target_stock_was_consumed(make_material, make_transaction):
    """Undoing a transfer whose stock was issued would go negative."""

    materials = [make_material(quantity="200"), make_material("VT/CK/00001", workshop="CK", quantity="20")]
    transaction = make_transaction(transaction_type=TransactionType.TRANSFER, quantity="50", target_workshop="CK")

    with pytest.raises(core_logic.InsufficientStock):
        core_logic.reverse_transaction(transaction, materials, today="2026-03-15")


def test_reverse_skips_deleted_material(make_transaction):
    """A transaction whose material no longer exists reverses to nothing."""

    assert core_logic.reverse_transaction(make_transaction(), [], today="2026-03-15") == []


def test_delete_transaction_reverts_and_removes_row(dal, context, admin, make_material, make_transaction):
    """delete_transaction should upsert the reverted material and drop the row."""

    dal.materials = [make_material(quantity="250")]
    dal.transactions = [make_transaction("T1", transaction_type=TransactionType.IN, quantity="100")]

    core_logic.delete_transaction(context, admin, "T1", timestamp=MOMENT)

    [material] = _records(dal.writes["upsert_material"])
    assert material.quantity == Decimal("150.00")
    dal.writes["delete_transaction"].assert_called_once_with(context.workbook, transaction_id="T1")
    dal.writes["append_activity_log"].assert_called_once()


def test_delete_transaction_requires_permission(dal, context, staff, make_transaction):
    """STAFF accounts cannot delete transactions."""

    dal.transactions = [make_transaction("T1")]
    with pytest.raises(core_logic.PermissionDenied):
        core_logic.delete_transaction(context, staff, "T1")


# ---------------------------------------------------------------------------
# Materials and budgets
# ---------------------------------------------------------------------------


def test_save_material_assigns_next_code(dal, context, admin, make_material):
    """New materials take the next VT code of their workshop."""

    dal.materials = [make_material()]
    record = core_logic.save_material(
        context,
        admin,
        core_logic.MaterialCommand(name=" Cát ", unit="m3", workshop="og", origin="Sông Lô"),
        timestamp=MOMENT,
    )

    assert record.material_id == "VT/OG/00002"
    assert record.name == "Cát"
    assert record.workshop == "OG"
    assert record.last_updated == "2026-03-14"
    assert _records(dal.writes["upsert_material"]) == [record]


def test_save_material_rejects_duplicate_identity(dal, context, admin, make_material):
    """Two rows of one workshop cannot share name and origin."""

    dal.materials = [make_material()]
    with pytest.raises(core_logic.ValidationError):
        core_logic.save_material(
            context,
            admin,
            core_logic.MaterialCommand(name="Xi măng", unit="bao", workshop="OG", origin="Hà Tiên"),
        )


def test_save_material_updates_existing_row(dal, context, admin, make_material):
    """Editing keeps the id and replaces the descriptive fields."""

    dal.materials = [make_material()]
    record = core_logic.save_material(
        context,
        admin,
        core_logic.MaterialCommand(
            material_id="VT/OG/00001",
            name="Xi măng",
            unit="tấn",
            workshop="OG",
            origin="Hà Tiên",
            quantity=Decimal("7.5"),
        ),
    )
    assert record.material_id == "VT/OG/00001"
    assert record.unit == "tấn"
    assert record.quantity == Decimal("7.50")


def test_save_material_requires_name_and_unit(dal, context, admin):
    """Blank names or units are invalid."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.save_material(context, admin, core_logic.MaterialCommand(name="", unit="bao", workshop="OG"))


def test_save_budget_normalizes_order_code(dal, context, admin):
    """Order codes are stored upper-case with a DT identifier."""

    record = core_logic.save_budget(
        context,
        admin,
        core_logic.BudgetCommand(
            order_code=" dh01 ",
            workshop="OG",
            items=[data_manager.BudgetItem(None, "Xi măng", Decimal("80"))],
        ),
        timestamp=MOMENT,
    )

    assert record.order_code == "DH01"
    assert record.budget_id.startswith("DT20260314080000")
    assert _records(dal.writes["upsert_budget"]) == [record]


def test_save_budget_rejects_duplicate_order_code(dal, context, admin):
    """Only one budget may exist per order code."""

    dal.budgets = [data_manager.BudgetRow("DT1", "DH01", "OG", (), "2026-03-01")]
    with pytest.raises(core_logic.ValidationError):
        core_logic.save_budget(
            context,
            admin,
            core_logic.BudgetCommand(order_code="DH01", workshop="OG", items=[]),
        )


def test_save_budget_rejects_repeated_material(dal, context, admin):
    """A material can appear only once per budget."""

    items = [
        data_manager.BudgetItem(None, "Xi măng", Decimal("1")),
        data_manager.BudgetItem(None, "Xi măng", Decimal("2")),
    ]
    with pytest.raises(core_logic.ValidationError):
        core_logic.save_budget(context, admin, core_logic.BudgetCommand(order_code="DH02", workshop="OG", items=items))


def test_budget_status_and_missing_budget(dal, context, make_transaction):
    """budget_status reports issued totals; unknown orders raise."""

    dal.budgets = [
        data_manager.BudgetRow(
            "DT1",
            "DH01",
            "OG",
            (data_manager.BudgetItem(None, "Xi măng", Decimal("80")),),
            "2026-03-01",
        )
    ]
    dal.transactions = [make_transaction(quantity="60", order_code="DH01")]

    [line] = core_logic.budget_status(context, "DH01")
    assert line.remaining == Decimal("20")
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.budget_status(context, "DH99")


# ---------------------------------------------------------------------------
# Users and activity
# ---------------------------------------------------------------------------


def test_create_user_applies_role_defaults(dal, context, admin):
    """New accounts get the role's permission bundle and a bcrypt hash."""

    record = core_logic.create_user(
        context,
        admin,
        core_logic.UserCommand(username="kho1", full_name="Thủ kho", role="staff", password="pw"),
        timestamp=MOMENT,
    )

    assert record.role == UserRole.STAFF.value
    assert record.permissions == frozenset(p.value for p in constants.ROLE_PERMISSIONS[UserRole.STAFF])
    assert record.created_by == admin.user_id
    assert security.verify_password("pw", record.password_hash)


def test_create_user_rejects_taken_username(dal, context, admin, make_user):
    """Usernames are unique regardless of case."""

    dal.users = [make_user(username="kho1")]
    with pytest.raises(core_logic.ValidationError):
        core_logic.create_user(
            context,
            admin,
            core_logic.UserCommand(username="KHO1", full_name="X", password="pw"),
        )


def test_create_user_requires_manage_users(dal, context, staff):
    """Only accounts with MANAGE_USERS can create users."""

    with pytest.raises(core_logic.PermissionDenied):
        core_logic.create_user(context, staff, core_logic.UserCommand(username="x", full_name="X", password="pw"))


def test_users_cannot_deactivate_or_delete_themselves(dal, context, admin):
    """Self-deactivation and self-deletion are refused."""

    dal.users = [admin]
    with pytest.raises(core_logic.ValidationError):
        core_logic.set_user_active(context, admin, admin.user_id, False)
    with pytest.raises(core_logic.ValidationError):
        core_logic.delete_user(context, admin, admin.user_id)


def test_set_user_active_toggles_other_account(dal, context, admin, staff):
    """Administrators can deactivate other accounts."""

    dal.users = [admin, staff]
    record = core_logic.set_user_active(context, admin, staff.user_id, False)
    assert record.is_active is False
    assert _records(dal.writes["upsert_user"]) == [record]


def test_update_user_keeps_hash_without_new_password(dal, context, admin, make_user):
    """Omitting the password on update keeps the stored hash."""

    target = make_user(user_id="U-2", username="kho2", password_hash="$2b$stored")
    dal.users = [admin, target]

    record = core_logic.update_user(
        context,
        admin,
        core_logic.UserCommand(user_id="U-2", username="kho2", full_name="Kho Hai", role="MANAGER"),
    )
    assert record.password_hash == "$2b$stored"
    assert record.role == UserRole.MANAGER.value
    assert record.permissions == target.permissions


def test_authenticate_stamps_last_login(dal, context, make_user):
    """Valid credentials should stamp last_login and audit a SYSTEM entry."""

    user = make_user(username="an", password_hash=security.hash_password("pw"))
    dal.users = [user]

    record = core_logic.authenticate(context, "AN", "pw", timestamp=MOMENT)

    assert record.last_login == MOMENT.isoformat()
    assert _records(dal.writes["upsert_user"]) == [record]
    [entry] = _records(dal.writes["append_activity_log"])
    assert entry.entity_type == constants.EntityType.SYSTEM.value


@pytest.mark.parametrize(("password", "active"), [("wrong", True), ("pw", False)])
def test_authenticate_rejects_bad_credentials_or_inactive(dal, context, make_user, password, active):
    """Wrong passwords and deactivated accounts cannot log in."""

    dal.users = [make_user(username="an", password_hash=security.hash_password("pw"), is_active=active)]
    with pytest.raises(core_logic.AuthenticationError):
        core_logic.authenticate(context, "an", password)
    dal.writes["upsert_user"].assert_not_called()


def test_change_password_requires_current_password(dal, context, make_user):
    """The current password must match before it can be replaced."""

    user = make_user(password_hash=security.hash_password("old"))
    dal.users = [user]

    with pytest.raises(core_logic.AuthenticationError):
        core_logic.change_password(context, user, "nope", "new")
    record = core_logic.change_password(context, user, "old", "new")
    assert security.verify_password("new", record.password_hash)


def test_list_activity_logs_newest_first(dal, context, admin, staff):
    """Entries come back newest first and need VIEW_ACTIVITY_LOG."""

    dal.activity = [
        data_manager.ActivityLogRow("L1", "U", "a", "first", "SYSTEM", None, "", "2026-03-14T08:00:00"),
        data_manager.ActivityLogRow("L2", "U", "a", "second", "SYSTEM", None, "", "2026-03-14T09:00:00"),
    ]

    assert [e.log_id for e in core_logic.list_activity_logs(context, admin)] == ["L2", "L1"]
    with pytest.raises(core_logic.PermissionDenied):
        core_logic.list_activity_logs(context, staff)


def test_clear_activity_logs_records_the_clear(dal, context, admin, monkeypatch):
    """Clearing should report the count and leave one audit entry behind."""

    clear_sheet = Mock(return_value=3)
    monkeypatch.setattr(data_manager, "clear_sheet", clear_sheet)

    assert core_logic.clear_activity_logs(context, admin) == 3
    clear_sheet.assert_called_once_with(context.workbook, data_manager.ACTIVITY_LOG_SHEET)
    [entry] = _records(dal.writes["append_activity_log"])
    assert "3" in entry.action


# ---------------------------------------------------------------------------
# Summary, identifiers, and persistence
# ---------------------------------------------------------------------------


def test_summarize_inventory(dal, context, make_material, make_transaction):
    """Dashboard totals should reflect low stock and today's movements."""

    dal.materials = [make_material(quantity="5"), make_material("VT/CK/00001", workshop="CK", quantity="50")]
    dal.transactions = [
        make_transaction("T1", transaction_type=TransactionType.IN, quantity="10", date="2026-03-14"),
        make_transaction("T2", quantity="4", date="2026-03-14"),
        make_transaction("T3", transaction_type=TransactionType.IN, quantity="100", date="2026-03-13"),
    ]

    summary = core_logic.summarize_inventory(context, today="2026-03-14")

    assert summary.total_items == 2
    assert [m.material_id for m in summary.low_stock] == ["VT/OG/00001"]
    assert (summary.today_in, summary.today_out) == (Decimal("10"), Decimal("4"))
    assert summary.by_workshop["CK"] == {"items": 1, "quantity": Decimal("50")}
    assert summary.by_workshop["NT"]["items"] == 0


def test_generate_record_id_uses_timestamp_and_sequence():
    """Identifiers concatenate prefix, timestamp, and a three digit sequence."""

    assert core_logic.generate_record_id(prefix="T", when=MOMENT, sequence=7) == "T20260314080000000000007"
    first = core_logic.generate_record_id(prefix="LOG", when=MOMENT)
    second = core_logic.generate_record_id(prefix="LOG", when=MOMENT)
    assert first != second


def test_persist_context_refuses_stale_workbook(monkeypatch, context):
    """A workbook changed on disk since load must not be overwritten."""

    context._sync["fingerprint"] = 1
    save_workbook = Mock()
    monkeypatch.setattr(data_manager, "workbook_fingerprint", Mock(return_value=2))
    monkeypatch.setattr(data_manager, "save_workbook", save_workbook)

    with pytest.raises(core_logic.StaleWorkbookError):
        core_logic.persist_context(context)
    save_workbook.assert_not_called()


def test_persist_context_saves_and_records_new_fingerprint(monkeypatch, context):
    """A successful save should refresh the stored fingerprint."""

    context._sync["fingerprint"] = 1
    save_workbook = Mock()
    monkeypatch.setattr(data_manager, "workbook_fingerprint", Mock(side_effect=[1, 5]))
    monkeypatch.setattr(data_manager, "save_workbook", save_workbook)

    core_logic.persist_context(context)

    save_workbook.assert_called_once_with(context.workbook, destination=context.settings.data_file)
    assert context._sync["fingerprint"] == 5


def test_persist_context_wraps_os_errors(monkeypatch, context):
    """Filesystem failures should be reported as PersistenceError."""

    monkeypatch.setattr(data_manager, "workbook_fingerprint", Mock(return_value=None))
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=PermissionError("locked")))

    with pytest.raises(core_logic.PersistenceError):
        core_logic.persist_context(context)
