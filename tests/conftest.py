"""Shared pytest fixtures and utilities for SmartStock tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from smartstock import cli, constants, core_logic, data_manager, security  # noqa: E402
from smartstock.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-secret"
TODAY = "2026-03-14"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_user}\n"
    "DefaultWorkshop = OG\n\n"
    "[Budget]\n"
    "MissingBudgetPolicy = {missing_budget_policy}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_user: str
    schema_version: str
    company_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(autouse=True)
def _fast_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    """Use the cheapest bcrypt cost so account fixtures stay fast."""

    monkeypatch.setattr(security, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        admin_username: str = ADMIN_USERNAME,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            admin_username=admin_username,
            admin_password=ADMIN_PASSWORD,
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Works",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user: str = ADMIN_USERNAME,
        missing_budget_policy: str = "allow",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", admin_username=default_user)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                company_name=company_name,
                schema_version=schema_version,
                default_user=default_user,
                missing_budget_policy=missing_budget_policy,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_user=default_user,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def admin_user(runtime_context: core_logic.RuntimeContext) -> data_manager.UserRow:
    """Return the administrator seeded into every fresh workbook."""

    user = core_logic.find_user_by_username(runtime_context, ADMIN_USERNAME)
    assert user is not None
    return user


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user() -> Callable[..., data_manager.UserRow]:
    """Build in-memory user rows without touching a workbook."""

    def _make(
        *,
        user_id: str = "U-1",
        username: str = "staff",
        role: constants.UserRole = constants.UserRole.STAFF,
        permissions: frozenset[str] | None = None,
        is_active: bool = True,
        password_hash: str = "",
    ) -> data_manager.UserRow:
        if permissions is None:
            permissions = frozenset(p.value for p in constants.ROLE_PERMISSIONS[role])
        return data_manager.UserRow(
            user_id=user_id,
            username=username,
            password_hash=password_hash,
            full_name=username.title(),
            email=None,
            role=role.value,
            permissions=permissions,
            is_active=is_active,
            created_at=TODAY,
        )

    return _make


@pytest.fixture
def make_material() -> Callable[..., data_manager.MaterialRow]:
    """Build in-memory material rows with sensible defaults."""

    def _make(
        material_id: str = "VT/OG/00001",
        *,
        name: str = "Xi măng",
        workshop: str = "OG",
        origin: str = "Hà Tiên",
        quantity: str = "150",
        min_threshold: str = "10",
        unit: str = "bao",
    ) -> data_manager.MaterialRow:
        return data_manager.MaterialRow(
            material_id=material_id,
            name=name,
            classification=constants.Classification.MAIN.value,
            unit=unit,
            quantity=Decimal(quantity),
            min_threshold=Decimal(min_threshold),
            last_updated=TODAY,
            workshop=workshop,
            origin=origin,
        )

    return _make


@pytest.fixture
def make_transaction() -> Callable[..., data_manager.TransactionRow]:
    """Build in-memory transaction rows with sensible defaults."""

    def _make(
        transaction_id: str = "T1",
        *,
        receipt_id: str = "PXK/OG/26/00001",
        material_id: str = "VT/OG/00001",
        material_name: str = "Xi măng",
        transaction_type: constants.TransactionType = constants.TransactionType.OUT,
        quantity: str = "10",
        workshop: str = "OG",
        target_workshop: str | None = None,
        order_code: str | None = None,
        date: str = TODAY,
    ) -> data_manager.TransactionRow:
        return data_manager.TransactionRow(
            transaction_id=transaction_id,
            receipt_id=receipt_id,
            material_id=material_id,
            material_name=material_name,
            transaction_type=transaction_type.value,
            quantity=Decimal(quantity),
            date=date,
            user="Tester",
            workshop=workshop,
            target_workshop=target_workshop,
            order_code=order_code,
        )

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="smartstock", description="SmartStock CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        company_name="Test Works",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_user=ADMIN_USERNAME,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
