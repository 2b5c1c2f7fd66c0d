"""Utility for initializing the SmartStock master workbook.

The module doubles as a console script (``smartstock-setup``) and as a library
used by tests. It creates every sheet with a bold header row and seeds one
ADMIN account so the first login can create the remaining users.
"""

from __future__ import annotations

import argparse
import configparser
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from .constants import SheetName, UserRole
from .data_manager import CONFIG_FILE_NAME, UserRow, serialize_user
from .permissions import default_permissions
from .security import hash_password

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.MATERIALS.value: [
        "MaterialID",
        "Name",
        "Classification",
        "Unit",
        "Quantity",
        "MinThreshold",
        "LastUpdated",
        "Workshop",
        "Origin",
        "Note",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "ReceiptID",
        "MaterialID",
        "MaterialName",
        "TransactionType",
        "Quantity",
        "Date",
        "User",
        "Workshop",
        "TargetWorkshop",
        "OrderCode",
        "Note",
    ],
    SheetName.BUDGETS.value: [
        "BudgetID",
        "OrderCode",
        "Workshop",
        "Items",
        "CreatedAt",
        "LastUpdated",
    ],
    SheetName.USERS.value: [
        "UserID",
        "Username",
        "PasswordHash",
        "FullName",
        "Email",
        "Role",
        "Permissions",
        "IsActive",
        "CreatedAt",
        "LastLogin",
        "CreatedBy",
    ],
    SheetName.ACTIVITY_LOG.value: [
        "LogID",
        "UserID",
        "Username",
        "Action",
        "EntityType",
        "EntityID",
        "Details",
        "Timestamp",
    ],
}

ADMIN_USER_ID = "U00000000000000000000000"
ADMIN_FULL_NAME = "Administrator"
PASSWORD_ENV_VAR = "SMARTSTOCK_ADMIN_PASSWORD"


@dataclass(frozen=True)
class SetupSettings:
    """Configuration values used during setup."""

    data_file: Path
    admin_username: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory. The ``[Defaults] DefaultUser`` entry names the seeded
    administrator.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
        admin_username = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path, admin_username=admin_username)


def create_master_workbook(
    destination: Path,
    *,
    admin_password: str,
    admin_username: str = "admin",
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the SmartStock master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Drop the default sheet openpyxl generates so only ours remain.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    admin = UserRow(
        user_id=ADMIN_USER_ID,
        username=admin_username,
        password_hash=hash_password(admin_password),
        full_name=ADMIN_FULL_NAME,
        email=None,
        role=UserRole.ADMIN.value,
        permissions=default_permissions(UserRole.ADMIN),
        is_active=True,
        created_at=datetime.now(UTC).date().isoformat(),
    )
    workbook[SheetName.USERS.value].append(serialize_user(admin))

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, admin_password: str, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        admin_username=settings.admin_username,
        admin_password=admin_password,
        overwrite=overwrite,
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the SmartStock data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--admin-password",
        default=os.environ.get(PASSWORD_ENV_VAR),
        help=f"Password for the seeded administrator (default: ${PASSWORD_ENV_VAR}).",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the ``smartstock-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- SmartStock Setup Script ---")
    print(f"Using configuration: {config_path}")

    if not args.admin_password:
        print(f"\n[ERROR] Provide --admin-password or set {PASSWORD_ENV_VAR}.")
        return 1

    try:
        output_path = run_from_config(config_path, admin_password=args.admin_password, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
