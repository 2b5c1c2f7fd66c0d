"""Enumerations shared across SmartStock modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the CLI rely on a single source of truth for workshop
codes, transaction types, roles, and permissions.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionType(str, Enum):
    """Enumerate the stock movements a receipt can record."""

    IN = "IN"
    OUT = "OUT"
    TRANSFER = "TRANSFER"


class Workshop(str, Enum):
    """Enumerate the physical stock locations."""

    OG = "OG"
    CK = "CK"
    NT = "NT"


WORKSHOP_NAMES: Dict[Workshop, str] = {
    Workshop.OG: "Xưởng Ống gió",
    Workshop.CK: "Xưởng Cơ khí",
    Workshop.NT: "Xưởng Nội thất",
}


class Classification(str, Enum):
    """Material categories, used for filtering only."""

    MAIN = "Vật tư chính"
    AUXILIARY = "Vật tư phụ"


class UserRole(str, Enum):
    """Named permission bundles assigned to user accounts."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    STAFF = "STAFF"


class Permission(str, Enum):
    """Individual capabilities checked by the permission gate."""

    VIEW_DASHBOARD = "VIEW_DASHBOARD"
    VIEW_INVENTORY = "VIEW_INVENTORY"
    VIEW_HISTORY = "VIEW_HISTORY"
    VIEW_ORDERS = "VIEW_ORDERS"
    MANAGE_MATERIALS = "MANAGE_MATERIALS"
    CREATE_RECEIPT = "CREATE_RECEIPT"
    DELETE_TRANSACTION = "DELETE_TRANSACTION"
    MANAGE_BUDGETS = "MANAGE_BUDGETS"
    TRANSFER_MATERIALS = "TRANSFER_MATERIALS"
    EXPORT_DATA = "EXPORT_DATA"
    MANAGE_USERS = "MANAGE_USERS"
    VIEW_ACTIVITY_LOG = "VIEW_ACTIVITY_LOG"
    MANAGE_SETTINGS = "MANAGE_SETTINGS"


_STAFF_PERMISSIONS = frozenset(
    {
        Permission.VIEW_DASHBOARD,
        Permission.VIEW_INVENTORY,
        Permission.VIEW_HISTORY,
        Permission.VIEW_ORDERS,
        Permission.CREATE_RECEIPT,
        Permission.EXPORT_DATA,
    }
)

_MANAGER_PERMISSIONS = _STAFF_PERMISSIONS | {
    Permission.MANAGE_MATERIALS,
    Permission.DELETE_TRANSACTION,
    Permission.MANAGE_BUDGETS,
    Permission.TRANSFER_MATERIALS,
    Permission.VIEW_ACTIVITY_LOG,
}

_ADMIN_PERMISSIONS = _MANAGER_PERMISSIONS | {
    Permission.MANAGE_USERS,
    Permission.MANAGE_SETTINGS,
}

ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[Permission]] = {
    UserRole.ADMIN: frozenset(_ADMIN_PERMISSIONS),
    UserRole.MANAGER: frozenset(_MANAGER_PERMISSIONS),
    UserRole.STAFF: _STAFF_PERMISSIONS,
}


class EntityType(str, Enum):
    """Entity categories referenced by activity log entries."""

    MATERIAL = "MATERIAL"
    TRANSACTION = "TRANSACTION"
    BUDGET = "BUDGET"
    USER = "USER"
    SYSTEM = "SYSTEM"


class MissingBudgetPolicy(str, Enum):
    """How OUT receipts against an order without a budget are treated."""

    ALLOW = "allow"
    BLOCK = "block"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    MATERIALS = "Materials"
    TRANSACTIONS = "Transactions"
    BUDGETS = "Budgets"
    USERS = "Users"
    ACTIVITY_LOG = "ActivityLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionType",
    "Workshop",
    "WORKSHOP_NAMES",
    "Classification",
    "UserRole",
    "Permission",
    "ROLE_PERMISSIONS",
    "EntityType",
    "MissingBudgetPolicy",
    "SheetName",
]
