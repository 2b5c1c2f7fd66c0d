"""Exception taxonomy shared by the ledger, budget checker, and BLL."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .budget import BudgetViolation


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when required fields are missing or malformed."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced material, budget, user, or transaction is unknown."""


class MissingSourceMaterial(MissingReferenceError):
    """Raised when a movement references a material absent from its workshop."""

    def __init__(self, material_name: str, workshop: str) -> None:
        super().__init__(f"Material '{material_name}' is not stocked at workshop {workshop}")
        self.material_name = material_name
        self.workshop = workshop


class InsufficientStock(BusinessRuleViolation):
    """Raised when a mutation would drive a material quantity below zero."""

    def __init__(self, material_name: str, workshop: str, available: Decimal, requested: Decimal) -> None:
        super().__init__(
            f"Insufficient stock of '{material_name}' at {workshop}: "
            f"available {available}, requested {requested}"
        )
        self.material_name = material_name
        self.workshop = workshop
        self.available = available
        self.requested = requested


class BudgetExceeded(BusinessRuleViolation):
    """Raised when an OUT receipt would overspend an order budget."""

    def __init__(self, order_code: str, violations: Sequence["BudgetViolation"]) -> None:
        summary = ", ".join(violation.describe() for violation in violations)
        super().__init__(f"Budget exceeded for order {order_code}: {summary}")
        self.order_code = order_code
        self.violations = list(violations)


class PermissionDenied(BusinessRuleViolation):
    """Raised when the acting user lacks the permission an operation needs."""

    def __init__(self, username: Optional[str], permission: str) -> None:
        super().__init__(f"User '{username or '<anonymous>'}' lacks permission {permission}")
        self.username = username
        self.permission = permission


class AuthenticationError(BusinessRuleViolation):
    """Raised when credentials are wrong or the account is deactivated."""


class PersistenceError(RuntimeError):
    """Raised when staged changes cannot be written to the workbook."""


class StaleWorkbookError(PersistenceError):
    """Raised when the workbook changed on disk after it was loaded."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "MissingSourceMaterial",
    "InsufficientStock",
    "BudgetExceeded",
    "PermissionDenied",
    "AuthenticationError",
    "PersistenceError",
    "StaleWorkbookError",
]
