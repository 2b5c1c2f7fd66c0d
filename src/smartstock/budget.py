"""Order budget checks for outbound receipts.

A budget caps how much of each material may be issued against an order code.
Issued totals are never stored; they are recomputed from the OUT transactions
that carry the order code, so deleting a transaction is reflected in the next
check without touching the budget itself.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import MissingBudgetPolicy, TransactionType
from .data_manager import BudgetRow, TransactionRow


class ViolationKind(str, Enum):
    """Why a proposed line was rejected by the budget checker."""

    OVER_BUDGET = "OVER_BUDGET"
    NOT_IN_BUDGET = "NOT_IN_BUDGET"
    NO_BUDGET = "NO_BUDGET"


@dataclass(frozen=True)
class BudgetViolation:
    """One offending line of a proposed OUT receipt."""

    order_code: str
    material_name: Optional[str]
    kind: ViolationKind
    would_be_issued: Optional[Decimal] = None
    estimated: Optional[Decimal] = None

    def describe(self) -> str:
        if self.kind is ViolationKind.OVER_BUDGET:
            return f"{self.material_name} ({self.would_be_issued}/{self.estimated})"
        if self.kind is ViolationKind.NOT_IN_BUDGET:
            return f"{self.material_name} (not in budget for order {self.order_code})"
        return f"no budget registered for order {self.order_code}"


@dataclass(frozen=True)
class BudgetLineStatus:
    """Issued versus estimated quantity for one budget item."""

    material_name: str
    estimated: Decimal
    issued: Decimal

    @property
    def remaining(self) -> Decimal:
        return self.estimated - self.issued

    @property
    def is_over(self) -> bool:
        return self.issued > self.estimated


def normalize_order_code(order_code: Optional[str]) -> str:
    """Return the canonical (stripped, upper-case) form of an order code."""

    return (order_code or "").strip().upper()


def find_budget(order_code: str, budgets: Iterable[BudgetRow]) -> Optional[BudgetRow]:
    """Return the budget registered for ``order_code``, if any."""

    wanted = normalize_order_code(order_code)
    for budget in budgets:
        if normalize_order_code(budget.order_code) == wanted:
            return budget
    return None


def issued_quantity(order_code: str, material_name: str, transactions: Iterable[TransactionRow]) -> Decimal:
    """Sum the OUT quantities already issued for a material against an order."""

    wanted = normalize_order_code(order_code)
    return sum(
        (
            transaction.quantity
            for transaction in transactions
            if transaction.transaction_type == TransactionType.OUT.value
            and normalize_order_code(transaction.order_code) == wanted
            and transaction.material_name == material_name
        ),
        Decimal("0"),
    )


def check_budget(
    order_code: str,
    proposed_items: Sequence[Tuple[str, Decimal]],
    transactions: Iterable[TransactionRow],
    budgets: Iterable[BudgetRow],
    *,
    missing_budget_policy: MissingBudgetPolicy = MissingBudgetPolicy.ALLOW,
) -> List[BudgetViolation]:
    """Collect every budget violation a proposed OUT receipt would cause.

    Args:
        order_code: Order the receipt is issued against. Blank codes are never
            checked.
        proposed_items: ``(material_name, quantity)`` pairs in receipt order.
            Repeated materials accumulate, so two lines of 30 against a
            remaining allowance of 50 are flagged.
        transactions: Transaction history used to compute issued totals.
        budgets: Registered order budgets.
        missing_budget_policy: Whether an order without any budget passes
            silently (``ALLOW``) or yields a ``NO_BUDGET`` violation.

    Returns:
        list[BudgetViolation]: Empty when the receipt may proceed. Issuing
            exactly the estimated quantity is allowed.
    """

    if not order_code:
        return []

    budget = find_budget(order_code, budgets)
    if budget is None:
        if missing_budget_policy is MissingBudgetPolicy.BLOCK:
            log.error("OUT receipt references order '%s' without a budget", order_code)
            return [BudgetViolation(order_code=order_code, material_name=None, kind=ViolationKind.NO_BUDGET)]
        log.debug("No budget registered for order '%s'; skipping check", order_code)
        return []

    history = list(transactions)
    estimates: Dict[str, Decimal] = {item.material_name: item.estimated_qty for item in budget.items}
    pending: Dict[str, Decimal] = defaultdict(Decimal)
    violations: List[BudgetViolation] = []

    for material_name, quantity in proposed_items:
        estimated = estimates.get(material_name)
        if estimated is None:
            violations.append(
                BudgetViolation(order_code=order_code, material_name=material_name, kind=ViolationKind.NOT_IN_BUDGET)
            )
            continue

        pending[material_name] += quantity
        would_be_issued = issued_quantity(order_code, material_name, history) + pending[material_name]
        if would_be_issued > estimated:
            violations.append(
                BudgetViolation(
                    order_code=order_code,
                    material_name=material_name,
                    kind=ViolationKind.OVER_BUDGET,
                    would_be_issued=would_be_issued,
                    estimated=estimated,
                )
            )

    if violations:
        log.error(
            "Budget check for order '%s' found %d violation(s): %s",
            order_code,
            len(violations),
            ", ".join(violation.describe() for violation in violations),
        )
    return violations


def summarize_budget(budget: BudgetRow, transactions: Iterable[TransactionRow]) -> List[BudgetLineStatus]:
    """Report issued versus estimated quantities for each budget item."""

    history = list(transactions)
    return [
        BudgetLineStatus(
            material_name=item.material_name,
            estimated=item.estimated_qty,
            issued=issued_quantity(budget.order_code, item.material_name, history),
        )
        for item in budget.items
    ]
