"""Human-readable code generation for receipts and materials.

Codes are derived from the records that already exist: the generator scans
the codes sharing the requested scope, takes the highest numeric suffix, and
adds one. Callers must hold the context write lock between generating a code
and persisting the record that consumes it, otherwise two writers can derive
the same sequence number.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Dict, Iterable, Optional, Union

from .constants import TransactionType, Workshop
from .data_manager import MaterialRow, TransactionRow


RECEIPT_PREFIXES: Dict[TransactionType, str] = {
    TransactionType.IN: "PNK",
    TransactionType.OUT: "PXK",
    TransactionType.TRANSFER: "PDC",
}
MATERIAL_PREFIX = "VT"
SEQUENCE_WIDTH = 5

_LEADING_DIGITS = re.compile(r"\s*(\d+)")


def parse_sequence(segment: Optional[str]) -> int:
    """Return the integer encoded at the start of ``segment``.

    Leading digits are honoured (``"00012x"`` is 12); anything without a
    leading digit, including ``None``, is 0.
    """

    if not segment:
        return 0
    match = _LEADING_DIGITS.match(segment)
    return int(match.group(1)) if match else 0


def receipt_prefix(transaction_type: Union[TransactionType, str]) -> str:
    """Map a transaction type to its voucher prefix (``PNK``/``PXK``/``PDC``)."""

    return RECEIPT_PREFIXES[TransactionType(transaction_type)]


def _workshop_code(workshop: Union[Workshop, str]) -> str:
    return Workshop(workshop).value


def next_receipt_id(
    transaction_type: Union[TransactionType, str],
    workshop: Union[Workshop, str],
    existing_transactions: Iterable[TransactionRow],
    *,
    when: Optional[date] = None,
) -> str:
    """Derive the next receipt code for a type, workshop, and year.

    Args:
        transaction_type: Receipt type selecting the prefix.
        workshop: Workshop scoping the sequence (the source workshop for
            transfers).
        existing_transactions: Every known transaction; only receipt ids in
            the ``{PREFIX}/{workshop}/{yy}/`` scope are considered.
        when: Date whose two-digit year scopes the sequence. Defaults to today.

    Returns:
        str: Code formatted as ``{PREFIX}/{workshop}/{yy}/{00000}``.
    """

    year = (when or date.today()).strftime("%y")
    scope = f"{receipt_prefix(transaction_type)}/{_workshop_code(workshop)}/{year}/"
    sequences = [
        parse_sequence(transaction.receipt_id[len(scope):].split("/")[0])
        for transaction in existing_transactions
        if transaction.receipt_id.startswith(scope)
    ]
    next_number = max(sequences) + 1 if sequences else 1
    return f"{scope}{next_number:0{SEQUENCE_WIDTH}d}"


def next_material_id(workshop: Union[Workshop, str], existing_materials: Iterable[MaterialRow]) -> str:
    """Derive the next material code for a workshop.

    Only materials located in ``workshop`` whose id carries the
    ``VT/{workshop}/`` prefix take part; ids from the seed data or other
    naming schemes are ignored.

    Returns:
        str: Code formatted as ``VT/{workshop}/{00000}``.
    """

    code = _workshop_code(workshop)
    scope = f"{MATERIAL_PREFIX}/{code}/"
    sequences = [
        parse_sequence(material.material_id[len(scope):].split("/")[0])
        for material in existing_materials
        if material.workshop == code and material.material_id.startswith(scope)
    ]
    next_number = max(sequences) + 1 if sequences else 1
    return f"{scope}{next_number:0{SEQUENCE_WIDTH}d}"
