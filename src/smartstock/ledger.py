"""Staged, in-memory view of material quantities across workshops.

A :class:`StockLedger` is built from a snapshot of the ``Materials`` sheet and
mutated while a receipt is being planned. Rows are immutable dataclasses, so
the snapshot the ledger was built from is never modified; discarding the
ledger discards every staged change.

Material rows are workshop scoped but linked across workshops by their
``(name, origin)`` pair. The ledger keeps that identity explicit through an
index keyed by ``(name, origin, workshop)``.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union

from . import log
from .constants import TransactionType
from .data_manager import MaterialRow
from .errors import InsufficientStock, MissingReferenceError, MissingSourceMaterial
from .identifiers import next_material_id


QUANTITY_STEP = Decimal("0.01")

IdentityKey = Tuple[str, str, str]


def round_quantity(value: Decimal) -> Decimal:
    """Round a quantity half-up to two decimal places."""

    return Decimal(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


class StockLedger:
    """Mutable working copy of material rows with O(1) identity lookups."""

    def __init__(self, materials: Iterable[MaterialRow]) -> None:
        self._rows: Dict[str, MaterialRow] = {}
        self._by_identity: Dict[IdentityKey, str] = {}
        self._by_name: Dict[Tuple[str, str], List[str]] = {}
        self._touched: Dict[str, None] = {}
        for material in materials:
            self._index(material)

    def _index(self, material: MaterialRow) -> None:
        self._rows[material.material_id] = material
        # first row wins when the sheet holds duplicates of one identity
        self._by_identity.setdefault((material.name, material.origin, material.workshop), material.material_id)
        ids = self._by_name.setdefault((material.name, material.workshop), [])
        if material.material_id not in ids:
            ids.append(material.material_id)

    def __contains__(self, material_id: object) -> bool:
        return material_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def materials(self) -> List[MaterialRow]:
        """Return every row, staged changes included, in insertion order."""

        return list(self._rows.values())

    def touched(self) -> List[MaterialRow]:
        """Return the rows created or mutated since construction."""

        return [self._rows[material_id] for material_id in self._touched]

    def get(self, material_id: str) -> MaterialRow:
        try:
            return self._rows[material_id]
        except KeyError as exc:
            log.warning("Material lookup failed for id '%s'", material_id)
            raise MissingReferenceError(f"Unknown material id: {material_id}") from exc

    def find(self, name: str, origin: str, workshop: str) -> Optional[MaterialRow]:
        """Return the row identified by ``(name, origin)`` in ``workshop``."""

        material_id = self._by_identity.get((name, origin, workshop))
        return self._rows[material_id] if material_id is not None else None

    def find_by_name(self, name: str, workshop: str) -> Optional[MaterialRow]:
        """Return the first row named ``name`` in ``workshop``, any origin."""

        ids = self._by_name.get((name, workshop))
        return self._rows[ids[0]] if ids else None

    def add(self, material: MaterialRow) -> MaterialRow:
        """Stage a brand-new row."""

        if material.material_id in self._rows:
            raise ValueError(f"Duplicate material id: {material.material_id}")
        self._index(material)
        self._touched[material.material_id] = None
        return material

    def locate_or_create(
        self,
        source: MaterialRow,
        workshop: str,
        transaction_type: Union[TransactionType, str],
        *,
        today: str,
    ) -> MaterialRow:
        """Find the ``workshop`` row matching ``source`` by name and origin.

        When no such row exists, IN and TRANSFER stage a clone of the source's
        descriptive fields with a fresh ``VT/`` code and a zero quantity; the
        caller then applies the incoming amount. OUT cannot create stock and
        raises :class:`MissingSourceMaterial`.
        """

        existing = self.find(source.name, source.origin, workshop)
        if existing is not None:
            return existing

        if TransactionType(transaction_type) is TransactionType.OUT:
            log.warning("Material '%s' (%s) is not stocked at %s", source.name, source.origin, workshop)
            raise MissingSourceMaterial(source.name, workshop)

        created = replace(
            source,
            material_id=next_material_id(workshop, self._rows.values()),
            workshop=workshop,
            quantity=Decimal("0.00"),
            last_updated=today,
        )
        log.debug("Staged new material '%s' for '%s' at %s", created.material_id, created.name, workshop)
        return self.add(created)

    def apply_delta(self, material_id: str, delta: Decimal, *, today: str) -> MaterialRow:
        """Add ``delta`` to a row's quantity and stamp ``last_updated``.

        Raises:
            InsufficientStock: If the rounded result would be negative. The
                row is left untouched in that case.
        """

        current = self.get(material_id)
        updated_quantity = round_quantity(current.quantity + delta)
        if updated_quantity < 0:
            log.error(
                "Rejected change of %s on '%s' at %s (available %s)",
                delta,
                current.name,
                current.workshop,
                current.quantity,
            )
            raise InsufficientStock(current.name, current.workshop, current.quantity, abs(delta))

        updated = replace(current, quantity=updated_quantity, last_updated=today)
        self._rows[material_id] = updated
        self._touched[material_id] = None
        return updated
