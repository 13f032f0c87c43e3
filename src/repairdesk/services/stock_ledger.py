from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from psycopg import Connection

from ..domain import InsufficientStockItem, PartLine, StockWarning, new_id
from ..errors import InsufficientStockError, NotFoundError
from ..logging_utils import get_logger
from ..repositories.inventory_repo import InventoryTransactionRepository
from ..repositories.part_repo import PartRepository

log = get_logger(__name__)

ISSUE = "Xuất kho"
RECEIPT = "Nhập kho"


@dataclass
class StockMovement:
    tx_count: int = 0
    warnings: list[StockWarning] = field(default_factory=list)


@dataclass
class _Change:
    part_id: str
    part_name: str
    unit_price: float
    delta: int = 0


class StockLedger:
    """Per-part, per-branch stock with an audit trail of movements.

    Every mutation locks the affected stock rows first, validates the whole
    batch and only then writes, so a rejected batch leaves stock untouched.
    """

    def __init__(
        self,
        *,
        part_repo: PartRepository,
        inventory_repo: InventoryTransactionRepository,
        low_stock_threshold: int = 2,
    ) -> None:
        self.part_repo = part_repo
        self.inventory_repo = inventory_repo
        self.low_stock_threshold = low_stock_threshold

    def require_parts(self, conn: Connection, parts: Iterable[PartLine]) -> dict[str, dict]:
        ids = sorted({p.part_id for p in parts})
        found = self.part_repo.get_many(conn, ids)
        missing = [pid for pid in ids if pid not in found]
        if missing:
            raise NotFoundError("PART_NOT_FOUND", {"partIds": missing})
        return found

    def deduct(self, conn: Connection, *, branch_id: str, parts: Iterable[PartLine], reference: str) -> StockMovement:
        return self._apply(conn, branch_id=branch_id, changes=[(p, -p.quantity) for p in parts], reference=reference)

    def restore(self, conn: Connection, *, branch_id: str, parts: Iterable[PartLine], reference: str) -> StockMovement:
        return self._apply(conn, branch_id=branch_id, changes=[(p, p.quantity) for p in parts], reference=reference)

    def rebalance(
        self,
        conn: Connection,
        *,
        branch_id: str,
        old_parts: Iterable[PartLine],
        new_parts: Iterable[PartLine],
        reference: str,
    ) -> StockMovement:
        """Move only the difference between two versions of an order's parts."""
        changes = [(p, p.quantity) for p in old_parts] + [(p, -p.quantity) for p in new_parts]
        return self._apply(conn, branch_id=branch_id, changes=changes, reference=reference)

    def shortages(self, conn: Connection, *, branch_id: str, parts: Iterable[PartLine]) -> list[StockWarning]:
        """Report parts that could not be issued right now, without moving stock."""
        wanted: dict[str, _Change] = {}
        for p in parts:
            c = wanted.setdefault(p.part_id, _Change(p.part_id, p.part_name, float(p.price)))
            c.delta += p.quantity
        stock = self.part_repo.lock_stock(conn, branch_id=branch_id, part_ids=list(wanted))
        return [
            StockWarning(
                part_id=c.part_id,
                part_name=c.part_name,
                available=stock.get(c.part_id, 0),
                requested=c.delta,
                kind="deferred_shortage",
            )
            for c in wanted.values()
            if stock.get(c.part_id, 0) < c.delta
        ]

    def _apply(
        self,
        conn: Connection,
        *,
        branch_id: str,
        changes: list[tuple[PartLine, int]],
        reference: str,
    ) -> StockMovement:
        merged: dict[str, _Change] = {}
        for part, delta in changes:
            c = merged.get(part.part_id)
            if c is None:
                c = merged[part.part_id] = _Change(part.part_id, part.part_name, float(part.price))
            elif delta < 0:
                # the newer line carries the current name and price
                c.part_name, c.unit_price = part.part_name or c.part_name, float(part.price)
            c.delta += delta

        moves = [c for c in merged.values() if c.delta != 0]
        movement = StockMovement()
        if not moves:
            return movement

        stock = self.part_repo.lock_stock(conn, branch_id=branch_id, part_ids=[c.part_id for c in moves])

        short = [
            InsufficientStockItem(
                part_id=c.part_id,
                part_name=c.part_name,
                available=stock.get(c.part_id, 0),
                requested=-c.delta,
            )
            for c in moves
            if stock.get(c.part_id, 0) + c.delta < 0
        ]
        if short:
            log.warning("Insufficient stock in %s for %s: %s", branch_id, reference, [s.part_id for s in short])
            raise InsufficientStockError([s.as_detail() for s in short])

        for c in sorted(moves, key=lambda m: m.part_id):
            remaining = self.part_repo.adjust_stock(conn, part_id=c.part_id, branch_id=branch_id, delta=c.delta)
            self.inventory_repo.create(
                conn,
                tx_id=new_id("INV"),
                tx_type=ISSUE if c.delta < 0 else RECEIPT,
                part_id=c.part_id,
                part_name=c.part_name,
                quantity=abs(c.delta),
                unit_price=c.unit_price,
                branch_id=branch_id,
                reference=reference,
                notes=f"Phiếu sửa chữa {reference}",
            )
            movement.tx_count += 1
            if c.delta < 0 and remaining <= self.low_stock_threshold:
                movement.warnings.append(
                    StockWarning(part_id=c.part_id, part_name=c.part_name, available=remaining)
                )
        return movement
