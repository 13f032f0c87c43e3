"""Atomic work-order operations.

Each public method runs inside the caller's transaction and either applies
all of its effects (order row, stock, cash book) or raises before anything is
committed. The ``inventory_deducted`` flag on the order is the single record
of whether its parts have left stock.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Optional

from psycopg import Connection

from ..codec import work_order_from_row, work_order_to_row
from ..domain import (
    ZERO,
    CallerContext,
    PartLine,
    PaymentStatus,
    ServiceLine,
    StockWarning,
    WorkOrder,
    WorkOrderDraft,
    WorkOrderStatus,
    compute_payment_state,
    compute_subtotal,
    compute_total,
    discount_from_percent,
    parse_payment_method,
    to_money,
    utcnow,
)
from ..errors import NotFoundError, ValidationError
from ..logging_utils import get_logger
from ..repositories.work_order_repo import WorkOrderRepository
from .cash_ledger import EXPENSE, INCOME, SERVICE_DEPOSIT, SERVICE_INCOME, SERVICE_REFUND, CashLedger
from .rules import (
    authorize,
    check_branch,
    check_financial_edit,
    check_not_refunded,
    check_settlement_allowed,
)
from .stock_ledger import StockLedger, StockMovement

log = get_logger(__name__)


@dataclass
class CreateOutcome:
    work_order: WorkOrder
    deposit_transaction_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    inventory_tx_count: int = 0
    stock_warnings: list[StockWarning] = field(default_factory=list)

    @property
    def inventory_deducted(self) -> bool:
        return self.work_order.inventory_deducted


@dataclass
class UpdateOutcome:
    work_order: WorkOrder
    deposit_transaction_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    inventory_tx_count: int = 0
    stock_warnings: list[StockWarning] = field(default_factory=list)


@dataclass
class PaymentOutcome:
    work_order: WorkOrder
    payment_transaction_id: Optional[str] = None
    inventory_tx_count: int = 0
    stock_warnings: list[StockWarning] = field(default_factory=list)

    @property
    def new_payment_status(self) -> PaymentStatus:
        return self.work_order.payment_status

    @property
    def inventory_deducted(self) -> bool:
        return self.work_order.inventory_deducted


@dataclass
class RefundOutcome:
    work_order: WorkOrder
    refund_transaction_id: Optional[str]
    refund_amount: Decimal
    inventory_tx_count: int = 0


@dataclass(frozen=True)
class _Pricing:
    status: WorkOrderStatus
    payment_method: Optional[str]
    parts: tuple[PartLine, ...]
    services: tuple[ServiceLine, ...]
    discount: Decimal
    total: Decimal


class WorkOrderEngine:
    def __init__(
        self,
        *,
        order_repo: WorkOrderRepository,
        stock: StockLedger,
        cash: CashLedger,
        order_prefix: str = "SC",
        default_payment_method: str = "cash",
    ) -> None:
        self.order_repo = order_repo
        self.stock = stock
        self.cash = cash
        self.order_prefix = order_prefix
        self.default_payment_method = default_payment_method

    # --- reads --------------------------------------------------------------

    def get(self, conn: Connection, ctx: CallerContext, order_id: str) -> WorkOrder:
        authorize(ctx, "read")
        return self._load(conn, ctx, order_id)

    def list(self, conn: Connection, ctx: CallerContext, *, limit: int = 30) -> list[WorkOrder]:
        authorize(ctx, "read")
        return [work_order_from_row(r) for r in self.order_repo.list(conn, branch_id=ctx.branch_id, limit=limit)]

    # --- atomic operations --------------------------------------------------

    def create_atomic(self, conn: Connection, ctx: CallerContext, draft: WorkOrderDraft) -> CreateOutcome:
        authorize(ctx, "create")
        branch_id = draft.branch_id or ctx.branch_id
        check_branch(ctx, branch_id)

        pricing = self._price(draft, services_fallback=())
        deposit, additional = draft.deposit_amount, draft.additional_payment
        check_settlement_allowed(pricing.status, additional)
        self._check_not_overpaid(pricing.total, deposit + additional, changed=deposit + additional > ZERO)
        state = compute_payment_state(pricing.total, deposit, additional)

        order_id = draft.order_id or self.order_repo.next_id(conn, branch_id=branch_id, prefix=self.order_prefix)
        if self.order_repo.get(conn, order_id) is not None:
            raise ValidationError("ORDER_EXISTS", {"orderId": order_id})
        if pricing.parts:
            self.stock.require_parts(conn, pricing.parts)

        # Deposit-only orders (parts on order) leave stock alone until settlement.
        defer = deposit > 0 and state.payment_status != PaymentStatus.PAID and pricing.status != WorkOrderStatus.HANDED_OFF
        movement = StockMovement()
        if not defer:
            movement = self.stock.deduct(conn, branch_id=branch_id, parts=pricing.parts, reference=order_id)
        elif pricing.parts:
            movement.warnings = self.stock.shortages(conn, branch_id=branch_id, parts=pricing.parts)

        now = utcnow()
        method = pricing.payment_method or self.default_payment_method
        order = WorkOrder(
            id=order_id,
            branch_id=branch_id,
            creation_date=now,
            customer_name=draft.customer_name,
            customer_phone=draft.customer_phone,
            vehicle_id=draft.vehicle_id,
            vehicle_model=draft.vehicle_model,
            license_plate=draft.license_plate,
            issue_description=draft.issue_description,
            technician_name=draft.technician_name,
            notes=draft.notes,
            status=pricing.status,
            labor_cost=draft.labor_cost,
            discount=pricing.discount,
            parts_used=pricing.parts,
            additional_services=pricing.services,
            total=pricing.total,
            payment_status=state.payment_status,
            payment_method=pricing.payment_method or (method if state.total_paid > 0 else None),
            deposit_amount=deposit,
            additional_payment=additional,
            total_paid=state.total_paid,
            remaining_amount=state.remaining_amount,
            inventory_deducted=not defer,
        )

        outcome = CreateOutcome(work_order=order, inventory_tx_count=movement.tx_count, stock_warnings=movement.warnings)
        if deposit > 0:
            tx = self.cash.record(
                conn,
                tx_type=INCOME,
                category=SERVICE_DEPOSIT,
                amount=deposit,
                branch_id=branch_id,
                payment_source=method,
                reference=order_id,
                description=f"Đặt cọc phiếu sửa chữa {order_id}",
                created_by=ctx.caller_id,
            )
            outcome.deposit_transaction_id = tx.id
            order = replace(order, deposit_transaction_id=tx.id, deposit_date=now)
        if additional > 0:
            tx = self.cash.record(
                conn,
                tx_type=INCOME,
                category=SERVICE_INCOME,
                amount=additional,
                branch_id=branch_id,
                payment_source=method,
                reference=order_id,
                description=f"Thanh toán phiếu sửa chữa {order_id}",
                created_by=ctx.caller_id,
            )
            outcome.payment_transaction_id = tx.id
            order = replace(order, cash_transaction_id=tx.id, payment_date=now)

        self.order_repo.insert(conn, work_order_to_row(order))
        outcome.work_order = order
        log.info(
            "Created work order %s in %s: total=%s status=%s payment=%s stock_moves=%d",
            order_id, branch_id, order.total, order.status.name, order.payment_status.value, movement.tx_count,
        )
        return outcome

    def update_atomic(self, conn: Connection, ctx: CallerContext, draft: WorkOrderDraft) -> UpdateOutcome:
        authorize(ctx, "update")
        if not draft.order_id:
            raise NotFoundError("ORDER_NOT_FOUND", {"orderId": None})
        current = self._load(conn, ctx, draft.order_id, for_update=True)
        if draft.branch_id and draft.branch_id != current.branch_id:
            check_branch(ctx, draft.branch_id)
        draft = _keep_absent(draft, current)

        pricing = self._price(draft, services_fallback=current.additional_services)
        deposit, additional = draft.deposit_amount, draft.additional_payment
        proposed = replace(
            current,
            customer_name=draft.customer_name or current.customer_name,
            customer_phone=draft.customer_phone,
            vehicle_id=draft.vehicle_id,
            vehicle_model=draft.vehicle_model,
            license_plate=draft.license_plate,
            issue_description=draft.issue_description,
            technician_name=draft.technician_name,
            notes=draft.notes,
            status=pricing.status,
            labor_cost=draft.labor_cost,
            discount=pricing.discount,
            parts_used=pricing.parts,
            additional_services=pricing.services,
            total=pricing.total,
            deposit_amount=deposit,
            additional_payment=additional,
        )
        check_financial_edit(current, proposed)

        if current.refunded:
            # metadata only; money and stock were settled by the refund
            self.order_repo.update(conn, current.id, work_order_to_row(proposed))
            log.info("Updated metadata of refunded work order %s", current.id)
            return UpdateOutcome(work_order=proposed)

        deposit_increment = deposit - current.deposit_amount
        additional_increment = additional - current.additional_payment
        if deposit_increment < 0 or additional_increment < 0:
            raise ValidationError(
                "INVALID_PAYMENT_AMOUNT",
                {"depositAmount": str(current.deposit_amount), "additionalPayment": str(current.additional_payment)},
            )
        check_settlement_allowed(pricing.status, additional_increment)
        self._check_not_overpaid(
            pricing.total,
            deposit + additional,
            changed=deposit_increment + additional_increment > ZERO or pricing.total < current.total,
        )
        state = compute_payment_state(pricing.total, deposit, additional)

        new_ids = {p.part_id for p in pricing.parts} - {p.part_id for p in current.parts_used}
        if new_ids:
            self.stock.require_parts(conn, [p for p in pricing.parts if p.part_id in new_ids])

        movement = StockMovement()
        deducted = current.inventory_deducted
        if deducted:
            movement = self.stock.rebalance(
                conn,
                branch_id=current.branch_id,
                old_parts=current.parts_used,
                new_parts=pricing.parts,
                reference=current.id,
            )
        elif state.payment_status == PaymentStatus.PAID or pricing.status == WorkOrderStatus.HANDED_OFF:
            movement = self.stock.deduct(conn, branch_id=current.branch_id, parts=pricing.parts, reference=current.id)
            deducted = True

        now = utcnow()
        method = pricing.payment_method or current.payment_method or self.default_payment_method
        updated = replace(
            proposed,
            payment_status=state.payment_status,
            payment_method=pricing.payment_method or current.payment_method
            or (method if state.total_paid > 0 else None),
            total_paid=state.total_paid,
            remaining_amount=state.remaining_amount,
            inventory_deducted=deducted,
        )

        outcome = UpdateOutcome(work_order=updated, inventory_tx_count=movement.tx_count, stock_warnings=movement.warnings)
        if deposit_increment > 0:
            tx = self.cash.record(
                conn,
                tx_type=INCOME,
                category=SERVICE_DEPOSIT,
                amount=deposit_increment,
                branch_id=current.branch_id,
                payment_source=method,
                reference=current.id,
                description=f"Đặt cọc phiếu sửa chữa {current.id}",
                created_by=ctx.caller_id,
            )
            outcome.deposit_transaction_id = tx.id
            updated = replace(updated, deposit_transaction_id=tx.id, deposit_date=current.deposit_date or now)
        if additional_increment > 0:
            tx = self.cash.record(
                conn,
                tx_type=INCOME,
                category=SERVICE_INCOME,
                amount=additional_increment,
                branch_id=current.branch_id,
                payment_source=method,
                reference=current.id,
                description=f"Thanh toán phiếu sửa chữa {current.id}",
                created_by=ctx.caller_id,
            )
            outcome.payment_transaction_id = tx.id
            updated = replace(updated, cash_transaction_id=tx.id, payment_date=now)

        self.order_repo.update(conn, current.id, work_order_to_row(updated))
        outcome.work_order = updated
        log.info(
            "Updated work order %s: total=%s status=%s payment=%s stock_moves=%d",
            current.id, updated.total, updated.status.name, updated.payment_status.value, movement.tx_count,
        )
        return outcome

    def complete_payment(
        self,
        conn: Connection,
        ctx: CallerContext,
        *,
        order_id: str,
        payment_method: str | None,
        payment_amount,
    ) -> PaymentOutcome:
        authorize(ctx, "complete_payment")
        amount = to_money(payment_amount, field_name="payment_amount", code="INVALID_PAYMENT_AMOUNT")
        current = self._load(conn, ctx, order_id, for_update=True)
        check_not_refunded(current)
        method = parse_payment_method(payment_method, default=current.payment_method or self.default_payment_method)

        if amount > current.remaining_amount:
            raise ValidationError(
                "INVALID_PAYMENT_AMOUNT",
                {"paymentAmount": str(amount), "remainingAmount": str(current.remaining_amount)},
            )
        additional = current.additional_payment + amount
        state = compute_payment_state(current.total, current.deposit_amount, additional)

        movement = StockMovement()
        deducted = current.inventory_deducted
        if not deducted and state.payment_status == PaymentStatus.PAID:
            movement = self.stock.deduct(conn, branch_id=current.branch_id, parts=current.parts_used, reference=current.id)
            deducted = True

        updated = replace(
            current,
            additional_payment=additional,
            total_paid=state.total_paid,
            remaining_amount=state.remaining_amount,
            payment_status=state.payment_status,
            payment_method=method if amount > 0 else current.payment_method,
            inventory_deducted=deducted,
        )
        outcome = PaymentOutcome(work_order=updated, inventory_tx_count=movement.tx_count, stock_warnings=movement.warnings)
        if amount > 0:
            tx = self.cash.record(
                conn,
                tx_type=INCOME,
                category=SERVICE_INCOME,
                amount=amount,
                branch_id=current.branch_id,
                payment_source=method,
                reference=current.id,
                description=f"Thanh toán phiếu sửa chữa {current.id}",
                created_by=ctx.caller_id,
            )
            outcome.payment_transaction_id = tx.id
            updated = replace(updated, cash_transaction_id=tx.id, payment_date=utcnow())

        self.order_repo.update(conn, current.id, work_order_to_row(updated))
        outcome.work_order = updated
        log.info(
            "Payment on work order %s: amount=%s status=%s inventory_deducted=%s",
            current.id, amount, updated.payment_status.value, deducted,
        )
        return outcome

    def refund_atomic(self, conn: Connection, ctx: CallerContext, *, order_id: str, refund_reason: str | None) -> RefundOutcome:
        authorize(ctx, "refund")
        current = self._load(conn, ctx, order_id, for_update=True)
        if current.refunded:
            raise ValidationError("ALREADY_REFUNDED", {"orderId": order_id})

        movement = StockMovement()
        if current.inventory_deducted:
            movement = self.stock.restore(conn, branch_id=current.branch_id, parts=current.parts_used, reference=current.id)

        refund_amount = current.total_paid
        tx_id = None
        if refund_amount > 0:
            tx = self.cash.record(
                conn,
                tx_type=EXPENSE,
                category=SERVICE_REFUND,
                amount=refund_amount,
                branch_id=current.branch_id,
                payment_source=current.payment_method or self.default_payment_method,
                reference=current.id,
                description=f"Hoàn tiền phiếu sửa chữa {current.id}: {refund_reason or ''}".strip(),
                created_by=ctx.caller_id,
            )
            tx_id = tx.id

        updated = replace(
            current,
            refunded=True,
            refunded_at=utcnow(),
            refund_transaction_id=tx_id,
            refund_reason=(refund_reason or "").strip() or None,
            inventory_deducted=False,
        )
        self.order_repo.update(conn, current.id, work_order_to_row(updated))
        log.info("Refunded work order %s: amount=%s stock_moves=%d", current.id, refund_amount, movement.tx_count)
        return RefundOutcome(
            work_order=updated,
            refund_transaction_id=tx_id,
            refund_amount=refund_amount,
            inventory_tx_count=movement.tx_count,
        )

    def delete(self, conn: Connection, ctx: CallerContext, order_id: str) -> bool:
        """Remove an erroneous record. Stock and cash book are not touched."""
        authorize(ctx, "delete")
        self._load(conn, ctx, order_id, for_update=True)
        deleted = self.order_repo.delete(conn, order_id)
        log.warning("Hard-deleted work order %s by %s", order_id, ctx.caller_id)
        return deleted

    def record_order_expense(
        self,
        conn: Connection,
        ctx: CallerContext,
        *,
        order_id: str,
        category: str,
        amount,
        payment_source: str | None = None,
        description: str = "",
    ) -> tuple[str, bool]:
        authorize(ctx, "expense")
        # the order row lock serializes concurrent checks for an existing expense
        current = self._load(conn, ctx, order_id, for_update=True)
        check_not_refunded(current)
        return self.cash.record_order_expense_once(
            conn,
            order_id=current.id,
            category=category,
            amount=to_money(amount, field_name="amount", code="INVALID_PAYMENT_AMOUNT"),
            branch_id=current.branch_id,
            payment_source=payment_source,
            description=description,
            created_by=ctx.caller_id,
        )

    # --- helpers ------------------------------------------------------------

    def _load(self, conn: Connection, ctx: CallerContext, order_id: str, *, for_update: bool = False) -> WorkOrder:
        row = self.order_repo.get(conn, order_id, for_update=for_update)
        if row is None:
            raise NotFoundError("ORDER_NOT_FOUND", {"orderId": order_id})
        order = work_order_from_row(row)
        check_branch(ctx, order.branch_id)
        return order

    def _price(self, draft: WorkOrderDraft, *, services_fallback: tuple[ServiceLine, ...]) -> _Pricing:
        status = WorkOrderStatus.parse(draft.status)
        # client-side payment status is validated only; the engine derives its own
        PaymentStatus.parse(draft.payment_status)
        method = parse_payment_method(draft.payment_method)
        parts = tuple(draft.parts_used)
        services = services_fallback if draft.additional_services is None else tuple(draft.additional_services)

        discount = draft.discount
        if draft.discount_percent is not None:
            discount = discount_from_percent(compute_subtotal(draft.labor_cost, parts, services), draft.discount_percent)
        total = compute_total(draft.labor_cost, parts, services, discount)
        if draft.total is not None and draft.total != total:
            log.warning("Client total %s differs from computed %s for %s", draft.total, total, draft.order_id)
        return _Pricing(
            status=status,
            payment_method=method,
            parts=parts,
            services=services,
            discount=discount,
            total=total,
        )

    @staticmethod
    def _check_not_overpaid(total: Decimal, total_paid: Decimal, *, changed: bool) -> None:
        if changed and total_paid > total:
            raise ValidationError("INVALID_PAYMENT_AMOUNT", {"total": str(total), "totalPaid": str(total_paid)})


# Update parameters that fall back to the stored value when the caller omits them.
_KEPT_WHEN_ABSENT = (
    "customer_name",
    "customer_phone",
    "vehicle_id",
    "vehicle_model",
    "license_plate",
    "issue_description",
    "technician_name",
    "notes",
    "status",
    "labor_cost",
    "discount",
    "parts_used",
    "payment_status",
    "payment_method",
    "deposit_amount",
    "additional_payment",
)


def _keep_absent(draft: WorkOrderDraft, current: WorkOrder) -> WorkOrderDraft:
    if draft.present is None:
        return draft
    kept = {name: getattr(current, name) for name in _KEPT_WHEN_ABSENT if name not in draft.present}
    if "parts_used" in kept:
        kept["parts_used"] = list(current.parts_used)
    return replace(draft, **kept)
