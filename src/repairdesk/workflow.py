"""Caller-side orchestration around the atomic operations.

A ``WorkOrderForm`` is one editing session. It sends the whole order in one
atomic call, then performs the follow-ups the shop expects after a save:
outsourcing and negative-service expenses, and customer debt when an order is
handed off with money still owed.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterator, Optional
from uuid import uuid4

from .client import WorkOrderClient
from .codec import money_to_wire
from .domain import ZERO, WorkOrder, WorkOrderStatus, to_money
from .errors import EngineError, SubmissionInProgress
from .logging_utils import get_logger
from .services.cash_ledger import OUTSOURCING, SERVICE_ADJUSTMENT
from .services.debt_service import build_debt_description, debt_customer_id, format_vnd, order_number

log = get_logger(__name__)


class SubmissionGate:
    """Admits one in-flight submission; concurrent attempts are rejected, not queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def acquire(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise SubmissionInProgress()
        try:
            yield
        finally:
            self._lock.release()


@dataclass
class SubmitOutcome:
    work_order: WorkOrder
    messages: list[str] = field(default_factory=list)
    debt_id: Optional[str] = None
    expense_ids: list[str] = field(default_factory=list)


def outsourcing_cost(order: WorkOrder) -> Decimal:
    return sum(((s.cost_price or ZERO) * s.quantity for s in order.additional_services), ZERO)


def negative_service_amount(order: WorkOrder) -> Decimal:
    return sum((-s.line_total for s in order.additional_services if s.price < 0), ZERO)


class WorkOrderForm:
    def __init__(self, client: WorkOrderClient, *, staff_name: str | None = None) -> None:
        self.client = client
        self.staff_name = staff_name
        self.gate = SubmissionGate()

    def submit(self, order: WorkOrder, *, is_new: bool, idempotency_key: str | None = None) -> SubmitOutcome:
        with self.gate.acquire():
            key = idempotency_key or f"{'create' if is_new else 'update'}-{uuid4().hex}"
            if is_new:
                created = self.client.create(order, idempotency_key=key)
                saved = self.client.resolve(created.order)
                tx_count, warnings = created.inventory_tx_count, created.stock_warnings
                messages = [f"Đã tạo phiếu sửa chữa {saved.id}"]
            else:
                updated = self.client.update(order, idempotency_key=key)
                saved = updated.work_order
                tx_count, warnings = updated.inventory_tx_count, updated.stock_warnings
                messages = [f"Đã cập nhật phiếu sửa chữa {saved.id}"]

            if tx_count:
                messages.append(f"Đã cập nhật kho: {tx_count} phụ tùng")
            for w in warnings:
                if w.kind == "deferred_shortage":
                    messages.append(f"Chưa đủ hàng: {w.part_name} (còn {w.available}, cần {w.requested})")
                else:
                    messages.append(f"Sắp hết hàng: {w.part_name} (còn {w.available})")

            outcome = SubmitOutcome(work_order=saved, messages=messages)
            if not saved.refunded:
                self._book_service_expenses(saved, outcome)
                self._record_debt_if_needed(saved, outcome)
            return outcome

    def settle(self, order_id: str, *, payment_method: str, payment_amount: Decimal) -> SubmitOutcome:
        with self.gate.acquire():
            result = self.client.complete_payment(
                order_id,
                payment_method=payment_method,
                payment_amount=payment_amount,
                idempotency_key=f"pay-{uuid4().hex}",
            )
            messages = [f"Thanh toán {format_vnd(to_money(payment_amount))} cho phiếu {order_id}"]
            if result.inventory_tx_count:
                messages.append(f"Đã trừ kho: {result.inventory_tx_count} phụ tùng")
            outcome = SubmitOutcome(work_order=result.work_order, messages=messages)
            self._record_debt_if_needed(result.work_order, outcome)
            return outcome

    def _book_service_expenses(self, order: WorkOrder, outcome: SubmitOutcome) -> None:
        number = order_number(order.id)
        names = ", ".join(s.description for s in order.additional_services)
        expenses = (
            (OUTSOURCING, outsourcing_cost(order), f"Chi phí gia công bên ngoài - Phiếu #{number} - {names}"),
            (SERVICE_ADJUSTMENT, negative_service_amount(order), f"Điều chỉnh dịch vụ - Phiếu #{number}"),
        )
        for category, amount, description in expenses:
            if amount <= 0:
                continue
            tx_id, created = self.client.record_order_expense(
                order.id, category=category, amount=amount, description=description
            )
            outcome.expense_ids.append(tx_id)
            if created:
                outcome.messages.append(f"Đã tạo phiếu chi {format_vnd(amount)} ({category})")

    def _record_debt_if_needed(self, order: WorkOrder, outcome: SubmitOutcome) -> None:
        if order.status != WorkOrderStatus.HANDED_OFF or order.remaining_amount <= 0:
            return
        try:
            body = self.client.record_debt(
                work_order_id=order.id,
                customer_id=debt_customer_id(order),
                customer_name=order.customer_name or order.customer_phone or "Khách vãng lai",
                phone=order.customer_phone,
                license_plate=order.license_plate,
                description=build_debt_description(order, staff_name=self.staff_name),
                total_amount=money_to_wire(order.total),
                paid_amount=money_to_wire(order.total_paid),
                remaining_amount=money_to_wire(order.remaining_amount),
            )
        except EngineError as e:
            # the order itself is saved; the debt can be recorded again later
            log.error("Debt for %s not recorded: %s", order.id, e)
            outcome.messages.append("Không thể tạo/cập nhật công nợ tự động")
            return
        outcome.debt_id = body.get("debtId")
        outcome.messages.append(
            f"Đã tạo/cập nhật công nợ {format_vnd(order.remaining_amount)} (Mã: {outcome.debt_id})"
        )
