from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from psycopg import Connection

from ..domain import WorkOrder, strip_unlock_code, to_money
from ..errors import ValidationError
from ..logging_utils import get_logger
from ..repositories.debt_repo import DebtRepository

log = get_logger(__name__)


def format_vnd(amount: Decimal) -> str:
    return f"{int(amount):,}".replace(",", ".") + "đ"


def order_number(order_id: str) -> str:
    return order_id.rsplit("-", 1)[-1]


def debt_customer_id(order: WorkOrder) -> str:
    return order.customer_phone or f"CUST-ANON-{order.id}"


def build_debt_description(order: WorkOrder, *, staff_name: str | None = None) -> str:
    lines = [f"{order.vehicle_model or 'Xe'} (Phiếu sửa chữa #{order_number(order.id)})"]

    issue = strip_unlock_code(order.issue_description)
    if issue:
        lines.append(f"Vấn đề: {issue}")

    if order.parts_used:
        lines.append("")
        lines.append("Phụ tùng đã thay:")
        for p in order.parts_used:
            lines.append(f"  • {p.quantity} x {p.part_name} - {format_vnd(p.line_total)}")

    if order.additional_services:
        lines.append("")
        lines.append("Dịch vụ:")
        for s in order.additional_services:
            lines.append(f"  • {s.quantity} x {s.description} - {format_vnd(s.line_total)}")

    tail = []
    if order.labor_cost > 0:
        tail.append(f"Công lao động: {format_vnd(order.labor_cost)}")
    if order.discount > 0:
        tail.append(f"Giảm giá: -{format_vnd(order.discount)}")
    if tail:
        lines.append("")
        lines.extend(tail)

    lines.append("")
    lines.append(f"NV: {staff_name or 'N/A'}")
    if order.technician_name:
        lines.append(f"NV kỹ thuật: {order.technician_name}")
    return "\n".join(lines)


@dataclass(frozen=True)
class DebtRecord:
    debt_id: str
    created: bool
    remaining_amount: Decimal


class DebtService:
    """Customer debt keyed by work order; repeated calls refresh one row."""

    def __init__(self, *, debt_repo: DebtRepository) -> None:
        self.debt_repo = debt_repo

    def upsert_for_work_order(
        self,
        conn: Connection,
        *,
        work_order_id: str,
        branch_id: str,
        customer_id: str,
        customer_name: str,
        phone: str | None,
        license_plate: str | None,
        description: str,
        total_amount: Decimal,
        paid_amount: Decimal,
        remaining_amount: Decimal,
    ) -> DebtRecord:
        total_amount = to_money(total_amount, field_name="total_amount")
        paid_amount = to_money(paid_amount, field_name="paid_amount")
        remaining_amount = to_money(remaining_amount, field_name="remaining_amount")
        if remaining_amount <= 0:
            raise ValidationError("INVALID_PAYMENT_AMOUNT", {"remainingAmount": str(remaining_amount)})
        if paid_amount + remaining_amount > total_amount:
            raise ValidationError("INVALID_PAYMENT_AMOUNT", {"totalAmount": str(total_amount)})

        debt_id, created = self.debt_repo.upsert_for_work_order(
            conn,
            debt={
                "id": f"CDEBT-WO-{work_order_id}",
                "customer_id": customer_id,
                "customer_name": customer_name or phone or "Khách vãng lai",
                "phone": phone,
                "license_plate": license_plate,
                "description": description,
                "total_amount": total_amount,
                "paid_amount": paid_amount,
                "remaining_amount": remaining_amount,
                "branch_id": branch_id,
                "work_order_id": work_order_id,
            },
        )
        log.info("Debt %s %s for %s: %s", debt_id, "created" if created else "updated", work_order_id, remaining_amount)
        return DebtRecord(debt_id=debt_id, created=created, remaining_amount=remaining_amount)
