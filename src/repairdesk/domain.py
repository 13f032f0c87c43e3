from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from .errors import ValidationError

ZERO = Decimal("0")


class WorkOrderStatus(str, Enum):
    INTAKE = "Tiếp nhận"
    IN_REPAIR = "Đang sửa"
    COMPLETED = "Đã sửa xong"
    HANDED_OFF = "Trả máy"

    @classmethod
    def parse(cls, value: Any) -> "WorkOrderStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise ValidationError("INVALID_STATUS", {"status": value})


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"

    @classmethod
    def parse(cls, value: Any) -> "PaymentStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValidationError("INVALID_PAYMENT_STATUS", {"paymentStatus": value}) from None


PAYMENT_METHODS = ("cash", "bank")

ROLES = ("owner", "manager", "staff")


def parse_payment_method(value: Any, default: str | None = None) -> str | None:
    if value is None or str(value).strip() == "":
        return default
    method = str(value).strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError("INVALID_PAYMENT_METHOD", {"paymentMethod": value})
    return method


def to_money(
    value: Any,
    *,
    field_name: str = "amount",
    allow_negative: bool = False,
    code: str = "INVALID_INPUT",
) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(code, {field_name: value})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(code, {field_name: value}) from None
    if not amount.is_finite() or (amount < 0 and not allow_negative):
        raise ValidationError(code, {field_name: value})
    return amount


@dataclass(frozen=True)
class CallerContext:
    """Who is calling and on behalf of which branch."""

    caller_id: str
    branch_id: str
    role: str


@dataclass(frozen=True)
class PartLine:
    part_id: str
    part_name: str
    quantity: int
    price: Decimal
    cost_price: Optional[Decimal] = None
    sku: str = ""
    category: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class ServiceLine:
    id: str
    description: str
    quantity: int
    price: Decimal
    cost_price: Optional[Decimal] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class WorkOrder:
    id: str
    branch_id: str
    customer_name: str = ""
    customer_phone: Optional[str] = None
    vehicle_id: Optional[str] = None
    vehicle_model: Optional[str] = None
    license_plate: Optional[str] = None
    issue_description: Optional[str] = None
    technician_name: Optional[str] = None
    notes: Optional[str] = None
    status: WorkOrderStatus = WorkOrderStatus.INTAKE
    labor_cost: Decimal = ZERO
    discount: Decimal = ZERO
    parts_used: tuple[PartLine, ...] = ()
    additional_services: tuple[ServiceLine, ...] = ()
    total: Decimal = ZERO
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_method: Optional[str] = None
    deposit_amount: Decimal = ZERO
    deposit_date: Optional[datetime] = None
    deposit_transaction_id: Optional[str] = None
    additional_payment: Decimal = ZERO
    total_paid: Decimal = ZERO
    remaining_amount: Decimal = ZERO
    payment_date: Optional[datetime] = None
    cash_transaction_id: Optional[str] = None
    inventory_deducted: bool = False
    refunded: bool = False
    refunded_at: Optional[datetime] = None
    refund_transaction_id: Optional[str] = None
    refund_reason: Optional[str] = None
    creation_date: Optional[datetime] = None

    @property
    def is_settled_and_closed(self) -> bool:
        return self.payment_status == PaymentStatus.PAID and self.status == WorkOrderStatus.HANDED_OFF


@dataclass
class WorkOrderDraft:
    """Caller input for create/update before the engine validates it."""

    order_id: Optional[str] = None
    branch_id: Optional[str] = None
    customer_name: str = ""
    customer_phone: Optional[str] = None
    vehicle_id: Optional[str] = None
    vehicle_model: Optional[str] = None
    license_plate: Optional[str] = None
    issue_description: Optional[str] = None
    technician_name: Optional[str] = None
    notes: Optional[str] = None
    status: Any = WorkOrderStatus.INTAKE.value
    labor_cost: Decimal = ZERO
    discount: Decimal = ZERO
    discount_percent: Optional[Decimal] = None
    parts_used: list[PartLine] = field(default_factory=list)
    # None means "leave stored services unchanged" on update
    additional_services: Optional[list[ServiceLine]] = None
    total: Optional[Decimal] = None
    payment_status: Any = PaymentStatus.UNPAID.value
    payment_method: Any = None
    deposit_amount: Decimal = ZERO
    additional_payment: Decimal = ZERO
    # parameter names the caller sent; None means every field was given
    present: Optional[frozenset] = None


@dataclass(frozen=True)
class CashTransaction:
    id: str
    type: str  # income | expense
    category: str
    amount: Decimal
    branch_id: str
    payment_source: str
    reference: Optional[str]
    description: str = ""
    created_by: Optional[str] = None
    date: Optional[datetime] = None


@dataclass(frozen=True)
class StockWarning:
    part_id: str
    part_name: str
    available: int
    kind: str = "low_stock"  # low_stock | deferred_shortage
    requested: int = 0


@dataclass(frozen=True)
class InsufficientStockItem:
    part_id: str
    part_name: str
    available: int
    requested: int

    def as_detail(self) -> dict:
        return {
            "partId": self.part_id,
            "partName": self.part_name,
            "available": self.available,
            "requested": self.requested,
        }


@dataclass(frozen=True)
class PaymentState:
    total_paid: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus


def discount_from_percent(subtotal: Decimal, percent: Decimal) -> Decimal:
    if percent < 0 or percent > 100:
        raise ValidationError("INVALID_INPUT", {"discountPercent": str(percent)})
    return (subtotal * percent / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def compute_subtotal(labor_cost: Decimal, parts: tuple | list, services: tuple | list) -> Decimal:
    return (
        labor_cost
        + sum((p.line_total for p in parts), ZERO)
        + sum((s.line_total for s in services), ZERO)
    )


def compute_total(labor_cost: Decimal, parts: tuple | list, services: tuple | list, discount: Decimal) -> Decimal:
    return max(ZERO, compute_subtotal(labor_cost, parts, services) - discount)


def compute_payment_state(total: Decimal, deposit_amount: Decimal, additional_payment: Decimal) -> PaymentState:
    total_paid = deposit_amount + additional_payment
    remaining = max(ZERO, total - total_paid)
    if total > 0 and total_paid >= total:
        status = PaymentStatus.PAID
    elif total_paid <= 0:
        status = PaymentStatus.UNPAID
    else:
        status = PaymentStatus.PARTIAL
    return PaymentState(total_paid=total_paid, remaining_amount=remaining, payment_status=status)


# Unlock codes are written into the issue text as "[MK: 1234]".
_UNLOCK_CODE = re.compile(r"\[\s*MK\s*:\s*([^\]]*)\]", re.IGNORECASE)


def extract_unlock_code(text: str | None) -> str | None:
    if not text:
        return None
    m = _UNLOCK_CODE.search(text)
    if not m:
        return None
    return m.group(1).strip() or None


def strip_unlock_code(text: str | None) -> str:
    if not text:
        return ""
    return re.sub(r"\s{2,}", " ", _UNLOCK_CODE.sub("", text)).strip()


def with_unlock_code(text: str | None, code: str | None) -> str:
    base = strip_unlock_code(text)
    if not code:
        return base
    return f"{base} [MK: {code}]".strip()


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12].upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
