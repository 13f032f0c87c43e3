"""Normalization boundary between storage rows, RPC payloads and entities.

Storage columns are flattened and lower-cased (``customername``), the RPC wire
uses camelCase keys (``customerName``) and named snake_case parameters
(``customer_name``). All mapping lives here, one function per direction.
"""
from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any

from .domain import (
    PartLine,
    PaymentStatus,
    ServiceLine,
    StockWarning,
    WorkOrder,
    WorkOrderDraft,
    WorkOrderStatus,
    to_money,
)
from .errors import ValidationError

# (entity attribute, storage column, wire key)
WORK_ORDER_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("id", "id", "id"),
    ("creation_date", "creationdate", "creationDate"),
    ("branch_id", "branchid", "branchId"),
    ("customer_name", "customername", "customerName"),
    ("customer_phone", "customerphone", "customerPhone"),
    ("vehicle_id", "vehicleid", "vehicleId"),
    ("vehicle_model", "vehiclemodel", "vehicleModel"),
    ("license_plate", "licenseplate", "licensePlate"),
    ("issue_description", "issuedescription", "issueDescription"),
    ("technician_name", "technicianname", "technicianName"),
    ("notes", "notes", "notes"),
    ("status", "status", "status"),
    ("labor_cost", "laborcost", "laborCost"),
    ("discount", "discount", "discount"),
    ("parts_used", "partsused", "partsUsed"),
    ("additional_services", "additionalservices", "additionalServices"),
    ("total", "total", "total"),
    ("payment_status", "paymentstatus", "paymentStatus"),
    ("payment_method", "paymentmethod", "paymentMethod"),
    ("deposit_amount", "depositamount", "depositAmount"),
    ("deposit_date", "depositdate", "depositDate"),
    ("deposit_transaction_id", "deposittransactionid", "depositTransactionId"),
    ("additional_payment", "additionalpayment", "additionalPayment"),
    ("total_paid", "totalpaid", "totalPaid"),
    ("remaining_amount", "remainingamount", "remainingAmount"),
    ("payment_date", "paymentdate", "paymentDate"),
    ("cash_transaction_id", "cashtransactionid", "cashTransactionId"),
    ("inventory_deducted", "inventory_deducted", "inventoryDeducted"),
    ("refunded", "refunded", "refunded"),
    ("refunded_at", "refunded_at", "refunded_at"),
    ("refund_transaction_id", "refund_transaction_id", "refund_transaction_id"),
    ("refund_reason", "refund_reason", "refund_reason"),
)

STORAGE_COLUMNS = tuple(col for _, col, _ in WORK_ORDER_FIELDS)

_MONEY_ATTRS = {
    "labor_cost",
    "discount",
    "total",
    "deposit_amount",
    "additional_payment",
    "total_paid",
    "remaining_amount",
}
_DATE_ATTRS = {"creation_date", "deposit_date", "payment_date", "refunded_at"}


def money_to_wire(value: Decimal | None) -> int | float | None:
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _date_to_wire(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _date_from_any(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _int_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("INVALID_PART", {"quantity": value})
    try:
        qty = Decimal(str(value))
    except Exception:
        raise ValidationError("INVALID_PART", {"quantity": value}) from None
    if not qty.is_finite() or qty != qty.to_integral_value() or qty <= 0:
        raise ValidationError("INVALID_PART", {"quantity": value})
    return int(qty)


def _optional_money(value: Any, field_name: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return to_money(value, field_name=field_name)


# --- line items -------------------------------------------------------------


def part_from_wire(obj: Any) -> PartLine:
    if not isinstance(obj, dict):
        raise ValidationError("INVALID_PART", {"part": obj})
    part_id = str(obj.get("partId") or obj.get("part_id") or "").strip()
    if not part_id:
        raise ValidationError("INVALID_PART", {"part": obj})
    price = to_money(obj.get("price"), field_name="price", code="INVALID_PART")
    cost_price = obj.get("costPrice", obj.get("cost_price"))
    cost = None if cost_price in (None, "") else to_money(cost_price, field_name="costPrice", code="INVALID_PART")
    return PartLine(
        part_id=part_id,
        part_name=str(obj.get("partName") or obj.get("part_name") or "").strip(),
        quantity=_int_quantity(obj.get("quantity")),
        price=price,
        cost_price=cost,
        sku=str(obj.get("sku") or ""),
        category=obj.get("category"),
    )


def part_to_wire(p: PartLine) -> dict:
    return {
        "partId": p.part_id,
        "partName": p.part_name,
        "sku": p.sku,
        "category": p.category,
        "quantity": p.quantity,
        "price": money_to_wire(p.price),
        "costPrice": money_to_wire(p.cost_price),
    }


def service_from_wire(obj: Any, index: int = 0) -> ServiceLine:
    if not isinstance(obj, dict):
        raise ValidationError("INVALID_INPUT", {"service": obj})
    description = str(obj.get("description") or "").strip()
    if not description:
        raise ValidationError("INVALID_INPUT", {"service": obj})
    try:
        quantity = _int_quantity(obj.get("quantity", 1))
    except ValidationError:
        raise ValidationError("INVALID_INPUT", {"service": obj}) from None
    cost_price = obj.get("costPrice", obj.get("cost_price"))
    return ServiceLine(
        id=str(obj.get("id") or f"SV-{index + 1}"),
        description=description,
        quantity=quantity,
        # negative prices are pass-through adjustments
        price=to_money(obj.get("price"), field_name="price", allow_negative=True),
        cost_price=None if cost_price in (None, "") else to_money(cost_price, field_name="costPrice"),
    )


def service_to_wire(s: ServiceLine) -> dict:
    return {
        "id": s.id,
        "description": s.description,
        "quantity": s.quantity,
        "price": money_to_wire(s.price),
        "costPrice": money_to_wire(s.cost_price),
    }


def _json_list(value: str, code: str, key: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        raise ValidationError(code, {key: value}) from None


def _parts_from_any(value: Any) -> tuple[PartLine, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        value = _json_list(value, "INVALID_PART", "partsUsed")
    if not isinstance(value, list):
        raise ValidationError("INVALID_PART", {"partsUsed": value})
    return tuple(part_from_wire(p) for p in value)


def _services_from_any(value: Any) -> tuple[ServiceLine, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        value = _json_list(value, "INVALID_INPUT", "additionalServices")
    if not isinstance(value, list):
        raise ValidationError("INVALID_INPUT", {"additionalServices": value})
    return tuple(service_from_wire(s, i) for i, s in enumerate(value))


# --- work order: storage ----------------------------------------------------


def _from_flat(values: dict[str, Any]) -> WorkOrder:
    kwargs: dict[str, Any] = {}
    for attr, value in values.items():
        if attr in _MONEY_ATTRS:
            kwargs[attr] = to_money(value, field_name=attr, allow_negative=True)
        elif attr in _DATE_ATTRS:
            kwargs[attr] = _date_from_any(value)
        elif attr == "parts_used":
            kwargs[attr] = _parts_from_any(value)
        elif attr == "additional_services":
            kwargs[attr] = _services_from_any(value)
        elif attr == "status":
            kwargs[attr] = WorkOrderStatus.parse(value)
        elif attr == "payment_status":
            kwargs[attr] = PaymentStatus.parse(value or PaymentStatus.UNPAID.value)
        elif attr in ("inventory_deducted", "refunded"):
            kwargs[attr] = bool(value)
        else:
            kwargs[attr] = value
    return WorkOrder(**kwargs)


def work_order_from_row(row: dict) -> WorkOrder:
    return _from_flat({attr: row.get(col) for attr, col, _ in WORK_ORDER_FIELDS if col in row})


def work_order_to_row(order: WorkOrder) -> dict:
    row: dict[str, Any] = {}
    for attr, col, _ in WORK_ORDER_FIELDS:
        value = getattr(order, attr)
        if attr == "parts_used":
            value = [part_to_wire(p) for p in value]
        elif attr == "additional_services":
            value = [service_to_wire(s) for s in value]
        elif attr in ("status", "payment_status"):
            value = value.value
        row[col] = value
    return row


# --- work order: wire -------------------------------------------------------


def work_order_to_wire(order: WorkOrder) -> dict:
    out: dict[str, Any] = {}
    for attr, _, key in WORK_ORDER_FIELDS:
        value = getattr(order, attr)
        if attr in _MONEY_ATTRS:
            value = money_to_wire(value)
        elif attr in _DATE_ATTRS:
            value = _date_to_wire(value)
        elif attr == "parts_used":
            value = [part_to_wire(p) for p in value]
        elif attr == "additional_services":
            value = [service_to_wire(s) for s in value]
        elif attr in ("status", "payment_status"):
            value = value.value
        out[key] = value
    return out


def work_order_from_wire(data: dict) -> WorkOrder:
    return _from_flat({attr: data.get(key) for attr, _, key in WORK_ORDER_FIELDS if key in data})


def stock_warning_to_wire(w: StockWarning) -> dict:
    return {
        "partId": w.part_id,
        "partName": w.part_name,
        "available": w.available,
        "requested": w.requested,
        "kind": w.kind,
    }


def stock_warning_from_wire(data: dict) -> StockWarning:
    return StockWarning(
        part_id=str(data.get("partId")),
        part_name=str(data.get("partName") or ""),
        available=int(data.get("available") or 0),
        requested=int(data.get("requested") or 0),
        kind=str(data.get("kind") or "low_stock"),
    )


# --- RPC named parameters ---------------------------------------------------


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def draft_from_params(params: dict) -> WorkOrderDraft:
    """Parse the named parameters of the create/update operations."""
    services = params.get("additional_services")
    discount_percent = params.get("discount_percent")
    return WorkOrderDraft(
        order_id=_text(params.get("order_id")),
        branch_id=_text(params.get("branch_id")),
        customer_name=str(params.get("customer_name") or "").strip(),
        customer_phone=_text(params.get("customer_phone")),
        vehicle_id=_text(params.get("vehicle_id")),
        vehicle_model=_text(params.get("vehicle_model")),
        license_plate=_text(params.get("license_plate")),
        issue_description=_text(params.get("issue_description")),
        technician_name=_text(params.get("technician_name")),
        notes=_text(params.get("notes")),
        status=params.get("status") or WorkOrderStatus.INTAKE.value,
        labor_cost=to_money(params.get("labor_cost"), field_name="labor_cost"),
        discount=to_money(params.get("discount"), field_name="discount"),
        discount_percent=None if discount_percent in (None, "") else to_money(discount_percent, field_name="discount_percent"),
        parts_used=list(_parts_from_any(params.get("parts_used"))),
        additional_services=None if services is None else list(_services_from_any(services)),
        total=_optional_money(params.get("total"), "total"),
        payment_status=params.get("payment_status") or PaymentStatus.UNPAID.value,
        payment_method=params.get("payment_method"),
        deposit_amount=to_money(params.get("deposit_amount"), field_name="deposit_amount", code="INVALID_PAYMENT_AMOUNT"),
        additional_payment=to_money(
            params.get("additional_payment"), field_name="additional_payment", code="INVALID_PAYMENT_AMOUNT"
        ),
        present=frozenset(params),
    )


def params_from_order(order: WorkOrder, *, include_services: bool = True) -> dict:
    """Named parameters for create/update built from a (draft) entity."""
    return {
        "order_id": order.id or None,
        "branch_id": order.branch_id,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "vehicle_id": order.vehicle_id,
        "vehicle_model": order.vehicle_model,
        "license_plate": order.license_plate,
        "issue_description": order.issue_description,
        "technician_name": order.technician_name,
        "notes": order.notes,
        "status": order.status.value,
        "labor_cost": money_to_wire(order.labor_cost),
        "discount": money_to_wire(order.discount),
        "parts_used": [part_to_wire(p) for p in order.parts_used],
        "additional_services": [service_to_wire(s) for s in order.additional_services] if include_services else None,
        "total": money_to_wire(order.total),
        "payment_status": order.payment_status.value,
        "payment_method": order.payment_method,
        "deposit_amount": money_to_wire(order.deposit_amount),
        "additional_payment": money_to_wire(order.additional_payment),
    }


def jsonable(value: Any) -> Any:
    """Turn dataclasses / Decimals / datetimes into JSON-safe values."""
    if isinstance(value, Decimal):
        return money_to_wire(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if hasattr(value, "__dataclass_fields__"):
        return jsonable(asdict(value))
    return value

