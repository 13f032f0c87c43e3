from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

import requests

from .codec import money_to_wire, params_from_order, stock_warning_from_wire, work_order_from_wire
from .domain import CallerContext, PaymentStatus, StockWarning, WorkOrder, to_money
from .errors import InfrastructureError, OperationFailed, from_payload
from .logging_utils import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT = 15.0


@dataclass(frozen=True)
class FullOrder:
    work_order: WorkOrder

    @property
    def order_id(self) -> str:
        return self.work_order.id


@dataclass(frozen=True)
class OrderReference:
    order_id: str


CreatedOrder = Union[FullOrder, OrderReference]


@dataclass
class CreateResult:
    order: CreatedOrder
    deposit_transaction_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    inventory_tx_count: int = 0
    stock_warnings: list[StockWarning] = field(default_factory=list)
    inventory_deducted: bool = False


@dataclass
class UpdateResult:
    work_order: WorkOrder
    deposit_transaction_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    inventory_tx_count: int = 0
    stock_warnings: list[StockWarning] = field(default_factory=list)


@dataclass
class PaymentResult:
    work_order: WorkOrder
    payment_transaction_id: Optional[str]
    new_payment_status: PaymentStatus
    inventory_deducted: bool
    inventory_tx_count: int = 0


@dataclass
class RefundResult:
    work_order: WorkOrder
    refund_transaction_id: Optional[str]
    refund_amount: Decimal


class WorkOrderClient:
    """Calls the RPC operations of a RepairDesk server over HTTP."""

    def __init__(
        self,
        base_url: str,
        caller: CallerContext,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.caller = caller
        self.session = session or requests.Session()
        self.timeout = timeout

    def call(self, operation: str, **params) -> dict:
        headers = {
            "X-Caller-Id": self.caller.caller_id,
            "X-Branch-Id": self.caller.branch_id,
            "X-Role": self.caller.role,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/rpc/{operation}",
                json=params,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            log.warning("%s: no response from %s: %s", operation, self.base_url, e)
            raise InfrastructureError("NETWORK_ERROR", {"operation": operation}, cause=e) from e

        try:
            body = resp.json()
        except ValueError as e:
            raise OperationFailed("OPERATION_FAILED", {"status": resp.status_code}, cause=e) from e

        if resp.status_code >= 400:
            raise from_payload(body if isinstance(body, dict) else {})
        if not isinstance(body, dict):
            raise OperationFailed("OPERATION_FAILED", {"status": resp.status_code})
        return body

    # --- operations ---------------------------------------------------------

    def create(self, order: WorkOrder, *, idempotency_key: str | None = None) -> CreateResult:
        body = self.call("work_order_create_atomic", **params_from_order(order), idempotency_key=idempotency_key)
        if body.get("workOrder"):
            created: CreatedOrder = FullOrder(work_order_from_wire(body["workOrder"]))
        elif body.get("orderId"):
            created = OrderReference(str(body["orderId"]))
        else:
            raise OperationFailed("OPERATION_FAILED", {"reason": "create returned neither workOrder nor orderId"})
        return CreateResult(
            order=created,
            deposit_transaction_id=body.get("depositTransactionId"),
            payment_transaction_id=body.get("paymentTransactionId"),
            inventory_tx_count=int(body.get("inventoryTxCount") or 0),
            stock_warnings=[stock_warning_from_wire(w) for w in body.get("stockWarnings") or []],
            inventory_deducted=bool(body.get("inventoryDeducted")),
        )

    def resolve(self, created: CreatedOrder) -> WorkOrder:
        if isinstance(created, FullOrder):
            return created.work_order
        return self.get(created.order_id)

    def update(self, order: WorkOrder, *, idempotency_key: str | None = None) -> UpdateResult:
        body = self.call("work_order_update_atomic", **params_from_order(order), idempotency_key=idempotency_key)
        return UpdateResult(
            work_order=work_order_from_wire(body["workOrder"]),
            deposit_transaction_id=body.get("depositTransactionId"),
            payment_transaction_id=body.get("paymentTransactionId"),
            inventory_tx_count=int(body.get("inventoryTxCount") or 0),
            stock_warnings=[stock_warning_from_wire(w) for w in body.get("stockWarnings") or []],
        )

    def complete_payment(
        self,
        order_id: str,
        *,
        payment_method: str,
        payment_amount: Decimal | int,
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        body = self.call(
            "work_order_complete_payment",
            order_id=order_id,
            payment_method=payment_method,
            payment_amount=money_to_wire(to_money(payment_amount)),
            idempotency_key=idempotency_key,
        )
        return PaymentResult(
            work_order=work_order_from_wire(body["workOrder"]),
            payment_transaction_id=body.get("paymentTransactionId"),
            new_payment_status=PaymentStatus.parse(body.get("newPaymentStatus")),
            inventory_deducted=bool(body.get("inventoryDeducted")),
            inventory_tx_count=int(body.get("inventoryTxCount") or 0),
        )

    def refund(self, order_id: str, reason: str, *, idempotency_key: str | None = None) -> RefundResult:
        body = self.call(
            "work_order_refund_atomic",
            order_id=order_id,
            refund_reason=reason,
            user_id=self.caller.caller_id,
            idempotency_key=idempotency_key,
        )
        return RefundResult(
            work_order=work_order_from_wire(body["workOrder"]),
            refund_transaction_id=body.get("refund_transaction_id"),
            refund_amount=to_money(body.get("refundAmount")),
        )

    def get(self, order_id: str) -> WorkOrder:
        return work_order_from_wire(self.call("work_order_get", order_id=order_id)["workOrder"])

    def delete(self, order_id: str) -> bool:
        return bool(self.call("work_order_delete", order_id=order_id).get("deleted"))

    def record_debt(self, **debt) -> dict:
        return self.call("customer_debt_upsert", **debt)

    def record_order_expense(
        self,
        order_id: str,
        *,
        category: str,
        amount: Decimal,
        description: str = "",
        payment_source: str = "cash",
    ) -> tuple[str, bool]:
        body = self.call(
            "cash_order_expense",
            order_id=order_id,
            category=category,
            amount=money_to_wire(amount),
            description=description,
            payment_source=payment_source,
        )
        return str(body["transactionId"]), bool(body.get("created"))
