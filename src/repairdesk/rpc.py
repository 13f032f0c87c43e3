"""Named RPC operations over the work-order engine.

Every call runs in exactly one database transaction. Mutating calls may carry
an ``idempotency_key``: the first response is stored under that key in the
same transaction, and a repeated key returns it without applying anything.
"""
from __future__ import annotations

from typing import Any, Callable

import psycopg

from .codec import draft_from_params, jsonable, money_to_wire, stock_warning_to_wire, work_order_to_wire
from .config import BusinessConfig
from .db import DbError
from .domain import CallerContext
from .errors import EngineError, InfrastructureError, NotFoundError, OperationFailed
from .logging_utils import get_logger
from .repositories.cash_repo import CashTransactionRepository, PaymentSourceRepository
from .repositories.debt_repo import DebtRepository
from .repositories.idempotency_repo import IdempotencyRepository
from .repositories.inventory_repo import InventoryTransactionRepository
from .repositories.part_repo import PartRepository
from .repositories.work_order_repo import WorkOrderRepository
from .services.cash_ledger import CashLedger
from .services.debt_service import DebtService
from .services.rules import authorize
from .services.stock_ledger import StockLedger
from .services.work_order_engine import WorkOrderEngine

log = get_logger(__name__)

Handler = Callable[[Any, CallerContext, dict], dict]


class RpcDispatcher:
    def __init__(
        self,
        *,
        db,
        engine: WorkOrderEngine,
        debt_service: DebtService,
        idempotency_repo: IdempotencyRepository,
    ) -> None:
        self.db = db
        self.engine = engine
        self.debt_service = debt_service
        self.idempotency_repo = idempotency_repo
        self._handlers: dict[str, tuple[Handler, bool]] = {
            "work_order_create_atomic": (self._create, True),
            "work_order_update_atomic": (self._update, True),
            "work_order_complete_payment": (self._complete_payment, True),
            "work_order_refund_atomic": (self._refund, True),
            "work_order_delete": (self._delete, True),
            "work_order_get": (self._get, False),
            "work_order_list": (self._list, False),
            "customer_debt_upsert": (self._debt_upsert, True),
            "cash_order_expense": (self._order_expense, True),
        }

    @property
    def operations(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def call(self, name: str, params: dict | None, ctx: CallerContext) -> dict:
        entry = self._handlers.get(name)
        if entry is None:
            raise NotFoundError("UNKNOWN_OPERATION", {"operation": name})
        handler, mutating = entry
        params = params or {}
        key = str(params.get("idempotency_key") or "").strip() if mutating else ""

        try:
            with self.db.transaction() as conn:
                if key:
                    self.idempotency_repo.lock(conn, key)
                    stored = self.idempotency_repo.get(conn, key, name)
                    if stored is not None:
                        log.info("Replaying %s for idempotency key %s", name, key)
                        return stored
                result = handler(conn, ctx, params)
                if key:
                    self.idempotency_repo.save(conn, key, name, result)
                return result
        except EngineError as e:
            log.warning("%s rejected: %s %s", name, e.code, e.details)
            raise
        except (DbError, psycopg.OperationalError) as e:
            log.error("%s failed on database connection: %s", name, e)
            raise InfrastructureError("NETWORK_ERROR", cause=e) from e
        except Exception as e:
            log.exception("%s failed", name)
            raise OperationFailed("OPERATION_FAILED", cause=e) from e

    # --- handlers -----------------------------------------------------------

    def _create(self, conn, ctx: CallerContext, params: dict) -> dict:
        out = self.engine.create_atomic(conn, ctx, draft_from_params(params))
        return {
            "workOrder": work_order_to_wire(out.work_order),
            "orderId": out.work_order.id,
            "depositTransactionId": out.deposit_transaction_id,
            "paymentTransactionId": out.payment_transaction_id,
            "inventoryTxCount": out.inventory_tx_count,
            "stockWarnings": [stock_warning_to_wire(w) for w in out.stock_warnings],
            "inventoryDeducted": out.inventory_deducted,
        }

    def _update(self, conn, ctx: CallerContext, params: dict) -> dict:
        out = self.engine.update_atomic(conn, ctx, draft_from_params(params))
        return {
            "workOrder": work_order_to_wire(out.work_order),
            "depositTransactionId": out.deposit_transaction_id,
            "paymentTransactionId": out.payment_transaction_id,
            "inventoryTxCount": out.inventory_tx_count,
            "stockWarnings": [stock_warning_to_wire(w) for w in out.stock_warnings],
        }

    def _complete_payment(self, conn, ctx: CallerContext, params: dict) -> dict:
        out = self.engine.complete_payment(
            conn,
            ctx,
            order_id=str(params.get("order_id") or ""),
            payment_method=params.get("payment_method"),
            payment_amount=params.get("payment_amount"),
        )
        return {
            "workOrder": work_order_to_wire(out.work_order),
            "paymentTransactionId": out.payment_transaction_id,
            "newPaymentStatus": out.new_payment_status.value,
            "inventoryDeducted": out.inventory_deducted,
            "inventoryTxCount": out.inventory_tx_count,
            "stockWarnings": [stock_warning_to_wire(w) for w in out.stock_warnings],
        }

    def _refund(self, conn, ctx: CallerContext, params: dict) -> dict:
        out = self.engine.refund_atomic(
            conn,
            ctx,
            order_id=str(params.get("order_id") or ""),
            refund_reason=params.get("refund_reason"),
        )
        return {
            "workOrder": work_order_to_wire(out.work_order),
            "refund_transaction_id": out.refund_transaction_id,
            "refundAmount": money_to_wire(out.refund_amount),
        }

    def _delete(self, conn, ctx: CallerContext, params: dict) -> dict:
        order_id = str(params.get("order_id") or "")
        return {"orderId": order_id, "deleted": self.engine.delete(conn, ctx, order_id)}

    def _get(self, conn, ctx: CallerContext, params: dict) -> dict:
        order = self.engine.get(conn, ctx, str(params.get("order_id") or ""))
        return {"workOrder": work_order_to_wire(order)}

    def _list(self, conn, ctx: CallerContext, params: dict) -> dict:
        limit = int(params.get("limit") or 30)
        return {"workOrders": [work_order_to_wire(o) for o in self.engine.list(conn, ctx, limit=limit)]}

    def _debt_upsert(self, conn, ctx: CallerContext, params: dict) -> dict:
        authorize(ctx, "debt")
        order = self.engine.get(conn, ctx, str(params.get("work_order_id") or ""))
        record = self.debt_service.upsert_for_work_order(
            conn,
            work_order_id=order.id,
            branch_id=order.branch_id,
            customer_id=str(params.get("customer_id") or order.customer_phone or f"CUST-ANON-{order.id}"),
            customer_name=str(params.get("customer_name") or order.customer_name or ""),
            phone=params.get("phone") or order.customer_phone,
            license_plate=params.get("license_plate") or order.license_plate,
            description=str(params.get("description") or ""),
            total_amount=params.get("total_amount"),
            paid_amount=params.get("paid_amount"),
            remaining_amount=params.get("remaining_amount"),
        )
        return jsonable(
            {"debtId": record.debt_id, "created": record.created, "remainingAmount": record.remaining_amount}
        )

    def _order_expense(self, conn, ctx: CallerContext, params: dict) -> dict:
        tx_id, created = self.engine.record_order_expense(
            conn,
            ctx,
            order_id=str(params.get("order_id") or ""),
            category=str(params.get("category") or ""),
            amount=params.get("amount"),
            payment_source=params.get("payment_source"),
            description=str(params.get("description") or ""),
        )
        return {"transactionId": tx_id, "created": created}


def build_dispatcher(
    db,
    business: BusinessConfig,
    *,
    part_repo: PartRepository | None = None,
    order_repo: WorkOrderRepository | None = None,
    cash_repo: CashTransactionRepository | None = None,
    source_repo: PaymentSourceRepository | None = None,
    inventory_repo: InventoryTransactionRepository | None = None,
    debt_repo: DebtRepository | None = None,
    idempotency_repo: IdempotencyRepository | None = None,
) -> RpcDispatcher:
    stock = StockLedger(
        part_repo=part_repo or PartRepository(),
        inventory_repo=inventory_repo or InventoryTransactionRepository(),
        low_stock_threshold=business.low_stock_threshold,
    )
    cash = CashLedger(
        cash_repo=cash_repo or CashTransactionRepository(),
        source_repo=source_repo or PaymentSourceRepository(),
    )
    engine = WorkOrderEngine(
        order_repo=order_repo or WorkOrderRepository(),
        stock=stock,
        cash=cash,
        order_prefix=business.work_order_prefix,
        default_payment_method=business.default_payment_method,
    )
    return RpcDispatcher(
        db=db,
        engine=engine,
        debt_service=DebtService(debt_repo=debt_repo or DebtRepository()),
        idempotency_repo=idempotency_repo or IdempotencyRepository(),
    )
