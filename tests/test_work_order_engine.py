from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from repairdesk.codec import params_from_order, work_order_from_wire
from repairdesk.domain import CallerContext
from repairdesk.errors import AuthorizationError, InsufficientStockError, NotFoundError, ValidationError
from repairdesk.services.cash_ledger import SERVICE_DEPOSIT, SERVICE_INCOME, SERVICE_REFUND
from repairdesk.services.stock_ledger import ISSUE, RECEIPT


def _create(dispatcher, ctx, params) -> dict:
    return dispatcher.call("work_order_create_atomic", params, ctx)


def _update_params(wire: dict, **changes) -> dict:
    order = replace(work_order_from_wire(wire), **changes)
    return params_from_order(order)


# =============================================================================
# Create / pay / refund lifecycle
# =============================================================================


class TestLifecycle:

    def test_create_deducts_stock(self, dispatcher, owner, store, order_params):
        result = _create(dispatcher, owner, order_params())

        wo = result["workOrder"]
        assert result["orderId"] == "SC-CN1-000001"
        assert wo["id"] == "SC-CN1-000001"
        assert wo["total"] == 130000
        assert wo["paymentStatus"] == "unpaid"
        assert wo["remainingAmount"] == 130000
        assert wo["inventoryDeducted"] is True
        assert result["inventoryTxCount"] == 1
        assert store.stock[("P1", "CN1")] == 3
        assert [r["type"] for r in store.inventory] == [ISSUE]
        assert store.cash == []

    def test_complete_payment_marks_paid(self, dispatcher, owner, store, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]

        result = dispatcher.call(
            "work_order_complete_payment",
            {"order_id": order_id, "payment_method": "cash", "payment_amount": 130000},
            owner,
        )

        assert result["newPaymentStatus"] == "paid"
        assert result["workOrder"]["totalPaid"] == 130000
        assert result["workOrder"]["remainingAmount"] == 0
        income = store.cash_rows(reference=order_id)
        assert len(income) == 1
        assert income[0]["type"] == "income"
        assert income[0]["category"] == SERVICE_INCOME
        assert income[0]["amount"] == Decimal("130000")
        assert store.balances[("cash", "CN1")] == Decimal("130000")
        assert store.stock[("P1", "CN1")] == 3

    def test_refund_restores_stock_and_books_expense(self, dispatcher, owner, store, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]
        dispatcher.call(
            "work_order_complete_payment",
            {"order_id": order_id, "payment_method": "cash", "payment_amount": 130000},
            owner,
        )

        result = dispatcher.call(
            "work_order_refund_atomic", {"order_id": order_id, "refund_reason": "Khách đổi ý"}, owner
        )

        assert result["refundAmount"] == 130000
        assert result["workOrder"]["refunded"] is True
        assert result["workOrder"]["refund_reason"] == "Khách đổi ý"
        assert store.stock[("P1", "CN1")] == 5
        refunds = store.cash_rows(reference=order_id, category=SERVICE_REFUND)
        assert len(refunds) == 1
        assert refunds[0]["type"] == "expense"
        assert refunds[0]["amount"] == Decimal("130000")
        assert refunds[0]["id"] == result["refund_transaction_id"]
        assert store.balances[("cash", "CN1")] == Decimal("0")
        assert [r["type"] for r in store.inventory] == [ISSUE, RECEIPT]

    def test_insufficient_stock_changes_nothing(self, dispatcher, owner, store, db, order_params):
        params = order_params(
            parts_used=[{"partId": "P1", "partName": "Lọc gió", "quantity": 10, "price": 50000}],
            deposit_amount=0,
        )

        with pytest.raises(InsufficientStockError) as exc:
            _create(dispatcher, owner, params)

        assert exc.value.code == "INSUFFICIENT_STOCK"
        assert exc.value.details == [{"partId": "P1", "partName": "Lọc gió", "available": 5, "requested": 10}]
        assert "còn 5, cần 10" in exc.value.message
        assert store.work_orders == {}
        assert store.stock[("P1", "CN1")] == 5
        assert store.inventory == []
        assert store.cash == []
        assert db.rollbacks == 1

    def test_all_shortages_reported_together(self, dispatcher, owner, order_params):
        params = order_params(
            parts_used=[
                {"partId": "P1", "partName": "Lọc gió", "quantity": 6, "price": 50000},
                {"partId": "P2", "partName": "Bugi", "quantity": 4, "price": 20000},
            ]
        )
        with pytest.raises(InsufficientStockError) as exc:
            _create(dispatcher, owner, params)
        assert [d["partId"] for d in exc.value.details] == ["P1", "P2"]

    def test_unknown_part(self, dispatcher, owner, order_params):
        params = order_params(parts_used=[{"partId": "NOPE", "partName": "?", "quantity": 1, "price": 1}])
        with pytest.raises(NotFoundError) as exc:
            _create(dispatcher, owner, params)
        assert exc.value.code == "PART_NOT_FOUND"

    def test_low_stock_warning(self, dispatcher, owner, order_params):
        params = order_params(parts_used=[{"partId": "P2", "partName": "Bugi", "quantity": 2, "price": 20000}])
        result = _create(dispatcher, owner, params)
        assert result["stockWarnings"] == [
            {"partId": "P2", "partName": "Bugi", "available": 1, "requested": 0, "kind": "low_stock"}
        ]

    def test_server_recomputes_total(self, dispatcher, owner, order_params):
        result = _create(dispatcher, owner, order_params(total=1, discount_percent=10))
        assert result["workOrder"]["discount"] == 13000
        assert result["workOrder"]["total"] == 117000

    def test_caller_supplied_id_must_be_new(self, dispatcher, owner, order_params):
        _create(dispatcher, owner, order_params(order_id="SC-CN1-999999", parts_used=[]))
        with pytest.raises(ValidationError) as exc:
            _create(dispatcher, owner, order_params(order_id="SC-CN1-999999", parts_used=[]))
        assert exc.value.code == "ORDER_EXISTS"


# =============================================================================
# Payments
# =============================================================================


class TestPayments:

    def test_deposit_defers_stock_until_paid(self, dispatcher, owner, store, order_params):
        result = _create(dispatcher, owner, order_params(deposit_amount=50000, payment_method="bank"))
        order_id = result["orderId"]

        assert result["inventoryDeducted"] is False
        assert result["depositTransactionId"] is not None
        assert result["workOrder"]["paymentStatus"] == "partial"
        assert store.stock[("P1", "CN1")] == 5
        deposits = store.cash_rows(reference=order_id, category=SERVICE_DEPOSIT)
        assert [d["amount"] for d in deposits] == [Decimal("50000")]
        assert deposits[0]["paymentsource"] == "bank"

        paid = dispatcher.call(
            "work_order_complete_payment", {"order_id": order_id, "payment_amount": 80000}, owner
        )

        assert paid["newPaymentStatus"] == "paid"
        assert paid["inventoryDeducted"] is True
        assert paid["inventoryTxCount"] == 1
        assert store.stock[("P1", "CN1")] == 3
        assert store.balances[("bank", "CN1")] == Decimal("130000")

    def test_refund_of_deferred_order_leaves_stock(self, dispatcher, owner, store, order_params):
        order_id = _create(dispatcher, owner, order_params(deposit_amount=50000))["orderId"]

        result = dispatcher.call("work_order_refund_atomic", {"order_id": order_id}, owner)

        assert result["refundAmount"] == 50000
        assert store.stock[("P1", "CN1")] == 5
        assert store.inventory == []

    def test_refund_of_unpaid_order_writes_no_cash(self, dispatcher, owner, store, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]
        result = dispatcher.call("work_order_refund_atomic", {"order_id": order_id}, owner)
        assert result["refundAmount"] == 0
        assert result["refund_transaction_id"] is None
        assert store.cash == []
        assert store.stock[("P1", "CN1")] == 5

    def test_overpayment_rejected(self, dispatcher, owner, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_complete_payment", {"order_id": order_id, "payment_amount": 130001}, owner)
        assert exc.value.code == "INVALID_PAYMENT_AMOUNT"

    def test_settlement_only_on_handoff(self, dispatcher, owner, order_params):
        with pytest.raises(ValidationError) as exc:
            _create(dispatcher, owner, order_params(additional_payment=10000))
        assert exc.value.code == "SETTLEMENT_NOT_ALLOWED"

    def test_repeated_additional_payment_is_booked_once(self, dispatcher, owner, store, order_params):
        created = _create(dispatcher, owner, order_params(status="Trả máy", parts_used=[], labor_cost=100000))
        order_id = created["orderId"]

        params = _update_params(created["workOrder"], additional_payment=Decimal("40000"))
        first = dispatcher.call("work_order_update_atomic", params, owner)
        second = dispatcher.call("work_order_update_atomic", params, owner)

        assert first["paymentTransactionId"] is not None
        assert second["paymentTransactionId"] is None
        assert second["workOrder"]["totalPaid"] == 40000
        assert second["workOrder"]["paymentStatus"] == "partial"
        assert len(store.cash_rows(reference=order_id, category=SERVICE_INCOME)) == 1

    def test_payment_fields_cannot_decrease(self, dispatcher, owner, order_params):
        created = _create(dispatcher, owner, order_params(deposit_amount=50000))
        params = _update_params(created["workOrder"], deposit_amount=Decimal("20000"))
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_update_atomic", params, owner)
        assert exc.value.code == "INVALID_PAYMENT_AMOUNT"


# =============================================================================
# Updates
# =============================================================================


class TestUpdates:

    def test_parts_change_moves_only_the_difference(self, dispatcher, owner, store, order_params):
        created = _create(dispatcher, owner, order_params())
        assert store.stock[("P1", "CN1")] == 3

        params = params_from_order(work_order_from_wire(created["workOrder"]))
        params["parts_used"] = [
            {"partId": "P1", "partName": "Lọc gió", "quantity": 3, "price": 50000},
            {"partId": "P2", "partName": "Bugi", "quantity": 1, "price": 20000},
        ]
        result = dispatcher.call("work_order_update_atomic", params, owner)

        assert result["inventoryTxCount"] == 2
        assert result["workOrder"]["total"] == 200000
        assert store.stock[("P1", "CN1")] == 2
        assert store.stock[("P2", "CN1")] == 2
        assert {w["partId"] for w in result["stockWarnings"]} == {"P1", "P2"}

        params["parts_used"] = [{"partId": "P1", "partName": "Lọc gió", "quantity": 1, "price": 50000}]
        dispatcher.call("work_order_update_atomic", params, owner)

        assert store.stock[("P1", "CN1")] == 4
        assert store.stock[("P2", "CN1")] == 3

    def test_handoff_triggers_deferred_deduction(self, dispatcher, owner, store, order_params):
        created = _create(dispatcher, owner, order_params(deposit_amount=50000))
        assert store.stock[("P1", "CN1")] == 5

        params = _update_params(created["workOrder"])
        params["status"] = "Trả máy"
        result = dispatcher.call("work_order_update_atomic", params, owner)

        assert result["workOrder"]["inventoryDeducted"] is True
        assert result["workOrder"]["status"] == "Trả máy"
        assert store.stock[("P1", "CN1")] == 3

    def test_omitted_services_are_kept(self, dispatcher, owner, order_params):
        services = [{"description": "Rửa xe", "quantity": 1, "price": 20000}]
        created = _create(dispatcher, owner, order_params(additional_services=services, parts_used=[]))
        assert created["workOrder"]["total"] == 50000

        params = _update_params(created["workOrder"], notes="Khách hẹn chiều")
        params["additional_services"] = None
        result = dispatcher.call("work_order_update_atomic", params, owner)

        assert result["workOrder"]["additionalServices"][0]["description"] == "Rửa xe"
        assert result["workOrder"]["total"] == 50000
        assert result["workOrder"]["notes"] == "Khách hẹn chiều"

    def test_omitted_fields_keep_stored_values(self, dispatcher, owner, store, order_params):
        created = _create(dispatcher, owner, order_params(notes="Khách hẹn chiều", vehicle_id="VH-7"))
        order_id = created["orderId"]

        params = order_params(order_id=order_id, technician_name="Tuấn")
        del params["branch_id"]
        result = dispatcher.call("work_order_update_atomic", params, owner)

        wo = result["workOrder"]
        assert wo["notes"] == "Khách hẹn chiều"
        assert wo["vehicleId"] == "VH-7"
        assert wo["technicianName"] == "Tuấn"

        result = dispatcher.call("work_order_update_atomic", {"order_id": order_id, "notes": "Đã gọi khách"}, owner)

        wo = result["workOrder"]
        assert wo["notes"] == "Đã gọi khách"
        assert wo["vehicleId"] == "VH-7"
        assert wo["laborCost"] == 30000
        assert wo["total"] == 130000
        assert wo["status"] == "Tiếp nhận"
        assert wo["partsUsed"][0]["quantity"] == 2
        assert result["inventoryTxCount"] == 0
        assert store.stock[("P1", "CN1")] == 3

    def test_settled_order_cannot_leave_handoff(self, dispatcher, owner, order_params):
        created = _create(dispatcher, owner, order_params(status="Trả máy", additional_payment=130000))
        assert created["workOrder"]["paymentStatus"] == "paid"

        params = _update_params(created["workOrder"], notes="Sửa lại")
        params["status"] = "Đang sửa"
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_update_atomic", params, owner)
        assert exc.value.code == "ORDER_LOCKED"
        assert exc.value.details["fields"] == ["status"]

        current = dispatcher.call("work_order_get", {"order_id": created["orderId"]}, owner)["workOrder"]
        assert current["status"] == "Trả máy"
        assert current["notes"] is None

    def test_price_cut_below_amount_paid(self, dispatcher, owner, order_params):
        created = _create(
            dispatcher,
            owner,
            order_params(status="Trả máy", labor_cost=100000, parts_used=[], additional_payment=40000),
        )
        assert created["workOrder"]["paymentStatus"] == "partial"

        params = _update_params(created["workOrder"], labor_cost=Decimal("20000"))
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_update_atomic", params, owner)
        assert exc.value.code == "INVALID_PAYMENT_AMOUNT"
        assert Decimal(exc.value.details["total"]) == 20000
        assert Decimal(exc.value.details["totalPaid"]) == 40000

    def test_settled_order_is_locked(self, dispatcher, owner, order_params):
        created = _create(
            dispatcher,
            owner,
            order_params(
                status="Trả máy",
                labor_cost=50000,
                parts_used=[{"partId": "P1", "partName": "Lọc gió", "quantity": 1, "price": 50000, "costPrice": 30000}],
                additional_payment=100000,
            ),
        )
        assert created["workOrder"]["paymentStatus"] == "paid"

        params = _update_params(created["workOrder"], labor_cost=Decimal("60000"))
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_update_atomic", params, owner)
        assert exc.value.code == "ORDER_LOCKED"
        assert "laborCost" in exc.value.details["fields"]

    def test_settled_order_accepts_cost_price_and_notes(self, dispatcher, owner, store, order_params):
        created = _create(
            dispatcher,
            owner,
            order_params(
                status="Trả máy",
                labor_cost=50000,
                parts_used=[{"partId": "P1", "partName": "Lọc gió", "quantity": 1, "price": 50000, "costPrice": 30000}],
                additional_payment=100000,
            ),
        )
        params = _update_params(created["workOrder"], notes="Bảo hành 3 tháng")
        params["parts_used"][0]["costPrice"] = 35000

        result = dispatcher.call("work_order_update_atomic", params, owner)

        assert result["workOrder"]["partsUsed"][0]["costPrice"] == 35000
        assert result["workOrder"]["notes"] == "Bảo hành 3 tháng"
        assert result["inventoryTxCount"] == 0
        assert store.stock[("P1", "CN1")] == 4

    def test_refunded_order_rejects_financial_edits(self, dispatcher, owner, order_params):
        created = _create(dispatcher, owner, order_params())
        refunded = dispatcher.call("work_order_refund_atomic", {"order_id": created["orderId"]}, owner)

        params = _update_params(refunded["workOrder"], labor_cost=Decimal("1"))
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_update_atomic", params, owner)
        assert exc.value.code == "ORDER_REFUNDED"

        params = _update_params(refunded["workOrder"], notes="Khách đã lấy xe")
        result = dispatcher.call("work_order_update_atomic", params, owner)
        assert result["workOrder"]["notes"] == "Khách đã lấy xe"
        assert result["workOrder"]["refunded"] is True

    def test_refunded_order_rejects_payment(self, dispatcher, owner, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]
        dispatcher.call("work_order_refund_atomic", {"order_id": order_id}, owner)
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_complete_payment", {"order_id": order_id, "payment_amount": 1000}, owner)
        assert exc.value.code == "ORDER_REFUNDED"

    def test_double_refund(self, dispatcher, owner, store, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]
        dispatcher.call("work_order_refund_atomic", {"order_id": order_id}, owner)
        with pytest.raises(ValidationError) as exc:
            dispatcher.call("work_order_refund_atomic", {"order_id": order_id}, owner)
        assert exc.value.code == "ALREADY_REFUNDED"
        assert store.stock[("P1", "CN1")] == 5

    def test_update_missing_order(self, dispatcher, owner, order_params):
        with pytest.raises(NotFoundError) as exc:
            dispatcher.call("work_order_update_atomic", order_params(order_id="SC-CN1-404404"), owner)
        assert exc.value.code == "ORDER_NOT_FOUND"


# =============================================================================
# Authorization and branches
# =============================================================================


class TestAccess:

    def test_other_branch_cannot_read(self, dispatcher, owner, order_params):
        order_id = _create(dispatcher, owner, order_params())["orderId"]
        other = CallerContext(caller_id="u9", branch_id="CN2", role="owner")
        with pytest.raises(AuthorizationError) as exc:
            dispatcher.call("work_order_get", {"order_id": order_id}, other)
        assert exc.value.code == "BRANCH_MISMATCH"

    def test_create_for_other_branch(self, dispatcher, owner, order_params):
        with pytest.raises(AuthorizationError) as exc:
            _create(dispatcher, owner, order_params(branch_id="CN2"))
        assert exc.value.code == "BRANCH_MISMATCH"

    def test_staff_cannot_refund_or_delete(self, dispatcher, owner, staff, store, order_params):
        order_id = _create(dispatcher, staff, order_params())["orderId"]
        for op in ("work_order_refund_atomic", "work_order_delete"):
            with pytest.raises(AuthorizationError) as exc:
                dispatcher.call(op, {"order_id": order_id}, staff)
            assert exc.value.code == "UNAUTHORIZED"
        assert order_id in store.work_orders

    def test_anonymous_caller(self, dispatcher, order_params):
        anonymous = CallerContext(caller_id="", branch_id="CN1", role="owner")
        with pytest.raises(AuthorizationError):
            _create(dispatcher, anonymous, order_params())

    def test_delete_keeps_stock_and_cash(self, dispatcher, owner, store, order_params):
        order_id = _create(dispatcher, owner, order_params(deposit_amount=50000, status="Trả máy"))["orderId"]
        assert store.stock[("P1", "CN1")] == 3

        result = dispatcher.call("work_order_delete", {"order_id": order_id}, owner)

        assert result == {"orderId": order_id, "deleted": True}
        assert store.stock[("P1", "CN1")] == 3
        assert len(store.cash) == 1
        with pytest.raises(NotFoundError):
            dispatcher.call("work_order_get", {"order_id": order_id}, owner)

    def test_list_is_branch_scoped(self, dispatcher, owner, order_params):
        _create(dispatcher, owner, order_params(parts_used=[]))
        _create(dispatcher, owner, order_params(parts_used=[]))
        other = CallerContext(caller_id="u9", branch_id="CN2", role="staff")
        assert len(dispatcher.call("work_order_list", {}, owner)["workOrders"]) == 2
        assert dispatcher.call("work_order_list", {}, other)["workOrders"] == []
