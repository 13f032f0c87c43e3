from __future__ import annotations

from decimal import Decimal

import pytest

from repairdesk.domain import (
    PartLine,
    PaymentStatus,
    ServiceLine,
    WorkOrder,
    WorkOrderStatus,
    compute_payment_state,
    compute_total,
    discount_from_percent,
    extract_unlock_code,
    parse_payment_method,
    strip_unlock_code,
    to_money,
    with_unlock_code,
)
from repairdesk.errors import ValidationError
from repairdesk.services.debt_service import build_debt_description, debt_customer_id, format_vnd, order_number


class TestTotals:

    def test_labor_parts_and_services(self):
        parts = [PartLine("P1", "Lọc gió", 2, Decimal("50000"))]
        services = [ServiceLine("SV-1", "Hàn khung", 1, Decimal("20000"))]
        assert compute_total(Decimal("30000"), parts, services, Decimal("0")) == Decimal("150000")

    def test_negative_service_lowers_total(self):
        services = [ServiceLine("SV-1", "Giảm trừ", 1, Decimal("-10000"))]
        assert compute_total(Decimal("30000"), [], services, Decimal("0")) == Decimal("20000")

    def test_total_never_negative(self):
        assert compute_total(Decimal("10000"), [], [], Decimal("50000")) == Decimal("0")

    def test_discount_from_percent_rounds_to_whole_dong(self):
        assert discount_from_percent(Decimal("125000"), Decimal("10")) == Decimal("12500")
        assert discount_from_percent(Decimal("99999"), Decimal("5")) == Decimal("5000")

    def test_discount_percent_out_of_range(self):
        with pytest.raises(ValidationError):
            discount_from_percent(Decimal("100000"), Decimal("101"))


class TestPaymentState:

    def test_unpaid(self):
        state = compute_payment_state(Decimal("130000"), Decimal("0"), Decimal("0"))
        assert state.payment_status == PaymentStatus.UNPAID
        assert state.remaining_amount == Decimal("130000")

    def test_partial(self):
        state = compute_payment_state(Decimal("130000"), Decimal("50000"), Decimal("30000"))
        assert state.payment_status == PaymentStatus.PARTIAL
        assert state.total_paid == Decimal("80000")
        assert state.remaining_amount == Decimal("50000")

    def test_paid(self):
        state = compute_payment_state(Decimal("130000"), Decimal("50000"), Decimal("80000"))
        assert state.payment_status == PaymentStatus.PAID
        assert state.remaining_amount == Decimal("0")

    def test_zero_total_is_not_paid(self):
        state = compute_payment_state(Decimal("0"), Decimal("0"), Decimal("0"))
        assert state.payment_status == PaymentStatus.UNPAID


class TestParsing:

    def test_status_accepts_label_and_name(self):
        assert WorkOrderStatus.parse("Trả máy") is WorkOrderStatus.HANDED_OFF
        assert WorkOrderStatus.parse("in_repair") is WorkOrderStatus.IN_REPAIR

    def test_unknown_status(self):
        with pytest.raises(ValidationError) as exc:
            WorkOrderStatus.parse("Đã hủy")
        assert exc.value.code == "INVALID_STATUS"

    def test_payment_method(self):
        assert parse_payment_method(" Bank ") == "bank"
        assert parse_payment_method(None, default="cash") == "cash"
        with pytest.raises(ValidationError) as exc:
            parse_payment_method("card")
        assert exc.value.code == "INVALID_PAYMENT_METHOD"

    def test_money(self):
        assert to_money("125000") == Decimal("125000")
        assert to_money(None) == Decimal("0")
        with pytest.raises(ValidationError):
            to_money(-1)
        with pytest.raises(ValidationError) as exc:
            to_money("abc", code="INVALID_PAYMENT_AMOUNT")
        assert exc.value.code == "INVALID_PAYMENT_AMOUNT"
        assert to_money(-5, allow_negative=True) == Decimal("-5")


class TestUnlockCode:

    def test_extract_and_strip(self):
        text = "Xe khó nổ [MK: 1234] kiểm tra bugi"
        assert extract_unlock_code(text) == "1234"
        assert strip_unlock_code(text) == "Xe khó nổ kiểm tra bugi"

    def test_replace_code(self):
        assert with_unlock_code("Màn hình vỡ [MK: 0000]", "9999") == "Màn hình vỡ [MK: 9999]"
        assert with_unlock_code("Màn hình vỡ [mk:0000]", None) == "Màn hình vỡ"

    def test_no_code(self):
        assert extract_unlock_code("Thay nhớt") is None
        assert extract_unlock_code(None) is None


class TestDebtDescription:

    def _order(self) -> WorkOrder:
        return WorkOrder(
            id="SC-CN1-000042",
            branch_id="CN1",
            customer_name="Chị Lan",
            vehicle_model="Yamaha Sirius",
            issue_description="Hư đề [MK: 5678]",
            technician_name="Tuấn",
            labor_cost=Decimal("30000"),
            discount=Decimal("5000"),
            parts_used=(PartLine("P1", "Lọc gió", 2, Decimal("50000")),),
            additional_services=(ServiceLine("SV-1", "Sơn dặm", 1, Decimal("70000")),),
        )

    def test_lines(self):
        text = build_debt_description(self._order(), staff_name="Hà")
        lines = text.split("\n")
        assert lines[0] == "Yamaha Sirius (Phiếu sửa chữa #000042)"
        assert "Vấn đề: Hư đề" in lines
        assert "  • 2 x Lọc gió - 100.000đ" in lines
        assert "  • 1 x Sơn dặm - 70.000đ" in lines
        assert "Công lao động: 30.000đ" in lines
        assert "Giảm giá: -5.000đ" in lines
        assert lines[-2:] == ["NV: Hà", "NV kỹ thuật: Tuấn"]
        assert "5678" not in text

    def test_helpers(self):
        assert format_vnd(Decimal("1234567")) == "1.234.567đ"
        assert order_number("SC-CN1-000042") == "000042"
        assert debt_customer_id(self._order()) == "CUST-ANON-SC-CN1-000042"
