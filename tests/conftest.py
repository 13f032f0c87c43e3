from __future__ import annotations

import pytest

from fakes import FakeDb, InMemoryStore, make_dispatcher
from repairdesk.domain import CallerContext


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_part("P1", "Lọc gió", 50000, quantity=5)
    s.add_part("P2", "Bugi", 20000, quantity=3)
    return s


@pytest.fixture
def db(store):
    return FakeDb(store)


@pytest.fixture
def dispatcher(db):
    return make_dispatcher(db)


@pytest.fixture
def owner() -> CallerContext:
    return CallerContext(caller_id="u1", branch_id="CN1", role="owner")


@pytest.fixture
def staff() -> CallerContext:
    return CallerContext(caller_id="u2", branch_id="CN1", role="staff")


@pytest.fixture
def order_params():
    """Named parameters of a simple order: labor 30.000 plus 2 x P1 at 50.000."""

    def build(**overrides) -> dict:
        params = {
            "branch_id": "CN1",
            "customer_name": "Anh Minh",
            "customer_phone": "0901234567",
            "vehicle_model": "Honda Wave",
            "license_plate": "59X1-12345",
            "issue_description": "Xe khó nổ [MK: 1234]",
            "status": "Tiếp nhận",
            "labor_cost": 30000,
            "discount": 0,
            "parts_used": [{"partId": "P1", "partName": "Lọc gió", "quantity": 2, "price": 50000}],
            "payment_status": "unpaid",
            "deposit_amount": 0,
            "additional_payment": 0,
        }
        params.update(overrides)
        return params

    return build
