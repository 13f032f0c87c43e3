from __future__ import annotations

from .db import Db
from .domain import CallerContext, WorkOrderStatus
from .errors import EngineError
from .repositories.part_repo import PartRepository
from .rpc import RpcDispatcher


def _prompt(msg: str) -> str:
    return input(msg).strip()


def _read_parts() -> list[dict]:
    parts: list[dict] = []
    while True:
        add = _prompt("Add part? (y/n): ").lower()
        if add != "y":
            break
        part_id = _prompt("  part id: ")
        name = _prompt("  name: ")
        qty = int(_prompt("  quantity: "))
        price = float(_prompt("  unit price: ") or 0)
        parts.append({"partId": part_id, "partName": name, "quantity": qty, "price": price})
    return parts


def run_cli(db: Db, dispatcher: RpcDispatcher, ctx: CallerContext) -> None:
    part_repo = PartRepository()

    while True:
        print(f"\n=== RepairDesk CLI ({ctx.branch_id}, {ctx.role}) ===")
        print("1) List work orders")
        print("2) List parts (branch stock)")
        print("3) Create work order (atomic)")
        print("4) Complete payment")
        print("5) Refund work order")
        print("6) Delete work order")
        print("0) Exit")

        choice = _prompt("> ")
        try:
            if choice == "0":
                return

            elif choice == "1":
                rows = dispatcher.call("work_order_list", {"limit": 30}, ctx)["workOrders"]
                for r in rows:
                    flag = " [REFUNDED]" if r["refunded"] else ""
                    print(
                        f'{r["id"]} {r["status"]} {r["customerName"]} total={r["total"]} '
                        f'paid={r["totalPaid"]} remaining={r["remainingAmount"]} {r["paymentStatus"]}{flag}'
                    )

            elif choice == "2":
                with db.session() as conn:
                    rows = part_repo.list_stock(conn, branch_id=ctx.branch_id, limit=50)
                for r in rows:
                    print(f'{r["id"]} {r["sku"]} {r["name"]} price={r["retail_price"]} stock={r["quantity"]}')

            elif choice == "3":
                params = {
                    "branch_id": ctx.branch_id,
                    "customer_name": _prompt("customer name: "),
                    "customer_phone": _prompt("customer phone: ") or None,
                    "vehicle_model": _prompt("vehicle / device model: ") or None,
                    "license_plate": _prompt("license plate (optional): ") or None,
                    "issue_description": _prompt("issue: ") or None,
                    "technician_name": _prompt("technician (optional): ") or None,
                    "status": WorkOrderStatus.INTAKE.value,
                    "labor_cost": float(_prompt("labor cost: ") or 0),
                    "discount": float(_prompt("discount: ") or 0),
                    "parts_used": _read_parts(),
                    "deposit_amount": float(_prompt("deposit (0 for none): ") or 0),
                    "payment_method": _prompt("payment method (cash/bank): ") or None,
                }
                result = dispatcher.call("work_order_create_atomic", params, ctx)
                wo = result["workOrder"]
                print(f'Created {wo["id"]} total={wo["total"]} status={wo["paymentStatus"]}')
                if result["inventoryTxCount"]:
                    print(f'Stock deducted: {result["inventoryTxCount"]} parts')
                for w in result["stockWarnings"]:
                    print(f'  warning: {w["partName"]} available={w["available"]}')

            elif choice == "4":
                order_id = _prompt("order id: ")
                amount = float(_prompt("payment amount: ") or 0)
                method = _prompt("method (cash/bank): ") or "cash"
                result = dispatcher.call(
                    "work_order_complete_payment",
                    {"order_id": order_id, "payment_method": method, "payment_amount": amount},
                    ctx,
                )
                print(f'Payment status: {result["newPaymentStatus"]} inventory_deducted={result["inventoryDeducted"]}')

            elif choice == "5":
                order_id = _prompt("order id: ")
                reason = _prompt("reason: ")
                result = dispatcher.call(
                    "work_order_refund_atomic",
                    {"order_id": order_id, "refund_reason": reason, "user_id": ctx.caller_id},
                    ctx,
                )
                print(f'Refunded {order_id}: amount={result["refundAmount"]} tx={result["refund_transaction_id"]}')

            elif choice == "6":
                order_id = _prompt("order id: ")
                if _prompt(f"Really delete {order_id}? Stock and cash book are NOT reverted (yes/no): ") == "yes":
                    result = dispatcher.call("work_order_delete", {"order_id": order_id}, ctx)
                    print(f'Deleted: {result["deleted"]}')

            else:
                print("Unknown choice.")

        except EngineError as e:
            print(f"[{e.category.upper()} ERROR] {e.message}")
        except ValueError as e:
            print(f"[VALUE ERROR] {e}")
