"""Work-order state machine and authorization rules."""
from __future__ import annotations

from ..domain import ROLES, CallerContext, PartLine, ServiceLine, WorkOrder, WorkOrderStatus
from ..errors import AuthorizationError, ValidationError

# Operations restricted to shop owners / managers.
PRIVILEGED = {"refund", "delete"}


def authorize(ctx: CallerContext | None, operation: str) -> CallerContext:
    if ctx is None or not ctx.caller_id or ctx.role not in ROLES:
        raise AuthorizationError("UNAUTHORIZED", {"operation": operation})
    if operation in PRIVILEGED and ctx.role not in ("owner", "manager"):
        raise AuthorizationError("UNAUTHORIZED", {"operation": operation, "role": ctx.role})
    return ctx


def check_branch(ctx: CallerContext, branch_id: str | None) -> None:
    if not branch_id or branch_id != ctx.branch_id:
        raise AuthorizationError("BRANCH_MISMATCH", {"branchId": branch_id, "callerBranchId": ctx.branch_id})


def _priced_parts(parts: tuple[PartLine, ...] | list[PartLine]) -> list[tuple]:
    # cost_price stays editable on locked orders
    return sorted((p.part_id, p.quantity, p.price) for p in parts)


def _priced_services(services: tuple[ServiceLine, ...] | list[ServiceLine]) -> list[tuple]:
    return sorted((s.description, s.quantity, s.price) for s in services)


def financial_changes(current: WorkOrder, proposed: WorkOrder) -> list[str]:
    changed = []
    if current.labor_cost != proposed.labor_cost:
        changed.append("laborCost")
    if current.discount != proposed.discount:
        changed.append("discount")
    if _priced_parts(current.parts_used) != _priced_parts(proposed.parts_used):
        changed.append("partsUsed")
    if _priced_services(current.additional_services) != _priced_services(proposed.additional_services):
        changed.append("additionalServices")
    if current.total != proposed.total:
        changed.append("total")
    if current.deposit_amount != proposed.deposit_amount:
        changed.append("depositAmount")
    if current.additional_payment != proposed.additional_payment:
        changed.append("additionalPayment")
    return changed


def check_financial_edit(current: WorkOrder, proposed: WorkOrder) -> None:
    """Refunded orders and settled, handed-off orders only accept metadata edits."""
    changed = financial_changes(current, proposed)
    if current.refunded:
        if changed:
            raise ValidationError("ORDER_REFUNDED", {"fields": changed})
        return
    if current.is_settled_and_closed and proposed.status != current.status:
        changed.append("status")
    if changed and current.is_settled_and_closed:
        raise ValidationError("ORDER_LOCKED", {"fields": changed})


def check_not_refunded(order: WorkOrder) -> None:
    if order.refunded:
        raise ValidationError("ORDER_REFUNDED", {"orderId": order.id})


def check_settlement_allowed(status: WorkOrderStatus, increment) -> None:
    if increment > 0 and status != WorkOrderStatus.HANDED_OFF:
        raise ValidationError("SETTLEMENT_NOT_ALLOWED", {"status": status.value})
