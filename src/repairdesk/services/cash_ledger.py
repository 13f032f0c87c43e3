from __future__ import annotations

from decimal import Decimal

from psycopg import Connection

from ..domain import CashTransaction, new_id, parse_payment_method, utcnow
from ..errors import ValidationError
from ..logging_utils import get_logger
from ..repositories.cash_repo import CashTransactionRepository, PaymentSourceRepository

log = get_logger(__name__)

INCOME = "income"
EXPENSE = "expense"

SERVICE_DEPOSIT = "service_deposit"
SERVICE_INCOME = "service_income"
SERVICE_REFUND = "service_refund"
OUTSOURCING = "outsourcing"
SERVICE_ADJUSTMENT = "service_adjustment"

# Expense rows written by the caller-side flow; at most one per order.
GUARDED_EXPENSE_CATEGORIES = (OUTSOURCING, SERVICE_ADJUSTMENT)


class CashLedger:
    """Append-only cash book that keeps payment-source balances in step."""

    def __init__(self, *, cash_repo: CashTransactionRepository, source_repo: PaymentSourceRepository) -> None:
        self.cash_repo = cash_repo
        self.source_repo = source_repo

    def record(
        self,
        conn: Connection,
        *,
        tx_type: str,
        category: str,
        amount: Decimal,
        branch_id: str,
        payment_source: str,
        reference: str | None,
        description: str = "",
        created_by: str | None = None,
    ) -> CashTransaction:
        if tx_type not in (INCOME, EXPENSE):
            raise ValueError(f"Unknown cash transaction type: {tx_type}")
        if amount <= 0:
            raise ValueError("Cash transaction amount must be > 0.")

        tx = CashTransaction(
            id=new_id("CT"),
            type=tx_type,
            category=category,
            amount=amount,
            branch_id=branch_id,
            payment_source=payment_source,
            reference=reference,
            description=description,
            created_by=created_by,
            date=utcnow(),
        )
        self.cash_repo.create(
            conn,
            tx_id=tx.id,
            tx_type=tx.type,
            category=tx.category,
            amount=tx.amount,
            branch_id=tx.branch_id,
            payment_source=tx.payment_source,
            reference=tx.reference,
            description=tx.description,
            created_by=tx.created_by,
        )
        delta = amount if tx_type == INCOME else -amount
        self.source_repo.adjust_balance(conn, source_id=payment_source, branch_id=branch_id, delta=delta)
        log.debug("Cash %s %s %s for %s (%s)", tx_type, category, amount, reference, tx.id)
        return tx

    def record_order_expense_once(
        self,
        conn: Connection,
        *,
        order_id: str,
        category: str,
        amount: Decimal,
        branch_id: str,
        payment_source: str | None = None,
        description: str = "",
        created_by: str | None = None,
    ) -> tuple[str, bool]:
        """Book an order-linked expense unless one already exists.

        Returns ``(transaction_id, created)``.
        """
        if category not in GUARDED_EXPENSE_CATEGORIES:
            raise ValidationError("INVALID_INPUT", {"category": category})
        if amount <= 0:
            raise ValidationError("INVALID_PAYMENT_AMOUNT", {"amount": str(amount)})
        source = parse_payment_method(payment_source, default="cash")

        existing = self.cash_repo.find_by_reference(conn, reference=order_id, category=category)
        if existing:
            return str(existing[0]["id"]), False

        tx = self.record(
            conn,
            tx_type=EXPENSE,
            category=category,
            amount=amount,
            branch_id=branch_id,
            payment_source=source,
            reference=order_id,
            description=description,
            created_by=created_by,
        )
        return tx.id, True
