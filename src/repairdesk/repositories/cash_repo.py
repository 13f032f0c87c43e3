from __future__ import annotations

from psycopg import Connection

from ..db import fetch_all


class CashTransactionRepository:
    def create(
        self,
        conn: Connection,
        *,
        tx_id: str,
        tx_type: str,
        category: str,
        amount: float,
        branch_id: str,
        payment_source: str,
        reference: str | None,
        description: str,
        created_by: str | None,
    ) -> str:
        cur = conn.execute(
            """
            INSERT INTO cash_transactions(id, type, category, amount, branchid, paymentsource,
                                          reference, description, created_by)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id;
            """,
            (tx_id, tx_type, category, amount, branch_id, payment_source, reference, description, created_by),
        )
        return str(cur.fetchone()[0])

    def find_by_reference(self, conn: Connection, *, reference: str, category: str | None = None) -> list[dict]:
        query = """
            SELECT id, type, category, amount, branchid, paymentsource, reference, description, date
            FROM cash_transactions
            WHERE reference = %s
        """
        params: list = [reference]
        if category is not None:
            query += " AND category = %s"
            params.append(category)
        cur = conn.execute(query + " ORDER BY date;", params)
        return fetch_all(cur)


class PaymentSourceRepository:
    def adjust_balance(self, conn: Connection, *, source_id: str, branch_id: str, delta: float) -> None:
        conn.execute(
            """
            INSERT INTO payment_source_balance(source_id, branch_id, balance)
            VALUES (%s, %s, %s)
            ON CONFLICT (source_id, branch_id) DO UPDATE SET
              balance = payment_source_balance.balance + EXCLUDED.balance;
            """,
            (source_id, branch_id, delta),
        )

    def get_balance(self, conn: Connection, *, source_id: str, branch_id: str) -> float:
        cur = conn.execute(
            "SELECT balance FROM payment_source_balance WHERE source_id = %s AND branch_id = %s;",
            (source_id, branch_id),
        )
        row = cur.fetchone()
        return row[0] if row else 0
