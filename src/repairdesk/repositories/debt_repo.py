from __future__ import annotations

from psycopg import Connection

from ..db import fetch_one


class DebtRepository:
    def upsert_for_work_order(self, conn: Connection, *, debt: dict) -> tuple[str, bool]:
        """Insert or refresh the single debt row of a work order.

        Returns ``(debt_id, created)``.
        """
        cur = conn.execute(
            """
            INSERT INTO customer_debts(id, customer_id, customer_name, phone, license_plate,
                                       description, total_amount, paid_amount, remaining_amount,
                                       branch_id, work_order_id)
            VALUES (%(id)s, %(customer_id)s, %(customer_name)s, %(phone)s, %(license_plate)s,
                    %(description)s, %(total_amount)s, %(paid_amount)s, %(remaining_amount)s,
                    %(branch_id)s, %(work_order_id)s)
            ON CONFLICT (work_order_id) DO UPDATE SET
              description = EXCLUDED.description,
              total_amount = EXCLUDED.total_amount,
              paid_amount = EXCLUDED.paid_amount,
              remaining_amount = EXCLUDED.remaining_amount
            RETURNING id, (xmax = 0) AS created;
            """,
            debt,
        )
        debt_id, created = cur.fetchone()
        return str(debt_id), bool(created)

    def get_by_work_order(self, conn: Connection, work_order_id: str) -> dict | None:
        cur = conn.execute(
            "SELECT * FROM customer_debts WHERE work_order_id = %s;",
            (work_order_id,),
        )
        return fetch_one(cur)
