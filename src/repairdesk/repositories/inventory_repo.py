from __future__ import annotations

from psycopg import Connection

from ..db import fetch_all


class InventoryTransactionRepository:
    def create(
        self,
        conn: Connection,
        *,
        tx_id: str,
        tx_type: str,
        part_id: str,
        part_name: str,
        quantity: int,
        unit_price: float,
        branch_id: str,
        reference: str,
        notes: str,
    ) -> str:
        cur = conn.execute(
            """
            INSERT INTO inventory_transactions(id, type, partid, partname, quantity, unitprice,
                                               totalprice, branchid, reference, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id;
            """,
            (tx_id, tx_type, part_id, part_name, quantity, unit_price, unit_price * quantity,
             branch_id, reference, notes),
        )
        return str(cur.fetchone()[0])

    def list_for_reference(self, conn: Connection, reference: str) -> list[dict]:
        cur = conn.execute(
            """
            SELECT id, type, partid, partname, quantity, unitprice, branchid, reference, notes, date
            FROM inventory_transactions
            WHERE reference = %s
            ORDER BY date;
            """,
            (reference,),
        )
        return fetch_all(cur)
