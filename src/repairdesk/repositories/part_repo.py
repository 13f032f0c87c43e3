from __future__ import annotations

from psycopg import Connection

from ..db import fetch_all


class PartRepository:
    def upsert(
        self,
        conn: Connection,
        *,
        part_id: str,
        name: str,
        sku: str,
        retail_price: float,
        cost_price: float = 0,
        category: str | None = None,
    ) -> str:
        cur = conn.execute(
            """
            INSERT INTO part(id, name, sku, category, retail_price, cost_price)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
              name = EXCLUDED.name,
              sku = EXCLUDED.sku,
              category = EXCLUDED.category,
              retail_price = EXCLUDED.retail_price,
              cost_price = EXCLUDED.cost_price
            RETURNING id;
            """,
            (part_id, name, sku, category, retail_price, cost_price),
        )
        return str(cur.fetchone()[0])

    def get_many(self, conn: Connection, part_ids: list[str]) -> dict[str, dict]:
        if not part_ids:
            return {}
        cur = conn.execute(
            """
            SELECT id, name, sku, category, retail_price, cost_price
            FROM part
            WHERE id = ANY(%s);
            """,
            (list(part_ids),),
        )
        return {str(r["id"]): r for r in fetch_all(cur)}

    def lock_stock(self, conn: Connection, *, branch_id: str, part_ids: list[str]) -> dict[str, int]:
        """Lock the branch stock rows of ``part_ids`` until the transaction ends.

        Rows are locked in id order so two transactions touching overlapping
        parts cannot deadlock. Parts without a stock row have zero stock.
        """
        if not part_ids:
            return {}
        cur = conn.execute(
            """
            SELECT part_id, quantity
            FROM part_stock
            WHERE branch_id = %s AND part_id = ANY(%s)
            ORDER BY part_id
            FOR UPDATE;
            """,
            (branch_id, sorted(part_ids)),
        )
        stock = {pid: 0 for pid in part_ids}
        for part_id, quantity in cur.fetchall():
            stock[str(part_id)] = int(quantity)
        return stock

    def adjust_stock(self, conn: Connection, *, part_id: str, branch_id: str, delta: int) -> int:
        if delta >= 0:
            cur = conn.execute(
                """
                INSERT INTO part_stock(part_id, branch_id, quantity)
                VALUES (%s, %s, %s)
                ON CONFLICT (part_id, branch_id) DO UPDATE SET
                  quantity = part_stock.quantity + EXCLUDED.quantity
                RETURNING quantity;
                """,
                (part_id, branch_id, delta),
            )
            return int(cur.fetchone()[0])

        cur = conn.execute(
            """
            UPDATE part_stock
            SET quantity = quantity + %s
            WHERE part_id = %s AND branch_id = %s AND quantity + %s >= 0
            RETURNING quantity;
            """,
            (delta, part_id, branch_id, delta),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError("Not enough stock for part_id=%s branch_id=%s" % (part_id, branch_id))
        return int(row[0])

    def get_stock(self, conn: Connection, *, part_id: str, branch_id: str) -> int:
        cur = conn.execute(
            "SELECT quantity FROM part_stock WHERE part_id = %s AND branch_id = %s;",
            (part_id, branch_id),
        )
        row = cur.fetchone()
        return int(row[0]) if row else 0

    def list_stock(self, conn: Connection, *, branch_id: str, limit: int = 50) -> list[dict]:
        cur = conn.execute(
            """
            SELECT p.id, p.sku, p.name, p.retail_price, COALESCE(s.quantity, 0) AS quantity
            FROM part p
            LEFT JOIN part_stock s ON s.part_id = p.id AND s.branch_id = %s
            ORDER BY p.name
            LIMIT %s;
            """,
            (branch_id, limit),
        )
        return fetch_all(cur)
