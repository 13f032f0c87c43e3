from __future__ import annotations

from psycopg import Connection, sql
from psycopg.types.json import Jsonb

from ..codec import STORAGE_COLUMNS
from ..db import fetch_all, fetch_one

_JSON_COLUMNS = {"partsused", "additionalservices"}


def _adapt(row: dict) -> dict:
    return {k: (Jsonb(v) if k in _JSON_COLUMNS else v) for k, v in row.items()}


class WorkOrderRepository:
    def next_id(self, conn: Connection, *, branch_id: str, prefix: str) -> str:
        cur = conn.execute(
            """
            INSERT INTO work_order_sequence(branch_id, last_value)
            VALUES (%s, 1)
            ON CONFLICT (branch_id) DO UPDATE SET
              last_value = work_order_sequence.last_value + 1
            RETURNING last_value;
            """,
            (branch_id,),
        )
        seq = int(cur.fetchone()[0])
        return f"{prefix}-{branch_id}-{seq:06d}"

    def get(self, conn: Connection, order_id: str, *, for_update: bool = False) -> dict | None:
        query = "SELECT * FROM work_orders WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        cur = conn.execute(query + ";", (order_id,))
        return fetch_one(cur)

    def insert(self, conn: Connection, row: dict) -> None:
        row = _adapt({k: v for k, v in row.items() if k in STORAGE_COLUMNS and k != "creationdate"})
        cols = list(row)
        conn.execute(
            sql.SQL("INSERT INTO work_orders({}) VALUES ({});").format(
                sql.SQL(", ").join(map(sql.Identifier, cols)),
                sql.SQL(", ").join(sql.Placeholder() * len(cols)),
            ),
            [row[c] for c in cols],
        )

    def update(self, conn: Connection, order_id: str, row: dict) -> None:
        row = _adapt({k: v for k, v in row.items() if k in STORAGE_COLUMNS and k not in ("id", "creationdate")})
        cols = list(row)
        conn.execute(
            sql.SQL("UPDATE work_orders SET {} WHERE id = %s;").format(
                sql.SQL(", ").join(
                    sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in cols
                ),
            ),
            [row[c] for c in cols] + [order_id],
        )

    def delete(self, conn: Connection, order_id: str) -> bool:
        cur = conn.execute("DELETE FROM work_orders WHERE id = %s;", (order_id,))
        return cur.rowcount == 1

    def list(self, conn: Connection, *, branch_id: str, limit: int = 30) -> list[dict]:
        cur = conn.execute(
            """
            SELECT * FROM work_orders
            WHERE branchid = %s
            ORDER BY creationdate DESC
            LIMIT %s;
            """,
            (branch_id, limit),
        )
        return fetch_all(cur)
