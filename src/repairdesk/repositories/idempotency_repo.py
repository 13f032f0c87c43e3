from __future__ import annotations

import json

from psycopg import Connection
from psycopg.types.json import Jsonb


class IdempotencyRepository:
    def lock(self, conn: Connection, key: str) -> None:
        # Serializes concurrent requests carrying the same key.
        conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s));", (key,))

    def get(self, conn: Connection, key: str, operation: str) -> dict | None:
        cur = conn.execute(
            "SELECT response FROM idempotency_keys WHERE key = %s AND operation = %s;",
            (key, operation),
        )
        row = cur.fetchone()
        if not row:
            return None
        response = row[0]
        return json.loads(response) if isinstance(response, str) else response

    def save(self, conn: Connection, key: str, operation: str, response: dict) -> None:
        conn.execute(
            """
            INSERT INTO idempotency_keys(key, operation, response)
            VALUES (%s, %s, %s);
            """,
            (key, operation, Jsonb(response)),
        )
