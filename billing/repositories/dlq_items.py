from __future__ import annotations

from typing import Any

from billing.db.postgres import PostgresTxRunner
from billing.repositories._sql import to_jsonb, validate_identifier


class InMemoryDlqItemsRepository:
    def __init__(self, items: dict[str, dict[str, Any]]) -> None:
        self._items = items

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        row = dict(item)
        self._items[str(row["dlq_id"])] = row
        return dict(row)

    def get(self, *, dlq_id: str) -> dict[str, Any] | None:
        row = self._items.get(dlq_id)
        return dict(row) if row is not None else None

    def list(self, *, status: str | None = None) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._items.values() if status is None or x.get("status") == status]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("dlq_id", ""))))
        return rows


class PostgresDlqItemsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "billing_dlq_items") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                dlq_id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                payload JSONB NOT NULL
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        row = dict(item)
        sql = f"""
            INSERT INTO {self._table_name} (dlq_id, job_id, status, created_at, payload)
            VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(dlq_id) DO UPDATE
            SET status = EXCLUDED.status,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        row["dlq_id"],
                        row.get("job_id", ""),
                        row.get("status", "open"),
                        row.get("created_at", ""),
                        to_jsonb(row),
                    ),
                )
            return row

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, dlq_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE dlq_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (dlq_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, status: str | None = None) -> list[dict[str, Any]]:
        if status is None:
            sql = f"SELECT payload FROM {self._table_name} ORDER BY created_at ASC, dlq_id ASC"
            params: tuple[Any, ...] = ()
        else:
            sql = f"SELECT payload FROM {self._table_name} WHERE status = %s ORDER BY created_at ASC, dlq_id ASC"
            params = (status,)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
