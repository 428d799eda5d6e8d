from __future__ import annotations

from typing import Any

from billing.db.postgres import PostgresTxRunner
from billing.repositories._sql import to_jsonb, validate_identifier


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.append(item)
        return item

    def list(self, *, action: str | None = None) -> list[dict[str, Any]]:
        return [dict(x) for x in self._audit_logs if action is None or x.get("action") == action]


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "billing_audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                audit_id TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                occurred_at TEXT NOT NULL,
                audit_hash TEXT NOT NULL,
                payload JSONB NOT NULL
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        sql = f"""
            INSERT INTO {self._table_name} (audit_id, action, occurred_at, audit_hash, payload)
            VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(audit_id) DO NOTHING
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        item.get("action", ""),
                        item.get("occurred_at", ""),
                        item.get("audit_hash", ""),
                        to_jsonb(item),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self, *, action: str | None = None) -> list[dict[str, Any]]:
        if action is None:
            sql = f"SELECT payload FROM {self._table_name} ORDER BY occurred_at ASC"
            params: tuple[Any, ...] = ()
        else:
            sql = f"SELECT payload FROM {self._table_name} WHERE action = %s ORDER BY occurred_at ASC"
            params = (action,)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
