from __future__ import annotations

from typing import Any

from billing.db.postgres import PostgresTxRunner
from billing.repositories._sql import to_jsonb, validate_identifier


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]]) -> None:
        self._jobs = jobs

    def upsert(self, *, job: dict[str, Any]) -> dict[str, Any]:
        row = dict(job)
        self._jobs[str(row["job_id"])] = row
        return dict(row)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        row = self._jobs.get(job_id)
        return dict(row) if row is not None else None

    def list(self) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._jobs.values()]
        rows.sort(key=lambda x: (str(x.get("created_at", "")), str(x.get("job_id", ""))))
        return rows


class PostgresJobsRepository:
    """Jobs table with the hot columns broken out; the full record lives in ``payload``."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "billing_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                job_id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL,
                partition_key TEXT NOT NULL,
                unique_key TEXT,
                run_at TEXT,
                created_at TEXT NOT NULL,
                payload JSONB NOT NULL
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def upsert(self, *, job: dict[str, Any]) -> dict[str, Any]:
        row = dict(job)
        sql = f"""
            INSERT INTO {self._table_name} (
                job_id, job_type, status, partition_key, unique_key, run_at, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(job_id) DO UPDATE
            SET status = EXCLUDED.status,
                run_at = EXCLUDED.run_at,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        row["job_id"],
                        row.get("job_type", ""),
                        row.get("status", "queued"),
                        row.get("partition", "platform"),
                        row.get("unique_key"),
                        row.get("run_at"),
                        row.get("created_at", ""),
                        to_jsonb(row),
                    ),
                )
            return row

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE job_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} ORDER BY created_at ASC, job_id ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
