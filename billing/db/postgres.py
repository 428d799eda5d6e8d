from __future__ import annotations

from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction."""

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 0) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._statement_timeout_ms = max(0, int(statement_timeout_ms))

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            if self._statement_timeout_ms:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('statement_timeout', %s, true)", (str(self._statement_timeout_ms),))
            result = fn(conn)
            conn.commit()
            return result
