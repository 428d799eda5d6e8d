from __future__ import annotations

import pytest

from billing.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from billing.repositories.dlq_items import InMemoryDlqItemsRepository, PostgresDlqItemsRepository


def _item() -> dict:
    return {
        "dlq_id": "dlq_repo_1",
        "job_id": "job_repo_1",
        "error_class": "transient",
        "error_code": "PING_SERVER_ERROR",
        "status": "open",
        "created_at": "2024-03-01T00:00:00+00:00",
    }


def _log() -> dict:
    return {
        "audit_id": "audit_repo_1",
        "action": "dlq_requeued",
        "trace_id": "trace_repo_1",
        "occurred_at": "2024-03-01T00:00:00+00:00",
        "audit_hash": "abc",
    }


class _FakeCursor:
    def __init__(self, statements: list, one: list, many: list) -> None:
        self._statements = statements
        self._one = one
        self._many = many
        self._row = None
        self._rows: list = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._statements.append((query, params))
        text = query.strip().lower()
        self._row = None
        self._rows = []
        if text.startswith("select") and "limit 1" in text:
            self._row = self._one[0] if self._one else None
        elif text.startswith("select"):
            self._rows = list(self._many)

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class _FakeRunner:
    def __init__(self) -> None:
        self.statements: list = []
        self.one: list = []
        self.many: list = []

    def run_in_tx(self, *, fn):
        runner = self

        class _Conn:
            def cursor(self):
                return _FakeCursor(runner.statements, runner.one, runner.many)

        return fn(_Conn())


def test_inmemory_dlq_repository_upsert_get_and_list():
    data: dict[str, dict] = {}
    repo = InMemoryDlqItemsRepository(data)
    repo.upsert(item=_item())
    repo.upsert(item={**_item(), "dlq_id": "dlq_repo_2", "status": "discarded"})

    assert repo.get(dlq_id="dlq_repo_1")["status"] == "open"
    assert repo.get(dlq_id="missing") is None
    assert [x["dlq_id"] for x in repo.list(status="open")] == ["dlq_repo_1"]
    assert len(repo.list()) == 2


def test_postgres_repositories_reject_invalid_table_names():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresDlqItemsRepository(tx_runner=_FakeRunner(), table_name="x;drop table y")
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresAuditLogsRepository(tx_runner=_FakeRunner(), table_name="x;drop table y")


def test_postgres_dlq_repository_upsert_get_and_list():
    runner = _FakeRunner()
    repo = PostgresDlqItemsRepository(tx_runner=runner)

    repo.upsert(item=_item())
    assert "INSERT INTO billing_dlq_items" in runner.statements[0][0]
    assert runner.statements[0][1][:3] == ("dlq_repo_1", "job_repo_1", "open")

    runner.one.append(({"dlq_id": "dlq_repo_1", "status": "open"},))
    assert repo.get(dlq_id="dlq_repo_1")["dlq_id"] == "dlq_repo_1"

    runner.many.append(({"dlq_id": "dlq_repo_1", "status": "open"},))
    assert len(repo.list(status="open")) == 1
    assert runner.statements[-1][1] == ("open",)


def test_inmemory_audit_repository_append_and_filter():
    data: list[dict] = []
    repo = InMemoryAuditLogsRepository(data)
    repo.append(log=_log())
    repo.append(log={**_log(), "audit_id": "audit_repo_2", "action": "payout_created"})

    assert [x["audit_id"] for x in repo.list(action="dlq_requeued")] == ["audit_repo_1"]
    assert len(repo.list()) == 2


def test_postgres_audit_repository_append_and_list():
    runner = _FakeRunner()
    repo = PostgresAuditLogsRepository(tx_runner=runner)

    repo.append(log=_log())
    assert "INSERT INTO billing_audit_logs" in runner.statements[0][0]

    runner.many.append(({"audit_id": "audit_repo_1", "action": "dlq_requeued"},))
    loaded = repo.list(action="dlq_requeued")
    assert loaded[0]["audit_id"] == "audit_repo_1"
