from billing.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from billing.repositories.dlq_items import InMemoryDlqItemsRepository, PostgresDlqItemsRepository
from billing.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemoryDlqItemsRepository",
    "PostgresDlqItemsRepository",
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
]
