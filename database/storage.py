"""
Storage Interface for SARCheck

Defines the persistence operations the SAR lifecycle needs and the
SQLAlchemy-backed implementation of them. A storage backend is selected
once at process startup (`create_storage_backend`) and hands out a
`SarStorage` per request.

Both implementations return the ORM model classes from `database.models`.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, List, Optional

from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider, DatabaseSettings
from database.models import (
    Customer,
    Transaction,
    Alert,
    Sar,
    SarSection,
    SarSentence,
    AuditLog,
    SarVersion,
)
from database.repositories import (
    CustomerRepository,
    TransactionRepository,
    AlertRepository,
    SarRepository,
    AuditRepository,
    SarVersionRepository,
)

logger = logging.getLogger(__name__)


class SarStorage(ABC):
    """
    Persistence operations consumed by the SAR service.

    Mutating multi-step operations must run inside `transaction()`, which
    commits on success and discards every write made inside it on error.
    """

    @abstractmethod
    def transaction(self):
        """Context manager delimiting one unit of work."""

    # Customers

    @abstractmethod
    def list_customers(self) -> List[Customer]: ...

    @abstractmethod
    def get_customer(self, customer_id: int) -> Optional[Customer]: ...

    @abstractmethod
    def get_customer_by_external_id(self, external_id: str) -> Optional[Customer]: ...

    @abstractmethod
    def create_customer(self, data: Dict[str, Any]) -> Customer: ...

    def create_customers(self, rows: Iterable[Dict[str, Any]]) -> List[Customer]:
        return [self.create_customer(row) for row in rows]

    # Transactions

    @abstractmethod
    def list_transactions(self, customer_id: Optional[int] = None) -> List[Transaction]: ...

    @abstractmethod
    def get_transaction(self, transaction_id: int) -> Optional[Transaction]: ...

    @abstractmethod
    def get_transaction_by_external_id(self, external_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    def create_transaction(self, data: Dict[str, Any]) -> Transaction: ...

    def create_transactions(self, rows: Iterable[Dict[str, Any]]) -> List[Transaction]:
        return [self.create_transaction(row) for row in rows]

    # Alerts

    @abstractmethod
    def list_alerts(self, customer_id: Optional[int] = None) -> List[Alert]: ...

    @abstractmethod
    def create_alert(self, data: Dict[str, Any]) -> Alert: ...

    def create_alerts(self, rows: Iterable[Dict[str, Any]]) -> List[Alert]:
        return [self.create_alert(row) for row in rows]

    # Reports

    @abstractmethod
    def list_sars(self) -> List[Sar]: ...

    @abstractmethod
    def get_sar(self, sar_id: int) -> Optional[Sar]: ...

    @abstractmethod
    def create_sar(self, data: Dict[str, Any]) -> Sar: ...

    @abstractmethod
    def update_sar(
        self,
        sar_id: int,
        values: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Sar:
        """
        Update report fields.

        Raises:
            EntityNotFoundError: If the report does not exist
            ConcurrentModificationError: If `expected_version` is given and stale
        """

    # Sections

    @abstractmethod
    def list_sar_sections(self, sar_id: int) -> List[SarSection]: ...

    @abstractmethod
    def get_sar_section(self, section_id: int) -> Optional[SarSection]: ...

    @abstractmethod
    def create_sar_section(self, data: Dict[str, Any]) -> SarSection: ...

    @abstractmethod
    def update_sar_section(self, section_id: int, values: Dict[str, Any]) -> SarSection: ...

    # Sentences

    @abstractmethod
    def list_sar_sentences(self, section_id: int) -> List[SarSentence]: ...

    @abstractmethod
    def get_sar_sentence(self, sentence_id: int) -> Optional[SarSentence]: ...

    @abstractmethod
    def create_sar_sentence(self, data: Dict[str, Any]) -> SarSentence: ...

    # Audit trail and versions (append-only)

    @abstractmethod
    def list_audit_logs(self, sar_id: int) -> List[AuditLog]: ...

    @abstractmethod
    def create_audit_log(self, data: Dict[str, Any]) -> AuditLog: ...

    @abstractmethod
    def list_sar_versions(self, sar_id: int) -> List[SarVersion]: ...

    @abstractmethod
    def create_sar_version(self, data: Dict[str, Any]) -> SarVersion: ...


# ============================================
# SQLALCHEMY ADAPTER
# ============================================

class SqlAlchemyStorage(SarStorage):
    """SarStorage over one SQLAlchemy session, delegating to repositories."""

    def __init__(self, session: Session):
        self.session = session
        self._customers = CustomerRepository(session)
        self._transactions = TransactionRepository(session)
        self._alerts = AlertRepository(session)
        self._sars = SarRepository(session)
        self._audit = AuditRepository(session)
        self._versions = SarVersionRepository(session)
        self._depth = 0

    @contextmanager
    def transaction(self) -> Generator["SqlAlchemyStorage", None, None]:
        """Commit on success, roll back on any exception. Nested calls join the outer one."""
        self._depth += 1
        try:
            yield self
            if self._depth == 1:
                self.session.commit()
        except Exception:
            if self._depth == 1:
                self.session.rollback()
            raise
        finally:
            self._depth -= 1

    def list_customers(self) -> List[Customer]:
        return self._customers.list_all()

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        return self._customers.get_by_id(customer_id)

    def get_customer_by_external_id(self, external_id: str) -> Optional[Customer]:
        return self._customers.get_by_external_id(external_id)

    def create_customer(self, data: Dict[str, Any]) -> Customer:
        return self._customers.create(data)

    def create_customers(self, rows: Iterable[Dict[str, Any]]) -> List[Customer]:
        return self._customers.create_many(rows)

    def list_transactions(self, customer_id: Optional[int] = None) -> List[Transaction]:
        return self._transactions.list(customer_id)

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self._transactions.get_by_id(transaction_id)

    def get_transaction_by_external_id(self, external_id: str) -> Optional[Transaction]:
        return self._transactions.get_by_external_id(external_id)

    def create_transaction(self, data: Dict[str, Any]) -> Transaction:
        return self._transactions.create(data)

    def create_transactions(self, rows: Iterable[Dict[str, Any]]) -> List[Transaction]:
        return self._transactions.create_many(rows)

    def list_alerts(self, customer_id: Optional[int] = None) -> List[Alert]:
        return self._alerts.list(customer_id)

    def create_alert(self, data: Dict[str, Any]) -> Alert:
        return self._alerts.create(data)

    def create_alerts(self, rows: Iterable[Dict[str, Any]]) -> List[Alert]:
        return self._alerts.create_many(rows)

    def list_sars(self) -> List[Sar]:
        return self._sars.list_all()

    def get_sar(self, sar_id: int) -> Optional[Sar]:
        return self._sars.get_by_id(sar_id)

    def create_sar(self, data: Dict[str, Any]) -> Sar:
        return self._sars.create(data)

    def update_sar(
        self,
        sar_id: int,
        values: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Sar:
        return self._sars.update(sar_id, values, expected_version)

    def list_sar_sections(self, sar_id: int) -> List[SarSection]:
        return self._sars.list_sections(sar_id)

    def get_sar_section(self, section_id: int) -> Optional[SarSection]:
        return self._sars.get_section(section_id)

    def create_sar_section(self, data: Dict[str, Any]) -> SarSection:
        return self._sars.create_section(data)

    def update_sar_section(self, section_id: int, values: Dict[str, Any]) -> SarSection:
        return self._sars.update_section(section_id, values)

    def list_sar_sentences(self, section_id: int) -> List[SarSentence]:
        return self._sars.list_sentences(section_id)

    def get_sar_sentence(self, sentence_id: int) -> Optional[SarSentence]:
        return self._sars.get_sentence(sentence_id)

    def create_sar_sentence(self, data: Dict[str, Any]) -> SarSentence:
        return self._sars.create_sentence(data)

    def list_audit_logs(self, sar_id: int) -> List[AuditLog]:
        return self._audit.list_for_sar(sar_id)

    def create_audit_log(self, data: Dict[str, Any]) -> AuditLog:
        return self._audit.log(data)

    def list_sar_versions(self, sar_id: int) -> List[SarVersion]:
        return self._versions.list_for_sar(sar_id)

    def create_sar_version(self, data: Dict[str, Any]) -> SarVersion:
        return self._versions.create(data)


# ============================================
# STORAGE BACKENDS
# ============================================

class StorageBackend(ABC):
    """Process-wide source of request-scoped SarStorage instances."""

    name: str = "abstract"

    @abstractmethod
    def open(self):
        """Context manager yielding a SarStorage for one request."""

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        pass


class DatabaseStorageBackend(StorageBackend):
    """Opens one session per request from a DatabaseSessionProvider."""

    name = "database"

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    @contextmanager
    def open(self) -> Generator[SqlAlchemyStorage, None, None]:
        with self.provider.open_session() as session:
            yield SqlAlchemyStorage(session)

    def health_check(self) -> bool:
        return self.provider.health_check()

    def close(self) -> None:
        self.provider.close()


def create_storage_backend(config) -> StorageBackend:
    """
    Build the storage backend named by configuration.

    Args:
        config: ConfigManager (uses `storage` and `database` sections)

    Returns:
        StorageBackend ready to open storages
    """
    backend = config.storage.backend

    if backend == "memory":
        from database.memory_storage import InMemoryStorage, InMemoryStorageBackend
        logger.info("Using in-memory storage backend")
        return InMemoryStorageBackend(InMemoryStorage())

    if backend == "database":
        provider = DatabaseSessionProvider(settings=DatabaseSettings.from_config(config.database))
        provider.init()
        provider.create_tables()
        logger.info(f"Using database storage backend ({provider.engine.url.render_as_string(hide_password=True)})")
        return DatabaseStorageBackend(provider)

    raise ValueError(f"Unknown storage backend: {backend}")
