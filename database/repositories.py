"""
Repository Pattern for SARCheck Database Operations

Provides clean data access layer with proper typing and error handling.
Implements the Repository pattern for separation of concerns.
"""

import logging
from typing import List, Optional, Dict, Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

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

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


class ConcurrentModificationError(RepositoryError):
    """Raised when an optimistic version check fails."""

    def __init__(self, sar_id: int, expected_version: int, actual_version: int):
        self.sar_id = sar_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"SAR {sar_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class _BaseRepository:
    """Shared add/flush handling."""

    def __init__(self, session: Session):
        self.session = session

    def _add(self, instance):
        try:
            self.session.add(instance)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"{type(instance).__name__} already exists: {e.orig}") from e
        return instance

    def _add_all(self, instances: List) -> List:
        try:
            self.session.add_all(instances)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Duplicate record in batch: {e.orig}") from e
        return instances


# ============================================
# INGESTED DATA REPOSITORIES
# ============================================

class CustomerRepository(_BaseRepository):
    """Repository for customer operations."""

    def create(self, customer_data: Dict[str, Any]) -> Customer:
        """
        Create a new customer.

        Raises:
            DuplicateEntityError: If the customer_id already exists
        """
        customer = self._add(Customer(**customer_data))
        logger.debug(f"Created customer: {customer.id} ({customer.customer_id})")
        return customer

    def create_many(self, rows: Iterable[Dict[str, Any]]) -> List[Customer]:
        return self._add_all([Customer(**row) for row in rows])

    def get_by_id(self, customer_id: int) -> Optional[Customer]:
        return self.session.get(Customer, customer_id)

    def get_by_external_id(self, external_id: str) -> Optional[Customer]:
        """Get customer by the source-system identifier (e.g. CUST-001)."""
        query = select(Customer).where(Customer.customer_id == external_id)
        return self.session.execute(query).scalar_one_or_none()

    def list_all(self) -> List[Customer]:
        """List customers, newest first."""
        query = select(Customer).order_by(Customer.created_at.desc(), Customer.id.desc())
        return list(self.session.execute(query).scalars().all())


class TransactionRepository(_BaseRepository):
    """Repository for transaction operations."""

    def create(self, transaction_data: Dict[str, Any]) -> Transaction:
        return self._add(Transaction(**transaction_data))

    def create_many(self, rows: Iterable[Dict[str, Any]]) -> List[Transaction]:
        return self._add_all([Transaction(**row) for row in rows])

    def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        return self.session.get(Transaction, transaction_id)

    def get_by_external_id(self, external_id: str) -> Optional[Transaction]:
        query = select(Transaction).where(Transaction.transaction_id == external_id)
        return self.session.execute(query).scalar_one_or_none()

    def list(self, customer_id: Optional[int] = None) -> List[Transaction]:
        """
        List transactions, most recent first.

        Args:
            customer_id: Restrict to one customer's transactions

        Returns:
            List of transactions ordered by transaction_date descending
        """
        query = select(Transaction)
        if customer_id is not None:
            query = query.where(Transaction.customer_id == customer_id)
        query = query.order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        return list(self.session.execute(query).scalars().all())


class AlertRepository(_BaseRepository):
    """Repository for pre-computed alert operations."""

    def create(self, alert_data: Dict[str, Any]) -> Alert:
        return self._add(Alert(**alert_data))

    def create_many(self, rows: Iterable[Dict[str, Any]]) -> List[Alert]:
        return self._add_all([Alert(**row) for row in rows])

    def list(self, customer_id: Optional[int] = None) -> List[Alert]:
        """List alerts, most recently triggered first, optionally for one customer."""
        query = select(Alert)
        if customer_id is not None:
            query = query.join(Transaction, Alert.transaction_id == Transaction.id).where(
                Transaction.customer_id == customer_id
            )
        query = query.order_by(Alert.triggered_at.desc(), Alert.id.desc())
        return list(self.session.execute(query).scalars().all())


# ============================================
# REPORT REPOSITORY
# ============================================

class SarRepository(_BaseRepository):
    """Repository for reports and their sections and sentences."""

    def create(self, sar_data: Dict[str, Any]) -> Sar:
        sar = self._add(Sar(**sar_data))
        logger.debug(f"Created SAR: {sar.id} for customer {sar.customer_id}")
        return sar

    def get_by_id(self, sar_id: int) -> Optional[Sar]:
        return self.session.get(Sar, sar_id)

    def list_all(self) -> List[Sar]:
        """List reports, newest first."""
        query = select(Sar).order_by(Sar.created_at.desc(), Sar.id.desc())
        return list(self.session.execute(query).scalars().all())

    def update(
        self,
        sar_id: int,
        values: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Sar:
        """
        Update mutable report fields.

        The row is locked for the rest of the transaction, so a concurrent
        editor holding the same expected version fails instead of producing
        a duplicate version number.

        Args:
            sar_id: Report id
            values: Column values to set
            expected_version: If given, the stored version must equal it

        Returns:
            Updated Sar

        Raises:
            EntityNotFoundError: If the report does not exist
            ConcurrentModificationError: If the stored version differs
        """
        query = (
            select(Sar)
            .where(Sar.id == sar_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sar = self.session.execute(query).scalar_one_or_none()

        if not sar:
            raise EntityNotFoundError("SAR", sar_id)

        if expected_version is not None and sar.version != expected_version:
            raise ConcurrentModificationError(sar_id, expected_version, sar.version)

        for key, value in values.items():
            setattr(sar, key, value)

        self.session.flush()
        return sar

    # Sections

    def create_section(self, section_data: Dict[str, Any]) -> SarSection:
        return self._add(SarSection(**section_data))

    def get_section(self, section_id: int) -> Optional[SarSection]:
        return self.session.get(SarSection, section_id)

    def list_sections(self, sar_id: int) -> List[SarSection]:
        query = (
            select(SarSection)
            .where(SarSection.sar_id == sar_id)
            .order_by(SarSection.sequence)
        )
        return list(self.session.execute(query).scalars().all())

    def update_section(self, section_id: int, values: Dict[str, Any]) -> SarSection:
        section = self.get_section(section_id)
        if not section:
            raise EntityNotFoundError("Section", section_id)

        for key, value in values.items():
            setattr(section, key, value)

        self.session.flush()
        return section

    # Sentences

    def create_sentence(self, sentence_data: Dict[str, Any]) -> SarSentence:
        return self._add(SarSentence(**sentence_data))

    def get_sentence(self, sentence_id: int) -> Optional[SarSentence]:
        return self.session.get(SarSentence, sentence_id)

    def list_sentences(self, section_id: int) -> List[SarSentence]:
        query = (
            select(SarSentence)
            .where(SarSentence.section_id == section_id)
            .order_by(SarSentence.sequence)
        )
        return list(self.session.execute(query).scalars().all())


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository(_BaseRepository):
    """Repository for audit log operations. Append-only."""

    def log(self, log_data: Dict[str, Any]) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            log_data: AuditLog column values (sar_id, user_id, action, ...)

        Returns:
            Created AuditLog
        """
        return self._add(AuditLog(**log_data))

    def list_for_sar(self, sar_id: int) -> List[AuditLog]:
        """Audit entries for a report, newest first."""
        query = (
            select(AuditLog)
            .where(AuditLog.sar_id == sar_id)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        )
        return list(self.session.execute(query).scalars().all())


# ============================================
# VERSION REPOSITORY
# ============================================

class SarVersionRepository(_BaseRepository):
    """Repository for report version snapshots. Append-only."""

    def create(self, version_data: Dict[str, Any]) -> SarVersion:
        """
        Append a version snapshot.

        Raises:
            DuplicateEntityError: If the version number already exists for the report
        """
        return self._add(SarVersion(**version_data))

    def list_for_sar(self, sar_id: int) -> List[SarVersion]:
        """Versions of a report, highest version number first."""
        query = (
            select(SarVersion)
            .where(SarVersion.sar_id == sar_id)
            .order_by(SarVersion.version_number.desc())
        )
        return list(self.session.execute(query).scalars().all())
