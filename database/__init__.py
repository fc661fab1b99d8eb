"""
Database Package for SARCheck Suspicious Activity Reporting

This package provides:
- SQLAlchemy ORM models for customers, transactions, alerts and reports
- Engine and session provider with connect retry
- Repository pattern for data access
- Storage interface with database and in-memory adapters
- SAR lifecycle service and sample data seeding
"""

from database.models import (
    Base,
    Customer,
    Transaction,
    Alert,
    Sar,
    SarSection,
    SarSentence,
    AuditLog,
    SarVersion,
    RiskLevel,
    TransactionDirection,
    SarStatus,
    SectionType,
    ConfidenceLevel,
    AuditAction,
    GeneratedBy,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    EntityNotFoundError,
    DuplicateEntityError,
    ConcurrentModificationError,
)
from database.storage import (
    SarStorage,
    SqlAlchemyStorage,
    StorageBackend,
    DatabaseStorageBackend,
    create_storage_backend,
)
from database.memory_storage import InMemoryStorage, InMemoryStorageBackend

__all__ = [
    # Base
    'Base',
    # Models
    'Customer',
    'Transaction',
    'Alert',
    'Sar',
    'SarSection',
    'SarSentence',
    'AuditLog',
    'SarVersion',
    # Enums
    'RiskLevel',
    'TransactionDirection',
    'SarStatus',
    'SectionType',
    'ConfidenceLevel',
    'AuditAction',
    'GeneratedBy',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'create_test_provider',
    # Errors
    'RepositoryError',
    'EntityNotFoundError',
    'DuplicateEntityError',
    'ConcurrentModificationError',
    # Storage
    'SarStorage',
    'SqlAlchemyStorage',
    'StorageBackend',
    'DatabaseStorageBackend',
    'InMemoryStorage',
    'InMemoryStorageBackend',
    'create_storage_backend',
]
