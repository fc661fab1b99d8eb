"""
In-memory SarStorage

Dict-backed implementation of the storage interface for tests and the
default development setup. Rows are kept as plain column dictionaries and
materialized as detached ORM instances on every read, so callers can never
mutate stored state without going through an update operation.

All operations, including whole transactions, are serialized by a single
re-entrant lock.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Tuple, Type

from sqlalchemy import inspect as sa_inspect

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
)
from database.repositories import (
    EntityNotFoundError,
    DuplicateEntityError,
    ConcurrentModificationError,
)
from database.storage import SarStorage, StorageBackend

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Unique keys enforced per table, mirroring the database constraints
_UNIQUE_KEYS: Dict[Type[Base], List[Tuple[str, ...]]] = {
    Customer: [("customer_id",)],
    Transaction: [("transaction_id",)],
    SarSection: [("sar_id", "sequence")],
    SarVersion: [("sar_id", "version_number")],
}


def _sort_time(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InMemoryStorage(SarStorage):
    """Map-backed SarStorage with transactional rollback."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[Type[Base], Dict[int, Dict[str, Any]]] = {
            model: {} for model in (
                Customer, Transaction, Alert, Sar,
                SarSection, SarSentence, AuditLog, SarVersion,
            )
        }
        self._next_ids: Dict[Type[Base], int] = {model: 1 for model in self._tables}
        self._depth = 0

    # ============================================
    # TRANSACTIONS
    # ============================================

    @contextmanager
    def transaction(self) -> Generator["InMemoryStorage", None, None]:
        """
        Hold the store lock for the whole unit of work.

        On exception every table and id counter is restored to its state at
        the start of the outermost transaction.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                saved_tables = copy.deepcopy(self._tables)
                saved_ids = dict(self._next_ids)
            self._depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self._tables = saved_tables
                    self._next_ids = saved_ids
                    logger.debug("In-memory transaction rolled back")
                raise
            finally:
                self._depth -= 1

    # ============================================
    # ROW HELPERS
    # ============================================

    @staticmethod
    def _column_defaults(model: Type[Base]) -> Dict[str, Any]:
        defaults = {}
        for column in sa_inspect(model).columns:
            if column.default is None:
                continue
            arg = column.default.arg
            defaults[column.key] = arg(None) if column.default.is_callable else arg
        return defaults

    def _insert(self, model: Type[Base], data: Dict[str, Any]):
        # Constructing the model rejects unknown column names
        model(**data)

        with self._lock:
            row = {column.key: None for column in sa_inspect(model).columns}
            row.update(self._column_defaults(model))
            row.update({k: v for k, v in data.items() if v is not None})

            for key in _UNIQUE_KEYS.get(model, []):
                values = tuple(row[k] for k in key)
                for existing in self._tables[model].values():
                    if tuple(existing[k] for k in key) == values:
                        raise DuplicateEntityError(
                            f"{model.__name__} already exists: {dict(zip(key, values))}"
                        )

            row["id"] = self._next_ids[model]
            self._next_ids[model] += 1
            self._tables[model][row["id"]] = copy.deepcopy(row)
            return self._materialize(model, row)

    @staticmethod
    def _materialize(model: Type[Base], row: Dict[str, Any]):
        return model(**copy.deepcopy(row))

    def _get(self, model: Type[Base], row_id: int):
        with self._lock:
            row = self._tables[model].get(row_id)
            return self._materialize(model, row) if row is not None else None

    def _select(
        self,
        model: Type[Base],
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        sort_key: Optional[Callable[[Dict[str, Any]], Any]] = None,
        reverse: bool = False
    ) -> List:
        with self._lock:
            rows = [r for r in self._tables[model].values() if predicate is None or predicate(r)]
            if sort_key is not None:
                rows.sort(key=sort_key, reverse=reverse)
            return [self._materialize(model, r) for r in rows]

    def _update(self, model: Type[Base], row_id: int, values: Dict[str, Any], label: str):
        with self._lock:
            row = self._tables[model].get(row_id)
            if row is None:
                raise EntityNotFoundError(label, row_id)
            unknown = set(values) - set(row)
            if unknown:
                raise TypeError(f"Unknown {model.__name__} fields: {sorted(unknown)}")
            row.update(copy.deepcopy(values))
            return self._materialize(model, row)

    # ============================================
    # CUSTOMERS
    # ============================================

    def list_customers(self) -> List[Customer]:
        return self._select(
            Customer,
            sort_key=lambda r: (_sort_time(r["created_at"]), r["id"]),
            reverse=True
        )

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        return self._get(Customer, customer_id)

    def get_customer_by_external_id(self, external_id: str) -> Optional[Customer]:
        found = self._select(Customer, lambda r: r["customer_id"] == external_id)
        return found[0] if found else None

    def create_customer(self, data: Dict[str, Any]) -> Customer:
        return self._insert(Customer, data)

    # ============================================
    # TRANSACTIONS
    # ============================================

    def list_transactions(self, customer_id: Optional[int] = None) -> List[Transaction]:
        return self._select(
            Transaction,
            (lambda r: r["customer_id"] == customer_id) if customer_id is not None else None,
            sort_key=lambda r: (_sort_time(r["transaction_date"]), r["id"]),
            reverse=True
        )

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self._get(Transaction, transaction_id)

    def get_transaction_by_external_id(self, external_id: str) -> Optional[Transaction]:
        found = self._select(Transaction, lambda r: r["transaction_id"] == external_id)
        return found[0] if found else None

    def create_transaction(self, data: Dict[str, Any]) -> Transaction:
        return self._insert(Transaction, data)

    # ============================================
    # ALERTS
    # ============================================

    def list_alerts(self, customer_id: Optional[int] = None) -> List[Alert]:
        with self._lock:
            predicate = None
            if customer_id is not None:
                owned = {
                    tid for tid, row in self._tables[Transaction].items()
                    if row["customer_id"] == customer_id
                }
                predicate = lambda r: r["transaction_id"] in owned  # noqa: E731
            return self._select(
                Alert,
                predicate,
                sort_key=lambda r: (_sort_time(r["triggered_at"]), r["id"]),
                reverse=True
            )

    def create_alert(self, data: Dict[str, Any]) -> Alert:
        return self._insert(Alert, data)

    # ============================================
    # REPORTS
    # ============================================

    def list_sars(self) -> List[Sar]:
        return self._select(
            Sar,
            sort_key=lambda r: (_sort_time(r["created_at"]), r["id"]),
            reverse=True
        )

    def get_sar(self, sar_id: int) -> Optional[Sar]:
        return self._get(Sar, sar_id)

    def create_sar(self, data: Dict[str, Any]) -> Sar:
        return self._insert(Sar, data)

    def update_sar(
        self,
        sar_id: int,
        values: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Sar:
        with self._lock:
            row = self._tables[Sar].get(sar_id)
            if row is None:
                raise EntityNotFoundError("SAR", sar_id)
            if expected_version is not None and row["version"] != expected_version:
                raise ConcurrentModificationError(sar_id, expected_version, row["version"])
            return self._update(Sar, sar_id, values, "SAR")

    def list_sar_sections(self, sar_id: int) -> List[SarSection]:
        return self._select(
            SarSection,
            lambda r: r["sar_id"] == sar_id,
            sort_key=lambda r: r["sequence"]
        )

    def get_sar_section(self, section_id: int) -> Optional[SarSection]:
        return self._get(SarSection, section_id)

    def create_sar_section(self, data: Dict[str, Any]) -> SarSection:
        return self._insert(SarSection, data)

    def update_sar_section(self, section_id: int, values: Dict[str, Any]) -> SarSection:
        return self._update(SarSection, section_id, values, "Section")

    def list_sar_sentences(self, section_id: int) -> List[SarSentence]:
        return self._select(
            SarSentence,
            lambda r: r["section_id"] == section_id,
            sort_key=lambda r: r["sequence"]
        )

    def get_sar_sentence(self, sentence_id: int) -> Optional[SarSentence]:
        return self._get(SarSentence, sentence_id)

    def create_sar_sentence(self, data: Dict[str, Any]) -> SarSentence:
        return self._insert(SarSentence, data)

    # ============================================
    # AUDIT TRAIL AND VERSIONS
    # ============================================

    def list_audit_logs(self, sar_id: int) -> List[AuditLog]:
        return self._select(
            AuditLog,
            lambda r: r["sar_id"] == sar_id,
            sort_key=lambda r: (_sort_time(r["timestamp"]), r["id"]),
            reverse=True
        )

    def create_audit_log(self, data: Dict[str, Any]) -> AuditLog:
        return self._insert(AuditLog, data)

    def list_sar_versions(self, sar_id: int) -> List[SarVersion]:
        return self._select(
            SarVersion,
            lambda r: r["sar_id"] == sar_id,
            sort_key=lambda r: r["version_number"],
            reverse=True
        )

    def create_sar_version(self, data: Dict[str, Any]) -> SarVersion:
        return self._insert(SarVersion, data)

    # Bulk variants keep all-or-nothing semantics

    def create_customers(self, rows: Iterable[Dict[str, Any]]) -> List[Customer]:
        with self.transaction():
            return [self.create_customer(row) for row in rows]

    def create_transactions(self, rows: Iterable[Dict[str, Any]]) -> List[Transaction]:
        with self.transaction():
            return [self.create_transaction(row) for row in rows]

    def create_alerts(self, rows: Iterable[Dict[str, Any]]) -> List[Alert]:
        with self.transaction():
            return [self.create_alert(row) for row in rows]


class InMemoryStorageBackend(StorageBackend):
    """Hands out the same shared store to every request."""

    name = "memory"

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    @contextmanager
    def open(self) -> Generator[InMemoryStorage, None, None]:
        yield self.storage
