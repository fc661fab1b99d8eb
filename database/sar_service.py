"""
SAR Lifecycle Service for SARCheck

Orchestrates the report lifecycle on top of a SarStorage:
- Risk scoring of a customer's transactions
- SAR generation (risk engine -> narrative -> persisted report, audit entry, version 1)
- Section edits with mandatory reason, audit entry, version bump and snapshot
- Version comparison and audit trail retrieval
- Evidence resolution for generated sentences
- Bulk ingestion of customers, transactions and pre-computed alerts

Storage and the narrative generator are passed in explicitly so the service
can run against the database adapter or the in-memory adapter.

Usage:
    with backend.open() as storage:
        service = SarService(storage, narrative_generator)
        details = service.generate_sar(customer_id=1)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import risk_engine
from database.models import (
    Customer,
    Transaction,
    Alert,
    Sar,
    SarSection,
    SarSentence,
    AuditLog,
    AuditAction,
    SarStatus,
    SYSTEM_ACTOR,
    utcnow,
)
from database.repositories import EntityNotFoundError
from database.snapshots import SarSnapshot
from database.storage import SarStorage
from logging_utils import sanitize_for_logging
from narrative_generator import NarrativeGenerator
from risk_engine import RiskScoreResult
from version_diff import ChangeSet, diff_snapshots

logger = logging.getLogger(__name__)

DEFAULT_EDITOR = "user"
GENERATION_REASON = "Initial AI generation"

# Ingested timestamps are normalized to UTC; SQLite stores no offset
_TIMESTAMP_FIELDS = ("account_open_date", "transaction_date", "triggered_at")


def _to_utc(row: Dict[str, Any]) -> Dict[str, Any]:
    for name in _TIMESTAMP_FIELDS:
        value = row.get(name)
        if isinstance(value, datetime) and value.tzinfo is not None:
            row[name] = value.astimezone(timezone.utc)
    return row


class InputValidationError(ValueError):
    """Raised when input validation fails

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        message: Human-readable error message
        suggestion: Optional suggestion for fixing the error
    """
    def __init__(self, message: str, field: str = "unknown", code: str = "VALIDATION_ERROR", suggestion: str = ""):
        self.field = field
        self.code = code
        self.suggestion = suggestion
        super().__init__(message)


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class SectionDetails:
    """Section with its ordered sentences"""
    section: SarSection
    sentences: List[SarSentence] = field(default_factory=list)


@dataclass
class SarDetails:
    """Fully hydrated report"""
    sar: Sar
    customer: Optional[Customer]
    sections: List[SectionDetails] = field(default_factory=list)
    audit_logs: List[AuditLog] = field(default_factory=list)


@dataclass
class RuleExplanation:
    rule_name: str
    description: str


@dataclass
class Explanation:
    """Evidence behind one generated sentence"""
    sentence: SarSentence
    supporting_transactions: List[Transaction] = field(default_factory=list)
    supporting_rules: List[RuleExplanation] = field(default_factory=list)


@dataclass
class IngestionResult:
    customers_created: int = 0
    transactions_created: int = 0
    alerts_created: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'customers_created': self.customers_created,
            'transactions_created': self.transactions_created,
            'alerts_created': self.alerts_created
        }


# ============================================
# SERVICE
# ============================================

class SarService:
    """
    SAR lifecycle operations.

    Args:
        storage: Persistence adapter for this unit of work
        narrative_generator: Narrative generator (template path if omitted)
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        storage: SarStorage,
        narrative_generator: Optional[NarrativeGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.narrative_generator = narrative_generator or NarrativeGenerator()
        self._clock = clock or utcnow

    # ============================================
    # LOOKUPS
    # ============================================

    def _require_customer(self, customer_id: int) -> Customer:
        customer = self.storage.get_customer(customer_id)
        if customer is None:
            raise EntityNotFoundError("Customer", customer_id)
        return customer

    def _require_sar(self, sar_id: int) -> Sar:
        sar = self.storage.get_sar(sar_id)
        if sar is None:
            raise EntityNotFoundError("SAR", sar_id)
        return sar

    def list_customers(self) -> List[Customer]:
        return self.storage.list_customers()

    def get_customer(self, customer_id: int) -> Customer:
        return self._require_customer(customer_id)

    def list_transactions(self, customer_id: Optional[int] = None) -> List[Transaction]:
        if customer_id is not None:
            self._require_customer(customer_id)
        return self.storage.list_transactions(customer_id)

    def list_alerts(self, customer_id: Optional[int] = None) -> List[Alert]:
        if customer_id is not None:
            self._require_customer(customer_id)
        return self.storage.list_alerts(customer_id)

    def list_sars(self) -> List[Sar]:
        return self.storage.list_sars()

    def get_sar_details(self, sar_id: int) -> SarDetails:
        """
        Load a report with its customer, sections, sentences and audit trail.

        Raises:
            EntityNotFoundError: If the report does not exist
        """
        sar = self._require_sar(sar_id)
        sections = [
            SectionDetails(section=section, sentences=self.storage.list_sar_sentences(section.id))
            for section in self.storage.list_sar_sections(sar.id)
        ]
        return SarDetails(
            sar=sar,
            customer=self.storage.get_customer(sar.customer_id),
            sections=sections,
            audit_logs=self.storage.list_audit_logs(sar.id)
        )

    # ============================================
    # RISK AND GENERATION
    # ============================================

    def calculate_risk(self, customer_id: int) -> RiskScoreResult:
        """
        Score a customer's transactions.

        Raises:
            EntityNotFoundError: If the customer does not exist
        """
        customer = self._require_customer(customer_id)
        transactions = self.storage.list_transactions(customer.id)
        alerts = self.storage.list_alerts(customer.id)
        return risk_engine.score(transactions, alerts, customer_id=customer.id)

    def generate_sar(self, customer_id: int) -> SarDetails:
        """
        Generate and persist a new SAR for a customer.

        Scoring and narrative generation run first; every write then happens
        in a single storage transaction so a failure leaves nothing behind.

        Raises:
            EntityNotFoundError: If the customer does not exist
            NarrativeGenerationError: If the configured language model fails
        """
        customer = self._require_customer(customer_id)
        transactions = self.storage.list_transactions(customer.id)
        alerts = self.storage.list_alerts(customer.id)

        risk = risk_engine.score(transactions, alerts, customer_id=customer.id)
        narrative = self.narrative_generator.generate(customer, transactions, risk)

        now = self._clock()
        with self.storage.transaction():
            sar = self.storage.create_sar({
                'customer_id': customer.id,
                'title': f"SAR for {customer.name} - {now.date().isoformat()}",
                'status': SarStatus.DRAFT,
                'version': 1,
                'generated_by': narrative.generated_by,
                'created_at': now,
                'updated_at': now,
            })

            sections = []
            for sequence, narrative_section in enumerate(narrative.sections):
                section = self.storage.create_sar_section({
                    'sar_id': sar.id,
                    'section_type': narrative_section.section_type,
                    'content': narrative_section.content,
                    'confidence_level': narrative_section.confidence_level,
                    'sequence': sequence,
                    'created_at': now,
                })
                sections.append(section)

                for sentence_sequence, sentence in enumerate(narrative_section.sentences):
                    self.storage.create_sar_sentence({
                        'section_id': section.id,
                        'sentence_text': sentence.text,
                        'confidence_level': sentence.confidence,
                        'supporting_transaction_ids': list(sentence.supporting_transaction_ids),
                        'supporting_rules': list(sentence.supporting_rules),
                        'sequence': sentence_sequence,
                        'created_at': now,
                    })

            self.storage.create_audit_log({
                'sar_id': sar.id,
                'user_id': SYSTEM_ACTOR,
                'action': AuditAction.SAR_GENERATED,
                'reason': GENERATION_REASON,
                'timestamp': now,
            })

            snapshot = SarSnapshot.capture(sar, sections)
            self.storage.create_sar_version({
                'sar_id': sar.id,
                'version_number': 1,
                'snapshot_data': snapshot.to_dict(),
                'created_at': now,
            })

        logger.info(
            f"SAR {sar.id} generated for customer {customer.customer_id}: "
            f"score={risk.total_risk_score}, rules={len(risk.triggered_rules)}, "
            f"generated_by={narrative.generated_by.value}"
        )
        return self.get_sar_details(sar.id)

    # ============================================
    # EDITS
    # ============================================

    def update_section(
        self,
        sar_id: int,
        section_id: int,
        content: str,
        reason: Optional[str],
        user_id: str = DEFAULT_EDITOR
    ) -> SarSection:
        """
        Replace a section's content.

        The edit, its audit entry, the version bump and the new snapshot are
        written in one storage transaction.

        Args:
            sar_id: Report id
            section_id: Section id, must belong to the report
            content: New section content
            reason: Mandatory justification for the edit
            user_id: Actor recorded in the audit log

        Returns:
            Updated SarSection

        Raises:
            InputValidationError: If the reason is missing or blank
            EntityNotFoundError: If the report or section does not exist
            ConcurrentModificationError: If the report changed underneath the edit
        """
        reason_text = (reason or "").strip()
        if not reason_text:
            raise InputValidationError(
                "A reason is required for every section edit",
                field="reason",
                code="REASON_REQUIRED",
                suggestion="Describe why the section content is being changed"
            )
        if not isinstance(content, str):
            raise InputValidationError(
                "Section content must be text",
                field="content",
                code="INVALID_CONTENT"
            )

        with self.storage.transaction():
            sar = self._require_sar(sar_id)
            section = self.storage.get_sar_section(section_id)
            if section is None or section.sar_id != sar.id:
                raise EntityNotFoundError("Section", section_id)

            now = self._clock()
            old_content = section.content
            updated = self.storage.update_sar_section(section.id, {'content': content})

            self.storage.create_audit_log({
                'sar_id': sar.id,
                'user_id': user_id,
                'action': AuditAction.SECTION_EDITED,
                'field_changed': f"section_{section.id}",
                'old_value': old_content,
                'new_value': content,
                'reason': reason_text,
                'timestamp': now,
            })

            new_version = sar.version + 1
            sar = self.storage.update_sar(
                sar.id,
                {'version': new_version, 'updated_at': now},
                expected_version=sar.version
            )

            snapshot = SarSnapshot.capture(sar, self.storage.list_sar_sections(sar.id))
            self.storage.create_sar_version({
                'sar_id': sar.id,
                'version_number': new_version,
                'snapshot_data': snapshot.to_dict(),
                'created_at': now,
            })

        logger.info(
            f"SAR {sar_id} section {section_id} edited by {sanitize_for_logging(user_id)}: "
            f"version={new_version}, reason='{sanitize_for_logging(reason_text)}'"
        )
        return updated

    # ============================================
    # HISTORY
    # ============================================

    def compare_sar(
        self,
        sar_id: int,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None
    ) -> ChangeSet:
        """
        Compare two versions of a report.

        Without arguments the two most recent versions are compared; a report
        with a single version yields an empty change set.

        Args:
            sar_id: Report id
            from_version: Older version (defaults to the one before `to_version`)
            to_version: Newer version (defaults to the latest)

        Raises:
            EntityNotFoundError: If the report or a requested version does not exist
            InputValidationError: If from_version is not lower than to_version
        """
        sar = self._require_sar(sar_id)
        versions = self.storage.list_sar_versions(sar.id)

        if from_version is None and to_version is None:
            if len(versions) < 2:
                return ChangeSet(current_version=sar.version, previous_version=sar.version)
            current, previous = versions[0], versions[1]
        else:
            by_number = {v.version_number: v for v in versions}
            target = to_version if to_version is not None else max(by_number, default=sar.version)
            if target not in by_number:
                raise EntityNotFoundError("SAR version", f"{sar_id} v{target}")

            if from_version is None:
                earlier = [n for n in by_number if n < target]
                if not earlier:
                    return ChangeSet(current_version=target, previous_version=target)
                from_version = max(earlier)
            elif from_version >= target:
                raise InputValidationError(
                    f"from_version ({from_version}) must be lower than to_version ({target})",
                    field="from_version",
                    code="INVALID_VERSION_RANGE",
                    suggestion="Pass the older version as from_version"
                )
            if from_version not in by_number:
                raise EntityNotFoundError("SAR version", f"{sar_id} v{from_version}")

            current, previous = by_number[target], by_number[from_version]

        changes = diff_snapshots(
            SarSnapshot.from_dict(previous.snapshot_data),
            SarSnapshot.from_dict(current.snapshot_data)
        )
        changes.current_version = current.version_number
        changes.previous_version = previous.version_number
        return changes

    def get_audit_trail(self, sar_id: int) -> List[AuditLog]:
        """Audit entries for a report, newest first."""
        sar = self._require_sar(sar_id)
        return self.storage.list_audit_logs(sar.id)

    # ============================================
    # EVIDENCE
    # ============================================

    def explain_sentence(self, sentence_id: int) -> Explanation:
        """
        Resolve the evidence a sentence declares.

        Transaction ids that no longer resolve are dropped; unknown rule names
        get the unknown-rule description.

        Raises:
            EntityNotFoundError: If the sentence does not exist
        """
        sentence = self.storage.get_sar_sentence(sentence_id)
        if sentence is None:
            raise EntityNotFoundError("Sentence", sentence_id)

        transactions = []
        for transaction_id in sentence.supporting_transaction_ids or []:
            transaction = self.storage.get_transaction(transaction_id)
            if transaction is not None:
                transactions.append(transaction)

        rules = [
            RuleExplanation(rule_name=name, description=risk_engine.get_rule_description(name))
            for name in sentence.supporting_rules or []
        ]
        return Explanation(sentence=sentence, supporting_transactions=transactions, supporting_rules=rules)

    # ============================================
    # INGESTION
    # ============================================

    def ingest(
        self,
        customers: Sequence[Dict[str, Any]] = (),
        transactions: Sequence[Dict[str, Any]] = (),
        alerts: Sequence[Dict[str, Any]] = ()
    ) -> IngestionResult:
        """
        Create customers, transactions and alerts in one transaction.

        Transactions reference their customer by the source `customer_id`
        (e.g. "CUST-001"); alerts reference their transaction by the source
        `transaction_id` (e.g. "TXN-001"). References may point at records in
        the same batch or already stored.

        Raises:
            InputValidationError: If a reference does not resolve
            DuplicateEntityError: If a source identifier already exists
        """
        result = IngestionResult()
        now = self._clock()

        with self.storage.transaction():
            if customers:
                created = self.storage.create_customers([_to_utc(dict(row)) for row in customers])
                result.customers_created = len(created)

            if transactions:
                rows = []
                for index, row in enumerate(transactions):
                    row = _to_utc(dict(row))
                    ref = row.pop('customer_id')
                    customer = self.storage.get_customer_by_external_id(ref)
                    if customer is None:
                        raise InputValidationError(
                            f"Unknown customer '{ref}'",
                            field=f"transactions[{index}].customer_id",
                            code="UNKNOWN_REFERENCE",
                            suggestion="Upload the customer first or include it in the same batch"
                        )
                    row['customer_id'] = customer.id
                    rows.append(row)
                result.transactions_created = len(self.storage.create_transactions(rows))

            if alerts:
                rows = []
                for index, row in enumerate(alerts):
                    row = _to_utc(dict(row))
                    ref = row.pop('transaction_id')
                    transaction = self.storage.get_transaction_by_external_id(ref)
                    if transaction is None:
                        raise InputValidationError(
                            f"Unknown transaction '{ref}'",
                            field=f"alerts[{index}].transaction_id",
                            code="UNKNOWN_REFERENCE",
                            suggestion="Upload the transaction first or include it in the same batch"
                        )
                    row['transaction_id'] = transaction.id
                    row.setdefault('triggered_at', now)
                    if row['triggered_at'] is None:
                        row['triggered_at'] = now
                    rows.append(row)
                result.alerts_created = len(self.storage.create_alerts(rows))

        logger.info(
            f"Ingested {result.customers_created} customers, "
            f"{result.transactions_created} transactions, {result.alerts_created} alerts"
        )
        return result
