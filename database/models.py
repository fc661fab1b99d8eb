"""
SQLAlchemy ORM Models for SARCheck Suspicious Activity Reporting

This module defines the database schema for the SAR lifecycle:
- Ingested source data (customers, transactions, pre-computed alerts)
- Generated reports with ordered sections and evidence-linked sentences
- Append-only audit trail and point-in-time version snapshots

Tables:
1. customers - Customer identity and risk classification
2. transactions - Monetary transactions owned by a customer
3. alerts - Alerts raised against a single transaction at ingestion time
4. sars - Suspicious Activity Reports (one customer each)
5. sar_sections - Ordered narrative sections of a report
6. sar_sentences - Sentences of a section with supporting evidence
7. audit_logs - Append-only log of report actions
8. sar_versions - Append-only full snapshots, one per report version

Integer primary keys are used because evidence links reference
transactions by their numeric id.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, DateTime, Text, Numeric,
    ForeignKey, Index, UniqueConstraint, CheckConstraint, Enum, JSON
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware current time used for Python-side column defaults."""
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class RiskLevel(str, PyEnum):
    """Customer risk classification"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TransactionDirection(str, PyEnum):
    """Direction of funds relative to the customer"""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SarStatus(str, PyEnum):
    """Status of a report"""
    DRAFT = "draft"
    PUBLISHED = "published"


class SectionType(str, PyEnum):
    """Fixed narrative section types, in display order"""
    OVERVIEW = "OVERVIEW"
    TRANSACTION_PATTERN = "TRANSACTION_PATTERN"
    SUSPICION_RATIONALE = "SUSPICION_RATIONALE"
    CONCLUSION = "CONCLUSION"


SECTION_ORDER = (
    SectionType.OVERVIEW,
    SectionType.TRANSACTION_PATTERN,
    SectionType.SUSPICION_RATIONALE,
    SectionType.CONCLUSION,
)


class ConfidenceLevel(str, PyEnum):
    """Confidence attached to a sentence or a section"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AuditAction(str, PyEnum):
    """Type of audit action recorded against a report"""
    SAR_GENERATED = "SAR_GENERATED"
    SECTION_EDITED = "SECTION_EDITED"


class GeneratedBy(str, PyEnum):
    """Narrative path that produced a report"""
    AI = "AI"
    TEMPLATE = "TEMPLATE"


SYSTEM_ACTOR = "system"


# ============================================
# INGESTED DATA
# ============================================

class Customer(Base):
    """
    Customer under review.

    Created once by ingestion and never mutated by the SAR lifecycle.
    """
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identifier from the source system (e.g. CUST-001)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    account_number: Mapped[str] = mapped_column(String(50), nullable=False)

    risk_level: Mapped[RiskLevel] = mapped_column(
        Enum(RiskLevel),
        nullable=False,
        default=RiskLevel.LOW
    )

    # Optional KYC metadata
    country_of_residence: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    occupation: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    account_open_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    transactions: Mapped[List["Transaction"]] = relationship(
        "Transaction",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="select"
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, customer_id='{self.customer_id}', name='{self.name}')>"


class Transaction(Base):
    """
    Monetary transaction belonging to exactly one customer.

    Amounts are exact decimals so threshold comparisons never drift.
    """
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Identifier from the source system (e.g. TXN-001)
    transaction_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2, asdecimal=True), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    transaction_type: Mapped[str] = mapped_column(String(100), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        Enum(TransactionDirection),
        nullable=False
    )

    counterparty: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    counterparty_country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    customer: Mapped["Customer"] = relationship(
        "Customer",
        back_populates="transactions"
    )
    alerts: Mapped[List["Alert"]] = relationship(
        "Alert",
        back_populates="transaction",
        cascade="all, delete-orphan",
        lazy="select"
    )

    __table_args__ = (
        Index('ix_transaction_customer_date', 'customer_id', 'transaction_date'),
    )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, amount={self.amount} {self.currency}, date={self.transaction_date})>"


class Alert(Base):
    """
    Alert raised against a single transaction.

    Only alerts uploaded at ingestion are persisted. Rules triggered by the
    risk engine on demand are transient and never stored here.
    """
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    rule_name: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)

    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    transaction: Mapped["Transaction"] = relationship(
        "Transaction",
        back_populates="alerts"
    )

    def __repr__(self) -> str:
        return f"<Alert(id={self.id}, rule='{self.rule_name}', transaction_id={self.transaction_id})>"


# ============================================
# REPORT MODELS
# ============================================

class Sar(Base):
    """
    Suspicious Activity Report for one customer.

    Only `status` and `version` change after creation, and each change is
    paired with an audit log entry and a version snapshot.
    """
    __tablename__ = "sars"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    title: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[SarStatus] = mapped_column(
        Enum(SarStatus),
        nullable=False,
        default=SarStatus.DRAFT,
        index=True
    )

    # Starts at 1, incremented once per section edit
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    generated_by: Mapped[GeneratedBy] = mapped_column(
        Enum(GeneratedBy),
        nullable=False,
        default=GeneratedBy.AI
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    sections: Mapped[List["SarSection"]] = relationship(
        "SarSection",
        back_populates="sar",
        cascade="all, delete-orphan",
        order_by="SarSection.sequence",
        lazy="select"
    )
    audit_logs: Mapped[List["AuditLog"]] = relationship(
        "AuditLog",
        back_populates="sar",
        cascade="all, delete-orphan",
        lazy="select"
    )
    versions: Mapped[List["SarVersion"]] = relationship(
        "SarVersion",
        back_populates="sar",
        cascade="all, delete-orphan",
        lazy="select"
    )

    __table_args__ = (
        CheckConstraint('version >= 1', name='ck_sar_version_positive'),
    )

    def __repr__(self) -> str:
        return f"<Sar(id={self.id}, customer_id={self.customer_id}, version={self.version}, status={self.status})>"


class SarSection(Base):
    """
    Narrative section of a report.

    `sequence` is assigned at generation time and never reassigned.
    `content` is the only mutable field.
    """
    __tablename__ = "sar_sections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sar_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sars.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    section_type: Mapped[SectionType] = mapped_column(Enum(SectionType), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_level: Mapped[ConfidenceLevel] = mapped_column(
        Enum(ConfidenceLevel),
        nullable=False,
        default=ConfidenceLevel.MEDIUM
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    sar: Mapped["Sar"] = relationship(
        "Sar",
        back_populates="sections"
    )
    sentences: Mapped[List["SarSentence"]] = relationship(
        "SarSentence",
        back_populates="section",
        cascade="all, delete-orphan",
        order_by="SarSentence.sequence",
        lazy="select"
    )

    __table_args__ = (
        UniqueConstraint('sar_id', 'sequence', name='uq_section_sar_sequence'),
    )

    def __repr__(self) -> str:
        return f"<SarSection(id={self.id}, sar_id={self.sar_id}, type={self.section_type})>"


class SarSentence(Base):
    """
    Sentence of a section with its evidence links.

    Immutable once created. Supporting transaction ids are weak references
    resolved on demand; supporting rules are plain rule-name strings.
    """
    __tablename__ = "sar_sentences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    section_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sar_sections.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    sentence_text: Mapped[str] = mapped_column(Text, nullable=False)
    confidence_level: Mapped[ConfidenceLevel] = mapped_column(
        Enum(ConfidenceLevel),
        nullable=False,
        default=ConfidenceLevel.MEDIUM
    )
    supporting_transaction_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    supporting_rules: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    section: Mapped["SarSection"] = relationship(
        "SarSection",
        back_populates="sentences"
    )

    def __repr__(self) -> str:
        return f"<SarSentence(id={self.id}, section_id={self.section_id}, sequence={self.sequence})>"


# ============================================
# AUDIT AND VERSION MODELS
# ============================================

class AuditLog(Base):
    """
    Audit trail for a report.

    Immutable - no updates or deletes allowed. User edits always carry a
    reason; system entries may omit it.
    """
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sar_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sars.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    user_id: Mapped[str] = mapped_column(String(100), nullable=False, default=SYSTEM_ACTOR)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False, index=True)

    # Before/after state for edits
    field_changed: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # No updated_at - audit logs are immutable
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )

    sar: Mapped["Sar"] = relationship(
        "Sar",
        back_populates="audit_logs"
    )

    __table_args__ = (
        Index('ix_audit_sar_timestamp', 'sar_id', 'timestamp'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, sar_id={self.sar_id}, action={self.action})>"


class SarVersion(Base):
    """
    Point-in-time snapshot of a report, one per version number.

    `snapshot_data` holds a serialized `database.snapshots.SarSnapshot`.
    """
    __tablename__ = "sar_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sar_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sars.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_data: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    sar: Mapped["Sar"] = relationship(
        "Sar",
        back_populates="versions"
    )

    __table_args__ = (
        UniqueConstraint('sar_id', 'version_number', name='uq_sar_version_number'),
    )

    def __repr__(self) -> str:
        return f"<SarVersion(sar_id={self.sar_id}, version={self.version_number})>"
