"""
Pydantic request/response schemas for the SARCheck API

Response models read directly from ORM instances (`from_attributes`), so
both storage adapters serialize the same way.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from database.models import (
    AuditAction,
    ConfidenceLevel,
    GeneratedBy,
    RiskLevel,
    SarStatus,
    SectionType,
    TransactionDirection,
)


# ============================================
# INGESTION REQUESTS
# ============================================

class CustomerUpload(BaseModel):
    """Customer record in a data upload."""
    customer_id: str = Field(..., min_length=1, max_length=50, description="Source customer identifier (e.g. CUST-001)")
    name: str = Field(..., min_length=1, max_length=200)
    account_number: str = Field(..., min_length=1, max_length=50)
    risk_level: RiskLevel = Field(default=RiskLevel.LOW)
    country_of_residence: Optional[str] = Field(default=None, max_length=100)
    occupation: Optional[str] = Field(default=None, max_length=200)
    account_open_date: Optional[datetime] = None


class TransactionUpload(BaseModel):
    """Transaction record in a data upload."""
    transaction_id: str = Field(..., min_length=1, max_length=50, description="Source transaction identifier (e.g. TXN-001)")
    customer_id: str = Field(..., min_length=1, description="Source identifier of the owning customer")
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    transaction_type: str = Field(..., min_length=1, max_length=100)
    direction: TransactionDirection
    counterparty: Optional[str] = Field(default=None, max_length=500)
    counterparty_country: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    transaction_date: datetime

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class AlertUpload(BaseModel):
    """Pre-computed alert in a data upload."""
    transaction_id: str = Field(..., min_length=1, description="Source identifier of the alerted transaction")
    rule_name: str = Field(..., min_length=1, max_length=100)
    rule_description: Optional[str] = None
    risk_score: int = Field(..., ge=0)
    triggered_at: Optional[datetime] = None


class DataUploadRequest(BaseModel):
    """Bulk JSON upload. All lists are optional."""
    customers: List[CustomerUpload] = Field(default_factory=list)
    transactions: List[TransactionUpload] = Field(default_factory=list)
    alerts: List[AlertUpload] = Field(default_factory=list)


class DataUploadResponse(BaseModel):
    customers_created: int = Field(..., ge=0)
    transactions_created: int = Field(..., ge=0)
    alerts_created: int = Field(..., ge=0)


# ============================================
# SAR REQUESTS
# ============================================

class GenerateSarRequest(BaseModel):
    """Request schema for SAR generation."""
    customer_id: int = Field(..., gt=0, description="Internal customer id")


class UpdateSectionRequest(BaseModel):
    """Request schema for a section edit.

    `reason` is checked by the service so a blank reason and a missing one
    produce the same error.
    """
    content: str = Field(..., description="New section content")
    reason: Optional[str] = Field(default=None, description="Why the section is being changed")


# ============================================
# ENTITY RESPONSES
# ============================================

class CustomerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    name: str
    account_number: str
    risk_level: RiskLevel
    country_of_residence: Optional[str] = None
    occupation: Optional[str] = None
    account_open_date: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    transaction_id: str
    amount: Decimal
    currency: str
    transaction_type: str
    direction: TransactionDirection
    counterparty: Optional[str] = None
    counterparty_country: Optional[str] = None
    description: Optional[str] = None
    transaction_date: datetime


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    rule_name: str
    rule_description: Optional[str] = None
    risk_score: int
    triggered_at: Optional[datetime] = None


class RuleCheckResponse(BaseModel):
    rule_name: str
    description: str
    risk_score: int
    affected_transactions: List[int] = Field(default_factory=list)


class RiskScoreResponse(BaseModel):
    """Risk scoring result for one customer."""
    customer_id: Optional[int] = None
    total_risk_score: int = Field(..., ge=0)
    triggered_rules: List[str] = Field(default_factory=list)
    flagged_transactions: List[int] = Field(default_factory=list)
    rule_checks: List[RuleCheckResponse] = Field(default_factory=list)


# ============================================
# SAR RESPONSES
# ============================================

class SarSentenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    section_id: int
    sentence_text: str
    confidence_level: ConfidenceLevel
    supporting_transaction_ids: List[int] = Field(default_factory=list)
    supporting_rules: List[str] = Field(default_factory=list)
    sequence: int


class SarSectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sar_id: int
    section_type: SectionType
    content: str
    confidence_level: ConfidenceLevel
    sequence: int
    sentences: List[SarSentenceResponse] = Field(default_factory=list)


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sar_id: int
    user_id: str
    action: AuditAction
    field_changed: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime


class SarResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    title: str
    status: SarStatus
    version: int = Field(..., ge=1)
    generated_by: GeneratedBy
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SarDetailResponse(SarResponse):
    """SAR with customer, sections, sentences and audit trail."""
    customer: Optional[CustomerResponse] = None
    sections: List[SarSectionResponse] = Field(default_factory=list)
    audit_logs: List[AuditLogResponse] = Field(default_factory=list)


class SectionChangeResponse(BaseModel):
    type: str = Field(..., description="added, modified or removed")
    section_id: int
    section_type: str
    old_content: Optional[str] = None
    new_content: Optional[str] = None


class ChangeSetResponse(BaseModel):
    current_version: int
    previous_version: int
    changes: List[SectionChangeResponse] = Field(default_factory=list)


class RuleExplanationResponse(BaseModel):
    rule_name: str
    description: str


class ExplanationResponse(BaseModel):
    """Evidence behind a generated sentence."""
    sentence: SarSentenceResponse
    supporting_transactions: List[TransactionResponse] = Field(default_factory=list)
    supporting_rules: List[RuleExplanationResponse] = Field(default_factory=list)


# ============================================
# SERVICE RESPONSES
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    storage_backend: str = Field(..., description="Active storage backend (memory, database)")
    storage_healthy: bool = Field(default=True)
    narrative_provider: str = Field(..., description="Narrative path (template, openai)")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
