"""
FastAPI SARCheck API Server

Provides REST API endpoints for risk scoring, SAR generation and editing,
version comparison, audit trail and sentence evidence.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import logging
import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Generator, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query

from api.models import (
    AlertResponse,
    AuditLogResponse,
    ChangeSetResponse,
    CustomerResponse,
    DataUploadRequest,
    DataUploadResponse,
    ErrorResponse,
    ExplanationResponse,
    GenerateSarRequest,
    HealthResponse,
    RiskScoreResponse,
    RuleExplanationResponse,
    SarDetailResponse,
    SarResponse,
    SarSectionResponse,
    SarSentenceResponse,
    TransactionResponse,
    UpdateSectionRequest,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from database.sar_service import SarDetails, SarService, SectionDetails
from database.seed import seed_sample_data
from database.storage import SarStorage, StorageBackend, create_storage_backend
from logging_utils import configure_logging
from narrative_generator import NarrativeGenerator, create_narrative_generator

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH")

# Global state
_config: Optional[ConfigManager] = None
_storage_backend: Optional[StorageBackend] = None
_narrative_generator: Optional[NarrativeGenerator] = None
_startup_time: Optional[datetime] = None
_executor = ThreadPoolExecutor(max_workers=4)  # For blocking generation calls


def get_storage_backend() -> StorageBackend:
    """Dependency to get the storage backend."""
    if _storage_backend is None:
        raise HTTPException(
            status_code=503, detail="Storage not initialized. Service is starting up."
        )
    return _storage_backend


def get_narrative_generator() -> NarrativeGenerator:
    """Dependency to get the narrative generator."""
    if _narrative_generator is None:
        raise HTTPException(
            status_code=503, detail="Narrative generator not initialized. Service is starting up."
        )
    return _narrative_generator


def get_storage(
    backend: StorageBackend = Depends(get_storage_backend),
) -> Generator[SarStorage, None, None]:
    """Dependency yielding a request-scoped storage."""
    with backend.open() as storage:
        yield storage


def get_sar_service(
    storage: SarStorage = Depends(get_storage),
    generator: NarrativeGenerator = Depends(get_narrative_generator),
) -> SarService:
    return SarService(storage, generator)


# Create FastAPI application
app = FastAPI(
    title="SARCheck API",
    description="Suspicious Activity Report generation, review and audit",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, open storage and build the narrative generator."""
    global _config, _storage_backend, _narrative_generator, _startup_time

    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        configure_logging(_config.logging)
        logger.info(f"Starting SARCheck API (config: {_config.config_path})")

        _narrative_generator = create_narrative_generator(_config)
        _storage_backend = create_storage_backend(_config)

        if _config.storage.seed_sample_data:
            with _storage_backend.open() as storage:
                seed_sample_data(storage)

        _startup_time = datetime.now(timezone.utc)
        logger.info(
            "API ready: storage=%s narrative=%s in %.2f seconds",
            _storage_backend.name,
            _narrative_generator.provider,
            time.time() - start_time,
        )

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Release storage resources."""
    logger.info("Shutting down SARCheck API...")
    if _storage_backend is not None:
        _storage_backend.close()


def _section_to_response(details: SectionDetails) -> SarSectionResponse:
    response = SarSectionResponse.model_validate(details.section)
    response.sentences = [SarSentenceResponse.model_validate(s) for s in details.sentences]
    return response


def _sar_to_response(details: SarDetails) -> SarDetailResponse:
    """Transform hydrated service result to API response model."""
    response = SarDetailResponse.model_validate(details.sar)
    if details.customer is not None:
        response.customer = CustomerResponse.model_validate(details.customer)
    response.sections = [_section_to_response(section) for section in details.sections]
    response.audit_logs = [AuditLogResponse.model_validate(log) for log in details.audit_logs]
    return response


# ============================================
# CUSTOMERS, TRANSACTIONS, ALERTS
# ============================================

@app.get(
    "/api/v1/customers",
    response_model=List[CustomerResponse],
    summary="List customers",
)
def list_customers(service: SarService = Depends(get_sar_service)):
    return [CustomerResponse.model_validate(c) for c in service.list_customers()]


@app.get(
    "/api/v1/customers/{customer_id}",
    response_model=CustomerResponse,
    responses={404: {"model": ErrorResponse, "description": "Customer not found"}},
    summary="Get a customer",
)
def get_customer(customer_id: int, service: SarService = Depends(get_sar_service)):
    return CustomerResponse.model_validate(service.get_customer(customer_id))


@app.get(
    "/api/v1/transactions",
    response_model=List[TransactionResponse],
    responses={404: {"model": ErrorResponse, "description": "Customer not found"}},
    summary="List transactions",
    description="All transactions, newest first, optionally filtered by internal customer id",
)
def list_transactions(
    customer_id: Optional[int] = Query(default=None, description="Internal customer id"),
    service: SarService = Depends(get_sar_service),
):
    return [TransactionResponse.model_validate(t) for t in service.list_transactions(customer_id)]


@app.get(
    "/api/v1/alerts",
    response_model=List[AlertResponse],
    responses={404: {"model": ErrorResponse, "description": "Customer not found"}},
    summary="List alerts",
)
def list_alerts(
    customer_id: Optional[int] = Query(default=None, description="Internal customer id"),
    service: SarService = Depends(get_sar_service),
):
    return [AlertResponse.model_validate(a) for a in service.list_alerts(customer_id)]


@app.post(
    "/api/v1/data/upload",
    response_model=DataUploadResponse,
    status_code=201,
    responses={
        201: {"model": DataUploadResponse, "description": "Records created"},
        409: {"model": ErrorResponse, "description": "Duplicate source identifier"},
        422: {"model": ErrorResponse, "description": "Invalid record or unknown reference"},
    },
    summary="Upload customers, transactions and alerts",
    description="Creates all records in one transaction; nothing is stored if any record fails",
)
def upload_data(request: DataUploadRequest, service: SarService = Depends(get_sar_service)):
    result = service.ingest(
        customers=[c.model_dump() for c in request.customers],
        transactions=[t.model_dump() for t in request.transactions],
        alerts=[a.model_dump() for a in request.alerts],
    )
    return DataUploadResponse(**result.to_dict())


# ============================================
# RISK SCORING
# ============================================

@app.get(
    "/api/v1/risk-scoring/customer/{customer_id}",
    response_model=RiskScoreResponse,
    responses={404: {"model": ErrorResponse, "description": "Customer not found"}},
    summary="Score a customer",
    description="Evaluate the customer's transactions against the rule set",
)
def score_customer(customer_id: int, service: SarService = Depends(get_sar_service)):
    return RiskScoreResponse(**service.calculate_risk(customer_id).to_dict())


# ============================================
# SARS
# ============================================

@app.get(
    "/api/v1/sars",
    response_model=List[SarResponse],
    summary="List SARs",
)
def list_sars(service: SarService = Depends(get_sar_service)):
    return [SarResponse.model_validate(s) for s in service.list_sars()]


@app.post(
    "/api/v1/sars/generate",
    response_model=SarDetailResponse,
    status_code=201,
    responses={
        404: {"model": ErrorResponse, "description": "Customer not found"},
        502: {"model": ErrorResponse, "description": "Language model failed"},
    },
    summary="Generate a SAR",
    description="Score the customer, draft a narrative and persist a version 1 draft",
)
async def generate_sar(
    request: GenerateSarRequest,
    service: SarService = Depends(get_sar_service),
):
    # Model calls block for seconds; keep them off the event loop
    loop = asyncio.get_event_loop()
    details = await loop.run_in_executor(_executor, service.generate_sar, request.customer_id)
    return _sar_to_response(details)


@app.get(
    "/api/v1/sars/{sar_id}",
    response_model=SarDetailResponse,
    responses={404: {"model": ErrorResponse, "description": "SAR not found"}},
    summary="Get a SAR",
)
def get_sar(sar_id: int, service: SarService = Depends(get_sar_service)):
    return _sar_to_response(service.get_sar_details(sar_id))


@app.put(
    "/api/v1/sars/{sar_id}/sections/{section_id}",
    response_model=SarSectionResponse,
    responses={
        404: {"model": ErrorResponse, "description": "SAR or section not found"},
        409: {"model": ErrorResponse, "description": "SAR changed concurrently"},
        422: {"model": ErrorResponse, "description": "Missing reason"},
    },
    summary="Edit a section",
    description="Replace section content; records an audit entry and a new version",
)
def update_section(
    sar_id: int,
    section_id: int,
    request: UpdateSectionRequest,
    service: SarService = Depends(get_sar_service),
):
    section = service.update_section(sar_id, section_id, request.content, request.reason)
    return SarSectionResponse.model_validate(section)


@app.get(
    "/api/v1/sars/{sar_id}/compare",
    response_model=ChangeSetResponse,
    response_model_exclude_none=True,
    responses={404: {"model": ErrorResponse, "description": "SAR or version not found"}},
    summary="Compare SAR versions",
    description="Section-level changes; defaults to the two most recent versions",
)
def compare_sar(
    sar_id: int,
    from_version: Optional[int] = Query(default=None, ge=1),
    to_version: Optional[int] = Query(default=None, ge=1),
    service: SarService = Depends(get_sar_service),
):
    return ChangeSetResponse(**service.compare_sar(sar_id, from_version, to_version).to_dict())


@app.get(
    "/api/v1/sars/{sar_id}/audit-trail",
    response_model=List[AuditLogResponse],
    responses={404: {"model": ErrorResponse, "description": "SAR not found"}},
    summary="Audit trail",
    description="Audit entries for the SAR, newest first",
)
def get_audit_trail(sar_id: int, service: SarService = Depends(get_sar_service)):
    return [AuditLogResponse.model_validate(log) for log in service.get_audit_trail(sar_id)]


@app.get(
    "/api/v1/sars/sentences/{sentence_id}/explain",
    response_model=ExplanationResponse,
    responses={404: {"model": ErrorResponse, "description": "Sentence not found"}},
    summary="Explain a sentence",
    description="Resolve the transactions and rules a generated sentence cites",
)
def explain_sentence(sentence_id: int, service: SarService = Depends(get_sar_service)):
    explanation = service.explain_sentence(sentence_id)
    return ExplanationResponse(
        sentence=SarSentenceResponse.model_validate(explanation.sentence),
        supporting_transactions=[
            TransactionResponse.model_validate(t) for t in explanation.supporting_transactions
        ],
        supporting_rules=[
            RuleExplanationResponse(rule_name=r.rule_name, description=r.description)
            for r in explanation.supporting_rules
        ],
    )


# ============================================
# SERVICE
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    responses={503: {"model": ErrorResponse, "description": "Service not ready"}},
    summary="Health check",
)
def health_check(
    backend: StorageBackend = Depends(get_storage_backend),
    generator: NarrativeGenerator = Depends(get_narrative_generator),
):
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    try:
        storage_healthy = backend.health_check()
        error_message = None
    except Exception as e:
        logger.warning(f"Storage health check failed: {e}")
        storage_healthy = False
        error_message = "Storage health check failed"

    return HealthResponse(
        status="healthy" if storage_healthy else "degraded",
        storage_backend=backend.name,
        storage_healthy=storage_healthy,
        narrative_provider=generator.provider,
        uptime_seconds=uptime_seconds,
        error_message=error_message,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
