"""
Capture Reconciler — FastAPI Server
===================================

HTTP surface for reconciling captured documents against their sources.

Endpoints:
    GET  /health                                        Health check / readiness probe
    POST /documents                                     Register a captured document
    GET  /documents/{id}                                Stored document (with ledger)
    POST /documents/{id}/reconcile                      Re-validate and persist
    POST /documents/{id}/line-items/{index}/{action}    Operator approve / reject
    POST /documents/{id}/fields/{field}/suggest         AI opinion on one field
    POST /documents/{id}/export                         Freeze the document
    POST /geometry/highlights                           Field values → page boxes
    POST /calculation/verify                            Line-item sum vs. total
    POST /redaction/composite                           Composite detector regions
    POST /redaction/detect                              Keyword / PII detection

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import Field

from capture_reconciler import __version__
from capture_reconciler.calculation import verify_calculation
from capture_reconciler.exceptions import (
    DocumentExportedError,
    DocumentNotFoundError,
    LedgerTransitionError,
    LookupConfigError,
    LookupSourceError,
    LookupUnavailableError,
    ReconciliationError,
    StaleRunError,
)
from capture_reconciler.geometry import highlight_fields
from capture_reconciler.ledger import summarize
from capture_reconciler.models import (
    CalculationCheck,
    DetectedKeyword,
    Document,
    FieldSuggestion,
    LedgerSummary,
    LineItem,
    LookupConfig,
    LookupValidation,
    ProvenancedValue,
    ReconciliationReport,
    RedactionRegion,
    WireModel,
    WordBox,
)
from capture_reconciler.pipeline import ReconciliationPipeline
from capture_reconciler.redaction import compose_regions, detect_keywords, summarize_detections
from capture_reconciler.redaction_terms import PATTERN_PRESETS

# ─── Load .env if available ──────────────────────────────────────────
try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Application Lifespan ────────────────────────────────────────────

_pipeline: ReconciliationPipeline | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the pipeline (in-memory record store) on startup."""
    global _pipeline  # noqa: PLW0603
    _pipeline = ReconciliationPipeline()
    yield
    await _pipeline.close()
    _pipeline = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Capture Reconciler API",
    description=(
        "Reconciles OCR output, word geometry, external lookups, PII and "
        "compliance detections, and line-item arithmetic into decisions an "
        "operator can accept, override or reject."
    ),
    version=__version__,
    lifespan=lifespan,
)

_STATUS_CODES: dict[type[ReconciliationError], int] = {
    DocumentNotFoundError: 404,
    LedgerTransitionError: 422,
    StaleRunError: 409,
    DocumentExportedError: 409,
    LookupConfigError: 400,
    LookupSourceError: 502,
    LookupUnavailableError: 503,
}


@app.exception_handler(ReconciliationError)
async def _reconciliation_error(request: Request, exc: ReconciliationError) -> JSONResponse:
    status = _STATUS_CODES.get(type(exc), 500)
    if status >= 500:
        logger.error("%s %s failed: [%s] %s", request.method, request.url.path, exc.code, exc)
    return JSONResponse(
        status_code=status,
        content={"code": exc.code, "message": str(exc), "details": exc.details},
    )


# ─── Request / Response Schemas ─────────────────────────────────────


class ReconcileRequest(WireModel):
    """Detector output and lookup configuration for one reconciliation run."""

    lookup_config: Optional[LookupConfig] = None
    pii: list[dict[str, Any]] = Field(default_factory=list)
    compliance: list[dict[str, Any]] = Field(default_factory=list)
    pii_flagged: Optional[bool] = None


class ActionRequest(WireModel):
    operator: str = Field(..., min_length=1, description="Who made the decision.")


class LedgerResponse(WireModel):
    document_id: str
    lookup_validation: LookupValidation
    summary: LedgerSummary
    needs_review: bool


class SuggestRequest(WireModel):
    field_type: str = "text"
    context: Optional[str] = None


class HighlightRequest(WireModel):
    fields: dict[str, Any] = Field(default_factory=dict)
    word_boxes: list[WordBox] = Field(default_factory=list)
    reference_width: Optional[float] = None
    reference_height: Optional[float] = None


class CalculationRequest(WireModel):
    line_items: list[LineItem] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CalculationResponse(WireModel):
    checked: bool
    calculation: Optional[CalculationCheck] = None


class CompositeRequest(WireModel):
    pii: list[dict[str, Any]] = Field(default_factory=list)
    compliance: list[dict[str, Any]] = Field(default_factory=list)
    pii_flagged: bool = False
    extracted_text: str = ""
    word_boxes: list[WordBox] = Field(default_factory=list)


class CompositeResponse(WireModel):
    regions: list[RedactionRegion]


class DetectRequest(WireModel):
    text: str
    word_boxes: list[WordBox] = Field(default_factory=list)
    preset: Optional[str] = None
    include_pii: bool = True


class DetectResponse(WireModel):
    detections: list[DetectedKeyword]
    summary: dict[str, dict[str, Any]]


class HealthResponse(WireModel):
    status: str
    version: str
    documents: int


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_pipeline() -> ReconciliationPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _pipeline


def _ledger_response(pipeline: ReconciliationPipeline, document: Document) -> LedgerResponse:
    ledger = document.lookup_validation
    return LedgerResponse(
        document_id=document.id,
        lookup_validation=ledger,
        summary=summarize(ledger.results if ledger else [], pipeline.policy.full_match_threshold),
        needs_review=document.needs_review,
    )


# ─── Document Endpoints ──────────────────────────────────────────────


@app.post("/documents", status_code=201, tags=["Documents"])
def register_document(document: Document) -> Document:
    """Register (or replace) a captured document in the record store."""
    pipeline = _get_pipeline()
    return pipeline.store.put(document)


@app.get("/documents/{document_id}", tags=["Documents"])
def get_document(document_id: str) -> Document:
    return _get_pipeline().store.get(document_id)


@app.post(
    "/documents/{document_id}/reconcile",
    summary="Re-validate a stored document",
    tags=["Documents"],
    responses={
        404: {"description": "Unknown document"},
        409: {"description": "Superseded by a newer re-validation, or exported"},
        503: {"description": "Pipeline not yet initialised"},
    },
)
async def reconcile_document(document_id: str, request: ReconcileRequest) -> ReconciliationReport:
    """Run every analysis on the stored document and persist the outcome.

    Operator decisions already in the ledger survive the re-validation.
    """
    pipeline = _get_pipeline()
    return await pipeline.revalidate(
        document_id,
        lookup_config=request.lookup_config,
        pii=request.pii,
        compliance=request.compliance,
        pii_flagged=request.pii_flagged,
    )


@app.post(
    "/documents/{document_id}/line-items/{index}/{action}",
    summary="Approve or reject a line item",
    tags=["Ledger"],
    responses={
        404: {"description": "Unknown document"},
        422: {"description": "Unknown action or row, or no ledger yet"},
    },
)
async def line_item_action(
    document_id: str, index: int, action: str, request: ActionRequest
) -> LedgerResponse:
    """Record an operator decision. `action` is `approve` or `reject`."""
    pipeline = _get_pipeline()
    document = await pipeline.record_action(document_id, index, action, request.operator)
    return _ledger_response(pipeline, document)


@app.post("/documents/{document_id}/fields/{field_name}/suggest", tags=["Documents"])
async def suggest_field_value(
    document_id: str, field_name: str, request: SuggestRequest
) -> FieldSuggestion:
    """Advisory AI opinion on one extracted value (basic result without an API key)."""
    pipeline = _get_pipeline()
    return await pipeline.suggest(document_id, field_name, request.field_type, request.context)


@app.post("/documents/{document_id}/export", tags=["Documents"])
def export_document(document_id: str) -> Document:
    """Mark the document exported; it can no longer be changed."""
    return _get_pipeline().mark_exported(document_id)


# ─── Stateless Endpoints ─────────────────────────────────────────────


@app.post("/geometry/highlights", tags=["Analysis"])
def highlights(request: HighlightRequest) -> dict[str, ProvenancedValue]:
    """Locate each field value on the page."""
    reference = None
    if request.reference_width and request.reference_height:
        reference = (request.reference_width, request.reference_height)
    return highlight_fields(request.fields, request.word_boxes, reference)


@app.post("/calculation/verify", tags=["Analysis"])
def calculation(request: CalculationRequest) -> CalculationResponse:
    """Compare the line-item sum with the document total (skipped when indeterminate)."""
    check = verify_calculation(request.line_items, request.metadata)
    return CalculationResponse(checked=check is not None, calculation=check)


@app.post("/redaction/composite", tags=["Analysis"])
async def composite(request: CompositeRequest) -> CompositeResponse:
    """Composite PII and compliance regions into one ordered overlay list."""
    regions = await asyncio.to_thread(
        compose_regions,
        request.pii,
        request.compliance,
        request.pii_flagged,
        request.extracted_text,
        request.word_boxes,
    )
    return CompositeResponse(regions=regions)


@app.post("/redaction/detect", tags=["Analysis"], responses={400: {"description": "Unknown preset"}})
async def detect(request: DetectRequest) -> DetectResponse:
    """Find redaction terms (and PII patterns) in text and locate them on the page."""
    categories = None
    if request.preset is not None:
        preset = PATTERN_PRESETS.get(request.preset)
        if preset is None:
            raise HTTPException(status_code=400, detail=f"Unknown preset '{request.preset}'")
        categories = preset.categories

    detections = await asyncio.to_thread(
        detect_keywords,
        request.text,
        request.word_boxes,
        (),
        request.include_pii,
        categories,
    )
    return DetectResponse(detections=detections, summary=summarize_detections(detections))


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Pipeline not yet initialised"}},
)
def health_check() -> HealthResponse:
    """Returns service status and the number of stored documents."""
    pipeline = _get_pipeline()
    return HealthResponse(
        status="healthy",
        version=__version__,
        documents=len(pipeline.store),
    )
