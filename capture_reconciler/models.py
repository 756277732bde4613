"""
Pydantic models for capture reconciliation — typed contracts at every seam.

Wire models use camelCase aliases (the record store and the presentation
layer speak camelCase) but accept snake_case too. Detector and field-value
shapes that arrive duck-typed are closed into tagged unions here, at the
ingress boundary, so downstream logic switches on a kind tag and never on
field presence.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for models that cross the record-store / API boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Severity Levels ────────────────────────────────────────────────


class Severity(str, Enum):
    """Severity of a reconciliation finding."""

    ERROR = "ERROR"  # Operator must act before validating
    WARNING = "WARNING"  # Operator should look before validating
    INFO = "INFO"  # Informational observation


class ValidationFinding(BaseModel):
    """A single advisory finding with severity, machine-readable code, and details."""

    severity: Severity
    code: str  # Machine-readable, e.g. "CALCULATION_VARIANCE"
    field: str  # Field, column, or "line_items[N]" this relates to
    message: str  # Human-readable explanation
    details: dict = Field(default_factory=dict)


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"


# ─── Geometry ───────────────────────────────────────────────────────


class BoundingBox(WireModel):
    """Box in percentage-of-page units (0–100) once normalized."""

    x: float
    y: float
    width: float
    height: float

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.x, self.y, self.width, self.height))


class WordBox(WireModel):
    """Atomic OCR unit: one word and where it sits on the page."""

    text: str = ""
    bbox: Optional[BoundingBox] = None

    @field_validator("bbox", mode="before")
    @classmethod
    def _drop_malformed_bbox(cls, value: Any) -> Any:
        return coerce_bbox(value)


# ─── Field Values (tagged union) ────────────────────────────────────


class PlainValue(WireModel):
    """Bare extracted value — the persisted form."""

    kind: Literal["plain"] = "plain"
    value: str


class ProvenancedValue(WireModel):
    """Extracted value with the page region it was read from."""

    kind: Literal["provenanced"] = "provenanced"
    value: str
    bbox: BoundingBox


FieldValue = Annotated[Union[PlainValue, ProvenancedValue], Field(discriminator="kind")]

LineItem = dict[str, Union[str, int, float, None]]


def coerce_bbox(raw: Any) -> BoundingBox | None:
    """Turn any detector/OCR bbox shape into a BoundingBox, or None if unusable."""
    if raw is None:
        return None
    if isinstance(raw, BoundingBox):
        return raw if raw.is_finite() else None
    if not isinstance(raw, dict):
        return None
    try:
        box = BoundingBox(
            x=float(raw["x"]),
            y=float(raw["y"]),
            width=float(raw["width"]),
            height=float(raw["height"]),
        )
    except (KeyError, TypeError, ValueError):
        return None
    return box if box.is_finite() else None


def coerce_field_value(raw: Any) -> PlainValue | ProvenancedValue:
    """Single ingress normalizer for field values.

    Accepts the legacy bare value (str / number / bool / None) and the
    `{value, bbox?}` object. Returns a ProvenancedValue only when a usable
    box travels with the value.
    """
    if isinstance(raw, (PlainValue, ProvenancedValue)):
        return raw
    if raw is None:
        return PlainValue(value="")
    if isinstance(raw, bool):
        return PlainValue(value=str(raw).lower())
    if isinstance(raw, (str, int, float, Decimal)):
        return PlainValue(value=str(raw))
    if isinstance(raw, dict) and isinstance(raw.get("value"), (str, int, float)):
        value = str(raw["value"])
        bbox = coerce_bbox(raw.get("bbox"))
        if bbox is not None:
            return ProvenancedValue(value=value, bbox=bbox)
        return PlainValue(value=value)
    return PlainValue(value="")


def plain_metadata(fields: dict[str, Any]) -> dict[str, str]:
    """Reduce any field mapping to the string-only form that gets persisted."""
    return {name: coerce_field_value(raw).value for name, raw in fields.items()}


# ─── Lookup Configuration ───────────────────────────────────────────


class LookupSystem(str, Enum):
    EXCEL = "excel"
    CSV = "csv"
    FILEBOUND = "filebound"
    DOCMGT = "docmgt"
    REGISTRY = "registry"


class LookupField(WireModel):
    """Mapping from an extraction-schema field to a column of the external source."""

    source_field: str = Field(
        validation_alias=AliasChoices("sourceField", "source_field", "wisdmField")
    )
    target_field: str = Field(
        validation_alias=AliasChoices("targetField", "target_field", "ecmField")
    )
    enabled: bool = Field(
        default=True, validation_alias=AliasChoices("enabled", "lookupEnabled")
    )


class LookupConfig(WireModel):
    """Drives which fields are checked and against what key."""

    system: LookupSystem
    enabled: bool = True
    source_locator: str = ""  # File path / URL, or ECM base URL
    key_column: Optional[str] = None  # Key column in the external source
    key_field: Optional[str] = None  # Key column in the extracted line items
    lookup_fields: list[LookupField] = Field(default_factory=list)
    # ECM credentials (FileBound / DocMgt)
    username: Optional[str] = None
    password: Optional[str] = None
    project: Optional[str] = None

    def active_fields(self) -> list[LookupField]:
        return [f for f in self.lookup_fields if f.enabled]


class LookupFieldValue(WireModel):
    """One field of a lookup request, carrying the extracted value to compare."""

    source_field: str
    target_field: str
    extracted_value: str = ""


class LookupRequest(WireModel):
    """Request sent to a lookup provider for one row or field."""

    key_column: str
    key_value: str
    lookup_fields: list[LookupFieldValue] = Field(default_factory=list)


class FieldResult(WireModel):
    """Agreement between one extracted value and the authoritative source."""

    field: str
    extracted_value: str = ""
    source_value: Optional[str] = None
    matches: bool = False
    score: float = 0.0
    suggestion: Optional[str] = None


class LookupResponse(WireModel):
    """What a lookup provider answers for one request."""

    found: bool
    all_match: Optional[bool] = None
    match_score: Optional[float] = None
    partial_match: bool = False
    mismatch_reason: Optional[str] = None
    validation_results: list[FieldResult] = Field(default_factory=list)
    record: Optional[dict[str, str]] = None
    message: str = ""


# ─── Validation Results & Ledger ────────────────────────────────────


class SignatureStatus(WireModel):
    present: bool = False
    value: str = ""


class ValidationResult(WireModel):
    """Lookup outcome for one line item, plus the operator's sticky decision."""

    index: int
    key_value: str = ""
    found: bool = False
    partial_match: bool = False
    mismatch_reason: Optional[str] = None
    all_match: bool = False
    match_score: float = 0.0
    field_results: list[FieldResult] = Field(default_factory=list)
    signature_status: Optional[SignatureStatus] = None
    best_match: Optional[dict[str, str]] = None
    message: str = ""
    # Operator ledger, survives recomputation
    override_approved: bool = False
    rejected: bool = False
    override_at: Optional[datetime] = None
    override_by: Optional[str] = None

    @model_validator(mode="after")
    def _flags_are_exclusive(self) -> "ValidationResult":
        if self.override_approved and self.rejected:
            raise ValueError("override_approved and rejected are mutually exclusive")
        return self

    def is_valid(self, threshold: float = 0.9) -> bool:
        """Valid iff (found and score ≥ threshold) or operator-approved; never when rejected."""
        if self.rejected:
            return False
        return (self.found and self.match_score >= threshold) or self.override_approved

    def needs_review(self, threshold: float = 0.9) -> bool:
        return not self.rejected and not self.is_valid(threshold)

    @property
    def signature_missing(self) -> bool:
        return self.signature_status is not None and not self.signature_status.present


class LookupValidation(WireModel):
    """The lookup-validation ledger embedded in the document record."""

    validated: bool = True
    validated_at: datetime
    total_items: int
    valid_count: int
    invalid_count: int
    partial_match_count: int = 0
    results: list[ValidationResult] = Field(default_factory=list)


class LedgerSummary(WireModel):
    """Operator-facing partition of line items (rejected rows excluded from the rest)."""

    total_items: int
    valid_count: int
    for_review_count: int
    rejected_count: int
    partial_match_count: int
    not_found_count: int
    signatures_present: int
    valid_percent: int


class FieldLookupOutcome(WireModel):
    """Result of looking up a single header field."""

    field: str
    found: bool
    confidence: float
    message: str = ""
    suggestion: Optional[str] = None


# ─── Redaction ──────────────────────────────────────────────────────


class RegionKind(str, Enum):
    PII = "pii"
    COMPLIANCE = "compliance"


class _DetectedRegionBase(WireModel):
    category: str
    text: str = ""
    severity: Optional[str] = None
    bbox: Optional[BoundingBox] = Field(
        default=None, validation_alias=AliasChoices("bbox", "boundingBox", "bounding_box")
    )

    @field_validator("bbox", mode="before")
    @classmethod
    def _drop_malformed_bbox(cls, value: Any) -> Any:
        return coerce_bbox(value)


class PiiRegion(_DetectedRegionBase):
    """Region reported by the PII detector."""

    type: Literal["pii"] = "pii"


class ComplianceRegion(_DetectedRegionBase):
    """Region reported by the compliance-term (restrictive covenant) detector."""

    type: Literal["compliance"] = "compliance"
    category: str = "restrictive_covenant"


DetectedRegion = Annotated[Union[PiiRegion, ComplianceRegion], Field(discriminator="type")]


class RedactionRegion(WireModel):
    """One entry of the composited overlay."""

    type: RegionKind
    category: str
    text: str = ""
    bbox: Optional[BoundingBox] = None
    renderable: bool = True


class KeywordMatch(WireModel):
    text: str
    bbox: Optional[BoundingBox] = None


class DetectedKeyword(WireModel):
    term: str
    category: str
    label: Optional[str] = None
    matches: list[KeywordMatch] = Field(default_factory=list)


# ─── Calculation ────────────────────────────────────────────────────


class CalculationCheck(WireModel):
    line_items_total: Decimal
    document_total: Decimal
    variance: Decimal
    variance_percent: Decimal
    matches: bool


# ─── AI Suggestions ─────────────────────────────────────────────────


class FieldSuggestion(WireModel):
    """AI opinion on one extracted value. Advisory only."""

    is_valid: bool = True
    confidence: float = 0.8
    suggestions: list[str] = Field(default_factory=list)
    reasoning: str = ""


# ─── Document ───────────────────────────────────────────────────────


class Document(WireModel):
    """A captured document as the engine sees it.

    `fields` always holds the persisted string-only form; tagged values
    arriving at ingress are reduced here.
    """

    id: str
    extracted_text: str = ""
    word_boxes: list[WordBox] = Field(
        default_factory=list,
        validation_alias=AliasChoices("wordBoxes", "word_boxes", "wordBoundingBoxes"),
    )
    fields: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("fields", "extractedMetadata", "extracted_metadata"),
    )
    field_confidence: dict[str, float] = Field(default_factory=dict)
    validation_status: ValidationStatus = ValidationStatus.PENDING
    line_items: list[LineItem] = Field(default_factory=list)
    validation_suggestions: dict[str, Any] = Field(default_factory=dict)
    lookup_validation: Optional[LookupValidation] = None
    pii_detected: bool = False
    detected_pii_regions: list[RedactionRegion] = Field(default_factory=list)
    needs_review: bool = False
    exported: bool = False

    @field_validator("fields", mode="before")
    @classmethod
    def _reduce_to_plain(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return plain_metadata(value)
        return value

    def to_record(self) -> dict[str, Any]:
        """The persisted document fields, in record-store shape."""
        suggestions = dict(self.validation_suggestions)
        if self.lookup_validation is not None:
            suggestions["lookupValidation"] = self.lookup_validation.model_dump(
                mode="json", by_alias=True
            )
        return {
            "extracted_metadata": dict(self.fields),
            "field_confidence": dict(self.field_confidence),
            "validation_suggestions": suggestions,
            "line_items": [dict(item) for item in self.line_items],
            "detected_pii_regions": [
                r.model_dump(mode="json", by_alias=True) for r in self.detected_pii_regions
            ],
            "validation_status": self.validation_status.value,
            "needs_review": self.needs_review,
        }


# ─── Reconciliation Report ──────────────────────────────────────────


class ReconciliationReport(WireModel):
    """The final output of one reconciliation run."""

    document_id: str
    highlights: dict[str, ProvenancedValue] = Field(default_factory=dict)
    lookup: Optional[LookupValidation] = None
    summary: Optional[LedgerSummary] = None
    regions: list[RedactionRegion] = Field(default_factory=list)
    calculation: Optional[CalculationCheck] = None
    findings: list[ValidationFinding] = Field(default_factory=list)
    field_confidence: dict[str, float] = Field(default_factory=dict)
    needs_review: bool = False
    recommended_status: ValidationStatus = ValidationStatus.PENDING
