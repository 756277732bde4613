"""
Reconciliation pipeline orchestrator.

Flow for one document:
  1. Four independent analyses run concurrently:
       highlights   field values → on-page boxes
       lookup       line items → authoritative source (bounded fan-out)
       regions      PII + compliance detector output → overlay list
       calculation  line-item sum vs. document total
  2. Advisory findings are derived from the results
  3. (revalidate only) the result is persisted with a read-merge-write,
     carrying over operator ledger decisions from the CURRENT stored record

A newer re-validation for the same document cancels the older one; the
older caller gets StaleRunError and nothing of its run is persisted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional

from .calculation import calculation_fields, verify_calculation
from .config import ScoringPolicy, settings
from .exceptions import (
    LedgerTransitionError,
    LookupConfigError,
    ReconciliationError,
    StaleRunError,
)
from .geometry import highlight_fields
from .ledger import OperatorAction, build_ledger, merge_ledger, summarize
from .ledger import record_action as apply_ledger_action
from .lookup import ROW_FAILURE_PREFIX, lookup_field, unmapped_fields, validate_line_items
from .models import (
    CalculationCheck,
    Document,
    FieldLookupOutcome,
    FieldSuggestion,
    LookupConfig,
    LookupRequest,
    LookupResponse,
    LookupValidation,
    ProvenancedValue,
    RedactionRegion,
    ReconciliationReport,
    RegionKind,
    Severity,
    ValidationFinding,
    ValidationStatus,
)
from .redaction import as_compliance_region, as_pii_region, compose_regions, needs_pii_fallback
from .sources import LookupProvider, build_provider
from .store import DocumentStore, InMemoryDocumentStore
from .suggestions import suggest_field

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[LookupConfig, ScoringPolicy], LookupProvider]


class _UnavailableProvider:
    """Stands in for a source that could not be opened; every row reports the error."""

    def __init__(self, error: Exception):
        self.error = error

    def lookup(self, request: LookupRequest) -> LookupResponse:
        raise self.error


@dataclass
class _Analysis:
    highlights: dict[str, ProvenancedValue] = field(default_factory=dict)
    ledger: Optional[LookupValidation] = None
    unmapped: list[str] = field(default_factory=list)
    regions: list[RedactionRegion] = field(default_factory=list)
    pii_fallback: bool = False
    calculation: Optional[CalculationCheck] = None


class ReconciliationPipeline:
    """Owns the record store, scoring policy and lookup provider factory.

    Usage:
        pipeline = ReconciliationPipeline()
        pipeline.store.put(document)
        report = await pipeline.revalidate(document.id, lookup_config=config)
        await pipeline.record_action(document.id, 2, "approve", "operator@example.com")
    """

    def __init__(
        self,
        store: DocumentStore | None = None,
        policy: ScoringPolicy | None = None,
        provider_factory: ProviderFactory | None = None,
        concurrency: int | None = None,
        timeout: float | None = None,
    ):
        self.store = store or InMemoryDocumentStore()
        self.policy = policy or ScoringPolicy.from_settings()
        self.provider_factory = provider_factory or build_provider
        self.concurrency = concurrency or settings.LOOKUP_CONCURRENCY
        self.timeout = timeout or settings.LOOKUP_TIMEOUT_SECONDS
        self._runs: dict[str, asyncio.Task] = {}
        self._generations: defaultdict[str, int] = defaultdict(int)

    # ─── Analyses ────────────────────────────────────────────────────

    async def _open_provider(self, config: LookupConfig) -> LookupProvider:
        try:
            return await asyncio.to_thread(self.provider_factory, config, self.policy)
        except LookupConfigError:
            raise
        except ReconciliationError as e:
            logger.warning("Lookup source unavailable for %s: %s", config.system.value, e)
            return _UnavailableProvider(e)

    async def _lookup(
        self,
        document: Document,
        config: LookupConfig | None,
        provider: LookupProvider | None,
    ) -> tuple[Optional[LookupValidation], list[str]]:
        if config is None or not document.line_items:
            return document.lookup_validation, []
        if not config.enabled:
            logger.info("Lookup validation disabled for document %s", document.id)
            return document.lookup_validation, []

        if provider is None:
            provider = await self._open_provider(config)
        ledger = await validate_line_items(
            document.line_items,
            config,
            provider,
            policy=self.policy,
            concurrency=self.concurrency,
            timeout=self.timeout,
            prior=document.lookup_validation,
        )
        return ledger, unmapped_fields(document.line_items, config)

    def _regions(
        self,
        document: Document,
        pii: Iterable[Any],
        compliance: Iterable[Any],
        pii_flagged: bool,
    ) -> tuple[list[RedactionRegion], bool]:
        pii_regions = [as_pii_region(r) for r in pii]
        compliance_regions = [as_compliance_region(r) for r in compliance]
        regions = compose_regions(
            pii_regions,
            compliance_regions,
            pii_flagged=pii_flagged,
            extracted_text=document.extracted_text,
            word_boxes=document.word_boxes,
        )
        fallback = needs_pii_fallback(pii_regions, pii_flagged) and any(
            r.type is RegionKind.PII and r.renderable for r in regions
        )
        return regions, fallback

    async def _analyze(
        self,
        document: Document,
        lookup_config: LookupConfig | None,
        pii: Iterable[Any],
        compliance: Iterable[Any],
        pii_flagged: bool,
        provider: LookupProvider | None,
    ) -> _Analysis:
        highlights, (ledger, unmapped), (regions, fallback), calculation = await asyncio.gather(
            asyncio.to_thread(highlight_fields, document.fields, document.word_boxes),
            self._lookup(document, lookup_config, provider),
            asyncio.to_thread(self._regions, document, list(pii), list(compliance), pii_flagged),
            asyncio.to_thread(verify_calculation, document.line_items, document.fields),
        )
        return _Analysis(
            highlights=highlights,
            ledger=ledger,
            unmapped=unmapped,
            regions=regions,
            pii_fallback=fallback,
            calculation=calculation,
        )

    # ─── Findings & Report ───────────────────────────────────────────

    def _findings(self, document: Document, analysis: _Analysis) -> list[ValidationFinding]:
        findings: list[ValidationFinding] = []
        threshold = self.policy.full_match_threshold

        if analysis.ledger is not None:
            review = [r for r in analysis.ledger.results if r.needs_review(threshold)]
            for r in review:
                if r.message.startswith(ROW_FAILURE_PREFIX):
                    findings.append(ValidationFinding(
                        severity=Severity.WARNING,
                        code="LOOKUP_ROW_FAILED",
                        field=f"line_items[{r.index}]",
                        message=r.message,
                    ))
            if review:
                findings.append(ValidationFinding(
                    severity=Severity.WARNING,
                    code="LINE_ITEMS_NEED_REVIEW",
                    field="line_items",
                    message=f"{len(review)} of {analysis.ledger.total_items} line items need review",
                    details={"indexes": [r.index for r in review]},
                ))
            for r in analysis.ledger.results:
                if r.signature_missing and not r.rejected and not r.override_approved:
                    findings.append(ValidationFinding(
                        severity=Severity.WARNING,
                        code="SIGNATURE_MISSING",
                        field=f"line_items[{r.index}]",
                        message=f"Row {r.index + 1} has no signature",
                    ))

        for name in analysis.unmapped:
            findings.append(ValidationFinding(
                severity=Severity.INFO,
                code="LOOKUP_FIELD_UNMAPPED",
                field=name,
                message=f"Lookup field '{name}' is not present in the line items and was skipped",
            ))

        calc = analysis.calculation
        if calc is not None and not calc.matches:
            findings.append(ValidationFinding(
                severity=Severity.WARNING,
                code="CALCULATION_VARIANCE",
                field="line_items",
                message="Calculation variance detected — review before validating",
                details={
                    "line_items_total": str(calc.line_items_total),
                    "document_total": str(calc.document_total),
                    "variance": str(calc.variance),
                    "variance_percent": str(calc.variance_percent),
                },
            ))

        if analysis.pii_fallback:
            findings.append(ValidationFinding(
                severity=Severity.INFO,
                code="PII_FALLBACK_DERIVED",
                field="detected_pii_regions",
                message="PII regions were derived from the document text",
            ))
        for region in analysis.regions:
            if region.type is RegionKind.COMPLIANCE and not region.renderable:
                findings.append(ValidationFinding(
                    severity=Severity.INFO,
                    code="COMPLIANCE_TERM_NO_GEOMETRY",
                    field=region.category,
                    message=f"Compliance term '{region.text}' could not be located on the page",
                ))

        for name, confidence in document.field_confidence.items():
            if confidence < settings.LOW_CONFIDENCE_THRESHOLD:
                findings.append(ValidationFinding(
                    severity=Severity.INFO,
                    code="LOW_FIELD_CONFIDENCE",
                    field=name,
                    message=f"{name} confidence is {confidence:.0%}",
                    details={"confidence": confidence},
                ))
        return findings

    def _report(self, document: Document, analysis: _Analysis) -> ReconciliationReport:
        findings = self._findings(document, analysis)
        needs_review = any(f.severity in (Severity.ERROR, Severity.WARNING) for f in findings)
        summary = (
            summarize(analysis.ledger.results, self.policy.full_match_threshold)
            if analysis.ledger is not None
            else None
        )
        return ReconciliationReport(
            document_id=document.id,
            highlights=analysis.highlights,
            lookup=analysis.ledger,
            summary=summary,
            regions=analysis.regions,
            calculation=analysis.calculation,
            findings=findings,
            field_confidence=dict(document.field_confidence),
            needs_review=needs_review,
            recommended_status=(
                ValidationStatus.PENDING if needs_review else ValidationStatus.VALIDATED
            ),
        )

    async def reconcile(
        self,
        document: Document,
        lookup_config: LookupConfig | None = None,
        pii: Iterable[Any] = (),
        compliance: Iterable[Any] = (),
        pii_flagged: bool | None = None,
        provider: LookupProvider | None = None,
    ) -> ReconciliationReport:
        """Run every analysis on `document` and report. Persists nothing."""
        flagged = document.pii_detected if pii_flagged is None else pii_flagged
        analysis = await self._analyze(document, lookup_config, pii, compliance, flagged, provider)
        report = self._report(document, analysis)
        logger.info(
            "Reconciled %s: %d findings, needs_review=%s",
            document.id, len(report.findings), report.needs_review,
        )
        return report

    # ─── Persisted Operations ────────────────────────────────────────

    async def _persist(self, document_id: str, analysis: _Analysis) -> ReconciliationReport:
        reports: list[ReconciliationReport] = []

        def merge(current: Document) -> Document:
            merged = analysis
            if analysis.ledger is not None:
                stored = current.lookup_validation.results if current.lookup_validation else []
                merged = replace(analysis, ledger=build_ledger(
                    merge_ledger(analysis.ledger.results, stored),
                    validated_at=analysis.ledger.validated_at,
                    threshold=self.policy.full_match_threshold,
                ))
            report = self._report(current, merged)
            reports.append(report)

            suggestions = dict(current.validation_suggestions)
            if merged.calculation is not None:
                suggestions["calculation"] = calculation_fields(merged.calculation)
            return current.model_copy(update={
                "lookup_validation": merged.ledger,
                "validation_suggestions": suggestions,
                "detected_pii_regions": [r for r in merged.regions if r.type is RegionKind.PII],
                "needs_review": report.needs_review,
            })

        await asyncio.to_thread(self.store.update, document_id, merge)
        return reports[-1]

    async def revalidate(
        self,
        document_id: str,
        lookup_config: LookupConfig | None = None,
        pii: Iterable[Any] = (),
        compliance: Iterable[Any] = (),
        pii_flagged: bool | None = None,
        provider: LookupProvider | None = None,
    ) -> ReconciliationReport:
        """Re-run reconciliation for a stored document and persist the result.

        Raises:
            DocumentNotFoundError: no such document.
            StaleRunError: a newer re-validation for this document superseded this one.
        """
        self._generations[document_id] += 1
        generation = self._generations[document_id]

        previous = self._runs.get(document_id)
        if previous is not None and not previous.done():
            logger.info("Superseding in-flight re-validation of %s", document_id)
            previous.cancel()

        document = self.store.get(document_id)
        flagged = document.pii_detected if pii_flagged is None else pii_flagged
        task = asyncio.ensure_future(
            self._analyze(document, lookup_config, list(pii), list(compliance), flagged, provider)
        )
        self._runs[document_id] = task

        try:
            analysis = await task
        except asyncio.CancelledError:
            if self._generations[document_id] != generation:
                logger.info("Discarded stale re-validation of %s", document_id)
                raise StaleRunError(
                    f"Re-validation of {document_id} was superseded",
                    details={"document_id": document_id},
                ) from None
            raise
        finally:
            if self._runs.get(document_id) is task:
                del self._runs[document_id]

        if self._generations[document_id] != generation:
            logger.info("Discarded stale re-validation of %s", document_id)
            raise StaleRunError(
                f"Re-validation of {document_id} was superseded",
                details={"document_id": document_id},
            )
        return await self._persist(document_id, analysis)

    async def record_action(
        self,
        document_id: str,
        index: int,
        action: OperatorAction | str,
        operator: str,
    ) -> Document:
        """Approve or reject one line item and persist it (read-merge-write).

        Raises:
            DocumentNotFoundError: no such document.
            LedgerTransitionError: unknown action, unknown row, or no ledger yet.
        """
        threshold = self.policy.full_match_threshold

        def apply(current: Document) -> Document:
            if current.lookup_validation is None:
                raise LedgerTransitionError(
                    f"Document {document_id} has no lookup validation to act on",
                    details={"document_id": document_id},
                )
            ledger = apply_ledger_action(
                current.lookup_validation, index, action, operator, threshold=threshold
            )
            summary = summarize(ledger.results, threshold)
            calculation = current.validation_suggestions.get("calculation") or {}
            signature_open = any(
                r.signature_missing and not r.rejected and not r.override_approved
                for r in ledger.results
            )
            needs_review = (
                summary.for_review_count > 0
                or calculation.get("_calculationMatch") == "false"
                or signature_open
            )
            return current.model_copy(
                update={"lookup_validation": ledger, "needs_review": needs_review}
            )

        return await asyncio.to_thread(self.store.update, document_id, apply)

    async def suggest(
        self,
        document_id: str,
        field_name: str,
        field_type: str = "text",
        context: str | None = None,
    ) -> FieldSuggestion:
        """AI opinion on one field; stored in validation_suggestions and field_confidence."""
        document = self.store.get(document_id)
        value = document.fields.get(field_name, "")
        suggestion = await asyncio.to_thread(suggest_field, field_name, value, field_type, context)

        def apply(current: Document) -> Document:
            return current.model_copy(update={
                "validation_suggestions": {
                    **current.validation_suggestions,
                    field_name: suggestion.model_dump(mode="json", by_alias=True),
                },
                "field_confidence": {**current.field_confidence, field_name: suggestion.confidence},
            })

        await asyncio.to_thread(self.store.update, document_id, apply)
        return suggestion

    async def check_field(
        self,
        document_id: str,
        field_name: str,
        config: LookupConfig,
        provider: LookupProvider | None = None,
    ) -> FieldLookupOutcome | None:
        """Look up one header field and record the resulting confidence."""
        document = self.store.get(document_id)
        if provider is None:
            provider = await self._open_provider(config)
        outcome = await lookup_field(
            field_name, document.fields.get(field_name), config, provider, timeout=self.timeout
        )
        if outcome is None:
            return None

        def apply(current: Document) -> Document:
            return current.model_copy(update={
                "field_confidence": {**current.field_confidence, field_name: outcome.confidence},
            })

        await asyncio.to_thread(self.store.update, document_id, apply)
        return outcome

    def mark_exported(self, document_id: str) -> Document:
        """Freeze a document; later writes raise DocumentExportedError."""
        return self.store.update(
            document_id, lambda current: current.model_copy(update={"exported": True})
        )

    async def close(self) -> None:
        """Cancel in-flight re-validations."""
        tasks = [t for t in self._runs.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
