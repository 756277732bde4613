#!/usr/bin/env python3
"""
Capture Reconciler — Entry Point
================================

Demonstrates a full reconciliation run on a sample petition page: signer
rows checked against a voter registry, field highlights, PII regions
recovered from text, and an operator approving a borderline row.

Usage:
    python main.py                          # Basic field validation (no API key needed)
    OPENAI_API_KEY=sk-... python main.py    # With AI field suggestions
"""

from __future__ import annotations

import asyncio
import logging
import sys

from capture_reconciler.models import (
    Document,
    LookupConfig,
    LookupField,
    LookupSystem,
    Severity,
)
from capture_reconciler.pipeline import ReconciliationPipeline
from capture_reconciler.sources import load_registry

# ─── Load .env if available (optional dependency) ────────────────────
try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ─── Sample Petition Page ────────────────────────────────────────────

VOTER_REGISTRY = [
    {"name": "Maria Gonzalez", "address": "1420 Alder Street", "city": "Fresno", "zip": "93721"},
    {"name": "James O'Neill", "address": "88 Birch Avenue", "city": "Fresno", "zip": "93722"},
    {"name": "Priya Raman", "address": "310 Cedar Lane", "city": "Clovis", "zip": "93611"},
    {"name": "Thomas Whitfield", "address": "5 Dogwood Court", "city": "Fresno", "zip": "93704"},
]

WORDS = [
    ("PETITION", 80, 40, 120, 24),
    ("Measure", 210, 40, 110, 24),
    ("Q-17", 330, 40, 60, 24),
    ("Circulator:", 80, 90, 110, 18),
    ("Dana", 200, 90, 50, 18),
    ("Whitaker", 255, 90, 90, 18),
    ("SSN", 80, 880, 40, 16),
    ("512-44-9087", 125, 880, 120, 16),
]

SAMPLE_DOCUMENT = Document.model_validate({
    "id": "PET-2024-0117",
    "extractedText": (
        "PETITION Measure Q-17\nCirculator: Dana Whitaker\n"
        "Maria Gonzalez 1420 Alder St Fresno 93721\n"
        "James ONeill 88 Birch Avenue Fresno 93722\n"
        "Priya Raman 77 Elm Road Clovis 93611\n"
        "Tom Whitfeld 5 Dogwood Court Fresno 93704\n"
        "SSN 512-44-9087"
    ),
    "wordBoxes": [
        {"text": t, "bbox": {"x": x, "y": y, "width": w, "height": h}} for t, x, y, w, h in WORDS
    ],
    "fields": {"Measure": "Q-17", "Circulator": {"value": "Dana Whitaker"}},
    "fieldConfidence": {"Measure": 0.97, "Circulator": 0.52},
    "lineItems": [
        {"Name": "Maria Gonzalez", "Address": "1420 Alder Street", "City": "Fresno", "Zip": "93721", "Signature_Present": "yes"},
        {"Name": "James O'Neill", "Address": "88 Birch Avenue", "City": "Fresno", "Zip": "93722", "Signature_Present": "yes"},
        {"Name": "Priya Raman", "Address": "77 Elm Road", "City": "Clovis", "Zip": "93611", "Signature_Present": "yes"},
        {"Name": "Tom Whitfeld", "Address": "5 Dogwood Court", "City": "Fresno", "Zip": "93704", "Signature_Present": "no"},
    ],
    "piiDetected": True,
})

LOOKUP_CONFIG = LookupConfig(
    system=LookupSystem.REGISTRY,
    source_locator="memory://voter-registry",
    key_column="name",
    key_field="Name",
    lookup_fields=[
        LookupField(source_field="Name", target_field="name"),
        LookupField(source_field="Address", target_field="address"),
        LookupField(source_field="City", target_field="city"),
        LookupField(source_field="Zip", target_field="zip"),
    ],
)


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72


# ─── Pretty Printer Helpers ─────────────────────────────────────────


def _print_line_items(report) -> None:
    if report.lookup is None:
        return
    for r in report.lookup.results:
        if r.rejected:
            mark = f"{_DIM}REJECTED{_RESET}"
        elif r.is_valid():
            mark = f"{_GREEN}VALID{_RESET}" + (" (approved)" if r.override_approved else "")
        else:
            mark = f"{_YELLOW}REVIEW{_RESET}"
        print(f"  [{r.index}] {r.key_value:<18} {r.match_score:>5.0%}  {mark}  {_DIM}{r.message}{_RESET}")
    s = report.summary
    print(
        f"\n  {s.valid_count} valid · {s.for_review_count} for review · "
        f"{s.rejected_count} rejected · {s.signatures_present}/{s.total_items} signed"
    )


def _print_findings_group(findings, color: str, label: str) -> None:
    if not findings:
        return
    print(f"\n  {color}{_BOLD}{label} ({len(findings)}){_RESET}")
    for f in findings:
        print(f"    {color}[{f.code}]{_RESET} {f.message}")


# ─── Pretty Printer ─────────────────────────────────────────────────


def print_report(report) -> int:
    """Pretty-print the reconciliation report with ANSI color codes.

    Returns:
        0 if the document can be validated, 1 if it needs review.
    """
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  RECONCILIATION REPORT{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Document:    {report.document_id}")
    print(f"{'─' * _WIDTH}")

    for name, hl in report.highlights.items():
        b = hl.bbox
        print(f"  {name:<12} {hl.value:<18} {_DIM}@ ({b.x:.1f}, {b.y:.1f}) {b.width:.1f}×{b.height:.1f}{_RESET}")
    print(f"{'─' * _WIDTH}")

    _print_line_items(report)
    print(f"{'─' * _WIDTH}")

    for region in report.regions:
        where = "no geometry" if region.bbox is None else f"y={region.bbox.y:.1f}"
        print(f"  {region.type.value:<10} {region.category:<16} {region.text:<16} {_DIM}{where}{_RESET}")
    if report.calculation is None:
        print(f"  {_DIM}Calculation check skipped (no amounts){_RESET}")

    warnings = [f for f in report.findings if f.severity == Severity.WARNING]
    infos = [f for f in report.findings if f.severity == Severity.INFO]
    _print_findings_group(warnings, _YELLOW, "WARNINGS")
    _print_findings_group(infos, _CYAN, "INFO")

    print(f"\n{'=' * _WIDTH}")
    if report.needs_review:
        print(f"  {_RED}{_BOLD}NEEDS REVIEW{_RESET}")
    else:
        print(f"  {_GREEN}{_BOLD}READY TO VALIDATE{_RESET}")
    print(f"{'=' * _WIDTH}\n")

    return 1 if report.needs_review else 0


# ─── Main ────────────────────────────────────────────────────────────


async def run() -> int:
    registry = load_registry(VOTER_REGISTRY)
    pipeline = ReconciliationPipeline(provider_factory=lambda config, policy: registry)
    pipeline.store.put(SAMPLE_DOCUMENT)

    report = await pipeline.revalidate(SAMPLE_DOCUMENT.id, lookup_config=LOOKUP_CONFIG)
    print_report(report)

    print(f"  Operator approves row 3 ({report.lookup.results[3].key_value}) and re-validates...\n")
    await pipeline.record_action(SAMPLE_DOCUMENT.id, 3, "approve", "demo-operator")
    report = await pipeline.revalidate(SAMPLE_DOCUMENT.id, lookup_config=LOOKUP_CONFIG)
    return print_report(report)


def main():
    """Run the demo reconciliation and print the report."""
    print("\n  Starting Capture Reconciler...")
    print("  Reconciling sample petition page...\n")
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
