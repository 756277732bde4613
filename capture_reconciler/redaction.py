"""
Redaction region compositor and keyword/PII detector.

Two detectors feed the overlay: PII (SSNs, card numbers, ...) and
compliance terms (restrictive-covenant language). Their regions are
composited into one ordered list:

  - PII first, then compliance; every region tagged with its kind
  - never merged across kinds; nearby boxes of one category are unioned
  - a region without usable geometry is kept but marked non-renderable
  - if PII was flagged but no PII region has geometry, PII regions are
    re-derived from the stored text and word boxes (never otherwise)

Regions with valid geometry are never dropped.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Optional

from .config import settings
from .geometry import is_valid_bbox, normalize_bbox, union_boxes
from .models import (
    BoundingBox,
    ComplianceRegion,
    DetectedKeyword,
    KeywordMatch,
    PiiRegion,
    RedactionRegion,
    RegionKind,
    WordBox,
)
from .redaction_terms import (
    DEFAULT_REDACTION_KEYWORDS,
    PII_CATEGORIES,
    PII_KEYWORDS,
    RedactionTerm,
)

logger = logging.getLogger(__name__)

MAX_TOKEN_WINDOW = 6

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_NON_WORD_RE = re.compile(r"[^\w]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, punctuation to spaces, whitespace collapsed."""
    return _NON_ALNUM_RE.sub(" ", text.lower()).strip()


# ─── Keyword Detection ───────────────────────────────────────────────


class _Token:
    __slots__ = ("raw", "norm", "bbox")

    def __init__(self, word: WordBox, reference: tuple[float, float] | None):
        self.raw = word.text or ""
        self.norm = normalize_text(self.raw)
        self.bbox = normalize_bbox(word.bbox, reference) if word.bbox is not None else None


def _is_near_duplicate(matches: list[KeywordMatch], box: BoundingBox) -> bool:
    return any(
        m.bbox is not None and abs(m.bbox.x - box.x) < 1 and abs(m.bbox.y - box.y) < 1
        for m in matches
    )


def _pattern_matches(
    keyword: RedactionTerm, text: str, tokens: list[_Token]
) -> list[KeywordMatch]:
    flags = 0 if keyword.case_sensitive else re.IGNORECASE
    try:
        pattern = re.compile(keyword.term, flags)
    except re.error as e:
        logger.warning("Invalid redaction pattern %r: %s", keyword.term, e)
        return []

    # Text-only hits count occurrences even when geometry is missing
    matches = [KeywordMatch(text=m.group(0)) for m in pattern.finditer(text)]

    for token in tokens:
        if token.raw and token.bbox is not None and pattern.search(token.raw):
            matches.append(KeywordMatch(text=token.raw, bbox=token.bbox))

    # Patterns split across tokens, e.g. "123" "-" "45" "-" "6789"
    for i in range(len(tokens)):
        joined = ""
        compact = ""
        window: list[_Token] = []
        for token in tokens[i:i + MAX_TOKEN_WINDOW]:
            joined = f"{joined} {token.raw}" if joined else token.raw
            compact += _NON_WORD_RE.sub("", token.raw)
            window.append(token)
            candidates = (joined, compact, _WHITESPACE_RE.sub("", joined))
            if not any(pattern.search(c) for c in candidates):
                continue
            box = union_boxes(t.bbox for t in window if t.bbox is not None)
            if box is not None and not _is_near_duplicate(matches, box):
                matches.append(KeywordMatch(text=joined, bbox=box))
    return matches


def _term_matches(
    keyword: RedactionTerm, text: str, tokens: list[_Token]
) -> list[KeywordMatch]:
    flags = 0 if keyword.case_sensitive else re.IGNORECASE
    pattern = re.compile(rf"\b{re.escape(keyword.term)}\b", flags)
    matches = [KeywordMatch(text=m.group(0)) for m in pattern.finditer(text)]

    parts = normalize_text(keyword.term).split()
    if not parts:
        return matches

    if len(parts) == 1:
        for token in tokens:
            if token.norm == parts[0] and token.bbox is not None:
                matches.append(KeywordMatch(text=token.raw, bbox=token.bbox))
        return matches

    phrase = " ".join(parts)
    for i in range(len(tokens) - len(parts) + 1):
        window = tokens[i:i + len(parts)]
        if " ".join(t.norm for t in window) != phrase:
            continue
        box = union_boxes(t.bbox for t in window if t.bbox is not None)
        if box is not None:
            matches.append(KeywordMatch(text=" ".join(t.raw for t in window), bbox=box))
    return matches


def detect_keywords(
    text: str,
    word_boxes: Iterable[WordBox] = (),
    custom_keywords: Iterable[RedactionTerm] = (),
    include_pii: bool = False,
    pii_categories: Optional[Iterable[str]] = None,
    include_defaults: bool = True,
    reference: tuple[float, float] | None = None,
) -> list[DetectedKeyword]:
    """Find redaction terms in OCR text and locate them on the page.

    Restrictive-covenant terms are searched by default; PII patterns only
    when `include_pii` is set (optionally limited to `pii_categories`).
    """
    if not text:
        return []

    keywords: list[RedactionTerm] = []
    if include_defaults:
        keywords.extend(DEFAULT_REDACTION_KEYWORDS)
    if include_pii:
        wanted = set(pii_categories or ())
        keywords.extend(k for k in PII_KEYWORDS if not wanted or k.category in wanted)
    keywords.extend(custom_keywords)

    tokens = [_Token(w, reference) for w in word_boxes]

    detected: list[DetectedKeyword] = []
    for keyword in keywords:
        if keyword.is_pattern:
            matches = _pattern_matches(keyword, text, tokens)
        else:
            matches = _term_matches(keyword, text, tokens)
        if matches:
            detected.append(
                DetectedKeyword(
                    term=keyword.term,
                    category=keyword.category,
                    label=keyword.label,
                    matches=matches,
                )
            )
    return detected


def detect_pii(
    text: str,
    word_boxes: Iterable[WordBox],
    categories: Optional[Iterable[str]] = None,
    reference: tuple[float, float] | None = None,
) -> list[PiiRegion]:
    """PII regions with geometry, derived from text and word boxes."""
    detected = detect_keywords(
        text,
        word_boxes,
        include_pii=True,
        pii_categories=categories,
        include_defaults=False,
        reference=reference,
    )
    regions: list[PiiRegion] = []
    for d in detected:
        info = PII_CATEGORIES.get(d.category)
        for m in d.matches:
            if m.bbox is None:
                continue
            regions.append(
                PiiRegion(
                    category=d.category,
                    text=m.text,
                    bbox=m.bbox,
                    severity=info.severity if info else None,
                )
            )
    return regions


def summarize_detections(detected: Iterable[DetectedKeyword]) -> dict[str, dict[str, Any]]:
    """Match counts per category with a display label."""
    summary: dict[str, dict[str, Any]] = {}
    for d in detected:
        if d.category not in summary:
            info = PII_CATEGORIES.get(d.category)
            summary[d.category] = {
                "count": 0,
                "label": info.label if info else (d.label or d.category),
            }
        summary[d.category]["count"] += len(d.matches)
    return summary


# ─── Box Merging ─────────────────────────────────────────────────────


def _near(a: BoundingBox, b: BoundingBox, threshold: float) -> bool:
    horizontal = a.x <= b.x + b.width + threshold and a.x + a.width + threshold >= b.x
    vertical = a.y <= b.y + b.height + threshold and a.y + a.height + threshold >= b.y
    return horizontal and vertical


def merge_nearby_boxes(
    boxes: list[BoundingBox], threshold: float | None = None
) -> list[BoundingBox]:
    """Merge boxes that overlap or lie within `threshold` of each other."""
    if len(boxes) <= 1:
        return list(boxes)
    threshold = settings.REDACTION_MERGE_THRESHOLD if threshold is None else threshold

    merged: list[BoundingBox] = []
    used: set[int] = set()
    for i, box in enumerate(boxes):
        if i in used:
            continue
        used.add(i)
        current = box
        grew = True
        while grew:
            grew = False
            for j, other in enumerate(boxes):
                if j in used or not _near(current, other, threshold):
                    continue
                current = union_boxes([current, other])
                used.add(j)
                grew = True
        merged.append(current)
    return merged


# ─── Compositing ─────────────────────────────────────────────────────


def as_pii_region(raw: Any) -> PiiRegion:
    if isinstance(raw, PiiRegion):
        return raw
    if isinstance(raw, dict):
        return PiiRegion.model_validate({**raw, "type": "pii"})
    return PiiRegion.model_validate(raw.model_dump() | {"type": "pii"})


def as_compliance_region(raw: Any) -> ComplianceRegion:
    if isinstance(raw, ComplianceRegion):
        return raw
    if isinstance(raw, dict):
        return ComplianceRegion.model_validate({**raw, "type": "compliance"})
    return ComplianceRegion.model_validate(raw.model_dump() | {"type": "compliance"})


def needs_pii_fallback(pii_regions: Iterable[PiiRegion], pii_flagged: bool) -> bool:
    """True when PII was flagged but no PII region carries usable geometry."""
    return pii_flagged and not any(is_valid_bbox(r.bbox) for r in pii_regions)


def _dedupe(
    kind: RegionKind,
    regions: Iterable[PiiRegion | ComplianceRegion],
    threshold: float,
) -> list[RedactionRegion]:
    """One region per cluster of nearby same-category boxes, in first-seen order.

    Clusters are closed transitively, so the result never depends on the
    order the detector reported its boxes in.
    """
    regions = list(regions)
    entries: list[tuple[int, RedactionRegion]] = []
    unplaced: set[tuple[str, str]] = set()
    by_category: dict[str, list[int]] = {}

    for i, region in enumerate(regions):
        if region.bbox is not None:
            by_category.setdefault(region.category, []).append(i)
            continue
        key = (region.category, region.text.strip().lower())
        if key in unplaced:
            continue
        unplaced.add(key)
        entries.append((i, RedactionRegion(
            type=kind, category=region.category, text=region.text, renderable=False
        )))

    for category, indexes in by_category.items():
        merged = merge_nearby_boxes([regions[i].bbox for i in indexes], threshold)
        for box in merged:
            # Merged boxes are pairwise apart, so each input touches exactly one
            first = next(i for i in indexes if _near(box, regions[i].bbox, 0))
            entries.append((first, RedactionRegion(
                type=kind, category=category, text=regions[first].text, bbox=box
            )))

    entries.sort(key=lambda entry: entry[0])
    return [region for _, region in entries]


def compose_regions(
    pii: Iterable[Any] = (),
    compliance: Iterable[Any] = (),
    pii_flagged: bool = False,
    extracted_text: str = "",
    word_boxes: Iterable[WordBox] = (),
    merge_threshold: float | None = None,
) -> list[RedactionRegion]:
    """Composite both detectors' regions into the ordered overlay list."""
    threshold = settings.REDACTION_MERGE_THRESHOLD if merge_threshold is None else merge_threshold
    pii_regions = [as_pii_region(r) for r in pii]
    compliance_regions = [as_compliance_region(r) for r in compliance]

    if needs_pii_fallback(pii_regions, pii_flagged):
        words = list(word_boxes)
        if extracted_text and words:
            derived = detect_pii(extracted_text, words)
            if derived:
                logger.info("PII flagged without geometry; derived %d regions from text", len(derived))
                pii_regions = derived

    regions = _dedupe(RegionKind.PII, pii_regions, threshold)
    regions.extend(_dedupe(RegionKind.COMPLIANCE, compliance_regions, threshold))
    return regions
