"""
Coordinate normalization and field-to-geometry matching.

OCR engines disagree about coordinate spaces: some report percentages of
the page, others absolute pixels against a page size they rarely declare.
Everything here works in ONE space — percentage of page (0–100).

Highlight strategy for a field value:
  1. Tokenize the value into lowercase word/number terms
  2. For each term, collect every OCR word that equals, contains, or is
     contained by the term (OCR splits tokens like "Inv-" + "0042")
  3. Normalize the matched boxes and return their union

The resulting box is a navigation aid, never an authority, so recall wins
over precision.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Mapping

from .config import settings
from .models import BoundingBox, ProvenancedValue, WordBox, coerce_bbox

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"[\w.-]+")


# ─── Coordinate Normalizer ───────────────────────────────────────────


def is_valid_bbox(box: object) -> bool:
    """True when the box has all four coordinates and every one is finite."""
    return coerce_bbox(box) is not None


def normalize_bbox(
    box: BoundingBox,
    reference: tuple[float, float] | None = None,
) -> BoundingBox:
    """Convert a box into percentage-of-page space.

    A box whose coordinates are all ≤ 100 is taken as already normalized.
    Otherwise each axis is rescaled against the reference page size
    (defaults to REFERENCE_WIDTH × REFERENCE_HEIGHT, i.e. 1000 × 1000).
    """
    if max(box.x, box.y, box.width, box.height) <= 100:
        return box

    ref_w, ref_h = reference or (settings.REFERENCE_WIDTH, settings.REFERENCE_HEIGHT)
    return BoundingBox(
        x=box.x / ref_w * 100,
        y=box.y / ref_h * 100,
        width=box.width / ref_w * 100,
        height=box.height / ref_h * 100,
    )


def union_boxes(boxes: Iterable[BoundingBox]) -> BoundingBox | None:
    """Smallest box enclosing every input box; None for an empty input."""
    boxes = list(boxes)
    if not boxes:
        return None

    min_x = min(b.x for b in boxes)
    min_y = min(b.y for b in boxes)
    max_x = max(b.x + b.width for b in boxes)
    max_y = max(b.y + b.height for b in boxes)
    return BoundingBox(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)


# ─── Field-to-Geometry Matcher ───────────────────────────────────────


def tokenize_value(value: str) -> list[str]:
    """Split a field value into lowercase terms, punctuation kept attached."""
    return _TERM_RE.findall(value.lower().strip())


def word_matches_term(word_text: str, term: str) -> bool:
    """Symmetric containment: equal, word ⊇ term, or term ⊇ word."""
    word = word_text.lower().strip()
    if not word or not term:
        return False
    return word == term or term in word or word in term


def find_matching_words(value: str, word_boxes: Iterable[WordBox]) -> list[WordBox]:
    """Every word box matching any term of `value` (duplicates collapsed, order kept)."""
    terms = tokenize_value(value)
    if not terms:
        return []

    matched: list[WordBox] = []
    seen: set[int] = set()
    for term in terms:
        for i, word in enumerate(word_boxes):
            if i in seen or word.bbox is None:
                continue
            if word_matches_term(word.text, term):
                seen.add(i)
                matched.append(word)
    return matched


def locate_value(
    value: str,
    word_boxes: list[WordBox],
    reference: tuple[float, float] | None = None,
) -> BoundingBox | None:
    """Highlight box for one value, or None if no word on the page matches it."""
    matched = find_matching_words(value, word_boxes)
    boxes = [normalize_bbox(w.bbox, reference) for w in matched if w.bbox is not None]
    return union_boxes(boxes)


def highlight_fields(
    fields: Mapping[str, object],
    word_boxes: list[WordBox],
    reference: tuple[float, float] | None = None,
) -> dict[str, ProvenancedValue]:
    """Derive the on-page highlight for every string field that can be located.

    Non-string and empty values are skipped; so are values with no matching
    words. Neither case is an error.
    """
    highlights: dict[str, ProvenancedValue] = {}
    if not word_boxes:
        logger.debug("No word boxes available — no highlights derived")
        return highlights

    for name, value in fields.items():
        if not isinstance(value, str) or not value.strip():
            continue
        box = locate_value(value, word_boxes, reference)
        if box is not None:
            highlights[name] = ProvenancedValue(value=value, bbox=box)

    logger.debug("Derived highlights for %d/%d fields", len(highlights), len(fields))
    return highlights
