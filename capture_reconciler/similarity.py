"""
String normalization and fuzzy agreement scores.

Scores are in [0, 1]. They are deliberately simple and explainable: an
operator looking at "Address: 82%" must be able to guess why.

  normalize_key          "  John_ SMITH " → "john smith"
  normalize_field_name   "Voter ID" / "voter_id" / "VoterId " → "voterid"
  name_similarity        containment ratio, then word/prefix agreement
  text_similarity        containment = 0.9, then exact word overlap
  tie_break_ratio        difflib ratio, used only to order equal scores
"""

from __future__ import annotations

import re
from difflib import SequenceMatcher

_SEPARATORS_RE = re.compile(r"[\s_]+")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_key(value: object) -> str:
    """Trim, case-fold, and collapse runs of whitespace/underscores to one space."""
    if value is None:
        return ""
    return _SEPARATORS_RE.sub(" ", str(value).strip().casefold()).strip()


def normalize_field_name(name: object) -> str:
    """Case- and separator-insensitive field-name key."""
    if name is None:
        return ""
    return _SEPARATORS_RE.sub("", str(name).strip().lower())


def normalize_zip(value: object) -> str:
    """First five digits of a postal code."""
    return _NON_DIGIT_RE.sub("", str(value or ""))[:5]


def name_similarity(a: str, b: str) -> float:
    """Agreement between two names (registry key matching).

    Containment scores the length ratio; otherwise each word of `a` counts
    when some word of `b` equals it or one is a 3+ character prefix of the
    other.
    """
    s1 = a.lower().strip()
    s2 = b.lower().strip()

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    longer, shorter = (s1, s2) if len(s1) > len(s2) else (s2, s1)
    if shorter in longer:
        return len(shorter) / len(longer)

    words1 = s1.split()
    words2 = s2.split()
    matching = 0
    for w1 in words1:
        for w2 in words2:
            if w1 == w2 or (len(w1) > 2 and w2.startswith(w1)) or (len(w2) > 2 and w1.startswith(w2)):
                matching += 1
                break

    return matching / max(len(words1), len(words2))


def text_similarity(a: object, b: object) -> float:
    """Agreement between two free-text values (tabular field matching)."""
    s1 = _WHITESPACE_RE.sub(" ", str(a or "").lower().strip())
    s2 = _WHITESPACE_RE.sub(" ", str(b or "").lower().strip())

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 in s2 or s2 in s1:
        return 0.9

    words1 = s1.split(" ")
    words2 = s2.split(" ")
    common = [w for w in words1 if w in words2]
    return len(common) / max(len(words1), len(words2))


def tie_break_ratio(a: str, b: str) -> float:
    """Character-level similarity used to order candidates with equal scores."""
    return SequenceMatcher(None, a.lower(), b.lower()).ratio()
