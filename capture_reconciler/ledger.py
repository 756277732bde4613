"""
Operator action ledger — the sticky part of a lookup validation.

Lookup results are pure functions of their inputs and can be recomputed at
will. The operator's decisions cannot. Per line item:

    unreviewed ──approve──▶ approved
        │                      ▲ │
        └──reject──▶ rejected ─┘ ▼   (approved ⇄ rejected allowed)

`override_approved` and `rejected` are never both true. Every transition
stamps `override_at` and `override_by`.

Recomputation never writes these four fields; instead the fresh results are
merged with the stored ledger by row index at write time (read-merge-write).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from .exceptions import LedgerTransitionError
from .models import LedgerSummary, LookupValidation, ValidationResult

logger = logging.getLogger(__name__)

LEDGER_FIELDS = ("override_approved", "rejected", "override_at", "override_by")


class OperatorAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_action(
    result: ValidationResult,
    action: OperatorAction | str,
    operator: str,
    at: datetime | None = None,
) -> ValidationResult:
    """Return a copy of `result` with the operator's decision applied."""
    try:
        action = OperatorAction(action)
    except ValueError:
        raise LedgerTransitionError(
            f"Unknown operator action '{action}'",
            details={"allowed": [a.value for a in OperatorAction]},
        ) from None

    stamp = at or _utcnow()
    approved = action is OperatorAction.APPROVE
    logger.info(
        "Row %d %s by %s", result.index, "approved" if approved else "rejected", operator
    )
    return result.model_copy(
        update={
            "override_approved": approved,
            "rejected": not approved,
            "override_at": stamp,
            "override_by": operator,
        }
    )


def has_operator_state(result: ValidationResult) -> bool:
    return result.override_approved or result.rejected or result.override_at is not None


def merge_ledger(
    fresh: list[ValidationResult], stored: list[ValidationResult]
) -> list[ValidationResult]:
    """Carry operator decisions from `stored` onto recomputed rows, by row index.

    Rows without a stored decision are returned untouched. Stored decisions
    for indexes no longer present are dropped along with their rows.
    """
    decisions = {r.index: r for r in stored if has_operator_state(r)}
    merged: list[ValidationResult] = []
    for result in fresh:
        prior = decisions.get(result.index)
        if prior is None:
            merged.append(result)
            continue
        merged.append(
            result.model_copy(update={name: getattr(prior, name) for name in LEDGER_FIELDS})
        )
    return merged


# ─── Ledger Record ───────────────────────────────────────────────────


def build_ledger(
    results: list[ValidationResult],
    validated_at: datetime | None = None,
    threshold: float = 0.9,
) -> LookupValidation:
    """Assemble the persisted ledger record, counting only non-rejected rows."""
    results = sorted(results, key=lambda r: r.index)
    active = [r for r in results if not r.rejected]
    valid = sum(1 for r in active if r.is_valid(threshold))
    partial = sum(1 for r in active if r.partial_match and not r.override_approved)
    return LookupValidation(
        validated=True,
        validated_at=validated_at or _utcnow(),
        total_items=len(results),
        valid_count=valid,
        invalid_count=len(active) - valid,
        partial_match_count=partial,
        results=results,
    )


def record_action(
    ledger: LookupValidation,
    index: int,
    action: OperatorAction | str,
    operator: str,
    at: datetime | None = None,
    threshold: float = 0.9,
) -> LookupValidation:
    """Apply one operator action to a stored ledger and recount."""
    if not any(r.index == index for r in ledger.results):
        raise LedgerTransitionError(
            f"No line item with index {index}",
            details={"index": index, "total_items": ledger.total_items},
        )
    results = [
        apply_action(r, action, operator, at) if r.index == index else r
        for r in ledger.results
    ]
    return build_ledger(results, validated_at=ledger.validated_at, threshold=threshold)


def summarize(results: list[ValidationResult], threshold: float = 0.9) -> LedgerSummary:
    """Operator-facing partition: valid + for review + rejected == total."""
    active = [r for r in results if not r.rejected]
    valid = [r for r in active if r.is_valid(threshold)]
    review = [r for r in active if r.needs_review(threshold)]
    return LedgerSummary(
        total_items=len(results),
        valid_count=len(valid),
        for_review_count=len(review),
        rejected_count=len(results) - len(active),
        partial_match_count=sum(1 for r in review if r.partial_match),
        not_found_count=sum(1 for r in review if not r.found and not r.partial_match),
        signatures_present=sum(
            1 for r in active if r.signature_status is not None and r.signature_status.present
        ),
        valid_percent=round(len(valid) / len(active) * 100) if active else 0,
    )
