"""
Fuzzy lookup validator — checks extracted line items against an authoritative source.

Each row becomes one `LookupRequest`. Rows fan out to the provider with a
bounded number in flight, every call wrapped in a timeout. A row whose
lookup raises or times out is reported as not found with a message; its
siblings are unaffected. Results come back keyed by row index and are
merged with the stored operator ledger before counting.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import ScoringPolicy, settings
from .exceptions import LookupConfigError
from .ledger import build_ledger, merge_ledger
from .models import (
    FieldLookupOutcome,
    LineItem,
    LookupConfig,
    LookupField,
    LookupFieldValue,
    LookupRequest,
    LookupResponse,
    LookupSystem,
    LookupValidation,
    SignatureStatus,
    ValidationResult,
)
from .similarity import normalize_field_name
from .sources import LookupProvider, get_column

logger = logging.getLogger(__name__)

ROW_FAILURE_PREFIX = "Lookup could not be completed"
SIGNATURE_COLUMN = "Signature_Present"
_SIGNED_VALUES = {"yes", "y", "true", "1", "x"}


# ─── Key & Field Resolution ──────────────────────────────────────────


def _find_field(fields: list[LookupField], name: str, attr: str) -> LookupField | None:
    wanted = normalize_field_name(name)
    for field in fields:
        if normalize_field_name(getattr(field, attr)) == wanted:
            return field
    return None


def resolve_key(config: LookupConfig) -> tuple[str, str]:
    """Return (key field in the line items, key column in the source).

    Explicit config wins. Otherwise the missing half is taken from the
    lookup field whose name normalizes to the known half, and failing
    that from the first enabled lookup field.
    """
    fields = config.active_fields()
    key_field = config.key_field
    key_column = config.key_column

    if key_field and not key_column:
        match = _find_field(fields, key_field, "source_field")
        key_column = match.target_field if match else key_field
    elif key_column and not key_field:
        match = _find_field(fields, key_column, "target_field")
        key_field = match.source_field if match else key_column
    elif not key_field and not key_column and fields:
        key_field, key_column = fields[0].source_field, fields[0].target_field

    if not key_field or not key_column:
        raise LookupConfigError(
            "Lookup key column is not configured",
            details={"system": config.system.value},
        )
    return key_field, key_column


def unmapped_fields(line_items: list[LineItem], config: LookupConfig) -> list[str]:
    """Enabled lookup fields that no line item carries (schema mismatch)."""
    if not line_items:
        return []
    present = {normalize_field_name(k) for item in line_items for k in item}
    return [
        f.source_field
        for f in config.active_fields()
        if normalize_field_name(f.source_field) not in present
    ]


def _cell(item: LineItem, name: str) -> str:
    value = item.get(name)
    if value is None:
        return get_column(item, name)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def signature_status(item: LineItem) -> SignatureStatus | None:
    """Signature column of a petition row, when the row has one."""
    wanted = normalize_field_name(SIGNATURE_COLUMN)
    for key, value in item.items():
        if normalize_field_name(key) == wanted:
            text = str(value or "").strip()
            return SignatureStatus(present=text.lower() in _SIGNED_VALUES, value=text)
    return None


# ─── Provider Calls ──────────────────────────────────────────────────


async def call_provider(
    provider: LookupProvider,
    request: LookupRequest,
    timeout: float,
    semaphore: asyncio.Semaphore | None = None,
) -> LookupResponse:
    """Run one blocking provider lookup in a worker thread, waiting at most `timeout`.

    The semaphore slot is held until the thread returns, not until the
    caller stops waiting, so a timed-out call still counts against the cap.

    Raises:
        asyncio.TimeoutError: the call did not finish within `timeout`.
    """
    if semaphore is not None:
        await semaphore.acquire()
    call = asyncio.ensure_future(asyncio.to_thread(provider.lookup, request))

    def _finished(future: asyncio.Future) -> None:
        if semaphore is not None:
            semaphore.release()
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Provider call for %s ended with: %s", request.key_value, future.exception())

    call.add_done_callback(_finished)
    done, _ = await asyncio.wait({call}, timeout=timeout)
    if not done:
        raise asyncio.TimeoutError
    return call.result()


# ─── Row Validation ──────────────────────────────────────────────────


async def _validate_row(
    index: int,
    item: LineItem,
    key_field: str,
    key_column: str,
    fields: list[LookupField],
    provider: LookupProvider,
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> ValidationResult:
    signature = signature_status(item)
    key_value = _cell(item, key_field)
    if not key_value:
        return ValidationResult(
            index=index, signature_status=signature, message=f"No value for {key_field}"
        )

    request = LookupRequest(
        key_column=key_column,
        key_value=key_value,
        lookup_fields=[
            LookupFieldValue(
                source_field=f.source_field,
                target_field=f.target_field,
                extracted_value=_cell(item, f.source_field),
            )
            for f in fields
        ],
    )

    try:
        response = await call_provider(provider, request, timeout, semaphore)
    except asyncio.TimeoutError:
        logger.warning("Lookup for row %d timed out after %.1fs", index, timeout)
        return ValidationResult(
            index=index,
            key_value=key_value,
            signature_status=signature,
            message=f"{ROW_FAILURE_PREFIX} for row {index + 1}: timed out after {timeout:g}s",
        )
    except Exception as e:
        logger.warning("Lookup for row %d failed: %s", index, e)
        return ValidationResult(
            index=index,
            key_value=key_value,
            signature_status=signature,
            message=f"{ROW_FAILURE_PREFIX} for row {index + 1}: {e}",
        )

    return ValidationResult(
        index=index,
        key_value=key_value,
        found=response.found,
        partial_match=response.partial_match,
        mismatch_reason=response.mismatch_reason,
        all_match=bool(response.all_match),
        match_score=response.match_score or 0.0,
        field_results=response.validation_results,
        signature_status=signature,
        best_match=response.record,
        message=response.message,
    )


async def validate_line_items(
    line_items: list[LineItem],
    config: LookupConfig,
    provider: LookupProvider,
    *,
    policy: ScoringPolicy | None = None,
    concurrency: int | None = None,
    timeout: float | None = None,
    prior: LookupValidation | None = None,
) -> LookupValidation:
    """Validate every line item and return the ledger record.

    Operator decisions in `prior` are carried over by row index.

    Raises:
        LookupConfigError: no key column can be resolved.
    """
    policy = policy or ScoringPolicy.from_settings()
    concurrency = concurrency or settings.LOOKUP_CONCURRENCY
    timeout = timeout or settings.LOOKUP_TIMEOUT_SECONDS

    key_field, key_column = resolve_key(config)

    skipped = set(unmapped_fields(line_items, config))
    for name in skipped:
        logger.info("Lookup field '%s' not present in line items; skipped", name)

    fields = [f for f in config.active_fields() if f.source_field not in skipped]
    if config.system is LookupSystem.REGISTRY:
        # The key is scored by name similarity, not as a secondary field
        fields = [
            f for f in fields
            if normalize_field_name(f.source_field) != normalize_field_name(key_field)
        ]

    semaphore = asyncio.Semaphore(max(1, concurrency))
    results = await asyncio.gather(*[
        _validate_row(i, item, key_field, key_column, fields, provider, semaphore, timeout)
        for i, item in enumerate(line_items)
    ])

    merged = merge_ledger(list(results), prior.results if prior else [])
    ledger = build_ledger(merged, threshold=policy.full_match_threshold)
    logger.info(
        "Lookup validation: %d/%d valid (%d partial)",
        ledger.valid_count, ledger.total_items, ledger.partial_match_count,
    )
    return ledger


# ─── Single Field ────────────────────────────────────────────────────


async def lookup_field(
    field_name: str,
    value: Any,
    config: LookupConfig,
    provider: LookupProvider,
    timeout: float | None = None,
) -> FieldLookupOutcome | None:
    """Look up one header field's value. None when the field has no lookup mapping."""
    field = _find_field(config.active_fields(), field_name, "source_field")
    if field is None:
        logger.info("No lookup mapping for field '%s'", field_name)
        return None

    text = str(value if value is not None else "").strip()
    if not text:
        return FieldLookupOutcome(
            field=field_name, found=False, confidence=0.3, message=f"No value for {field_name}"
        )

    request = LookupRequest(
        key_column=field.target_field,
        key_value=text,
        lookup_fields=[
            LookupFieldValue(
                source_field=field.source_field,
                target_field=field.target_field,
                extracted_value=text,
            )
        ],
    )
    timeout = timeout or settings.LOOKUP_TIMEOUT_SECONDS
    try:
        response = await call_provider(provider, request, timeout)
    except asyncio.TimeoutError:
        logger.warning("Lookup for field '%s' timed out after %.1fs", field_name, timeout)
        return FieldLookupOutcome(
            field=field_name,
            found=False,
            confidence=0.3,
            message=f"{ROW_FAILURE_PREFIX} for {field_name}: timed out after {timeout:g}s",
        )
    except Exception as e:
        logger.warning("Lookup for field '%s' failed: %s", field_name, e)
        return FieldLookupOutcome(
            field=field_name,
            found=False,
            confidence=0.3,
            message=f"{ROW_FAILURE_PREFIX} for {field_name}: {e}",
        )

    system = config.system.value.upper()
    if response.found:
        return FieldLookupOutcome(
            field=field_name,
            found=True,
            confidence=1.0,
            message=f'{field_name} "{text}" found in {system}',
        )
    suggestion = next(
        (r.suggestion for r in response.validation_results if r.suggestion), None
    )
    return FieldLookupOutcome(
        field=field_name,
        found=False,
        confidence=0.3,
        message=response.message or f'{field_name} "{text}" not found in {system}',
        suggestion=suggestion,
    )
