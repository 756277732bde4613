"""
Authoritative lookup sources and the providers that query them.

Every provider honours the same contract:

    lookup(LookupRequest{keyColumn, keyValue, lookupFields[]})
        → LookupResponse{found, allMatch, matchScore, validationResults[], ...}

Providers are synchronous and side-effect free apart from I/O; fan-out,
timeouts and per-row failure isolation live in `lookup.py`.

  TabularLookupProvider   CSV / Excel rows, key equality-or-containment
  RegistryLookupProvider  authoritative roll (e.g. voters), fuzzy name key
                          plus address / city / zip agreement
  EcmLookupProvider       FileBound / DocMgt search over HTTP (httpx +
                          tenacity, one bounded retry by default)
"""

from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Protocol

import httpx
from openpyxl import load_workbook
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import ScoringPolicy, settings
from .exceptions import LookupConfigError, LookupSourceError, LookupUnavailableError
from .models import (
    FieldResult,
    LookupConfig,
    LookupRequest,
    LookupResponse,
    LookupSystem,
)
from .similarity import (
    name_similarity,
    normalize_field_name,
    normalize_key,
    normalize_zip,
    text_similarity,
    tie_break_ratio,
)

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = {".xlsx", ".xlsm"}
REGISTRY_CANDIDATE_LIMIT = 10


class LookupProvider(Protocol):
    def lookup(self, request: LookupRequest) -> LookupResponse: ...


# ─── Table Loading ───────────────────────────────────────────────────


def load_table(locator: str, timeout: float | None = None) -> list[dict[str, str]]:
    """Load rows (header-keyed, string-valued) from a CSV or Excel file path or URL.

    Raises:
        LookupSourceError: the file cannot be fetched, read, or parsed.
    """
    if not locator:
        raise LookupSourceError("No lookup source configured")

    name = locator.split("?", 1)[0].lower()
    raw = _read_source(locator, timeout)

    if name.endswith(".csv"):
        rows = _parse_csv(raw)
    elif Path(name).suffix in EXCEL_EXTENSIONS:
        rows = _parse_excel(raw)
    else:
        raise LookupSourceError(
            f"Unsupported lookup source type: {locator}",
            details={"locator": locator},
        )

    logger.info("Loaded %d rows from lookup source %s", len(rows), locator)
    return rows


def _read_source(locator: str, timeout: float | None) -> bytes:
    if locator.startswith(("http://", "https://")):
        try:
            resp = httpx.get(locator, timeout=timeout or settings.LOOKUP_TIMEOUT_SECONDS)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise LookupSourceError(
                f"Could not fetch lookup file: {e}", details={"locator": locator}
            ) from e
        return resp.content

    try:
        return Path(locator).read_bytes()
    except OSError as e:
        raise LookupSourceError(
            f"Could not read lookup file: {e}", details={"locator": locator}
        ) from e


def _parse_csv(raw: bytes) -> list[dict[str, str]]:
    text = raw.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    rows: list[dict[str, str]] = []
    for row in reader:
        rows.append({
            (key or "").strip(): (value or "").strip()
            for key, value in row.items()
            if key is not None
        })
    return rows


def _parse_excel(raw: bytes) -> list[dict[str, str]]:
    try:
        workbook = load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    except Exception as e:  # openpyxl raises several unrelated types on bad input
        raise LookupSourceError(f"Could not parse Excel lookup file: {e}") from e

    try:
        sheet = workbook.worksheets[0]
        values = sheet.iter_rows(values_only=True)
        header = next(values, None)
        if header is None:
            return []
        columns = [_cell_text(h) for h in header]
        rows = []
        for record in values:
            if record is None or all(v is None for v in record):
                continue
            rows.append({
                col: _cell_text(val)
                for col, val in zip(columns, record)
                if col
            })
        return rows
    finally:
        workbook.close()


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def get_column(record: dict[str, Any], name: str) -> str:
    """Read a column by case/separator-insensitive name ("" when absent)."""
    if name in record:
        return str(record[name] or "").strip()
    wanted = normalize_field_name(name)
    for key, value in record.items():
        if normalize_field_name(key) == wanted:
            return str(value or "").strip()
    return ""


# ─── Shared Field Comparison ─────────────────────────────────────────


def compare_fields(
    record: dict[str, Any], request: LookupRequest
) -> list[FieldResult]:
    """Case-insensitive agreement of every requested field with a source record."""
    results: list[FieldResult] = []
    for field in request.lookup_fields:
        source_value = get_column(record, field.target_field)
        extracted = field.extracted_value.strip()
        matches = source_value.lower() == extracted.lower()
        results.append(
            FieldResult(
                field=field.source_field,
                extracted_value=extracted,
                source_value=source_value,
                matches=matches,
                score=1.0 if matches else text_similarity(extracted, source_value),
                suggestion=None if matches else source_value,
            )
        )
    return results


def _tabular_response(record: dict[str, Any], request: LookupRequest) -> LookupResponse:
    results = compare_fields(record, request)
    all_match = all(r.matches for r in results)
    score = sum(1.0 for r in results if r.matches) / len(results) if results else 1.0
    return LookupResponse(
        found=True,
        all_match=all_match,
        match_score=score,
        validation_results=results,
        record={k: str(v) for k, v in record.items()},
        message="All fields match" if all_match else "Some fields do not match",
    )


# ─── Tabular (CSV / Excel) ───────────────────────────────────────────


class TabularLookupProvider:
    """Keyed lookup over rows loaded from a CSV or Excel file."""

    def __init__(self, rows: list[dict[str, str]]):
        self.rows = rows

    @classmethod
    def from_source(cls, locator: str) -> "TabularLookupProvider":
        return cls(load_table(locator))

    def find(self, key_column: str, key_value: str) -> dict[str, str] | None:
        """First row whose key equals, contains, or is contained by the search value."""
        search = str(key_value).strip()
        if not search:
            return None
        for row in self.rows:
            row_value = get_column(row, key_column)
            if not row_value:
                continue
            if row_value == search or search in row_value or row_value in search:
                return row
        return None

    def lookup(self, request: LookupRequest) -> LookupResponse:
        record = self.find(request.key_column, request.key_value)
        if record is None:
            return LookupResponse(
                found=False,
                all_match=False,
                match_score=0.0,
                message=f"No record found for {request.key_column}: {request.key_value}",
            )
        return _tabular_response(record, request)


# ─── Registry (authoritative roll) ───────────────────────────────────


class RegistryLookupProvider:
    """Authoritative list keyed by a normalized name.

    Resolution order:
      1. Exact normalized-name hit → key score 1.0
      2. Candidates sharing the first name token, scored by name_similarity;
         best score ≥ name threshold wins, ties broken by character ratio
    Secondary fields (address, city, zip) then decide between a full and a
    partial ("address_mismatch") match.
    """

    def __init__(
        self,
        records: list[dict[str, str]],
        name_column: str = "name",
        policy: ScoringPolicy | None = None,
    ):
        self.name_column = name_column
        self.policy = policy or ScoringPolicy.from_settings()
        self._records: list[tuple[str, dict[str, str]]] = []
        self._index: dict[str, list[dict[str, str]]] = defaultdict(list)
        for record in records:
            key = normalize_key(get_column(record, name_column))
            if not key:
                continue
            self._records.append((key, record))
            self._index[key].append(record)

    def __len__(self) -> int:
        return len(self._records)

    def _best_candidate(self, key: str) -> tuple[dict[str, str] | None, float]:
        exact = self._index.get(key)
        if exact:
            return exact[0], 1.0

        first_token = key.split(" ")[0]
        candidates = [
            (name, rec) for name, rec in self._records if first_token in name
        ][:REGISTRY_CANDIDATE_LIMIT]

        best: dict[str, str] | None = None
        best_rank = (0.0, 0.0)
        for name, record in candidates:
            score = name_similarity(key, name)
            if score < self.policy.name_match_threshold:
                continue
            rank = (score, tie_break_ratio(key, name))
            if rank > best_rank:
                best, best_rank = record, rank
        return best, best_rank[0]

    def _compare_secondary(self, record: dict[str, str], request: LookupRequest) -> list[FieldResult]:
        results: list[FieldResult] = []
        for field in request.lookup_fields:
            extracted = field.extracted_value.strip()
            source_value = get_column(record, field.target_field)
            if not extracted or not source_value:
                continue

            kind = normalize_field_name(field.target_field)
            if "zip" in kind or "postal" in kind:
                matches = normalize_zip(extracted) == normalize_zip(source_value)
                score = 1.0 if matches else 0.0
            elif "city" in kind:
                matches = extracted.lower() == source_value.lower()
                score = 1.0 if matches else 0.0
            else:
                score = name_similarity(extracted, source_value)
                matches = score >= self.policy.address_match_threshold

            results.append(
                FieldResult(
                    field=field.source_field,
                    extracted_value=extracted,
                    source_value=source_value,
                    matches=matches,
                    score=score,
                    suggestion=None if matches else source_value,
                )
            )
        return results

    def lookup(self, request: LookupRequest) -> LookupResponse:
        key = normalize_key(request.key_value)
        if not key:
            return LookupResponse(found=False, match_score=0.0, message="Empty name")

        record, key_score = self._best_candidate(key)
        if record is None:
            return LookupResponse(
                found=False, match_score=0.0, message="Not found in registry"
            )

        results = self._compare_secondary(record, request)
        all_fields_match = all(r.matches for r in results)
        partial = key_score >= self.policy.full_match_threshold and not all_fields_match

        avg_field = sum(r.score for r in results) / len(results) if results else 1.0
        final = key_score * self.policy.key_weight + avg_field * self.policy.field_weight

        # A partial match is its own class: the name is on the roll but the
        # person at this address is not confirmed.
        return LookupResponse(
            found=not partial,
            all_match=all_fields_match,
            match_score=final,
            partial_match=partial,
            mismatch_reason="address_mismatch" if partial else None,
            validation_results=results,
            record=dict(record),
            message=(
                "Name found - Address mismatch" if partial
                else f"Match score: {round(final * 100)}%"
            ),
        )


def load_registry(
    rows: list[dict[str, str]],
    name_column: str = "name",
    policy: ScoringPolicy | None = None,
) -> RegistryLookupProvider:
    """Build a registry from tabular rows (e.g. an imported voter roll)."""
    registry = RegistryLookupProvider(rows, name_column=name_column, policy=policy)
    logger.info("Registry loaded: %d named records (of %d rows)", len(registry), len(rows))
    return registry


# ─── ECM (FileBound / DocMgt) ────────────────────────────────────────


class EcmLookupClient:
    """HTTP search client for ECM systems with timeouts and bounded retry.

    FileBound:  GET {base}/api/projects/{project}/files?{field}={value}
    DocMgt:     GET {base}/rest/records?recordTypeId={project}&{field}={value}
    """

    def __init__(
        self,
        system: LookupSystem,
        base_url: str,
        username: str = "",
        password: str = "",
        project: str | None = None,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        if system not in (LookupSystem.FILEBOUND, LookupSystem.DOCMGT):
            raise LookupConfigError(f"{system.value} is not an ECM system")
        self.system = system
        self.project = project
        self._retry_attempts = retry_attempts if retry_attempts is not None else settings.LOOKUP_RETRY_ATTEMPTS
        self._retry_delay = retry_delay if retry_delay is not None else settings.LOOKUP_RETRY_DELAY

        read_timeout = timeout if timeout is not None else settings.LOOKUP_TIMEOUT_SECONDS
        conn_timeout = connect_timeout if connect_timeout is not None else settings.LOOKUP_CONNECT_TIMEOUT

        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=(username, password) if username else None,
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=float(read_timeout),
                pool=float(read_timeout),
            ),
        )

    def close(self) -> None:
        self._client.close()

    def _search_path(self) -> tuple[str, dict[str, str]]:
        if self.system is LookupSystem.FILEBOUND:
            return f"/api/projects/{self.project}/files", {}
        params = {"recordTypeId": self.project} if self.project else {}
        return "/rest/records", params

    def search(self, field: str, value: str) -> list[dict[str, Any]]:
        """Records whose `field` matches `value`.

        Raises LookupUnavailableError (retried, then re-raised) or
        LookupSourceError (not retried).
        """

        @retry(
            retry=retry_if_exception_type(LookupUnavailableError),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_delay, max=10),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "%s lookup unavailable, retrying in %.1fs (attempt %d/%d)",
                self.system.value,
                state.next_action.sleep,  # type: ignore[union-attr]
                state.attempt_number,
                self._retry_attempts,
            ),
        )
        def _do_search() -> list[dict[str, Any]]:
            return self._send_search(field, value)

        return _do_search()

    def _send_search(self, field: str, value: str) -> list[dict[str, Any]]:
        path, params = self._search_path()
        params = {**params, field: value}
        try:
            resp = self._client.get(path, params=params)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise LookupUnavailableError(f"{self.system.value} unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise LookupSourceError(f"{self.system.value} HTTP error: {e}") from e

        if resp.status_code in (429, 502, 503, 504):
            raise LookupUnavailableError(
                f"{self.system.value} returned {resp.status_code}",
                details={"status_code": resp.status_code},
            )
        if resp.status_code != 200:
            raise LookupSourceError(
                f"{self.system.value} search failed: HTTP {resp.status_code}",
                details={"status_code": resp.status_code},
            )

        data = resp.json()
        if isinstance(data, dict):
            data = data.get("records") or data.get("files") or data.get("Files") or []
        return [r for r in data if isinstance(r, dict)]


class EcmLookupProvider:
    """Adapts an EcmLookupClient search to the lookup contract."""

    def __init__(self, client: EcmLookupClient):
        self.client = client

    def lookup(self, request: LookupRequest) -> LookupResponse:
        records = self.client.search(request.key_column, request.key_value)
        if not records:
            return LookupResponse(
                found=False,
                all_match=False,
                match_score=0.0,
                message=f"No record found for {request.key_column}: {request.key_value}",
            )
        return _tabular_response(records[0], request)


# ─── Factory ─────────────────────────────────────────────────────────


def build_provider(config: LookupConfig, policy: ScoringPolicy | None = None) -> LookupProvider:
    """Create the provider a lookup configuration asks for.

    Raises:
        LookupConfigError: lookup disabled or missing its source.
        LookupSourceError: the file-backed source cannot be loaded.
    """
    if not config.enabled:
        raise LookupConfigError("Lookup validation is not enabled")
    if not config.source_locator:
        raise LookupConfigError(
            "Lookup source is not configured", details={"system": config.system.value}
        )

    if config.system in (LookupSystem.EXCEL, LookupSystem.CSV):
        return TabularLookupProvider.from_source(config.source_locator)
    if config.system is LookupSystem.REGISTRY:
        rows = load_table(config.source_locator)
        return load_registry(rows, name_column=config.key_column or "name", policy=policy)

    client = EcmLookupClient(
        system=config.system,
        base_url=config.source_locator,
        username=config.username or "",
        password=config.password or "",
        project=config.project,
    )
    return EcmLookupProvider(client)
