"""
Tests for the fuzzy lookup validator — key resolution, bounded fan-out,
per-row failure isolation, and operator decisions surviving recomputation.

Providers are in-process fakes; async entry points are driven with
asyncio.run so the suite needs no async plugin.

Run: pytest tests/ -v
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any

import pytest

from capture_reconciler.exceptions import LookupConfigError
from capture_reconciler.ledger import record_action
from capture_reconciler.lookup import (
    lookup_field,
    resolve_key,
    signature_status,
    unmapped_fields,
    validate_line_items,
)
from capture_reconciler.models import (
    FieldResult,
    LookupConfig,
    LookupField,
    LookupRequest,
    LookupResponse,
    LookupSystem,
)
from capture_reconciler.sources import TabularLookupProvider, load_registry

# ─── Test Data ───────────────────────────────────────────────────────

VOTER_ROWS = [
    {"voter_id": "V-1", "name": "Maria Gonzalez", "precinct": "12"},
    {"voter_id": "V-2", "name": "James O'Neill", "precinct": "12"},
    {"voter_id": "V-3", "name": "Priya Raman", "precinct": "14"},
]

REGISTRY_ROWS = [
    {"name": "Maria Gonzalez", "address": "1420 Alder Street", "city": "Fresno", "zip": "93721"},
    {"name": "Priya Raman", "address": "310 Cedar Lane", "city": "Clovis", "zip": "93611"},
]


def _config(**overrides: Any) -> LookupConfig:
    params: dict[str, Any] = {
        "system": LookupSystem.CSV,
        "source_locator": "voters.csv",
        "key_field": "Voter ID",
        "lookup_fields": [
            LookupField(source_field="Voter ID", target_field="voter_id"),
            LookupField(source_field="Name", target_field="name"),
        ],
    }
    params.update(overrides)
    return LookupConfig(**params)


def _registry_config() -> LookupConfig:
    return LookupConfig(
        system=LookupSystem.REGISTRY,
        source_locator="voters.csv",
        key_column="name",
        key_field="Name",
        lookup_fields=[
            LookupField(source_field="Name", target_field="name"),
            LookupField(source_field="Address", target_field="address"),
            LookupField(source_field="City", target_field="city"),
        ],
    )


class _FakeProvider(TabularLookupProvider):
    """Tabular provider with injectable failures, delays and call tracking."""

    def __init__(
        self,
        rows: list[dict[str, str]],
        failing: tuple[str, ...] = (),
        delays: dict[str, float] | None = None,
    ):
        super().__init__(rows)
        self.failing = set(failing)
        self.delays = delays or {}
        self.requests: list[LookupRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def lookup(self, request: LookupRequest) -> LookupResponse:
        with self._lock:
            self.requests.append(request)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delays.get(request.key_value, 0.01))
            if request.key_value in self.failing:
                raise RuntimeError("source offline")
            return super().lookup(request)
        finally:
            with self._lock:
                self.in_flight -= 1


def _validate(line_items, config=None, provider=None, **kwargs):
    return asyncio.run(
        validate_line_items(
            line_items,
            config or _config(),
            provider or _FakeProvider(VOTER_ROWS),
            **kwargs,
        )
    )


# ═══════════════════════════════════════════════════════════════════════
# KEY & FIELD RESOLUTION
# ═══════════════════════════════════════════════════════════════════════


class TestResolveKey:
    def test_key_column_from_matching_lookup_field(self):
        assert resolve_key(_config()) == ("Voter ID", "voter_id")

    def test_key_field_from_matching_lookup_field(self):
        config = _config(key_field=None, key_column="voter_id")
        assert resolve_key(config) == ("Voter ID", "voter_id")

    def test_explicit_pair_wins(self):
        config = _config(key_field="Name", key_column="name")
        assert resolve_key(config) == ("Name", "name")

    def test_first_enabled_field_as_last_resort(self):
        config = _config(
            key_field=None,
            lookup_fields=[
                LookupField(source_field="Voter ID", target_field="voter_id", enabled=False),
                LookupField(source_field="Name", target_field="name"),
            ],
        )
        assert resolve_key(config) == ("Name", "name")

    def test_nothing_to_key_on(self):
        with pytest.raises(LookupConfigError, match="key column"):
            resolve_key(_config(key_field=None, lookup_fields=[]))


class TestUnmappedFields:
    def test_present_under_any_spelling(self):
        items = [{"voter_id": "V-1", "NAME": "Maria Gonzalez"}]
        assert unmapped_fields(items, _config()) == []

    def test_schema_mismatch_reported(self):
        items = [{"voter_id": "V-1"}]
        assert unmapped_fields(items, _config()) == ["Name"]

    def test_no_line_items(self):
        assert unmapped_fields([], _config()) == []


class TestSignatureStatus:
    @pytest.mark.parametrize("value", ["yes", "Y", "TRUE", "1", "x"])
    def test_signed(self, value):
        assert signature_status({"Signature Present": value}).present

    def test_unsigned(self):
        status = signature_status({"signature_present": "no"})
        assert status.present is False
        assert status.value == "no"

    def test_no_signature_column(self):
        assert signature_status({"Name": "Maria Gonzalez"}) is None


# ═══════════════════════════════════════════════════════════════════════
# LINE-ITEM VALIDATION
# ═══════════════════════════════════════════════════════════════════════


class TestValidateLineItems:
    def test_field_name_spellings_resolve_to_one_field(self):
        items = [
            {"Voter ID": "V-1", "Name": "Maria Gonzalez"},
            {"voter_id": "V-2", "Name": "James O'Neill"},
            {"VoterId ": "V-3", "Name": "Priya Raman"},
        ]
        ledger = _validate(items)
        assert [r.key_value for r in ledger.results] == ["V-1", "V-2", "V-3"]
        assert ledger.valid_count == 3

    def test_field_mismatch_lowers_score(self):
        ledger = _validate([{"Voter ID": "V-1", "Name": "Mario Gonzalez"}])
        result = ledger.results[0]
        assert result.found
        assert result.match_score == 0.5
        assert ledger.valid_count == 0
        assert ledger.invalid_count == 1

    def test_failing_row_is_isolated(self):
        items = [
            {"Voter ID": "V-1", "Name": "Maria Gonzalez"},
            {"Voter ID": "V-2", "Name": "James O'Neill"},
            {"Voter ID": "V-3", "Name": "Priya Raman"},
        ]
        ledger = _validate(items, provider=_FakeProvider(VOTER_ROWS, failing=("V-2",)))
        failed = ledger.results[1]
        assert failed.found is False
        assert failed.message == "Lookup could not be completed for row 2: source offline"
        assert [r.found for r in ledger.results] == [True, False, True]
        assert ledger.valid_count == 2

    def test_slow_row_times_out_alone(self):
        items = [{"Voter ID": "V-1", "Name": "Maria Gonzalez"}, {"Voter ID": "V-2", "Name": "James O'Neill"}]
        provider = _FakeProvider(VOTER_ROWS, delays={"V-2": 0.5})
        ledger = _validate(items, provider=provider, timeout=0.1)
        assert ledger.results[0].found
        assert ledger.results[1].message == "Lookup could not be completed for row 2: timed out after 0.1s"

    def test_results_keep_row_order(self):
        items = [
            {"Voter ID": "V-1", "Name": "Maria Gonzalez"},
            {"Voter ID": "V-2", "Name": "James O'Neill"},
            {"Voter ID": "V-3", "Name": "Priya Raman"},
        ]
        provider = _FakeProvider(VOTER_ROWS, delays={"V-1": 0.2, "V-2": 0.1})
        ledger = _validate(items, provider=provider)
        assert [r.index for r in ledger.results] == [0, 1, 2]
        assert [r.key_value for r in ledger.results] == ["V-1", "V-2", "V-3"]

    def test_concurrency_is_bounded(self):
        items = [{"Voter ID": f"V-{i}", "Name": "x"} for i in range(8)]
        provider = _FakeProvider(VOTER_ROWS, delays={f"V-{i}": 0.05 for i in range(8)})
        _validate(items, provider=provider, concurrency=2)
        assert len(provider.requests) == 8
        assert provider.max_in_flight <= 2

    def test_timed_out_calls_still_hold_their_slot(self):
        items = [{"Voter ID": f"V-{i}", "Name": "x"} for i in range(4)]
        provider = _FakeProvider(VOTER_ROWS, delays={f"V-{i}": 0.1 for i in range(4)})
        ledger = _validate(items, provider=provider, concurrency=1, timeout=0.02)
        assert all("timed out" in r.message for r in ledger.results)
        assert provider.max_in_flight == 1

    def test_empty_key_is_not_looked_up(self):
        provider = _FakeProvider(VOTER_ROWS)
        ledger = _validate([{"Voter ID": "", "Name": "Nobody"}], provider=provider)
        assert provider.requests == []
        assert ledger.results[0].message == "No value for Voter ID"

    def test_unmapped_field_is_skipped(self):
        provider = _FakeProvider(VOTER_ROWS)
        config = _config(lookup_fields=[
            LookupField(source_field="Voter ID", target_field="voter_id"),
            LookupField(source_field="Precinct", target_field="precinct"),
        ])
        _validate([{"Voter ID": "V-1"}], config=config, provider=provider)
        assert [f.source_field for f in provider.requests[0].lookup_fields] == ["Voter ID"]

    def test_numeric_cells_read_as_text(self):
        provider = _FakeProvider([{"voter_id": "1001", "name": "Ana Ruiz"}])
        ledger = _validate([{"Voter ID": 1001.0, "Name": "Ana Ruiz"}], provider=provider)
        assert ledger.results[0].key_value == "1001"
        assert ledger.results[0].found

    def test_deterministic(self):
        items = [{"Voter ID": "V-1", "Name": "Maria Gonzales"}, {"Voter ID": "V-9", "Name": "Nobody"}]
        first = _validate(items)
        second = _validate(items)
        assert [r.model_dump() for r in first.results] == [r.model_dump() for r in second.results]

    def test_signature_carried_onto_result(self):
        ledger = _validate([{"Voter ID": "V-1", "Name": "Maria Gonzalez", "Signature_Present": "no"}])
        assert ledger.results[0].signature_missing


class TestRegistryValidation:
    ITEMS = [
        {"Name": "Maria Gonzalez", "Address": "1420 Alder Street", "City": "Fresno"},
        {"Name": "Priya Raman", "Address": "77 Elm Road", "City": "Clovis"},
        {"Name": "Tom Whitfeld", "Address": "5 Dogwood Court", "City": "Fresno"},
    ]

    def _run(self, prior=None):
        return _validate(
            self.ITEMS, config=_registry_config(), provider=load_registry(REGISTRY_ROWS), prior=prior
        )

    def test_key_is_not_compared_as_a_secondary_field(self):
        ledger = self._run()
        fields = [fr.field for fr in ledger.results[0].field_results]
        assert fields == ["Address", "City"]

    def test_partial_match_counts(self):
        ledger = self._run()
        assert ledger.valid_count == 1
        assert ledger.partial_match_count == 1
        assert ledger.results[1].partial_match
        assert ledger.results[2].message == "Not found in registry"

    def test_approval_survives_revalidation(self):
        ledger = self._run()
        approved = record_action(ledger, 1, "approve", "ops@example.com")
        assert approved.valid_count == 2

        recomputed = self._run(prior=approved)
        row = recomputed.results[1]
        assert row.override_approved
        assert row.override_by == "ops@example.com"
        assert row.partial_match  # the recomputed facts are still fresh
        assert recomputed.valid_count == 2
        assert recomputed.partial_match_count == 0

    def test_rejection_survives_revalidation(self):
        rejected = record_action(self._run(), 2, "reject", "ops@example.com")
        recomputed = self._run(prior=rejected)
        assert recomputed.results[2].rejected
        assert recomputed.invalid_count == 1  # only the partial row remains open


# ═══════════════════════════════════════════════════════════════════════
# SINGLE FIELD LOOKUP
# ═══════════════════════════════════════════════════════════════════════


class _NearMissProvider:
    def lookup(self, request: LookupRequest) -> LookupResponse:
        return LookupResponse(
            found=False,
            message="Vendor not on file",
            validation_results=[FieldResult(field="Vendor", suggestion="Acme Corporation")],
        )


class TestLookupField:
    CONFIG = LookupConfig(
        system=LookupSystem.CSV,
        source_locator="vendors.csv",
        lookup_fields=[LookupField(source_field="Vendor Name", target_field="vendor")],
    )
    PROVIDER = TabularLookupProvider([{"vendor": "Acme"}])

    def test_found(self):
        outcome = asyncio.run(lookup_field("vendor_name", "Acme", self.CONFIG, self.PROVIDER))
        assert outcome.found
        assert outcome.confidence == 1.0
        assert outcome.message == 'vendor_name "Acme" found in CSV'

    def test_not_found(self):
        outcome = asyncio.run(lookup_field("Vendor Name", "Globex", self.CONFIG, self.PROVIDER))
        assert not outcome.found
        assert outcome.confidence == 0.3
        assert outcome.message == "No record found for vendor: Globex"

    def test_suggestion_from_source(self):
        outcome = asyncio.run(lookup_field("Vendor Name", "Acme Co", self.CONFIG, _NearMissProvider()))
        assert outcome.suggestion == "Acme Corporation"

    def test_empty_value(self):
        outcome = asyncio.run(lookup_field("Vendor Name", None, self.CONFIG, self.PROVIDER))
        assert not outcome.found
        assert outcome.message == "No value for Vendor Name"

    def test_unmapped_field(self):
        assert asyncio.run(lookup_field("Total", "25.00", self.CONFIG, self.PROVIDER)) is None

    def test_failing_source_reports_not_found(self):
        provider = _FakeProvider([{"vendor": "Acme"}], failing=("Acme",))
        outcome = asyncio.run(lookup_field("Vendor Name", "Acme", self.CONFIG, provider))
        assert not outcome.found
        assert outcome.confidence == 0.3
        assert outcome.message == "Lookup could not be completed for Vendor Name: source offline"

    def test_slow_source_times_out(self):
        provider = _FakeProvider([{"vendor": "Acme"}], delays={"Acme": 0.3})
        outcome = asyncio.run(lookup_field("Vendor Name", "Acme", self.CONFIG, provider, timeout=0.05))
        assert not outcome.found
        assert outcome.message == "Lookup could not be completed for Vendor Name: timed out after 0.05s"
