"""
Tests for lookup sources — table loading, the tabular and registry
providers, and the ECM HTTP client.

No network: the ECM client's httpx transport is patched per test.

Run: pytest tests/ -v
"""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest
from openpyxl import Workbook

from capture_reconciler.exceptions import (
    LookupConfigError,
    LookupSourceError,
    LookupUnavailableError,
)
from capture_reconciler.models import (
    LookupConfig,
    LookupField,
    LookupFieldValue,
    LookupRequest,
    LookupSystem,
)
from capture_reconciler.sources import (
    EcmLookupClient,
    EcmLookupProvider,
    RegistryLookupProvider,
    TabularLookupProvider,
    build_provider,
    get_column,
    load_registry,
    load_table,
)

# ─── Test Data ───────────────────────────────────────────────────────

VOTERS = [
    {"name": "Maria Gonzalez", "address": "1420 Alder Street", "city": "Fresno", "zip": "93721"},
    {"name": "Priya Raman", "address": "310 Cedar Lane", "city": "Clovis", "zip": "93611"},
    {"name": "Thomas Whitfield", "address": "5 Dogwood Court", "city": "Fresno", "zip": "93704"},
    {"name": "", "address": "No Name Road", "city": "Fresno", "zip": "93700"},
]

PRODUCTS = [
    {"sku": "A-100", "description": "Widget", "price": "10.00"},
    {"sku": "B-200", "description": "Gadget", "price": "15.00"},
]


def _request(key_column: str, key_value: str, **fields: str) -> LookupRequest:
    """Build a request; keyword names are target columns, values are extracted values."""
    return LookupRequest(
        key_column=key_column,
        key_value=key_value,
        lookup_fields=[
            LookupFieldValue(source_field=col.title(), target_field=col, extracted_value=value)
            for col, value in fields.items()
        ],
    )


def _ecm_client(**overrides) -> EcmLookupClient:
    params = {
        "system": LookupSystem.FILEBOUND,
        "base_url": "https://ecm.example.com/",
        "project": "7",
        "retry_attempts": 2,
        "retry_delay": 0,
    }
    params.update(overrides)
    return EcmLookupClient(**params)


# ═══════════════════════════════════════════════════════════════════════
# TABLE LOADING
# ═══════════════════════════════════════════════════════════════════════


class TestLoadTable:
    def test_csv_rows_are_trimmed(self, tmp_path):
        path = tmp_path / "products.csv"
        path.write_text("\ufeffsku, description \nA-100, Widget \n", encoding="utf-8")
        assert load_table(str(path)) == [{"sku": "A-100", "description": "Widget"}]

    def test_excel_first_sheet(self, tmp_path):
        path = tmp_path / "products.xlsx"
        wb = Workbook()
        ws = wb.active
        ws.append(["sku", "qty", "description"])
        ws.append(["A-100", 3.0, "Widget"])
        ws.append(["B-200", 12, "Gadget"])
        wb.save(path)

        rows = load_table(str(path))
        assert rows == [
            {"sku": "A-100", "qty": "3", "description": "Widget"},
            {"sku": "B-200", "qty": "12", "description": "Gadget"},
        ]

    def test_missing_file(self, tmp_path):
        with pytest.raises(LookupSourceError) as exc:
            load_table(str(tmp_path / "nope.csv"))
        assert exc.value.code == "LOOKUP_SOURCE_INVALID"

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "products.json"
        path.write_text("[]")
        with pytest.raises(LookupSourceError, match="Unsupported"):
            load_table(str(path))

    def test_empty_locator(self):
        with pytest.raises(LookupSourceError):
            load_table("")

    def test_get_column_ignores_case_and_separators(self):
        assert get_column({"Voter_ID": " V-1 "}, "voter id") == "V-1"
        assert get_column({"Voter_ID": "V-1"}, "precinct") == ""


# ═══════════════════════════════════════════════════════════════════════
# TABULAR PROVIDER
# ═══════════════════════════════════════════════════════════════════════


class TestTabularLookupProvider:
    provider = TabularLookupProvider(PRODUCTS)

    def test_all_fields_match(self):
        resp = self.provider.lookup(_request("sku", "A-100", description="widget"))
        assert resp.found
        assert resp.all_match
        assert resp.match_score == 1.0
        assert resp.message == "All fields match"

    def test_partial_field_agreement(self):
        resp = self.provider.lookup(
            _request("sku", "B-200", sku="B-200", description="Gadget Pro")
        )
        assert resp.found
        assert resp.all_match is False
        assert resp.match_score == 0.5
        mismatch = resp.validation_results[1]
        assert mismatch.score == 0.9  # containment
        assert mismatch.suggestion == "Gadget"

    def test_not_found(self):
        resp = self.provider.lookup(_request("sku", "Z-999"))
        assert not resp.found
        assert resp.match_score == 0.0
        assert resp.message == "No record found for sku: Z-999"

    def test_blank_key_never_matches(self):
        assert self.provider.find("sku", "  ") is None

    def test_key_containment(self):
        assert self.provider.find("SKU", "Item A-100")["sku"] == "A-100"

    def test_from_source(self, tmp_path):
        path = tmp_path / "products.csv"
        path.write_text("sku,description\nA-100,Widget\n")
        provider = TabularLookupProvider.from_source(str(path))
        assert provider.lookup(_request("sku", "A-100")).found


# ═══════════════════════════════════════════════════════════════════════
# REGISTRY PROVIDER
# ═══════════════════════════════════════════════════════════════════════


class TestRegistryLookupProvider:
    registry = load_registry(VOTERS)

    def test_unnamed_rows_are_not_indexed(self):
        assert len(self.registry) == 3

    def test_exact_name_all_fields_match(self):
        resp = self.registry.lookup(
            _request("name", "  MARIA   gonzalez ", address="1420 Alder Street", city="fresno", zip="93721-0001")
        )
        assert resp.found
        assert resp.all_match
        assert resp.match_score == pytest.approx(1.0)
        assert resp.message == "Match score: 100%"

    def test_address_mismatch_is_partial(self):
        resp = self.registry.lookup(
            _request("name", "Priya Raman", address="77 Elm Road", city="Clovis", zip="93611")
        )
        assert resp.found is False
        assert resp.partial_match is True
        assert resp.mismatch_reason == "address_mismatch"
        assert resp.message == "Name found - Address mismatch"
        # key 1.0 * 0.6 + mean(0, 1, 1) * 0.4
        assert resp.match_score == pytest.approx(0.6 + 0.4 * 2 / 3)

    def test_fuzzy_name_below_full_threshold(self):
        resp = self.registry.lookup(_request("name", "Maria Gonzalez Jr", city="Fresno"))
        assert resp.found
        assert not resp.partial_match
        # containment 14/17 weighted with a perfect secondary score
        assert resp.match_score == pytest.approx(14 / 17 * 0.6 + 0.4)
        assert resp.message == "Match score: 89%"

    def test_unknown_name(self):
        resp = self.registry.lookup(_request("name", "Tom Whitfeld"))
        assert not resp.found
        assert resp.message == "Not found in registry"

    def test_empty_name(self):
        resp = self.registry.lookup(_request("name", "   "))
        assert not resp.found
        assert resp.message == "Empty name"

    def test_missing_secondary_values_are_ignored(self):
        resp = self.registry.lookup(_request("name", "Priya Raman", address=""))
        assert resp.found
        assert resp.validation_results == []

    def test_custom_name_column(self):
        registry = RegistryLookupProvider([{"Full Name": "Ana Ruiz"}], name_column="full_name")
        assert registry.lookup(_request("full_name", "ana ruiz")).found


# ═══════════════════════════════════════════════════════════════════════
# ECM CLIENT
# ═══════════════════════════════════════════════════════════════════════


class TestEcmLookupClient:
    def test_filebound_search_path(self):
        client = _ecm_client()
        with patch.object(
            client._client, "get", return_value=httpx.Response(200, json=[{"InvoiceNo": "INV-1"}])
        ) as mock_get:
            records = client.search("InvoiceNo", "INV-1")
        assert records == [{"InvoiceNo": "INV-1"}]
        mock_get.assert_called_once_with("/api/projects/7/files", params={"InvoiceNo": "INV-1"})

    def test_docmgt_search_path_and_wrapped_records(self):
        client = _ecm_client(system=LookupSystem.DOCMGT, project="42")
        body = {"records": [{"InvoiceNo": "INV-1"}, "junk"]}
        with patch.object(client._client, "get", return_value=httpx.Response(200, json=body)) as mock_get:
            records = client.search("InvoiceNo", "INV-1")
        assert records == [{"InvoiceNo": "INV-1"}]
        mock_get.assert_called_once_with(
            "/rest/records", params={"recordTypeId": "42", "InvoiceNo": "INV-1"}
        )

    def test_retries_once_on_503(self):
        client = _ecm_client()
        responses = [httpx.Response(503), httpx.Response(200, json={"files": [{"InvoiceNo": "INV-1"}]})]
        with patch.object(client._client, "get", side_effect=responses) as mock_get:
            records = client.search("InvoiceNo", "INV-1")
        assert records == [{"InvoiceNo": "INV-1"}]
        assert mock_get.call_count == 2

    def test_gives_up_after_bounded_retry(self):
        client = _ecm_client()
        with patch.object(
            client._client, "get", side_effect=httpx.ConnectError("connection refused")
        ) as mock_get:
            with pytest.raises(LookupUnavailableError):
                client.search("InvoiceNo", "INV-1")
        assert mock_get.call_count == 2

    def test_client_error_not_retried(self):
        client = _ecm_client()
        with patch.object(client._client, "get", return_value=httpx.Response(404)) as mock_get:
            with pytest.raises(LookupSourceError) as exc:
                client.search("InvoiceNo", "INV-1")
        assert mock_get.call_count == 1
        assert exc.value.details == {"status_code": 404}

    def test_rejects_file_systems(self):
        with pytest.raises(LookupConfigError):
            EcmLookupClient(system=LookupSystem.CSV, base_url="https://ecm.example.com")

    def test_provider_compares_first_record(self):
        client = _ecm_client()
        provider = EcmLookupProvider(client)
        body = [{"InvoiceNo": "INV-1", "VendorName": "Acme"}]
        with patch.object(client._client, "get", return_value=httpx.Response(200, json=body)):
            resp = provider.lookup(_request("InvoiceNo", "INV-1", VendorName="ACME"))
        assert resp.found
        assert resp.all_match

    def test_provider_not_found(self):
        client = _ecm_client()
        provider = EcmLookupProvider(client)
        with patch.object(client._client, "get", return_value=httpx.Response(200, json=[])):
            resp = provider.lookup(_request("InvoiceNo", "INV-9"))
        assert not resp.found
        assert resp.message == "No record found for InvoiceNo: INV-9"


# ═══════════════════════════════════════════════════════════════════════
# PROVIDER FACTORY
# ═══════════════════════════════════════════════════════════════════════


class TestBuildProvider:
    def _config(self, system: LookupSystem, locator: str, **overrides) -> LookupConfig:
        return LookupConfig(
            system=system,
            source_locator=locator,
            lookup_fields=[LookupField(source_field="SKU", target_field="sku")],
            **overrides,
        )

    def test_disabled(self):
        with pytest.raises(LookupConfigError, match="not enabled"):
            build_provider(self._config(LookupSystem.CSV, "x.csv", enabled=False))

    def test_missing_locator(self):
        with pytest.raises(LookupConfigError) as exc:
            build_provider(self._config(LookupSystem.EXCEL, ""))
        assert exc.value.code == "LOOKUP_NOT_CONFIGURED"

    def test_csv(self, tmp_path):
        path = tmp_path / "products.csv"
        path.write_text("sku,description\nA-100,Widget\n")
        provider = build_provider(self._config(LookupSystem.CSV, str(path)))
        assert isinstance(provider, TabularLookupProvider)
        assert provider.rows == [{"sku": "A-100", "description": "Widget"}]

    def test_registry_uses_key_column(self, tmp_path):
        path = tmp_path / "voters.csv"
        path.write_text("voter_name,zip\nAna Ruiz,93721\n")
        provider = build_provider(
            self._config(LookupSystem.REGISTRY, str(path), key_column="voter_name")
        )
        assert isinstance(provider, RegistryLookupProvider)
        assert len(provider) == 1

    def test_ecm(self):
        provider = build_provider(
            self._config(LookupSystem.DOCMGT, "https://ecm.example.com", project="42")
        )
        assert isinstance(provider, EcmLookupProvider)
        provider.client.close()
