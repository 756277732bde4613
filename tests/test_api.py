"""
FastAPI endpoint tests for the Capture Reconciler API.

Uses httpx + FastAPI TestClient — no real server needed, no lookups over
the network, no model calls.
"""

from __future__ import annotations

import api
import pytest
from api import app
from fastapi.testclient import TestClient

from capture_reconciler.pipeline import ReconciliationPipeline
from capture_reconciler.sources import load_registry

client = TestClient(app)

# ─── Sample petition page (same roll as main.py) ────────────────────

VOTERS = [
    {"name": "Maria Gonzalez", "address": "1420 Alder Street", "city": "Fresno", "zip": "93721"},
    {"name": "Priya Raman", "address": "310 Cedar Lane", "city": "Clovis", "zip": "93611"},
]

LOOKUP_CONFIG = {
    "system": "registry",
    "sourceLocator": "memory://voter-registry",
    "keyColumn": "name",
    "keyField": "Name",
    "lookupFields": [
        {"sourceField": "Name", "targetField": "name"},
        {"wisdmField": "Address", "ecmField": "address", "lookupEnabled": True},
        {"sourceField": "Zip", "targetField": "zip"},
    ],
}


def _document(document_id: str) -> dict:
    return {
        "id": document_id,
        "extractedText": "PETITION Measure Q-17",
        "wordBoxes": [
            {"text": "Measure", "bbox": {"x": 210, "y": 40, "width": 110, "height": 24}},
            {"text": "Q-17", "bbox": {"x": 330, "y": 40, "width": 60, "height": 24}},
        ],
        "extractedMetadata": {"Measure": {"value": "Q-17"}},
        "lineItems": [
            {"Name": "Maria Gonzalez", "Address": "1420 Alder Street", "Zip": "93721"},
            {"Name": "Priya Raman", "Address": "77 Elm Road", "Zip": "93611"},
        ],
    }


@pytest.fixture(scope="module", autouse=True)
def _warm_pipeline() -> None:
    """Initialise the pipeline once for all API tests (bypasses lifespan)."""
    registry = load_registry(VOTERS)
    api._pipeline = ReconciliationPipeline(provider_factory=lambda config, policy: registry)
    yield  # type: ignore[misc]
    api._pipeline = None


def _register(document_id: str) -> None:
    resp = client.post("/documents", json=_document(document_id))
    assert resp.status_code == 201


def _reconcile(document_id: str) -> dict:
    resp = client.post(f"/documents/{document_id}/reconcile", json={"lookupConfig": LOOKUP_CONFIG})
    assert resp.status_code == 200
    return resp.json()


class TestHealthEndpoint:
    def test_health_returns_200(self) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200

    def test_health_response_shape(self) -> None:
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert data["documents"] >= 0


class TestDocumentEndpoints:
    def test_register_reduces_fields_to_plain_values(self) -> None:
        resp = client.post("/documents", json=_document("PET-1"))
        assert resp.status_code == 201
        assert resp.json()["fields"] == {"Measure": "Q-17"}

    def test_get_unknown_document(self) -> None:
        resp = client.get("/documents/missing")
        assert resp.status_code == 404
        assert resp.json()["code"] == "DOCUMENT_NOT_FOUND"

    def test_reconcile_reports_partial_match(self) -> None:
        _register("PET-2")
        data = _reconcile("PET-2")
        assert data["documentId"] == "PET-2"
        assert data["summary"]["validCount"] == 1
        assert data["summary"]["forReviewCount"] == 1
        assert data["summary"]["partialMatchCount"] == 1
        assert data["lookup"]["results"][1]["mismatchReason"] == "address_mismatch"
        assert data["needsReview"] is True
        assert data["recommendedStatus"] == "pending"

    def test_reconcile_highlights_absolute_boxes(self) -> None:
        _register("PET-3")
        highlight = _reconcile("PET-3")["highlights"]["Measure"]
        assert highlight["kind"] == "provenanced"
        assert highlight["bbox"]["x"] == pytest.approx(33.0)

    def test_reconcile_persists_ledger(self) -> None:
        _register("PET-4")
        _reconcile("PET-4")
        stored = client.get("/documents/PET-4").json()
        assert stored["lookupValidation"]["totalItems"] == 2
        assert stored["needsReview"] is True

    def test_reconcile_unknown_document(self) -> None:
        resp = client.post("/documents/missing/reconcile", json={})
        assert resp.status_code == 404


class TestLedgerEndpoint:
    def test_approve_clears_review(self) -> None:
        _register("PET-5")
        _reconcile("PET-5")
        resp = client.post("/documents/PET-5/line-items/1/approve", json={"operator": "ops@example.com"})
        assert resp.status_code == 200
        data = resp.json()
        row = data["lookupValidation"]["results"][1]
        assert row["overrideApproved"] is True
        assert row["overrideBy"] == "ops@example.com"
        assert data["summary"]["validCount"] == 2
        assert data["needsReview"] is False

    def test_approval_survives_reconcile(self) -> None:
        _register("PET-6")
        _reconcile("PET-6")
        client.post("/documents/PET-6/line-items/1/approve", json={"operator": "ops"})
        data = _reconcile("PET-6")
        assert data["lookup"]["results"][1]["overrideApproved"] is True
        assert data["needsReview"] is False

    def test_unknown_action_returns_422(self) -> None:
        _register("PET-7")
        _reconcile("PET-7")
        resp = client.post("/documents/PET-7/line-items/0/escalate", json={"operator": "ops"})
        assert resp.status_code == 422
        assert resp.json()["code"] == "LEDGER_TRANSITION_INVALID"

    def test_unknown_row_returns_422(self) -> None:
        _register("PET-8")
        _reconcile("PET-8")
        resp = client.post("/documents/PET-8/line-items/9/reject", json={"operator": "ops"})
        assert resp.status_code == 422

    def test_operator_required(self) -> None:
        resp = client.post("/documents/PET-8/line-items/0/reject", json={"operator": ""})
        assert resp.status_code == 422


class TestSuggestAndExport:
    def test_suggest_without_api_key(self) -> None:
        _register("PET-9")
        resp = client.post("/documents/PET-9/fields/Measure/suggest", json={"fieldType": "text"})
        assert resp.status_code == 200
        assert resp.json() == {
            "isValid": True,
            "confidence": 0.8,
            "suggestions": [],
            "reasoning": "Basic validation only",
        }

    def test_exported_document_rejects_changes(self) -> None:
        _register("PET-10")
        assert client.post("/documents/PET-10/export").json()["exported"] is True
        resp = client.post("/documents/PET-10/reconcile", json={})
        assert resp.status_code == 409
        assert resp.json()["code"] == "DOCUMENT_EXPORTED"
        assert client.post("/documents", json=_document("PET-10")).status_code == 409


class TestStatelessEndpoints:
    def test_highlights(self) -> None:
        resp = client.post("/geometry/highlights", json={
            "fields": {"Vendor": "Acme", "Count": 3},
            "wordBoxes": [{"text": "Acme", "bbox": {"x": 10, "y": 10, "width": 5, "height": 2}}],
        })
        assert resp.status_code == 200
        assert list(resp.json()) == ["Vendor"]

    def test_calculation_variance(self) -> None:
        resp = client.post("/calculation/verify", json={
            "lineItems": [{"Amount": "$10.00"}, {"Amount": "$15.00"}],
            "metadata": {"Invoice Total": "$24.00"},
        })
        data = resp.json()
        assert data["checked"] is True
        assert data["calculation"]["matches"] is False
        assert data["calculation"]["variancePercent"] == "4.17"

    def test_calculation_skipped(self) -> None:
        data = client.post("/calculation/verify", json={"lineItems": [], "metadata": {}}).json()
        assert data == {"checked": False, "calculation": None}

    def test_composite_orders_by_kind(self) -> None:
        resp = client.post("/redaction/composite", json={
            "compliance": [{"text": "restricted to"}],
            "pii": [{"category": "ssn", "bbox": {"x": 1, "y": 1, "width": 5, "height": 1}}],
        })
        regions = resp.json()["regions"]
        assert [r["type"] for r in regions] == ["pii", "compliance"]
        assert regions[1]["renderable"] is False

    def test_detect_with_preset(self) -> None:
        resp = client.post("/redaction/detect", json={
            "text": "Contact jane@example.com",
            "wordBoxes": [{"text": "jane@example.com", "bbox": {"x": 20, "y": 5, "width": 15, "height": 2}}],
            "preset": "pii-contact",
        })
        data = resp.json()
        assert data["summary"]["email"]["label"] == "Email Address"
        assert data["summary"]["email"]["count"] >= 1

    def test_detect_unknown_preset(self) -> None:
        resp = client.post("/redaction/detect", json={"text": "x", "preset": "everything"})
        assert resp.status_code == 400


class TestRequestValidation:
    def test_empty_body_returns_422(self) -> None:
        resp = client.post("/documents", json={})
        assert resp.status_code == 422

    def test_bad_lookup_system_returns_422(self) -> None:
        _register("PET-11")
        resp = client.post("/documents/PET-11/reconcile", json={"lookupConfig": {"system": "ftp"}})
        assert resp.status_code == 422
