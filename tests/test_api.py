"""
API Tests for the MVR Exchange Server

Exercises the HTTP surface through FastAPI's TestClient with an in-memory
database, an in-memory audit sink and a fixed clock.
"""

import json
import logging
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.server import API_VERSION, build_audit_sink, create_app
from audit.emitter import FileAuditSink, InMemoryAuditSink
from audit.storage import PipelineAuditSink
from conftest import make_ingestion_body, make_mvr_payload


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def app(config, provider, dispatcher, clock, monkeypatch):
    monkeypatch.delenv("API_KEY", raising=False)
    monkeypatch.delenv("CORS_ORIGINS", raising=False)
    return create_app(config, provider, dispatcher, clock)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def secured_client(config, provider, dispatcher, clock, monkeypatch):
    monkeypatch.delenv("API_KEY", raising=False)
    config.api.api_key = "test-key"
    return TestClient(create_app(config, provider, dispatcher, clock))


def retrieve_body(**overrides):
    body = {
        "drivers_license_number": "D1234567",
        "company_id": "BUYER-CO",
        "permissible_purpose": "EMPLOYMENT",
        "days": 30,
        "consent": True,
    }
    body.update(overrides)
    return body


# ============================================
# INGESTION
# ============================================

class TestAddMVR:
    """Tests for POST /api/v1/mvr"""

    def test_new_record_returns_201(self, client):
        response = client.post("/api/v1/mvr", json=make_ingestion_body())

        assert response.status_code == 201
        data = response.json()
        assert data["outcome"] == "NEW"
        assert data["message"] == "New subject and MVR created successfully"
        assert data["drivers_license_number"] == "D1234567"
        assert isinstance(data["mvr_id"], int)

    def test_duplicate_returns_200(self, client):
        client.post("/api/v1/mvr", json=make_ingestion_body())
        response = client.post("/api/v1/mvr", json=make_ingestion_body())

        assert response.status_code == 200
        assert response.json()["outcome"] == "SKIPPED"
        assert response.json()["message"] == "MVR uploaded less than 30 days ago"

    def test_update_after_window(self, client, clock):
        client.post("/api/v1/mvr", json=make_ingestion_body())
        clock.advance(days=31)

        response = client.post("/api/v1/mvr", json=make_ingestion_body())

        assert response.status_code == 201
        assert response.json()["outcome"] == "UPDATED"

    def test_validation_errors_listed(self, client):
        body = make_ingestion_body(company_id="Other", price_paid="free")

        response = client.post("/api/v1/mvr", json=body)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "company_id"
        assert error["message"] == (
            "company_id cannot be 'Other'. Please provide a valid value; "
            "price_paid must be of type number, received string"
        )
        assert [d["field"] for d in error["details"]] == ["company_id", "price_paid"]

    def test_purpose_restricted_by_config(self, client, config):
        config.ingestion.allowed_purposes = ["EMPLOYMENT"]

        response = client.post("/api/v1/mvr", json=make_ingestion_body())

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "permissible_purpose must be one of: EMPLOYMENT"

    def test_non_object_body(self, client):
        response = client.post("/api/v1/mvr", json=["not", "an", "object"])

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "body"

    def test_storage_failure_returns_500(self, client, audit_sink):
        payload = make_mvr_payload(violations=[{"points_assessed": 1}])

        response = client.post("/api/v1/mvr", json=make_ingestion_body(payload))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "PERSISTENCE_ERROR"
        assert [event.kind for event in audit_sink.events()] == ["FAILURE"]

    def test_response_headers(self, client):
        response = client.post("/api/v1/mvr", json=make_ingestion_body(), headers={"X-Request-ID": "req-1"})

        assert response.headers["X-Request-ID"] == "req-1"
        assert "X-Processing-Time-MS" in response.headers


# ============================================
# BATCH INGESTION
# ============================================

class TestAddMVRBatch:
    """Tests for POST /api/v1/mvr/batch"""

    def body(self, payloads):
        return {"company_id": "ACME-INS", "permissible_purpose": "INSURANCE", "batch_mvrs": payloads}

    def test_batch_success(self, client):
        response = client.post("/api/v1/mvr/batch", json=self.body([
            make_mvr_payload("D0000001"), make_mvr_payload("D0000002")
        ]))

        assert response.status_code == 200
        data = response.json()
        assert data["committed"] is True
        assert data["summary"]["new_records"] == 2
        assert [item["index"] for item in data["results"]] == [0, 1]

    def test_batch_validation_error_names_index(self, client):
        bad = make_mvr_payload("D0000002")
        del bad["sex"]

        response = client.post("/api/v1/mvr/batch", json=self.body([make_mvr_payload("D0000001"), bad]))

        assert response.status_code == 400
        assert response.json()["error"]["message"] == (
            "Validation failed for MVR at index 1: sex is required and cannot be null or undefined"
        )

    def test_batch_too_large(self, client, config):
        config.ingestion.max_batch_size = 1

        response = client.post("/api/v1/mvr/batch", json=self.body([
            make_mvr_payload("D0000001"), make_mvr_payload("D0000002")
        ]))

        assert response.status_code == 400

    def test_batch_rolled_back(self, client):
        response = client.post("/api/v1/mvr/batch", json=self.body([
            make_mvr_payload("D0000001"),
            make_mvr_payload("D0000002", withdrawals=[{"reason": "Court Order"}]),
        ]))

        assert response.status_code == 500
        data = response.json()
        assert data["error"]["code"] == "BATCH_FAILED"
        assert data["committed"] is False
        assert data["summary"]["failed_records"] == 1
        assert data["results"][1]["outcome"] == "FAILED"
        assert data["results"][1]["message"].startswith("Error processing MVR at index 1")

        retrieval = client.post("/api/v1/mvr/retrieve", json=retrieve_body(drivers_license_number="D0000001"))
        assert retrieval.status_code == 404


# ============================================
# RETRIEVAL
# ============================================

class TestRetrieveMVR:
    """Tests for POST /api/v1/mvr/retrieve"""

    def test_retrieve_current_record(self, client, audit_sink):
        client.post("/api/v1/mvr", json=make_ingestion_body())
        audit_sink.clear()

        response = client.post("/api/v1/mvr/retrieve", json=retrieve_body())

        assert response.status_code == 200
        data = response.json()
        assert data["subject"]["full_legal_name"] == "Sample Jane Sample Doe"
        assert data["mvr"]["total_points"] == 3
        assert len(data["violations"]) == 1
        assert data["seller_company_id"] == "ACME-INS"
        assert [event.kind for event in audit_sink.events()] == ["READ"]

    def test_missing_consent_returns_400(self, client):
        client.post("/api/v1/mvr", json=make_ingestion_body())

        response = client.post("/api/v1/mvr/retrieve", json=retrieve_body(consent=False))

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Consent is required and must be true"

    def test_consent_rejection_is_security_logged(self, client, caplog):
        with caplog.at_level(logging.WARNING, logger="security"):
            client.post(
                "/api/v1/mvr/retrieve", json=retrieve_body(consent=False), headers={"X-Request-ID": "req-9"}
            )

        events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "security"]
        rejected = [e for e in events if e["event_type"] == "CONSENT_REJECTED"]
        assert len(rejected) == 1
        assert rejected[0]["request_id"] == "req-9"

    def test_unknown_subject_returns_404(self, client):
        response = client.post("/api/v1/mvr/retrieve", json=retrieve_body(drivers_license_number="D404"))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        assert response.json()["error"]["message"] == "No subject found with this driver's license number"

    def test_stale_record_returns_404(self, client):
        client.post("/api/v1/mvr", json=make_ingestion_body())

        response = client.post("/api/v1/mvr/retrieve", json=retrieve_body(days=5))

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "No MVR found within the last 5 days"


# ============================================
# SECURITY
# ============================================

class TestAPIKey:
    """API key enforcement when a key is configured"""

    def test_missing_key(self, secured_client):
        response = secured_client.post("/api/v1/mvr", json=make_ingestion_body())

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "HTTP_401"

    def test_wrong_key(self, secured_client):
        response = secured_client.post(
            "/api/v1/mvr", json=make_ingestion_body(), headers={"X-API-Key": "nope"}
        )
        assert response.status_code == 403

    def test_correct_key(self, secured_client):
        response = secured_client.post(
            "/api/v1/mvr", json=make_ingestion_body(), headers={"X-API-Key": "test-key"}
        )
        assert response.status_code == 201

    def test_health_needs_no_key(self, secured_client):
        assert secured_client.get("/api/v1/health").status_code == 200


# ============================================
# HEALTH AND WIRING
# ============================================

class TestHealth:
    """Tests for GET /api/v1/health"""

    def test_healthy(self, app):
        with TestClient(app) as client:
            response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["version"] == API_VERSION
        assert data["uptime_seconds"] is not None

    def test_root_redirects_to_docs(self, client):
        response = client.get("/", follow_redirects=False)

        assert response.status_code in (302, 307)
        assert response.headers["location"] == "/api/docs"


class TestAuditSinkSelection:
    """Tests for build_audit_sink"""

    def test_memory(self, config):
        config.audit.sink = "memory"
        assert isinstance(build_audit_sink(config), InMemoryAuditSink)

    def test_file(self, config, tmp_path):
        config.audit.sink = "file"
        config.audit.sink_path = str(tmp_path / "audit" / "events.ndjson")
        assert isinstance(build_audit_sink(config), FileAuditSink)

    def test_pipeline(self, config, tmp_path):
        config.audit.sink = "pipeline"
        config.pipeline.storage_directory = str(tmp_path / "storage")
        assert isinstance(build_audit_sink(config), PipelineAuditSink)
