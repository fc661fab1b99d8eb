"""
API endpoint tests for the SARCheck FastAPI server

Uses pytest with FastAPI's TestClient, plus httpx.AsyncClient and
pytest-asyncio for the async generation path. The server globals are
patched with an in-memory backend loaded with the sample data, so no
startup event or database is needed.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from httpx import AsyncClient, ASGITransport
from fastapi.testclient import TestClient

from config_manager import ConfigurationError
from database.memory_storage import InMemoryStorage, InMemoryStorageBackend
from database.repositories import ConcurrentModificationError
from database.sar_service import SarService
from database.seed import seed_sample_data
from narrative_generator import NarrativeGenerationError, NarrativeGenerator

# Configure pytest-asyncio mode
pytest_plugins = ['pytest_asyncio']


class FailingClient:
    def complete(self, prompt):
        raise NarrativeGenerationError("Language model request failed: timeout")


@pytest.fixture
def backend():
    """In-memory backend with the sample data loaded."""
    backend = InMemoryStorageBackend(InMemoryStorage())
    with backend.open() as storage:
        seed_sample_data(storage)
    return backend


@pytest.fixture
def generator():
    return NarrativeGenerator()


@pytest.fixture
def server_state(backend, generator):
    """Patch the server globals; yields the server module."""
    from api import server

    with patch.object(server, '_storage_backend', backend):
        with patch.object(server, '_narrative_generator', generator):
            with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                yield server


@pytest.fixture
def client(server_state):
    return TestClient(server_state.app)


@pytest.fixture
def generated_sar(client):
    response = client.post("/api/v1/sars/generate", json={"customer_id": 1})
    assert response.status_code == 201
    return response.json()


def assert_error(response, status_code, code):
    assert response.status_code == status_code
    error = response.json()["error"]
    assert error["code"] == code
    assert error["message"]
    assert "timestamp" in error
    return error


# ============================================
# CUSTOMERS, TRANSACTIONS, ALERTS
# ============================================

class TestCustomerEndpoints:

    def test_list_customers(self, client):
        response = client.get("/api/v1/customers")
        assert response.status_code == 200
        assert {c["customer_id"] for c in response.json()} == {"CUST-001", "CUST-002"}

    def test_get_customer(self, client):
        response = client.get("/api/v1/customers/1")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "John Mitchell"
        assert data["risk_level"] == "high"

    def test_unknown_customer(self, client):
        error = assert_error(client.get("/api/v1/customers/99"), 404, "NOT_FOUND")
        assert error["message"] == "Customer not found: 99"

    def test_non_numeric_id(self, client):
        assert_error(client.get("/api/v1/customers/CUST-001"), 422, "VALIDATION_ERROR")


class TestTransactionEndpoints:

    def test_list_for_customer(self, client):
        response = client.get("/api/v1/transactions", params={"customer_id": 1})
        assert response.status_code == 200
        data = response.json()
        assert len(data) == 6
        assert data[0]["transaction_id"] == "TXN-006"
        assert Decimal(str(data[-1]["amount"])) == Decimal("15000.00")
        assert data[0]["direction"] == "outbound"

    def test_list_all(self, client):
        assert len(client.get("/api/v1/transactions").json()) == 9

    def test_unknown_customer(self, client):
        assert_error(client.get("/api/v1/transactions", params={"customer_id": 50}), 404, "NOT_FOUND")

    def test_alerts_for_customer(self, client):
        response = client.get("/api/v1/alerts", params={"customer_id": 2})
        assert response.status_code == 200
        assert {a["rule_name"] for a in response.json()} == {"LARGE_TRANSACTION"}
        assert len(response.json()) == 3


class TestDataUpload:

    PAYLOAD = {
        "customers": [{
            "customer_id": "CUST-003",
            "name": "Maria Lopez",
            "account_number": "ACC-0003",
            "risk_level": "medium",
        }],
        "transactions": [{
            "transaction_id": "TXN-301",
            "customer_id": "CUST-003",
            "amount": "12000.00",
            "currency": "usd",
            "transaction_type": "wire_transfer",
            "direction": "outbound",
            "counterparty_country": "Syria",
            "transaction_date": "2025-03-01T12:00:00Z",
        }],
        "alerts": [{
            "transaction_id": "TXN-301",
            "rule_name": "HIGH_RISK_JURISDICTION",
            "risk_score": 25,
        }],
    }

    def test_upload_creates_records(self, client):
        response = client.post("/api/v1/data/upload", json=self.PAYLOAD)
        assert response.status_code == 201
        assert response.json() == {"customers_created": 1, "transactions_created": 1, "alerts_created": 1}

        transactions = client.get("/api/v1/transactions", params={"customer_id": 3}).json()
        assert transactions[0]["currency"] == "USD"

    def test_uploaded_data_is_scored(self, client):
        client.post("/api/v1/data/upload", json=self.PAYLOAD)
        data = client.get("/api/v1/risk-scoring/customer/3").json()
        assert data["triggered_rules"] == ["LARGE_TRANSACTION", "HIGH_RISK_JURISDICTION"]
        assert data["total_risk_score"] == 35

    def test_empty_upload(self, client):
        response = client.post("/api/v1/data/upload", json={})
        assert response.status_code == 201
        assert response.json()["customers_created"] == 0

    def test_unknown_reference(self, client):
        payload = {"transactions": [dict(self.PAYLOAD["transactions"][0], customer_id="CUST-404")]}
        error = assert_error(client.post("/api/v1/data/upload", json=payload), 422, "UNKNOWN_REFERENCE")
        assert error["field"] == "transactions[0].customer_id"

    def test_duplicate_customer(self, client):
        payload = {"customers": [dict(self.PAYLOAD["customers"][0], customer_id="CUST-001")]}
        assert_error(client.post("/api/v1/data/upload", json=payload), 409, "DUPLICATE_ENTITY")

    def test_failed_upload_stores_nothing(self, client):
        payload = dict(self.PAYLOAD, alerts=[{"transaction_id": "TXN-999", "rule_name": "X", "risk_score": 1}])
        assert client.post("/api/v1/data/upload", json=payload).status_code == 422
        assert_error(client.get("/api/v1/customers/3"), 404, "NOT_FOUND")

    def test_negative_amount(self, client):
        payload = {"transactions": [dict(self.PAYLOAD["transactions"][0], amount="-5")]}
        error = assert_error(client.post("/api/v1/data/upload", json=payload), 422, "VALIDATION_ERROR")
        assert error["field"] == "transactions.0.amount"


# ============================================
# RISK SCORING
# ============================================

class TestRiskScoring:

    def test_score_customer(self, client):
        response = client.get("/api/v1/risk-scoring/customer/1")
        assert response.status_code == 200
        data = response.json()
        assert data["customer_id"] == 1
        assert data["total_risk_score"] == 200
        assert data["flagged_transactions"] == [1, 2, 3, 4, 5, 6]
        assert [c["rule_name"] for c in data["rule_checks"]] == data["triggered_rules"]

    def test_unknown_customer(self, client):
        assert_error(client.get("/api/v1/risk-scoring/customer/77"), 404, "NOT_FOUND")


# ============================================
# SAR LIFECYCLE
# ============================================

class TestGenerateSar:

    def test_generate(self, generated_sar):
        assert generated_sar["version"] == 1
        assert generated_sar["status"] == "draft"
        assert generated_sar["generated_by"] == "TEMPLATE"
        assert generated_sar["customer"]["customer_id"] == "CUST-001"
        assert [s["section_type"] for s in generated_sar["sections"]] == [
            "OVERVIEW", "TRANSACTION_PATTERN", "SUSPICION_RATIONALE", "CONCLUSION"
        ]
        assert generated_sar["sections"][0]["sentences"][0]["supporting_transaction_ids"] == [1, 2, 3]
        assert [log["action"] for log in generated_sar["audit_logs"]] == ["SAR_GENERATED"]

    def test_listed_after_generation(self, client, generated_sar):
        sars = client.get("/api/v1/sars").json()
        assert [s["id"] for s in sars] == [generated_sar["id"]]

    def test_get_sar(self, client, generated_sar):
        response = client.get(f"/api/v1/sars/{generated_sar['id']}")
        assert response.status_code == 200
        assert response.json()["sections"] == generated_sar["sections"]

    def test_unknown_sar(self, client):
        assert_error(client.get("/api/v1/sars/31"), 404, "NOT_FOUND")

    def test_unknown_customer(self, client):
        assert_error(client.post("/api/v1/sars/generate", json={"customer_id": 99}), 404, "NOT_FOUND")

    def test_invalid_customer_id(self, client):
        error = assert_error(client.post("/api/v1/sars/generate", json={"customer_id": 0}), 422, "VALIDATION_ERROR")
        assert error["field"] == "customer_id"

    def test_model_failure(self, server_state, client):
        with patch.object(server_state, '_narrative_generator', NarrativeGenerator(client=FailingClient())):
            response = client.post("/api/v1/sars/generate", json={"customer_id": 1})
        assert_error(response, 502, "UPSTREAM_GENERATION_FAILURE")
        assert client.get("/api/v1/sars").json() == []


class TestUpdateSection:

    def _section(self, sar, index=0):
        return sar["sections"][index]

    def test_edit_section(self, client, generated_sar):
        section = self._section(generated_sar)
        response = client.put(
            f"/api/v1/sars/{generated_sar['id']}/sections/{section['id']}",
            json={"content": "Revised overview.", "reason": "Added context"},
        )
        assert response.status_code == 200
        assert response.json()["content"] == "Revised overview."

        sar = client.get(f"/api/v1/sars/{generated_sar['id']}").json()
        assert sar["version"] == 2
        assert sar["audit_logs"][0]["action"] == "SECTION_EDITED"
        assert sar["audit_logs"][0]["old_value"] == section["content"]

    @pytest.mark.parametrize("body", [
        {"content": "Revised."},
        {"content": "Revised.", "reason": ""},
        {"content": "Revised.", "reason": "   "},
    ])
    def test_reason_required(self, client, generated_sar, body):
        section = self._section(generated_sar)
        response = client.put(f"/api/v1/sars/{generated_sar['id']}/sections/{section['id']}", json=body)
        error = assert_error(response, 422, "REASON_REQUIRED")
        assert error["field"] == "reason"
        assert client.get(f"/api/v1/sars/{generated_sar['id']}").json()["version"] == 1

    def test_missing_content(self, client, generated_sar):
        section = self._section(generated_sar)
        response = client.put(
            f"/api/v1/sars/{generated_sar['id']}/sections/{section['id']}",
            json={"reason": "why"},
        )
        assert_error(response, 422, "VALIDATION_ERROR")

    def test_unknown_section(self, client, generated_sar):
        response = client.put(
            f"/api/v1/sars/{generated_sar['id']}/sections/999",
            json={"content": "x", "reason": "why"},
        )
        assert_error(response, 404, "NOT_FOUND")

    def test_concurrent_edit(self, client, generated_sar):
        section = self._section(generated_sar)
        with patch.object(SarService, "update_section", side_effect=ConcurrentModificationError(1, 1, 2)):
            response = client.put(
                f"/api/v1/sars/{generated_sar['id']}/sections/{section['id']}",
                json={"content": "x", "reason": "why"},
            )
        assert_error(response, 409, "CONCURRENT_MODIFICATION")


class TestHistoryEndpoints:

    def _edit(self, client, sar, index, content):
        section = sar["sections"][index]
        response = client.put(
            f"/api/v1/sars/{sar['id']}/sections/{section['id']}",
            json={"content": content, "reason": f"edit section {index}"},
        )
        assert response.status_code == 200

    def test_compare_without_edits(self, client, generated_sar):
        response = client.get(f"/api/v1/sars/{generated_sar['id']}/compare")
        assert response.status_code == 200
        assert response.json() == {"current_version": 1, "previous_version": 1, "changes": []}

    def test_compare_latest(self, client, generated_sar):
        self._edit(client, generated_sar, 1, "New pattern analysis.")
        data = client.get(f"/api/v1/sars/{generated_sar['id']}/compare").json()

        assert data["current_version"] == 2
        assert data["previous_version"] == 1
        assert data["changes"] == [{
            "type": "modified",
            "section_id": generated_sar["sections"][1]["id"],
            "section_type": "TRANSACTION_PATTERN",
            "old_content": generated_sar["sections"][1]["content"],
            "new_content": "New pattern analysis.",
        }]

    def test_compare_explicit_versions(self, client, generated_sar):
        self._edit(client, generated_sar, 0, "v2")
        self._edit(client, generated_sar, 3, "v3")
        response = client.get(
            f"/api/v1/sars/{generated_sar['id']}/compare",
            params={"from_version": 1, "to_version": 3},
        )
        assert len(response.json()["changes"]) == 2

    def test_compare_unknown_version(self, client, generated_sar):
        response = client.get(f"/api/v1/sars/{generated_sar['id']}/compare", params={"to_version": 9})
        assert_error(response, 404, "NOT_FOUND")

    def test_compare_reversed_range(self, client, generated_sar):
        self._edit(client, generated_sar, 0, "v2")
        response = client.get(
            f"/api/v1/sars/{generated_sar['id']}/compare",
            params={"from_version": 2, "to_version": 1},
        )
        error = assert_error(response, 422, "INVALID_VERSION_RANGE")
        assert error["field"] == "from_version"

    def test_audit_trail(self, client, generated_sar):
        self._edit(client, generated_sar, 2, "Rationale rewritten.")
        response = client.get(f"/api/v1/sars/{generated_sar['id']}/audit-trail")
        assert response.status_code == 200
        assert [log["action"] for log in response.json()] == ["SECTION_EDITED", "SAR_GENERATED"]
        assert response.json()[0]["reason"] == "edit section 2"

    def test_audit_trail_unknown_sar(self, client):
        assert_error(client.get("/api/v1/sars/5/audit-trail"), 404, "NOT_FOUND")


class TestExplainSentence:

    def test_explain(self, client, generated_sar):
        sentence = generated_sar["sections"][0]["sentences"][0]
        response = client.get(f"/api/v1/sars/sentences/{sentence['id']}/explain")
        assert response.status_code == 200
        data = response.json()
        assert data["sentence"]["id"] == sentence["id"]
        assert [t["transaction_id"] for t in data["supporting_transactions"]] == ["TXN-001", "TXN-002", "TXN-003"]
        assert data["supporting_rules"][0] == {
            "rule_name": "LARGE_TRANSACTION",
            "description": "Transaction exceeds $10,000 threshold",
        }

    def test_unknown_sentence(self, client):
        assert_error(client.get("/api/v1/sars/sentences/404/explain"), 404, "NOT_FOUND")


# ============================================
# SERVICE ENDPOINTS AND ERROR HANDLING
# ============================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage_backend"] == "memory"
        assert data["narrative_provider"] == "template"
        assert data["uptime_seconds"] >= 0

    def test_not_initialized(self, server_state, client):
        with patch.object(server_state, '_storage_backend', None):
            response = client.get("/api/v1/health")
        assert_error(response, 503, "HTTP_503")

    def test_degraded_storage(self, server_state, client):
        broken = MagicMock()
        broken.name = "database"
        broken.health_check.return_value = False
        with patch.object(server_state, '_storage_backend', broken):
            data = client.get("/api/v1/health").json()
        assert data["status"] == "degraded"
        assert data["storage_healthy"] is False


class TestErrorHandling:

    def test_configuration_error(self, client):
        with patch.object(SarService, "calculate_risk", side_effect=ConfigurationError("bad")):
            response = client.get("/api/v1/risk-scoring/customer/1")
        assert_error(response, 503, "CONFIGURATION_ERROR")

    def test_unexpected_error_is_sanitized(self, server_state):
        broken = MagicMock()
        broken.open.side_effect = RuntimeError("connection string with secrets")
        client = TestClient(server_state.app, raise_server_exceptions=False)
        with patch.object(server_state, '_storage_backend', broken):
            response = client.get("/api/v1/customers")
        error = assert_error(response, 500, "INTERNAL_ERROR")
        assert "secrets" not in error["message"]

    def test_unknown_route(self, client):
        assert_error(client.get("/api/v1/nothing-here"), 404, "HTTP_404")

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/v1/customers", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert "X-Processing-Time-MS" in response.headers

    def test_root_redirects_to_docs(self, client):
        response = client.get("/", follow_redirects=False)
        assert response.status_code in (302, 307)
        assert response.headers["location"] == "/api/docs"


class TestCorsPatterns:

    def test_exact_origins_only(self):
        from api.middleware import _build_cors_regex_pattern
        regex, exact = _build_cors_regex_pattern(["http://localhost:3000"])
        assert regex is None
        assert exact == ["http://localhost:3000"]

    def test_wildcard_subdomain(self):
        import re
        from api.middleware import _build_cors_regex_pattern
        regex, _ = _build_cors_regex_pattern(["https://*.bank.example", "http://localhost:3000"])
        assert re.fullmatch(regex, "https://review.bank.example")
        assert re.fullmatch(regex, "http://localhost:3000")
        assert not re.fullmatch(regex, "https://a.b.bank.example")
        assert not re.fullmatch(regex, "http://review.bank.example")


# ============================================
# ASYNC CLIENT
# ============================================

class TestAsyncClient:

    @pytest.mark.asyncio
    async def test_generate_and_edit(self, server_state):
        transport = ASGITransport(app=server_state.app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/v1/sars/generate", json={"customer_id": 2})
            assert response.status_code == 201
            sar = response.json()

            section = sar["sections"][3]
            response = await ac.put(
                f"/api/v1/sars/{sar['id']}/sections/{section['id']}",
                json={"content": "Escalate to compliance.", "reason": "Reviewer decision"},
            )
            assert response.status_code == 200

            response = await ac.get(f"/api/v1/sars/{sar['id']}/compare")
            assert [c["section_type"] for c in response.json()["changes"]] == ["CONCLUSION"]
