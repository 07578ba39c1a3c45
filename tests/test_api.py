"""
Unit tests for REST API.

Tests FastAPI endpoints for validation and policy administration with
a ValidationManager backed by StubRuntime.
"""

import pytest
from fastapi.testclient import TestClient

from modguard.api.rest import ERROR_CODE_MAP, create_app
from modguard.config import GuardConfig
from modguard.errors import (
    IsolationRuntimeUnavailableError,
    ManifestValidationError,
    PolicyNotFoundError,
    SandboxBusyError,
)
from modguard.manager import ValidationManager


@pytest.fixture
def config():
    return GuardConfig(enable_audit_log=False)


@pytest.fixture
def manager(config, stub_runtime):
    return ValidationManager(config=config, runtime=stub_runtime)


@pytest.fixture
def client(config, manager):
    return TestClient(create_app(config, manager=manager))


class TestAPIInit:
    """Tests for API initialization."""

    def test_create_app(self, config):
        app = create_app(config)

        assert app.title == "modguard API"
        assert app.version == "1.0.0"

    def test_app_has_routes(self, config):
        routes = [r.path for r in create_app(config).routes]

        assert "/v1/health" in routes
        assert "/v1/validations" in routes
        assert "/v1/validations/static" in routes
        assert "/v1/policies/{policy_id}" in routes
        assert "/v1/frameworks" in routes

    def test_error_code_map(self):
        assert ERROR_CODE_MAP[ManifestValidationError] == 422
        assert ERROR_CODE_MAP[PolicyNotFoundError] == 404
        assert ERROR_CODE_MAP[SandboxBusyError] == 409
        assert ERROR_CODE_MAP[IsolationRuntimeUnavailableError] == 503


class TestSystemEndpoints:
    """Tests for root, health and metrics endpoints."""

    def test_root_returns_info(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "modguard API"

    def test_health(self, client):
        response = client.get("/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["runtime"]["runtime"] == "stub"
        assert data["registry_version"] == 1

    def test_request_id_header(self, client):
        response = client.get("/v1/health")

        assert response.headers["X-Request-ID"]

    def test_metrics(self, client, submission_data):
        client.post("/v1/validations", json=submission_data)

        response = client.get("/v1/metrics")

        assert response.status_code == 200
        data = response.json()
        assert data["validations_started"] == 1
        assert data["validations_passed"] == 1
        assert data["sandbox_completed"] == 1


class TestValidationEndpoints:
    """Tests for validation endpoints."""

    def test_validate_clean_module(self, client, submission_data):
        response = client.post("/v1/validations", json=submission_data)

        assert response.status_code == 200
        data = response.json()
        assert data["module_id"] == "mod-weather"
        assert data["overall_status"] == "passed"
        assert data["security_score"] == 100
        assert data["sandbox"]["status"] == "completed"

    def test_validate_unparseable_submission(self, client, submission_data):
        del submission_data["id"]

        response = client.post("/v1/validations", json=submission_data)

        assert response.status_code == 422
        data = response.json()
        assert data["error_code"] == "VAL_INVALID"
        assert data["request_id"]

    def test_validate_static_only(self, client, submission_data, stub_runtime):
        submission_data["manifest"]["frontend"]["entryUrl"] = "http://example.com"

        response = client.post("/v1/validations/static", json=submission_data)

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is False
        assert any("HTTPS" in e for e in data["errors"])
        assert stub_runtime.calls == []

    def test_runtime_unavailable(self, config, stub_runtime_factory, submission_data):
        manager = ValidationManager(config=config, runtime=stub_runtime_factory(wait_behavior="unavailable"))
        client = TestClient(create_app(config, manager=manager))

        response = client.post("/v1/validations", json=submission_data)

        assert response.status_code == 503
        assert response.json()["error_code"] == "RUNTIME_UNAVAILABLE"


class TestPolicyEndpoints:
    """Tests for policy administration endpoints."""

    def test_list_policies(self, client):
        response = client.get("/v1/policies")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == [
            "data_protection_policy", "access_control_policy", "performance_policy",
        ]

    def test_get_policy(self, client):
        response = client.get("/v1/policies/access_control_policy")

        assert response.status_code == 200
        rules = response.json()["rules"]
        assert rules[1]["predicate"]["kind"] == "permission_contains"

    def test_get_missing_policy(self, client):
        response = client.get("/v1/policies/nope")

        assert response.status_code == 404
        assert response.json()["error_code"] == "POL_NOT_FOUND"

    def test_update_policy(self, client, manager):
        response = client.patch("/v1/policies/performance_policy", json={"enforcement": "strict"})

        assert response.status_code == 200
        assert response.json()["enforcement"] == "strict"
        assert manager.registry.get_policy("performance_policy").enforcement == "strict"
        assert manager.registry.snapshot.version == 2

    def test_update_policy_invalid(self, client):
        response = client.patch("/v1/policies/performance_policy", json={"enforcement": "draconian"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_update_policy_id_is_fixed(self, client):
        response = client.patch("/v1/policies/performance_policy", json={"id": "renamed"})

        assert response.status_code == 400

    def test_refresh(self, client):
        response = client.post("/v1/policies/refresh")

        assert response.status_code == 200
        assert response.json() == {"refreshed": True, "version": 2}

    def test_list_frameworks(self, client):
        response = client.get("/v1/frameworks")

        assert response.status_code == 200
        assert [f["id"] for f in response.json()] == ["gdpr_compliance", "soc2_compliance"]


class TestLifespan:
    """Tests for manager start/close around the app lifetime."""

    def test_manager_started_and_closed(self, config, manager):
        with TestClient(create_app(config, manager=manager)) as client:
            assert client.get("/v1/health").status_code == 200
            assert manager.registry._refresh_task is not None

        assert manager.registry._refresh_task is None
