"""
Unit tests for Devices main service.
"""

import json
import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_devices.app.devices.repository import InMemoryDeviceRepository
from service_devices.app.main import DevicesService, create_app
from service_devices.app.validation.store import RuleStore
from shared.config import get_config
from shared.errors import ConfigError


RULES = {
    "validations": [
        {
            "type": "PC",
            "preRequestName": "isEnabled",
            "preRequestValue": "true",
            "rules": [{"paramName": "cpu", "regex": "/^[A-Za-z0-9 ]+$/"}]
        },
        {
            "type": "Printer",
            "preRequestName": "isEnabled",
            "preRequestValue": "false",
            "rules": [{"paramName": "status", "regex": ["Offline", "Maintenance"]}]
        }
    ]
}


class TestDevicesService:
    """Test cases for DevicesService."""

    @pytest.fixture
    def devices_service(self):
        """Create DevicesService instance with in-memory rules."""
        return DevicesService(rule_store=RuleStore.from_raw(RULES))

    @pytest.fixture
    def client(self, devices_service):
        """Create test client."""
        return TestClient(devices_service.app)

    @pytest.fixture
    def pc_request(self):
        """Valid PC create request."""
        return {
            "name": "Office PC",
            "typeId": 1,
            "isEnabled": True,
            "additionalProperties": {"cpu": "Intel i7", "ram": "16GB"}
        }

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "devices"
        assert "request_validation" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "devices"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"repository": "ok"}

    def test_health_endpoint_reports_repository_error(self, devices_service, client):
        """Test a failing repository is reported as a dependency error."""
        devices_service.repository.health_check = AsyncMock(side_effect=RuntimeError("boom"))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["dependencies"] == {"repository": "error"}

    def test_metrics_endpoint(self, client, pc_request):
        """Test metrics endpoint exposes validation counters."""
        client.post("/api/devices", json=pc_request)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "device_validations_total" in response.text
        assert "http_requests_total" in response.text

    def test_request_id_is_echoed(self, client):
        """Test the request id header round-trips."""
        response = client.get("/api/devices", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_create_and_get_device(self, client, pc_request):
        """Test creating a device and reading it back."""
        created = client.post("/api/devices", json=pc_request)

        assert created.status_code == 201
        body = created.json()
        assert body["name"] == "Office PC"
        assert body["type"] == "PC"
        assert body["isEnabled"] is True

        fetched = client.get(f"/api/devices/{body['id']}")

        assert fetched.status_code == 200
        assert fetched.json()["additionalProperties"] == {"cpu": "Intel i7", "ram": "16GB"}

    def test_list_devices(self, client, pc_request):
        """Test listing devices returns ids and names."""
        client.post("/api/devices", json=pc_request)
        client.post("/api/devices", json={"name": "Lobby Screen", "type": "Monitor"})

        response = client.get("/api/devices")

        assert response.status_code == 200
        assert [device["name"] for device in response.json()] == ["Office PC", "Lobby Screen"]
        assert set(response.json()[0].keys()) == {"id", "name"}

    def test_create_device_rejected_by_validation(self, client, devices_service, pc_request):
        """Test an invalid write is refused before the handler runs."""
        pc_request["additionalProperties"]["cpu"] = "Intel-i7"

        response = client.post("/api/devices", json=pc_request)

        assert response.status_code == 400
        assert response.text == "Validation failed for 'cpu' with value 'Intel-i7'"

    def test_rejected_write_is_not_stored(self, client, pc_request):
        """Test nothing is persisted for a rejected write."""
        pc_request["additionalProperties"] = {}

        client.post("/api/devices", json=pc_request)

        assert client.get("/api/devices").json() == []

    def test_update_device(self, client, pc_request):
        """Test updating a device."""
        device_id = client.post("/api/devices", json=pc_request).json()["id"]
        update = {
            "name": "Spare Printer",
            "typeId": 5,
            "isEnabled": False,
            "additionalProperties": {"status": "Offline"}
        }

        response = client.put(f"/api/devices/{device_id}", json=update)

        assert response.status_code == 204
        fetched = client.get(f"/api/devices/{device_id}").json()
        assert fetched["type"] == "Printer"
        assert fetched["additionalProperties"] == {"status": "Offline"}

    def test_update_device_rejected_by_validation(self, client, pc_request):
        """Test updates go through the same validation."""
        device_id = client.post("/api/devices", json=pc_request).json()["id"]

        response = client.put(
            f"/api/devices/{device_id}",
            json={"name": "Spare Printer", "typeId": 5, "isEnabled": False,
                  "additionalProperties": {"status": "Online"}}
        )

        assert response.status_code == 400
        assert response.text == "Validation failed for 'status' with value 'Online'"

    def test_update_missing_device(self, client):
        """Test updating an unknown device."""
        response = client.put("/api/devices/99", json={"name": "Ghost", "typeId": 4})

        assert response.status_code == 404
        data = response.json()
        assert data["code"] == "NOT_FOUND"
        assert data["message"] == "Device with ID 99 not found."

    def test_delete_device(self, client, pc_request):
        """Test deleting a device."""
        device_id = client.post("/api/devices", json=pc_request).json()["id"]

        response = client.delete(f"/api/devices/{device_id}")

        assert response.status_code == 204
        assert client.get(f"/api/devices/{device_id}").status_code == 404

    def test_delete_missing_device(self, client):
        """Test deleting an unknown device."""
        response = client.delete("/api/devices/99")

        assert response.status_code == 404

    def test_get_missing_device(self, client):
        """Test reading an unknown device."""
        response = client.get("/api/devices/99")

        assert response.status_code == 404
        assert response.json()["message"] == "Device with ID 99 not found."

    def test_unknown_device_type_on_create(self, client):
        """Test unknown types are rejected by validation."""
        response = client.post("/api/devices", json={"name": "Laptop", "typeId": 999})

        assert response.status_code == 400
        assert response.text == "Unknown device type"

    def test_unknown_device_type_without_validation(self):
        """Test the handler's own type lookup when validation is out of the path."""
        config = get_config("devices", 8013, device_path_prefix="/api/validated")
        service = DevicesService(config=config, rule_store=RuleStore.from_raw(RULES))
        client = TestClient(service.app)

        response = client.post("/api/devices", json={"name": "Laptop", "typeId": 999})

        assert response.status_code == 404
        assert response.json()["message"] == "DeviceType not found."

    def test_malformed_body_passes_to_handler(self, client):
        """Test malformed bodies reach the handler under the default policy."""
        response = client.post(
            "/api/devices", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 422

    @pytest.mark.parametrize("raw", [
        b'{"name": "x", "typeId": 1, "isEnabled": "true", "additionalProperties": {"cpu": "!!!"}}',
        b'{"name": "x", "typeId": 1, "isEnabled": 1, "additionalProperties": {"cpu": "!!!"}}',
        b'{"name": "x", "typeId": 1.0, "isEnabled": true, "additionalProperties": {"cpu": "!!!"}}',
        b'{"name": "x", "typeId": true, "isEnabled": true, "additionalProperties": {"cpu": "!!!"}}',
        b'{"name": "x", "typeId": 1, "isEnabled": true, "additionalProperties": {"cpu": NaN}}',
        b'{"name": "x", "typeId": 1, "isEnabled": true, "note": Infinity, "additionalProperties": {"cpu": "!!!"}}',
        b'{"name": "x", "typeId": 1, "isEnabled": true, "additionalProperties": ["cpu"]}',
        '{"name": "x", "typeId": 1, "isEnabled": true, "additionalProperties": {"cpu": "!!!"}}'.encode("utf-16"),
    ])
    def test_malformed_write_is_never_stored(self, client, raw):
        """Test bodies the validator cannot read are refused by the route too."""
        response = client.post("/api/devices", content=raw, headers={"Content-Type": "application/json"})

        assert response.status_code in (400, 422)
        assert client.get("/api/devices").json() == []

    def test_malformed_write_reports_malformed_payload(self, client):
        """Test the route answers malformed bodies with the standard error body."""
        response = client.post(
            "/api/devices",
            content=b'{"name": "x", "typeId": 1, "isEnabled": "true", "additionalProperties": {"cpu": "!!!"}}',
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "MALFORMED_PAYLOAD"
        assert data["message"] == "Malformed device payload"

    def test_malformed_update_is_never_stored(self, client, pc_request):
        """Test updates with unreadable bodies leave the device unchanged."""
        device_id = client.post("/api/devices", json=pc_request).json()["id"]

        response = client.put(
            f"/api/devices/{device_id}",
            content=b'{"name": "x", "typeId": 1, "isEnabled": 1, "additionalProperties": {"cpu": "!!!"}}',
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert client.get(f"/api/devices/{device_id}").json()["additionalProperties"]["cpu"] == "Intel i7"

    def test_null_is_enabled_means_disabled(self, client):
        """Test a null isEnabled is read as false by both validator and route."""
        response = client.post(
            "/api/devices",
            json={"name": "Old Desktop", "typeId": 1, "isEnabled": None, "additionalProperties": {"cpu": "!!!"}}
        )

        assert response.status_code == 201
        assert response.json()["isEnabled"] is False

    def test_malformed_body_rejected_by_policy(self):
        """Test the reject policy answers malformed bodies itself."""
        config = get_config("devices", 8013, malformed_payload_policy="reject")
        service = DevicesService(config=config, rule_store=RuleStore.from_raw(RULES))
        client = TestClient(service.app)

        response = client.post(
            "/api/devices", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.text == "Malformed device payload"

    def test_validation_stats(self, client, pc_request):
        """Test validation statistics endpoint."""
        client.post("/api/devices", json=pc_request)

        response = client.get("/validation/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["rules"]["total_rule_sets"] == 2
        assert data["rules"]["device_types"] == ["PC", "Printer"]
        assert data["devices"]["total_devices"] == 1
        assert data["malformed_payload_policy"] == "pass"

    def test_injected_repository_is_used(self):
        """Test a provided repository backs the routes."""
        repository = InMemoryDeviceRepository()
        service = DevicesService(rule_store=RuleStore.from_raw(RULES), repository=repository)

        assert service.repository is repository


class TestDevicesServiceConfiguration:
    """Test cases for start-up configuration checks."""

    @pytest.fixture
    def rules_file(self, tmp_path):
        """Rule document on disk."""
        path = tmp_path / "validation_rules.json"
        path.write_text(json.dumps(RULES), encoding="utf-8")
        return path

    def test_rules_loaded_from_configured_file(self, rules_file):
        """Test the configured rule file is loaded."""
        config = get_config("devices", 8013, validation_rules_file=str(rules_file))

        service = DevicesService(config=config)

        assert service.rule_store.device_types() == ["PC", "Printer"]

    def test_rules_file_from_environment(self, rules_file, monkeypatch):
        """Test the rule file can be named through the environment."""
        monkeypatch.setenv("INVENTORY_VALIDATION_RULES_FILE", str(rules_file))

        app = create_app()
        client = TestClient(app)

        response = client.post(
            "/api/devices",
            json={"name": "PC", "typeId": 1, "isEnabled": True, "additionalProperties": {}}
        )
        assert response.status_code == 400
        assert response.text == "Missing required property 'cpu'"

    def test_missing_rules_file_fails_start(self, tmp_path):
        """Test a missing rule file stops the service from starting."""
        config = get_config("devices", 8013, validation_rules_file=str(tmp_path / "missing.json"))

        with pytest.raises(ConfigError):
            DevicesService(config=config)

    def test_invalid_rules_file_fails_start(self, tmp_path):
        """Test a malformed rule file stops the service from starting."""
        path = tmp_path / "validation_rules.json"
        path.write_text('{"validations": [{"type": "PC"}]}', encoding="utf-8")
        config = get_config("devices", 8013, validation_rules_file=str(path))

        with pytest.raises(ConfigError):
            DevicesService(config=config)

    def test_unknown_precondition_field_fails_start(self):
        """Test rule sets may only gate on fields the payload carries."""
        rule_store = RuleStore.from_raw([
            {"type": "PC", "preRequestName": "owner", "preRequestValue": "it",
             "rules": [{"paramName": "cpu", "regex": ".+"}]}
        ])

        with pytest.raises(ConfigError) as exc_info:
            DevicesService(rule_store=rule_store)

        assert exc_info.value.details["fields"] == ["owner"]

    def test_unknown_policy_fails_start(self):
        """Test an unrecognised malformed payload policy."""
        config = get_config("devices", 8013, malformed_payload_policy="ignore")

        with pytest.raises(ConfigError):
            DevicesService(config=config, rule_store=RuleStore.from_raw(RULES))
