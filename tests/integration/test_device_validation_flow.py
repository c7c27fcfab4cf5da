"""
Integration tests for device writes flowing through validation into the service.
"""

import asyncio
import pytest
import httpx
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_devices.app.main import DevicesService
from shared.config import get_config


RULES_FILE = os.path.join(os.path.dirname(__file__), '..', '..', 'validation_rules.json')


class TestDeviceValidationFlow:
    """End-to-end tests against the shipped rule document."""

    @pytest.fixture
    def devices_service(self):
        """Devices service loading the shipped rule file."""
        config = get_config("devices", 8013, validation_rules_file=RULES_FILE)
        return DevicesService(config=config)

    @pytest.fixture
    def client(self, devices_service):
        """Create test client."""
        return TestClient(devices_service.app)

    def test_valid_pc_is_stored(self, client):
        """Test a conforming enabled PC is accepted and stored."""
        response = client.post("/api/devices", json={
            "name": "Build Agent",
            "typeId": 1,
            "isEnabled": True,
            "additionalProperties": {"operationSystem": "Linux 6.1", "cpu": "Intel i7"}
        })

        assert response.status_code == 201
        assert client.get("/api/devices").json() == [{"id": response.json()["id"], "name": "Build Agent"}]

    def test_missing_property_is_reported_in_document_order(self, client):
        """Test the first declared rule is reported first."""
        response = client.post("/api/devices", json={
            "name": "Build Agent",
            "typeId": 1,
            "isEnabled": True,
            "additionalProperties": {}
        })

        assert response.status_code == 400
        assert response.text == "Missing required property 'operationSystem'"

    def test_enumerated_interface(self, client):
        """Test the embedded interface enumeration."""
        device = {
            "name": "Sensor Hub",
            "typeId": 3,
            "isEnabled": True,
            "additionalProperties": {"ipAddress": "10.0.0.12", "interface": "Wifi"}
        }

        rejected = client.post("/api/devices", json=device)
        device["additionalProperties"]["interface"] = "USB"
        accepted = client.post("/api/devices", json=device)

        assert rejected.status_code == 400
        assert rejected.text == "Validation failed for 'interface' with value 'Wifi'"
        assert accepted.status_code == 201

    def test_unknown_device_type(self, client):
        """Test types outside the fixed table are refused."""
        response = client.post("/api/devices", json={"name": "Toaster", "typeId": 999, "isEnabled": True})

        assert response.status_code == 400
        assert response.text == "Unknown device type"

    def test_empty_body_is_left_to_the_handler(self, client):
        """Test an empty body passes validation and fails request parsing."""
        response = client.post("/api/devices", content=b"", headers={"Content-Type": "application/json"})

        assert response.status_code == 422

    def test_precondition_not_met_skips_rules(self, client):
        """Test a disabled PC is not held to enabled-PC rules."""
        response = client.post("/api/devices", json={
            "name": "Old Desktop",
            "typeId": 1,
            "isEnabled": False,
            "additionalProperties": {"cpu": "!!!"}
        })

        assert response.status_code == 201

    def test_disabled_printer_rules(self, client):
        """Test rule sets that apply to disabled devices."""
        device_id = client.post("/api/devices", json={
            "name": "Floor 2 Printer",
            "type": "Printer",
            "isEnabled": False,
            "additionalProperties": {"status": "Offline"}
        }).json()["id"]

        response = client.put(f"/api/devices/{device_id}", json={
            "name": "Floor 2 Printer",
            "type": "Printer",
            "isEnabled": False,
            "additionalProperties": {"status": "Printing"}
        })

        assert response.status_code == 400
        assert response.text == "Validation failed for 'status' with value 'Printing'"

    def test_numeric_property_is_stringified(self, client):
        """Test non-string property values are compared in string form."""
        response = client.post("/api/devices", json={
            "name": "Runner Watch",
            "typeId": 2,
            "isEnabled": True,
            "additionalProperties": {"batteryLevel": 80}
        })

        assert response.status_code == 400
        assert response.text == "Validation failed for 'batteryLevel' with value '80'"

    def test_validation_outcomes_in_metrics(self, client):
        """Test outcomes show up on the metrics endpoint."""
        client.post("/api/devices", json={"name": "Toaster", "typeId": 999})

        response = client.get("/metrics")

        assert 'device_validations_total{outcome="unknown_device_type"} 1.0' in response.text

    @pytest.mark.asyncio
    async def test_concurrent_writes_are_judged_independently(self, devices_service):
        """Test parallel requests each get their own verdict."""
        transport = httpx.ASGITransport(app=devices_service.app)

        async with httpx.AsyncClient(transport=transport, base_url="http://devices") as client:
            requests = []
            for i in range(20):
                interface = "USB" if i % 2 == 0 else "Wifi"
                requests.append(client.post("/api/devices", json={
                    "name": f"Hub {i}",
                    "typeId": 3,
                    "isEnabled": True,
                    "additionalProperties": {"ipAddress": f"10.0.0.{i}", "interface": interface}
                }))
            responses = await asyncio.gather(*requests)

        assert [r.status_code for r in responses] == [201 if i % 2 == 0 else 400 for i in range(20)]
        stored = await devices_service.repository.list_devices()
        assert len(stored) == 10
