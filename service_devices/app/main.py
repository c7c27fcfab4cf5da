"""
Devices service for the Device Inventory backend.
"""

from typing import List, Optional

from fastapi import Depends, Request, Response
from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ConfigError, NotFoundError

from .devices.models import DeviceRecord, DeviceResponse, DeviceSummary, DeviceWriteRequest
from .devices.repository import InMemoryDeviceRepository
from .validation.device_types import DEVICE_TYPES, device_type_id, resolve_device_type
from .validation.engine import ValidationEngine
from .validation.middleware import DeviceValidationMiddleware
from .validation.models import MalformedPayloadPolicy
from .validation.payload import PAYLOAD_FIELDS, DevicePayload, parse_device_payload
from .validation.store import RuleStore


async def require_device_payload(request: Request) -> Optional[DevicePayload]:
    """Parse the raw write body exactly as the validation middleware does.

    Bodies the middleware lets through as malformed must never be stored, so
    they are refused here with ``MalformedPayloadError`` (400). An empty body
    is left to the request model.
    """
    body = await request.body()
    if not body.strip():
        return None
    return parse_device_payload(body)


class DevicesService(BaseService):
    """Devices service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        rule_store: Optional[RuleStore] = None,
        repository: Optional[InMemoryDeviceRepository] = None,
    ):
        self._provided_rule_store = rule_store
        self.repository = repository or InMemoryDeviceRepository()

        super().__init__("devices", 8013, config)

        self._setup_devices_routes()

    def _setup_middleware(self):
        """Set up middleware.

        Device validation is registered first so it runs innermost, inside
        request timing and CORS. Rules are loaded here, before the app can
        serve anything; a bad document aborts construction.
        """
        self.rule_store = self._provided_rule_store or self._load_rule_store()
        self._check_precondition_fields()

        try:
            policy = MalformedPayloadPolicy(self.config.malformed_payload_policy.lower())
        except ValueError:
            raise ConfigError(
                f"Unknown malformed payload policy '{self.config.malformed_payload_policy}'",
                {"allowed": [p.value for p in MalformedPayloadPolicy]}
            )

        self.validation_engine = ValidationEngine(
            self.rule_store,
            path_prefix=self.config.device_path_prefix,
            malformed_payload_policy=policy,
            max_match_length=self.config.max_match_length
        )
        self.app.add_middleware(
            DeviceValidationMiddleware,
            engine=self.validation_engine,
            metrics=self.metrics
        )

        super()._setup_middleware()

    def _load_rule_store(self) -> RuleStore:
        """Load the rule document named by configuration."""
        try:
            return RuleStore.from_file(
                self.config.validation_rules_file,
                max_pattern_length=self.config.max_pattern_length
            )
        except ConfigError as e:
            self.logger.error(
                "Validation rules could not be loaded",
                path=self.config.validation_rules_file,
                error=e.message,
                details=e.details
            )
            raise

    def _check_precondition_fields(self):
        unknown = [
            field_name for field_name in self.rule_store.precondition_fields()
            if field_name.casefold() not in PAYLOAD_FIELDS
        ]
        if unknown:
            raise ConfigError(
                "Rule document names unknown precondition fields",
                {"fields": unknown, "known": sorted(PAYLOAD_FIELDS)}
            )

    def _setup_devices_routes(self):
        """Set up devices-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "devices",
                "message": "Device Inventory - Devices Service",
                "version": "1.0.0",
                "capabilities": ["device_crud", "request_validation"]
            }

        @self.app.get("/api/devices", response_model=List[DeviceSummary])
        async def list_devices():
            """List devices as id and name."""
            records = await self.repository.list_devices()
            return [DeviceSummary(id=record.device_id, name=record.name) for record in records]

        @self.app.get("/api/devices/{device_id}", response_model=DeviceResponse)
        async def get_device(device_id: int):
            """Get a device with its type and properties."""
            record = await self.repository.get_device(device_id)
            if record is None:
                raise NotFoundError(f"Device with ID {device_id} not found.")
            return self._to_response(record)

        @self.app.post(
            "/api/devices",
            response_model=DeviceResponse,
            status_code=201,
            dependencies=[Depends(require_device_payload)]
        )
        async def create_device(request: DeviceWriteRequest):
            """Create a device."""
            record = await self.repository.create_device(
                name=request.name,
                device_type_id=self._resolve_type_id(request),
                is_enabled=request.is_enabled,
                additional_properties=request.additional_properties
            )
            return self._to_response(record)

        @self.app.put(
            "/api/devices/{device_id}",
            status_code=204,
            dependencies=[Depends(require_device_payload)]
        )
        async def update_device(device_id: int, request: DeviceWriteRequest):
            """Update a device."""
            record = await self.repository.update_device(
                device_id,
                name=request.name,
                device_type_id=self._resolve_type_id(request),
                is_enabled=request.is_enabled,
                additional_properties=request.additional_properties
            )
            if record is None:
                raise NotFoundError(f"Device with ID {device_id} not found.")
            return Response(status_code=204)

        @self.app.delete("/api/devices/{device_id}", status_code=204)
        async def delete_device(device_id: int):
            """Delete a device."""
            if not await self.repository.delete_device(device_id):
                raise NotFoundError(f"Device with ID {device_id} not found.")
            return Response(status_code=204)

        @self.app.get("/validation/stats")
        async def get_validation_stats():
            """Get validation rule and repository statistics."""
            return {
                "rules": self.rule_store.get_stats(),
                "devices": await self.repository.get_stats(),
                "malformed_payload_policy": self.validation_engine.malformed_payload_policy.value
            }

    @staticmethod
    def _resolve_type_id(request: DeviceWriteRequest) -> int:
        identifier = request.type_id if request.type_id is not None else request.type
        type_name = resolve_device_type(identifier)
        if type_name is None:
            raise NotFoundError("DeviceType not found.", {"type": identifier})
        return device_type_id(type_name)

    @staticmethod
    def _to_response(record: DeviceRecord) -> DeviceResponse:
        return DeviceResponse(
            id=record.device_id,
            name=record.name,
            type=DEVICE_TYPES.get(record.device_type_id, "Unknown"),
            is_enabled=record.is_enabled,
            additional_properties=record.additional_properties
        )

    async def _check_dependencies(self):
        """Check devices service dependencies."""
        dependencies = {}

        try:
            dependencies["repository"] = "ok" if await self.repository.health_check() else "error"
        except Exception:
            dependencies["repository"] = "error"

        return dependencies


def create_app():
    """Create devices service application."""
    service = DevicesService()
    return service.app


if __name__ == "__main__":
    service = DevicesService()
    service.run()
