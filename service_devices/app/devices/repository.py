"""
In-memory device repository for the Devices Service.

Stands in for the relational store; the routes only need these CRUD calls.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from .models import DeviceRecord


class InMemoryDeviceRepository:
    """Async CRUD over devices held in process memory."""

    def __init__(self):
        self.logger = get_logger("devices.repository")
        self._devices: Dict[int, DeviceRecord] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def list_devices(self) -> List[DeviceRecord]:
        """Get all devices ordered by id."""
        async with self._lock:
            return [copy.deepcopy(self._devices[key]) for key in sorted(self._devices)]

    async def get_device(self, device_id: int) -> Optional[DeviceRecord]:
        """Get a device by id."""
        async with self._lock:
            record = self._devices.get(device_id)
            return copy.deepcopy(record) if record else None

    async def create_device(self, name: str, device_type_id: int, is_enabled: bool,
                            additional_properties: Dict[str, Any]) -> DeviceRecord:
        """Create a device and assign its id."""
        async with self._lock:
            record = DeviceRecord(
                device_id=self._next_id,
                name=name,
                device_type_id=device_type_id,
                is_enabled=is_enabled,
                additional_properties=copy.deepcopy(additional_properties)
            )
            self._devices[record.device_id] = record
            self._next_id += 1

        self.logger.info("Device created", device_id=record.device_id, name=name)
        return copy.deepcopy(record)

    async def update_device(self, device_id: int, name: str, device_type_id: int, is_enabled: bool,
                            additional_properties: Dict[str, Any]) -> Optional[DeviceRecord]:
        """Replace a device's fields; ``None`` if it does not exist."""
        async with self._lock:
            record = self._devices.get(device_id)
            if record is None:
                return None

            record.name = name
            record.device_type_id = device_type_id
            record.is_enabled = is_enabled
            record.additional_properties = copy.deepcopy(additional_properties)

        self.logger.info("Device updated", device_id=device_id, name=name)
        return copy.deepcopy(record)

    async def delete_device(self, device_id: int) -> bool:
        """Delete a device; ``False`` if it does not exist."""
        async with self._lock:
            record = self._devices.pop(device_id, None)

        if record is None:
            return False

        self.logger.info("Device deleted", device_id=device_id, name=record.name)
        return True

    async def health_check(self) -> bool:
        """Check repository health."""
        return True

    async def get_stats(self) -> Dict[str, Any]:
        """Get repository statistics."""
        async with self._lock:
            return {
                "total_devices": len(self._devices),
                "enabled_devices": len([d for d in self._devices.values() if d.is_enabled]),
            }
