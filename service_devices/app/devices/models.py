"""
Device data models for the Devices Service.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..validation.payload import reject_json_constant


@dataclass
class DeviceRecord:
    """Device as held by the repository."""
    device_id: int
    name: str
    device_type_id: int
    is_enabled: bool = False
    additional_properties: Dict[str, Any] = field(default_factory=dict)


class DeviceWriteRequest(BaseModel):
    """Request model for creating or updating a device.

    Field names are accepted in any case and field types are strict, matching
    what the validation middleware reads.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", strict=True)

    name: str = Field(..., description="Device name")
    type_id: Optional[Union[int, str]] = Field(None, alias="typeid", description="Device type id or name")
    type: Optional[str] = Field(None, description="Device type name")
    is_enabled: bool = Field(False, alias="isenabled", description="Whether the device is enabled")
    additional_properties: Dict[str, Any] = Field(
        default_factory=dict, alias="additionalproperties", description="Type-specific properties"
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {str(key).casefold(): value for key, value in data.items()}
        return data

    @field_validator("additional_properties", mode="before")
    @classmethod
    def parse_additional_properties(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value, parse_constant=reject_json_constant)
        return value

    @field_validator("is_enabled", mode="before")
    @classmethod
    def default_is_enabled(cls, value: Any) -> Any:
        return False if value is None else value


class DeviceSummary(BaseModel):
    """Response model for device lists."""
    id: int
    name: str


class DeviceResponse(BaseModel):
    """Response model for a single device."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    type: str = Field(..., description="Device type name")
    is_enabled: bool = Field(..., alias="isEnabled")
    additional_properties: Dict[str, Any] = Field(default_factory=dict, alias="additionalProperties")

