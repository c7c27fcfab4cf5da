"""
Device payload parsing for request validation.

Top-level field names are matched case-insensitively. Keys inside
``additionalProperties`` keep their case, since field rules look them up
exactly.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from shared.errors import ValidationError
from .device_types import resolve_device_type


class MalformedPayloadError(ValidationError):
    """Body is present but is not a device payload."""

    def __init__(self, message: str = "Malformed device payload", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "MALFORMED_PAYLOAD"


@dataclass
class DevicePayload:
    """The parts of a device write body the validator reads."""
    type_id: Union[int, str, None] = None
    type_name: Optional[str] = None
    name: Optional[str] = None
    is_enabled: bool = False
    additional_properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def device_type(self) -> Optional[str]:
        """Canonical device type; ``typeId`` wins over ``type`` when both are sent."""
        if self.type_id is not None:
            return resolve_device_type(self.type_id)
        return resolve_device_type(self.type_name)


# Precondition fields a rule set may name, keyed case-folded
PAYLOAD_FIELDS: Dict[str, Callable[[DevicePayload], Any]] = {
    "typeid": lambda payload: payload.type_id,
    "type": lambda payload: payload.type_name,
    "name": lambda payload: payload.name,
    "isenabled": lambda payload: payload.is_enabled,
}


class JsonNumber(Decimal):
    """Decimal that remembers the literal it was parsed from.

    ``str()`` gives the literal back, so ``1e5`` stays ``1e5`` and ``1.50``
    keeps its trailing zero.
    """

    def __new__(cls, literal: str):
        number = super().__new__(cls, literal)
        number.literal = literal
        return number

    def __str__(self) -> str:
        return self.literal


def reject_json_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def _loads(text: str) -> Any:
    return json.loads(text, parse_float=JsonNumber, parse_constant=reject_json_constant)


def _compact_json(value: Any) -> str:
    if isinstance(value, dict):
        members = ",".join(
            f"{json.dumps(str(key), ensure_ascii=False)}:{_compact_json(item)}" for key, item in value.items()
        )
        return "{" + members + "}"
    if isinstance(value, list):
        return "[" + ",".join(_compact_json(item) for item in value) + "]"
    if isinstance(value, Decimal):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def stringify_value(value: Any) -> str:
    """Render a decoded JSON value the way rules compare it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, Decimal)):
        return str(value)
    return _compact_json(value)


def _expect(fields: Dict[str, Any], key: str, types: tuple, label: str) -> Any:
    value = fields.get(key)
    if value is None:
        return None
    # bool is an int subclass
    if isinstance(value, bool) and bool not in types:
        raise MalformedPayloadError(details={"field": label, "error": "unexpected boolean"})
    if not isinstance(value, types):
        raise MalformedPayloadError(details={"field": label, "error": f"unexpected {type(value).__name__}"})
    return value


def _additional_properties(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    # Stored devices keep the mapping as JSON text; accept that form too
    if isinstance(value, str):
        try:
            value = _loads(value)
        except ValueError as e:
            raise MalformedPayloadError(details={"field": "additionalProperties", "error": str(e)})
    if not isinstance(value, dict):
        raise MalformedPayloadError(details={"field": "additionalProperties", "error": "expected an object"})
    return value


def parse_device_payload(body: Union[bytes, str]) -> DevicePayload:
    """Parse a request body into a ``DevicePayload``.

    Raises:
        MalformedPayloadError: The body is not JSON, not an object, or a known
            field has the wrong JSON type.
    """
    try:
        text = body.decode("utf-8-sig") if isinstance(body, (bytes, bytearray)) else body
        data = _loads(text)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayloadError(details={"error": str(e)})

    if not isinstance(data, dict):
        raise MalformedPayloadError(details={"error": "expected a JSON object"})

    fields: Dict[str, Any] = {}
    for key, value in data.items():
        fields[key.casefold()] = value

    is_enabled = _expect(fields, "isenabled", (bool,), "isEnabled")

    return DevicePayload(
        type_id=_expect(fields, "typeid", (int, str), "typeId"),
        type_name=_expect(fields, "type", (str,), "type"),
        name=_expect(fields, "name", (str,), "name"),
        is_enabled=bool(is_enabled),
        additional_properties=_additional_properties(fields.get("additionalproperties")),
    )


def read_payload_field(payload: DevicePayload, field_name: str) -> Optional[str]:
    """Stringified value of a top-level payload field, ``None`` if unknown."""
    accessor = PAYLOAD_FIELDS.get(field_name.casefold())
    if accessor is None:
        return None
    return stringify_value(accessor(payload))
