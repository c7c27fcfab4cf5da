"""
Fixed device type table used by request validation.
"""

import re
from typing import Any, Dict, Optional

DEVICE_TYPES: Dict[int, str] = {
    1: "PC",
    2: "Smartwatch",
    3: "Embedded",
    4: "Monitor",
    5: "Printer",
}

_IDS_BY_NAME: Dict[str, int] = {name.casefold(): type_id for type_id, name in DEVICE_TYPES.items()}
_NUMERIC = re.compile(r"[0-9]+")


def resolve_device_type(identifier: Any) -> Optional[str]:
    """Map a numeric id, numeric string, or type name to its canonical name."""
    # bool is an int subclass; true/false is never a type id
    if identifier is None or isinstance(identifier, bool):
        return None

    if isinstance(identifier, int):
        return DEVICE_TYPES.get(identifier)

    if isinstance(identifier, str):
        text = identifier.strip()
        if _NUMERIC.fullmatch(text):
            return DEVICE_TYPES.get(int(text))
        type_id = _IDS_BY_NAME.get(text.casefold())
        return DEVICE_TYPES[type_id] if type_id is not None else None

    return None


def device_type_id(name: str) -> Optional[int]:
    """Numeric id of a device type name, case-insensitive."""
    return _IDS_BY_NAME.get(name.casefold())
