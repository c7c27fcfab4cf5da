"""
Device request validation package.

Loads conditional validation rules from an external rule document and
enforces them on device create/update requests before they reach the routes.

Modules of interest:
- models: Rule document specs, compiled rule sets, matchers and outcomes.
- store: Rule document loading and rule set lookup.
- payload: Device payload parsing and the precondition accessor map.
- device_types: Fixed device type table.
- engine: Scope filter, rule selection and field enforcement.
- middleware: ASGI middleware that buffers and replays the request body.

The rule document is loaded once and is read-only afterwards, so the engine
needs no locking across concurrent requests.
"""

from .engine import ValidationEngine
from .middleware import DeviceValidationMiddleware
from .models import MalformedPayloadPolicy, RuleDocument, ValidationFailure, ValidationOutcome
from .store import RuleStore, load_rule_document, load_rule_file, matching_rules

__all__ = [
    "DeviceValidationMiddleware",
    "MalformedPayloadPolicy",
    "RuleDocument",
    "RuleStore",
    "ValidationEngine",
    "ValidationFailure",
    "ValidationOutcome",
    "load_rule_document",
    "load_rule_file",
    "matching_rules",
]
