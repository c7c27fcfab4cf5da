"""
Validation data models for the Devices Service.

Two layers live here. The ``*Spec`` pydantic models describe the rule
document as it is written on disk: keys are matched case-insensitively and
unknown keys are ignored. The frozen dataclasses are the compiled, immutable
form the engine evaluates at request time.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _casefold_keys(data: Any) -> Any:
    """Lower-case mapping keys so the document can be written in any case."""
    if isinstance(data, dict):
        return {str(key).lower(): value for key, value in data.items()}
    return data


class FieldRuleSpec(BaseModel):
    """A field rule as written in the rule document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    param_name: str = Field(..., alias="paramname")
    regex: Union[str, List[str]]

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return _casefold_keys(data)


class RuleSetSpec(BaseModel):
    """A rule set as written in the rule document."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str
    pre_request_name: str = Field(..., alias="prerequestname")
    pre_request_value: str = Field(..., alias="prerequestvalue")
    rules: List[FieldRuleSpec]

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return _casefold_keys(data)


@dataclass(frozen=True)
class PatternMatcher:
    """Constrain a field with a regular expression (unanchored search)."""

    regex: str
    compiled: Optional[Pattern] = field(default=None, compare=False, repr=False)

    def matches(self, value: str) -> bool:
        # An empty pattern never matches
        if self.compiled is None:
            return False
        return self.compiled.search(value) is not None


@dataclass(frozen=True)
class AllowedValuesMatcher:
    """Constrain a field to an exact, case-sensitive set of values."""

    values: Tuple[str, ...]

    def matches(self, value: str) -> bool:
        return value in self.values


Matcher = Union[PatternMatcher, AllowedValuesMatcher]


@dataclass(frozen=True)
class FieldRule:
    """Constraint on one entry of a payload's additional properties."""
    param_name: str
    matcher: Matcher


@dataclass(frozen=True)
class ValidationRuleSet:
    """Field rules that apply when a device type and a precondition match."""
    device_type: str
    precondition_field: str
    precondition_value: str
    field_rules: Tuple[FieldRule, ...] = ()

    def precondition_holds(self, value: str) -> bool:
        """Compare a stringified payload value to the precondition, ignoring case."""
        return self.precondition_value.casefold() == value.casefold()


@dataclass(frozen=True)
class RuleDocument:
    """Ordered, immutable collection of rule sets."""
    rule_sets: Tuple[ValidationRuleSet, ...] = ()

    def __len__(self) -> int:
        return len(self.rule_sets)

    def __iter__(self):
        return iter(self.rule_sets)


class ValidationFailure(str, Enum):
    """Reasons a device write is rejected."""
    UNKNOWN_DEVICE_TYPE = "unknown_device_type"
    MISSING_FIELD = "missing_field"
    PATTERN_MISMATCH = "pattern_mismatch"
    NOT_IN_ALLOWED_SET = "not_in_allowed_set"
    MALFORMED_PAYLOAD = "malformed_payload"


class MalformedPayloadPolicy(str, Enum):
    """What to do with a body that is present but not a device payload."""
    PASS = "pass"
    REJECT = "reject"


@dataclass
class ValidationOutcome:
    """Result of validating one request."""
    allowed: bool
    status_code: Optional[int] = None
    message: Optional[str] = None
    failure: Optional[ValidationFailure] = None
    device_type: Optional[str] = None
    matched_rule_sets: int = 0
    evaluation_time_ms: float = 0.0

    @classmethod
    def passed(cls, **kwargs) -> "ValidationOutcome":
        return cls(allowed=True, **kwargs)

    @classmethod
    def rejected(cls, failure: ValidationFailure, message: str, status_code: int = 400,
                 **kwargs) -> "ValidationOutcome":
        return cls(allowed=False, status_code=status_code, message=message, failure=failure, **kwargs)

    @property
    def label(self) -> str:
        """Short outcome name for metrics."""
        return "pass" if self.allowed else self.failure.value


def compile_pattern(regex: str) -> Optional[Pattern]:
    """Strip slash delimiters and compile; ``None`` when nothing is left."""
    pattern = regex.strip("/")
    if not pattern:
        return None
    return re.compile(pattern)


def describe_rule_set(rule_set: ValidationRuleSet) -> Dict[str, Any]:
    """Plain-dict view of a rule set for stats and logs."""
    return {
        "type": rule_set.device_type,
        "pre_request_name": rule_set.precondition_field,
        "pre_request_value": rule_set.precondition_value,
        "params": [rule.param_name for rule in rule_set.field_rules],
    }
