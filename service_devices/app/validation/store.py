"""
Rule store for device request validation.

The rule document is read once at startup and compiled into an immutable
``RuleDocument``. Everything malformed in it is reported as a ``ConfigError``
at that point so the service never runs with a partially understood policy.
"""

import json
import re
from re import _parser
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConfigError
from shared.logging import get_logger
from .models import (
    AllowedValuesMatcher, FieldRule, FieldRuleSpec, PatternMatcher, RuleDocument,
    RuleSetSpec, ValidationRuleSet, compile_pattern, describe_rule_set
)

DEFAULT_MAX_PATTERN_LENGTH = 512

_REPEATS = (_parser.MAX_REPEAT, _parser.MIN_REPEAT, _parser.POSSESSIVE_REPEAT)


def _subpatterns(op, av) -> List[Any]:
    """Child subpatterns of one parsed regex node."""
    if op is _parser.SUBPATTERN:
        return [av[-1]]
    if op is _parser.BRANCH:
        return list(av[1])
    if op in (_parser.ASSERT, _parser.ASSERT_NOT):
        return [av[1]]
    if op is _parser.ATOMIC_GROUP:
        return [av]
    if op is _parser.GROUPREF_EXISTS:
        return [branch for branch in av[1:] if branch is not None]
    return []


def _has_nested_unbounded_repeat(items, enclosed: bool = False) -> bool:
    """Whether an unbounded repeat sits anywhere inside another unbounded repeat.

    ``(a+)+``, ``((a+))+`` and ``(\\w+\\s?)*`` all qualify; ``([0-9]{1,3}\\.){3}``
    does not, since its outer repeat is bounded.
    """
    for op, av in items:
        if op in _REPEATS:
            _, max_count, body = av
            unbounded = max_count == _parser.MAXREPEAT
            if unbounded and enclosed:
                return True
            if _has_nested_unbounded_repeat(body, enclosed or unbounded):
                return True
            continue
        for child in _subpatterns(op, av):
            if _has_nested_unbounded_repeat(child, enclosed):
                return True
    return False

RawDocument = Union[str, bytes, bytearray, List[Any], Dict[str, Any]]


def _decode(raw: Union[str, bytes, bytearray]) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8-sig")
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ConfigError("Rule document is not valid JSON", {"error": str(e)})


def _extract_rule_sets(data: Any) -> List[Any]:
    """Accept a bare list or the ``{"validations": [...]}`` wrapper."""
    if isinstance(data, list):
        return data

    if isinstance(data, dict):
        for key, value in data.items():
            if str(key).lower() == "validations":
                if isinstance(value, list):
                    return value
                raise ConfigError("'validations' must be a list of rule sets")

    raise ConfigError(
        "Rule document must be a list of rule sets or an object with a 'validations' list"
    )


def _compile_field_rule(spec: FieldRuleSpec, max_pattern_length: int, location: str) -> FieldRule:
    if isinstance(spec.regex, list):
        return FieldRule(param_name=spec.param_name, matcher=AllowedValuesMatcher(values=tuple(spec.regex)))

    details = {"location": location, "param_name": spec.param_name, "regex": spec.regex}

    if len(spec.regex) > max_pattern_length:
        raise ConfigError(f"Pattern for '{spec.param_name}' exceeds {max_pattern_length} characters", details)

    try:
        compiled = compile_pattern(spec.regex)
    except re.error as e:
        raise ConfigError(f"Pattern for '{spec.param_name}' does not compile: {e}", details)

    if compiled is not None and _has_nested_unbounded_repeat(_parser.parse(compiled.pattern)):
        raise ConfigError(f"Pattern for '{spec.param_name}' contains a nested unbounded quantifier", details)

    return FieldRule(
        param_name=spec.param_name,
        matcher=PatternMatcher(regex=spec.regex.strip("/"), compiled=compiled)
    )


def load_rule_document(raw: RawDocument, max_pattern_length: int = DEFAULT_MAX_PATTERN_LENGTH) -> RuleDocument:
    """Parse and compile a rule document.

    Args:
        raw: JSON text (``str`` or ``bytes``) or already decoded JSON data.
        max_pattern_length: Longest pattern accepted before it is refused.

    Returns:
        The immutable rule document, rule sets in document order.

    Raises:
        ConfigError: The document is malformed, a required key is missing or
            of the wrong type, or a pattern is invalid or too costly.
    """
    data = _decode(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
    entries = _extract_rule_sets(data)

    rule_sets: List[ValidationRuleSet] = []
    for index, entry in enumerate(entries):
        location = f"validations[{index}]"
        try:
            spec = RuleSetSpec.model_validate(entry)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid rule set at {location}", {"location": location, "error": str(e)})

        field_rules = tuple(
            _compile_field_rule(rule, max_pattern_length, f"{location}.rules[{rule_index}]")
            for rule_index, rule in enumerate(spec.rules)
        )
        rule_sets.append(ValidationRuleSet(
            device_type=spec.type,
            precondition_field=spec.pre_request_name,
            precondition_value=spec.pre_request_value,
            field_rules=field_rules
        ))

    return RuleDocument(rule_sets=tuple(rule_sets))


def load_rule_file(path: Union[str, Path], max_pattern_length: int = DEFAULT_MAX_PATTERN_LENGTH) -> RuleDocument:
    """Read a rule document from disk."""
    try:
        text = Path(path).read_text(encoding="utf-8-sig")
    except OSError as e:
        raise ConfigError(f"Cannot read rule document '{path}'", {"path": str(path), "error": str(e)})
    return load_rule_document(text, max_pattern_length)


def matching_rules(document: RuleDocument, device_type: str, precondition_field: str,
                   precondition_value: str) -> List[ValidationRuleSet]:
    """Rule sets for ``device_type`` gated on ``precondition_field == precondition_value``.

    Device types compare exactly; the field name and value compare without
    regard to case. Document order is preserved.
    """
    field_name = precondition_field.casefold()
    return [
        rule_set for rule_set in document.rule_sets
        if rule_set.device_type == device_type
        and rule_set.precondition_field.casefold() == field_name
        and rule_set.precondition_holds(precondition_value)
    ]


class RuleStore:
    """Read-only view over a loaded rule document."""

    def __init__(self, document: RuleDocument):
        self.document = document
        self.logger = get_logger("devices.validation.rule_store")

        by_type: Dict[str, List[ValidationRuleSet]] = {}
        for rule_set in document.rule_sets:
            by_type.setdefault(rule_set.device_type, []).append(rule_set)
        self._by_type: Dict[str, Tuple[ValidationRuleSet, ...]] = {
            device_type: tuple(rule_sets) for device_type, rule_sets in by_type.items()
        }

        self.logger.info(
            "Validation rules loaded",
            rule_sets=len(document),
            device_types=sorted(self._by_type)
        )

    @classmethod
    def from_file(cls, path: Union[str, Path], max_pattern_length: int = DEFAULT_MAX_PATTERN_LENGTH) -> "RuleStore":
        return cls(load_rule_file(path, max_pattern_length))

    @classmethod
    def from_raw(cls, raw: RawDocument, max_pattern_length: int = DEFAULT_MAX_PATTERN_LENGTH) -> "RuleStore":
        return cls(load_rule_document(raw, max_pattern_length))

    def rule_sets_for_type(self, device_type: str) -> Tuple[ValidationRuleSet, ...]:
        """All rule sets declared for a device type, in document order."""
        return self._by_type.get(device_type, ())

    def matching_rules(self, device_type: str, precondition_field: str,
                       precondition_value: str) -> List[ValidationRuleSet]:
        return matching_rules(self.document, device_type, precondition_field, precondition_value)

    def applicable_rule_sets(self, device_type: str,
                             read_field: Callable[[str], Optional[str]]) -> List[ValidationRuleSet]:
        """Rule sets whose own precondition holds for a request.

        ``read_field`` maps a precondition field name to the request's
        stringified value, or ``None`` when the request has no such field.
        """
        applicable = []
        for rule_set in self.rule_sets_for_type(device_type):
            value = read_field(rule_set.precondition_field)
            if value is not None and rule_set.precondition_holds(value):
                applicable.append(rule_set)
        return applicable

    def precondition_fields(self) -> List[str]:
        """Distinct precondition field names declared in the document."""
        seen: Dict[str, str] = {}
        for rule_set in self.document.rule_sets:
            seen.setdefault(rule_set.precondition_field.casefold(), rule_set.precondition_field)
        return list(seen.values())

    def device_types(self) -> List[str]:
        return list(self._by_type)

    def get_stats(self) -> Dict[str, Any]:
        """Get rule store statistics."""
        return {
            "total_rule_sets": len(self.document),
            "total_field_rules": sum(len(rs.field_rules) for rs in self.document.rule_sets),
            "device_types": self.device_types(),
            "precondition_fields": self.precondition_fields(),
            "rule_sets": [describe_rule_set(rs) for rs in self.document.rule_sets],
        }
