"""
Validation engine for device write requests.
"""

import time
from typing import Union

from shared.logging import bind_device_context, get_logger
from .models import (
    Matcher, MalformedPayloadPolicy, PatternMatcher, ValidationFailure, ValidationOutcome
)
from .payload import (
    DevicePayload, MalformedPayloadError, parse_device_payload, read_payload_field, stringify_value
)
from .store import RuleStore

# Read-only methods are never validated
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

DEFAULT_MAX_MATCH_LENGTH = 4096


class ValidationEngine:
    """Gate device create/update requests against the loaded rule document.

    Evaluation stops at the first failing field; rule sets and their field
    rules are visited in document order so the reported failure is stable
    for a given document.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        path_prefix: str = "/api/devices",
        malformed_payload_policy: Union[MalformedPayloadPolicy, str] = MalformedPayloadPolicy.PASS,
        max_match_length: int = DEFAULT_MAX_MATCH_LENGTH,
    ):
        self.rule_store = rule_store
        self.path_prefix = path_prefix
        self.malformed_payload_policy = MalformedPayloadPolicy(malformed_payload_policy)
        self.max_match_length = max_match_length
        self.logger = get_logger("devices.validation.engine")
        self._prefix_segments = [segment.casefold() for segment in path_prefix.split("/") if segment]

    def is_in_scope(self, method: str, path: str) -> bool:
        """Whether a request is a device write that must be validated."""
        if method.upper() in SAFE_METHODS:
            return False

        segments = [segment for segment in path.split("/") if segment]
        if len(segments) < len(self._prefix_segments):
            return False

        return all(
            segment.casefold() == expected
            for segment, expected in zip(segments, self._prefix_segments)
        )

    def validate(self, method: str, path: str, body: bytes) -> ValidationOutcome:
        """Validate a request; out-of-scope requests pass without touching the body."""
        if not self.is_in_scope(method, path):
            self.logger.debug("Skipping device validation", method=method, path=path)
            return ValidationOutcome.passed()

        return self.validate_body(body)

    def validate_body(self, body: bytes) -> ValidationOutcome:
        """Validate the raw body of an in-scope request."""
        start_time = time.perf_counter()

        try:
            outcome = self._evaluate_body(body)
        except Exception as e:
            self.logger.error("Error in device validation", error=str(e), exc_info=True)
            raise

        outcome.evaluation_time_ms = (time.perf_counter() - start_time) * 1000
        return outcome

    def _evaluate_body(self, body: bytes) -> ValidationOutcome:
        # Required-field checks for empty bodies belong to the route handler
        if not body or not body.strip():
            return ValidationOutcome.passed()

        try:
            payload = parse_device_payload(body)
        except MalformedPayloadError as e:
            self.logger.warning(
                "Malformed device payload",
                policy=self.malformed_payload_policy.value,
                details=e.details
            )
            if self.malformed_payload_policy == MalformedPayloadPolicy.REJECT:
                return ValidationOutcome.rejected(ValidationFailure.MALFORMED_PAYLOAD, e.message)
            return ValidationOutcome.passed()

        return self.validate_payload(payload)

    def validate_payload(self, payload: DevicePayload) -> ValidationOutcome:
        """Apply the matching rule sets to a parsed payload."""
        device_type = payload.device_type
        if device_type is None:
            self.logger.warning("Unknown device type", type_id=payload.type_id, type_name=payload.type_name)
            return ValidationOutcome.rejected(ValidationFailure.UNKNOWN_DEVICE_TYPE, "Unknown device type")

        bind_device_context(device_type=device_type)

        rule_sets = self.rule_store.applicable_rule_sets(
            device_type,
            lambda field_name: read_payload_field(payload, field_name)
        )
        properties = payload.additional_properties

        for rule_set in rule_sets:
            for rule in rule_set.field_rules:
                if rule.param_name not in properties:
                    self.logger.warning(
                        "Missing required property",
                        property=rule.param_name,
                        device_type=device_type
                    )
                    return ValidationOutcome.rejected(
                        ValidationFailure.MISSING_FIELD,
                        f"Missing required property '{rule.param_name}'",
                        device_type=device_type,
                        matched_rule_sets=len(rule_sets)
                    )

                value = stringify_value(properties[rule.param_name])
                if not self._matches(rule.matcher, value):
                    self.logger.warning(
                        "Property validation failed",
                        property=rule.param_name,
                        value=value,
                        device_type=device_type
                    )
                    failure = (
                        ValidationFailure.PATTERN_MISMATCH
                        if isinstance(rule.matcher, PatternMatcher)
                        else ValidationFailure.NOT_IN_ALLOWED_SET
                    )
                    return ValidationOutcome.rejected(
                        failure,
                        f"Validation failed for '{rule.param_name}' with value '{value}'",
                        device_type=device_type,
                        matched_rule_sets=len(rule_sets)
                    )

        return ValidationOutcome.passed(device_type=device_type, matched_rule_sets=len(rule_sets))

    def _matches(self, matcher: Matcher, value: str) -> bool:
        # Oversized values are not handed to the regex engine
        if isinstance(matcher, PatternMatcher) and len(value) > self.max_match_length:
            return False
        return matcher.matches(value)
