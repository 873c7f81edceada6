from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from showsync.errors import IdentityInvalid

IDENTITY_TYPES = ("playlist", "command", "sequence")
REQUIRED_FIELDS = ("type", "target", "timing")
REQUIRED_TIMING_FIELDS = ("days", "start_time", "end_time")
TIME_FIELDS = ("start_time", "end_time")

# Execution state, provider references and dates never define identity.
FORBIDDEN_FIELDS = (
    "stopType",
    "repeat",
    "enabled",
    "status",
    "uid",
    "hash",
    "id",
    "start_date",
    "end_date",
    "date_pattern",
)
FORBIDDEN_TIMING_FIELDS = ("start_date", "end_date", "date_pattern", "startDate", "endDate")


@dataclass(frozen=True)
class Invalid:
    field: str
    reason: str
    code: str = "IDENTITY_INVALID"


ValidationStep = Callable[[Mapping[str, Any]], "Invalid | None"]


def _check_present(identity: Mapping[str, Any]) -> Invalid | None:
    if not isinstance(identity, Mapping) or not identity:
        return Invalid("identity", "Identity is missing or empty", "IDENTITY_MISSING")
    return None


def _check_required(identity: Mapping[str, Any]) -> Invalid | None:
    for key in REQUIRED_FIELDS:
        if key not in identity:
            return Invalid(key, f"Identity missing required field: {key}", "IDENTITY_REQUIRED_FIELD_MISSING")
    return None


def _check_forbidden(identity: Mapping[str, Any]) -> Invalid | None:
    for key in FORBIDDEN_FIELDS:
        if key in identity:
            return Invalid(key, f"Identity includes forbidden field: {key}", "IDENTITY_FORBIDDEN_FIELD_PRESENT")
    return None


def _check_type(identity: Mapping[str, Any]) -> Invalid | None:
    if identity["type"] not in IDENTITY_TYPES:
        return Invalid("type", "Identity.type must be one of: playlist | command | sequence", "IDENTITY_TYPE_INVALID")
    return None


def _check_target(identity: Mapping[str, Any]) -> Invalid | None:
    target = identity["target"]
    if not isinstance(target, str) or not target.strip():
        return Invalid("target", "Identity.target must be a non-empty string", "IDENTITY_TARGET_INVALID")
    return None


def _check_timing(identity: Mapping[str, Any]) -> Invalid | None:
    timing = identity["timing"]
    if not isinstance(timing, Mapping):
        return Invalid("timing", "Identity.timing must be an object", "IDENTITY_TIMING_INVALID")
    for key in REQUIRED_TIMING_FIELDS:
        if key not in timing:
            return Invalid(
                f"timing.{key}",
                f"Identity.timing missing required field: {key}",
                "IDENTITY_REQUIRED_FIELD_MISSING",
            )
    for key in FORBIDDEN_TIMING_FIELDS:
        if key in timing:
            return Invalid(
                f"timing.{key}",
                f"Identity.timing includes forbidden field: {key}",
                "IDENTITY_FORBIDDEN_FIELD_PRESENT",
            )
    return None


def _check_days(identity: Mapping[str, Any]) -> Invalid | None:
    days = identity["timing"]["days"]
    if days is None:
        return None
    if not isinstance(days, Mapping) or days.get("type") != "weekly" or not isinstance(days.get("value"), list):
        return Invalid("timing.days", "Identity.timing.days must be null or a weekly day list", "IDENTITY_TIMING_INVALID")
    return None


def _check_times(identity: Mapping[str, Any]) -> Invalid | None:
    timing = identity["timing"]
    for key in TIME_FIELDS:
        value = timing[key]
        if not isinstance(value, Mapping):
            return Invalid(f"timing.{key}", f"Identity.timing.{key} must be an object", "IDENTITY_TIMING_INVALID")
        hard = value.get("hard")
        symbolic = value.get("symbolic")
        has_hard = isinstance(hard, str) and bool(hard.strip())
        has_symbolic = isinstance(symbolic, str) and bool(symbolic.strip())
        if not has_hard and not has_symbolic:
            return Invalid(
                f"timing.{key}",
                f"Identity.timing.{key} must carry a hard or symbolic value",
                "IDENTITY_TIMING_INVALID",
            )
    return None


VALIDATION_STEPS: tuple[ValidationStep, ...] = (
    _check_present,
    _check_required,
    _check_forbidden,
    _check_type,
    _check_target,
    _check_timing,
    _check_days,
    _check_times,
)


def validate_identity(identity: Mapping[str, Any]) -> Invalid | None:
    for step in VALIDATION_STEPS:
        result = step(identity)
        if result is not None:
            return result
    return None


def _sort_recursive(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _sort_recursive(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_sort_recursive(item) for item in value]
    return value


def canonicalize(identity: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a semantic identity and return it with every mapping key-sorted.

    Lists keep their order. The result is a fresh structure; the input is never
    modified. Raises ``IdentityInvalid`` on the first failing validation step.
    """
    invalid = validate_identity(identity)
    if invalid is not None:
        raise IdentityInvalid(invalid.reason, code=invalid.code, context={"field": invalid.field})
    return _sort_recursive(identity)


def canonical_json(value: Any) -> str:
    return json.dumps(_sort_recursive(value), separators=(",", ":"), ensure_ascii=True, allow_nan=False)


def hash_identity(canonical_identity: Mapping[str, Any]) -> str:
    keys = list(canonical_identity.keys())
    if keys != sorted(keys):
        raise IdentityInvalid(
            "Hasher requires canonical identity input (sorted keys).",
            code="IDENTITY_CANONICALIZATION_FAILED",
            context={"keys": keys},
        )
    try:
        encoded = json.dumps(canonical_identity, separators=(",", ":"), ensure_ascii=True, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise IdentityInvalid(
            "Failed to encode canonical identity to JSON.",
            code="IDENTITY_CANONICALIZATION_FAILED",
        ) from exc
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def identity_hash(identity: Mapping[str, Any]) -> str:
    return hash_identity(canonicalize(identity))
