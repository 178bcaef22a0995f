"""
OAP Passport / Decision Validator

Structural and semantic validation. Every function returns a
ValidationResult enumerating all violations (field path + message), so
callers and the conformance harness can report specifics rather than
stopping at the first problem.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import SchemaViolation
from .hashing import DIGEST_PATTERN
from .models import (
    AssuranceLevel,
    LIMIT_TYPES,
    OwnerType,
    PassportKind,
    PassportStatus,
    ReasonCode,
    SPEC_VERSION,
    is_number,
    parse_limits,
)
from .packs import PackRegistry, PolicyPack, default_registry
from .util import parse_rfc3339

UUID_V4_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$',
    re.IGNORECASE
)
SEMVER_PATTERN = re.compile(
    r'^(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)'
    r'(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$'
)
SIGNATURE_PATTERN = re.compile(r'^ed25519:[A-Za-z0-9+/]+={0,2}$')
REASON_CODE_PATTERN = re.compile(r'^oap\.[a-z_]+$')

PASSPORT_REQUIRED = (
    "passport_id", "kind", "spec_version", "owner_id", "owner_type",
    "assurance_level", "status", "capabilities", "limits", "regions",
    "created_at", "updated_at", "version",
)

DECISION_REQUIRED = (
    "decision_id", "policy_id", "agent_id", "owner_id", "assurance_level",
    "allow", "reasons", "created_at", "expires_in", "passport_digest",
)

# decision lifetime ceiling (one year, seconds)
MAX_EXPIRES_IN = 365 * 24 * 3600

# old status -> allowed new statuses; revoked is terminal
STATUS_TRANSITIONS = {
    PassportStatus.DRAFT: {PassportStatus.ACTIVE},
    PassportStatus.ACTIVE: {PassportStatus.SUSPENDED, PassportStatus.REVOKED},
    PassportStatus.SUSPENDED: {PassportStatus.ACTIVE, PassportStatus.REVOKED},
    PassportStatus.REVOKED: set(),
}


@dataclass(frozen=True)
class Violation:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}


@dataclass
class ValidationResult:
    """Outcome of a validation: valid when no violations were found."""
    violations: List[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    def add(self, path: str, message: str) -> None:
        self.violations.append(Violation(path, message))

    def extend(self, other: 'ValidationResult', prefix: str = "") -> None:
        for v in other.violations:
            self.violations.append(Violation(prefix + v.path if prefix else v.path, v.message))

    def raise_for_violations(self, subject: str = "object") -> None:
        if self.violations:
            raise SchemaViolation(self.violations, subject)

    def messages(self) -> List[str]:
        return [str(v) for v in self.violations]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "violations": [v.to_dict() for v in self.violations]
        }


def _enum_values(enum_cls) -> List[str]:
    return [e.value for e in enum_cls]


def _check_required(obj: Dict[str, Any], required, result: ValidationResult) -> None:
    for name in required:
        if name not in obj:
            result.add(name, "is required")


def _check_string(obj, name, result, required=True) -> Optional[str]:
    if name not in obj:
        return None
    value = obj[name]
    if not isinstance(value, str) or (required and not value):
        result.add(name, "must be a non-empty string")
        return None
    return value


def _check_enum(obj, name, enum_cls, result) -> None:
    if name in obj and obj[name] not in _enum_values(enum_cls):
        result.add(name, f"must be one of {', '.join(_enum_values(enum_cls))}")


def _check_timestamp(obj, name, result):
    if name not in obj:
        return None
    parsed = parse_rfc3339(obj[name])
    if parsed is None:
        result.add(name, "must be an RFC 3339 timestamp with timezone")
    return parsed


# ============================================================
# Passport
# ============================================================

def validate_passport(passport: Any) -> ValidationResult:
    """Validate a passport object, enumerating every violation."""
    result = ValidationResult()
    if not isinstance(passport, dict):
        result.add("$", "passport must be an object")
        return result

    _check_required(passport, PASSPORT_REQUIRED, result)

    passport_id = passport.get("passport_id")
    if "passport_id" in passport and not (
        isinstance(passport_id, str) and UUID_V4_PATTERN.match(passport_id)
    ):
        result.add("passport_id", "must be a UUIDv4")

    _check_enum(passport, "kind", PassportKind, result)
    if "spec_version" in passport and passport["spec_version"] != SPEC_VERSION:
        result.add("spec_version", f"must be {SPEC_VERSION}")
    _check_string(passport, "owner_id", result)
    _check_enum(passport, "owner_type", OwnerType, result)
    _check_enum(passport, "assurance_level", AssuranceLevel, result)
    _check_enum(passport, "status", PassportStatus, result)

    _validate_capabilities(passport, result)
    _validate_limits(passport, result)

    if "regions" in passport:
        regions = passport["regions"]
        if not isinstance(regions, list):
            result.add("regions", "must be a list")
        else:
            for i, region in enumerate(regions):
                if not isinstance(region, str) or not region:
                    result.add(f"regions[{i}]", "must be a non-empty string")

    created = _check_timestamp(passport, "created_at", result)
    updated = _check_timestamp(passport, "updated_at", result)
    if created is not None and updated is not None and created > updated:
        result.add("updated_at", "must not be earlier than created_at")

    if "version" in passport and not (
        isinstance(passport["version"], str) and SEMVER_PATTERN.match(passport["version"])
    ):
        result.add("version", "must be a semantic version")

    if passport.get("kind") == PassportKind.INSTANCE.value:
        parent = passport.get("parent_agent_id")
        if not isinstance(parent, str) or not parent:
            result.add("parent_agent_id", "is required when kind is instance")
    elif "parent_agent_id" in passport:
        _check_string(passport, "parent_agent_id", result)

    # Optional fields
    _check_string(passport, "agent_id", result)
    did = _check_string(passport, "did", result)
    if did is not None and not did.startswith("did:"):
        result.add("did", "must be a DID")
    _check_timestamp(passport, "expires_at", result)
    if "never_expires" in passport and not isinstance(passport["never_expires"], bool):
        result.add("never_expires", "must be a boolean")
    if "metadata" in passport and not isinstance(passport["metadata"], dict):
        result.add("metadata", "must be an object")

    return result


def _validate_capabilities(passport: Dict[str, Any], result: ValidationResult) -> None:
    if "capabilities" not in passport:
        return
    capabilities = passport["capabilities"]
    if not isinstance(capabilities, list) or not capabilities:
        result.add("capabilities", "must be a non-empty list")
        return

    seen = set()
    for i, capability in enumerate(capabilities):
        path = f"capabilities[{i}]"
        if not isinstance(capability, dict):
            result.add(path, "must be an object")
            continue
        cap_id = capability.get("id")
        if not isinstance(cap_id, str) or not cap_id:
            result.add(f"{path}.id", "must be a non-empty string")
            continue
        if cap_id in seen:
            result.add(f"{path}.id", f"duplicate capability {cap_id}")
        seen.add(cap_id)
        if "params" in capability and not isinstance(capability["params"], dict):
            result.add(f"{path}.params", "must be an object")


def _validate_limits(passport: Dict[str, Any], result: ValidationResult) -> None:
    if "limits" not in passport:
        return
    limits = passport["limits"]
    if not isinstance(limits, dict):
        result.add("limits", "must be an object")
        return

    for capability_id, raw in limits.items():
        if not isinstance(raw, dict):
            result.add(f"limits.{capability_id}", "must be an object")
            continue
        if capability_id in LIMIT_TYPES:
            try:
                parse_limits(capability_id, raw)
            except ValueError as e:
                path, _, message = str(e).partition(": ")
                result.add(path, message)


def validate_status_transition(old: str, new: str) -> ValidationResult:
    """
    Check a passport status change.

    draft -> active | revoked; active <-> suspended; active | suspended ->
    revoked. revoked is terminal.
    """
    result = ValidationResult()
    try:
        old_status = PassportStatus(old)
        new_status = PassportStatus(new)
    except ValueError:
        result.add("status", f"unknown status in transition {old} -> {new}")
        return result

    if new_status not in STATUS_TRANSITIONS[old_status]:
        if old_status == PassportStatus.REVOKED:
            result.add("status", "revoked is terminal")
        else:
            result.add("status", f"transition {old} -> {new} is not allowed")
    return result


def validate_instance_parent(instance: Dict[str, Any], template: Dict[str, Any]) -> ValidationResult:
    """Check that an instance passport points at a template passport."""
    result = ValidationResult()
    if instance.get("kind") != PassportKind.INSTANCE.value:
        result.add("kind", "must be instance")
    if template.get("kind") != PassportKind.TEMPLATE.value:
        result.add("parent_agent_id", "must reference a template passport")

    parent = instance.get("parent_agent_id")
    template_ids = {template.get("agent_id"), template.get("passport_id")} - {None}
    if parent not in template_ids:
        result.add("parent_agent_id", f"does not reference template {template.get('passport_id')}")
    return result


# ============================================================
# Decision
# ============================================================

def validate_decision(decision: Any, require_signature: bool = True) -> ValidationResult:
    """Validate a decision object, enumerating every violation."""
    result = ValidationResult()
    if not isinstance(decision, dict):
        result.add("$", "decision must be an object")
        return result

    required = DECISION_REQUIRED + (("signature", "kid") if require_signature else ())
    _check_required(decision, required, result)

    decision_id = decision.get("decision_id")
    if "decision_id" in decision and not (
        isinstance(decision_id, str) and UUID_V4_PATTERN.match(decision_id)
    ):
        result.add("decision_id", "must be a UUIDv4")

    for name in ("policy_id", "agent_id", "owner_id"):
        _check_string(decision, name, result)
    _check_enum(decision, "assurance_level", AssuranceLevel, result)

    if "allow" in decision and not isinstance(decision["allow"], bool):
        result.add("allow", "must be a boolean")

    codes = _validate_reasons(decision, result)
    if decision.get("allow") is True and codes and ReasonCode.ALLOWED.value not in codes:
        result.add("reasons", "allow decision must carry oap.allowed")
    if decision.get("allow") is False and codes and codes[0] == ReasonCode.ALLOWED.value:
        result.add("reasons[0].code", "deny decision must lead with the blocking reason")

    _check_timestamp(decision, "created_at", result)

    if "expires_in" in decision:
        expires_in = decision["expires_in"]
        if not isinstance(expires_in, int) or isinstance(expires_in, bool) or expires_in <= 0:
            result.add("expires_in", "must be an integer greater than 0")
        elif expires_in > MAX_EXPIRES_IN:
            result.add("expires_in", f"must be at most {MAX_EXPIRES_IN}")

    if "passport_digest" in decision and not (
        isinstance(decision["passport_digest"], str)
        and DIGEST_PATTERN.match(decision["passport_digest"])
    ):
        result.add("passport_digest", "must match sha256:<64 hex>")

    if "signature" in decision and not (
        isinstance(decision["signature"], str) and SIGNATURE_PATTERN.match(decision["signature"])
    ):
        result.add("signature", "must match ed25519:<base64>")
    _check_string(decision, "kid", result)

    if "remaining_daily_cap" in decision:
        cap = decision["remaining_daily_cap"]
        if not isinstance(cap, dict) or not all(is_number(v) for v in cap.values()):
            result.add("remaining_daily_cap", "must map currency to number")
    _check_string(decision, "decision_token", result)

    return result


def _validate_reasons(decision: Dict[str, Any], result: ValidationResult) -> List[str]:
    if "reasons" not in decision:
        return []
    reasons = decision["reasons"]
    if not isinstance(reasons, list) or not reasons:
        result.add("reasons", "must be a non-empty list")
        return []

    codes = []
    for i, reason in enumerate(reasons):
        path = f"reasons[{i}]"
        if not isinstance(reason, dict):
            result.add(path, "must be an object")
            continue
        code = reason.get("code")
        if not isinstance(code, str) or not REASON_CODE_PATTERN.match(code):
            result.add(f"{path}.code", "must be an oap.* reason code")
        else:
            codes.append(code)
        if "message" in reason and not isinstance(reason["message"], str):
            result.add(f"{path}.message", "must be a string")
    return codes


# ============================================================
# Context
# ============================================================

def validate_context(
    policy_id: str,
    context: Any,
    pack_registry: Optional[PackRegistry] = None
) -> ValidationResult:
    """Validate a context against the fields its policy pack accepts."""
    registry = pack_registry or default_registry()
    pack = registry.get(policy_id)
    if pack is None:
        result = ValidationResult()
        result.add("policy_id", f"unknown policy pack {policy_id}")
        return result
    return validate_context_for_pack(pack, context)


def validate_context_for_pack(pack: PolicyPack, context: Any) -> ValidationResult:
    result = ValidationResult()
    if not isinstance(context, dict):
        result.add("$", "context must be an object")
        return result

    for context_field in pack.context_fields:
        path = f"context.{context_field.name}"
        if context_field.name not in context:
            if context_field.required:
                result.add(path, "is required")
            continue

        value = context[context_field.name]
        if context_field.type == "string":
            if not isinstance(value, str) or not value:
                result.add(path, "must be a non-empty string")
                continue
            if context_field.pattern and not re.match(context_field.pattern, value):
                result.add(path, f"must match {context_field.pattern}")
        elif context_field.type == "boolean":
            if not isinstance(value, bool):
                result.add(path, "must be a boolean")
        else:
            try:
                finite = is_number(value) and math.isfinite(value)
            except OverflowError:
                result.add(path, "is out of range")
                continue
            if not finite:
                result.add(path, "must be a finite number")
                continue
            if context_field.type == "integer" and not float(value).is_integer():
                result.add(path, "must be an integer")
            elif context_field.minimum is not None and value < context_field.minimum:
                result.add(path, f"must be >= {context_field.minimum}")
            elif context_field.exclusive_minimum is not None and value <= context_field.exclusive_minimum:
                result.add(path, f"must be > {context_field.exclusive_minimum}")

    return result
