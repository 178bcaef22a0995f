"""
OAP Data Model

Passports and contexts travel as plain JSON objects so that every field,
including ones this engine does not know about, survives hashing and VC
round trips. This module provides the enums, the typed views over
capability limits and the immutable Decision record.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Union

SPEC_VERSION = "oap/1.0"


class AssuranceLevel(str, Enum):
    """
    Ordinal trust tier of the passport owner.

    L0 < L1 < L2 < L3 < L4KYC, L4FIN. The two L4 tiers are both above L3
    but are distinct financial tiers: a requirement naming one of them is
    only met by that exact tier.
    """
    L0 = "L0"
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"
    L4KYC = "L4KYC"
    L4FIN = "L4FIN"

    @property
    def rank(self) -> int:
        return _ASSURANCE_RANK[self]

    @property
    def is_financial_tier(self) -> bool:
        return self in (AssuranceLevel.L4KYC, AssuranceLevel.L4FIN)

    def satisfies(self, required: 'AssuranceLevel') -> bool:
        if required.is_financial_tier:
            return self == required
        return self.rank >= required.rank


_ASSURANCE_RANK = {
    AssuranceLevel.L0: 0,
    AssuranceLevel.L1: 1,
    AssuranceLevel.L2: 2,
    AssuranceLevel.L3: 3,
    AssuranceLevel.L4KYC: 4,
    AssuranceLevel.L4FIN: 4,
}


class PassportStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class PassportKind(str, Enum):
    TEMPLATE = "template"
    INSTANCE = "instance"


class OwnerType(str, Enum):
    ORG = "org"
    USER = "user"


class ReasonCode(str, Enum):
    """Normative reason codes carried by every Decision."""
    ALLOWED = "oap.allowed"
    INVALID_CONTEXT = "oap.invalid_context"
    UNKNOWN_CAPABILITY = "oap.unknown_capability"
    LIMIT_EXCEEDED = "oap.limit_exceeded"
    CURRENCY_UNSUPPORTED = "oap.currency_unsupported"
    REGION_BLOCKED = "oap.region_blocked"
    ASSURANCE_INSUFFICIENT = "oap.assurance_insufficient"
    PASSPORT_SUSPENDED = "oap.passport_suspended"
    IDEMPOTENCY_CONFLICT = "oap.idempotency_conflict"
    POLICY_ERROR = "oap.policy_error"
    PII_BLOCKED = "oap.pii_blocked"
    COLLECTION_FORBIDDEN = "oap.collection_forbidden"
    BRANCH_FORBIDDEN = "oap.branch_forbidden"
    REPO_FORBIDDEN = "oap.repo_forbidden"
    UNSIGNED_ARTIFACT = "oap.unsigned_artifact"


# Default human-readable messages
REASON_MESSAGES = {
    ReasonCode.ALLOWED: "Request is within passport limits",
    ReasonCode.INVALID_CONTEXT: "Context is invalid for this policy",
    ReasonCode.UNKNOWN_CAPABILITY: "Passport does not grant the required capability",
    ReasonCode.LIMIT_EXCEEDED: "Request exceeds a passport limit",
    ReasonCode.CURRENCY_UNSUPPORTED: "Currency is not supported by this passport",
    ReasonCode.REGION_BLOCKED: "Region is not allowed",
    ReasonCode.ASSURANCE_INSUFFICIENT: "Assurance level is below the policy minimum",
    ReasonCode.PASSPORT_SUSPENDED: "Passport is not active",
    ReasonCode.IDEMPOTENCY_CONFLICT: "Idempotency key was already used",
    ReasonCode.POLICY_ERROR: "Policy could not be evaluated",
    ReasonCode.PII_BLOCKED: "PII export is not allowed",
    ReasonCode.COLLECTION_FORBIDDEN: "Collection is not allowed",
    ReasonCode.BRANCH_FORBIDDEN: "Branch is not allowed",
    ReasonCode.REPO_FORBIDDEN: "Repository is not allowed",
    ReasonCode.UNSIGNED_ARTIFACT: "Release artifact must be signed",
}


def is_number(value: Any) -> bool:
    """JSON number check (bool is not a number)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ============================================================
# Policy limits: one typed record per known capability
# ============================================================

class _Limits:
    """Common accessor so checks can read any limit by name."""

    def value(self, name: str) -> Any:
        return getattr(self, name, None)


@dataclass
class CurrencyLimit:
    max_per_tx: Optional[Union[int, float]] = None
    daily_cap: Optional[Union[int, float]] = None

    @classmethod
    def from_dict(cls, data: Any, path: str) -> 'CurrencyLimit':
        if not isinstance(data, dict):
            raise ValueError(f"{path}: must be an object")
        for name in ("max_per_tx", "daily_cap"):
            if name in data and not (is_number(data[name]) and data[name] >= 0):
                raise ValueError(f"{path}.{name}: must be a non-negative number")
        return cls(max_per_tx=data.get("max_per_tx"), daily_cap=data.get("daily_cap"))


@dataclass
class RefundLimits(_Limits):
    """Limits for payments.refund."""
    currency_limits: Dict[str, CurrencyLimit] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> 'RefundLimits':
        raw = data.get("currency_limits", {})
        if not isinstance(raw, dict):
            raise ValueError(f"{path}.currency_limits: must be an object")
        return cls(currency_limits={
            currency: CurrencyLimit.from_dict(entry, f"{path}.currency_limits.{currency}")
            for currency, entry in raw.items()
        })


@dataclass
class ExportLimits(_Limits):
    """Limits for data.export."""
    max_rows: Optional[Union[int, float]] = None
    allow_pii: bool = False
    allowed_collections: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> 'ExportLimits':
        max_rows = data.get("max_rows")
        if max_rows is not None and not is_number(max_rows):
            raise ValueError(f"{path}.max_rows: must be a number")
        allow_pii = data.get("allow_pii", False)
        if not isinstance(allow_pii, bool):
            raise ValueError(f"{path}.allow_pii: must be a boolean")
        return cls(
            max_rows=max_rows,
            allow_pii=allow_pii,
            allowed_collections=_string_list(data, "allowed_collections", path),
        )


@dataclass
class ReleaseLimits(_Limits):
    """Limits for repo.release.publish."""
    allowed_branches: Optional[List[str]] = None
    allowed_repos: Optional[List[str]] = None
    require_signed_artifacts: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> 'ReleaseLimits':
        require_signed = data.get("require_signed_artifacts", False)
        if not isinstance(require_signed, bool):
            raise ValueError(f"{path}.require_signed_artifacts: must be a boolean")
        return cls(
            allowed_branches=_string_list(data, "allowed_branches", path),
            allowed_repos=_string_list(data, "allowed_repos", path),
            require_signed_artifacts=require_signed,
        )


@dataclass
class UnknownLimits(_Limits):
    """Limits for a capability no built-in pack owns. Kept uninterpreted."""
    raw: Dict[str, Any] = field(default_factory=dict)

    def value(self, name: str) -> Any:
        return self.raw.get(name)


PolicyLimits = Union[RefundLimits, ExportLimits, ReleaseLimits, UnknownLimits]

LIMIT_TYPES = {
    "payments.refund": RefundLimits,
    "data.export": ExportLimits,
    "repo.release.publish": ReleaseLimits,
}


def _string_list(data: Dict[str, Any], name: str, path: str) -> Optional[List[str]]:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{path}.{name}: must be a list of strings")
    return list(value)


def parse_limits(capability_id: str, raw: Any) -> PolicyLimits:
    """
    Build the typed limits record for ``capability_id``.

    Absent limits parse to the record's defaults.

    Raises:
        ValueError: when the limits do not have the shape the capability expects
    """
    path = f"limits.{capability_id}"
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: must be an object")
    limit_type = LIMIT_TYPES.get(capability_id)
    if limit_type is None:
        return UnknownLimits(raw=dict(raw))
    return limit_type.from_dict(raw, path)


# ============================================================
# Decision
# ============================================================

@dataclass(frozen=True)
class Reason:
    code: str
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"code": self.code}
        if self.message is not None:
            d["message"] = self.message
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Reason':
        return cls(code=data["code"], message=data.get("message"))

    @classmethod
    def of(cls, code: ReasonCode, message: Optional[str] = None) -> 'Reason':
        return cls(code=code.value, message=message or REASON_MESSAGES[code])


@dataclass(frozen=True)
class Decision:
    """
    Result of one evaluation.

    Immutable once created. ``signature`` covers the canonical form of
    every other field, ``kid`` included.
    """
    decision_id: str
    policy_id: str
    agent_id: str
    owner_id: str
    assurance_level: str
    allow: bool
    reasons: List[Reason]
    created_at: str
    expires_in: int
    passport_digest: str
    signature: Optional[str] = None
    kid: Optional[str] = None
    remaining_daily_cap: Optional[Dict[str, Union[int, float]]] = None
    decision_token: Optional[str] = None

    @property
    def primary_reason(self) -> Optional[str]:
        return self.reasons[0].code if self.reasons else None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "decision_id": self.decision_id,
            "policy_id": self.policy_id,
            "agent_id": self.agent_id,
            "owner_id": self.owner_id,
            "assurance_level": self.assurance_level,
            "allow": self.allow,
            "reasons": [r.to_dict() for r in self.reasons],
            "created_at": self.created_at,
            "expires_in": self.expires_in,
            "passport_digest": self.passport_digest,
        }
        for name in ("signature", "kid", "remaining_daily_cap", "decision_token"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Decision':
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["reasons"] = [Reason.from_dict(r) for r in data.get("reasons", [])]
        return cls(**kwargs)
