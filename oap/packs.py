"""
OAP Policy Packs

A policy pack is a versioned, named, table-driven rule set: the capability
it governs, the minimum assurance level, the context fields it accepts and
the ordered list of checks that enforce the passport's limits.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .checks import Check, CHECK_TYPES, create_check
from .hashing import content_digest
from .models import AssuranceLevel, ReasonCode

PACK_ID_PATTERN = re.compile(r'^[a-z][a-z0-9_.]*\.v[0-9]+$')
VERSION_PATTERN = re.compile(r'^[0-9]+\.[0-9]+\.[0-9]+$')

FIELD_TYPES = ("string", "number", "integer", "boolean")


@dataclass
class ContextField:
    """One field a pack accepts in its evaluation context."""
    name: str
    type: str
    required: bool = False
    pattern: Optional[str] = None
    minimum: Optional[float] = None
    exclusive_minimum: Optional[float] = None

    def __post_init__(self):
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unknown field type '{self.type}' for {self.name}")

    def to_dict(self) -> Dict[str, Any]:
        d = {"name": self.name, "type": self.type, "required": self.required}
        for name in ("pattern", "minimum", "exclusive_minimum"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContextField':
        return cls(
            name=data["name"],
            type=data["type"],
            required=data.get("required", False),
            pattern=data.get("pattern"),
            minimum=data.get("minimum"),
            exclusive_minimum=data.get("exclusive_minimum"),
        )


@dataclass
class CheckDefinition:
    """Definition of a check within a pack."""
    id: str
    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "parameters": self.parameters
        }


@dataclass
class PolicyPack:
    """
    A versioned policy pack.

    - id: pack identifier, also the Decision's policy_id (e.g. payments.refund.v1)
    - capability: passport capability the pack governs
    - min_assurance: minimum assurance level
    - context_fields: accepted context fields
    - checks: ordered limit checks; the first failure is the deny reason
    - allowed_regions: pack-level region allowlist (None means any region)
    """
    id: str
    version: str
    capability: str
    min_assurance: AssuranceLevel
    context_fields: List[ContextField]
    checks: List[CheckDefinition]
    allowed_regions: Optional[List[str]] = None
    description: str = ""

    _hash: Optional[str] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.min_assurance, str):
            self.min_assurance = AssuranceLevel(self.min_assurance)
        self._validate()
        self._hash = None

    def _validate(self):
        if not PACK_ID_PATTERN.match(self.id):
            raise ValueError(f"Invalid pack id '{self.id}': must look like name.v1")

        if not VERSION_PATTERN.match(self.version):
            raise ValueError(f"Invalid version '{self.version}': must be semantic version")

        field_names = set()
        for context_field in self.context_fields:
            if context_field.name in field_names:
                raise ValueError(f"Duplicate context field: {context_field.name}")
            field_names.add(context_field.name)

        check_ids = set()
        for check in self.checks:
            if check.id in check_ids:
                raise ValueError(f"Duplicate check id: {check.id}")
            check_ids.add(check.id)

            if check.type not in CHECK_TYPES:
                raise ValueError(f"Unknown check type: {check.type}")

            code = check.parameters.get("code")
            if code is not None:
                ReasonCode(code)
            create_check(check.id, check.type, check.parameters)

    def get_field(self, name: str) -> Optional[ContextField]:
        for context_field in self.context_fields:
            if context_field.name == name:
                return context_field
        return None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "version": self.version,
            "capability": self.capability,
            "min_assurance": self.min_assurance.value,
            "context_fields": [f.to_dict() for f in self.context_fields],
            "checks": [c.to_dict() for c in self.checks],
        }
        if self.allowed_regions is not None:
            d["allowed_regions"] = list(self.allowed_regions)
        if self.description:
            d["description"] = self.description
        return d

    def get_hash(self) -> str:
        """Compute and cache the pack hash."""
        if self._hash is None:
            self._hash = content_digest(self.to_dict())
        return self._hash

    def create_checks(self) -> List[Check]:
        """Instantiate check objects from definitions."""
        return [
            create_check(c.id, c.type, c.parameters)
            for c in self.checks
        ]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyPack':
        """Create PolicyPack from dictionary."""
        return cls(
            id=data["id"],
            version=data["version"],
            capability=data["capability"],
            min_assurance=AssuranceLevel(data["min_assurance"]),
            context_fields=[ContextField.from_dict(f) for f in data.get("context_fields", [])],
            checks=[
                CheckDefinition(id=c["id"], type=c["type"], parameters=c.get("parameters", {}))
                for c in data.get("checks", [])
            ],
            allowed_regions=data.get("allowed_regions"),
            description=data.get("description", ""),
        )


class PackRegistry:
    """
    Registry of policy packs keyed by pack id.

    Supports capability lookup.
    """

    def __init__(self, packs: Optional[List[PolicyPack]] = None):
        self._packs: Dict[str, PolicyPack] = {}
        self._capability_map: Dict[str, str] = {}
        for pack in packs or []:
            self.register(pack)

    def register(self, pack: PolicyPack):
        """Register (or replace) a pack."""
        self._packs[pack.id] = pack
        self._capability_map[pack.capability] = pack.id

    def get(self, pack_id: str) -> Optional[PolicyPack]:
        return self._packs.get(pack_id)

    def get_for_capability(self, capability: str) -> Optional[PolicyPack]:
        pack_id = self._capability_map.get(capability)
        if pack_id:
            return self.get(pack_id)
        return None

    def list_packs(self) -> List[str]:
        """List all registered pack ids."""
        return list(self._packs.keys())

    def __contains__(self, pack_id: str) -> bool:
        return pack_id in self._packs


# Built-in packs

def create_refund_pack() -> PolicyPack:
    """
    payments.refund.v1

    Requires L2. Per-currency max_per_tx and daily_cap; the running daily
    total comes from the caller as context.daily_total.
    """
    return PolicyPack(
        id="payments.refund.v1",
        version="1.0.0",
        capability="payments.refund",
        min_assurance=AssuranceLevel.L2,
        description="Refunds within per-currency transaction and daily limits",
        context_fields=[
            ContextField("amount", "number", required=True, exclusive_minimum=0),
            ContextField("currency", "string", required=True, pattern=r'^[A-Z]{3}$'),
            ContextField("order_id", "string", required=True),
            ContextField("customer_id", "string"),
            ContextField("reason_code", "string"),
            ContextField("region", "string"),
            ContextField("idempotency_key", "string"),
            ContextField("daily_total", "number", minimum=0),
        ],
        checks=[
            CheckDefinition(
                id="currency_limits",
                type="currency_limits",
                parameters={
                    "amount_field": "amount",
                    "currency_field": "currency",
                    "running_total_field": "daily_total",
                }
            ),
        ],
    )


def create_export_pack() -> PolicyPack:
    """
    data.export.v1

    Requires L1. PII flag, collection allowlist and row cap.
    """
    return PolicyPack(
        id="data.export.v1",
        version="1.0.0",
        capability="data.export",
        min_assurance=AssuranceLevel.L1,
        description="Data exports limited by collection, row count and PII",
        context_fields=[
            ContextField("collection", "string", required=True),
            ContextField("estimated_rows", "integer", minimum=0),
            ContextField("include_pii", "boolean"),
            ContextField("region", "string"),
        ],
        checks=[
            CheckDefinition(
                id="pii",
                type="flag_guard",
                parameters={
                    "context_flag": "include_pii",
                    "limit_flag": "allow_pii",
                    "code": ReasonCode.PII_BLOCKED.value,
                }
            ),
            CheckDefinition(
                id="collection",
                type="membership",
                parameters={
                    "context_field": "collection",
                    "limit_field": "allowed_collections",
                    "code": ReasonCode.COLLECTION_FORBIDDEN.value,
                }
            ),
            CheckDefinition(
                id="rows",
                type="max_value",
                parameters={
                    "context_field": "estimated_rows",
                    "limit_field": "max_rows",
                    "code": ReasonCode.LIMIT_EXCEEDED.value,
                }
            ),
        ],
    )


def create_release_pack() -> PolicyPack:
    """
    repo.release.publish.v1

    Requires L2. Branch and repository allowlists, optional signed
    artifact requirement.
    """
    return PolicyPack(
        id="repo.release.publish.v1",
        version="1.0.0",
        capability="repo.release.publish",
        min_assurance=AssuranceLevel.L2,
        description="Release publishing from allowed repositories and branches",
        context_fields=[
            ContextField("repo", "string", required=True),
            ContextField("branch", "string", required=True),
            ContextField("tag", "string", required=True),
            ContextField("artifact_sha", "string"),
            ContextField("signer", "string"),
            ContextField("region", "string"),
        ],
        checks=[
            CheckDefinition(
                id="branch",
                type="membership",
                parameters={
                    "context_field": "branch",
                    "limit_field": "allowed_branches",
                    "code": ReasonCode.BRANCH_FORBIDDEN.value,
                }
            ),
            CheckDefinition(
                id="repo",
                type="membership",
                parameters={
                    "context_field": "repo",
                    "limit_field": "allowed_repos",
                    "code": ReasonCode.REPO_FORBIDDEN.value,
                }
            ),
            CheckDefinition(
                id="signed_artifact",
                type="required_when",
                parameters={
                    "limit_flag": "require_signed_artifacts",
                    "context_field": "artifact_sha",
                    "code": ReasonCode.UNSIGNED_ARTIFACT.value,
                }
            ),
        ],
    )


def default_registry() -> PackRegistry:
    """A fresh registry holding the built-in packs."""
    return PackRegistry([
        create_refund_pack(),
        create_export_pack(),
        create_release_pack(),
    ])
