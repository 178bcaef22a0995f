"""
OAP Policy Evaluator

Maps (policy_id, passport, context) to an allow/deny outcome with
machine-checkable reason codes, then signs it into a Decision.

Checks run in a fixed order and the first failure is the primary reason:

0. policy pack known and passport structurally valid -> oap.policy_error
1. capability present                 -> oap.unknown_capability
2. assurance level meets pack minimum -> oap.assurance_insufficient
3. passport status is active          -> oap.passport_suspended
4. context valid for the pack         -> oap.invalid_context
5. pack limit checks                  -> pack-specific code
6. region allowed (when given)        -> oap.region_blocked

evaluate() is pure. Decisions are never cached here.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from . import config
from .checks import CheckEvaluation
from .hashing import passport_digest
from .logging_config import audit_log
from .models import (
    AssuranceLevel,
    Decision,
    PassportStatus,
    Reason,
    ReasonCode,
    parse_limits,
)
from .packs import PackRegistry, PolicyPack, default_registry
from .signing import RegistryKey, sign_object
from .util import new_uuid, to_rfc3339, utc_now
from .validator import MAX_EXPIRES_IN, validate_context_for_pack, validate_passport

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Outcome of one evaluation, before signing."""
    policy_id: str
    allow: bool
    reasons: List[Reason]
    check_evaluations: List[CheckEvaluation] = field(default_factory=list)
    remaining_daily_cap: Optional[Dict[str, Union[int, float]]] = None

    def authorized(self) -> bool:
        return self.allow

    @property
    def primary_reason(self) -> str:
        return self.reasons[0].code

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "policy_id": self.policy_id,
            "allow": self.allow,
            "reasons": [r.to_dict() for r in self.reasons],
            "checks": [c.to_dict() for c in self.check_evaluations],
        }
        if self.remaining_daily_cap is not None:
            d["remaining_daily_cap"] = self.remaining_daily_cap
        return d


class PolicyEvaluator:
    """
    The OAP policy engine.

    Args:
        pack_registry: packs to evaluate against (built-in packs by default)
        decision_ttl: expires_in for signed decisions, in seconds
        clock: returns the current aware datetime
    """

    def __init__(
        self,
        pack_registry: Optional[PackRegistry] = None,
        decision_ttl: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.pack_registry = pack_registry or default_registry()
        self.decision_ttl = config.DECISION_TTL if decision_ttl is None else decision_ttl
        if not 0 < self.decision_ttl <= MAX_EXPIRES_IN:
            raise ValueError(f"decision_ttl must be between 1 and {MAX_EXPIRES_IN}")
        self.clock = clock

    def evaluate(
        self,
        policy_id: str,
        passport: Dict[str, Any],
        context: Dict[str, Any]
    ) -> EvaluationResult:
        """
        Evaluate a passport and context against a policy pack.

        Never raises for bad input: unknown packs and malformed passports
        deny with oap.policy_error.
        """
        pack = self.pack_registry.get(policy_id)
        if pack is None:
            return self._deny(policy_id, ReasonCode.POLICY_ERROR, f"Unknown policy pack {policy_id}")

        passport_check = validate_passport(passport)
        if not passport_check.valid:
            return self._deny(
                policy_id,
                ReasonCode.POLICY_ERROR,
                "Passport is invalid: " + "; ".join(passport_check.messages()[:3])
            )

        capability_ids = {c["id"] for c in passport["capabilities"]}
        if pack.capability not in capability_ids:
            return self._deny(
                policy_id,
                ReasonCode.UNKNOWN_CAPABILITY,
                f"Passport does not grant {pack.capability}"
            )

        level = AssuranceLevel(passport["assurance_level"])
        if not level.satisfies(pack.min_assurance):
            return self._deny(
                policy_id,
                ReasonCode.ASSURANCE_INSUFFICIENT,
                f"Assurance {level.value} does not meet {pack.min_assurance.value}"
            )

        if passport["status"] != PassportStatus.ACTIVE.value:
            return self._deny(
                policy_id,
                ReasonCode.PASSPORT_SUSPENDED,
                f"Passport status is {passport['status']}"
            )

        context_check = validate_context_for_pack(pack, context)
        if not context_check.valid:
            return self._deny(
                policy_id,
                ReasonCode.INVALID_CONTEXT,
                "; ".join(context_check.messages())
            )

        limits = parse_limits(pack.capability, passport["limits"].get(pack.capability))
        evaluations: List[CheckEvaluation] = []
        annotations: Dict[str, Any] = {}
        for check in pack.create_checks():
            evaluation = check.evaluate(limits, context)
            evaluations.append(evaluation)
            if not evaluation.passed():
                return self._deny(policy_id, evaluation.reason_code, evaluation.message, evaluations)
            annotations.update(evaluation.annotations)

        region_denial = self._check_region(pack, passport, context)
        if region_denial:
            return self._deny(policy_id, ReasonCode.REGION_BLOCKED, region_denial, evaluations)

        return EvaluationResult(
            policy_id=policy_id,
            allow=True,
            reasons=[Reason.of(ReasonCode.ALLOWED)],
            check_evaluations=evaluations,
            remaining_daily_cap=annotations.get("remaining_daily_cap"),
        )

    def _check_region(self, pack: PolicyPack, passport: Dict[str, Any], context: Dict[str, Any]) -> Optional[str]:
        if "region" not in context:
            return None
        region = context["region"]
        allowed = set(passport["regions"])
        if pack.allowed_regions is not None:
            allowed &= set(pack.allowed_regions)
        if region not in allowed:
            return f"Region {region} is not allowed"
        return None

    def _deny(
        self,
        policy_id: str,
        code: ReasonCode,
        message: Optional[str] = None,
        evaluations: Optional[List[CheckEvaluation]] = None
    ) -> EvaluationResult:
        return EvaluationResult(
            policy_id=policy_id,
            allow=False,
            reasons=[Reason.of(code, message)],
            check_evaluations=evaluations or [],
        )

    def decide(
        self,
        policy_id: str,
        passport: Dict[str, Any],
        context: Dict[str, Any],
        registry_key: RegistryKey,
        now: Optional[datetime] = None
    ) -> Decision:
        """
        Evaluate and sign a Decision.

        Raises:
            CanonicalizationFailure: if the passport cannot be digested
            ValueError: if the registry key cannot sign
        """
        result = self.evaluate(policy_id, passport, context)
        decision = self.build_decision(result, passport, now)
        signed = Decision.from_dict(sign_object(decision, registry_key))

        audit_log.decision_issued(
            decision_id=signed.decision_id,
            policy_id=signed.policy_id,
            agent_id=signed.agent_id,
            allow=signed.allow,
            reasons=[r.code for r in signed.reasons],
        )
        logger.debug("Issued decision %s (%s)", signed.decision_id, signed.primary_reason)
        return signed

    def build_decision(
        self,
        result: EvaluationResult,
        passport: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Unsigned decision object for an evaluation result."""
        subject = passport if isinstance(passport, dict) else {}
        assurance = subject.get("assurance_level")
        if assurance not in [a.value for a in AssuranceLevel]:
            assurance = AssuranceLevel.L0.value

        decision = {
            "decision_id": new_uuid(),
            "policy_id": result.policy_id,
            "agent_id": _text(subject.get("agent_id")) or _text(subject.get("passport_id")) or "unknown",
            "owner_id": _text(subject.get("owner_id")) or "unknown",
            "assurance_level": assurance,
            "allow": result.allow,
            "reasons": [r.to_dict() for r in result.reasons],
            "created_at": to_rfc3339(now or self.clock()),
            "expires_in": self.decision_ttl,
            "passport_digest": passport_digest(passport),
        }
        if result.allow and result.remaining_daily_cap is not None:
            decision["remaining_daily_cap"] = result.remaining_daily_cap
        return decision


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None
