"""
OAP Decision Verification

Lets any third party confirm a Decision after the fact, without access
to the registry that issued it.

Steps:
1. Validate decision schema
2. Resolve the signing key by kid
3. Verify the signature over the canonical decision-without-signature
4. Reject decisions for suspended/revoked passports
5. Verify passport_digest (when the passport is supplied)
6. Enforce freshness (created_at + expires_in)
7. Replay the evaluation (when the context is supplied)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import KeyUnresolvable
from .evaluator import PolicyEvaluator
from .hashing import verify_digest
from .keys import KeyResolver
from .logging_config import audit_log
from .models import PassportStatus
from .signing import KeyInput, verify_object
from .util import parse_rfc3339, utc_now
from .validator import validate_decision

logger = logging.getLogger(__name__)


class VerificationOutcome(str, Enum):
    """
    VALID_ALLOW: decision is authentic, fresh and allows the action
    VALID_DENY: decision is authentic, fresh and denies the action
    INVALID: decision must not be relied on; reason provided
    """
    VALID_ALLOW = "VALID_ALLOW"
    VALID_DENY = "VALID_DENY"
    INVALID = "INVALID"


@dataclass
class VerificationResult:
    """Result of verifying a Decision."""
    outcome: VerificationOutcome
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def is_valid(self) -> bool:
        return self.outcome in (VerificationOutcome.VALID_ALLOW, VerificationOutcome.VALID_DENY)

    def to_dict(self) -> Dict[str, Any]:
        d = {"outcome": self.outcome.value}
        if self.reason:
            d["reason"] = self.reason
        if self.details:
            d["details"] = self.details
        return d

    @classmethod
    def valid_allow(cls) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.VALID_ALLOW)

    @classmethod
    def valid_deny(cls) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.VALID_DENY)

    @classmethod
    def invalid(cls, reason: str, details: Dict[str, Any] = None) -> 'VerificationResult':
        return cls(outcome=VerificationOutcome.INVALID, reason=reason, details=details)


class DecisionVerifier:
    """
    Verifies signed Decisions.

    Never raises for bad signatures or unresolvable keys: those come back
    as INVALID results.
    """

    def __init__(
        self,
        resolver: Optional[KeyResolver] = None,
        evaluator: Optional[PolicyEvaluator] = None
    ):
        self.resolver = resolver or KeyResolver()
        self.evaluator = evaluator or PolicyEvaluator()

    def verify(
        self,
        decision: Dict[str, Any],
        passport: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        public_key: Optional[KeyInput] = None
    ) -> VerificationResult:
        schema = validate_decision(decision)
        if not schema.valid:
            return VerificationResult.invalid(
                "Decision schema invalid",
                {"violations": schema.messages()}
            )

        kid = decision["kid"]
        try:
            key = self.resolver.resolve(kid, public_key)
        except KeyUnresolvable as e:
            return VerificationResult.invalid(
                f"Signing key unresolvable: {e.reason}",
                {"kid": kid, "error": str(e)}
            )

        if not verify_object(decision, key):
            audit_log.signature_invalid("decision", kid)
            return VerificationResult.invalid("Signature invalid", {"kid": kid})

        if passport is not None:
            result = self._verify_passport(decision, passport)
            if result is not None:
                return result

        created_at = parse_rfc3339(decision["created_at"])
        try:
            expires_at = created_at + timedelta(seconds=decision["expires_in"])
        except OverflowError:
            return VerificationResult.invalid(
                "Decision expiry out of range",
                {"created_at": decision["created_at"], "expires_in": decision["expires_in"]}
            )
        now = now or utc_now()
        if now >= expires_at:
            return VerificationResult.invalid(
                "Decision expired",
                {"expires_at": expires_at.isoformat(), "now": now.isoformat()}
            )

        if passport is not None and context is not None:
            result = self._replay(decision, passport, context)
            if result is not None:
                return result

        if decision["allow"]:
            return VerificationResult.valid_allow()
        return VerificationResult.valid_deny()

    def _verify_passport(self, decision: Dict[str, Any], passport: Dict[str, Any]) -> Optional[VerificationResult]:
        if not isinstance(passport, dict):
            return VerificationResult.invalid("Passport must be an object")

        # A suspended or revoked passport invalidates every decision derived from it
        status = passport.get("status")
        if status in (PassportStatus.SUSPENDED.value, PassportStatus.REVOKED.value):
            return VerificationResult.invalid(
                f"Passport is {status}",
                {"passport_id": passport.get("passport_id")}
            )

        if not verify_digest(decision["passport_digest"], passport):
            return VerificationResult.invalid("Passport digest mismatch")
        return None

    def _replay(
        self,
        decision: Dict[str, Any],
        passport: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Optional[VerificationResult]:
        replay = self.evaluator.evaluate(decision["policy_id"], passport, context)
        recorded: List[str] = [r["code"] for r in decision["reasons"]]

        if replay.allow != decision["allow"] or replay.primary_reason != recorded[0]:
            logger.warning("Replay mismatch for decision %s", decision["decision_id"])
            return VerificationResult.invalid(
                "Replay mismatch",
                {
                    "recorded": {"allow": decision["allow"], "reason": recorded[0]},
                    "replayed": {"allow": replay.allow, "reason": replay.primary_reason},
                }
            )
        return None
