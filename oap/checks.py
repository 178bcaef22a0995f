"""
OAP Policy Checks

Small, deterministic check types that policy packs compose. A pack lists
check definitions by type; the evaluator instantiates them here and runs
them in order. Adding a pack never requires touching the evaluator.

Design principles:
- Deterministic (identical inputs produce identical outputs)
- Fail-closed (a missing allowlist denies)
- Never raise: every check returns PASS or FAIL with a reason code
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union

from .models import PolicyLimits, ReasonCode, is_number


class CheckResult(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


@dataclass
class CheckEvaluation:
    """Result of evaluating a single check."""
    check_id: str
    result: CheckResult
    reason_code: Optional[ReasonCode] = None
    message: Optional[str] = None
    annotations: Dict[str, Any] = field(default_factory=dict)

    def passed(self) -> bool:
        return self.result == CheckResult.PASS

    def to_dict(self) -> Dict[str, Any]:
        d = {"check_id": self.check_id, "result": self.result.value}
        if self.reason_code:
            d["reason_code"] = self.reason_code.value
        if self.message:
            d["message"] = self.message
        if self.annotations:
            d["annotations"] = self.annotations
        return d


def to_decimal(value: Any) -> Optional[Decimal]:
    if not is_number(value):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def from_decimal(value: Decimal) -> Union[int, float]:
    """Render a Decimal back as the JSON number a caller expects."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


class Check(ABC):
    """Abstract base class for all check types."""

    required_parameters = ()

    def __init__(self, check_id: str, parameters: Dict[str, Any]):
        missing = [p for p in self.required_parameters if not parameters.get(p)]
        if missing:
            raise ValueError(f"Check {check_id} missing parameters: {', '.join(missing)}")
        self.check_id = check_id
        self.parameters = parameters

    @property
    def reason_code(self) -> ReasonCode:
        return ReasonCode(self.parameters.get("code", ReasonCode.LIMIT_EXCEEDED.value))

    @abstractmethod
    def evaluate(self, limits: PolicyLimits, context: Dict[str, Any]) -> CheckEvaluation:
        """Evaluate the check. Must return PASS or FAIL, never raise."""

    def _pass(self, **annotations) -> CheckEvaluation:
        return CheckEvaluation(
            check_id=self.check_id,
            result=CheckResult.PASS,
            annotations=annotations,
        )

    def _fail(self, message: str, code: Optional[ReasonCode] = None) -> CheckEvaluation:
        return CheckEvaluation(
            check_id=self.check_id,
            result=CheckResult.FAIL,
            reason_code=code or self.reason_code,
            message=message,
        )


class CurrencyLimitsCheck(Check):
    """
    currency_limits

    Looks up the per-currency limit for the request currency:
    - no entry for the currency: currency_unsupported
    - amount above max_per_tx: limit_exceeded
    - running daily total plus amount above daily_cap: limit_exceeded

    On pass, reports the remaining daily cap for the currency.
    """

    def evaluate(self, limits, context) -> CheckEvaluation:
        amount_field = self.parameters.get("amount_field", "amount")
        currency_field = self.parameters.get("currency_field", "currency")
        total_field = self.parameters.get("running_total_field", "daily_total")

        currency = context.get(currency_field)
        currency_limits = limits.value("currency_limits") or {}
        entry = currency_limits.get(currency) if isinstance(currency, str) else None
        if entry is None:
            return self._fail(
                f"Currency {currency} not supported for this passport",
                ReasonCode.CURRENCY_UNSUPPORTED,
            )

        amount = to_decimal(context.get(amount_field))
        if amount is None:
            return self._fail(f"{amount_field} is not a number", ReasonCode.INVALID_CONTEXT)

        daily_total = to_decimal(context.get(total_field, 0))
        if daily_total is None:
            return self._fail(f"{total_field} is not a number", ReasonCode.INVALID_CONTEXT)

        max_per_tx = to_decimal(entry.max_per_tx)
        if max_per_tx is not None and amount > max_per_tx:
            return self._fail(
                f"Amount {from_decimal(amount)} exceeds max per transaction {entry.max_per_tx}",
                ReasonCode.LIMIT_EXCEEDED,
            )

        daily_cap = to_decimal(entry.daily_cap)
        if daily_cap is None:
            return self._pass()

        if daily_total + amount > daily_cap:
            return self._fail(
                f"Daily total {from_decimal(daily_total + amount)} exceeds daily cap {entry.daily_cap}",
                ReasonCode.LIMIT_EXCEEDED,
            )

        remaining = daily_cap - daily_total - amount
        return self._pass(remaining_daily_cap={currency: from_decimal(remaining)})


class FlagGuardCheck(Check):
    """
    flag_guard

    A truthy context flag requires the matching limit flag to be true.
    """

    required_parameters = ("context_flag", "limit_flag")

    def evaluate(self, limits, context) -> CheckEvaluation:
        context_flag = self.parameters["context_flag"]
        limit_flag = self.parameters["limit_flag"]

        if context.get(context_flag) is True and limits.value(limit_flag) is not True:
            return self._fail(f"{context_flag} requested but {limit_flag} is not granted")
        return self._pass()


class MembershipCheck(Check):
    """
    membership

    The context value must appear in the limit's allowlist. A passport
    without the allowlist grants nothing.
    """

    required_parameters = ("context_field", "limit_field")

    def evaluate(self, limits, context) -> CheckEvaluation:
        context_field = self.parameters["context_field"]
        limit_field = self.parameters["limit_field"]

        if context_field not in context:
            return self._pass()

        value = context[context_field]
        allowed = limits.value(limit_field)
        if not isinstance(allowed, list):
            return self._fail(f"{limit_field} is not granted on this passport")
        if value not in allowed:
            return self._fail(f"{context_field} {value} is not in {limit_field}")
        return self._pass()


class MaxValueCheck(Check):
    """
    max_value

    The context value must not exceed the limit. An absent limit is not
    enforced.
    """

    required_parameters = ("context_field", "limit_field")

    def evaluate(self, limits, context) -> CheckEvaluation:
        context_field = self.parameters["context_field"]
        limit_field = self.parameters["limit_field"]

        if context_field not in context:
            return self._pass()

        value = to_decimal(context[context_field])
        if value is None:
            return self._fail(f"{context_field} is not a number", ReasonCode.INVALID_CONTEXT)

        maximum = to_decimal(limits.value(limit_field))
        if maximum is not None and value > maximum:
            return self._fail(
                f"{context_field} {from_decimal(value)} exceeds {limit_field} {limits.value(limit_field)}"
            )
        return self._pass()


class RequiredWhenCheck(Check):
    """
    required_when

    When the limit flag is true, the context field must be present and
    non-empty.
    """

    required_parameters = ("limit_flag", "context_field")

    def evaluate(self, limits, context) -> CheckEvaluation:
        limit_flag = self.parameters["limit_flag"]
        context_field = self.parameters["context_field"]

        if limits.value(limit_flag) is True and not context.get(context_field):
            return self._fail(f"{context_field} is required when {limit_flag} is set")
        return self._pass()


CHECK_TYPES = {
    "currency_limits": CurrencyLimitsCheck,
    "flag_guard": FlagGuardCheck,
    "membership": MembershipCheck,
    "max_value": MaxValueCheck,
    "required_when": RequiredWhenCheck,
}


def create_check(check_id: str, check_type: str, parameters: Dict[str, Any]) -> Check:
    """
    Factory function to create a check instance.

    Raises:
        ValueError: If check type is unknown or parameters are incomplete
    """
    if check_type not in CHECK_TYPES:
        raise ValueError(f"Unknown check type: {check_type}")

    return CHECK_TYPES[check_type](check_id, parameters)
