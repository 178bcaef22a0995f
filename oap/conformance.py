"""
OAP Conformance Harness

Drives validation, evaluation and signing against fixture suites and
reports PASS/FAIL with diffs.

Fixture layout, one directory per policy pack:

    <root>/<pack_id>/passports/*.json   (the first file is used)
    <root>/<pack_id>/contexts/<name>.json
    <root>/<pack_id>/expected/<name>.json
    <root>/<pack_id>/receipts/<name>.json   (optional signed decisions)

A failing case never stops the run.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import KeyUnresolvable, OAPError
from .evaluator import PolicyEvaluator
from .keys import KeyResolver
from .models import ReasonCode
from .signing import KeyInput, RegistryKey, generate_registry_key, verify_object
from .util import to_rfc3339, utc_now
from .validator import validate_context, validate_decision, validate_passport

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class ConformanceCase:
    id: str
    pack_id: str
    context_name: str
    passport: Dict[str, Any]
    context: Dict[str, Any]
    expected: Dict[str, Any]
    receipt: Optional[Dict[str, Any]] = None


@dataclass
class CaseResult:
    case: ConformanceCase
    passed: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    decision: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_case": self.case.id,
            "passed": self.passed,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class ConformanceReport:
    timestamp: str
    results: List[CaseResult]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def success_rate(self) -> float:
        return (self.passed / self.total) * 100 if self.total else 0.0

    def all_passed(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "summary": {
                "total": self.total,
                "passed": self.passed,
                "failed": self.failed,
                "success_rate": self.success_rate,
            },
            "details": [r.to_dict() for r in self.results],
        }


def _load_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _json_files(directory: Path) -> List[Path]:
    return sorted(p for p in directory.glob("*.json") if p.is_file())


def load_cases(root: PathLike, pack: Optional[str] = None) -> List[ConformanceCase]:
    """Load fixture cases, optionally only for packs whose id contains ``pack``."""
    root = Path(root)
    cases: List[ConformanceCase] = []
    if not root.is_dir():
        logger.warning("Conformance root %s does not exist", root)
        return cases

    for pack_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        pack_id = pack_dir.name
        if pack and pack not in pack_id:
            continue

        passports_dir = pack_dir / "passports"
        contexts_dir = pack_dir / "contexts"
        expected_dir = pack_dir / "expected"
        receipts_dir = pack_dir / "receipts"
        if not (passports_dir.is_dir() and contexts_dir.is_dir() and expected_dir.is_dir()):
            logger.warning("Skipping %s: missing passports/contexts/expected", pack_id)
            continue

        passport_files = _json_files(passports_dir)
        if not passport_files:
            logger.warning("Skipping %s: no passports", pack_id)
            continue
        passport = _load_json(passport_files[0])

        for context_file in _json_files(contexts_dir):
            name = context_file.stem
            expected_file = expected_dir / context_file.name
            if not expected_file.exists():
                logger.warning("No expected result for %s:%s", pack_id, name)
                continue
            receipt_file = receipts_dir / context_file.name
            cases.append(ConformanceCase(
                id=f"{pack_id}:{name}",
                pack_id=pack_id,
                context_name=name,
                passport=passport,
                context=_load_json(context_file),
                expected=_load_json(expected_file),
                receipt=_load_json(receipt_file) if receipt_file.exists() else None,
            ))
    return cases


def compare_decisions(actual: Dict[str, Any], expected: Dict[str, Any]) -> List[str]:
    """Differences in allow, policy_id, assurance_level and reasons."""
    differences = []
    for name in ("allow", "policy_id", "assurance_level"):
        if name in expected and actual.get(name) != expected[name]:
            differences.append(f"{name}: expected {expected[name]!r}, got {actual.get(name)!r}")

    expected_reasons = expected.get("reasons")
    if isinstance(expected_reasons, list):
        actual_reasons = actual.get("reasons") or []
        if len(actual_reasons) != len(expected_reasons):
            differences.append(
                f"reasons: expected {len(expected_reasons)} reasons, got {len(actual_reasons)}"
            )
        if expected_reasons and actual_reasons:
            want = expected_reasons[0].get("code")
            got = actual_reasons[0].get("code")
            if want != got:
                differences.append(f"reasons[0].code: expected {want}, got {got}")
    return differences


class ConformanceRunner:
    """
    Runs fixture cases through validator, evaluator and signer.

    Args:
        evaluator: policy evaluator under test
        registry_key: key used to sign produced decisions (ephemeral by default)
        public_key: key for checking receipt signatures
        resolver: resolver for receipt kids when no public_key is given
    """

    def __init__(
        self,
        evaluator: Optional[PolicyEvaluator] = None,
        registry_key: Optional[RegistryKey] = None,
        public_key: Optional[KeyInput] = None,
        resolver: Optional[KeyResolver] = None
    ):
        self.evaluator = evaluator or PolicyEvaluator()
        self.registry_key = registry_key or generate_registry_key(
            "https://conformance.invalid", "oap:registry:conformance"
        )
        self.public_key = public_key
        self.resolver = resolver

    def run_case(self, case: ConformanceCase) -> CaseResult:
        errors: List[str] = []
        warnings: List[str] = []
        expected_code = _primary_code(case.expected)

        passport_check = validate_passport(case.passport)
        if not passport_check.valid and expected_code != ReasonCode.POLICY_ERROR.value:
            errors.append("Passport validation failed: " + ", ".join(passport_check.messages()))

        context_check = validate_context(case.pack_id, case.context, self.evaluator.pack_registry)
        if not context_check.valid and expected_code not in (
            ReasonCode.INVALID_CONTEXT.value, ReasonCode.POLICY_ERROR.value
        ):
            errors.append("Context validation failed: " + ", ".join(context_check.messages()))

        decision = self.evaluator.decide(
            case.pack_id, case.passport, case.context, self.registry_key
        ).to_dict()

        decision_check = validate_decision(decision)
        if not decision_check.valid:
            errors.append("Produced decision is invalid: " + ", ".join(decision_check.messages()))

        for difference in compare_decisions(decision, case.expected):
            errors.append(f"Result mismatch: {difference}")

        if case.receipt is not None:
            self._check_receipt(case.receipt, errors, warnings)

        return CaseResult(
            case=case,
            passed=not errors,
            errors=errors,
            warnings=warnings,
            decision=decision,
        )

    def _check_receipt(self, receipt: Dict[str, Any], errors: List[str], warnings: List[str]) -> None:
        receipt_check = validate_decision(receipt)
        if not receipt_check.valid:
            errors.append("Receipt validation failed: " + ", ".join(receipt_check.messages()))
            return

        if self.public_key is None and self.resolver is None:
            warnings.append("Receipt signature not checked: no key available")
            return

        try:
            key = (self.resolver or KeyResolver()).resolve(receipt["kid"], self.public_key)
        except KeyUnresolvable as e:
            errors.append(f"Receipt key unresolvable: {e}")
            return

        if not verify_object(receipt, key):
            errors.append("Receipt signature verification failed")

    def run(self, cases: List[ConformanceCase]) -> ConformanceReport:
        results = []
        for case in cases:
            try:
                result = self.run_case(case)
            except (OAPError, ValueError, KeyError, TypeError, ArithmeticError) as e:
                result = CaseResult(case=case, passed=False, errors=[f"Test execution failed: {e}"])
            logger.info("%s: %s", case.id, "PASS" if result.passed else "FAIL")
            results.append(result)
        return ConformanceReport(timestamp=to_rfc3339(utc_now()), results=results)


def _primary_code(expected: Dict[str, Any]) -> Optional[str]:
    reasons = expected.get("reasons") if isinstance(expected, dict) else None
    if isinstance(reasons, list) and reasons and isinstance(reasons[0], dict):
        return reasons[0].get("code")
    return None


def run_conformance(
    root: PathLike,
    pack: Optional[str] = None,
    runner: Optional[ConformanceRunner] = None
) -> ConformanceReport:
    """Load the fixture suite under ``root`` and run every case."""
    runner = runner or ConformanceRunner()
    return runner.run(load_cases(root, pack))


def save_report(report: ConformanceReport, directory: PathLike) -> Path:
    """Write the report as conformance-<timestamp>.json and return its path."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = report.timestamp.replace(":", "-").replace(".", "-")
    path = directory / f"conformance-{stamp}.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
    return path
