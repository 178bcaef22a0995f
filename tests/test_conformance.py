"""
Conformance harness tests.

Runs the shipped fixture suite and a set of throwaway suites built in
temporary directories.
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from oap import (
    ConformanceRunner,
    PolicyEvaluator,
    generate_registry_key,
    load_cases,
    run_conformance,
    save_report,
)

from tests.factories import make_passport, make_registry_key, refund_context

SHIPPED_CASES = Path(__file__).resolve().parent.parent / "conformance" / "cases"


def _write(path: Path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)


class TestShippedSuite(unittest.TestCase):

    def test_every_shipped_case_passes(self):
        report = run_conformance(SHIPPED_CASES)
        failures = {r.case.id: r.errors for r in report.results if not r.passed}
        self.assertGreater(report.total, 0)
        self.assertEqual(failures, {})
        self.assertEqual(report.success_rate, 100.0)

    def test_pack_filter(self):
        cases = load_cases(SHIPPED_CASES, pack="data.export")
        self.assertTrue(cases)
        self.assertTrue(all(c.pack_id == "data.export.v1" for c in cases))


class TestHarness(unittest.TestCase):

    def setUp(self):
        self.root = Path(tempfile.mkdtemp())
        self.pack_dir = self.root / "payments.refund.v1"
        _write(self.pack_dir / "passports" / "template.json", make_passport())

    def tearDown(self):
        shutil.rmtree(self.root)

    def add_case(self, name, context, expected, receipt=None):
        _write(self.pack_dir / "contexts" / f"{name}.json", context)
        _write(self.pack_dir / "expected" / f"{name}.json", expected)
        if receipt is not None:
            _write(self.pack_dir / "receipts" / f"{name}.json", receipt)

    def test_pass_and_fail_reported(self):
        self.add_case("ok", refund_context(), {"allow": True, "reasons": [{"code": "oap.allowed"}]})
        self.add_case(
            "wrong",
            refund_context(amount=9000),
            {"allow": True, "reasons": [{"code": "oap.allowed"}]},
        )

        report = run_conformance(self.root)

        self.assertEqual((report.total, report.passed, report.failed), (2, 1, 1))
        self.assertFalse(report.all_passed())
        failed = next(r for r in report.results if not r.passed)
        self.assertEqual(failed.case.id, "payments.refund.v1:wrong")
        self.assertIn("Result mismatch: allow: expected True, got False", failed.errors)
        self.assertIn(
            "Result mismatch: reasons[0].code: expected oap.allowed, got oap.limit_exceeded",
            failed.errors,
        )

    def test_invalid_context_case_tolerates_context_violations(self):
        self.add_case(
            "missing_order",
            {"amount": 10, "currency": "USD"},
            {"allow": False, "reasons": [{"code": "oap.invalid_context"}]},
        )
        self.assertTrue(run_conformance(self.root).all_passed())

    def test_context_violation_fails_other_cases(self):
        self.add_case(
            "missing_order",
            {"amount": 10, "currency": "USD"},
            {"allow": False, "reasons": [{"code": "oap.limit_exceeded"}]},
        )
        result = run_conformance(self.root).results[0]
        self.assertFalse(result.passed)
        self.assertTrue(result.errors[0].startswith("Context validation failed"))

    def test_out_of_range_amount_denied(self):
        self.add_case(
            "huge_amount",
            refund_context(amount=10 ** 400),
            {"allow": False, "reasons": [{"code": "oap.invalid_context"}]},
        )
        self.assertTrue(run_conformance(self.root).all_passed())

    def test_arithmetic_error_fails_only_its_case(self):
        self.add_case("ok", refund_context(), {"allow": True, "reasons": [{"code": "oap.allowed"}]})
        self.add_case("zz_broken", refund_context(), {"allow": True, "reasons": [{"code": "oap.allowed"}]})

        class BrokenRunner(ConformanceRunner):
            def run_case(self, case):
                if case.id.endswith("zz_broken"):
                    raise OverflowError("date value out of range")
                return super().run_case(case)

        report = run_conformance(self.root, runner=BrokenRunner())
        self.assertEqual((report.passed, report.failed), (1, 1))
        broken = next(r for r in report.results if not r.passed)
        self.assertEqual(broken.errors, ["Test execution failed: date value out of range"])

    def test_case_without_expected_is_skipped(self):
        _write(self.pack_dir / "contexts" / "orphan.json", refund_context())
        self.assertEqual(load_cases(self.root), [])

    def test_receipt_verified_with_public_key(self):
        key = make_registry_key()
        receipt = PolicyEvaluator().decide(
            "payments.refund.v1", make_passport(), refund_context(), key
        ).to_dict()
        self.add_case("ok", refund_context(), {"allow": True, "reasons": [{"code": "oap.allowed"}]}, receipt)

        runner = ConformanceRunner(public_key=key.public_key)
        self.assertTrue(run_conformance(self.root, runner=runner).all_passed())

        other = generate_registry_key("https://registry.test", "oap:registry:other")
        runner = ConformanceRunner(public_key=other.public_key)
        result = run_conformance(self.root, runner=runner).results[0]
        self.assertIn("Receipt signature verification failed", result.errors)

    def test_receipt_without_key_is_a_warning(self):
        key = make_registry_key()
        receipt = PolicyEvaluator().decide(
            "payments.refund.v1", make_passport(), refund_context(), key
        ).to_dict()
        self.add_case("ok", refund_context(), {"allow": True, "reasons": [{"code": "oap.allowed"}]}, receipt)

        result = run_conformance(self.root).results[0]
        self.assertTrue(result.passed)
        self.assertEqual(result.warnings, ["Receipt signature not checked: no key available"])

    def test_report_saved(self):
        self.add_case("ok", refund_context(), {"allow": True, "reasons": [{"code": "oap.allowed"}]})
        report = run_conformance(self.root)

        path = save_report(report, self.root / "reports")
        self.assertTrue(path.name.startswith("conformance-"))
        with open(path, encoding="utf-8") as f:
            saved = json.load(f)
        self.assertEqual(saved["summary"], {"total": 1, "passed": 1, "failed": 0, "success_rate": 100.0})
        self.assertEqual(saved["details"][0]["test_case"], "payments.refund.v1:ok")

    def test_missing_root(self):
        report = run_conformance(self.root / "nope")
        self.assertEqual(report.total, 0)
        self.assertEqual(report.success_rate, 0.0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
