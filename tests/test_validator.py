"""
Passport, decision and context validation tests.

Validators enumerate every violation with its field path; none of them
stop at the first problem.
"""

import unittest

from oap import (
    PolicyEvaluator,
    SchemaViolation,
    validate_context,
    validate_decision,
    validate_instance_parent,
    validate_passport,
    validate_status_transition,
)
from oap.validator import PASSPORT_REQUIRED

from tests.factories import (
    NOW,
    PASSPORT_ID,
    make_passport,
    make_registry_key,
    refund_context,
)


def _paths(result):
    return [v.path for v in result.violations]


class TestPassportValidation(unittest.TestCase):

    def test_valid_passport(self):
        result = validate_passport(make_passport())
        self.assertTrue(result.valid, result.messages())

    def test_every_missing_field_reported(self):
        result = validate_passport({})
        self.assertEqual(sorted(_paths(result)), sorted(PASSPORT_REQUIRED))

    def test_not_an_object(self):
        self.assertEqual(_paths(validate_passport([])), ["$"])

    def test_passport_id_must_be_uuid_v4(self):
        # version nibble 1, not 4
        result = validate_passport(make_passport(passport_id="550e8400-e29b-11d4-a716-446655440000"))
        self.assertEqual(_paths(result), ["passport_id"])

    def test_enum_fields(self):
        result = validate_passport(make_passport(
            kind="clone", owner_type="team", assurance_level="L5", status="paused"
        ))
        self.assertEqual(
            sorted(_paths(result)),
            ["assurance_level", "kind", "owner_type", "status"],
        )

    def test_spec_version(self):
        self.assertEqual(_paths(validate_passport(make_passport(spec_version="oap/0.9"))), ["spec_version"])

    def test_updated_before_created(self):
        result = validate_passport(make_passport(
            created_at="2025-02-01T00:00:00Z", updated_at="2025-01-01T00:00:00Z"
        ))
        self.assertEqual(_paths(result), ["updated_at"])

    def test_bad_timestamps(self):
        result = validate_passport(make_passport(created_at="yesterday", updated_at="2025-01-01 00:00"))
        self.assertEqual(sorted(_paths(result)), ["created_at", "updated_at"])

    def test_version_must_be_semver(self):
        self.assertEqual(_paths(validate_passport(make_passport(version="v1"))), ["version"])
        self.assertTrue(validate_passport(make_passport(version="2.1.0-beta.1")).valid)

    def test_empty_capabilities(self):
        self.assertEqual(_paths(validate_passport(make_passport(capabilities=[]))), ["capabilities"])

    def test_duplicate_capability(self):
        result = validate_passport(make_passport(
            capabilities=[{"id": "data.export"}, {"id": "data.export"}]
        ))
        self.assertEqual(_paths(result), ["capabilities[1].id"])

    def test_capability_params_must_be_object(self):
        result = validate_passport(make_passport(capabilities=[{"id": "data.export", "params": []}]))
        self.assertEqual(_paths(result), ["capabilities[0].params"])

    def test_limit_shape_reported_with_path(self):
        passport = make_passport()
        passport["limits"]["payments.refund"]["currency_limits"]["USD"]["max_per_tx"] = -1
        result = validate_passport(passport)
        self.assertEqual(_paths(result), ["limits.payments.refund.currency_limits.USD.max_per_tx"])

    def test_export_limit_types(self):
        passport = make_passport()
        passport["limits"]["data.export"]["allow_pii"] = "yes"
        self.assertEqual(_paths(validate_passport(passport)), ["limits.data.export.allow_pii"])

    def test_unknown_capability_limits_preserved(self):
        passport = make_passport()
        passport["limits"]["messaging.send"] = {"anything": [1, 2, 3]}
        self.assertTrue(validate_passport(passport).valid)

    def test_regions(self):
        self.assertEqual(_paths(validate_passport(make_passport(regions="US"))), ["regions"])
        self.assertEqual(_paths(validate_passport(make_passport(regions=["US", ""]))), ["regions[1]"])

    def test_instance_requires_parent(self):
        result = validate_passport(make_passport(kind="instance"))
        self.assertEqual(_paths(result), ["parent_agent_id"])
        self.assertTrue(validate_passport(make_passport(kind="instance", parent_agent_id="ap_template")).valid)

    def test_optional_fields(self):
        result = validate_passport(make_passport(did="web:example", never_expires="no", metadata=[]))
        self.assertEqual(sorted(_paths(result)), ["did", "metadata", "never_expires"])

    def test_all_violations_enumerated(self):
        result = validate_passport(make_passport(kind="clone", version="x", regions=[1]))
        self.assertEqual(len(result.violations), 3)

    def test_raise_for_violations(self):
        with self.assertRaises(SchemaViolation) as ctx:
            validate_passport({"passport_id": PASSPORT_ID}).raise_for_violations("passport")
        self.assertIn("kind: is required", str(ctx.exception))
        self.assertEqual(ctx.exception.subject, "passport")


class TestStatusTransitions(unittest.TestCase):

    def test_allowed_transitions(self):
        for old, new in [
            ("draft", "active"),
            ("active", "suspended"),
            ("suspended", "active"),
            ("active", "revoked"),
            ("suspended", "revoked"),
        ]:
            self.assertTrue(validate_status_transition(old, new).valid, f"{old} -> {new}")

    def test_revoked_is_terminal(self):
        for new in ("draft", "active", "suspended"):
            result = validate_status_transition("revoked", new)
            self.assertFalse(result.valid)
            self.assertIn("terminal", result.messages()[0])

    def test_disallowed_transitions(self):
        self.assertFalse(validate_status_transition("draft", "suspended").valid)
        self.assertFalse(validate_status_transition("draft", "revoked").valid)
        self.assertFalse(validate_status_transition("active", "draft").valid)
        self.assertFalse(validate_status_transition("active", "unknown").valid)


class TestInstanceParent(unittest.TestCase):

    def test_instance_references_template(self):
        template = make_passport()
        instance = make_passport(
            kind="instance",
            passport_id="6fa459ea-ee8a-4ca4-894e-db77e160355e",
            parent_agent_id=template["agent_id"],
        )
        self.assertTrue(validate_instance_parent(instance, template).valid)

    def test_parent_must_be_template(self):
        parent = make_passport(kind="instance", parent_agent_id="ap_root")
        instance = make_passport(kind="instance", parent_agent_id=parent["agent_id"])
        self.assertFalse(validate_instance_parent(instance, parent).valid)

    def test_parent_must_match(self):
        instance = make_passport(kind="instance", parent_agent_id="ap_someone_else")
        self.assertFalse(validate_instance_parent(instance, make_passport()).valid)


class TestDecisionValidation(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.key = make_registry_key()
        evaluator = PolicyEvaluator()
        cls.allow = evaluator.decide(
            "payments.refund.v1", make_passport(), refund_context(), cls.key, now=NOW
        ).to_dict()
        cls.deny = evaluator.decide(
            "payments.refund.v1", make_passport(), refund_context(amount=9000), cls.key, now=NOW
        ).to_dict()

    def test_produced_decisions_valid(self):
        self.assertTrue(validate_decision(self.allow).valid, validate_decision(self.allow).messages())
        self.assertTrue(validate_decision(self.deny).valid, validate_decision(self.deny).messages())

    def test_unsigned_decision(self):
        unsigned = {k: v for k, v in self.allow.items() if k not in ("signature", "kid")}
        self.assertEqual(sorted(_paths(validate_decision(unsigned))), ["kid", "signature"])
        self.assertTrue(validate_decision(unsigned, require_signature=False).valid)

    def test_expires_in_positive(self):
        for bad in (0, -5, 1.5, True):
            decision = dict(self.allow, expires_in=bad)
            self.assertEqual(_paths(validate_decision(decision)), ["expires_in"], bad)

    def test_expires_in_at_most_one_year(self):
        self.assertNotIn("expires_in", _paths(validate_decision(dict(self.allow, expires_in=31536000))))
        result = validate_decision(dict(self.allow, expires_in=31536001))
        self.assertIn("expires_in", _paths(result))
        self.assertIn("must be at most 31536000", result.messages()[0])

    def test_reasons_non_empty(self):
        self.assertEqual(_paths(validate_decision(dict(self.deny, reasons=[]))), ["reasons"])

    def test_reason_code_format(self):
        decision = dict(self.deny, reasons=[{"code": "LIMIT_EXCEEDED"}])
        self.assertEqual(_paths(validate_decision(decision)), ["reasons[0].code"])

    def test_allow_must_carry_allowed(self):
        decision = dict(self.allow, reasons=[{"code": "oap.limit_exceeded"}])
        self.assertEqual(_paths(validate_decision(decision)), ["reasons"])

    def test_deny_must_not_lead_with_allowed(self):
        decision = dict(self.deny, reasons=[{"code": "oap.allowed"}])
        self.assertEqual(_paths(validate_decision(decision)), ["reasons[0].code"])

    def test_digest_and_signature_formats(self):
        decision = dict(self.allow, passport_digest="md5:abc", signature="rsa:xyz")
        self.assertEqual(sorted(_paths(validate_decision(decision))), ["passport_digest", "signature"])

    def test_remaining_daily_cap_shape(self):
        decision = dict(self.allow, remaining_daily_cap={"USD": "lots"})
        self.assertEqual(_paths(validate_decision(decision)), ["remaining_daily_cap"])


class TestContextValidation(unittest.TestCase):

    def test_valid_context(self):
        self.assertTrue(validate_context("payments.refund.v1", refund_context()).valid)

    def test_missing_required_field(self):
        context = refund_context()
        del context["order_id"]
        self.assertEqual(_paths(validate_context("payments.refund.v1", context)), ["context.order_id"])

    def test_field_types_and_patterns(self):
        result = validate_context(
            "payments.refund.v1",
            refund_context(amount="100", currency="usd", customer_id=""),
        )
        self.assertEqual(
            sorted(_paths(result)),
            ["context.amount", "context.currency", "context.customer_id"],
        )

    def test_amount_must_be_positive(self):
        self.assertFalse(validate_context("payments.refund.v1", refund_context(amount=0)).valid)
        self.assertFalse(validate_context("payments.refund.v1", refund_context(amount=float("nan"))).valid)

    def test_number_too_large_for_float(self):
        result = validate_context("payments.refund.v1", refund_context(amount=10 ** 400))
        self.assertEqual(_paths(result), ["context.amount"])
        self.assertIn("out of range", result.messages()[0])

        result = validate_context("data.export.v1", {"collection": "orders", "estimated_rows": 10 ** 400})
        self.assertEqual(_paths(result), ["context.estimated_rows"])

    def test_integer_fields(self):
        result = validate_context("data.export.v1", {"collection": "orders", "estimated_rows": 10.5})
        self.assertEqual(_paths(result), ["context.estimated_rows"])

    def test_boolean_fields(self):
        result = validate_context("data.export.v1", {"collection": "orders", "include_pii": "true"})
        self.assertEqual(_paths(result), ["context.include_pii"])

    def test_unknown_policy(self):
        self.assertEqual(_paths(validate_context("payments.charge.v9", {})), ["policy_id"])

    def test_context_not_object(self):
        self.assertEqual(_paths(validate_context("data.export.v1", ["orders"])), ["$"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
