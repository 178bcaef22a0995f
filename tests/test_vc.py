"""
Verifiable Credential and Presentation tests.
"""

import unittest

import requests

from oap import (
    KeyNotFound,
    KeyResolver,
    PolicyEvaluator,
    RegistryKey,
    SchemaViolation,
    SignatureInvalid,
    VCStructureInvalid,
    build_key_set,
    check_vc_structure,
    create_presentation,
    decision_to_vc,
    did_key_from_public_key,
    from_vc,
    generate_registry_key,
    passport_to_vc,
    sign_object,
    to_vc,
    vc_to_decision,
    vc_to_passport,
    verify_object,
    verify_presentation,
)
from oap.signing import jws_sign, signing_payload
from oap.vc import (
    DECISION_RECEIPT,
    NEVER_EXPIRES_DATE,
    OAP_CONTEXT,
    PASSPORT_CREDENTIAL,
    issuer_key_prefix,
)

from tests.factories import (
    AGENT_ID,
    NOW,
    REGISTRY_ISSUER,
    make_passport,
    make_registry_key,
    refund_context,
)


def _offline(url, timeout):
    raise requests.ConnectionError(f"offline: {url}")


class TestPassportCredential(unittest.TestCase):

    def setUp(self):
        self.key = make_registry_key()
        self.passport = make_passport()
        self.vc = passport_to_vc(self.passport, self.key)

    def test_envelope(self):
        self.assertEqual(self.vc["type"], ["VerifiableCredential", PASSPORT_CREDENTIAL])
        self.assertEqual(self.vc["issuer"], REGISTRY_ISSUER)
        self.assertEqual(self.vc["issuanceDate"], self.passport["created_at"])
        self.assertEqual(self.vc["credentialSubject"], self.passport)
        self.assertEqual(check_vc_structure(self.vc), [])

    def test_proof(self):
        proof = self.vc["proof"]
        self.assertEqual(proof["type"], "Ed25519Signature2020")
        self.assertEqual(proof["proofPurpose"], "assertionMethod")
        self.assertEqual(
            proof["verificationMethod"],
            REGISTRY_ISSUER + "/.well-known/oap/keys.json#" + self.key.kid,
        )
        self.assertEqual(proof["jws"].split(".")[1], "")

    def test_round_trip(self):
        self.assertEqual(from_vc(self.vc, public_key=self.key.public_key), self.passport)
        self.assertEqual(vc_to_passport(self.vc, public_key=self.key.public_key), self.passport)

    def test_round_trip_through_resolver(self):
        resolver = KeyResolver(
            registry_base_url=REGISTRY_ISSUER,
            fetch_json=_offline,
            retries=0,
            static_keys={self.key.kid: self.key.public_key},
        )
        self.assertEqual(from_vc(self.vc, resolver=resolver), self.passport)

    def test_export_does_not_alias_input(self):
        self.vc["credentialSubject"]["regions"].append("APAC")
        self.assertEqual(self.passport["regions"], ["US", "EU"])

    def test_tampered_subject(self):
        self.vc["credentialSubject"]["assurance_level"] = "L4FIN"
        with self.assertRaises(SignatureInvalid):
            from_vc(self.vc, public_key=self.key.public_key)

    def test_tampered_envelope(self):
        self.vc["expirationDate"] = "2999-01-01T00:00:00Z"
        with self.assertRaises(SignatureInvalid):
            from_vc(self.vc, public_key=self.key.public_key)

    def test_wrong_key(self):
        other = generate_registry_key(REGISTRY_ISSUER, "oap:registry:other")
        with self.assertRaises(SignatureInvalid):
            from_vc(self.vc, public_key=other.public_key)

    def test_no_key_source(self):
        with self.assertRaises(KeyNotFound):
            from_vc(self.vc)

    def test_missing_proof(self):
        del self.vc["proof"]
        with self.assertRaises(VCStructureInvalid) as ctx:
            from_vc(self.vc, public_key=self.key.public_key)
        self.assertIn("proof must be an object", ctx.exception.problems)

    def test_structure_problems_enumerated(self):
        problems = check_vc_structure({"type": ["VerifiableCredential"], "proof": {}})
        self.assertTrue(any("@context" in p for p in problems))
        self.assertTrue(any("OAPPassportCredential" in p for p in problems))
        self.assertTrue(any("credentialSubject" in p for p in problems))
        self.assertTrue(any("proof.jws" in p for p in problems))
        self.assertEqual(check_vc_structure("vc"), ["credential must be an object"])

    def test_missing_oap_context(self):
        self.vc["@context"] = ["https://www.w3.org/2018/credentials/v1"]
        self.assertEqual(check_vc_structure(self.vc), [f"@context must include {OAP_CONTEXT}"])
        with self.assertRaises(VCStructureInvalid):
            from_vc(self.vc, public_key=self.key.public_key)

    def test_signed_but_invalid_subject(self):
        """A valid signature never stands in for schema validation."""
        self.vc["credentialSubject"]["status"] = "paused"
        self.vc["proof"]["jws"] = jws_sign(signing_payload(self.vc), self.key.private_key)
        with self.assertRaises(SchemaViolation) as ctx:
            from_vc(self.vc, public_key=self.key.public_key)
        self.assertEqual(ctx.exception.subject, "credential subject")

    def test_invalid_passport_not_exported(self):
        with self.assertRaises(SchemaViolation):
            passport_to_vc(make_passport(kind="clone"), self.key)

    def test_public_only_key_cannot_export(self):
        public_only = RegistryKey(issuer=REGISTRY_ISSUER, kid=self.key.kid, public_key=self.key.public_key)
        with self.assertRaises(ValueError):
            passport_to_vc(self.passport, public_only)


class TestIssuerBinding(unittest.TestCase):
    """The proof key must be published by the credential's own issuer."""

    def setUp(self):
        self.key = make_registry_key()
        self.attacker = generate_registry_key("https://evil.test", self.key.kid)
        self.attacker_keys_url = "https://evil.test/.well-known/oap/keys.json"
        documents = {self.attacker_keys_url: build_key_set([self.attacker])}

        def fetch(url, timeout):
            if url not in documents:
                raise requests.ConnectionError(f"offline: {url}")
            return documents[url]

        self.resolver = KeyResolver(
            registry_base_url=REGISTRY_ISSUER,
            fetch_json=fetch,
            retries=0,
            static_keys={self.key.kid: self.key.public_key},
        )

    def forge(self, issuer, verification_method):
        vc = passport_to_vc(make_passport(), self.attacker)
        vc["issuer"] = issuer
        vc["proof"]["verificationMethod"] = verification_method
        vc["proof"]["jws"] = jws_sign(signing_payload(vc), self.attacker.private_key)
        return vc

    def test_foreign_key_for_registry_issuer(self):
        vc = self.forge(REGISTRY_ISSUER, f"{self.attacker_keys_url}#{self.key.kid}")
        with self.assertRaises(SignatureInvalid):
            from_vc(vc, resolver=self.resolver)
        with self.assertRaises(SignatureInvalid):
            from_vc(vc, public_key=self.attacker.public_key)

    def test_foreign_key_for_did_issuer(self):
        vc = self.forge("did:web:agents.acme.com", "did:web:evil.test#key-1")
        with self.assertRaises(SignatureInvalid):
            from_vc(vc, public_key=self.attacker.public_key)

    def test_issuer_own_key_accepted(self):
        vc = self.forge("https://evil.test", f"{self.attacker_keys_url}#{self.key.kid}")
        self.assertEqual(from_vc(vc, resolver=self.resolver), make_passport())

    def test_prefixes(self):
        self.assertEqual(issuer_key_prefix("did:web:a.test"), "did:web:a.test#")
        self.assertEqual(issuer_key_prefix("https://a.test/"), "https://a.test/.well-known/oap/keys.json#")


class TestExpirationDate(unittest.TestCase):

    def setUp(self):
        self.key = make_registry_key()

    def test_default_validity(self):
        vc = passport_to_vc(make_passport(), self.key)
        self.assertEqual(vc["expirationDate"], "2026-01-01T00:00:00Z")

    def test_expires_at(self):
        vc = passport_to_vc(make_passport(expires_at="2025-06-30T00:00:00Z"), self.key)
        self.assertEqual(vc["expirationDate"], "2025-06-30T00:00:00Z")

    def test_never_expires(self):
        vc = passport_to_vc(make_passport(never_expires=True), self.key)
        self.assertEqual(vc["expirationDate"], NEVER_EXPIRES_DATE)

    def test_did_issuer(self):
        vc = passport_to_vc(make_passport(did="did:web:agents.acme.com"), self.key)
        self.assertEqual(vc["issuer"], "did:web:agents.acme.com")
        self.assertEqual(vc["proof"]["verificationMethod"], "did:web:agents.acme.com#key-1")


class TestDecisionReceipt(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.key = make_registry_key()
        cls.decision = PolicyEvaluator(clock=lambda: NOW).decide(
            "payments.refund.v1", make_passport(), refund_context(), cls.key
        ).to_dict()

    def test_round_trip(self):
        vc = decision_to_vc(self.decision, self.key)
        self.assertIn(DECISION_RECEIPT, vc["type"])
        self.assertEqual(vc["expirationDate"], "2025-01-15T12:01:00Z")

        restored = vc_to_decision(vc, public_key=self.key.public_key)
        self.assertEqual(restored, self.decision)
        self.assertTrue(verify_object(restored, self.key.public_key))

    def test_to_vc_dispatches_on_shape(self):
        self.assertIn(DECISION_RECEIPT, to_vc(self.decision, self.key)["type"])
        self.assertIn(PASSPORT_CREDENTIAL, to_vc(make_passport(), self.key)["type"])
        with self.assertRaises(SchemaViolation):
            to_vc({"hello": "world"}, self.key)

    def test_unsigned_decision_not_exported(self):
        unsigned = {k: v for k, v in self.decision.items() if k != "signature"}
        with self.assertRaises(SchemaViolation):
            decision_to_vc(unsigned, self.key)

    def test_expiry_past_calendar_end_not_exported(self):
        decision = sign_object(dict(self.decision, created_at="9999-12-31T23:59:30Z"), self.key)
        with self.assertRaises(SchemaViolation) as ctx:
            decision_to_vc(decision, self.key)
        self.assertEqual(ctx.exception.violations, ["expires_in: expiry is out of range"])

    def test_type_mismatch_on_import(self):
        passport_vc = passport_to_vc(make_passport(), self.key)
        decision_vc = decision_to_vc(self.decision, self.key)
        with self.assertRaises(VCStructureInvalid):
            vc_to_decision(passport_vc, public_key=self.key.public_key)
        with self.assertRaises(VCStructureInvalid):
            vc_to_passport(decision_vc, public_key=self.key.public_key)


class TestPresentations(unittest.TestCase):

    def setUp(self):
        self.key = make_registry_key()
        self.holder = generate_registry_key(REGISTRY_ISSUER, "holder")
        self.vc = passport_to_vc(make_passport(), self.key)

    def _present(self, **kwargs):
        kwargs.setdefault("challenge", "nonce-1")
        kwargs.setdefault("domain", "verifier.test")
        return create_presentation(self.vc, self.holder.private_key, now=NOW, **kwargs)

    def test_round_trip(self):
        vp = self._present()
        self.assertEqual(vp["holder"], AGENT_ID)
        self.assertEqual(vp["verifiableCredential"], self.vc)
        self.assertEqual(vp["proof"]["created"], "2025-01-15T12:00:00Z")

        result = verify_presentation(vp, "nonce-1", "verifier.test", public_key=self.holder.public_key)
        self.assertTrue(result.valid, result.error)

    def test_multiple_credentials(self):
        second = passport_to_vc(make_passport(assurance_level="L2"), self.key)
        vp = create_presentation([self.vc, second], self.holder.private_key, "nonce-1", now=NOW)
        self.assertEqual(len(vp["verifiableCredential"]), 2)
        self.assertTrue(verify_presentation(vp, "nonce-1", public_key=self.holder.public_key).valid)

    def test_challenge_mismatch(self):
        result = verify_presentation(self._present(), "nonce-2", public_key=self.holder.public_key)
        self.assertFalse(result.valid)
        self.assertEqual(result.error, "Challenge mismatch")

    def test_domain_mismatch(self):
        result = verify_presentation(
            self._present(), "nonce-1", "other.test", public_key=self.holder.public_key
        )
        self.assertEqual(result.error, "Domain mismatch")

    def test_tampered_presentation(self):
        vp = self._present()
        vp["holder"] = "ap_impostor"
        result = verify_presentation(vp, "nonce-1", public_key=self.holder.public_key)
        self.assertEqual(result.error, "Invalid signature")

    def test_challenge_rewrite_detected(self):
        vp = self._present()
        vp["proof"]["challenge"] = "nonce-9"
        result = verify_presentation(vp, "nonce-9", public_key=self.holder.public_key)
        self.assertEqual(result.error, "Invalid signature")

    def test_did_key_holder_resolves_offline(self):
        holder_did = did_key_from_public_key(self.holder.public_key)
        vp = self._present(holder=holder_did)
        self.assertEqual(vp["proof"]["verificationMethod"], holder_did + "#key-1")

        resolver = KeyResolver(fetch_json=_offline, retries=0)
        self.assertTrue(verify_presentation(vp, "nonce-1", "verifier.test", resolver=resolver).valid)

    def test_key_required(self):
        result = verify_presentation(self._present(), "nonce-1")
        self.assertEqual(result.error, "Public key or resolver required")

    def test_challenge_required(self):
        with self.assertRaises(ValueError):
            create_presentation(self.vc, self.holder.private_key, "")

    def test_malformed_credential_rejected(self):
        with self.assertRaises(ValueError):
            create_presentation({"type": ["VerifiableCredential"]}, self.holder.private_key, "nonce-1")

    def test_malformed_presentation(self):
        self.assertEqual(verify_presentation({}, "nonce-1").error, "Invalid VP structure")
        self.assertEqual(verify_presentation("vp", "nonce-1").error, "Invalid VP structure")


if __name__ == "__main__":
    unittest.main(verbosity=2)
