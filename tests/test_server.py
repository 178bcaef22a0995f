from oap import generate_registry_key, passport_digest, passport_to_vc, verify_object
from oap.keys import select_key
from oap.signing import jws_sign, signing_payload

from tests.factories import (
    REGISTRY_ISSUER,
    REGISTRY_KID,
    export_context,
    make_passport,
    make_registry_key,
    refund_context,
)


def decide(client, policy_id="payments.refund.v1", passport=None, context=None):
    body = {
        "passport": passport or make_passport(),
        "context": context if context is not None else refund_context(),
    }
    r = client.post(f"/verify/{policy_id}", json=body)
    assert r.status_code == 200
    return r.json()


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert "payments.refund.v1" in r.json()["packs"]


def test_request_id_echoed(client):
    r = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert client.get("/healthz").headers["X-Request-ID"]


def test_key_set_publishes_registry_key(client, registry_key):
    document = client.get("/.well-known/oap/keys.json").json()
    public_key, _ = select_key(document, REGISTRY_KID)
    assert public_key == registry_key.public_key


# Evaluation
def test_allow_decision_signed(client, registry_key):
    passport = make_passport()
    decision = decide(client, passport=passport)
    assert decision["allow"] is True
    assert decision["reasons"][0]["code"] == "oap.allowed"
    assert decision["remaining_daily_cap"] == {"USD": 49000}
    assert decision["passport_digest"] == passport_digest(passport)
    assert verify_object(decision, registry_key.public_key)


def test_deny_is_a_200(client):
    decision = decide(client, context=refund_context(amount=5001))
    assert decision["allow"] is False
    assert decision["reasons"][0]["code"] == "oap.limit_exceeded"


def test_unknown_policy_denies(client):
    decision = decide(client, policy_id="payments.charge.v1")
    assert decision["reasons"][0]["code"] == "oap.policy_error"


def test_invalid_context_denies(client):
    decision = decide(client, context={"amount": "lots"})
    assert decision["reasons"][0]["code"] == "oap.invalid_context"


def test_malformed_body_rejected(client):
    r = client.post("/verify/payments.refund.v1", json={"context": {}})
    assert r.status_code == 422


# Decision verification
def test_verify_round_trip(client):
    passport = make_passport()
    decision = decide(client, "data.export.v1", passport, export_context())
    r = client.post("/decisions/verify", json={
        "decision": decision, "passport": passport, "context": export_context(),
    })
    assert r.json() == {"outcome": "VALID_ALLOW"}


def test_verify_tampered(client):
    decision = decide(client, context=refund_context(amount=5001))
    decision["allow"] = True
    decision["reasons"] = [{"code": "oap.allowed"}]
    r = client.post("/decisions/verify", json={"decision": decision})
    assert r.json()["outcome"] == "INVALID"
    assert r.json()["reason"] == "Signature invalid"


def test_verify_suspended_passport(client):
    decision = decide(client)
    r = client.post("/decisions/verify", json={
        "decision": decision, "passport": make_passport(status="suspended"),
    })
    assert r.json()["reason"] == "Passport is suspended"


# VC codec
def test_vc_round_trip(client):
    passport = make_passport()
    vc = client.post("/vc/export", json={"type": "passport", "data": passport}).json()
    assert "OAPPassportCredential" in vc["type"]

    r = client.post("/vc/import", json={"type": "passport", "credential": vc})
    assert r.status_code == 200
    assert r.json() == passport


def test_decision_vc_round_trip(client):
    decision = decide(client)
    vc = client.post("/vc/export", json={"data": decision}).json()
    assert "OAPDecisionReceipt" in vc["type"]

    r = client.post("/vc/import", json={"type": "decision", "credential": vc})
    assert r.json() == decision


def test_export_invalid_passport(client):
    r = client.post("/vc/export", json={"type": "passport", "data": make_passport(kind="clone")})
    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["error"] == "schema_violation"
    assert any(v.startswith("kind:") for v in detail["violations"])


def test_import_tampered_vc(client):
    vc = client.post("/vc/export", json={"type": "passport", "data": make_passport()}).json()
    vc["credentialSubject"]["assurance_level"] = "L4FIN"
    r = client.post("/vc/import", json={"credential": vc})
    assert r.status_code == 403


def test_import_malformed_vc(client):
    r = client.post("/vc/import", json={"credential": {"type": ["VerifiableCredential"]}})
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "vc_structure_invalid"


def test_import_foreign_issuer_rejected(client):
    foreign = make_registry_key("oap:registry:foreign")
    vc = passport_to_vc(make_passport(), foreign)

    r = client.post("/vc/import", json={"credential": vc})
    assert r.status_code == 403


def test_import_registry_issuer_with_foreign_key_rejected(client):
    attacker = generate_registry_key("https://evil.test", REGISTRY_KID)
    vc = passport_to_vc(make_passport(), attacker)
    vc["issuer"] = REGISTRY_ISSUER
    vc["proof"]["verificationMethod"] = f"https://evil.test/.well-known/oap/keys.json#{REGISTRY_KID}"
    vc["proof"]["jws"] = jws_sign(signing_payload(vc), attacker.private_key)

    r = client.post("/vc/import", json={"credential": vc})
    assert r.status_code == 403
    assert "does not belong to issuer" in r.json()["detail"]["error"]
