"""
OAP <-> Verifiable Credential Codec

Bidirectional mapping between native Passports/Decisions and W3C
Verifiable Credential envelopes.

Export wraps the object unmodified in credentialSubject and signs the
canonical VC-without-proof with a detached JWS (Ed25519Signature2020).
Import checks the envelope shape, then the signature, then re-validates
credentialSubject: a good signature never substitutes for schema
validation.

Canonicalization is the deterministic JSON canonicalizer used for
decisions (not URDNA2015), so every signer and verifier hashes the same
bytes without a JSON-LD processor.
"""

import copy
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .errors import KeyNotFound, SchemaViolation, SignatureInvalid, VCStructureInvalid
from .keys import KEY_SET_PATH, KeyResolver
from .logging_config import audit_log
from .signing import KeyInput, RegistryKey, jws_sign, jws_verify, load_public_key, signing_payload
from .util import parse_rfc3339, to_rfc3339
from .validator import ValidationResult, validate_decision, validate_passport

logger = logging.getLogger(__name__)

W3C_CREDENTIALS_CONTEXT = "https://www.w3.org/2018/credentials/v1"
OAP_CONTEXT = "https://raw.githubusercontent.com/aporthq/aport-spec/refs/heads/main/oap/vc/context-oap-v1.jsonld"
VC_CONTEXT = [W3C_CREDENTIALS_CONTEXT, OAP_CONTEXT]

VERIFIABLE_CREDENTIAL = "VerifiableCredential"
PASSPORT_CREDENTIAL = "OAPPassportCredential"
DECISION_RECEIPT = "OAPDecisionReceipt"

PROOF_TYPE = "Ed25519Signature2020"
PROOF_PURPOSE = "assertionMethod"

NEVER_EXPIRES_DATE = "2999-12-31T23:59:59Z"
DEFAULT_VALIDITY = timedelta(days=365)


def is_decision(obj: Dict[str, Any]) -> bool:
    return isinstance(obj, dict) and "decision_id" in obj


def is_passport(obj: Dict[str, Any]) -> bool:
    return isinstance(obj, dict) and "passport_id" in obj and "capabilities" in obj


def expiration_date(subject: Dict[str, Any]) -> str:
    """
    expirationDate for a wrapped object:
    expires_at, else created_at + expires_in (decisions), else the far-future
    sentinel for never_expires, else created_at + 365 days.
    """
    if isinstance(subject.get("expires_at"), str):
        return subject["expires_at"]

    created = parse_rfc3339(subject.get("created_at"))
    if created is None:
        raise SchemaViolation(["created_at: must be an RFC 3339 timestamp"], "credential subject")

    if is_decision(subject):
        try:
            return to_rfc3339(created + timedelta(seconds=subject["expires_in"]))
        except OverflowError:
            raise SchemaViolation(["expires_in: expiry is out of range"], "credential subject") from None
    if subject.get("never_expires") is True:
        return NEVER_EXPIRES_DATE
    return to_rfc3339(created + DEFAULT_VALIDITY)


def issuer_key_prefix(issuer: str) -> str:
    """Prefix every verificationMethod of ``issuer`` must start with."""
    if issuer.startswith("did:"):
        return issuer + "#"
    return issuer.rstrip("/") + KEY_SET_PATH + "#"


def verification_method_for(issuer: str, registry_key: RegistryKey) -> str:
    if issuer.startswith("did:"):
        return issuer_key_prefix(issuer) + "key-1"
    return issuer_key_prefix(registry_key.issuer) + registry_key.kid


def _wrap(subject: Dict[str, Any], credential_type: str, registry_key: RegistryKey) -> Dict[str, Any]:
    if not registry_key.can_sign():
        raise ValueError(f"Registry key {registry_key.kid} has no private key")

    did = subject.get("did")
    issuer = did if isinstance(did, str) and did else registry_key.issuer
    vc = {
        "@context": list(VC_CONTEXT),
        "type": [VERIFIABLE_CREDENTIAL, credential_type],
        "credentialSubject": copy.deepcopy(subject),
        "issuer": issuer,
        "issuanceDate": subject["created_at"],
        "expirationDate": expiration_date(subject),
    }

    jws = jws_sign(signing_payload(vc), registry_key.private_key)
    vc["proof"] = {
        "type": PROOF_TYPE,
        "created": subject["created_at"],
        "verificationMethod": verification_method_for(issuer, registry_key),
        "proofPurpose": PROOF_PURPOSE,
        "jws": jws,
    }
    audit_log.vc_exported(credential_type, issuer)
    return vc


def passport_to_vc(passport: Dict[str, Any], registry_key: RegistryKey) -> Dict[str, Any]:
    """
    Wrap a passport in an OAPPassportCredential.

    Raises:
        SchemaViolation: if the passport is invalid
    """
    validate_passport(passport).raise_for_violations("passport")
    return _wrap(passport, PASSPORT_CREDENTIAL, registry_key)


def decision_to_vc(decision: Dict[str, Any], registry_key: RegistryKey) -> Dict[str, Any]:
    """
    Wrap a signed decision in an OAPDecisionReceipt.

    Raises:
        SchemaViolation: if the decision is invalid
    """
    validate_decision(decision).raise_for_violations("decision")
    return _wrap(decision, DECISION_RECEIPT, registry_key)


def to_vc(obj: Dict[str, Any], registry_key: RegistryKey) -> Dict[str, Any]:
    """Export a passport or decision, dispatching on its shape."""
    if is_decision(obj):
        return decision_to_vc(obj, registry_key)
    if is_passport(obj):
        return passport_to_vc(obj, registry_key)
    raise SchemaViolation(["$: object is neither a passport nor a decision"], "object")


def check_vc_structure(vc: Any) -> List[str]:
    """List every problem with a VC envelope (empty when well formed)."""
    if not isinstance(vc, dict):
        return ["credential must be an object"]

    problems = []
    context = vc.get("@context")
    for required in VC_CONTEXT:
        if not isinstance(context, list) or required not in context:
            problems.append(f"@context must include {required}")

    types = vc.get("type")
    if not isinstance(types, list) or VERIFIABLE_CREDENTIAL not in types:
        problems.append(f"type must include {VERIFIABLE_CREDENTIAL}")
    elif PASSPORT_CREDENTIAL not in types and DECISION_RECEIPT not in types:
        problems.append(f"type must include {PASSPORT_CREDENTIAL} or {DECISION_RECEIPT}")

    if not isinstance(vc.get("credentialSubject"), dict):
        problems.append("credentialSubject must be an object")
    for name in ("issuer", "issuanceDate", "expirationDate"):
        if not isinstance(vc.get(name), str) or not vc[name]:
            problems.append(f"{name} must be a non-empty string")

    proof = vc.get("proof")
    if not isinstance(proof, dict):
        problems.append("proof must be an object")
        return problems
    if proof.get("type") != PROOF_TYPE:
        problems.append(f"proof.type must be {PROOF_TYPE}")
    if proof.get("proofPurpose") != PROOF_PURPOSE:
        problems.append(f"proof.proofPurpose must be {PROOF_PURPOSE}")
    for name in ("created", "verificationMethod", "jws"):
        if not isinstance(proof.get(name), str) or not proof[name]:
            problems.append(f"proof.{name} must be a non-empty string")
    return problems


def _credential_type(vc: Dict[str, Any]) -> str:
    return DECISION_RECEIPT if DECISION_RECEIPT in vc["type"] else PASSPORT_CREDENTIAL


def verify_vc_signature(
    vc: Dict[str, Any],
    public_key: Optional[KeyInput] = None,
    resolver: Optional[KeyResolver] = None
) -> None:
    """
    Verify the proof of a structurally valid VC.

    Raises:
        KeyUnresolvable: no usable key (from argument or resolver)
        SignatureInvalid: the method is not the issuer's, or the JWS does not verify
    """
    vm = vc["proof"]["verificationMethod"]
    if not vm.startswith(issuer_key_prefix(vc["issuer"])):
        audit_log.signature_invalid(_credential_type(vc), vm)
        raise SignatureInvalid(f"verificationMethod {vm} does not belong to issuer {vc['issuer']}")
    if public_key is not None:
        try:
            key = load_public_key(public_key)
        except ValueError as e:
            raise KeyNotFound(vm, f"supplied public key is malformed: {e}") from None
    elif resolver is not None:
        key = resolver.resolve_verification_method(vm)
    else:
        raise KeyNotFound(vm, "no public key or resolver supplied")

    if not jws_verify(signing_payload(vc), vc["proof"]["jws"], key):
        audit_log.signature_invalid(_credential_type(vc), vm)
        raise SignatureInvalid(f"VC proof does not verify for {vm}")


def from_vc(
    vc: Dict[str, Any],
    public_key: Optional[KeyInput] = None,
    resolver: Optional[KeyResolver] = None
) -> Dict[str, Any]:
    """
    Import a VC and return the wrapped passport or decision.

    Raises:
        VCStructureInvalid, KeyUnresolvable, SignatureInvalid, SchemaViolation
    """
    problems = check_vc_structure(vc)
    if problems:
        raise VCStructureInvalid(problems)

    verify_vc_signature(vc, public_key, resolver)

    credential_type = _credential_type(vc)
    subject = vc["credentialSubject"]
    result: ValidationResult
    if credential_type == DECISION_RECEIPT:
        result = validate_decision(subject)
    else:
        result = validate_passport(subject)
    result.raise_for_violations("credential subject")

    audit_log.vc_imported(credential_type, vc["issuer"])
    logger.debug("Imported %s from %s", credential_type, vc["issuer"])
    return copy.deepcopy(subject)


def vc_to_passport(
    vc: Dict[str, Any],
    public_key: Optional[KeyInput] = None,
    resolver: Optional[KeyResolver] = None
) -> Dict[str, Any]:
    if isinstance(vc, dict) and DECISION_RECEIPT in (vc.get("type") or []):
        raise VCStructureInvalid([f"expected {PASSPORT_CREDENTIAL}, got {DECISION_RECEIPT}"])
    return from_vc(vc, public_key, resolver)


def vc_to_decision(
    vc: Dict[str, Any],
    public_key: Optional[KeyInput] = None,
    resolver: Optional[KeyResolver] = None
) -> Dict[str, Any]:
    types = vc.get("type") if isinstance(vc, dict) else None
    if isinstance(types, list) and DECISION_RECEIPT not in types:
        raise VCStructureInvalid([f"expected {DECISION_RECEIPT}"])
    return from_vc(vc, public_key, resolver)
