"""
Verifiable Presentations

A holder packages one or more OAP credentials and signs the package for
a specific verifier. The verifier's challenge (and optional domain) are
bound into the signature to prevent replay.

Signed payload: canonical VP-without-proof plus challenge, domain (when
given), created and verificationMethod.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .canonicalization import canonicalize
from .errors import CanonicalizationFailure, KeyUnresolvable
from .keys import KeyResolver, did_key_from_public_key
from .signing import KeyInput, jws_sign, jws_verify, load_public_key, public_key_from_private
from .util import to_rfc3339, utc_now
from .vc import W3C_CREDENTIALS_CONTEXT, check_vc_structure

ED25519_2020_CONTEXT = "https://w3id.org/security/suites/ed25519-2020/v1"
VP_CONTEXT = [W3C_CREDENTIALS_CONTEXT, ED25519_2020_CONTEXT]
VP_TYPE = ["VerifiablePresentation", "OAPPassportPresentation"]
PROOF_TYPE = "Ed25519Signature2020"
PROOF_PURPOSE = "authentication"


@dataclass
class PresentationResult:
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"valid": self.valid}
        if self.error:
            d["error"] = self.error
        return d


def _presentation_payload(
    vp_without_proof: Dict[str, Any],
    challenge: str,
    domain: Optional[str],
    created: str,
    verification_method: str
) -> bytes:
    payload = dict(vp_without_proof)
    payload["challenge"] = challenge
    if domain:
        payload["domain"] = domain
    payload["created"] = created
    payload["verificationMethod"] = verification_method
    return canonicalize(payload)


def create_presentation(
    credentials: Union[Dict[str, Any], List[Dict[str, Any]]],
    holder_private_key: KeyInput,
    challenge: str,
    holder: Optional[str] = None,
    domain: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Create a signed Verifiable Presentation.

    The holder defaults to the first credential subject's did, then its
    agent_id, then the did:key of the holder key.

    Raises:
        ValueError: on malformed credentials or a missing challenge
    """
    vcs = credentials if isinstance(credentials, list) else [credentials]
    if not vcs:
        raise ValueError("at least one credential is required")
    for i, vc in enumerate(vcs):
        problems = check_vc_structure(vc)
        if problems:
            raise ValueError(f"credential {i} is invalid: {'; '.join(problems)}")
    if not challenge:
        raise ValueError("challenge is required to prevent replay")

    subject = vcs[0]["credentialSubject"]
    holder = (
        holder
        or subject.get("did")
        or subject.get("agent_id")
        or did_key_from_public_key(public_key_from_private(holder_private_key))
    )

    vp = {
        "@context": list(VP_CONTEXT),
        "type": list(VP_TYPE),
        "verifiableCredential": vcs[0] if len(vcs) == 1 else vcs,
        "holder": holder,
    }

    created = to_rfc3339(now or utc_now())
    verification_method = f"{holder}#key-1"
    payload = _presentation_payload(vp, challenge, domain, created, verification_method)

    proof = {
        "type": PROOF_TYPE,
        "created": created,
        "verificationMethod": verification_method,
        "proofPurpose": PROOF_PURPOSE,
        "challenge": challenge,
    }
    if domain:
        proof["domain"] = domain
    proof["jws"] = jws_sign(payload, holder_private_key)
    vp["proof"] = proof
    return vp


def verify_presentation(
    vp: Dict[str, Any],
    expected_challenge: str,
    expected_domain: Optional[str] = None,
    public_key: Optional[KeyInput] = None,
    resolver: Optional[KeyResolver] = None
) -> PresentationResult:
    """
    Verify a presentation's structure, challenge, domain and signature.

    Never raises. Embedded credential proofs are not re-verified here;
    import each credential with from_vc for that.
    """
    if not isinstance(vp, dict) or not all(
        k in vp for k in ("@context", "type", "verifiableCredential", "proof")
    ):
        return PresentationResult(False, "Invalid VP structure")

    if not isinstance(vp["type"], list) or "VerifiablePresentation" not in vp["type"]:
        return PresentationResult(False, "VP must have type VerifiablePresentation")

    proof = vp["proof"]
    if not isinstance(proof, dict) or not proof.get("challenge"):
        return PresentationResult(False, "VP proof must include challenge")
    if proof["challenge"] != expected_challenge:
        return PresentationResult(False, "Challenge mismatch")
    if expected_domain is not None and proof.get("domain") != expected_domain:
        return PresentationResult(False, "Domain mismatch")

    embedded = vp["verifiableCredential"]
    for vc in embedded if isinstance(embedded, list) else [embedded]:
        if check_vc_structure(vc):
            return PresentationResult(False, "Invalid VC in presentation")

    for name in ("created", "verificationMethod", "jws"):
        if not isinstance(proof.get(name), str):
            return PresentationResult(False, f"VP proof is missing {name}")

    try:
        if public_key is not None:
            key = load_public_key(public_key)
        elif resolver is not None:
            key = resolver.resolve_verification_method(proof["verificationMethod"])
        else:
            return PresentationResult(False, "Public key or resolver required")

        vp_without_proof = {k: v for k, v in vp.items() if k != "proof"}
        payload = _presentation_payload(
            vp_without_proof,
            proof["challenge"],
            proof.get("domain"),
            proof["created"],
            proof["verificationMethod"],
        )
    except (KeyUnresolvable, CanonicalizationFailure, ValueError) as e:
        return PresentationResult(False, f"Verification error: {e}")

    if not jws_verify(payload, proof["jws"], key):
        return PresentationResult(False, "Invalid signature")
    return PresentationResult(True)
