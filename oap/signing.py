"""
OAP Cryptographic Signing

Ed25519 (RFC 8032) signing and verification over canonical JSON.

Two on-wire encodings:
- Compact prefixed form for native Decisions: "ed25519:<base64>"
- JWS compact detached form for VC proofs: "<b64url(header)>..<b64url(sig)>"

The signed payload is always the canonical bytes of the object with any
"signature" / "proof" field removed.
"""

import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .canonicalization import canonicalize
from .errors import CanonicalizationFailure
from .util import b64d, b64e, b64url_decode, b64url_encode, decode_key_material, HEX_PATTERN

SIGNATURE_PREFIX = "ed25519:"
UNSIGNED_FIELDS = ("signature", "proof")
JWS_HEADER = {"alg": "EdDSA", "b64": False, "crit": ["b64"]}

KeyInput = Union[str, bytes]


@dataclass
class RegistryKey:
    """
    The signing identity of a registry or owner.

    Held by the caller of the signer/verifier, never persisted by the core.
    ``private_key`` is the 32-byte Ed25519 seed.
    """
    issuer: str
    kid: str
    public_key: Optional[bytes] = None
    private_key: Optional[bytes] = None

    def __post_init__(self):
        if self.private_key is not None:
            self.private_key = load_private_key(self.private_key)
        if self.public_key is not None:
            self.public_key = load_public_key(self.public_key)
        elif self.private_key is not None:
            self.public_key = public_key_from_private(self.private_key)

    def can_sign(self) -> bool:
        return self.private_key is not None

    def public_jwk(self, exp: Optional[int] = None) -> Dict[str, Any]:
        """Key-set entry for /.well-known/oap/keys.json."""
        if self.public_key is None:
            raise ValueError(f"Key {self.kid} has no public key")
        entry = {
            "kid": self.kid,
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url_encode(self.public_key),
            "use": "sig",
            "alg": "EdDSA",
        }
        if exp is not None:
            entry["exp"] = int(exp)
        return entry

    def to_dict(self, include_private: bool = False) -> Dict[str, Any]:
        d = {"issuer": self.issuer, "kid": self.kid}
        if self.public_key is not None:
            d["publicKey"] = b64url_encode(self.public_key)
        if include_private and self.private_key is not None:
            d["privateKey"] = b64url_encode(self.private_key)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistryKey':
        """Accepts both camelCase (key files) and snake_case field names."""
        private = data.get("privateKey", data.get("private_key"))
        public = data.get("publicKey", data.get("public_key"))
        return cls(
            issuer=data["issuer"],
            kid=data["kid"],
            public_key=public or None,
            private_key=private or None,
        )


def load_private_key(value: KeyInput) -> bytes:
    """
    Decode an Ed25519 private key to its 32-byte seed.

    64-byte secret keys (seed || public key) are accepted and reduced to
    the seed.
    """
    raw = decode_key_material(value, expected_lengths=(32, 64))
    return raw[:32]


def load_public_key(value: KeyInput) -> bytes:
    """Decode an Ed25519 public key to 32 raw bytes."""
    return decode_key_material(value, expected_lengths=(32,))


def public_key_from_private(private_key: KeyInput) -> bytes:
    return bytes(SigningKey(load_private_key(private_key)).verify_key)


def generate_registry_key(issuer: str, kid: str) -> RegistryKey:
    """Generate a new Ed25519 registry key."""
    signing_key = SigningKey.generate()
    return RegistryKey(
        issuer=issuer,
        kid=kid,
        public_key=bytes(signing_key.verify_key),
        private_key=bytes(signing_key),
    )


def sign(payload: bytes, private_key: KeyInput) -> bytes:
    """
    Sign canonical bytes with Ed25519.

    Deterministic: the same payload and key always give the same signature.
    """
    key = SigningKey(load_private_key(private_key))
    return key.sign(payload).signature


def verify(payload: bytes, signature: Union[str, bytes], public_key: KeyInput) -> bool:
    """
    Verify an Ed25519 signature.

    Never raises: malformed signatures or keys verify as False.
    """
    try:
        if isinstance(signature, str):
            signature = decode_signature(signature)
        if not isinstance(payload, (bytes, bytearray)) or len(signature) != 64:
            return False
        verify_key = VerifyKey(load_public_key(public_key))
        verify_key.verify(bytes(payload), bytes(signature))
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False


def encode_signature(signature: bytes) -> str:
    """Compact native form: "ed25519:<base64>"."""
    return SIGNATURE_PREFIX + b64e(signature)


def decode_signature(value: str) -> bytes:
    """
    Decode "ed25519:<base64|hex>" (prefix optional) to 64 raw bytes.

    Raises:
        ValueError: if the value is not a 64-byte signature
    """
    text = value.strip()
    if text.startswith(SIGNATURE_PREFIX):
        text = text[len(SIGNATURE_PREFIX):]

    if len(text) == 128 and HEX_PATTERN.match(text):
        raw = binascii.unhexlify(text)
    else:
        raw = b64d(text)

    if len(raw) != 64:
        raise ValueError(f"Ed25519 signature must be 64 bytes, got {len(raw)}")
    return raw


def signing_payload(obj: Dict[str, Any]) -> bytes:
    """Canonical bytes of ``obj`` with signature/proof fields removed."""
    reduced = {k: v for k, v in obj.items() if k not in UNSIGNED_FIELDS}
    return canonicalize(reduced)


def sign_object(obj: Dict[str, Any], registry_key: RegistryKey) -> Dict[str, Any]:
    """
    Return a copy of ``obj`` carrying ``kid`` and a compact ``signature``.

    The kid is set before signing so it is covered by the signature.
    """
    if not registry_key.can_sign():
        raise ValueError(f"Registry key {registry_key.kid} has no private key")
    unsigned = {k: v for k, v in obj.items() if k not in UNSIGNED_FIELDS}
    unsigned["kid"] = registry_key.kid
    sig = sign(canonicalize(unsigned), registry_key.private_key)
    signed = dict(unsigned)
    signed["signature"] = encode_signature(sig)
    return signed


def verify_object(obj: Dict[str, Any], public_key: KeyInput) -> bool:
    """Verify the compact ``signature`` of a signed object. Never raises."""
    if not isinstance(obj, dict):
        return False
    signature = obj.get("signature")
    if not isinstance(signature, str):
        return False
    try:
        payload = signing_payload(obj)
    except CanonicalizationFailure:
        return False
    return verify(payload, signature, public_key)


def jws_sign(payload: bytes, private_key: KeyInput) -> str:
    """Detached JWS: "<b64url(header)>..<b64url(signature)>"."""
    header_b64 = b64url_encode(canonicalize(JWS_HEADER))
    return f"{header_b64}..{b64url_encode(sign(payload, private_key))}"


def jws_verify(payload: bytes, jws: str, public_key: KeyInput) -> bool:
    """Verify a detached JWS over ``payload``. Never raises."""
    if not isinstance(jws, str):
        return False
    parts = jws.split(".")
    if len(parts) != 3 or parts[1] != "":
        return False
    try:
        header = json.loads(b64url_decode(parts[0]).decode("utf-8"))
        signature = b64url_decode(parts[2])
    except (ValueError, UnicodeDecodeError):
        return False
    if not isinstance(header, dict) or header.get("alg") != "EdDSA":
        return False
    return verify(payload, signature, public_key)
