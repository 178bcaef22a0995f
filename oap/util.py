"""
Encoding and platform helpers shared by every OAP module.

One implementation of base64/base64url/hex/base58 handling, hashing
and randomness, so nothing else needs to sniff formats on its own.
"""

import base64
import binascii
import hashlib
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

HEX_PATTERN = re.compile(r'^[0-9a-fA-F]+$')
B64URL_PATTERN = re.compile(r'^[A-Za-z0-9_-]*$')
B64_PATTERN = re.compile(r'^[A-Za-z0-9+/]*={0,2}$')

# Base58 (bitcoin alphabet) for did:key multibase values
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def random_bytes(length: int = 32) -> bytes:
    return secrets.token_bytes(length)


def new_uuid() -> str:
    """Random UUIDv4 as a lowercase string."""
    return str(uuid.uuid4())


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Strict base64 decode (padding optional)."""
    s = s.strip()
    if not B64_PATTERN.match(s):
        raise ValueError("invalid base64")
    padded = s + "=" * (-len(s) % 4)
    return base64.b64decode(padded.encode('ascii'), validate=True)


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode string to bytes (handles missing padding)."""
    s = s.strip().rstrip("=")
    if not B64URL_PATTERN.match(s):
        raise ValueError("invalid base64url")
    return base64.urlsafe_b64decode((s + "=" * (-len(s) % 4)).encode('ascii'))


def b58encode(b: bytes) -> str:
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(s_bytes) - len(s_bytes.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def decode_key_material(value: Union[str, bytes], expected_lengths=(32,)) -> bytes:
    """
    Decode an Ed25519 key given as raw bytes, hex, base64url or base64.

    An optional "ed25519:" prefix is stripped. The decoded length must be
    one of ``expected_lengths``; formats are tried hex, base64url, base64.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
        if len(raw) not in expected_lengths:
            raise ValueError(f"key must be {expected_lengths} bytes, got {len(raw)}")
        return raw

    if not isinstance(value, str):
        raise ValueError(f"unsupported key type {type(value).__name__}")

    text = value.strip()
    if text.startswith("ed25519:"):
        text = text[len("ed25519:"):]

    candidates = []
    if HEX_PATTERN.match(text) and len(text) % 2 == 0:
        candidates.append(lambda: binascii.unhexlify(text))
    candidates.append(lambda: b64url_decode(text))
    candidates.append(lambda: b64d(text))

    for decode in candidates:
        try:
            raw = decode()
        except (ValueError, binascii.Error):
            continue
        if len(raw) in expected_lengths:
            return raw

    raise ValueError("key is not valid hex, base64url or base64 of the expected length")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_rfc3339(dt: datetime) -> str:
    """Render an aware datetime as RFC 3339 UTC with a Z suffix."""
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond:
        return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"
    return dt.strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_rfc3339(s: str) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp. Returns None when it is not one."""
    if not isinstance(s, str) or "T" not in s:
        return None
    text = s.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return None
    return dt.astimezone(timezone.utc)
