"""
OAP Hashing

All digests use SHA-256 over canonical JSON with lowercase hexadecimal
output and a "sha256:" prefix.
"""

import hashlib
import hmac
import re
from typing import Any, Union

from .canonicalization import canonicalize
from .errors import CanonicalizationFailure

DIGEST_PATTERN = re.compile(r'^sha256:[a-f0-9]{64}$')


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 hash in OAP digest format.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    if isinstance(data, str):
        data = data.encode('utf-8')

    digest = hashlib.sha256(data).hexdigest().lower()
    return f"sha256:{digest}"


def content_digest(obj: Any) -> str:
    """SHA-256 over the canonical JSON of any value."""
    return sha256_hash(canonicalize(obj))


def passport_digest(passport: dict) -> str:
    """
    Compute the passport digest bound into every Decision.

    passport_digest = "sha256:" + hex(SHA-256(JCS(passport)))
    """
    return content_digest(passport)


def verify_digest(declared: str, obj: Any) -> bool:
    """Recompute the digest of ``obj`` and compare in constant time."""
    if not isinstance(declared, str) or not DIGEST_PATTERN.match(declared):
        return False
    try:
        computed = content_digest(obj)
    except CanonicalizationFailure:
        return False
    return hmac.compare_digest(computed, declared)
