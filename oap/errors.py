"""
OAP Error Taxonomy

Errors are grouped by kind, not by message. A policy deny is not an error:
it is a valid Decision with ``allow=false``.

- SchemaViolation: structural/semantic validation failure (field-path list)
- KeyUnresolvable: no usable public key (not found, unreachable, expired, revoked)
- SignatureInvalid: signature verification returned False
- CanonicalizationFailure: value cannot be serialized deterministically
- VCStructureInvalid: malformed Verifiable Credential envelope
"""

from typing import Any, List, Optional


class OAPError(Exception):
    """Base class for all OAP errors."""


class SchemaViolation(OAPError):
    """Raised when a passport, decision, context or credential subject fails validation."""

    def __init__(self, violations: List[Any], subject: str = "object"):
        self.violations = list(violations)
        self.subject = subject
        messages = "; ".join(str(v) for v in self.violations) or "unknown violation"
        super().__init__(f"Invalid {subject}: {messages}")


class KeyUnresolvable(OAPError):
    """Raised when a kid cannot be resolved to a usable Ed25519 public key."""

    reason = "unresolvable"

    def __init__(self, kid: str, detail: Optional[str] = None):
        self.kid = kid
        self.detail = detail
        message = f"Key {kid} {self.reason}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class KeyNotFound(KeyUnresolvable):
    reason = "not found"


class KeyUnreachable(KeyUnresolvable):
    reason = "unreachable"


class KeyExpired(KeyUnresolvable):
    reason = "expired"


class KeyRevoked(KeyUnresolvable):
    reason = "revoked"


class SignatureInvalid(OAPError):
    """Raised when a signature does not verify. Never retried."""


class CanonicalizationFailure(OAPError, ValueError):
    """Raised for values that have no deterministic JSON rendering."""

    def __init__(self, message: str, path: str = "$"):
        self.path = path
        super().__init__(f"{path}: {message}")


class VCStructureInvalid(OAPError):
    """Raised when a Verifiable Credential envelope is malformed."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid VC structure: " + "; ".join(self.problems))
