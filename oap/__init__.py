"""
Open Agent Passport (OAP) Runtime Authorization Engine

Version: 1.0.0

Decides whether an AI agent may perform an action, and lets anyone prove
afterwards that the decision was made:

    DECIDE(policy_id, passport, context) -> signed Decision

Unknown policy packs, malformed passports and bad contexts never raise:
they resolve to a signed deny with a machine-checkable oap.* reason code.

Usage:
    from oap import (
        PolicyEvaluator,
        DecisionVerifier,
        KeyResolver,
        generate_registry_key,
        passport_to_vc,
    )

    registry_key = generate_registry_key("https://api.aport.io", "oap:registry:key-2025-01")

    # Evaluate and sign
    evaluator = PolicyEvaluator()
    decision = evaluator.decide(
        "payments.refund.v1",
        passport,
        {"amount": 5000, "currency": "USD", "order_id": "ord_1", "customer_id": "cus_1"},
        registry_key,
    )

    if decision.allow:
        # oap.allowed - the action may proceed
        ...

    # Verify later, anywhere
    resolver = KeyResolver()
    resolver.register_registry_key(registry_key)
    result = DecisionVerifier(resolver).verify(decision.to_dict(), passport)
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

# Errors
from .errors import (
    OAPError,
    SchemaViolation,
    KeyUnresolvable,
    KeyNotFound,
    KeyUnreachable,
    KeyExpired,
    KeyRevoked,
    SignatureInvalid,
    CanonicalizationFailure,
    VCStructureInvalid,
)

# Canonicalization and hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import sha256_hash, content_digest, passport_digest, verify_digest

# Data model
from .models import (
    SPEC_VERSION,
    AssuranceLevel,
    PassportStatus,
    PassportKind,
    OwnerType,
    ReasonCode,
    Reason,
    Decision,
    CurrencyLimit,
    RefundLimits,
    ExportLimits,
    ReleaseLimits,
    UnknownLimits,
    parse_limits,
)

# Signing
from .signing import (
    RegistryKey,
    generate_registry_key,
    sign,
    verify,
    sign_object,
    verify_object,
    jws_sign,
    jws_verify,
)

# Key resolution
from .keys import (
    KeyCache,
    KeyResolver,
    build_key_set,
    did_key_from_public_key,
    did_key_public_key,
)

# Validation
from .validator import (
    Violation,
    ValidationResult,
    validate_passport,
    validate_decision,
    validate_context,
    validate_status_transition,
    validate_instance_parent,
)

# Checks and policy packs
from .checks import (
    Check,
    CheckResult,
    CheckEvaluation,
    create_check,
    CHECK_TYPES,
)
from .packs import (
    PolicyPack,
    PackRegistry,
    ContextField,
    CheckDefinition,
    create_refund_pack,
    create_export_pack,
    create_release_pack,
    default_registry,
)

# Evaluator
from .evaluator import PolicyEvaluator, EvaluationResult

# Verifier
from .verifier import (
    DecisionVerifier,
    VerificationResult,
    VerificationOutcome,
)

# Verifiable Credentials
from .vc import (
    passport_to_vc,
    decision_to_vc,
    to_vc,
    from_vc,
    vc_to_passport,
    vc_to_decision,
    check_vc_structure,
)
from .vp import create_presentation, verify_presentation, PresentationResult

# Conformance
from .conformance import (
    ConformanceCase,
    CaseResult,
    ConformanceReport,
    ConformanceRunner,
    load_cases,
    run_conformance,
    save_report,
)


__all__ = [
    # Version
    "__version__",

    # Errors
    "OAPError",
    "SchemaViolation",
    "KeyUnresolvable",
    "KeyNotFound",
    "KeyUnreachable",
    "KeyExpired",
    "KeyRevoked",
    "SignatureInvalid",
    "CanonicalizationFailure",
    "VCStructureInvalid",

    # Canonicalization
    "canonicalize",
    "canonicalize_str",

    # Hashing
    "sha256_hash",
    "content_digest",
    "passport_digest",
    "verify_digest",

    # Data model
    "SPEC_VERSION",
    "AssuranceLevel",
    "PassportStatus",
    "PassportKind",
    "OwnerType",
    "ReasonCode",
    "Reason",
    "Decision",
    "CurrencyLimit",
    "RefundLimits",
    "ExportLimits",
    "ReleaseLimits",
    "UnknownLimits",
    "parse_limits",

    # Signing
    "RegistryKey",
    "generate_registry_key",
    "sign",
    "verify",
    "sign_object",
    "verify_object",
    "jws_sign",
    "jws_verify",

    # Keys
    "KeyCache",
    "KeyResolver",
    "build_key_set",
    "did_key_from_public_key",
    "did_key_public_key",

    # Validation
    "Violation",
    "ValidationResult",
    "validate_passport",
    "validate_decision",
    "validate_context",
    "validate_status_transition",
    "validate_instance_parent",

    # Checks and packs
    "Check",
    "CheckResult",
    "CheckEvaluation",
    "create_check",
    "CHECK_TYPES",
    "PolicyPack",
    "PackRegistry",
    "ContextField",
    "CheckDefinition",
    "create_refund_pack",
    "create_export_pack",
    "create_release_pack",
    "default_registry",

    # Evaluator
    "PolicyEvaluator",
    "EvaluationResult",

    # Verifier
    "DecisionVerifier",
    "VerificationResult",
    "VerificationOutcome",

    # Verifiable Credentials
    "passport_to_vc",
    "decision_to_vc",
    "to_vc",
    "from_vc",
    "vc_to_passport",
    "vc_to_decision",
    "check_vc_structure",
    "create_presentation",
    "verify_presentation",
    "PresentationResult",

    # Conformance
    "ConformanceCase",
    "CaseResult",
    "ConformanceReport",
    "ConformanceRunner",
    "load_cases",
    "run_conformance",
    "save_report",
]
