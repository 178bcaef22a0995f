#!/usr/bin/env python3
"""
OAP Command Line Interface

Usage:
    oap export --type passport --input <file> --output <file> --key <file>
    oap import --type decision --input <file> --output <file> [--public-key <key>]
    oap validate --type passport|decision|vc|context --input <file>
    oap generate-key --output <file>
    oap evaluate --policy <pack> --passport <file> --context <file> --key <file>
    oap verify --decision <file> [--passport <file>] [--context <file>]
    oap hash --file <file>
    oap conformance --root <dir> [--pack <id>] [--report <dir>]
"""

import argparse
import json
import sys
from datetime import datetime
from typing import Optional


def load_json(path: str):
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def emit(data, output: Optional[str] = None, label: str = "Output"):
    if output:
        save_json(data, output)
        print(f"{label} written to: {output}")
    else:
        print(json.dumps(data, indent=2))


def _load_key(path: Optional[str]):
    from oap.config import load_registry_key
    return load_registry_key(path)


def _resolver(args):
    from oap import KeyResolver
    return KeyResolver(registry_base_url=getattr(args, "registry", None))


def cmd_export(args):
    """Export a passport or decision as a Verifiable Credential."""
    from oap import OAPError, decision_to_vc, passport_to_vc, to_vc

    data = load_json(args.input)
    registry_key = _load_key(args.key)

    exporters = {"passport": passport_to_vc, "decision": decision_to_vc, "auto": to_vc}
    try:
        vc = exporters[args.type](data, registry_key)
    except (OAPError, ValueError) as e:
        print(f"✗ Export failed: {e}", file=sys.stderr)
        return 1

    emit(vc, args.output, "VC")
    print(f"\n✓ Exported {args.type} to VC", file=sys.stderr)
    return 0


def cmd_import(args):
    """Import a Verifiable Credential back to a passport or decision."""
    from oap import OAPError, vc_to_decision, vc_to_passport

    vc = load_json(args.input)
    importer = vc_to_passport if args.type == "passport" else vc_to_decision
    try:
        obj = importer(vc, public_key=args.public_key, resolver=_resolver(args))
    except (OAPError, ValueError) as e:
        print(f"✗ Import failed: {e}", file=sys.stderr)
        return 1

    emit(obj, args.output, args.type.capitalize())
    print(f"\n✓ Imported VC to {args.type}", file=sys.stderr)
    return 0


def cmd_validate(args):
    """Validate a passport, decision, VC or context."""
    from oap import check_vc_structure, validate_context, validate_decision, validate_passport

    data = load_json(args.input)

    if args.type == "passport":
        problems = validate_passport(data).messages()
    elif args.type == "decision":
        problems = validate_decision(data).messages()
    elif args.type == "vc":
        problems = check_vc_structure(data)
    else:
        if not args.policy:
            print("✗ --policy is required to validate a context", file=sys.stderr)
            return 2
        problems = validate_context(args.policy, data).messages()

    if problems:
        print(f"✗ {args.type} is invalid")
        for problem in problems:
            print(f"  - {problem}")
        return 1
    print(f"✓ {args.type} is valid")
    return 0


def cmd_generate_key(args):
    """Generate an Ed25519 registry key file."""
    from oap import config, generate_registry_key

    kid = args.kid or f"oap:registry:key-{datetime.now().strftime('%Y%m%d%H%M%S')}"
    registry_key = generate_registry_key(args.issuer or config.REGISTRY_ISSUER, kid)

    save_json(registry_key.to_dict(include_private=True), args.output)
    print(f"Key written to: {args.output}")
    print(f"\nGenerated key: {kid}", file=sys.stderr)
    print("Keep the private key out of version control.", file=sys.stderr)
    return 0


def cmd_evaluate(args):
    """Evaluate a passport and context against a policy pack and sign the decision."""
    from oap import PolicyEvaluator

    passport = load_json(args.passport)
    context = load_json(args.context)
    registry_key = _load_key(args.key)

    evaluator = PolicyEvaluator(decision_ttl=args.ttl)
    decision = evaluator.decide(args.policy, passport, context, registry_key)

    emit(decision.to_dict(), args.output, "Decision")

    if decision.allow:
        print("\n✓ ALLOW", file=sys.stderr)
        return 0
    print("\n✗ DENY", file=sys.stderr)
    for reason in decision.reasons:
        print(f"  - {reason.code}: {reason.message or ''}", file=sys.stderr)
    return 1


def cmd_verify(args):
    """Verify a signed decision."""
    from oap import DecisionVerifier

    decision = load_json(args.decision)
    passport = load_json(args.passport) if args.passport else None
    context = load_json(args.context) if args.context else None

    verifier = DecisionVerifier(resolver=_resolver(args))
    result = verifier.verify(decision, passport, context, public_key=args.public_key)

    if result.is_valid():
        print(f"✓ {result.outcome.value}")
        return 0
    print(f"✗ INVALID: {result.reason}")
    if result.details:
        print(json.dumps(result.details, indent=2))
    return 1


def cmd_hash(args):
    """Compute the canonical digest of a JSON document."""
    from oap import canonicalize_str, content_digest, passport_digest

    data = load_json(args.file)
    if isinstance(data, dict) and "passport_id" in data:
        print(f"passport_digest: {passport_digest(data)}")
    else:
        print(f"digest: {content_digest(data)}")
    if args.show_canonical:
        print(canonicalize_str(data))
    return 0


def cmd_conformance(args):
    """Run the conformance fixture suite."""
    from oap import ConformanceRunner, run_conformance, save_report

    public_key = args.public_key
    runner = ConformanceRunner(public_key=public_key)
    report = run_conformance(args.root, pack=args.pack, runner=runner)

    for result in report.results:
        mark = "✓" if result.passed else "✗"
        print(f"{mark} {result.case.id}")
        if args.verbose or not result.passed:
            for error in result.errors:
                print(f"    {error}")
            for warning in result.warnings:
                print(f"    warning: {warning}")

    print(f"\nTotal: {report.total}  Passed: {report.passed}  Failed: {report.failed}"
          f"  ({report.success_rate:.1f}%)")

    if args.report:
        path = save_report(report, args.report)
        print(f"Report written to: {path}")

    if report.total == 0:
        print("✗ No conformance cases found", file=sys.stderr)
        return 1
    return 0 if report.all_passed() else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oap",
        description="Open Agent Passport CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  oap generate-key -o registry-key.json
  oap evaluate -p payments.refund.v1 -P passport.json -c context.json -k registry-key.json
  oap verify -d decision.json --public-key <base64>
  oap export -t passport -i passport.json -o passport.vc.json -k registry-key.json
  oap import -t passport -i passport.vc.json -o passport.json --public-key <base64>
  oap conformance -r conformance/cases
        """
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default WARNING)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # export
    export_parser = subparsers.add_parser("export", help="Export passport/decision to VC")
    export_parser.add_argument("-t", "--type", choices=["passport", "decision", "auto"], default="passport")
    export_parser.add_argument("-i", "--input", required=True, help="Passport or decision JSON file")
    export_parser.add_argument("-o", "--output", help="Output VC JSON file")
    export_parser.add_argument("-k", "--key", help="Registry key JSON file")

    # import
    import_parser = subparsers.add_parser("import", help="Import VC to passport/decision")
    import_parser.add_argument("-t", "--type", choices=["passport", "decision"], default="passport")
    import_parser.add_argument("-i", "--input", required=True, help="VC JSON file")
    import_parser.add_argument("-o", "--output", help="Output JSON file")
    import_parser.add_argument("--public-key", help="Issuer public key (base64/base64url/hex)")
    import_parser.add_argument("--registry", help="Registry base URL for key lookup")

    # validate
    validate_parser = subparsers.add_parser("validate", help="Validate an OAP document")
    validate_parser.add_argument("-t", "--type", choices=["passport", "decision", "vc", "context"],
                                 default="passport")
    validate_parser.add_argument("-i", "--input", required=True, help="JSON file")
    validate_parser.add_argument("-p", "--policy", help="Policy pack id (for contexts)")

    # generate-key
    keygen_parser = subparsers.add_parser("generate-key", help="Generate a registry key")
    keygen_parser.add_argument("-o", "--output", default="registry-key.json", help="Output key JSON file")
    keygen_parser.add_argument("--issuer", help="Issuer URL")
    keygen_parser.add_argument("--kid", help="Key identifier")

    # evaluate
    eval_parser = subparsers.add_parser("evaluate", help="Evaluate and sign a decision")
    eval_parser.add_argument("-p", "--policy", required=True, help="Policy pack id")
    eval_parser.add_argument("-P", "--passport", required=True, help="Passport JSON file")
    eval_parser.add_argument("-c", "--context", required=True, help="Context JSON file")
    eval_parser.add_argument("-k", "--key", help="Registry key JSON file")
    eval_parser.add_argument("-o", "--output", help="Output file for the decision")
    eval_parser.add_argument("--ttl", type=int, help="Decision lifetime in seconds")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a signed decision")
    verify_parser.add_argument("-d", "--decision", required=True, help="Decision JSON file")
    verify_parser.add_argument("-P", "--passport", help="Passport JSON file")
    verify_parser.add_argument("-c", "--context", help="Context JSON file (replays the evaluation)")
    verify_parser.add_argument("--public-key", help="Signer public key (base64/base64url/hex)")
    verify_parser.add_argument("--registry", help="Registry base URL for key lookup")

    # hash
    hash_parser = subparsers.add_parser("hash", help="Compute canonical digest")
    hash_parser.add_argument("-f", "--file", required=True, help="JSON file to hash")
    hash_parser.add_argument("--show-canonical", action="store_true", help="Print the canonical form")

    # conformance
    conf_parser = subparsers.add_parser("conformance", help="Run conformance fixtures")
    conf_parser.add_argument("-r", "--root", default="conformance/cases", help="Fixture root directory")
    conf_parser.add_argument("-p", "--pack", help="Only packs whose id contains this")
    conf_parser.add_argument("--report", help="Directory for a JSON report")
    conf_parser.add_argument("--public-key", help="Public key for receipt signatures")
    conf_parser.add_argument("-v", "--verbose", action="store_true")

    return parser


COMMANDS = {
    "export": cmd_export,
    "import": cmd_import,
    "validate": cmd_validate,
    "generate-key": cmd_generate_key,
    "evaluate": cmd_evaluate,
    "verify": cmd_verify,
    "hash": cmd_hash,
    "conformance": cmd_conformance,
}


def main(argv=None) -> int:
    from oap.logging_config import configure_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return 2

    configure_logging(level=args.log_level, json_format=False)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
