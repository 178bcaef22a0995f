"""
OAP HTTP Adapter

Thin FastAPI surface over the evaluator, verifier and VC codec:

    GET  /.well-known/oap/keys.json   registry key set
    POST /verify/{policy_id}          evaluate and sign a decision
    POST /decisions/verify            verify a signed decision
    POST /vc/export                   wrap a passport or decision in a VC
    POST /vc/import                   unwrap and verify a VC

Run with: uvicorn --factory oap.server:create_default_app
(loads the registry key from OAP_SIGNING_KEY_PATH)
"""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from . import config
from .errors import CanonicalizationFailure, KeyUnresolvable, SchemaViolation, SignatureInvalid, VCStructureInvalid
from .evaluator import PolicyEvaluator
from .keys import KeyResolver, build_key_set
from .logging_config import configure_logging, set_request_id
from .schemas import ErrorDetail, EvaluateRequest, ExportRequest, ImportRequest, VerifyDecisionRequest
from .signing import RegistryKey
from .vc import decision_to_vc, passport_to_vc, to_vc, vc_to_decision, vc_to_passport
from .verifier import DecisionVerifier

log = logging.getLogger(__name__)

EXPORTERS = {"passport": passport_to_vc, "decision": decision_to_vc, "auto": to_vc}
IMPORTERS = {"passport": vc_to_passport, "decision": vc_to_decision}


def _unprocessable(error: str, violations=None) -> HTTPException:
    detail = ErrorDetail(error=error, violations=[str(v) for v in violations or []])
    return HTTPException(422, detail.model_dump())


def create_app(
    registry_key: RegistryKey,
    evaluator: Optional[PolicyEvaluator] = None,
    resolver: Optional[KeyResolver] = None
) -> FastAPI:
    """
    Build the OAP app around one registry key.

    The registry key is pinned in the resolver, so decisions and VCs
    issued by this app verify without a network fetch.
    """
    evaluator = evaluator or PolicyEvaluator()
    resolver = resolver or KeyResolver(registry_base_url=registry_key.issuer)
    resolver.register_registry_key(registry_key)
    verifier = DecisionVerifier(resolver=resolver, evaluator=evaluator)

    app = FastAPI(title="Open Agent Passport", version="1.0.0")
    app.state.registry_key = registry_key
    app.state.evaluator = evaluator
    app.state.resolver = resolver

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        start = time.time()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        duration_ms = int((time.time() - start) * 1000)
        log.info("request_complete status=%s duration_ms=%d", response.status_code, duration_ms,
                 extra={"extra_fields": {"route": request.url.path}})
        return response

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "packs": evaluator.pack_registry.list_packs()}

    @app.get("/.well-known/oap/keys.json")
    def key_set():
        return build_key_set([registry_key])

    @app.post("/verify/{policy_id}")
    def evaluate(policy_id: str, req: EvaluateRequest):
        try:
            decision = evaluator.decide(policy_id, req.passport, req.context, registry_key)
        except CanonicalizationFailure as e:
            raise _unprocessable("canonicalization_failure", [e])
        return decision.to_dict()

    @app.post("/decisions/verify")
    def verify_decision(req: VerifyDecisionRequest):
        result = verifier.verify(req.decision, req.passport, req.context)
        return result.to_dict()

    @app.post("/vc/export")
    def export_vc(req: ExportRequest):
        try:
            return EXPORTERS[req.type](req.data, registry_key)
        except SchemaViolation as e:
            raise _unprocessable("schema_violation", e.violations)
        except CanonicalizationFailure as e:
            raise _unprocessable("canonicalization_failure", [e])

    @app.post("/vc/import")
    def import_vc(req: ImportRequest):
        try:
            return IMPORTERS[req.type](req.credential, resolver=resolver)
        except VCStructureInvalid as e:
            raise _unprocessable("vc_structure_invalid", e.problems)
        except SchemaViolation as e:
            raise _unprocessable("schema_violation", e.violations)
        except (KeyUnresolvable, SignatureInvalid) as e:
            raise HTTPException(403, ErrorDetail(error=str(e)).model_dump())

    return app


def create_default_app() -> FastAPI:
    configure_logging(level=config.LOG_LEVEL, json_format=config.LOG_JSON)
    return create_app(config.load_registry_key())

