"""
Logging for the OAP engine.

Modules log through ``logging.getLogger(__name__)``. Authorization-relevant
events (decisions, key resolution, signature failures, credential
import/export) go through ``audit_log`` so they carry a stable
``event_type`` and the current request id.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

request_id_var: ContextVar[str] = ContextVar('oap_request_id', default='')

PLAIN_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'

# handlers installed by configure_logging carry this attribute
_OAP_HANDLER = "_oap_handler"


class AuditEvent(str, Enum):
    DECISION_ISSUED = "DECISION_ISSUED"
    KEY_RESOLVED = "KEY_RESOLVED"
    KEY_RESOLUTION_FAILED = "KEY_RESOLUTION_FAILED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    VC_EXPORTED = "VC_EXPORTED"
    VC_IMPORTED = "VC_IMPORTED"
    SECURITY_EVENT = "SECURITY_EVENT"


SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; ``extra_fields`` are merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "ts": created.strftime('%Y-%m-%dT%H:%M:%S.') + f"{created.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            entry.update(extra_fields)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, sort_keys=True)


class AuditLogger:
    """Emits audit events on the ``oap.audit`` logger."""

    def __init__(self, name: str = "oap.audit"):
        self.logger = logging.getLogger(name)

    def emit(self, event: AuditEvent, level: int, message: str, **fields) -> None:
        if not self.logger.isEnabledFor(level):
            return
        payload = {k: v for k, v in fields.items() if v is not None}
        payload["event_type"] = event.value
        self.logger.log(level, "%s %s", event.value, message, extra={"extra_fields": payload})

    def decision_issued(
        self,
        decision_id: str,
        policy_id: str,
        agent_id: str,
        allow: bool,
        reasons: Optional[List[str]] = None
    ) -> None:
        """Denies are logged at WARNING so they stand out in aggregated logs."""
        self.emit(
            AuditEvent.DECISION_ISSUED,
            logging.INFO if allow else logging.WARNING,
            f"{policy_id} {'allow' if allow else 'deny'} agent={agent_id}",
            decision_id=decision_id,
            policy_id=policy_id,
            agent_id=agent_id,
            allow=allow,
            reasons=reasons,
        )

    def key_resolved(self, kid: str, source: str) -> None:
        self.emit(AuditEvent.KEY_RESOLVED, logging.DEBUG, f"kid={kid} via {source}", kid=kid, source=source)

    def key_resolution_failed(self, kid: str, reason: str) -> None:
        self.emit(AuditEvent.KEY_RESOLUTION_FAILED, logging.WARNING, f"kid={kid} {reason}",
                  kid=kid, reason=reason)

    def signature_invalid(self, subject: str, kid: Optional[str] = None) -> None:
        self.emit(AuditEvent.SIGNATURE_INVALID, logging.WARNING, f"{subject} kid={kid}",
                  subject=subject, kid=kid)

    def vc_exported(self, credential_type: str, issuer: str) -> None:
        self.emit(AuditEvent.VC_EXPORTED, logging.INFO, f"{credential_type} issuer={issuer}",
                  credential_type=credential_type, issuer=issuer)

    def vc_imported(self, credential_type: str, issuer: str) -> None:
        self.emit(AuditEvent.VC_IMPORTED, logging.INFO, f"{credential_type} issuer={issuer}",
                  credential_type=credential_type, issuer=issuer)

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        self.emit(
            AuditEvent.SECURITY_EVENT,
            SEVERITY_LEVELS.get(severity, logging.WARNING),
            event,
            security_event=event,
            severity=severity,
            **details
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Install OAP handlers on the root logger.

    Safe to call repeatedly: handlers from an earlier call are replaced,
    handlers installed by anything else are left alone.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: StructuredFormatter when true, plain text otherwise
        log_file: also write to this file
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    root.setLevel(numeric)
    for handler in [h for h in root.handlers if getattr(h, _OAP_HANDLER, False)]:
        root.removeHandler(handler)
        handler.close()

    formatter = StructuredFormatter() if json_format else logging.Formatter(PLAIN_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _OAP_HANDLER, True)
        root.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id (a fresh UUID when none is given) to the current context."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


audit_log = AuditLogger()
