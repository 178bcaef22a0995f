from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional


class EvaluateRequest(BaseModel):
    passport: Dict[str, Any]
    context: Dict[str, Any] = Field(default_factory=dict)


class VerifyDecisionRequest(BaseModel):
    decision: Dict[str, Any]
    passport: Optional[Dict[str, Any]] = None
    context: Optional[Dict[str, Any]] = None


class ExportRequest(BaseModel):
    type: Literal["passport", "decision", "auto"] = "auto"
    data: Dict[str, Any]


class ImportRequest(BaseModel):
    type: Literal["passport", "decision"] = "passport"
    credential: Dict[str, Any]


class ErrorDetail(BaseModel):
    error: str
    violations: List[str] = Field(default_factory=list)
