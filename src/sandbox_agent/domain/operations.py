"""Operation variants requested by the model and the results they produce.

The model replies with an ``AgentDecision``: a thought, an optional message
for the user and an ordered list of operations.  Operations form a closed
discriminated union keyed by ``op``; an unknown kind fails validation instead
of being dropped.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sandbox_agent.domain.errors import ProtocolError

RESULT_SUCCESS = "success"
RESULT_ERROR = "error"


class WriteOp(BaseModel):
    op: Literal["write"]
    path: str
    content: str


class ReadOp(BaseModel):
    op: Literal["read"]
    path: str


class MkdirOp(BaseModel):
    op: Literal["mkdir"]
    path: str


class DeleteOp(BaseModel):
    op: Literal["delete"]
    path: str


class MoveOp(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    op: Literal["move"]
    from_: str = Field(alias="from")
    to: str


class CopyOp(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    op: Literal["copy"]
    from_: str = Field(alias="from")
    to: str


class ListOp(BaseModel):
    op: Literal["list"]
    path: str
    pattern: Optional[str] = None


class MoveAllOp(BaseModel):
    op: Literal["move_all"]
    path: str
    destination: str
    extensions: List[str]


class RememberOp(BaseModel):
    op: Literal["remember"]
    key: str
    value: str


class RecallOp(BaseModel):
    op: Literal["recall"]
    key: str


class WebSearchOp(BaseModel):
    op: Literal["web_search"]
    query: str


class SemanticSearchOp(BaseModel):
    op: Literal["semantic_search"]
    query: str


class GenerateTemplateOp(BaseModel):
    op: Literal["generate_template"]
    templateName: str
    targetDir: str
    variables: Optional[Dict[str, str]] = None


class IndexFilesOp(BaseModel):
    op: Literal["index_files"]
    force: Optional[bool] = None


class PlanProposalOp(BaseModel):
    op: Literal["plan_proposal"]
    planName: str
    steps: List[str]
    complexity: Literal["low", "medium", "high"]


Operation = Annotated[
    Union[
        WriteOp,
        ReadOp,
        MkdirOp,
        DeleteOp,
        MoveOp,
        CopyOp,
        ListOp,
        MoveAllOp,
        RememberOp,
        RecallOp,
        WebSearchOp,
        SemanticSearchOp,
        GenerateTemplateOp,
        IndexFilesOp,
        PlanProposalOp,
    ],
    Field(discriminator="op"),
]

FILESYSTEM_KINDS = frozenset(["write", "read", "mkdir", "delete", "move", "copy", "list", "move_all"])


class AgentDecision(BaseModel):
    thought: str
    message: Optional[str] = None
    operations: List[Operation]
    # Attached by the gateway from the provider response, never sent by the model.
    usage: Optional[Dict[str, Any]] = Field(default=None, exclude=True)


@dataclass(frozen=True)
class OperationResult:
    status: str
    op: str
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    code: str = ""

    @property
    def ok(self) -> bool:
        return self.status == RESULT_SUCCESS

    @classmethod
    def success(cls, op: str, **payload: Any) -> "OperationResult":
        return cls(status=RESULT_SUCCESS, op=op, payload=payload)

    @classmethod
    def failure(cls, op: str, error: str, code: str = "", **payload: Any) -> "OperationResult":
        return cls(status=RESULT_ERROR, op=op, payload=payload, error=error, code=code)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status, "op": self.op}
        data.update(self.payload)
        if self.error is not None:
            data["error"] = self.error
        if self.code:
            data["code"] = self.code
        return data


def operation_to_dict(operation: Any) -> Dict[str, Any]:
    return operation.model_dump(by_alias=True, exclude_none=True)


def operation_target(operation: Any) -> str:
    """Short identifier of what an operation touches, without its payload."""
    if isinstance(operation, (MoveOp, CopyOp)):
        return f"{operation.from_} -> {operation.to}"
    if isinstance(operation, MoveAllOp):
        return f"{operation.path} -> {operation.destination}"
    if isinstance(operation, (RememberOp, RecallOp)):
        return operation.key
    if isinstance(operation, (WebSearchOp, SemanticSearchOp)):
        return operation.query
    if isinstance(operation, GenerateTemplateOp):
        return operation.targetDir
    if isinstance(operation, PlanProposalOp):
        return operation.planName
    if isinstance(operation, IndexFilesOp):
        return "."
    return str(getattr(operation, "path", ""))


def operation_summary(operation: Any) -> Dict[str, str]:
    return {"op": operation.op, "target": operation_target(operation)}


_FENCED_JSON_RE = re.compile(r"```(?:json)?\s?([\s\S]*?)```")


def clean_json(content: str) -> str:
    return _FENCED_JSON_RE.sub(r"\1", content or "").strip()


def decode_decision(content: str) -> AgentDecision:
    """Parse raw model text into a decision or raise ``ProtocolError``."""
    cleaned = clean_json(content)
    if not cleaned:
        raise ProtocolError("Model returned empty content.")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError("Expected a JSON object with 'thought' and 'operations'.")
    try:
        return AgentDecision.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(f"Decision does not match schema: {_format_validation_error(exc)}") from exc


def _format_validation_error(exc: ValidationError) -> str:
    parts: List[str] = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(x) for x in err.get("loc") or ())
        parts.append(f"{loc}: {err.get('msg', '')}" if loc else str(err.get("msg", "")))
    return "; ".join(parts)
