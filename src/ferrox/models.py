# models.py
# Data contracts for the Ferrox engine.
# No control flow lives here: pure schema, validation and small helpers.

import json
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def new_correlation_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"
    ACTION_RESULT = "action_result"


class ParamType(str, Enum):
    """Semantic parameter types an action may declare."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    ANY = "any"


class ActionErrorKind(str, Enum):
    UNKNOWN_ACTION = "unknown_action"
    ARGUMENT_MISMATCH = "argument_mismatch"
    EXECUTION_ERROR = "action_execution_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class AgentState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_ACTIONS = "executing_actions"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Action schema
# ---------------------------------------------------------------------------


class ActionParameter(BaseModel):
    """One declared parameter of an action."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: ParamType = Field(default=ParamType.STRING, description="Semantic type checked at validation.")
    required: bool = True
    default: Any = Field(default=None, description="Filled in when an optional parameter is omitted.")
    description: str = ""


class ActionSignature(BaseModel):
    """
    Immutable description of an action as the model sees it.

    `exclusive` actions never run concurrently with another exclusive action
    of the same turn. `cancellable=False` marks actions whose side effects
    cannot be safely abandoned once submitted (order placement): they are
    shielded from cancellation and timeouts only stop the wait, not the work.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: tuple[ActionParameter, ...] = ()
    exclusive: bool = False
    cancellable: bool = True

    @field_validator("parameters")
    @classmethod
    def _unique_parameter_names(cls, value: tuple[ActionParameter, ...]) -> tuple[ActionParameter, ...]:
        names = [p.name for p in value]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate parameter names in {names}")
        return value

    def parameter(self, name: str) -> ActionParameter | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None


# ---------------------------------------------------------------------------
# Requests & results
# ---------------------------------------------------------------------------


class ActionInvocationRequest(BaseModel):
    """A model's request to run one action. Correlation id links it to its result."""

    action: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str = Field(default_factory=new_correlation_id)


class ActionError(BaseModel):
    kind: ActionErrorKind
    detail: str = ""


class ActionResult(BaseModel):
    """Outcome of exactly one ActionInvocationRequest."""

    correlation_id: str
    action: str
    value: Any = None
    error: ActionError | None = None
    preview: bool = Field(default=False, description="True when the action awaits confirmation.")

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, request: ActionInvocationRequest, value: Any, preview: bool = False) -> "ActionResult":
        return cls(
            correlation_id=request.correlation_id,
            action=request.action,
            value=value,
            preview=preview,
        )

    @classmethod
    def failure(cls, request: ActionInvocationRequest, kind: ActionErrorKind, detail: str) -> "ActionResult":
        return cls(
            correlation_id=request.correlation_id,
            action=request.action,
            error=ActionError(kind=kind, detail=detail),
        )

    def render(self) -> str:
        """JSON payload handed back to the model."""
        if self.error is not None:
            body = {"ok": False, "error": self.error.kind.value, "detail": self.error.detail}
        else:
            body = {"ok": True, "value": self.value}
            if self.preview:
                body["preview"] = True
        return json.dumps(body, default=str, ensure_ascii=False)


class FinalMessage(BaseModel):
    """A model turn that ends the loop."""

    content: str


ModelResponse = FinalMessage | list[ActionInvocationRequest]


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class Message(BaseModel):
    role: Role
    position: int = Field(..., ge=0)
    content: str = ""
    requests: list[ActionInvocationRequest] = Field(
        default_factory=list,
        description="Requests issued by an agent turn; empty for final answers.",
    )
    result: ActionResult | None = None

    @property
    def correlation_id(self) -> str | None:
        return self.result.correlation_id if self.result else None


class Transcript(BaseModel):
    """Ordered conversation history. Positions always equal list indices."""

    messages: list[Message] = Field(default_factory=list)

    @classmethod
    def from_text(cls, text: str) -> "Transcript":
        transcript = cls()
        transcript.add_user(text)
        return transcript

    def __len__(self) -> int:
        return len(self.messages)

    def _append(self, role: Role, **fields: Any) -> Message:
        message = Message(role=role, position=len(self.messages), **fields)
        self.messages.append(message)
        return message

    def add_user(self, content: str) -> Message:
        return self._append(Role.USER, content=content)

    def add_agent(self, content: str = "", requests: list[ActionInvocationRequest] | None = None) -> Message:
        return self._append(Role.AGENT, content=content, requests=list(requests or []))

    def add_result(self, result: ActionResult) -> Message:
        return self._append(Role.ACTION_RESULT, content=result.render(), result=result)

    def results(self) -> list[ActionResult]:
        return [m.result for m in self.messages if m.result is not None]

    @property
    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def copy_fresh(self) -> "Transcript":
        return self.model_copy(deep=True)
