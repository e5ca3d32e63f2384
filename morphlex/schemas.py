"""Pydantic schemas for all engine I/O contracts.

These schemas define the strict contracts between:
- the plan generator and the executor (plans and steps)
- the process runner and the dispatcher (command results)
- the executor and its observers (notification events)
- API endpoints and clients
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from morphlex.errors import PlanParseError


# Reserved parameter tokens resolved at dispatch time
TRANSFORM_SCRIPT_PLACEHOLDER = "<TRANSFORM_SCRIPT>"
TARGET_FILE_PLACEHOLDER = "<TARGET_FILE>"

# Tokens emitted by older plan prompts
LEGACY_PLACEHOLDERS: dict[str, str] = {
    "<CODEMOD_PLACEHOLDER>": TRANSFORM_SCRIPT_PLACEHOLDER,
    "<TARGET_FILE_PLACEHOLDER>": TARGET_FILE_PLACEHOLDER,
}


# =============================================================================
# Enums
# =============================================================================

class ToolKind(str, Enum):
    """Execution strategy of a plan step."""
    SHELL_COMMAND = "ShellCommand"
    TRANSFORM = "Transform"
    VERIFICATION = "Verification"


class StepStatus(str, Enum):
    """Status of a single plan step."""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"


class RunStatus(str, Enum):
    """Status of a plan execution tracked by the API."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Tool names produced by the plan generator
LEGACY_TOOL_KINDS: dict[str, ToolKind] = {
    "git": ToolKind.SHELL_COMMAND,
    "npm": ToolKind.SHELL_COMMAND,
    "fs": ToolKind.SHELL_COMMAND,
    "shell": ToolKind.SHELL_COMMAND,
    "jscodeshift": ToolKind.TRANSFORM,
    "transform": ToolKind.TRANSFORM,
    "test": ToolKind.VERIFICATION,
    "verification": ToolKind.VERIFICATION,
}


# =============================================================================
# Plan Schemas
# =============================================================================

class Step(BaseModel):
    """One planned action. Only ``status`` changes after generation."""
    description: str = Field(..., description="Human-readable intent")
    tool_kind: ToolKind = Field(..., description="Execution strategy")
    parameters: list[str] = Field(default_factory=list, description="Command vector, may hold placeholders")
    status: StepStatus = Field(default=StepStatus.PENDING)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Step":
        """Build a step from either the native or the generator's shape.

        The generator emits ``{"step", "tool", "params"}`` with tool names
        such as ``git`` or ``jscodeshift``; those are mapped onto the closed
        ``ToolKind`` set and legacy placeholder tokens are normalized.
        """
        if not isinstance(payload, dict):
            raise PlanParseError(f"Step must be an object, got {type(payload).__name__}")

        if "tool_kind" in payload:
            try:
                return cls.model_validate(payload)
            except ValidationError as e:
                raise PlanParseError(f"Invalid step: {e}") from e

        tool = str(payload.get("tool", "")).strip()
        tool_kind = LEGACY_TOOL_KINDS.get(tool.lower())
        if tool_kind is None:
            try:
                tool_kind = ToolKind(tool)
            except ValueError:
                raise PlanParseError(f"Unknown tool: {tool!r}") from None

        params = payload.get("params", payload.get("parameters", []))
        if isinstance(params, str):
            params = params.split()
        if not isinstance(params, list):
            raise PlanParseError(f"Step params must be a list, got {type(params).__name__}")

        return cls(
            description=str(payload.get("step", payload.get("description", ""))),
            tool_kind=tool_kind,
            parameters=[LEGACY_PLACEHOLDERS.get(str(p), str(p)) for p in params],
        )


class Plan(BaseModel):
    """Ordered list of steps; order is execution order."""
    steps: list[Step] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "Plan":
        """Parse a list of steps, or an object holding one under ``steps``/``plan``."""
        if isinstance(payload, dict):
            payload = payload.get("steps", payload.get("plan"))
        if not isinstance(payload, list):
            raise PlanParseError("Plan must be a list of steps")
        return cls(steps=[Step.from_payload(item) for item in payload])

    def to_markdown(self) -> str:
        """Render plan as markdown."""
        md = "# Refactoring Plan\n\n"
        for i, step in enumerate(self.steps, 1):
            command = " ".join(step.parameters)
            md += f"{i}. **{step.tool_kind.value}** [{step.status.value}]: {step.description}"
            md += f" (`{command}`)\n" if command else "\n"
        return md


# =============================================================================
# Execution Schemas
# =============================================================================

class CommandResult(BaseModel):
    """Outcome of one external invocation.

    ``exit_code`` is None when the process could not be started; the spawn
    error text is then carried in ``stderr``.
    """
    model_config = ConfigDict(frozen=True)

    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExecutionReport(BaseModel):
    """Terminal outcome of one plan execution."""
    succeeded: bool
    statuses: list[StepStatus] = Field(default_factory=list)
    message: str | None = None
    error: str | None = None


# =============================================================================
# Notification Events
# =============================================================================

class StepStatusChanged(BaseModel):
    type: Literal["step_status"] = "step_status"
    index: int
    status: StepStatus


class LogLine(BaseModel):
    type: Literal["log"] = "log"
    stream: Literal["stdout", "stderr"]
    text: str


class Info(BaseModel):
    type: Literal["info"] = "info"
    text: str


class OverallSucceeded(BaseModel):
    type: Literal["succeeded"] = "succeeded"
    message: str


class OverallFailed(BaseModel):
    type: Literal["failed"] = "failed"
    error: str


Event = Annotated[
    Union[StepStatusChanged, LogLine, Info, OverallSucceeded, OverallFailed],
    Field(discriminator="type"),
]


# =============================================================================
# API Request/Response Schemas
# =============================================================================

class PlanCreateRequest(BaseModel):
    """API request to generate a plan."""
    goal: str = Field(..., description="Natural language refactoring goal")
    target_path: str = Field(..., description="Path of the file to refactor")


class PlanResponse(BaseModel):
    """API response carrying a generated plan."""
    target_path: str
    steps: list[Step]


class RunCreateRequest(BaseModel):
    """API request to execute a plan."""
    target_path: str = Field(..., description="Path of the file to refactor")
    steps: list[Step] = Field(..., description="Ordered plan steps")
    work_dir: str | None = Field(default=None, description="Directory to run commands in")


class GoalRunRequest(BaseModel):
    """API request to generate a plan and execute it in one go."""
    goal: str = Field(..., description="Natural language refactoring goal")
    target_path: str = Field(..., description="Path of the file to refactor")
    work_dir: str | None = Field(default=None, description="Directory to run commands in")


class RunResponse(BaseModel):
    """API response for run status."""
    run_id: str
    status: RunStatus
    target_path: str
    step_statuses: list[StepStatus] = Field(default_factory=list)
    message: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class RunEventsResponse(BaseModel):
    """API response listing a run's events in production order."""
    run_id: str
    events: list[Event] = Field(default_factory=list)


# =============================================================================
# LLM Schemas
# =============================================================================

class LLMMessage(BaseModel):
    """A single message in an LLM conversation."""
    role: Literal["system", "user", "assistant"] = Field(...)
    content: str = Field(...)


class LLMResponse(BaseModel):
    """Response from an LLM provider."""
    content: str | None = None
    model: str
    usage: dict[str, Any] = Field(default_factory=dict)
    finish_reason: str | None = None
    raw_response: dict[str, Any] | None = None
