# models.py
# Data contracts for the task engine.
# Besides validation, the only logic here is the step-numbering and
# blackboard bookkeeping of WorkflowState.

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from task_engine.results import ToolResult

TASK_COMPLETE_TOOL = "task_complete"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ToolKind(str, Enum):
    LLM = "llm"
    EXTERNAL = "external"


class Strategy(str, Enum):
    RETRY = "retry"
    ALTERNATIVE = "alternative"
    SKIP = "skip"
    MANUAL_INTERVENTION = "manual_intervention"


class ExecutionPlan(BaseModel):
    """The next action chosen by the planner."""

    tool: str = Field(..., description="Tool or capability name. May be empty before reselection.")
    tool_kind: ToolKind = Field(default=ToolKind.LLM)
    service_name: str | None = Field(default=None, description="Target service, external tools only.")
    args: dict[str, Any] = Field(default_factory=dict)
    expected_output: str = Field(default="")
    reasoning: str = Field(default="")

    @model_validator(mode="after")
    def _service_matches_kind(self) -> "ExecutionPlan":
        if self.tool_kind is ToolKind.EXTERNAL and not self.service_name:
            raise ValueError("external tool plans require a service_name")
        if self.tool_kind is ToolKind.LLM:
            self.service_name = None
        return self

    @property
    def action_key(self) -> str:
        return f"{self.service_name or 'llm'}:{self.tool}"

    @property
    def is_completion_claim(self) -> bool:
        return self.tool == TASK_COMPLETE_TOOL


class ExecutionStep(BaseModel):
    """One committed iteration of the loop."""

    step_number: int = Field(..., ge=1)
    step_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    plan: ExecutionPlan
    result: ToolResult | None = None
    success: bool
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)


class FailureRecord(BaseModel):
    """Per-tool failure bookkeeping. attempt_count never decreases."""

    tool: str
    last_error: str
    attempt_count: int = Field(default=1, ge=1)
    last_attempt_time: datetime = Field(default_factory=_now)
    strategy: Strategy = Strategy.RETRY
    max_retries: int = 2


class WorkflowState(BaseModel):
    """All mutable state of one task invocation."""

    goal: str
    current_objective: str = ""
    execution_history: list[ExecutionStep] = Field(default_factory=list)
    blackboard: dict[str, Any] = Field(default_factory=dict)
    current_plan: ExecutionPlan | None = None
    iteration_count: int = 0
    is_complete: bool = False
    errors: list[str] = Field(default_factory=list)
    failure_history: dict[str, FailureRecord] = Field(default_factory=dict)

    def append_step(
        self,
        plan: ExecutionPlan,
        success: bool,
        result: ToolResult | None = None,
        error: str | None = None,
    ) -> ExecutionStep:
        step = ExecutionStep(
            step_number=len(self.execution_history) + 1,
            plan=plan,
            result=result,
            success=success,
            error=error,
        )
        self.execution_history.append(step)
        if success and result is not None:
            self.blackboard[f"step{step.step_number}"] = result.to_payload()
            self.blackboard["lastResult"] = result.to_payload()
        return step

    @property
    def last_successful_step(self) -> ExecutionStep | None:
        for step in reversed(self.execution_history):
            if step.success:
                return step
        return None

    @property
    def completion_claims(self) -> int:
        return sum(1 for step in self.execution_history if step.plan.is_completion_claim)


class SessionTurn(BaseModel):
    goal: str
    answer: str
    success: bool
    timestamp: datetime = Field(default_factory=_now)


class TaskSession(BaseModel):
    """
    Caller-owned context for a conversation.

    The caller creates it, passes it to every run and decides when to drop
    it. The engine only appends turns.
    """

    task_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    principal: str = Field(default="anonymous", description="Identity used for tool connections.")
    services: list[str] = Field(default_factory=list)
    turns: list[SessionTurn] = Field(default_factory=list)

    def recent_turns(self, limit: int = 3) -> list[SessionTurn]:
        return self.turns[-limit:]


class Event(BaseModel):
    """A single item of the orchestrator's event stream."""

    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
