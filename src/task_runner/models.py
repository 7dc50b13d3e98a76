# models.py
# Data contracts for the sequential executor and guardrail engine.
# Business rules live in engine.py / guardrails.py. The only logic here is
# the plan's phase-transition bookkeeping and field-level invariants.

import re
import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from task_runner.errors import ConfirmationTimeout, GuardrailBlocked, InvalidTransition

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    """Plan state machine. COMPLETED and FAILED are terminal."""

    NOT_STARTED = "not_started"
    UNDERSTANDING = "understanding"
    APPROACH = "approach"
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED)


_PHASE_RANK = {
    Phase.NOT_STARTED: 0,
    Phase.UNDERSTANDING: 1,
    Phase.APPROACH: 2,
    Phase.PLANNING: 3,
    Phase.EXECUTING: 4,
    Phase.VALIDATING: 5,
    Phase.COMPLETED: 6,
    Phase.FAILED: 7,
}

# Phases that do work, in execution order.
ACTIVE_PHASES = (
    Phase.UNDERSTANDING,
    Phase.APPROACH,
    Phase.PLANNING,
    Phase.EXECUTING,
    Phase.VALIDATING,
)


class PhaseStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RiskLevel(IntEnum):
    """Ordinal risk. Comparison operators follow severity."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.title()


class StepType(str, Enum):
    FILE = "file"
    COMMAND = "command"
    OTHER = "other"


class OperationType(str, Enum):
    READ = "read"
    LIST = "list"
    CREATE = "create"
    WRITE = "write"
    DELETE = "delete"
    MKDIR = "mkdir"
    RMDIR = "rmdir"
    COMMAND = "command"
    OTHER = "other"


class Decision(str, Enum):
    APPROVED = "approved"
    BLOCKED = "blocked"
    NEEDS_CONFIRMATION = "needs_confirmation"
    SKIPPED = "skipped"


class ConfirmationChoice(str, Enum):
    PROCEED = "proceed"
    SKIP = "skip"
    ABORT = "abort"
    MODIFY = "modify"


class RollbackAction(str, Enum):
    RESTORE_FILE = "restore_file"
    DELETE_FILE = "delete_file"
    REMOVE_DIRECTORY = "remove_directory"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Parser-computed confidence judgment. The engine trusts `passed`."""

    confidence: float = Field(..., ge=0.0, le=1.0)
    passed: bool
    issues: list[str] = Field(default_factory=list)
    blocking_issues: list[str] = Field(
        default_factory=list, description="Subset of issues that force passed=False."
    )


# ---------------------------------------------------------------------------
# Phase outputs
# ---------------------------------------------------------------------------


class UnderstandingOutput(BaseModel):
    understanding: str = ""
    approach: str = Field(default="", description="Initial approach sketch, refined in the Approach phase.")
    key_requirements: list[str] = Field(default_factory=list)
    task_type: str = "general"
    complexity: str = "moderate"
    potential_risks: list[str] = Field(default_factory=list)


class ApproachOutput(BaseModel):
    approach: str = ""
    tech_stack: list[str] = Field(default_factory=list)
    architecture_pattern: str = ""
    key_decisions: list[str] = Field(default_factory=list)
    expected_outcomes: list[str] = Field(default_factory=list)


class ExecutionStep(BaseModel):
    """One concrete action in the Execution phase."""

    step_id: str
    sequence: int = Field(..., ge=1)
    name: str = ""
    description: str = ""
    step_type: StepType = StepType.OTHER
    operation: OperationType = OperationType.OTHER
    target: str = Field(default="", description="File path, or the command text for command steps.")
    content: str | None = Field(default=None, description="Payload for write/create operations.")
    allow_failure: bool = False


class PlanOutput(BaseModel):
    steps: list[ExecutionStep] = Field(default_factory=list)
    declared_step_count: int | None = None
    estimated_duration_minutes: int | None = None
    success_criteria: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_step_ids(self) -> "PlanOutput":
        ids = [step.step_id for step in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError("step_id values must be unique within a plan")
        return self


class StepExecutionOutput(BaseModel):
    step_id: str
    tool: str | None = None
    summary: str = ""
    output: str | None = None


class ValidationDetail(BaseModel):
    item: str
    passed: bool
    details: str = ""


class FinalValidationOutput(BaseModel):
    passed: bool = False
    overall_score: float = Field(default=0.0, ge=0.0, le=1.0)
    summary: str = ""
    details: list[ValidationDetail] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class PhaseResult(BaseModel, Generic[T]):
    """Outcome of one phase (or one execution step)."""

    phase: Phase
    status: PhaseStatus
    output: T | None = None
    validation: ValidationResult
    retry_count: int = Field(default=0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    error: str | None = None
    executed_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _status_consistency(self) -> "PhaseResult[T]":
        if (self.output is not None) != (self.status == PhaseStatus.COMPLETED):
            raise ValueError("output must be present iff status is completed")
        if (self.error is not None) != (self.status == PhaseStatus.FAILED):
            raise ValueError("error must be present iff status is failed")
        return self


# ---------------------------------------------------------------------------
# Language model / tool boundary
# ---------------------------------------------------------------------------


class CompletionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ModelResponse(BaseModel):
    content: str
    usage: TokenUsage | None = None


class ToolCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    summary: str
    output: str | None = None


class ResourceSnapshot(BaseModel):
    """State of a path captured before a guarded operation touches it."""

    path: str
    existed: bool
    is_dir: bool = False
    content: str | None = None
    captured_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------


class DangerousPattern(BaseModel):
    """A rule row: regex → minimum risk level."""

    model_config = ConfigDict(frozen=True)

    name: str
    pattern: str
    risk_level: RiskLevel
    reason: str

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid pattern {value!r}: {exc}") from exc
        return value

    def matches(self, text: str) -> bool:
        return re.search(self.pattern, text, re.IGNORECASE) is not None


class OperationGuard(BaseModel):
    """
    A proposed side-effecting action awaiting guardrail review.

    risk_level is read-only for callers: it is stamped by the guardrail
    engine during assessment and is None until then.
    """

    operation_type: OperationType
    target: str = ""
    estimated_impact: str = ""
    step_id: str | None = None
    content: str | None = None
    snapshot: ResourceSnapshot | None = None

    _risk_level: RiskLevel | None = PrivateAttr(default=None)

    @property
    def risk_level(self) -> RiskLevel | None:
        return self._risk_level


class RiskAssessment(BaseModel):
    risk_level: RiskLevel
    baseline_risk: RiskLevel
    matched_patterns: list[DangerousPattern] = Field(default_factory=list)
    rollback_capable: bool = True


class GuardDecision(BaseModel):
    decision: Decision
    reason: str
    assessment: RiskAssessment
    deny_listed: bool = False
    allow_listed: bool = False


class ConfirmationRequest(BaseModel):
    request_id: str = Field(default_factory=_new_id)
    step_id: str | None = None
    operation_type: OperationType
    target: str
    estimated_impact: str = ""
    risk_level: RiskLevel
    reasons: list[str] = Field(default_factory=list)
    rollback_capable: bool = True
    options: list[ConfirmationChoice] = Field(default_factory=lambda: list(ConfirmationChoice))
    requested_at: datetime = Field(default_factory=_now)
    timeout_seconds: float = 120.0

    def format_prompt(self) -> str:
        lines = [
            "Operation requires confirmation",
            "",
            f"Operation: {self.operation_type.value}",
            f"Target:    {self.target}",
            f"Risk:      {self.risk_level.label}",
        ]
        if self.estimated_impact:
            lines.append(f"Impact:    {self.estimated_impact}")
        lines.append(f"Rollback:  {'available' if self.rollback_capable else 'NOT possible'}")
        if self.reasons:
            lines.append("")
            lines.append("Matched patterns:")
            lines.extend(f"  - {reason}" for reason in self.reasons)
        lines.append("")
        lines.append("Options: " + " / ".join(option.value for option in self.options))
        return "\n".join(lines)


class ConfirmationResponse(BaseModel):
    request_id: str
    choice: ConfirmationChoice
    modified_target: str | None = None
    notes: str | None = None
    timed_out: bool = False
    responded_at: datetime = Field(default_factory=_now)

    @classmethod
    def timeout(cls, request: ConfirmationRequest) -> "ConfirmationResponse":
        return cls(
            request_id=request.request_id,
            choice=ConfirmationChoice.ABORT,
            timed_out=True,
            notes=f"no response within {request.timeout_seconds:g}s",
        )


class Authorization(BaseModel):
    """Final guardrail verdict for one step, after any confirmation round."""

    decision: Decision
    reason: str
    assessment: RiskAssessment
    guard: OperationGuard
    confirmation: ConfirmationResponse | None = None

    def raise_for_decision(self) -> None:
        """Raise GuardrailBlocked (ConfirmationTimeout for an unanswered prompt) if blocked."""
        if self.decision != Decision.BLOCKED:
            return
        if self.confirmation is not None and self.confirmation.timed_out:
            raise ConfirmationTimeout(self.reason)
        raise GuardrailBlocked(self.reason)


class RollbackStep(BaseModel):
    sequence: int
    action: RollbackAction
    path: str
    content: str | None = None
    description: str = ""


class RollbackPlan(BaseModel):
    """Ordered undo steps for one guarded operation. Consumed on use."""

    plan_id: str = Field(default_factory=_new_id)
    step_id: str | None = None
    steps: list[RollbackStep] = Field(default_factory=list)
    rollback_capable: bool = True
    consumed: bool = False
    created_at: datetime = Field(default_factory=_now)

    def steps_reversed(self) -> list[RollbackStep]:
        return list(reversed(self.steps))


class DryRunResult(BaseModel):
    operation_type: OperationType
    target: str
    risk_level: RiskLevel
    decision: Decision
    reason: str
    matched_patterns: list[str] = Field(default_factory=list)
    predicted_changes: list[str] = Field(default_factory=list)
    would_be_blocked: bool
    needs_confirmation: bool = False
    rollback_capable: bool = True


# ---------------------------------------------------------------------------
# Execution plan
# ---------------------------------------------------------------------------


class StepRecord(PhaseResult[StepExecutionOutput]):
    """History entry for one execution step."""

    step_id: str
    sequence: int
    risk_level: RiskLevel | None = None
    decision: Decision | None = None
    matched_patterns: list[str] = Field(default_factory=list)
    rollback_plan: RollbackPlan | None = None
    confirmation: ConfirmationResponse | None = None


class PlanFailure(BaseModel):
    failed_at: Phase
    reason: str
    step_id: str | None = None
    rollback_errors: list[str] = Field(default_factory=list)


class ExecutionPlan(BaseModel):
    """One task's full run. Owned exclusively by a single execution."""

    task_id: str = Field(default_factory=_new_id)
    description: str
    current_phase: Phase = Phase.NOT_STARTED
    current_step: int | None = None
    total_steps: int = 0
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    understanding: PhaseResult[UnderstandingOutput] | None = None
    approach: PhaseResult[ApproachOutput] | None = None
    planning: PhaseResult[PlanOutput] | None = None
    execution_history: list[StepRecord] = Field(default_factory=list)
    final_validation: PhaseResult[FinalValidationOutput] | None = None

    confirmation_requests: list[ConfirmationRequest] = Field(default_factory=list)
    commitment_root: str | None = None
    failure: PlanFailure | None = None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.current_phase.is_terminal

    def advance_to(self, phase: Phase) -> None:
        if phase == Phase.FAILED:
            raise InvalidTransition("use fail() to enter the failed state")
        if self.is_terminal:
            raise InvalidTransition(f"plan already {self.current_phase.value}")
        if phase.rank <= self.current_phase.rank:
            raise InvalidTransition(
                f"cannot move from {self.current_phase.value} back to {phase.value}"
            )
        if phase == Phase.COMPLETED and self.current_phase != Phase.VALIDATING:
            raise InvalidTransition("only the validating phase can complete a plan")
        self.current_phase = phase
        if phase == Phase.COMPLETED:
            self.completed_at = _now()

    def fail(self, reason: str, step_id: str | None = None) -> PlanFailure:
        if self.is_terminal:
            raise InvalidTransition(f"plan already {self.current_phase.value}")
        self.failure = PlanFailure(failed_at=self.current_phase, reason=reason, step_id=step_id)
        self.current_phase = Phase.FAILED
        self.completed_at = _now()
        return self.failure

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def completed_steps_count(self) -> int:
        return sum(1 for record in self.execution_history if record.status == PhaseStatus.COMPLETED)

    def find_failed_step(self) -> StepRecord | None:
        for record in self.execution_history:
            if record.status == PhaseStatus.FAILED:
                return record
        return None

    def total_duration_ms(self) -> int:
        end = self.completed_at or _now()
        return int((end - self.started_at).total_seconds() * 1000)

    def rollback_plans(self) -> list[RollbackPlan]:
        """Unconsumed rollback plans in execution order."""
        return [
            record.rollback_plan
            for record in self.execution_history
            if record.rollback_plan is not None and not record.rollback_plan.consumed
        ]
