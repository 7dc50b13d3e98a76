# engine.py
# Sequential Execution Engine
#
# The executor is the kernel. The language model is a passive text producer,
# the guardrail engine the only authority on side effects, the tool registry
# the only thing that touches the workspace. This class owns control flow,
# retries, phase bookkeeping and rollback.
#
# Control flow:
#   Understanding → Approach → Planning → commit steps
#   → per step: integrity check → guardrail review (+ confirmation)
#     → tool dispatch (step retries) → record + rollback plan
#   → Final Validation → Completed
#
# Any unrecoverable failure ends in plan.fail(); execute_task() always hands
# back the plan. All terminal output is delegated to display.py.

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from task_runner import display
from task_runner.config import EngineConfig
from task_runner.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    GuardrailBlocked,
    IntegrityError,
    ModelError,
    ParseError,
    RollbackFailed,
    TaskCancelled,
    TaskRunnerError,
    ToolError,
    ToolUnavailable,
)
from task_runner.guardrails import GuardrailEngine
from task_runner.integrity import PlanCommitment
from task_runner.llm import LanguageModel
from task_runner.models import (
    ACTIVE_PHASES,
    ApproachOutput,
    Authorization,
    ConfirmationRequest,
    Decision,
    DryRunResult,
    ExecutionPlan,
    ExecutionStep,
    FinalValidationOutput,
    OperationGuard,
    OperationType,
    Phase,
    PhaseResult,
    PhaseStatus,
    PlanOutput,
    RollbackPlan,
    StepRecord,
    UnderstandingOutput,
    ValidationResult,
)
from task_runner.parser import PhaseOutputParser
from task_runner.prompts import PromptRenderer, render_prompt
from task_runner.rollback import RollbackExecutor
from task_runner.tools import ToolRegistry, tool_call_for

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"

# Operations safe to dispatch again after a timeout. wait_for abandons the
# worker thread, so a timed-out write may still land after the retry starts.
_RETRY_AFTER_TIMEOUT = frozenset({OperationType.READ, OperationType.LIST})

_OUTPUT_TYPES: dict[Phase, type] = {
    Phase.UNDERSTANDING: UnderstandingOutput,
    Phase.APPROACH: ApproachOutput,
    Phase.PLANNING: PlanOutput,
    Phase.VALIDATING: FinalValidationOutput,
}


@dataclass
class _Run:
    """Per-task state. Never shared between plans."""

    plan: ExecutionPlan
    cancel: asyncio.Event
    commitment: PlanCommitment | None = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _bounded(work: Awaitable[Any], cancel: asyncio.Event, timeout: float | None) -> Any:
    """
    Await `work` unless the task is cancelled or `timeout` elapses first.

    Raises TaskCancelled or asyncio.TimeoutError; `work` is cancelled in
    both cases. If `work` and the cancel event finish together, work wins.
    """
    job = asyncio.ensure_future(work)
    stop = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({job, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        job.cancel()
        stop.cancel()
        raise
    stop.cancel()
    if job in done:
        return job.result()
    job.cancel()
    await asyncio.gather(job, return_exceptions=True)
    if cancel.is_set():
        raise TaskCancelled(CANCELLED)
    raise asyncio.TimeoutError(f"timed out after {timeout:g}s")


class SequentialExecutor:
    """
    Drives one task at a time through the five phases. One instance may run
    many tasks concurrently; all per-task state lives on the plan.

    Example:
        executor = SequentialExecutor(
            model=OpenRouterModel(load_model_settings()),
            registry=ToolRegistry("workspace"),
            config=load_engine_config(),
        )
        plan = await executor.execute_task("Read config.toml and print the first 200 chars.")
    """

    def __init__(
        self,
        model: LanguageModel | None,
        registry: ToolRegistry | None,
        config: EngineConfig | None = None,
        guardrails: GuardrailEngine | None = None,
        parser: PhaseOutputParser | None = None,
        renderer: PromptRenderer = render_prompt,
    ) -> None:
        if model is None:
            raise ConfigurationError("A language model is required to construct the executor.")
        if registry is None:
            raise ConfigurationError("A tool registry is required to construct the executor.")

        self._model = model
        self._registry = registry
        self._config = config or EngineConfig()
        self._guardrails = guardrails or GuardrailEngine()
        self._parser = parser or PhaseOutputParser(self._config.min_confidence_threshold)
        self._renderer = renderer
        self._rollback = RollbackExecutor(registry)
        self._verbose = self._config.verbose_logging

        self._handlers: dict[Phase, Callable[[_Run], AsyncIterator[PhaseResult]]] = {
            Phase.UNDERSTANDING: self._understanding,
            Phase.APPROACH: self._approach,
            Phase.PLANNING: self._planning,
            Phase.EXECUTING: self._executing,
            Phase.VALIDATING: self._validating,
        }
        working = {p for p in Phase if p != Phase.NOT_STARTED and not p.is_terminal}
        missing = working - set(self._handlers)
        if missing:
            raise ConfigurationError(f"No handler for phase(s): {sorted(p.value for p in missing)}")

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def execute_task(self, description: str, cancel_event: asyncio.Event | None = None) -> ExecutionPlan:
        """Run a task to a terminal phase and return its plan. Failures live on the plan."""
        plan = ExecutionPlan(description=description)
        async for _ in self.stream_task(description, plan=plan, cancel_event=cancel_event):
            pass
        return plan

    async def stream_task(
        self,
        description: str,
        plan: ExecutionPlan | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[PhaseResult]:
        """
        Run a task, yielding every phase result and every step record as it
        is produced. Pass `plan` to keep a handle on the plan being filled in;
        it must not have started yet.
        """
        if plan is None:
            plan = ExecutionPlan(description=description)
        elif plan.current_phase != Phase.NOT_STARTED:
            raise ConfigurationError(f"Plan {plan.task_id} has already started ({plan.current_phase.value}).")

        run = _Run(plan=plan, cancel=cancel_event or asyncio.Event())
        logger.info("Task %s started: %s", plan.task_id, description)
        if self._verbose:
            display.task_start(plan)

        for phase in ACTIVE_PHASES:
            if plan.is_terminal:
                break
            if run.cancel.is_set():
                await self._abort(run, CANCELLED)
                break
            plan.advance_to(phase)
            try:
                async for result in self._handlers[phase](run):
                    yield result
            except TaskCancelled:
                await self._abort(run, CANCELLED)
            except TaskRunnerError as exc:
                logger.exception("Unrecoverable error in %s", phase.value)
                await self._abort(run, f"{type(exc).__name__}: {exc}")

        if not plan.is_terminal:
            plan.advance_to(Phase.COMPLETED)
            logger.info("Task %s completed in %d ms", plan.task_id, plan.total_duration_ms())
        if self._verbose:
            display.execution_summary(plan)
            display.final_result(plan)

    async def dry_run(self, guard: OperationGuard) -> DryRunResult:
        """Guardrail verdict for `guard` without dispatching anything."""
        refusal = None
        try:
            guard = await self._prepare_guard(guard)
        except ToolError as exc:
            refusal = str(exc)
        return self._guardrails.dry_run(guard, self._config, refusal=refusal)

    async def rollback(self, plan: ExecutionPlan) -> int:
        """
        Undo every retained step of `plan`, newest first.

        Returns the number of rollback plans applied. Raises RollbackFailed
        listing every step that could not be undone; the rest are still
        attempted.
        """
        plans = plan.rollback_plans()
        if self._verbose:
            display.rollback_start(len(plans))
        try:
            undone = await self._rollback.execute_all(plans)
        except RollbackFailed as exc:
            if self._verbose:
                display.rollback_done(exc.errors)
            raise
        if self._verbose:
            display.rollback_done([])
        return undone

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    async def _run_phase(self, run: _Run, phase: Phase) -> PhaseResult:
        """
        Prompt → model → parse, retried until the output passes validation
        or max_retries_per_phase retries are spent.
        """
        config = self._config
        started = time.monotonic()
        retry_count = 0
        feedback: list[str] = []
        result_type = PhaseResult[_OUTPUT_TYPES[phase]]

        while True:
            if self._verbose:
                display.phase_start(phase, retry_count)

            prompt = self._renderer(phase, run.plan, feedback)
            output = None
            model_failure = None
            try:
                response = await _bounded(
                    self._model.complete(prompt, config.completion()),
                    run.cancel,
                    config.model_timeout_seconds,
                )
                output, validation = self._parser.parse(phase, response.content)
            except asyncio.TimeoutError:
                model_failure = f"model call timed out after {config.model_timeout_seconds:g}s"
            except (ModelError, ParseError) as exc:
                model_failure = str(exc)

            if model_failure is not None:
                validation = ValidationResult(confidence=0.0, passed=False, issues=[model_failure])
            elif validation.passed:
                logger.info(
                    "%s completed (confidence %.2f, %d retries)", phase.value, validation.confidence, retry_count
                )
                return result_type(
                    phase=phase,
                    status=PhaseStatus.COMPLETED,
                    output=output,
                    validation=validation,
                    retry_count=retry_count,
                    duration_ms=_elapsed_ms(started),
                )

            if retry_count >= config.max_retries_per_phase:
                if model_failure is not None:
                    error = f"model error after {retry_count} retries: {model_failure}"
                elif validation.confidence < config.min_confidence_threshold:
                    error = f"confidence below threshold after {retry_count} retries"
                else:
                    error = f"validation failed after {retry_count} retries: {'; '.join(validation.blocking_issues)}"
                logger.error("%s failed: %s", phase.value, error)
                return result_type(
                    phase=phase,
                    status=PhaseStatus.FAILED,
                    validation=validation,
                    retry_count=retry_count,
                    duration_ms=_elapsed_ms(started),
                    error=error,
                )

            retry_count += 1
            feedback = list(validation.issues)
            logger.warning(
                "%s retry %d/%d: %s",
                phase.value, retry_count, config.max_retries_per_phase, "; ".join(feedback) or "low confidence",
            )
            if self._verbose:
                display.phase_retry(phase, retry_count, validation)
            await self._backoff(run, retry_count)

    async def _backoff(self, run: _Run, retry_count: int) -> None:
        delay = self._config.retry_backoff_seconds * (2 ** (retry_count - 1))
        if delay > 0:
            try:
                await _bounded(asyncio.sleep(delay), run.cancel, None)
            except asyncio.TimeoutError:
                pass

    def _settle(self, run: _Run, result: PhaseResult) -> None:
        """Fail the plan for a failed phase, or announce the completion."""
        if result.status == PhaseStatus.FAILED:
            run.plan.fail(result.error or "phase failed")
            if self._verbose:
                display.phase_failed(result)
        elif self._verbose:
            display.phase_completed(result)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    async def _understanding(self, run: _Run) -> AsyncIterator[PhaseResult]:
        result = await self._run_phase(run, Phase.UNDERSTANDING)
        run.plan.understanding = result
        self._settle(run, result)
        yield result

    async def _approach(self, run: _Run) -> AsyncIterator[PhaseResult]:
        result = await self._run_phase(run, Phase.APPROACH)
        run.plan.approach = result
        self._settle(run, result)
        yield result

    async def _planning(self, run: _Run) -> AsyncIterator[PhaseResult]:
        result = await self._run_phase(run, Phase.PLANNING)
        plan = run.plan
        plan.planning = result
        if result.status == PhaseStatus.COMPLETED:
            steps = result.output.steps
            run.commitment = PlanCommitment.from_steps(steps)
            plan.total_steps = len(steps)
            plan.commitment_root = run.commitment.root
            logger.info("Committed %d step(s), root %s", len(steps), run.commitment.root[:16])
            if self._verbose:
                display.plan_committed(steps, run.commitment.root)
        self._settle(run, result)
        yield result

    async def _validating(self, run: _Run) -> AsyncIterator[PhaseResult]:
        result = await self._run_phase(run, Phase.VALIDATING)
        run.plan.final_validation = result
        if result.status == PhaseStatus.COMPLETED and not result.output.passed:
            logger.warning("Final validation verdict: FAIL (score %.2f)", result.output.overall_score)
        self._settle(run, result)
        yield result

    async def _executing(self, run: _Run) -> AsyncIterator[PhaseResult]:
        plan = run.plan
        if plan.planning is None or plan.planning.output is None or run.commitment is None:
            raise IntegrityError("Execution started without a committed plan")

        steps = plan.planning.output.steps
        if self._verbose:
            display.execution_start(len(steps))

        for index, step in enumerate(steps):
            plan.current_step = index
            if run.cancel.is_set():
                await self._abort(run, CANCELLED)
                return

            record, fatal = await self._execute_step(run, index, step)
            plan.execution_history.append(record)

            if run.cancel.is_set():
                # The dispatch ran to completion after cancellation; undo it.
                await self._abort(run, CANCELLED, step.step_id, in_flight=record.rollback_plan)
            elif fatal:
                await self._abort(run, record.error or "step failed", step.step_id)
            yield record
            if plan.is_terminal:
                return

        plan.current_step = None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _prepare_guard(self, guard: OperationGuard) -> OperationGuard:
        try:
            return await asyncio.wait_for(self._registry.prepare(guard), timeout=self._config.tool_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ToolError(f"Snapshot of {guard.target} timed out") from exc

    def _record(
        self,
        step: ExecutionStep,
        status: PhaseStatus,
        validation: ValidationResult,
        started: float,
        auth: Authorization | None = None,
        **fields: Any,
    ) -> StepRecord:
        if auth is not None:
            fields.setdefault("risk_level", auth.assessment.risk_level)
            fields.setdefault("decision", auth.decision)
            fields.setdefault("matched_patterns", [p.name for p in auth.assessment.matched_patterns])
            fields.setdefault("confirmation", auth.confirmation)
        return StepRecord(
            phase=Phase.EXECUTING,
            status=status,
            validation=validation,
            duration_ms=_elapsed_ms(started),
            step_id=step.step_id,
            sequence=step.sequence,
            **fields,
        )

    @staticmethod
    def _rejection(reason: str) -> ValidationResult:
        return ValidationResult(confidence=0.0, passed=False, issues=[reason], blocking_issues=[reason])

    async def _execute_step(self, run: _Run, index: int, step: ExecutionStep) -> tuple[StepRecord, bool]:
        """Run one step. Returns its record and whether the failure is fatal for the plan."""
        plan = run.plan
        started = time.monotonic()
        logger.info("Step %d/%d: %s", index + 1, plan.total_steps, step.name)
        if self._verbose:
            display.step_start(index, plan.total_steps, step)

        try:
            run.commitment.check(index, step)
        except IntegrityError as exc:
            reason = str(exc)
            logger.error(reason)
            return self._record(step, PhaseStatus.FAILED, self._rejection(reason), started, error=reason), True

        guard = OperationGuard(
            operation_type=step.operation,
            target=step.target,
            estimated_impact=step.description or step.name,
            step_id=step.step_id,
            content=step.content,
        )
        try:
            guard = await self._prepare_guard(guard)
        except ToolError as exc:
            reason = f"Blocked: {exc}"
            logger.error(reason)
            record = self._record(
                step, PhaseStatus.FAILED, self._rejection(reason), started,
                decision=Decision.BLOCKED, error=reason,
            )
            return record, True

        def on_request(request: ConfirmationRequest) -> None:
            plan.confirmation_requests.append(request)
            logger.info("Confirmation requested for %s (%s)", step.step_id, request.risk_level.label)
            if self._verbose:
                display.confirmation_request(request)

        try:
            auth: Authorization = await _bounded(
                self._guardrails.authorize(guard, self._config, on_request=on_request, refresh=self._prepare_guard),
                run.cancel,
                None,
            )
        except ToolError as exc:
            # A modified target that escapes the workspace.
            reason = f"Blocked: {exc}"
            logger.error(reason)
            record = self._record(
                step, PhaseStatus.FAILED, self._rejection(reason), started,
                decision=Decision.BLOCKED, error=reason,
            )
            return record, True
        if self._verbose:
            display.guardrail_verdict(step, auth)

        try:
            auth.raise_for_decision()
        except GuardrailBlocked as exc:
            reason = f"Blocked: {exc.reason}"
            if isinstance(exc, ConfirmationTimeout):
                logger.warning("Step %s: confirmation went unanswered", step.step_id)
            logger.warning("Step %s %s", step.step_id, reason)
            return self._record(step, PhaseStatus.FAILED, self._rejection(reason), started, auth, error=reason), True

        if auth.decision == Decision.SKIPPED:
            logger.info("Step %s skipped", step.step_id)
            validation = ValidationResult(confidence=1.0, passed=True, issues=["skipped by confirmation"])
            return self._record(step, PhaseStatus.SKIPPED, validation, started, auth), False

        return await self._dispatch(run, step, auth, started)

    async def _dispatch(
        self, run: _Run, step: ExecutionStep, auth: Authorization, started: float
    ) -> tuple[StepRecord, bool]:
        config = self._config
        guard = auth.guard
        rollback_plan: RollbackPlan = self._guardrails.plan_rollback(guard)
        call = tool_call_for(guard)

        result = None
        attempts = 0
        while call is not None:
            retryable = True
            try:
                result = await asyncio.wait_for(self._registry.execute(call), timeout=config.tool_timeout_seconds)
                break
            except asyncio.TimeoutError:
                failure = f"{call.name} timed out after {config.tool_timeout_seconds:g}s"
                retryable = guard.operation_type in _RETRY_AFTER_TIMEOUT
            except ToolUnavailable as exc:
                failure = str(exc)
                retryable = False
            except ToolError as exc:
                failure = str(exc)

            if retryable and attempts < config.max_retries_per_phase and not run.cancel.is_set():
                logger.warning(
                    "Step %s retry %d/%d: %s", step.step_id, attempts + 1, config.max_retries_per_phase, failure
                )
                try:
                    await self._backoff(run, attempts + 1)
                except TaskCancelled:
                    failure = f"{failure}; {CANCELLED} before retry"
                else:
                    attempts += 1
                    continue

            error = f"{failure} (after {attempts} retries)"
            logger.error("Step %s failed: %s", step.step_id, error)
            record = self._record(
                step, PhaseStatus.FAILED, self._rejection(failure), started, auth,
                retry_count=attempts, error=error,
            )
            if self._verbose:
                display.step_failed(record, step.allow_failure)
            return record, not step.allow_failure

        output, validation = self._parser.parse_step_result(step, call.name if call else None, result)
        record = self._record(
            step, PhaseStatus.COMPLETED, validation, started, auth,
            output=output, retry_count=attempts, rollback_plan=rollback_plan,
        )
        if self._verbose:
            display.step_completed(record)
        return record, False

    # ------------------------------------------------------------------
    # Failure and rollback
    # ------------------------------------------------------------------

    async def _abort(
        self,
        run: _Run,
        reason: str,
        step_id: str | None = None,
        in_flight: RollbackPlan | None = None,
    ) -> None:
        """Roll back what the policy allows, then move the plan to Failed."""
        plan = run.plan
        if plan.is_terminal:
            return

        errors: list[str] = []
        if plan.current_phase == Phase.EXECUTING:
            if self._config.enable_auto_rollback:
                pending = plan.rollback_plans()
            else:
                pending = [p for p in (in_flight,) if p is not None and not p.consumed]
            if pending:
                logger.info("Rolling back %d step(s)", len(pending))
                if self._verbose:
                    display.rollback_start(len(pending))
                try:
                    await self._rollback.execute_all(pending)
                except RollbackFailed as exc:
                    errors = exc.errors
                    logger.error("Rollback incomplete: %s", exc)
                if self._verbose:
                    display.rollback_done(errors)

        failure = plan.fail(reason, step_id)
        failure.rollback_errors.extend(errors)
        logger.error("Task %s failed during %s: %s", plan.task_id, failure.failed_at.value, reason)
        if self._verbose:
            display.halt(f"{failure.failed_at.value}: {reason}")
