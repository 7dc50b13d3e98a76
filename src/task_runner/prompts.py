# prompts.py
# Phase prompt templates and the default renderer.
#
# Each template asks for labelled fields that parser.py knows how to read.
# The engine treats render_prompt() as an opaque text producer and can be
# given any other callable with the same signature.

from typing import Callable

from task_runner.models import ExecutionPlan, Phase, PhaseStatus

PromptRenderer = Callable[[Phase, ExecutionPlan, list[str]], str]


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a careful software agent working through a task one phase at a time.
Answer ONLY in the labelled format the user message asks for. Every field \
label must start its own line followed by a colon. Do not add prose outside \
the fields.\
"""


# ---------------------------------------------------------------------------
# Phase templates
# ---------------------------------------------------------------------------

UNDERSTANDING_PROMPT = """\
Phase 1 of 5: UNDERSTANDING

Task:
{task}

Restate the task and sketch how you would approach it. Respond with:

UNDERSTANDING: <what is being asked, in your own words>
APPROACH: <one paragraph on how you would solve it>
KEY_REQUIREMENTS:
- <requirement>
TASK_TYPE: <feature | bugfix | refactor | analysis | chore>
COMPLEXITY: <simple | moderate | complex>
POTENTIAL_RISKS:
- <risk, or "none">\
"""

APPROACH_PROMPT = """\
Phase 2 of 5: APPROACH

Task:
{task}

Your understanding so far:
{understanding}

Initial approach:
{initial_approach}

Commit to a concrete approach. Respond with:

APPROACH: <the approach you will take>
TECH_STACK:
- <tool, language or library>
ARCHITECTURE_PATTERN: <pattern or "n/a">
KEY_DECISIONS:
- <decision and why>
EXPECTED_OUTCOMES:
- <observable outcome>\
"""

PLANNING_PROMPT = """\
Phase 3 of 5: PLANNING

Task:
{task}

Chosen approach:
{approach}

Break the approach into ordered execution steps. Paths are relative to the \
workspace root. Each step performs exactly one operation:

  file operations:    read, list, create, write, delete, mkdir, rmdir
  command operations: command (TARGET is the full shell command)
  no side effects:    other

Respond with:

STEPS:
- STEP_1: <short name>
  DESCRIPTION: <what the step does>
  TYPE: <file | command | other>
  OPERATION: <one of the operations above>
  TARGET: <path or command>
  CONTENT: <full file body for create/write, indented on following lines>
  ALLOW_FAILURE: <yes | no>
- STEP_2: ...
STEP_COUNT: <number of steps>
ESTIMATED_DURATION: <minutes>
SUCCESS_CRITERIA:
- <criterion>\
"""

FINAL_VALIDATION_PROMPT = """\
Phase 5 of 5: FINAL VALIDATION

Task:
{task}

Success criteria:
{criteria}

Execution history:
{history}

Judge whether the task was accomplished. Respond with:

VERDICT: <PASS | FAIL>
SCORE: <0.0 to 1.0>
SUMMARY: <one paragraph>
DETAILS:
- <criterion>: <PASS | FAIL> - <evidence>
RECOMMENDATIONS:
- <follow-up, or "none">\
"""

RETRY_FEEDBACK = """\

Your previous answer for this phase was rejected:
{issues}
Answer again, fixing every point above.\
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _bullets(items: list[str], empty: str = "(none)") -> str:
    return "\n".join(f"- {item}" for item in items) if items else empty


def _format_history(plan: ExecutionPlan) -> str:
    """Render the execution history as a structured string for validation."""
    if not plan.execution_history:
        return "(no steps were executed)"
    lines: list[str] = []
    for record in plan.execution_history:
        lines.append(f"-- Step {record.sequence} ({record.step_id})")
        lines.append(f"   Status:   {record.status.value}")
        if record.decision is not None:
            lines.append(f"   Decision: {record.decision.value}")
        if record.status == PhaseStatus.COMPLETED and record.output is not None:
            lines.append(f"   Tool:     {record.output.tool or 'none'}")
            lines.append(f"   Result:   {record.output.summary}")
            if record.output.output:
                lines.append(f"   Output:   {record.output.output[:500]}")
        if record.error:
            lines.append(f"   Error:    {record.error}")
    return "\n".join(lines)


def _understanding(plan: ExecutionPlan) -> tuple[str, str]:
    result = plan.understanding
    if result is None or result.output is None:
        return "(not available)", "(not available)"
    return result.output.understanding, result.output.approach or "(none given)"


def _approach(plan: ExecutionPlan) -> str:
    result = plan.approach
    if result is None or result.output is None:
        return "(not available)"
    out = result.output
    parts = [out.approach]
    if out.key_decisions:
        parts.append("Key decisions:\n" + _bullets(out.key_decisions))
    if out.expected_outcomes:
        parts.append("Expected outcomes:\n" + _bullets(out.expected_outcomes))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


def render_prompt(phase: Phase, plan: ExecutionPlan, feedback: list[str] | None = None) -> str:
    if phase == Phase.UNDERSTANDING:
        prompt = UNDERSTANDING_PROMPT.format(task=plan.description)
    elif phase == Phase.APPROACH:
        understanding, initial = _understanding(plan)
        prompt = APPROACH_PROMPT.format(
            task=plan.description, understanding=understanding, initial_approach=initial
        )
    elif phase == Phase.PLANNING:
        prompt = PLANNING_PROMPT.format(task=plan.description, approach=_approach(plan))
    elif phase == Phase.VALIDATING:
        criteria: list[str] = []
        if plan.planning is not None and plan.planning.output is not None:
            criteria = plan.planning.output.success_criteria
        prompt = FINAL_VALIDATION_PROMPT.format(
            task=plan.description, criteria=_bullets(criteria), history=_format_history(plan)
        )
    else:
        raise ValueError(f"No prompt for phase {phase.value!r}")

    if feedback:
        prompt += RETRY_FEEDBACK.format(issues=_bullets(feedback))
    return prompt
