# parser.py
# Phase Output Parser: free model text → typed phase output + ValidationResult.
#
# Parsing is total: malformed text yields a best-effort output plus issues,
# never an exception. Confidence is the weighted share of expected fields
# found (half credit for a header with no content), scaled by per-step
# completeness for plans, with a penalty for internal inconsistencies.
# Adding structure never lowers the score.

import re
import textwrap
from dataclasses import dataclass

from task_runner.errors import ParseError
from task_runner.models import (
    ApproachOutput,
    ExecutionStep,
    FinalValidationOutput,
    OperationType,
    Phase,
    PlanOutput,
    StepExecutionOutput,
    StepType,
    ToolResult,
    UnderstandingOutput,
    ValidationDetail,
    ValidationResult,
)


@dataclass(frozen=True)
class _Field:
    name: str
    weight: float
    required: bool = False


UNDERSTANDING_FIELDS = (
    _Field("UNDERSTANDING", 3, required=True),
    _Field("APPROACH", 2, required=True),
    _Field("KEY_REQUIREMENTS", 2),
    _Field("TASK_TYPE", 1),
    _Field("COMPLEXITY", 1),
    _Field("POTENTIAL_RISKS", 1),
)

APPROACH_FIELDS = (
    _Field("APPROACH", 3, required=True),
    _Field("TECH_STACK", 1),
    _Field("ARCHITECTURE_PATTERN", 1),
    _Field("KEY_DECISIONS", 2),
    _Field("EXPECTED_OUTCOMES", 2),
)

PLANNING_FIELDS = (
    _Field("STEPS", 4, required=True),
    _Field("STEP_COUNT", 1),
    _Field("ESTIMATED_DURATION", 1),
    _Field("SUCCESS_CRITERIA", 2),
)

VALIDATION_FIELDS = (
    _Field("VERDICT", 3, required=True),
    _Field("SCORE", 3, required=True),
    _Field("SUMMARY", 1),
    _Field("DETAILS", 1),
    _Field("RECOMMENDATIONS", 2),
)

# Declared-vs-found step count mismatch.
INCONSISTENCY_PENALTY = 0.8

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*)$")
_STEP_HEADER_RE = re.compile(
    r"^\s*(?:[-*]\s*)?\**\s*STEP[_\s-]?(\d{1,9})(?!\d)\s*\**\s*:?\s*\**\s*(.*)$", re.IGNORECASE
)
_STEP_FIELD_RE = re.compile(
    r"^\s*(?:[-*]\s*)?\**\s*(NAME|DESCRIPTION|TYPE|OPERATION|TARGET|CONTENT|ALLOW_FAILURE)"
    r"\s*\**\s*:\s*\**\s*(.*)$",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_MAX_DIGITS = 9
_DETAIL_RE = re.compile(
    r"^(.*?)\s*[:\-–]\s*(pass(?:ed)?|fail(?:ed)?|ok)\b\s*[:\-–]?\s*(.*)$", re.IGNORECASE
)

_STEP_TYPES = {
    "file": StepType.FILE,
    "fileop": StepType.FILE,
    "fileoperation": StepType.FILE,
    "command": StepType.COMMAND,
    "commandop": StepType.COMMAND,
    "commandexecution": StepType.COMMAND,
    "shell": StepType.COMMAND,
    "other": StepType.OTHER,
}

_OPERATIONS = {
    "read": OperationType.READ,
    "list": OperationType.LIST,
    "ls": OperationType.LIST,
    "create": OperationType.CREATE,
    "write": OperationType.WRITE,
    "modify": OperationType.WRITE,
    "update": OperationType.WRITE,
    "append": OperationType.WRITE,
    "delete": OperationType.DELETE,
    "remove": OperationType.DELETE,
    "mkdir": OperationType.MKDIR,
    "rmdir": OperationType.RMDIR,
    "run": OperationType.COMMAND,
    "exec": OperationType.COMMAND,
    "execute": OperationType.COMMAND,
    "command": OperationType.COMMAND,
    "other": OperationType.OTHER,
    "none": OperationType.OTHER,
}

# Checked in order against a file step's description when OPERATION is absent.
_OPERATION_KEYWORDS = (
    (("delete", "remove"), OperationType.DELETE),
    (("create", "new file", "generate"), OperationType.CREATE),
    (("write", "modify", "update", "append", "save"), OperationType.WRITE),
    (("list", "enumerate"), OperationType.LIST),
    (("read", "print", "show", "open", "view", "inspect"), OperationType.READ),
)

_FILE_OPERATIONS = frozenset(
    {
        OperationType.READ,
        OperationType.LIST,
        OperationType.CREATE,
        OperationType.WRITE,
        OperationType.DELETE,
        OperationType.MKDIR,
        OperationType.RMDIR,
    }
)

_TRUE_WORDS = frozenset({"pass", "passed", "yes", "true", "success", "succeeded", "ok"})
_FALSE_WORDS = frozenset({"fail", "failed", "no", "false", "failure"})


# ---------------------------------------------------------------------------
# Section splitting
# ---------------------------------------------------------------------------


def _header_regex(names: list[str]) -> re.Pattern[str]:
    alternation = "|".join(sorted(names, key=len, reverse=True))
    return re.compile(
        rf"^\s*(?:#+\s*)?(?:[-*]\s+)?\**\s*({alternation})\s*\**\s*(?::|$)\s*\**\s*(.*)$",
        re.IGNORECASE,
    )


def split_sections(text: str, names: list[str]) -> dict[str, list[str]]:
    """
    Group lines under the most recent recognised header.

    Accepts `FIELD: value`, `**FIELD**: value`, `**FIELD:**`, and `## FIELD`.
    The inline value, if any, is the first line of the section.
    """
    header = _header_regex(names)
    sections: dict[str, list[str]] = {}
    current: str | None = None

    for line in text.splitlines():
        match = header.match(line)
        if match:
            current = match.group(1).upper()
            inline = match.group(2).strip().strip("*").strip()
            sections.setdefault(current, [])
            if inline:
                sections[current].append(inline)
            continue
        if current is not None:
            sections[current].append(line)

    return sections


def _scalar(lines: list[str]) -> str:
    for line in lines:
        stripped = line.strip()
        if not stripped:
            continue
        bullet = _BULLET_RE.match(stripped)
        return (bullet.group(1) if bullet else stripped).strip()
    return ""


def _whole_number(text: str, field: str, issues: list[str]) -> int | None:
    """First number in `text` truncated to an int, or None with an issue if unusable."""
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    digits = match.group(0).split(".")[0]
    if len(digits.lstrip("-")) > _MAX_DIGITS:
        issues.append(f"{field} is not a usable number")
        return None
    return int(digits)


def _paragraph(lines: list[str]) -> str:
    parts = [line.strip() for line in lines if line.strip()]
    return " ".join(parts)


def _items(lines: list[str]) -> list[str]:
    bullets = [m.group(1).strip() for m in map(_BULLET_RE.match, lines) if m]
    if bullets:
        return [item for item in bullets if item]
    single = _scalar(lines)
    if not single or single.lower() in ("none", "n/a", "-"):
        return []
    return [item.strip() for item in single.split(",") if item.strip()]


def _score(
    sections: dict[str, list[str]],
    fields: tuple[_Field, ...],
    filled: dict[str, bool],
    issues: list[str],
    blocking: list[str],
) -> float:
    total = sum(f.weight for f in fields)
    earned = 0.0
    for entry in fields:
        if entry.name not in sections:
            message = f"missing {'required ' if entry.required else ''}field {entry.name}"
            issues.append(message)
            if entry.required:
                blocking.append(message)
            continue
        if filled.get(entry.name, False):
            earned += entry.weight
            continue
        earned += entry.weight / 2
        message = f"field {entry.name} is empty"
        issues.append(message)
        if entry.required:
            blocking.append(message)
    return earned / total if total else 0.0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class PhaseOutputParser:
    """Maps model text to phase outputs and scores it against a threshold."""

    def __init__(self, threshold: float) -> None:
        self._threshold = threshold
        self._dispatch = {
            Phase.UNDERSTANDING: self.parse_understanding,
            Phase.APPROACH: self.parse_approach,
            Phase.PLANNING: self.parse_plan,
            Phase.VALIDATING: self.parse_final_validation,
        }

    def parse(self, phase: Phase, text: str) -> tuple[object, ValidationResult]:
        try:
            handler = self._dispatch[phase]
        except KeyError as exc:
            raise ParseError(f"No text parser for phase {phase.value!r}") from exc
        return handler(text)

    def _result(self, confidence: float, issues: list[str], blocking: list[str]) -> ValidationResult:
        confidence = max(0.0, min(1.0, round(confidence, 4)))
        return ValidationResult(
            confidence=confidence,
            passed=confidence >= self._threshold and not blocking,
            issues=issues,
            blocking_issues=blocking,
        )

    # ------------------------------------------------------------------
    # Understanding / Approach
    # ------------------------------------------------------------------

    def parse_understanding(self, text: str) -> tuple[UnderstandingOutput, ValidationResult]:
        sections = split_sections(text, [f.name for f in UNDERSTANDING_FIELDS])
        output = UnderstandingOutput(
            understanding=_paragraph(sections.get("UNDERSTANDING", [])),
            approach=_paragraph(sections.get("APPROACH", [])),
            key_requirements=_items(sections.get("KEY_REQUIREMENTS", [])),
            task_type=_scalar(sections.get("TASK_TYPE", [])).lower() or "general",
            complexity=_scalar(sections.get("COMPLEXITY", [])).lower() or "moderate",
            potential_risks=_items(sections.get("POTENTIAL_RISKS", [])),
        )
        filled = {
            "UNDERSTANDING": bool(output.understanding),
            "APPROACH": bool(output.approach),
            "KEY_REQUIREMENTS": bool(output.key_requirements),
            "TASK_TYPE": bool(_scalar(sections.get("TASK_TYPE", []))),
            "COMPLEXITY": bool(_scalar(sections.get("COMPLEXITY", []))),
            "POTENTIAL_RISKS": bool(output.potential_risks),
        }
        issues: list[str] = []
        blocking: list[str] = []
        confidence = _score(sections, UNDERSTANDING_FIELDS, filled, issues, blocking)
        return output, self._result(confidence, issues, blocking)

    def parse_approach(self, text: str) -> tuple[ApproachOutput, ValidationResult]:
        sections = split_sections(text, [f.name for f in APPROACH_FIELDS])
        output = ApproachOutput(
            approach=_paragraph(sections.get("APPROACH", [])),
            tech_stack=_items(sections.get("TECH_STACK", [])),
            architecture_pattern=_scalar(sections.get("ARCHITECTURE_PATTERN", [])),
            key_decisions=_items(sections.get("KEY_DECISIONS", [])),
            expected_outcomes=_items(sections.get("EXPECTED_OUTCOMES", [])),
        )
        filled = {
            "APPROACH": bool(output.approach),
            "TECH_STACK": bool(output.tech_stack),
            "ARCHITECTURE_PATTERN": bool(output.architecture_pattern),
            "KEY_DECISIONS": bool(output.key_decisions),
            "EXPECTED_OUTCOMES": bool(output.expected_outcomes),
        }
        issues: list[str] = []
        blocking: list[str] = []
        confidence = _score(sections, APPROACH_FIELDS, filled, issues, blocking)
        return output, self._result(confidence, issues, blocking)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def parse_plan(self, text: str) -> tuple[PlanOutput, ValidationResult]:
        sections = split_sections(text, [f.name for f in PLANNING_FIELDS])
        issues: list[str] = []
        blocking: list[str] = []

        steps, completeness = self._parse_steps(sections.get("STEPS", []), issues, blocking)

        declared = _whole_number(_scalar(sections.get("STEP_COUNT", [])), "STEP_COUNT", issues)
        duration = _whole_number(_scalar(sections.get("ESTIMATED_DURATION", [])), "ESTIMATED_DURATION", issues)
        if duration is not None:
            duration = max(0, duration)

        output = PlanOutput(
            steps=steps,
            declared_step_count=declared,
            estimated_duration_minutes=duration,
            success_criteria=_items(sections.get("SUCCESS_CRITERIA", [])),
        )
        filled = {
            "STEPS": bool(steps),
            "STEP_COUNT": declared is not None,
            "ESTIMATED_DURATION": duration is not None,
            "SUCCESS_CRITERIA": bool(output.success_criteria),
        }
        confidence = _score(sections, PLANNING_FIELDS, filled, issues, blocking)
        if steps:
            confidence *= 0.5 + 0.5 * completeness
        if declared is not None and declared != len(steps):
            issues.append(f"declared {declared} steps but found {len(steps)}")
            confidence *= INCONSISTENCY_PENALTY
        return output, self._result(confidence, issues, blocking)

    def _parse_steps(
        self, lines: list[str], issues: list[str], blocking: list[str]
    ) -> tuple[list[ExecutionStep], float]:
        raw_steps: list[dict] = []
        current: dict | None = None
        content_field = False

        for line in lines:
            header = _STEP_HEADER_RE.match(line)
            if header:
                current = {"number": int(header.group(1)), "inline": header.group(2).strip(), "content": []}
                raw_steps.append(current)
                content_field = False
                continue
            if current is None:
                continue
            field = _STEP_FIELD_RE.match(line)
            if field:
                key = field.group(1).lower()
                value = field.group(2).strip()
                content_field = key == "content"
                if content_field:
                    if value and value != "|":
                        current["content"].append(value)
                else:
                    current[key] = value
                continue
            if content_field:
                current["content"].append(line)

        steps: list[ExecutionStep] = []
        scores: list[float] = []
        for index, raw in enumerate(raw_steps, start=1):
            if raw["number"] != index:
                issues.append(f"step header STEP_{raw['number']} found at position {index}")
            step, score = self._build_step(index, raw, issues, blocking)
            steps.append(step)
            scores.append(score)

        completeness = sum(scores) / len(scores) if scores else 0.0
        return steps, completeness

    def _build_step(
        self, index: int, raw: dict, issues: list[str], blocking: list[str]
    ) -> tuple[ExecutionStep, float]:
        label = f"step {index}"
        name = raw.get("name") or raw["inline"] or f"Step {index}"
        description = raw.get("description", "")

        step_type = _STEP_TYPES.get(raw.get("type", "").lower().replace(" ", "").replace("_", ""))
        operation = _OPERATIONS.get(raw.get("operation", "").lower().strip())

        if step_type is None and operation is not None:
            if operation == OperationType.COMMAND:
                step_type = StepType.COMMAND
            elif operation in _FILE_OPERATIONS:
                step_type = StepType.FILE
            else:
                step_type = StepType.OTHER
        if step_type is None:
            issues.append(f"{label}: missing or unknown TYPE")
            step_type = StepType.OTHER

        if operation is None:
            operation = self._infer_operation(step_type, f"{name} {description}")
            if operation is None:
                message = f"{label}: cannot determine OPERATION"
                issues.append(message)
                blocking.append(message)
                operation = OperationType.OTHER

        target = raw.get("target", "").strip().strip("`")
        if operation != OperationType.OTHER and not target:
            message = f"{label}: missing TARGET for {operation.value} operation"
            issues.append(message)
            blocking.append(message)

        content = None
        if raw["content"]:
            content = textwrap.dedent("\n".join(raw["content"])).strip("\n")
        if operation in (OperationType.CREATE, OperationType.WRITE) and content is None:
            issues.append(f"{label}: no CONTENT for {operation.value}; an empty file will be written")

        allow_failure = raw.get("allow_failure", "").lower() in _TRUE_WORDS

        present = [
            bool(raw.get("name") or raw["inline"]),
            bool(description),
            "type" in raw or "operation" in raw,
            bool(target) or operation == OperationType.OTHER,
        ]
        step = ExecutionStep(
            step_id=f"step-{index}",
            sequence=index,
            name=name,
            description=description,
            step_type=step_type,
            operation=operation,
            target=target,
            content=content,
            allow_failure=allow_failure,
        )
        return step, sum(present) / len(present)

    @staticmethod
    def _infer_operation(step_type: StepType, text: str) -> OperationType | None:
        if step_type == StepType.COMMAND:
            return OperationType.COMMAND
        if step_type == StepType.OTHER:
            return OperationType.OTHER
        lowered = text.lower()
        for keywords, operation in _OPERATION_KEYWORDS:
            if any(word in lowered for word in keywords):
                return operation
        return None

    # ------------------------------------------------------------------
    # Execution step results
    # ------------------------------------------------------------------

    def parse_step_result(
        self, step: ExecutionStep, tool: str | None, result: ToolResult | None
    ) -> tuple[StepExecutionOutput, ValidationResult]:
        issues: list[str] = []
        confidence = 1.0
        if result is None:
            output = StepExecutionOutput(step_id=step.step_id, summary="no side effects")
            return output, self._result(confidence, issues, [])

        if not result.summary.strip():
            issues.append("tool returned an empty summary")
            confidence *= 0.5
        if step.operation in (OperationType.READ, OperationType.LIST) and not (result.output or "").strip():
            issues.append("no content returned")
            confidence *= 0.8

        output = StepExecutionOutput(
            step_id=step.step_id,
            tool=tool,
            summary=result.summary,
            output=result.output,
        )
        return output, self._result(confidence, issues, [])

    # ------------------------------------------------------------------
    # Final validation
    # ------------------------------------------------------------------

    def parse_final_validation(self, text: str) -> tuple[FinalValidationOutput, ValidationResult]:
        sections = split_sections(text, [f.name for f in VALIDATION_FIELDS])
        issues: list[str] = []
        blocking: list[str] = []

        verdict_text = _scalar(sections.get("VERDICT", [])).lower()
        verdict_word = re.split(r"[^a-z]+", verdict_text)[0] if verdict_text else ""
        passed = verdict_word in _TRUE_WORDS
        verdict_known = passed or verdict_word in _FALSE_WORDS
        if "VERDICT" in sections and verdict_text and not verdict_known:
            message = f"unrecognised VERDICT {verdict_text!r}"
            issues.append(message)
            blocking.append(message)

        score = None
        score_match = _NUMBER_RE.search(_scalar(sections.get("SCORE", [])))
        if score_match:
            score = float(score_match.group(0))
            if score > 1.0:
                score = score / 100.0
            score = max(0.0, min(1.0, score))
        elif "SCORE" in sections and _scalar(sections["SCORE"]):
            message = "SCORE is not a number"
            issues.append(message)
            blocking.append(message)

        details = []
        for item in _items(sections.get("DETAILS", [])):
            match = _DETAIL_RE.match(item)
            if match:
                ok = match.group(2).lower() in ("pass", "passed", "ok")
                details.append(ValidationDetail(item=match.group(1).strip(), passed=ok, details=match.group(3).strip()))
            else:
                details.append(ValidationDetail(item=item, passed=False, details="no verdict given"))

        output = FinalValidationOutput(
            passed=passed,
            overall_score=score if score is not None else 0.0,
            summary=_paragraph(sections.get("SUMMARY", [])),
            details=details,
            recommendations=_items(sections.get("RECOMMENDATIONS", [])),
        )
        filled = {
            "VERDICT": verdict_known,
            "SCORE": score is not None,
            "SUMMARY": bool(output.summary),
            "DETAILS": bool(details),
            "RECOMMENDATIONS": bool(output.recommendations),
        }
        confidence = _score(sections, VALIDATION_FIELDS, filled, issues, blocking)
        return output, self._result(confidence, issues, blocking)
