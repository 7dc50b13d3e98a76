import pytest

from phase_texts import APPROACH, PLAN_CREATE_THEN_RM, PLAN_READ, UNDERSTANDING, UNDERSTANDING_NO_APPROACH, VALIDATION_PASS
from task_runner.errors import ParseError
from task_runner.models import (
    ExecutionStep,
    OperationType,
    Phase,
    StepType,
    ToolResult,
)
from task_runner.parser import PhaseOutputParser, split_sections


@pytest.fixture
def parser():
    return PhaseOutputParser(threshold=0.7)


# ---------------------------------------------------------------------------
# Section splitting
# ---------------------------------------------------------------------------

def test_split_sections_accepts_markdown_headers():
    text = "## UNDERSTANDING\nRead the file.\n**APPROACH**: use read_file\n**TASK_TYPE:** analysis\n"
    sections = split_sections(text, ["UNDERSTANDING", "APPROACH", "TASK_TYPE"])

    assert sections["UNDERSTANDING"] == ["Read the file."]
    assert sections["APPROACH"] == ["use read_file"]
    assert sections["TASK_TYPE"] == ["analysis"]


def test_text_before_the_first_header_is_ignored():
    sections = split_sections("Sure! Here you go.\nAPPROACH: do it\n", ["APPROACH"])
    assert sections == {"APPROACH": ["do it"]}


# ---------------------------------------------------------------------------
# Understanding / Approach
# ---------------------------------------------------------------------------

def test_complete_understanding_passes(parser):
    output, validation = parser.parse_understanding(UNDERSTANDING)

    assert validation.passed
    assert validation.confidence == 1.0
    assert output.key_requirements == ["read config.toml", "print 200 characters"]
    assert output.task_type == "analysis"
    assert output.complexity == "simple"


def test_missing_approach_never_passes(parser):
    output, validation = parser.parse_understanding(UNDERSTANDING_NO_APPROACH)

    assert not validation.passed
    assert validation.confidence == pytest.approx(0.8)
    assert "missing required field APPROACH" in validation.blocking_issues
    assert output.approach == ""


def test_empty_required_header_gets_half_credit_and_blocks(parser):
    text = UNDERSTANDING.replace(
        "APPROACH: Use the read tool on config.toml and report the start of the file.", "APPROACH:"
    )
    _, validation = parser.parse_understanding(text)

    assert validation.confidence == pytest.approx(0.9)
    assert "field APPROACH is empty" in validation.blocking_issues
    assert not validation.passed


def test_adding_fields_never_lowers_confidence(parser):
    lines = UNDERSTANDING.splitlines()
    scores = [parser.parse_understanding("\n".join(lines[:n]))[1].confidence for n in range(len(lines) + 1)]
    assert scores == sorted(scores)


def test_plain_text_scores_zero(parser):
    _, validation = parser.parse_understanding("I would rather not.")
    assert validation.confidence == 0.0
    assert not validation.passed


def test_approach(parser):
    output, validation = parser.parse_approach(APPROACH)

    assert validation.passed
    assert output.architecture_pattern == "single step"
    assert output.key_decisions == ["read only, no writes"]


def test_comma_separated_items(parser):
    output, _ = parser.parse_approach("APPROACH: x\nTECH_STACK: python, git , make\n")
    assert output.tech_stack == ["python", "git", "make"]


def test_threshold_is_respected():
    partial = APPROACH.split("EXPECTED_OUTCOMES")[0]

    _, lenient = PhaseOutputParser(threshold=0.7).parse_approach(partial)
    _, strict = PhaseOutputParser(threshold=0.95).parse_approach(partial)

    assert lenient.confidence == strict.confidence == pytest.approx(7 / 9, abs=1e-4)
    assert lenient.passed
    assert not strict.passed


def test_unknown_phase_is_a_parse_error(parser):
    with pytest.raises(ParseError, match="executing"):
        parser.parse(Phase.EXECUTING, "anything")


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def test_plan_steps_are_parsed_in_order(parser):
    output, validation = parser.parse_plan(PLAN_CREATE_THEN_RM)

    assert validation.passed
    assert [s.step_id for s in output.steps] == ["step-1", "step-2"]
    assert [s.sequence for s in output.steps] == [1, 2]

    create, command = output.steps
    assert create.name == "Write marker"
    assert create.step_type == StepType.FILE
    assert create.operation == OperationType.CREATE
    assert create.target == "notes.txt"
    assert create.content == "cleanup started"
    assert command.step_type == StepType.COMMAND
    assert command.operation == OperationType.COMMAND
    assert command.target == "rm -rf build"
    assert output.declared_step_count == 2


def test_step_count_mismatch_is_penalised(parser):
    _, consistent = parser.parse_plan(PLAN_READ)
    _, mismatched = parser.parse_plan(PLAN_READ.replace("STEP_COUNT: 1", "STEP_COUNT: 3"))

    assert mismatched.confidence == pytest.approx(consistent.confidence * 0.8)
    assert "declared 3 steps but found 1" in mismatched.issues


def test_oversized_numbers_are_reported_not_raised(parser):
    huge = "9" * 400
    text = PLAN_READ.replace("STEP_COUNT: 1", f"STEP_COUNT: {huge}").replace(
        "ESTIMATED_DURATION: 1", f"ESTIMATED_DURATION: {huge}.5"
    )

    output, validation = parser.parse_plan(text)

    assert output.declared_step_count is None
    assert output.estimated_duration_minutes is None
    assert "STEP_COUNT is not a usable number" in validation.issues
    assert "ESTIMATED_DURATION is not a usable number" in validation.issues
    assert [s.target for s in output.steps] == ["config.toml"]


def test_fractional_step_count_is_truncated(parser):
    output, _ = parser.parse_plan(PLAN_READ.replace("STEP_COUNT: 1", "STEP_COUNT: 1.0"))
    assert output.declared_step_count == 1


def test_oversized_step_number_is_not_a_step_header(parser):
    output, validation = parser.parse_plan("STEPS:\n- STEP_" + "9" * 5000 + ": Overflow\n")
    assert output.steps == []
    assert not validation.passed


def test_operation_is_inferred_from_description(parser):
    text = "STEPS:\n- STEP_1: Tidy\n  TYPE: file\n  DESCRIPTION: delete the stale cache file\n  TARGET: cache.db\n"
    output, _ = parser.parse_plan(text)
    assert output.steps[0].operation == OperationType.DELETE


def test_step_without_operation_or_target_blocks(parser):
    text = "STEPS:\n- STEP_1: Do the thing\n  TYPE: file\n  DESCRIPTION: something vague\n"
    _, validation = parser.parse_plan(text)

    assert not validation.passed
    assert "step 1: cannot determine OPERATION" in validation.blocking_issues


def test_plan_without_steps_fails(parser):
    output, validation = parser.parse_plan("STEP_COUNT: 0\nSUCCESS_CRITERIA:\n- nothing\n")
    assert output.steps == []
    assert "missing required field STEPS" in validation.blocking_issues


# ---------------------------------------------------------------------------
# Step results and final validation
# ---------------------------------------------------------------------------

def test_empty_read_lowers_step_confidence(parser):
    step = ExecutionStep(step_id="step-1", sequence=1, operation=OperationType.READ, target="empty.txt")
    output, validation = parser.parse_step_result(step, "read_file", ToolResult(summary="Read 0 chars.", output=""))

    assert output.tool == "read_file"
    assert validation.confidence == pytest.approx(0.8)
    assert "no content returned" in validation.issues


def test_step_without_tool_call(parser):
    step = ExecutionStep(step_id="step-1", sequence=1)
    output, validation = parser.parse_step_result(step, None, None)
    assert output.summary == "no side effects"
    assert validation.passed


def test_final_validation(parser):
    output, validation = parser.parse_final_validation(VALIDATION_PASS)

    assert validation.passed
    assert output.passed
    assert output.overall_score == pytest.approx(0.9)
    assert output.details[0].item == "first 200 characters printed"
    assert output.details[0].passed


def test_failing_verdict_still_parses(parser):
    text = VALIDATION_PASS.replace("VERDICT: PASS", "VERDICT: FAIL").replace("SCORE: 0.9", "SCORE: 35%")
    output, validation = parser.parse_final_validation(text)

    assert validation.passed
    assert not output.passed
    assert output.overall_score == pytest.approx(0.35)


def test_unrecognised_verdict_blocks(parser):
    _, validation = parser.parse_final_validation(VALIDATION_PASS.replace("VERDICT: PASS", "VERDICT: maybe"))
    assert not validation.passed
    assert "unrecognised VERDICT 'maybe'" in validation.blocking_issues
