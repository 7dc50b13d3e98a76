import pytest

from task_runner.errors import IntegrityError
from task_runner.integrity import EMPTY_ROOT, PlanCommitment, fold, leaf_hash
from task_runner.models import ExecutionStep, OperationType, StepType


def make_steps(count):
    return [
        ExecutionStep(
            step_id=f"step-{i}",
            sequence=i,
            name=f"Write file {i}",
            step_type=StepType.FILE,
            operation=OperationType.WRITE,
            target=f"out/{i}.txt",
            content=f"line {i}",
        )
        for i in range(1, count + 1)
    ]


def test_empty_plan_has_fixed_root():
    assert PlanCommitment.from_steps([]).root == EMPTY_ROOT
    assert fold([]) == EMPTY_ROOT


def test_single_leaf_is_its_own_root():
    [step] = make_steps(1)
    assert PlanCommitment.from_steps([step]).root == leaf_hash(step)


def test_root_is_deterministic_and_order_sensitive():
    steps = make_steps(3)
    assert PlanCommitment.from_steps(steps).root == PlanCommitment.from_steps(make_steps(3)).root
    assert PlanCommitment.from_steps(steps).root != PlanCommitment.from_steps(steps[::-1]).root


def test_odd_layer_repeats_last_leaf():
    leaves = [leaf_hash(s) for s in make_steps(3)]
    assert fold(leaves) == fold(leaves + [leaves[-1]])


def test_every_committed_step_verifies():
    steps = make_steps(5)
    commitment = PlanCommitment.from_steps(steps)
    assert len(commitment) == 5
    assert all(commitment.verify(i, step) for i, step in enumerate(steps))


def test_modified_step_is_detected():
    steps = make_steps(4)
    commitment = PlanCommitment.from_steps(steps)
    tampered = steps[2].model_copy(update={"content": "rm -rf /"})

    assert not commitment.verify(2, tampered)
    with pytest.raises(IntegrityError, match="step-3"):
        commitment.check(2, tampered)


def test_step_at_wrong_position_is_detected():
    steps = make_steps(2)
    commitment = PlanCommitment.from_steps(steps)
    assert not commitment.verify(0, steps[1])
    assert not commitment.verify(7, steps[0])
    assert not commitment.verify(-1, steps[0])
