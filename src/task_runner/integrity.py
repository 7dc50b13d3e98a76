# integrity.py
# Commitment over the planned steps.
#
# Once Planning completes, each ExecutionStep is hashed into a leaf and the
# leaves are folded into one SHA-256 root. Before a step is reviewed by the
# guardrail its leaf is recomputed; a step that changed since planning is a
# fatal IntegrityError.

import hashlib
import json

from task_runner.errors import IntegrityError
from task_runner.models import ExecutionStep

EMPTY_ROOT = hashlib.sha256(b"").hexdigest()


def _digest(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def leaf_hash(step: ExecutionStep) -> str:
    # sort_keys keeps the encoding stable across pydantic field order changes.
    return _digest(json.dumps(step.model_dump(mode="json"), sort_keys=True, ensure_ascii=False))


def fold(leaves: list[str]) -> str:
    """Pairwise-hash a layer until one node remains. Odd layers repeat their last node."""
    if not leaves:
        return EMPTY_ROOT
    layer = list(leaves)
    while len(layer) > 1:
        if len(layer) % 2:
            layer.append(layer[-1])
        layer = [_digest(layer[i] + layer[i + 1]) for i in range(0, len(layer), 2)]
    return layer[0]


class PlanCommitment:
    def __init__(self, leaves: list[str]) -> None:
        self._leaves = list(leaves)
        self._root = fold(self._leaves)

    @classmethod
    def from_steps(cls, steps: list[ExecutionStep]) -> "PlanCommitment":
        return cls([leaf_hash(step) for step in steps])

    @property
    def root(self) -> str:
        return self._root

    def __len__(self) -> int:
        return len(self._leaves)

    def verify(self, index: int, step: ExecutionStep) -> bool:
        if not 0 <= index < len(self._leaves):
            return False
        return leaf_hash(step) == self._leaves[index]

    def check(self, index: int, step: ExecutionStep) -> None:
        if not self.verify(index, step):
            raise IntegrityError(
                f"Step {step.step_id} (position {index + 1}) does not match the committed plan {self._root[:12]}"
            )
