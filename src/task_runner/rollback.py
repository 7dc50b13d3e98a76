# rollback.py
# Applies RollbackPlans through the Tool Registry.
#
# Plans are undone newest first, and each plan's steps in reverse, so the
# workspace walks back through the exact states it passed through. A plan is
# single-use: once consumed it cannot be replayed.

import logging

from task_runner.errors import RollbackFailed, ToolError
from task_runner.models import RollbackAction, RollbackPlan, RollbackStep, ToolCall
from task_runner.tools import ToolRegistry

logger = logging.getLogger(__name__)


def _call_for(step: RollbackStep) -> ToolCall:
    if step.action == RollbackAction.RESTORE_FILE:
        return ToolCall(name="write_file", args={"path": step.path, "content": step.content or ""})
    if step.action == RollbackAction.DELETE_FILE:
        return ToolCall(name="delete_file", args={"path": step.path})
    return ToolCall(name="remove_directory", args={"path": step.path})


class RollbackExecutor:
    def __init__(self, registry: ToolRegistry):
        self._registry = registry

    async def execute(self, plan: RollbackPlan) -> list[str]:
        """Undo one plan. Returns the errors hit along the way (empty on success)."""
        if plan.consumed:
            raise RollbackFailed([f"Rollback plan {plan.plan_id} was already executed"])
        plan.consumed = True

        errors: list[str] = []
        for step in plan.steps_reversed():
            try:
                result = await self._registry.execute(_call_for(step))
                logger.info("Rollback %s: %s", step.action.value, result.summary)
            except ToolError as exc:
                logger.error("Rollback step failed (%s %s): %s", step.action.value, step.path, exc)
                errors.append(f"{step.description or step.action.value}: {exc}")
        return errors

    async def execute_all(self, plans: list[RollbackPlan]) -> int:
        """
        Undo `plans` (given in execution order) newest first.

        Every plan is attempted even if an earlier one fails. Returns the
        number of plans undone; raises RollbackFailed listing every error.
        """
        errors: list[str] = []
        undone = 0
        for plan in reversed(plans):
            if plan.consumed:
                continue
            if not plan.rollback_capable:
                plan.consumed = True
                errors.append(f"Step {plan.step_id} cannot be rolled back")
                continue
            step_errors = await self.execute(plan)
            errors.extend(step_errors)
            if not step_errors:
                undone += 1
        if errors:
            raise RollbackFailed(errors)
        return undone
