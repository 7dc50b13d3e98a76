# errors.py
# Exception taxonomy for the sequential executor and its guardrails.
#
# Recoverable errors are absorbed by retry loops inside the engine.
# Unrecoverable ones end up on the plan's failure record, never raised
# out of execute_task(). Only configuration errors surface immediately.


class TaskRunnerError(Exception):
    """Base class for every error raised by task_runner."""


class ConfigurationError(TaskRunnerError):
    """Raised when the engine or one of its collaborators cannot be constructed."""


# ---------------------------------------------------------------------------
# Recoverable (retried)
# ---------------------------------------------------------------------------


class ModelError(TaskRunnerError):
    """Transport, auth, rate-limit or timeout failure of the language model."""


class ParseError(TaskRunnerError):
    """Raised when model text cannot be coerced into a phase output at all."""


class ToolError(TaskRunnerError):
    """An I/O failure inside a dispatched tool call."""


class ToolUnavailable(ToolError):
    """The requested tool is not in the registry. Retrying cannot help."""


# ---------------------------------------------------------------------------
# Unrecoverable (fatal for the step or plan)
# ---------------------------------------------------------------------------


class GuardrailBlocked(TaskRunnerError):
    """The guardrail refused an operation. Never retried."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ConfirmationTimeout(GuardrailBlocked):
    """A confirmation request went unanswered past its deadline."""


class IntegrityError(TaskRunnerError):
    """A planned step no longer matches the committed plan. Always fatal."""


class TaskCancelled(TaskRunnerError):
    """The caller cancelled the task."""


class InvalidTransition(TaskRunnerError):
    """Raised when a plan would move backwards or leave a terminal phase."""


class RollbackFailed(TaskRunnerError):
    """One or more rollback steps failed. Reported, never masks the original failure."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "rollback failed")
        self.errors = errors
