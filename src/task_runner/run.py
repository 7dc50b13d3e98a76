# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Swap the model with TASK_RUNNER_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import asyncio
from pathlib import Path

from rich.prompt import Prompt

from task_runner import display
from task_runner.config import load_engine_config, load_guardrail_config, load_model_settings
from task_runner.confirmation import ConfirmationBroker
from task_runner.engine import SequentialExecutor
from task_runner.guardrails import GuardrailEngine
from task_runner.llm import OpenRouterModel
from task_runner.logs import configure_logging
from task_runner.models import ConfirmationChoice, ConfirmationRequest, ConfirmationResponse, Phase
from task_runner.tools import ToolRegistry

WORKSPACE = "workspace"

# Sample tasks, from read-only to destructive.
TASKS = [
    # Low risk: a single read, auto-approved
    "Read config.toml and print the first 200 characters.",

    # Low/Medium risk: creates a directory and a file, both rollback-capable
    "Create a notes/ directory with a release_checklist.md describing the steps "
    "to cut version 0.2 of this project.",

    # Critical: recursive delete matches the rm -rf pattern; blocked unless
    # TASK_RUNNER_REQUIRE_CONFIRMATION=true and approved at the prompt
    "Clean the workspace: remove the build directory with rm -rf build, "
    "then write a CLEANED marker file.",
]


async def ask_console(request: ConfirmationRequest) -> ConfirmationResponse:
    """Confirmation responder backed by a terminal prompt."""
    display.confirmation_request(request)
    choice = await asyncio.to_thread(
        Prompt.ask,
        "Choice",
        choices=[option.value for option in request.options],
        default=ConfirmationChoice.ABORT.value,
        console=display.console,
    )
    modified = None
    if choice == ConfirmationChoice.MODIFY.value:
        modified = await asyncio.to_thread(Prompt.ask, "New target", console=display.console)
    return ConfirmationResponse(
        request_id=request.request_id,
        choice=ConfirmationChoice(choice),
        modified_target=modified,
    )


async def _main() -> None:
    config = load_engine_config()
    configure_logging(config.verbose_logging)
    guard_config = load_guardrail_config()
    settings = load_model_settings()

    Path(WORKSPACE).mkdir(exist_ok=True)
    registry = ToolRegistry(WORKSPACE, enabled=guard_config.enabled_tools or None)
    broker = ConfirmationBroker()
    executor = SequentialExecutor(
        model=OpenRouterModel(settings),
        registry=registry,
        config=config,
        guardrails=GuardrailEngine(guard_config, broker),
    )
    display.banner(settings.model, str(registry.root))

    responder = asyncio.create_task(broker.serve(ask_console))
    try:
        for task in TASKS:
            plan = await executor.execute_task(task)
            if not config.verbose_logging:
                display.final_result(plan)
            if plan.current_phase == Phase.FAILED and plan.failure.rollback_errors:
                display.halt("Rollback left the workspace partially modified.")
    finally:
        responder.cancel()
        await asyncio.gather(responder, return_exceptions=True)


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
