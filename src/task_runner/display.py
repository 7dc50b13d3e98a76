# display.py
# All terminal output for the task runner.
#
# This module owns presentation entirely. engine.py never formats strings;
# it calls named functions here, and only when verbose_logging is on.
#
# Colour language:
#   cyan    : phase progression / routing events
#   blue    : model calls and parsed outputs
#   yellow  : verification checkpoints, retries, confirmations
#   green   : success / approved
#   red     : failures, blocks, halts
#   magenta : rollback

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from task_runner.models import (
    Authorization,
    ConfirmationRequest,
    Decision,
    ExecutionPlan,
    ExecutionStep,
    Phase,
    PhaseResult,
    PhaseStatus,
    RiskLevel,
    StepRecord,
    ValidationResult,
)

console = Console()

RISK_COLORS = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}

DECISION_COLORS = {
    Decision.APPROVED: "green",
    Decision.BLOCKED: "red",
    Decision.NEEDS_CONFIRMATION: "yellow",
    Decision.SKIPPED: "dim",
}

STATUS_MARKS = {
    PhaseStatus.COMPLETED: "[bold green]✓[/bold green]",
    PhaseStatus.FAILED: "[bold red]✗[/bold red]",
    PhaseStatus.SKIPPED: "[dim]–[/dim]",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _risk(level: RiskLevel | None) -> str:
    if level is None:
        return "[dim]n/a[/dim]"
    color = RISK_COLORS[level]
    return f"[{color}]{level.label}[/{color}]"


def _decision(decision: Decision | None) -> str:
    if decision is None:
        return "[dim]n/a[/dim]"
    color = DECISION_COLORS[decision]
    return f"[{color}]{decision.value}[/{color}]"


# ---------------------------------------------------------------------------
# Task entry
# ---------------------------------------------------------------------------


def banner(model: str, workspace: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Guarded Task Runner[/bold cyan]\n"
            "[dim]Five-phase sequential execution with risk-gated side effects[/dim]\n\n"
            f"[dim]Model     :[/dim] [white]{model}[/white]\n"
            f"[dim]Workspace :[/dim] [white]{workspace}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def task_start(plan: ExecutionPlan) -> None:
    console.print()
    console.print(Rule(f"[cyan]NEW TASK {plan.task_id[:8]}[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{plan.description}[/white]",
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def phase_start(phase: Phase, retry_count: int) -> None:
    console.print()
    suffix = f" [dim](retry {retry_count})[/dim]" if retry_count else ""
    console.print(_label(phase.value.upper(), "blue"), f"[blue] → Calling model…[/blue]{suffix}")


def phase_retry(phase: Phase, retry_count: int, validation: ValidationResult) -> None:
    console.print(
        f"  [yellow]↻ {phase.value} rejected[/yellow] "
        f"[dim]confidence={validation.confidence:.2f}, retry {retry_count}[/dim]"
    )
    for issue in validation.issues[:5]:
        console.print(f"    [dim yellow]• {_mono(issue, 100)}[/dim yellow]")


def phase_completed(result: PhaseResult) -> None:
    console.print(
        f"  [bold green]✓ {result.phase.value}[/bold green] "
        f"[dim]confidence={result.validation.confidence:.2f}  "
        f"retries={result.retry_count}  {result.duration_ms} ms[/dim]"
    )


def phase_failed(result: PhaseResult) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{result.error}[/bold red]\n\n"
            + "\n".join(f"[dim]• {_mono(issue, 100)}[/dim]" for issue in result.validation.issues[:8]),
            title=_label(f"{result.phase.value.upper()} FAILED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_committed(steps: list[ExecutionStep], root: str) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Operation", style="bold white", width=10)
    table.add_column("Target", style="dim white", width=36)
    table.add_column("Name", style="white")

    for step in steps:
        name = step.name + (" [dim](may fail)[/dim]" if step.allow_failure else "")
        table.add_row(str(step.sequence), step.operation.value, _mono(step.target, 34), name)

    console.print(
        Panel(
            table,
            title=_label("PLAN COMMITTED", "cyan"),
            subtitle=f"[dim yellow]root {root[:16]}…[/dim yellow]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Execution loop
# ---------------------------------------------------------------------------


def execution_start(total: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]EXECUTION: {total} step(s)[/cyan]", style="cyan"))


def step_start(index: int, total: int, step: ExecutionStep) -> None:
    console.print()
    console.print(
        f"[bold cyan]  STEP [{index + 1}/{total}][/bold cyan]  [white]{step.name}[/white]  "
        f"[dim]{step.operation.value} {_mono(step.target, 60)}[/dim]"
    )


def guardrail_verdict(step: ExecutionStep, auth: Authorization) -> None:
    patterns = ", ".join(p.name for p in auth.assessment.matched_patterns) or "none"
    console.print(
        f"  [yellow]↳ Guardrail[/yellow]  risk={_risk(auth.assessment.risk_level)}  "
        f"decision={_decision(auth.decision)}  [dim]patterns: {patterns}[/dim]"
    )
    if auth.decision != Decision.APPROVED:
        console.print(f"    [dim]{_mono(auth.reason, 140)}[/dim]")


def confirmation_request(request: ConfirmationRequest) -> None:
    console.print()
    console.print(
        Panel(
            request.format_prompt(),
            title=_label("CONFIRMATION REQUIRED", "yellow"),
            subtitle=f"[dim]times out in {request.timeout_seconds:g}s[/dim]",
            border_style="yellow",
            padding=(0, 2),
        )
    )


def step_completed(record: StepRecord) -> None:
    summary = record.output.summary if record.output is not None else ""
    console.print(f"  [bold green]✓ Done[/bold green]  [white]{_mono(summary, 140)}[/white]")


def step_failed(record: StepRecord, allowed: bool) -> None:
    if allowed:
        console.print(f"  [yellow]✗ Failed (allowed)[/yellow]  [dim]{_mono(record.error or '', 140)}[/dim]")
        return
    console.print(f"  [bold red]✗ Failed[/bold red]  [white]{_mono(record.error or '', 140)}[/white]")


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


def rollback_start(count: int) -> None:
    console.print()
    console.print(Rule(f"[magenta]ROLLBACK: {count} step(s), newest first[/magenta]", style="magenta"))


def rollback_done(errors: list[str]) -> None:
    if not errors:
        console.print("  [bold magenta]✓ Rollback complete[/bold magenta]")
        return
    console.print(
        Panel(
            "\n".join(f"[white]• {error}[/white]" for error in errors),
            title=_label("ROLLBACK INCOMPLETE ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def execution_summary(plan: ExecutionPlan) -> None:
    if not plan.execution_history:
        return
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Status", justify="center", width=8)
    table.add_column("Risk", width=9)
    table.add_column("Decision", width=18)
    table.add_column("Result", style="dim white")

    for record in plan.execution_history:
        if record.output is not None:
            detail = record.output.summary
        else:
            detail = record.error or "skipped"
        table.add_row(
            str(record.sequence),
            STATUS_MARKS[record.status],
            _risk(record.risk_level),
            _decision(record.decision),
            _mono(detail, 60),
        )

    console.print(
        Panel(
            table,
            title="[dim]EXECUTION SUMMARY[/dim]",
            subtitle=f"[dim]{plan.completed_steps_count()}/{plan.total_steps} completed[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def final_result(plan: ExecutionPlan) -> None:
    console.print()
    if plan.current_phase == Phase.FAILED:
        failure = plan.failure
        body = f"[bold white]Failed during {failure.failed_at.value}:[/bold white] {failure.reason}"
        if failure.rollback_errors:
            body += "\n\n[red]Rollback errors:[/red]\n" + "\n".join(f"• {e}" for e in failure.rollback_errors)
        console.print(Panel(body, title=_label("TASK FAILED", "red"), border_style="red", padding=(1, 2)))
        console.print()
        return

    verdict = plan.final_validation.output if plan.final_validation is not None else None
    if verdict is None:
        body = "[white]Task completed.[/white]"
    else:
        mark = "[bold green]PASS[/bold green]" if verdict.passed else "[bold yellow]FAIL[/bold yellow]"
        body = f"{mark}  [dim]score {verdict.overall_score:.2f}[/dim]\n\n[white]{verdict.summary}[/white]"
        if verdict.recommendations:
            body += "\n\n[dim]Recommendations:[/dim]\n" + "\n".join(f"• {r}" for r in verdict.recommendations)
    console.print(
        Panel(
            body,
            title=_label("RESULT", "green"),
            subtitle=f"[dim]{plan.total_duration_ms()} ms[/dim]",
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
