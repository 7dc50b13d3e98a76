# guardrails.py
# Guardrail engine. The only component that decides whether a proposed
# operation may run.
#
# Risk is data-driven: an ordered table of DangerousPatterns (regex → minimum
# risk) plus a baseline per operation type. Decisions layer the policy lists
# on top: deny-list first, then the auto-approve ceiling, then the allow-list,
# then confirmation or block. Pattern table and config are read-only after
# construction, so one engine can be shared by concurrent plans.

import logging
import re
from typing import Awaitable, Callable, Iterable

from task_runner.config import EngineConfig, GuardrailConfig
from task_runner.confirmation import ConfirmationBroker
from task_runner.models import (
    Authorization,
    ConfirmationChoice,
    ConfirmationRequest,
    ConfirmationResponse,
    DangerousPattern,
    Decision,
    DryRunResult,
    GuardDecision,
    OperationGuard,
    OperationType,
    RiskAssessment,
    RiskLevel,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
)
from task_runner.tools import TOOL_FOR_OPERATION

logger = logging.getLogger(__name__)

RequestHook = Callable[[ConfirmationRequest], None]
RefreshHook = Callable[[OperationGuard], Awaitable[OperationGuard]]


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

# (name, regex, minimum risk, reason). Matched case-insensitively against the
# normalized target text.
_PATTERN_ROWS = [
    # Critical
    ("recursive_delete", r"\brm\s+(?:-[a-z]*\s+)*(?:-[a-z]*r[a-z]*|--recursive)\b",
     RiskLevel.CRITICAL, "Recursive delete"),
    ("privilege_escalation", r"(?:^|[\s;&|(])(?:sudo|doas|su)(?:\s|$)",
     RiskLevel.CRITICAL, "Privilege escalation"),
    ("format_filesystem", r"\bmkfs(?:\.\w+)?\b",
     RiskLevel.CRITICAL, "Filesystem format"),
    ("raw_disk_write", r"\bdd\s+.*\bif=",
     RiskLevel.CRITICAL, "Raw disk copy with dd"),
    ("device_write", r">\s*/dev/(?!null\b)",
     RiskLevel.CRITICAL, "Write to a device file"),
    ("fork_bomb", r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
     RiskLevel.CRITICAL, "Fork bomb"),
    ("remote_script_exec", r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|k)?sh\b",
     RiskLevel.CRITICAL, "Piping a download into a shell"),
    ("sql_destruction", r"\b(?:drop\s+(?:table|database|schema)|truncate\s+table)\b",
     RiskLevel.CRITICAL, "Destructive SQL statement"),
    ("system_power", r"\b(?:shutdown|reboot|poweroff|halt)\b",
     RiskLevel.CRITICAL, "System shutdown or reboot"),
    # High
    ("world_writable", r"\bchmod\s+(?:-[a-z]+\s+)*0?777\b",
     RiskLevel.HIGH, "World-writable permissions"),
    ("force_push", r"\bgit\s+push\b.*(?:--force\b|\s-f\b)",
     RiskLevel.HIGH, "Force push rewrites remote history"),
    ("wildcard_delete", r"\brm\s+(?:-\S+\s+)*\S*\*",
     RiskLevel.HIGH, "Wildcard delete"),
    ("path_traversal", r"(?:^|[/\s])\.\.(?:/|$|\s)",
     RiskLevel.HIGH, "Path traversal"),
    ("system_path", r"(?:^|[\s=>])/(?:etc|usr|boot|bin|sbin|lib|sys|proc|system)(?:/|$|\s)",
     RiskLevel.HIGH, "System directory"),
    ("secret_file", r"(?:^|[/\s])(?:\.env(?:\.[\w-]+)?(?=$|[\s/])|\.ssh/|secrets/|credentials/)"
                    r"|\bid_(?:rsa|ed25519|ecdsa)\b",
     RiskLevel.HIGH, "Secrets or credentials"),
    ("vcs_internals", r"(?:^|[/\s])\.git/",
     RiskLevel.HIGH, "Version-control internals"),
]

DEFAULT_PATTERNS: tuple[DangerousPattern, ...] = tuple(
    DangerousPattern(name=name, pattern=pattern, risk_level=risk, reason=reason)
    for name, pattern, risk, reason in _PATTERN_ROWS
)

BASELINE_RISK: dict[OperationType, RiskLevel] = {
    OperationType.READ:    RiskLevel.LOW,
    OperationType.LIST:    RiskLevel.LOW,
    OperationType.CREATE:  RiskLevel.LOW,
    OperationType.WRITE:   RiskLevel.MEDIUM,
    OperationType.DELETE:  RiskLevel.HIGH,
    OperationType.MKDIR:   RiskLevel.LOW,
    OperationType.RMDIR:   RiskLevel.CRITICAL,
    OperationType.COMMAND: RiskLevel.MEDIUM,
    OperationType.OTHER:   RiskLevel.LOW,
}

SIDE_EFFECT_FREE = frozenset({OperationType.READ, OperationType.LIST, OperationType.OTHER})

READ_ONLY_COMMANDS = frozenset({
    "ls", "cat", "head", "tail", "wc", "file", "echo", "grep", "find", "pwd",
    "whoami", "date", "uname", "stat", "du", "df", "tree", "which", "sort",
    "uniq", "cut",
})
READ_ONLY_GIT = frozenset({"status", "log", "diff", "show"})


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_path(text: str) -> str:
    """Lowercase, forward slashes, no duplicate separators, no `.` segments."""
    text = text.strip().strip("'\"").lower().replace("\\", "/")
    text = re.sub(r"/{2,}", "/", text)
    leading = "/" if text.startswith("/") else ""
    parts = [part for part in text.split("/") if part not in ("", ".")]
    trailing = "/" if text.endswith("/") and parts else ""
    return leading + "/".join(parts) + trailing


def normalize_command(text: str) -> str:
    """Lowercase, unquoted, single-spaced command text with forward slashes."""
    text = text.lower().replace("\\", "/")
    text = re.sub(r"[\"'`]", "", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"/{2,}", "/", text)
    return re.sub(r"(?<![.\w])\./", "", text)


def is_read_only_command(command: str) -> bool:
    """True when every segment of a pipeline is a known read-only program."""
    text = normalize_command(command)
    if not text or ">" in text or "`" in command or "$(" in text:
        return False
    for segment in re.split(r"\|\||&&|[|;]", text):
        words = segment.split()
        if not words:
            return False
        program = words[0]
        if program == "git":
            if len(words) < 2 or words[1] not in READ_ONLY_GIT:
                return False
        elif program not in READ_ONLY_COMMANDS:
            return False
        if program == "find" and any(word in ("-delete", "-exec", "-execdir") for word in words):
            return False
    return True


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class GuardrailEngine:
    def __init__(self, config: GuardrailConfig | None = None, broker: ConfirmationBroker | None = None):
        self._config = config or GuardrailConfig()
        self._broker = broker
        self._patterns: tuple[DangerousPattern, ...] = DEFAULT_PATTERNS + tuple(self._config.custom_patterns)
        self._allowed_dirs = tuple(normalize_path(d).rstrip("/") for d in self._config.allowed_directories)
        self._denied = tuple(normalize_command(c) for c in self._config.blocked_commands if c.strip())

    @property
    def config(self) -> GuardrailConfig:
        return self._config

    @property
    def patterns(self) -> tuple[DangerousPattern, ...]:
        return self._patterns

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------

    def match_patterns(self, text: str) -> list[DangerousPattern]:
        candidates = {normalize_command(text), normalize_path(text)}
        return [p for p in self._patterns if any(p.matches(c) for c in candidates)]

    def rollback_capable(self, guard: OperationGuard) -> bool:
        op = guard.operation_type
        snap = guard.snapshot
        if op in SIDE_EFFECT_FREE:
            return True
        if op == OperationType.COMMAND:
            return is_read_only_command(guard.target)
        if op == OperationType.RMDIR or snap is None:
            return False
        if op == OperationType.MKDIR:
            return not snap.existed or snap.is_dir
        if snap.is_dir:
            return False
        if op == OperationType.DELETE:
            return snap.existed and snap.content is not None
        return not snap.existed or snap.content is not None

    def assess(self, guard: OperationGuard) -> RiskAssessment:
        """
        Risk = max(baseline for the operation type, every matched pattern).

        Operations that cannot be rolled back are raised to at least High.
        Stamps the result onto guard.risk_level.
        """
        baseline = BASELINE_RISK[guard.operation_type]
        if guard.operation_type == OperationType.COMMAND and is_read_only_command(guard.target):
            baseline = RiskLevel.LOW

        matched = self.match_patterns(guard.target)
        risk = max([baseline] + [p.risk_level for p in matched])

        capable = self.rollback_capable(guard)
        if not capable:
            risk = max(risk, RiskLevel.HIGH)

        guard._risk_level = risk
        logger.debug(
            "Assessed %s %r: %s (baseline %s, patterns %s, rollback %s)",
            guard.operation_type.value, guard.target, risk.label, baseline.label,
            [p.name for p in matched] or "none", "yes" if capable else "no",
        )
        return RiskAssessment(
            risk_level=risk,
            baseline_risk=baseline,
            matched_patterns=matched,
            rollback_capable=capable,
        )

    # ------------------------------------------------------------------
    # Policy lists
    # ------------------------------------------------------------------

    def deny_listed(self, guard: OperationGuard) -> str | None:
        if guard.operation_type != OperationType.COMMAND:
            return None
        text = normalize_command(guard.target)
        for entry in self._denied:
            if re.search(rf"(?:^|[\s;&|(]){re.escape(entry)}(?=$|[\s;&|)])", text):
                return entry
        return None

    def tool_disabled(self, guard: OperationGuard) -> str | None:
        """The tool `guard` needs when `enabled_tools` restricts it away, else None."""
        tools = self._config.enabled_tools
        name = TOOL_FOR_OPERATION.get(guard.operation_type)
        if tools and name is not None and name not in tools:
            return name
        return None

    def allow_listed(self, guard: OperationGuard) -> bool:
        # Only a directory match relaxes risk, and only for path operations.
        if not self._allowed_dirs or guard.operation_type == OperationType.COMMAND:
            return False
        path = normalize_path(guard.target).rstrip("/")
        if ".." in path.split("/"):
            return False
        return any(d in ("", ".") or path == d or path.startswith(d + "/") for d in self._allowed_dirs)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(self, guard: OperationGuard, config: EngineConfig) -> GuardDecision:
        assessment = self.assess(guard)
        risk = assessment.risk_level

        denied = self.deny_listed(guard)
        if denied is not None:
            return GuardDecision(
                decision=Decision.BLOCKED,
                reason=f"Command '{denied}' is on the deny-list",
                assessment=assessment,
                deny_listed=True,
            )
        disabled = self.tool_disabled(guard)
        if disabled is not None:
            return GuardDecision(
                decision=Decision.BLOCKED,
                reason=f"Tool '{disabled}' is not enabled",
                assessment=assessment,
            )

        allowed = self.allow_listed(guard)
        if risk <= self._config.auto_approve_max_risk:
            return GuardDecision(
                decision=Decision.APPROVED,
                reason=f"{risk.label} risk is within the auto-approve limit",
                assessment=assessment,
                allow_listed=allowed,
            )
        if allowed and risk < RiskLevel.CRITICAL:
            return GuardDecision(
                decision=Decision.APPROVED,
                reason=f"{risk.label} risk approved by allow-list",
                assessment=assessment,
                allow_listed=True,
            )

        reasons = ", ".join(p.reason for p in assessment.matched_patterns) or (
            "operation cannot be rolled back" if not assessment.rollback_capable
            else f"{guard.operation_type.value} operation"
        )
        if config.require_confirmation:
            return GuardDecision(
                decision=Decision.NEEDS_CONFIRMATION,
                reason=f"{risk.label} risk requires confirmation: {reasons}",
                assessment=assessment,
                allow_listed=allowed,
            )
        return GuardDecision(
            decision=Decision.BLOCKED,
            reason=f"{risk.label} risk blocked: {reasons}",
            assessment=assessment,
            allow_listed=allowed,
        )

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def build_confirmation(self, guard: OperationGuard, verdict: GuardDecision) -> ConfirmationRequest:
        return ConfirmationRequest(
            step_id=guard.step_id,
            operation_type=guard.operation_type,
            target=guard.target,
            estimated_impact=guard.estimated_impact,
            risk_level=verdict.assessment.risk_level,
            reasons=[p.reason for p in verdict.assessment.matched_patterns],
            rollback_capable=verdict.assessment.rollback_capable,
            timeout_seconds=self._config.confirmation_timeout_seconds,
        )

    async def confirm(self, request: ConfirmationRequest) -> ConfirmationResponse:
        if self._broker is None:
            logger.warning("No confirmation responder attached; treating %s as unanswered", request.request_id)
            return ConfirmationResponse.timeout(request)
        return await self._broker.request(request)

    async def authorize(
        self,
        guard: OperationGuard,
        config: EngineConfig,
        *,
        on_request: RequestHook | None = None,
        refresh: RefreshHook | None = None,
    ) -> Authorization:
        """decide() plus at most one confirmation round. Never returns NEEDS_CONFIRMATION."""
        verdict = self.decide(guard, config)
        if verdict.decision != Decision.NEEDS_CONFIRMATION:
            return Authorization(
                decision=verdict.decision, reason=verdict.reason,
                assessment=verdict.assessment, guard=guard,
            )

        request = self.build_confirmation(guard, verdict)
        if on_request is not None:
            on_request(request)
        response = await self.confirm(request)

        def _result(decision: Decision, reason: str, **kw) -> Authorization:
            kw.setdefault("assessment", verdict.assessment)
            kw.setdefault("guard", guard)
            return Authorization(decision=decision, reason=reason, confirmation=response, **kw)

        if response.timed_out:
            return _result(Decision.BLOCKED, f"Confirmation timed out after {request.timeout_seconds:g}s")
        if response.choice == ConfirmationChoice.PROCEED:
            return _result(Decision.APPROVED, "Approved by confirmation")
        if response.choice == ConfirmationChoice.SKIP:
            return _result(Decision.SKIPPED, "Skipped by confirmation")
        if response.choice == ConfirmationChoice.ABORT:
            return _result(Decision.BLOCKED, "Aborted by confirmation")

        # MODIFY: review the replacement operation once; anything short of
        # outright approval is blocked.
        if not response.modified_target:
            return _result(Decision.BLOCKED, "Modification requested without a new target")
        modified = guard.model_copy(update={"target": response.modified_target, "snapshot": None})
        if refresh is not None:
            modified = await refresh(modified)
        second = self.decide(modified, config)
        if second.decision == Decision.APPROVED:
            return _result(
                Decision.APPROVED, f"Modified operation approved: {second.reason}",
                assessment=second.assessment, guard=modified,
            )
        return _result(
            Decision.BLOCKED, f"Modified operation not approved: {second.reason}",
            assessment=second.assessment, guard=modified,
        )

    # ------------------------------------------------------------------
    # Rollback and preview
    # ------------------------------------------------------------------

    def plan_rollback(self, guard: OperationGuard) -> RollbackPlan:
        """Undo steps for `guard`, in the order they would have been recorded."""
        if not self.rollback_capable(guard):
            return RollbackPlan(step_id=guard.step_id, rollback_capable=False)

        op, snap = guard.operation_type, guard.snapshot
        steps: list[RollbackStep] = []

        if op in (OperationType.CREATE, OperationType.WRITE):
            if snap.existed:
                steps.append(RollbackStep(
                    sequence=1, action=RollbackAction.RESTORE_FILE, path=guard.target,
                    content=snap.content, description=f"Restore previous contents of {guard.target}",
                ))
            else:
                steps.append(RollbackStep(
                    sequence=1, action=RollbackAction.DELETE_FILE, path=guard.target,
                    description=f"Delete created file {guard.target}",
                ))
        elif op == OperationType.DELETE:
            steps.append(RollbackStep(
                sequence=1, action=RollbackAction.RESTORE_FILE, path=guard.target,
                content=snap.content, description=f"Restore deleted file {guard.target}",
            ))
        elif op == OperationType.MKDIR and not snap.existed:
            steps.append(RollbackStep(
                sequence=1, action=RollbackAction.REMOVE_DIRECTORY, path=guard.target,
                description=f"Remove created directory {guard.target}",
            ))

        return RollbackPlan(step_id=guard.step_id, steps=steps, rollback_capable=True)

    def predicted_changes(self, guard: OperationGuard) -> list[str]:
        op, target, snap = guard.operation_type, guard.target, guard.snapshot
        if op in SIDE_EFFECT_FREE:
            return [f"No changes ({op.value} {target})" if target else "No changes"]
        if op in (OperationType.CREATE, OperationType.WRITE):
            size = len(guard.content or "")
            verb = "Overwrite" if snap is not None and snap.existed else "Create"
            return [f"{verb} file {target} ({size} chars)"]
        if op == OperationType.DELETE:
            return [f"Delete file {target}"]
        if op == OperationType.MKDIR:
            return [f"Create directory {target}"]
        if op == OperationType.RMDIR:
            return [f"Remove directory {target} and everything in it"]
        if is_read_only_command(target):
            return [f"Run read-only command: {target}"]
        return [f"Run command: {target}", "Side effects unknown; cannot be rolled back"]

    def dry_run(self, guard: OperationGuard, config: EngineConfig, refusal: str | None = None) -> DryRunResult:
        """
        The full decision path with no tool invocation and no confirmation round.

        `refusal` reports a block decided outside the guardrail, such as the
        tool registry rejecting a path outside its workspace.
        """
        verdict = self.decide(guard, config)
        decision, reason = verdict.decision, verdict.reason
        if refusal is not None:
            decision, reason = Decision.BLOCKED, refusal
        assessment = verdict.assessment
        return DryRunResult(
            operation_type=guard.operation_type,
            target=guard.target,
            risk_level=assessment.risk_level,
            decision=decision,
            reason=reason,
            matched_patterns=[p.name for p in assessment.matched_patterns],
            predicted_changes=self.predicted_changes(guard),
            would_be_blocked=decision == Decision.BLOCKED,
            needs_confirmation=decision == Decision.NEEDS_CONFIRMATION,
            rollback_capable=assessment.rollback_capable,
        )


def patterns_from_rows(rows: Iterable[tuple[str, str, RiskLevel, str]]) -> tuple[DangerousPattern, ...]:
    """Build extra DangerousPatterns for GuardrailConfig.custom_patterns."""
    return tuple(
        DangerousPattern(name=name, pattern=pattern, risk_level=risk, reason=reason)
        for name, pattern, risk, reason in rows
    )
