# tools.py
# Tool registry: workspace-confined file and command tools.
#
# The engine never calls these functions directly; it dispatches ToolCalls
# through ToolRegistry.execute(). Every path is resolved against the
# workspace root and anything escaping it is refused. Operations on the same
# resolved path are serialized with a per-path asyncio.Lock, so concurrent
# plans sharing a registry cannot interleave writes to one file.

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, Iterable

from task_runner.errors import ToolError, ToolUnavailable
from task_runner.models import OperationGuard, OperationType, ResourceSnapshot, ToolCall, ToolResult

MAX_READ_CHARS = 100_000
MAX_OUTPUT_CHARS = 4000
MAX_SNAPSHOT_BYTES = 1024 * 1024

TOOL_FOR_OPERATION: dict[OperationType, str] = {
    OperationType.READ: "read_file",
    OperationType.LIST: "list_files",
    OperationType.CREATE: "write_file",
    OperationType.WRITE: "write_file",
    OperationType.DELETE: "delete_file",
    OperationType.MKDIR: "make_directory",
    OperationType.RMDIR: "remove_directory",
    OperationType.COMMAND: "run_command",
}

# Operations that change a path and need a snapshot before they run.
SNAPSHOT_OPERATIONS = frozenset({
    OperationType.CREATE,
    OperationType.WRITE,
    OperationType.DELETE,
    OperationType.MKDIR,
    OperationType.RMDIR,
})


def tool_call_for(guard: OperationGuard) -> ToolCall | None:
    """The ToolCall that performs `guard`, or None for operations without side effects."""
    name = TOOL_FOR_OPERATION.get(guard.operation_type)
    if name is None:
        return None
    if name == "run_command":
        return ToolCall(name=name, args={"command": guard.target})
    args: dict[str, Any] = {"path": guard.target}
    if name == "write_file":
        args["content"] = guard.content or ""
    return ToolCall(name=name, args=args)


def _clip(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


# ---------------------------------------------------------------------------
# Tool implementations (blocking; run via asyncio.to_thread)
# ---------------------------------------------------------------------------


def _tool_read_file(path: Path, args: dict) -> ToolResult:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ToolError(f"Cannot read {args.get('path')}: {exc}") from exc
    return ToolResult(summary=f"Read {len(content)} chars from {args.get('path')}.", output=content[:MAX_READ_CHARS])


def _tool_list_files(path: Path, args: dict) -> ToolResult:
    if not path.is_dir():
        raise ToolError(f"Not a directory: {args.get('path')}")
    entries = sorted(p.name + ("/" if p.is_dir() else "") for p in path.iterdir())
    return ToolResult(summary=f"{len(entries)} entries in {args.get('path')}.", output="\n".join(entries))


def _tool_write_file(path: Path, args: dict) -> ToolResult:
    content = args.get("content") or ""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise ToolError(f"Cannot write {args.get('path')}: {exc}") from exc
    return ToolResult(summary=f"Wrote {len(content)} chars to {args.get('path')}.")


def _tool_delete_file(path: Path, args: dict) -> ToolResult:
    if path.is_dir():
        raise ToolError(f"Refusing to delete directory with delete_file: {args.get('path')}")
    try:
        path.unlink()
    except OSError as exc:
        raise ToolError(f"Cannot delete {args.get('path')}: {exc}") from exc
    return ToolResult(summary=f"Deleted {args.get('path')}.")


def _tool_make_directory(path: Path, args: dict) -> ToolResult:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ToolError(f"Cannot create directory {args.get('path')}: {exc}") from exc
    return ToolResult(summary=f"Created directory {args.get('path')}.")


def _tool_remove_directory(path: Path, args: dict) -> ToolResult:
    if not path.is_dir():
        raise ToolError(f"Not a directory: {args.get('path')}")
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise ToolError(f"Cannot remove directory {args.get('path')}: {exc}") from exc
    return ToolResult(summary=f"Removed directory {args.get('path')}.")


PATH_TOOLS: dict[str, Callable[[Path, dict], ToolResult]] = {
    "read_file":        _tool_read_file,
    "list_files":       _tool_list_files,
    "write_file":       _tool_write_file,
    "delete_file":      _tool_delete_file,
    "make_directory":   _tool_make_directory,
    "remove_directory": _tool_remove_directory,
}


def _run_command(workspace: Path, command: str, timeout: float) -> ToolResult:
    try:
        completed = subprocess.run(
            command,
            shell=True,
            cwd=workspace,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise ToolError(f"Command timed out after {timeout:g}s: {command}") from exc
    except OSError as exc:
        raise ToolError(f"Cannot run command {command!r}: {exc}") from exc

    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout).strip()
        raise ToolError(f"Command exited with {completed.returncode}: {_clip(detail, 500)}")
    return ToolResult(
        summary=f"Command succeeded: {command}",
        output=_clip(completed.stdout),
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Dispatches named tool calls inside one workspace directory."""

    def __init__(
        self,
        workspace: str | Path = ".",
        enabled: Iterable[str] | None = None,
        command_timeout: float = 30.0,
    ) -> None:
        self._root = Path(workspace).resolve()
        known = set(PATH_TOOLS) | {"run_command"}
        self._enabled = set(enabled) & known if enabled is not None else known
        self._command_timeout = command_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def names(self) -> list[str]:
        return sorted(self._enabled)

    def resolve(self, raw: str) -> Path:
        """Resolve `raw` inside the workspace or raise ToolError."""
        if not raw or not raw.strip():
            raise ToolError("No path provided.")
        candidate = Path(raw.strip())
        if not candidate.is_absolute():
            candidate = self._root / candidate
        resolved = candidate.resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise ToolError(f"SECURITY BLOCK: {raw!r} resolves outside the workspace.")
        return resolved

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def execute(self, call: ToolCall) -> ToolResult:
        if call.name not in self._enabled:
            raise ToolUnavailable(f"Tool '{call.name}' is not in the registry.")

        if call.name == "run_command":
            command = str(call.args.get("command", "")).strip()
            if not command:
                raise ToolError("No command provided.")
            async with self._lock("<commands>"):
                return await asyncio.to_thread(_run_command, self._root, command, self._command_timeout)

        path = self.resolve(str(call.args.get("path", "")))
        async with self._lock(str(path)):
            return await asyncio.to_thread(PATH_TOOLS[call.name], path, call.args)

    async def snapshot(self, raw: str) -> ResourceSnapshot:
        """Capture the current state of `raw` so a later change can be undone."""
        path = self.resolve(raw)
        async with self._lock(str(path)):
            return await asyncio.to_thread(self._capture, raw, path)

    async def prepare(self, guard: OperationGuard) -> OperationGuard:
        """
        Confine `guard`'s target to the workspace and attach a snapshot of
        whatever it is about to change. Raises ToolError for paths outside.
        """
        op = guard.operation_type
        if op in (OperationType.COMMAND, OperationType.OTHER) or not guard.target:
            return guard
        self.resolve(guard.target)
        if op not in SNAPSHOT_OPERATIONS or guard.snapshot is not None:
            return guard
        return guard.model_copy(update={"snapshot": await self.snapshot(guard.target)})

    @staticmethod
    def _capture(raw: str, path: Path) -> ResourceSnapshot:
        if not path.exists():
            return ResourceSnapshot(path=raw, existed=False)
        if path.is_dir():
            return ResourceSnapshot(path=raw, existed=True, is_dir=True)
        content = None
        if path.stat().st_size <= MAX_SNAPSHOT_BYTES:
            try:
                content = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                content = None
        return ResourceSnapshot(path=raw, existed=True, content=content)
