"""External tools: run_command, git inspection, wait_for_user."""

import re
import shlex
import logging
from typing import Dict, List, Optional

from tools._common import ToolResult, ToolContext, require_param, int_param

logger = logging.getLogger(__name__)

_DEFAULT_COMMAND_TIMEOUT = 120
_MAX_COMMAND_OUTPUT = 20000

# Commands that never need approval: builds, tests, installs, read-only git
SAFE_COMMAND_PATTERNS: List[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in (
        r"^npm\s+run\s+(build|test|lint|check|compile|typecheck)$",
        r"^npm\s+test$",
        r"^(yarn|pnpm)\s+(build|test)$",
        r"^(npm\s+(install|i)|yarn(\s+install)?|pnpm\s+install)$",
        r"^(python\s+-m\s+)?pytest(\s+[\w./:\-\[\]=]+)*$",
        r"^go\s+(build|test|vet)(\s+[\w./\-]+)*$",
        r"^cargo\s+(build|test|check)$",
        r"^git\s+(status|branch)$",
        r"^git\s+(diff|log)\b",
    )
]


def is_safe_command(command: str) -> bool:
    """True for commands that run without asking (tests, builds, read-only git)."""
    cmd = (command or "").strip()
    return any(p.search(cmd) for p in SAFE_COMMAND_PATTERNS)


def _format_command_output(stdout: str, stderr: str, rc: int) -> str:
    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    output = "\n".join(parts) if parts else "(no output)"
    if rc != 0:
        output = f"[exit code: {rc}]\n{output}"

    if len(output) > _MAX_COMMAND_OUTPUT:
        lines_out = output.split("\n")
        if len(lines_out) > 200:
            output = ("\n".join(lines_out[:100]) + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n"
                      + "\n".join(lines_out[-50:]))
        else:
            output = output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]
    return output


def _command_timeout(params: Dict[str, str]) -> int:
    ms = int_param(params, "timeoutMs")
    if ms:
        return max(1, ms // 1000)
    return int_param(params, "timeout", _DEFAULT_COMMAND_TIMEOUT)


def run_command(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Execute a shell command in the project root."""
    err = require_param(params, "command")
    if err:
        return err
    command = params["command"].strip()
    timeout = _command_timeout(params)
    stdout, stderr, rc = ctx.backend.run_command(command, timeout=timeout)
    output = _format_command_output(stdout, stderr, rc)
    if rc == -1 and "timed out" in stderr:
        return ToolResult.fail(f"Command timed out after {timeout}s", output=output)
    if rc != 0:
        return ToolResult.fail(f"Command exited with code {rc}\n{output}", output=output)
    return ToolResult.ok(output)


def _git(ctx: ToolContext, args: List[str], timeout: int = 30) -> ToolResult:
    command = "git " + " ".join(shlex.quote(a) for a in args)
    stdout, stderr, rc = ctx.backend.run_command(command, timeout=timeout)
    if rc != 0:
        message = (stderr or stdout).strip() or f"git exited with code {rc}"
        if "not a git repository" in message.lower():
            message = "Not a git repository"
        return ToolResult.fail(message)
    return ToolResult.ok(stdout.rstrip() or "(no output)")


def git_status(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    res = _git(ctx, ["status", "--short", "--branch"])
    if res.success and res.output.count("\n") == 0:
        res.output += "\nWorking tree clean"
    return res


def git_diff(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    args = ["diff"]
    if (params.get("staged") or "").lower() == "true":
        args.append("--cached")
    path = (params.get("path") or "").strip()
    if path:
        args.extend(["--", path])
    res = _git(ctx, args)
    if res.success and res.output == "(no output)":
        res.output = "No changes"
    return res


def git_log(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    limit = int_param(params, "limit", 10)
    args = ["log", f"-{max(1, min(limit, 100))}", "--oneline", "--decorate"]
    path = (params.get("path") or "").strip()
    if path:
        args.extend(["--", path])
    return _git(ctx, args)


def wait_for_user(params: Dict[str, str], ctx: Optional[ToolContext] = None) -> ToolResult:
    """Marker tool: the model is waiting on the user, so the turn ends here."""
    reason = (params.get("reason") or "").strip() or "waiting for user response"
    return ToolResult.ok(f"Waiting for user: {reason}")
