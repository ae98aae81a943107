"""Local shell executor: runs remediation commands through bash with hard timeouts."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TYPE_CHECKING

from core.guard import effective_commands
from core.models import CommandStepResult, ExecutionResult
from integrations.base import CommandExecutor

if TYPE_CHECKING:
    from app.config import Settings

logger = logging.getLogger(__name__)

_SUDO_RE = re.compile(r"^sudo\s+(?!-n\b)")
MAX_LOG_CHARS = 8000
READ_CHUNK_BYTES = 4096


def normalize_command(command: str) -> str:
    """Force non-interactive sudo so a missing password fails instead of hanging."""
    return _SUDO_RE.sub("sudo -n ", command.strip(), count=1)


async def read_bounded(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, int]:
    """Drain *stream* to EOF keeping at most *limit* bytes.

    Returns the kept bytes and the number of bytes discarded. The pipe keeps
    being read past the limit so the child never blocks on a full buffer.
    """
    kept = bytearray()
    dropped = 0
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return bytes(kept), dropped
        take = chunk[: max(limit - len(kept), 0)]
        kept.extend(take)
        dropped += len(chunk) - len(take)


def _decode(raw: bytes, dropped: int) -> str:
    text = raw.decode("utf-8", errors="replace")
    if dropped:
        text += f"...[truncated {dropped} bytes]"
    return text


def format_execution_log(steps: list[CommandStepResult]) -> str:
    """Render per-command results as a single bounded log text."""
    parts: list[str] = []
    for i, step in enumerate(steps, start=1):
        status = "timeout" if step.timed_out else f"exit={step.exit_code}"
        parts.append(f"$ [{i}] {step.command} ({status}, {step.duration_ms}ms)")
        if step.stdout:
            parts.append(step.stdout.rstrip())
        if step.stderr:
            parts.append(f"[stderr] {step.stderr.rstrip()}")
    text = "\n".join(parts)
    if len(text) > MAX_LOG_CHARS:
        text = f"{text[:MAX_LOG_CHARS]}...[truncated {len(text) - MAX_LOG_CHARS} chars]"
    return text


class ShellExecutor(CommandExecutor):
    """Runs each command with ``bash -lc`` on the local machine, stopping at the first failure."""

    def __init__(self, settings: Settings) -> None:
        self._shell = settings.executor_shell

    async def _run_one(self, command: str, timeout_s: float, max_buffer_bytes: int) -> CommandStepResult:
        started = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            self._shell,
            "-lc",
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        async def collect() -> tuple[tuple[bytes, int], tuple[bytes, int]]:
            stdout, stderr, _ = await asyncio.gather(
                read_bounded(proc.stdout, max_buffer_bytes),
                read_bounded(proc.stderr, max_buffer_bytes),
                proc.wait(),
            )
            return stdout, stderr

        try:
            (stdout, stdout_dropped), (stderr, stderr_dropped) = await asyncio.wait_for(
                collect(), timeout=timeout_s
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandStepResult(
                command=command,
                ok=False,
                exit_code=None,
                stderr=f"timed out after {timeout_s:.1f}s",
                timed_out=True,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        return CommandStepResult(
            command=command,
            ok=proc.returncode == 0,
            exit_code=proc.returncode,
            stdout=_decode(stdout, stdout_dropped),
            stderr=_decode(stderr, stderr_dropped),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def run(
        self,
        commands: list[str],
        timeout_ms: int,
        max_buffer_bytes: int,
        host_id: str | None = None,
    ) -> ExecutionResult:
        timeout_s = max(timeout_ms, 1) / 1000
        steps: list[CommandStepResult] = []

        for _, raw in effective_commands(commands):
            command = normalize_command(raw)
            try:
                step = await self._run_one(command, timeout_s, max_buffer_bytes)
            except OSError as exc:
                logger.error("Failed to spawn %s for %r: %s", self._shell, command, exc)
                step = CommandStepResult(command=command, ok=False, stderr=str(exc))
            steps.append(step)
            if not step.ok:
                reason = "timed out" if step.timed_out else f"exit={step.exit_code}"
                return ExecutionResult(
                    ok=False,
                    output=format_execution_log(steps),
                    error=f"Command {len(steps)} failed ({reason}): {command}",
                    steps=steps,
                )

        return ExecutionResult(ok=True, output=format_execution_log(steps), steps=steps)
