"""Mock command executor with scriptable failures and canned results."""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.guard import effective_commands
from core.models import CommandStepResult, ExecutionResult
from integrations.base import CommandExecutor
from integrations.mock.base import MockBase

if TYPE_CHECKING:
    from app.config import Settings


class MockExecutor(MockBase, CommandExecutor):
    """Pretends to run commands. Nothing touches a host.

    Tests steer outcomes with :meth:`fail_on` (substring match per command) or
    :meth:`queue_result` (whole canned results consumed in order).
    """

    provider_key = "executor"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.calls: list[dict] = []
        self._fail_substrings: list[str] = []
        self._queued: list[ExecutionResult] = []

    def fail_on(self, substring: str) -> None:
        self._fail_substrings.append(substring)

    def queue_result(self, result: ExecutionResult) -> None:
        self._queued.append(result)

    def reset(self) -> None:
        self.calls.clear()
        self._fail_substrings.clear()
        self._queued.clear()

    async def run(
        self,
        commands: list[str],
        timeout_ms: int,
        max_buffer_bytes: int,
        host_id: str | None = None,
    ) -> ExecutionResult:
        await self._simulate_delay()
        self.calls.append(
            {
                "host_id": host_id,
                "commands": list(commands),
                "timeout_ms": timeout_ms,
                "max_buffer_bytes": max_buffer_bytes,
            }
        )

        if self._queued:
            return self._queued.pop(0)

        steps: list[CommandStepResult] = []
        for _, command in effective_commands(commands):
            failed = any(s in command for s in self._fail_substrings)
            steps.append(
                CommandStepResult(
                    command=command,
                    ok=not failed,
                    exit_code=1 if failed else 0,
                    stdout="" if failed else f"ok: {command}"[:max_buffer_bytes],
                    stderr="simulated failure" if failed else "",
                )
            )
            if failed:
                return ExecutionResult(
                    ok=False,
                    output="\n".join(s.stdout or s.stderr for s in steps),
                    error=f"Command failed: {command}",
                    steps=steps,
                )

        return ExecutionResult(
            ok=True,
            output="\n".join(s.stdout for s in steps),
            steps=steps,
        )
