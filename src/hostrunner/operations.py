"""External operations: allow-listed argv invocations with captured output."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from hostrunner.errors import CapabilityRefusedError
from hostrunner.logging import get_logger

logger = get_logger(__name__)

TERMINATION_GRACE_SECONDS = 2.0
REDACTED = "***"

CAPABILITY_TOOLS = {
    "run-shell": "Bash",
    "read-files": "Read",
    "search-files": "Grep",
}
KNOWN_CAPABILITIES = frozenset(CAPABILITY_TOOLS)


@dataclass(frozen=True, slots=True)
class Operation:
    capability: str
    argv: tuple[str, ...]
    description: str = ""
    privileged: bool = False
    mutating: bool = False
    interactive: bool = False
    secrets: tuple[str, ...] = ()

    def display(self) -> str:
        rendered = shlex.join(self.argv)
        for secret in self.secrets:
            if secret:
                rendered = rendered.replace(secret, REDACTED)
        return rendered


@dataclass(frozen=True, slots=True)
class OperationResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def tail(self, limit: int = 1000) -> str:
        text = self.stdout.strip() or self.stderr.strip()
        return text[-limit:]


@dataclass(frozen=True, slots=True)
class CommandPolicy:
    """Executables an operation may name, by basename or by trusted directory."""

    executables: frozenset[str]
    trusted_dirs: tuple[Path, ...] = field(default_factory=tuple)

    def check(self, operation: Operation) -> None:
        argv = operation.argv
        if not argv or not all(isinstance(part, str) for part in argv):
            raise CapabilityRefusedError(
                f"Operation argv must be a non-empty sequence of strings: {argv!r}"
            )
        executables = [argv[0]]
        # sudo [-n|-v] <command> also vets the wrapped command
        if Path(argv[0]).name == "sudo":
            wrapped = [part for part in argv[1:] if not part.startswith("-")]
            if wrapped:
                executables.append(wrapped[0])
        for executable in executables:
            if not self._allowed(executable):
                raise CapabilityRefusedError(
                    f"Executable '{executable}' is not allow-listed for {operation.display()}"
                )

    def _allowed(self, executable: str) -> bool:
        path = Path(executable)
        if not path.is_absolute():
            return "/" not in executable and executable in self.executables
        if path.name in self.executables:
            return True
        resolved = path.resolve()
        return any(resolved.is_relative_to(root.resolve()) for root in self.trusted_dirs)


class OperationRunner(Protocol):
    async def run(
        self,
        operation: Operation,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> OperationResult: ...


class SubprocessRunner:
    """Runs operations with ``asyncio.create_subprocess_exec``; never through a shell."""

    def __init__(self, policy: CommandPolicy, cwd: Path | None = None) -> None:
        self.policy = policy
        self.cwd = cwd

    async def run(
        self,
        operation: Operation,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> OperationResult:
        self.policy.check(operation)
        child_env = os.environ.copy()
        if env:
            child_env.update(env)

        started = time.monotonic()
        log = logger.bind(operation=operation.display(), capability=operation.capability)
        log.debug("operation_start")
        try:
            process = await asyncio.create_subprocess_exec(
                *operation.argv,
                cwd=str(self.cwd) if self.cwd else None,
                env=child_env,
                stdin=None if operation.interactive else asyncio.subprocess.DEVNULL,
                stdout=None if operation.interactive else asyncio.subprocess.PIPE,
                stderr=None if operation.interactive else asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return OperationResult(exit_code=127, stderr=f"Command not found: {operation.argv[0]}")
        except PermissionError:
            return OperationResult(exit_code=126, stderr=f"Permission denied: {operation.argv[0]}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            await self._terminate(process)
            log.warning("operation_timeout", timeout_seconds=timeout)
            return OperationResult(
                exit_code=-1,
                stderr=f"Timed out after {timeout}s",
                duration_ms=int((time.monotonic() - started) * 1000),
                timed_out=True,
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            log.info("operation_cancelled")
            raise

        result = OperationResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        log.debug("operation_exit", exit_code=result.exit_code, duration_ms=result.duration_ms)
        return result

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATION_GRACE_SECONDS)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
